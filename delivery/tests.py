import json
import math
import os
import tempfile
import uuid
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from unittest import mock

import requests
from django.apps import apps as django_apps
from django.test import Client, SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from .bootstrap import bootstrap_delivery
from .coordinator import DeliveryCoordinator, get_coordinator
from .corridors import CorridorStore, extract_route_id, fetch_wfs_corridors, get_corridor_store
from .engine import (
    DeliveryConfig,
    DeliverySession,
    TripRecord,
    TruckStatus,
    path_average_speed,
    resolve_speed,
)
from .geo import EARTH_RADIUS_KM, format_duration, haversine_km, interpolate_position, path_length_km
from .models import ConcretePlant, DeliveryTarget, Trip, TripStatus
from .stitcher import PathSegment, StitchedPath, build_path_geometries, corridor_coordinates, stitch_path
from .traffic import (
    SpeedReading,
    TrafficCache,
    TrafficState,
    fetch_traffic_speed_map,
    get_traffic_snapshot,
    parse_speed_xml,
    refresh_traffic,
    speed_to_state,
)
from .trips import (
    complete_trip,
    insert_trip,
    list_today_trips,
    today_delivery_target,
    today_truck_plan,
    trip_count_status,
)

# Longitude span of a 10 km stretch along the equator.
TEN_KM_LNG = math.degrees(10 / EARTH_RADIUS_KM)

SPEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<jtis_speedlist>
  <date>2024-05-01</date>
  <time>10:00:00</time>
  <segments>
    <segment><segment_id>1</segment_id><speed>45</speed><valid>Y</valid></segment>
    <segment><segment_id>2</segment_id><speed>22.5</speed><valid>N</valid></segment>
    <segment segmentid="3"><speed>60</speed><valid>Y</valid></segment>
    <segment><segment_id>0</segment_id><speed>30</speed><valid>Y</valid></segment>
    <segment><segment_id>4</segment_id><speed>-1</speed><valid>Y</valid></segment>
    <segment><segment_id>abc</segment_id><speed>30</speed><valid>Y</valid></segment>
  </segments>
</jtis_speedlist>
"""


class FakeClock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


def line_feature(route_id, coordinates):
    return {
        "type": "Feature",
        "properties": {"ROUTE_ID": route_id, "NAME": f"Road {route_id}"},
        "geometry": {"type": "LineString", "coordinates": coordinates},
    }


def ten_km_path():
    return StitchedPath(
        coordinates=[(0.0, 0.0), (TEN_KM_LNG, 0.0)],
        segment_count=1,
        segments=(PathSegment(1, 10.0),),
    )


class GeoTests(SimpleTestCase):
    def test_one_degree_of_longitude_on_the_equator(self):
        self.assertAlmostEqual(haversine_km((0, 0), (1, 0)), 111.195, places=2)

    def test_path_length_needs_two_points(self):
        self.assertEqual(path_length_km([(0, 0)]), 0.0)
        self.assertAlmostEqual(path_length_km([(0, 0), (TEN_KM_LNG, 0)]), 10.0, places=6)

    def test_interpolate_position(self):
        coords = [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)]
        lng, lat = interpolate_position(coords, 0.5)
        self.assertAlmostEqual(lng, 1.0, places=6)
        self.assertAlmostEqual(lat, 0.0, places=6)
        self.assertEqual(interpolate_position(coords, 0), (0.0, 0.0))
        self.assertEqual(interpolate_position(coords, 1.7), (2.0, 0.0))
        self.assertEqual(interpolate_position([], 0.5), (0.0, 0.0))

    def test_format_duration(self):
        self.assertEqual(format_duration(3725), "01:02:05")
        self.assertEqual(format_duration(-5), "00:00:00")


class StitcherTests(SimpleTestCase):
    def setUp(self):
        self.store = CorridorStore()

    def test_joins_touching_segments_without_duplicate_junction(self):
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))
        self.store.add(2, line_feature(2, [[1, 0], [2, 0]]))

        path = stitch_path([1, 2], self.store)

        self.assertEqual(path.coordinates, [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)])
        self.assertEqual(path.segment_count, 2)
        self.assertEqual(path.corridor_ids, [1, 2])

    def test_reverses_segments_drawn_the_other_way(self):
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))
        self.store.add(2, line_feature(2, [[2, 0], [1, 0]]))

        path = stitch_path([1, 2], self.store)

        self.assertEqual(path.coordinates, [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)])

    def test_anchor_picks_the_starting_end(self):
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))
        self.store.add(2, line_feature(2, [[1, 0], [2, 0]]))

        path = stitch_path([1, 2], self.store, anchor=(2.1, 0))

        self.assertEqual(path.coordinates, [(2.0, 0.0), (1.0, 0.0), (0.0, 0.0)])
        self.assertEqual(path.corridor_ids, [2, 1])

    def test_multilinestring_parts_are_flattened(self):
        self.store.add(
            1,
            {
                "type": "Feature",
                "properties": {"ROUTE_ID": 1},
                "geometry": {
                    "type": "MultiLineString",
                    "coordinates": [[[0, 0], [1, 0]], [[1, 0], [2, 0]]],
                },
            },
        )

        path = stitch_path([1], self.store)

        self.assertEqual(path.segment_count, 1)
        self.assertEqual(len(path.coordinates), 4)
        self.assertEqual(path.coordinates[-1], (2.0, 0.0))

    def test_one_point_part_keeps_the_corridor(self):
        geometry = {
            "type": "MultiLineString",
            "coordinates": [[[0, 0], [1, 0]], [[1, 0.5]], [[1, 0], [2, 0]]],
        }
        self.store.add(1, {"type": "Feature", "properties": {"ROUTE_ID": 1}, "geometry": geometry})

        self.assertEqual(len(corridor_coordinates(geometry)), 5)
        path = stitch_path([1], self.store)
        self.assertEqual(path.segment_count, 1)
        self.assertEqual(path.coordinates[0], (0.0, 0.0))
        self.assertEqual(path.coordinates[-1], (2.0, 0.0))

    def test_missing_corridors_are_skipped(self):
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))

        path = stitch_path([99, 1, 100], self.store)

        self.assertEqual(path.segment_count, 1)
        self.assertIsNone(stitch_path([99, 100], self.store))

    def test_build_path_geometries_maps_unresolvable_paths_to_none(self):
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))

        paths = build_path_geometries({"A": [1], "B": []}, self.store)

        self.assertEqual(paths["A"].segment_count, 1)
        self.assertIsNone(paths["B"])


class CorridorStoreTests(SimpleTestCase):
    def test_extract_route_id(self):
        self.assertEqual(extract_route_id({"properties": {"ROUTE_ID": "123"}}), 123)
        tagged = {"properties": {"description": "<td>ROUTE_ID</td><td>456</td>"}}
        self.assertEqual(extract_route_id(tagged), 456)
        loose = {"properties": {"description": "segment 789 of the highway"}}
        self.assertEqual(extract_route_id(loose, known_ids=[789]), 789)
        self.assertIsNone(extract_route_id(loose))

    def test_load_geojson_and_filter(self):
        collection = {
            "type": "FeatureCollection",
            "features": [
                line_feature(1, [[0, 0], [1, 0]]),
                line_feature(2, [[1, 0], [2, 0]]),
                line_feature(3, [[2, 0], [3, 0]]),
                {"type": "Feature", "properties": {}, "geometry": None},
            ],
        }
        handle = tempfile.NamedTemporaryFile("w", suffix=".geojson", delete=False)
        with handle:
            json.dump(collection, handle)
        self.addCleanup(os.remove, handle.name)

        store = CorridorStore()
        self.assertEqual(store.load_geojson(handle.name, project_route_ids=[2]), 3)
        self.assertIn(1, store)
        self.assertEqual(store.get_corridor_geometry(2)["type"], "LineString")
        self.assertIsNone(store.get_corridor_geometry(42))

        self.assertEqual(store.build_filtered(traffic_ids=[1], project_ids=[2]), 2)
        self.assertEqual(sorted(store.filtered()), [1, 2])

    def test_wfs_paging_stops_on_empty_page(self):
        first = mock.Mock()
        first.json.return_value = {
            "features": [
                line_feature(5, [[0, 0], [1, 0]]),
                {"type": "Feature", "properties": {}, "geometry": None},
            ]
        }
        empty = mock.Mock()
        empty.json.return_value = {"features": []}
        store = CorridorStore()

        with mock.patch("delivery.corridors.requests.get", side_effect=[first, empty]) as get:
            added = fetch_wfs_corridors(store, url="http://wfs.test/", max_pages=3)

        self.assertEqual(added, 1)
        self.assertEqual(get.call_count, 2)
        self.assertTrue(store.get(5)["properties"]["IS_FROM_WFS"])


class TrafficTests(SimpleTestCase):
    def test_speed_thresholds(self):
        self.assertEqual(speed_to_state(29.9), TrafficState.RED)
        self.assertEqual(speed_to_state(30), TrafficState.YELLOW)
        self.assertEqual(speed_to_state(49.9), TrafficState.YELLOW)
        self.assertEqual(speed_to_state(50), TrafficState.GREEN)

    def test_cache_updates_in_place(self):
        cache = TrafficCache()
        cache.update(7, TrafficState.GREEN, 60.0)
        cache.update(7, TrafficState.RED, 12.0)

        self.assertEqual(len(cache), 1)
        self.assertEqual(cache.lookup(7).speed_kmh, 12.0)
        self.assertEqual(cache.lookup(7).state, TrafficState.RED)
        self.assertIsNone(cache.lookup(8))

    def test_parse_speed_xml_skips_bad_segments(self):
        readings = parse_speed_xml(SPEED_XML)

        self.assertEqual(sorted(readings), [1, 2, 3])
        self.assertTrue(readings[1].valid)
        self.assertFalse(readings[2].valid)
        self.assertEqual(readings[3].speed, 60.0)
        self.assertEqual(readings[1].capture_date, "2024-05-01")

    def test_refresh_only_touches_known_corridors(self):
        store = CorridorStore()
        store.add(1, line_feature(1, [[0, 0], [1, 0]]))
        cache = TrafficCache()

        updated = refresh_traffic(cache, store, parse_speed_xml(SPEED_XML))

        self.assertEqual(updated, 1)
        self.assertEqual(cache.ids(), [1])
        self.assertEqual(cache.lookup(1).state, TrafficState.YELLOW)
        self.assertIsNotNone(cache.last_refreshed)

        snapshot = get_traffic_snapshot(cache)
        self.assertEqual(snapshot["counts"]["YELLOW"], 1)
        self.assertEqual(snapshot["corridors"][0]["id"], 1)

    def test_fetch_returns_empty_map_on_request_failure(self):
        error = requests.exceptions.ConnectionError("down")
        with mock.patch("delivery.traffic.requests.get", side_effect=error):
            self.assertEqual(fetch_traffic_speed_map("http://feed.test/"), {})

    def test_fetch_parses_feed(self):
        response = mock.Mock(text=SPEED_XML)
        with mock.patch("delivery.traffic.requests.get", return_value=response):
            readings = fetch_traffic_speed_map("http://feed.test/")
        self.assertEqual(len(readings), 3)

    def test_fetch_returns_empty_map_on_bad_xml(self):
        response = mock.Mock(text="<not-closed>")
        with mock.patch("delivery.traffic.requests.get", return_value=response):
            self.assertEqual(fetch_traffic_speed_map("http://feed.test/"), {})


class SpeedSelectionTests(SimpleTestCase):
    def test_resolve_speed_decision_table(self):
        cache = TrafficCache()
        fast = cache.update(1, TrafficState.GREEN, 90.0)
        slow = cache.update(2, TrafficState.RED, 20.0)
        stalled = cache.update(3, TrafficState.RED, 0.0)

        self.assertEqual(resolve_speed(fast, 40, 70), 70)
        self.assertEqual(resolve_speed(slow, 40, 70), 20)
        self.assertEqual(resolve_speed(stalled, 40, 70), 40)
        self.assertEqual(resolve_speed(None, 40, 70), 40)
        self.assertEqual(resolve_speed(None, 80, 70), 70)
        self.assertEqual(resolve_speed(None, 0, 70), 40)

    def test_path_average_speed_is_length_weighted(self):
        cache = TrafficCache()
        cache.update(1, TrafficState.RED, 20.0)
        path = StitchedPath(
            coordinates=[(0.0, 0.0), (1.0, 0.0)],
            segment_count=2,
            segments=(PathSegment(1, 10.0), PathSegment(2, 30.0)),
        )

        self.assertAlmostEqual(path_average_speed(path, cache, 40, 70), 35.0)


class DeliveryConfigTests(SimpleTestCase):
    def test_derived_values(self):
        config = DeliveryConfig("GAMMON_TM", target_volume=100)
        self.assertEqual(config.total_trucks_needed, 13)
        self.assertEqual(config.interval_minutes, 5.0)

    def test_rejects_bad_values(self):
        with self.assertRaises(ValueError):
            DeliveryConfig("GAMMON_TM", target_volume=100, volume_per_truck=0)
        with self.assertRaises(ValueError):
            DeliveryConfig("GAMMON_TM", target_volume=100, trucks_per_hour=-1)
        with self.assertRaises(ValueError):
            DeliveryConfig("GAMMON_TM", target_volume=-1)


class DeliverySessionTests(SimpleTestCase):
    def setUp(self):
        self.start = datetime(2024, 5, 1, 0, 0, tzinfo=dt_timezone.utc)
        self.clock = FakeClock(self.start)
        self.session = DeliverySession(
            plant_paths={"HKC Tsing Yi Plant": "HKC_TY"}, clock=self.clock
        )

    def start_session(self, **overrides):
        options = {"target_volume": 24, "start_time": self.start}
        options.update(overrides)
        config = DeliveryConfig("MAIN", **options)
        return self.session.start(config, {"MAIN": ten_km_path(), "HKC_TY": None})

    def test_start_dispatches_first_truck(self):
        result = self.start_session()

        self.assertEqual(result["total_trucks_needed"], 3)
        self.assertEqual(result["interval_minutes"], 5.0)
        self.assertEqual(result["segment_count"], 1)
        trucks = self.session.get_trucks()
        self.assertEqual([truck.truck_id for truck in trucks], ["CMX-001"])
        self.assertEqual(trucks[0].current_position, (0.0, 0.0))

    def test_dispatch_stops_at_trucks_needed(self):
        self.start_session()
        self.session.dispatch()
        self.session.dispatch()

        self.assertIsNone(self.session.dispatch())
        self.assertEqual(self.session.dispatched_count, 3)
        self.assertEqual(len(self.session.get_trucks()), 3)

    def test_dispatch_without_path_is_a_no_op(self):
        self.start_session()
        self.assertIsNone(self.session.dispatch("HKC_TY"))
        self.assertIsNone(self.session.dispatch("UNKNOWN"))

    def test_tick_moves_trucks_at_current_speed(self):
        self.start_session()
        truck = self.session.get_trucks()[0]

        self.session.tick(360)

        self.assertAlmostEqual(truck.progress_ratio, 0.4, places=6)
        self.assertAlmostEqual(truck.current_position[0], TEN_KM_LNG * 0.4, places=8)
        self.assertEqual(truck.status, TruckStatus.EN_ROUTE)

    def test_progress_never_regresses_when_traffic_slows(self):
        self.start_session()
        truck = self.session.get_trucks()[0]
        self.session.tick(360)
        before = truck.progress_ratio

        self.session.traffic.update(1, TrafficState.RED, 5.0)
        self.session.tick(1)

        self.assertGreaterEqual(truck.progress_ratio, before)
        self.assertEqual(truck.current_speed_kmh, 5.0)

    def test_arrival_is_logged_once(self):
        self.start_session()
        truck = self.session.get_trucks()[0]
        self.clock.advance(minutes=20)

        self.session.tick(1000)
        self.session.tick(1000)

        self.assertEqual(truck.status, TruckStatus.ARRIVED)
        self.assertEqual(truck.progress_ratio, 1.0)
        self.assertEqual(truck.arrival_time, self.clock())
        self.assertIsNone(self.session.complete_truck(truck.truck_id))
        records = self.session.get_delivery_records()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].truck_id, "CMX-001")
        self.assertEqual(self.session.active_count(), 0)

    def test_records_carry_cumulative_volume_and_hour_window(self):
        self.start_session()
        self.session.dispatch()
        self.clock.advance(hours=2, minutes=30)

        self.session.tick(1000)

        records = self.session.get_delivery_records()
        self.assertEqual([record.cumulative_volume for record in records], [8.0, 16.0])
        self.assertEqual({record.hour_window for record in records}, {2})
        self.assertEqual(self.session.total_delivered(), 16.0)

    def test_auto_dispatch_off_keeps_fleet_manual(self):
        self.start_session()
        self.clock.advance(minutes=6)
        self.session.tick(1)
        self.assertEqual(len(self.session.get_trucks()), 1)

    def test_auto_dispatch_follows_interval(self):
        self.start_session(auto_dispatch=True)
        self.clock.advance(minutes=4)
        self.session.tick(1)
        self.assertEqual(len(self.session.get_trucks()), 1)

        self.clock.advance(minutes=2)
        self.session.tick(1)
        self.assertEqual(len(self.session.get_trucks()), 2)

    def test_stop_freezes_and_reset_clears(self):
        self.start_session()
        truck = self.session.get_trucks()[0]
        self.session.stop()

        self.session.tick(360)
        self.assertEqual(truck.progress_ratio, 0.0)
        self.assertIsNone(self.session.dispatch())
        self.assertFalse(self.session.status()["progress"]["running"])

        self.session.reset()
        self.assertIsNone(self.session.config)
        self.assertIsNone(self.session.status())
        self.assertEqual(self.session.get_trucks(), [])

    def test_throughput_reports_schedule_gap(self):
        self.start_session(target_volume=600)
        self.clock.advance(hours=1, minutes=30)

        throughput = self.session.throughput()

        self.assertEqual(throughput["expected_by_now"], 18.0)
        self.assertEqual(throughput["actual"], 0)
        self.assertTrue(throughput["behind_schedule"])
        self.assertEqual([row["target"] for row in throughput["hourly"]], [12.0, 6.0])
        self.assertIsNone(throughput["projected_finish"])
        self.assertEqual(throughput["delay_minutes"], 0)

    def test_throughput_hourly_actuals(self):
        self.start_session(target_volume=600)
        self.clock.advance(minutes=30)
        self.session.tick(1000)

        throughput = self.session.throughput(self.start + timedelta(hours=1))

        self.assertEqual(throughput["hourly"][0], {"hour": 0, "target": 12.0, "actual": 1, "diff": -11.0})
        self.assertEqual(throughput["actual_rate_per_hour"], 1.0)
        self.assertIsNotNone(throughput["projected_finish"])
        self.assertGreater(throughput["delay_minutes"], 0)

    def test_status_summary(self):
        self.start_session()
        status = self.session.status()

        self.assertEqual(status["progress"]["trucks_dispatched"], 1)
        self.assertEqual(status["progress"]["trucks_en_route"], 1)
        self.assertEqual(status["progress"]["trucks_waiting"], 2)
        self.assertEqual(status["config"]["route_selector"], "MAIN")
        self.assertIsNotNone(status["trucks"][0]["eta_remaining"])


class TripReconciliationTests(SimpleTestCase):
    def setUp(self):
        self.start = datetime(2024, 5, 1, 0, 0, tzinfo=dt_timezone.utc)
        self.clock = FakeClock(self.start + timedelta(hours=1))
        self.session = DeliverySession(clock=self.clock)
        config = DeliveryConfig("MAIN", target_volume=600, start_time=self.start)
        self.session.start(config, {"MAIN": ten_km_path()})
        self.session.trucks.clear()

    def trip(self, started_seconds_ago, trip_id=None):
        return TripRecord(
            id=trip_id or str(uuid.uuid4()),
            vehicle_id="VH-1",
            actual_start_at=self.clock() - timedelta(seconds=started_seconds_ago),
        )

    def test_hydrate_places_truck_by_elapsed_time(self):
        trip = self.trip(450)

        self.assertEqual(self.session.hydrate_from_trips([trip]), 1)

        truck = self.session.get_trucks()[0]
        self.assertTrue(truck.is_db_backed)
        self.assertEqual(truck.trip_id, trip.id)
        self.assertAlmostEqual(truck.progress_ratio, 0.5, places=6)
        self.assertEqual(truck.truck_id, "CMX-002")

    def test_hydrate_is_idempotent_and_never_regresses(self):
        trip = self.trip(450)
        self.session.hydrate_from_trips([trip])
        truck = self.session.get_trucks()[0]
        truck.advance_to(0.8)

        self.session.hydrate_from_trips([trip])

        self.assertEqual(len(self.session.get_trucks()), 1)
        self.assertEqual(truck.progress_ratio, 0.8)

    def test_trip_past_travel_time_is_archived_immediately(self):
        truck = self.session.add_truck_from_trip(self.trip(2000))

        self.assertEqual(truck.status, TruckStatus.ARRIVED)
        self.assertEqual(self.session.get_trucks(), [])
        self.assertEqual(len(self.session.get_delivery_records()), 1)

    def test_completed_trip_is_not_resurrected(self):
        trip = self.trip(450)
        self.session.add_truck_from_trip(trip)

        record = self.session.complete_truck_from_db(trip.id, self.clock())

        self.assertEqual(record.trip_id, trip.id)
        self.assertEqual(record.hour_window, 1)
        self.assertEqual(self.session.trip_trucks, {})
        self.assertIsNone(self.session.add_truck_from_trip(trip))
        self.assertEqual(self.session.get_trucks(), [])
        self.assertIsNone(self.session.complete_truck_from_db(trip.id))
        self.assertEqual(len(self.session.get_delivery_records()), 1)

    def test_tick_completes_db_trucks_through_trip_path(self):
        trip = self.trip(450)
        self.session.add_truck_from_trip(trip)

        self.session.tick(1000)

        self.assertEqual(self.session.get_trucks(), [])
        self.assertEqual(self.session.get_delivery_records()[0].trip_id, trip.id)

    def test_prune_drops_only_trip_backed_trucks(self):
        synthetic = self.session.dispatch()
        trip = self.trip(60)
        self.session.add_truck_from_trip(trip)

        self.assertEqual(self.session.prune_inactive_trips([]), [trip.id])
        self.assertEqual(self.session.get_trucks(), [synthetic])
        self.assertEqual(self.session.trip_trucks, {})
        self.assertEqual(self.session.get_delivery_records(), [])

    def test_db_arrival_logs_time_since_departure(self):
        trip = self.trip(300)
        self.session.add_truck_from_trip(trip)

        record = self.session.complete_truck_from_db(
            trip.id, trip.actual_start_at + timedelta(minutes=12)
        )

        self.assertEqual(record.travel_time_seconds, 720.0)
        self.assertEqual(record.to_dict()["travel_time_minutes"], 12)

    def test_sync_archives_trips_completed_elsewhere(self):
        trip = self.trip(300)
        self.session.sync_trips([trip])
        arrived = replace(trip, status="completed", actual_arrival_at=self.clock())

        summary = self.session.sync_trips([arrived])

        records = self.session.get_delivery_records()
        self.assertEqual(len(records), 1)
        self.assertEqual(records[0].trip_id, trip.id)
        self.assertEqual(records[0].cumulative_volume, 8.0)
        self.assertEqual(summary["completed"], 1)
        self.assertEqual(summary["pruned"], 0)
        self.assertEqual(self.session.get_trucks(), [])
        self.assertEqual(self.session.trip_trucks, {})

        self.session.sync_trips([arrived])
        self.assertEqual(len(self.session.get_delivery_records()), 1)

    def test_sync_ignores_completed_trips(self):
        running = self.trip(60)
        finished = TripRecord(
            id=str(uuid.uuid4()),
            vehicle_id="VH-2",
            actual_start_at=self.clock() - timedelta(minutes=30),
            actual_arrival_at=self.clock(),
            status="completed",
        )

        summary = self.session.sync_trips([running, finished])

        self.assertEqual(summary, {"in_progress": 1, "tracked": 1, "completed": 0, "pruned": 0})
        self.assertEqual(len(self.session.get_trucks()), 1)


class CoordinatorTests(SimpleTestCase):
    def setUp(self):
        self.store = CorridorStore()
        self.store.add(1, line_feature(1, [[0, 0], [1, 0]]))
        self.session = DeliverySession()
        self.trips = []
        self.coordinator = DeliveryCoordinator(
            self.session,
            self.store,
            tick_interval=3600,
            traffic_interval=3600,
            sync_interval=3600,
            traffic_fetcher=lambda: {1: SpeedReading(1, 25.0, True)},
            trip_loader=lambda: self.trips,
        )
        self.addCleanup(self.coordinator.shutdown)

    def test_commands_run_inline_before_start(self):
        self.assertFalse(self.coordinator.running)
        self.assertEqual(self.coordinator.call(lambda: 42), 42)

        self.assertEqual(self.coordinator.traffic_job().result(), 1)
        self.assertEqual(self.coordinator.traffic.lookup(1).state, TrafficState.RED)

    def test_errors_propagate_to_caller(self):
        def boom():
            raise ValueError("bad command")

        with self.assertRaises(ValueError):
            self.coordinator.call(boom)

    def test_empty_traffic_fetch_keeps_cache(self):
        self.coordinator._fetch_traffic = lambda: {}
        self.assertIsNone(self.coordinator.traffic_job())
        self.assertEqual(len(self.coordinator.traffic), 0)

    def test_sync_job_hydrates_session(self):
        start = timezone.now()
        self.session.start(
            DeliveryConfig("MAIN", target_volume=16, start_time=start), {"MAIN": ten_km_path()}
        )
        self.trips.append(TripRecord(id="trip-1", vehicle_id="VH-1", actual_start_at=start))

        summary = self.coordinator.sync_job().result()

        self.assertEqual(summary["tracked"], 1)
        self.assertIn("trip-1", self.session.trip_trucks)

    def test_worker_serialises_commands_once_started(self):
        self.coordinator.start()
        self.assertTrue(self.coordinator.running)

        self.assertEqual(self.coordinator.call(lambda: "done"), "done")
        with self.assertRaises(ValueError):
            self.coordinator.call(int, "not a number")

        self.coordinator.shutdown()
        self.assertFalse(self.coordinator.running)


class TripRepositoryTests(TestCase):
    def local(self, day, hour, minute=0):
        return timezone.make_aware(datetime.combine(day, time(hour, minute)))

    def test_insert_trip_defaults(self):
        trip = insert_trip("VH-1")

        self.assertEqual(trip.status, TripStatus.IN_PROGRESS)
        self.assertEqual(trip.concrete_plant, ConcretePlant.GAMMON_TUEN_MUN)
        self.assertIsNotNone(trip.actual_start_at)
        self.assertFalse(trip.corrected)

    def test_unknown_plant_is_booked_against_tuen_mun(self):
        trip = insert_trip("VH-1", concrete_plant="Somewhere Else")
        self.assertEqual(trip.concrete_plant, ConcretePlant.GAMMON_TUEN_MUN)

        trip = insert_trip("VH-2", concrete_plant=ConcretePlant.HKC_TSING_YI)
        self.assertEqual(trip.concrete_plant, ConcretePlant.HKC_TSING_YI)

    def test_complete_trip(self):
        trip = insert_trip("VH-1")

        completed = complete_trip(trip.id, corrected=True)

        self.assertEqual(completed.status, TripStatus.COMPLETED)
        self.assertIsNotNone(completed.actual_arrival_at)
        trip.refresh_from_db()
        self.assertTrue(trip.corrected)
        self.assertIsNone(complete_trip(uuid.uuid4()))

    def test_list_today_trips_filters_by_local_hour(self):
        day = date(2024, 5, 1)
        insert_trip("VH-1", actual_start_at=self.local(day, 10))
        insert_trip("VH-2", actual_start_at=self.local(day, 12))
        insert_trip("VH-3", actual_start_at=self.local(day + timedelta(days=1), 10))

        self.assertEqual(len(list_today_trips(day)), 2)
        trips = list_today_trips(day, hour_from=9, hour_to=11)
        self.assertEqual([trip.vehicle_id for trip in trips], ["VH-1"])
        self.assertEqual(list_today_trips(day, hour_from=13), [])

    def test_delivery_target_and_plan(self):
        day = date(2024, 5, 1)
        DeliveryTarget.objects.create(
            operation_date=day,
            target_concrete_volume=300,
            work_start_hour=time(7, 0),
            work_end_hour=time(18, 0),
            planned_trucks_per_hour=10,
            hourly_plan={"7": 5, "8": 6},
        )

        target = today_delivery_target(day)
        self.assertEqual(target["target_volume"], 300.0)
        self.assertEqual(target["trucks_per_hour"], 10.0)
        self.assertEqual(timezone.localtime(target["start_time"]).hour, 7)

        plan = today_truck_plan(day)
        self.assertEqual(plan["planned_trips_total"], 11)
        self.assertEqual(plan["working_hours"], 11.0)
        self.assertEqual(plan["hourly_plan"][9], 0)
        self.assertIsNone(today_delivery_target(date(2024, 5, 2)))

    def test_trip_count_status_without_plan(self):
        self.assertFalse(trip_count_status()["has_plan"])

    def test_trip_count_status_shortfall(self):
        today = timezone.localdate()
        DeliveryTarget.objects.create(
            operation_date=today,
            target_concrete_volume=600,
            work_start_hour=time(7, 0),
            work_end_hour=time(20, 0),
            hourly_plan={"7": 2, "8": 3},
        )
        trip = insert_trip("VH-1", actual_start_at=self.local(today, 7, 30))
        complete_trip(trip.id, actual_arrival_at=self.local(today, 8, 15))
        insert_trip("VH-2", actual_start_at=self.local(today, 9))

        status = trip_count_status(now=self.local(today, 23, 30))

        summary = status["trips_summary"]
        self.assertTrue(status["has_plan"])
        self.assertEqual(summary["completed_count"], 1)
        self.assertEqual(summary["in_progress_count"], 1)
        self.assertEqual(summary["total_shortfall"], 4)
        hour_eight = next(row for row in summary["hourly_timeline"] if row["hour"] == 8)
        self.assertEqual(hour_eight["actual"], 1)


@override_settings(DELIVERY_PATHS={"GAMMON_TM": [1], "HKC_TY": []})
class DeliveryAPITests(TestCase):
    def setUp(self):
        self.client = Client()
        self.coordinator = get_coordinator()
        self.coordinator.session.reset()
        store = get_corridor_store()
        store.add(1, line_feature(1, [[0, 0], [TEN_KM_LNG, 0]]))
        self.addCleanup(store.clear)
        self.addCleanup(self.coordinator.traffic.clear)
        self.addCleanup(self.coordinator.session.reset)

    def post_json(self, url, payload=None):
        return self.client.post(url, data=json.dumps(payload or {}), content_type="application/json")

    def start_delivery(self, **payload):
        payload.setdefault("path_id", "GAMMON_TM")
        payload.setdefault("target_volume", 16)
        return self.post_json("/api/delivery/start/", payload)

    def test_start_and_status(self):
        response = self.start_delivery()
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["total_trucks_needed"], 2)
        self.assertEqual(payload["segment_count"], 1)
        self.assertAlmostEqual(payload["total_distance_km"], 10.0)

        status = self.client.get("/api/delivery/status/").json()
        self.assertEqual(status["progress"]["trucks_dispatched"], 1)

        trucks = self.client.get("/api/trucks/").json()
        self.assertEqual(trucks["count"], 1)
        self.assertEqual(trucks["trucks"][0]["truck_id"], "CMX-001")

    def test_start_without_geometry_is_rejected(self):
        response = self.start_delivery(path_id="HKC_TY")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"], "No path geometry found")

    def test_start_rejects_invalid_settings(self):
        response = self.start_delivery(volume_per_truck=0)
        self.assertEqual(response.status_code, 400)

    def test_status_without_session(self):
        self.assertEqual(self.client.get("/api/delivery/status/").status_code, 404)

    def test_stop_and_reset(self):
        self.start_delivery()

        response = self.post_json("/api/delivery/stop/")
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["progress"]["running"])

        self.assertEqual(self.post_json("/api/delivery/reset/").status_code, 200)
        self.assertEqual(self.client.get("/api/delivery/status/").status_code, 404)

    def test_trip_lifecycle_updates_fleet(self):
        self.start_delivery()

        response = self.post_json("/api/trips/start/", {"vehicle_id": "VH-9"})
        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["truck_id"], "CMX-002")
        trip_id = payload["trip"]["id"]
        self.assertEqual(Trip.objects.get(pk=trip_id).status, TripStatus.IN_PROGRESS)

        response = self.post_json(f"/api/trips/{trip_id}/arrive/")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["trip"]["status"], TripStatus.COMPLETED)
        self.assertEqual(payload["delivery_record"]["trip_id"], trip_id)

        records = self.client.get("/api/delivery/records/").json()
        self.assertEqual(records["count"], 1)
        self.assertEqual(records["total_delivered"], 8.0)

        today = self.client.get("/api/trips/today/").json()
        self.assertEqual(len(today["trips"]), 1)

    def test_arrive_unknown_trip(self):
        response = self.post_json(f"/api/trips/{uuid.uuid4()}/arrive/")
        self.assertEqual(response.status_code, 404)

    def test_trip_start_requires_vehicle(self):
        self.assertEqual(self.post_json("/api/trips/start/").status_code, 400)

    def test_route_tracking(self):
        response = self.client.get("/api/tracking/1/")
        self.assertEqual(response.status_code, 200)
        route = response.json()["route"]
        self.assertEqual(route["distance_km"], 10.0)
        self.assertEqual(route["speed_kmh"], 50.0)
        self.assertIsNone(route["traffic"])

        self.assertEqual(self.client.get("/api/tracking/99/").status_code, 404)

    def test_traffic_snapshot(self):
        self.coordinator.traffic.update(1, TrafficState.GREEN, 65.0)
        payload = self.client.get("/api/traffic/").json()
        self.assertEqual(payload["counts"]["GREEN"], 1)
        self.assertEqual(payload["corridors"][0]["speed_kmh"], 65.0)

    def test_simple_status_without_plan(self):
        payload = self.client.get("/api/delivery/simple-status/").json()
        self.assertTrue(payload["ok"])
        self.assertFalse(payload["has_plan"])


@override_settings(DELIVERY_PATHS={"GAMMON_TM": [1], "HKC_TY": []})
class BootstrapTests(TestCase):
    def setUp(self):
        collection = {"type": "FeatureCollection", "features": [line_feature(1, [[0, 0], [TEN_KM_LNG, 0]])]}
        handle = tempfile.NamedTemporaryFile("w", suffix=".geojson", delete=False)
        with handle:
            json.dump(collection, handle)
        self.addCleanup(os.remove, handle.name)
        self.geojson_path = handle.name

        self.coordinator = DeliveryCoordinator(
            DeliverySession(plant_paths={"Gammon Tuen Mun Plant": "GAMMON_TM"}),
            CorridorStore(),
            tick_interval=3600,
            traffic_interval=3600,
            sync_interval=3600,
            default_speed_kmh=40.0,
            traffic_fetcher=lambda: {1: SpeedReading(1, 25.0, True)},
            trip_loader=lambda: [],
        )
        self.addCleanup(self.coordinator.shutdown)

    def test_bootstrap_loads_corridors_and_starts_session(self):
        coordinator = bootstrap_delivery(self.coordinator, geojson_path=self.geojson_path)

        self.assertTrue(coordinator.running)
        self.assertEqual(len(coordinator.store), 1)
        self.assertEqual(coordinator.traffic.lookup(1).state, TrafficState.RED)
        self.assertEqual(coordinator.session.config.route_selector, "GAMMON_TM")
        self.assertEqual(coordinator.session.config.target_volume, 600.0)
        self.assertEqual(len(coordinator.session.get_trucks()), 1)

    def test_bootstrap_is_idempotent(self):
        bootstrap_delivery(self.coordinator, geojson_path=self.geojson_path)
        self.coordinator.store.clear()

        bootstrap_delivery(self.coordinator, geojson_path=self.geojson_path)

        self.assertEqual(len(self.coordinator.store), 0)
        self.assertEqual(len(self.coordinator.session.get_trucks()), 1)

    def test_missing_geojson_still_starts_timers(self):
        coordinator = bootstrap_delivery(self.coordinator, geojson_path="/nonexistent/route.geojson")

        self.assertTrue(coordinator.running)
        self.assertIsNone(coordinator.session.config)

    def test_api_shares_the_running_session(self):
        bootstrap_delivery(self.coordinator, geojson_path=self.geojson_path)
        client = Client()

        with mock.patch("delivery.views.get_coordinator", return_value=self.coordinator):
            trucks = client.get("/api/trucks/").json()
            response = client.post(
                "/api/trips/start/",
                data=json.dumps({"vehicle_id": "VH-7"}),
                content_type="application/json",
            )

        self.assertEqual(trucks["count"], 1)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["truck_id"], "CMX-002")
        self.assertEqual(len(self.coordinator.session.get_trucks()), 2)


class AutostartTests(SimpleTestCase):
    def setUp(self):
        self.app_config = django_apps.get_app_config("delivery")

    def ready_with(self, argv, environ=None):
        with mock.patch("delivery.apps.sys.argv", argv), \
                mock.patch.dict(os.environ, environ or {}), \
                mock.patch("delivery.apps.threading.Thread") as thread:
            self.app_config.ready()
        return thread

    @override_settings(DELIVERY_AUTOSTART=True)
    def test_web_process_starts_bootstrap_thread(self):
        thread = self.ready_with(["gunicorn", "concrete_site.wsgi"])

        thread.assert_called_once()
        self.assertEqual(thread.call_args.kwargs["name"], "delivery-bootstrap")
        thread.return_value.start.assert_called_once_with()

    @override_settings(DELIVERY_AUTOSTART=True)
    def test_runserver_child_starts_but_reloader_parent_does_not(self):
        self.ready_with(["manage.py", "runserver"], {"RUN_MAIN": "true"}).assert_called_once()
        with mock.patch.dict(os.environ):
            os.environ.pop("RUN_MAIN", None)
            self.ready_with(["manage.py", "runserver"]).assert_not_called()

    @override_settings(DELIVERY_AUTOSTART=True)
    def test_other_management_commands_do_not_start(self):
        self.ready_with(["manage.py", "migrate"]).assert_not_called()

    @override_settings(DELIVERY_AUTOSTART=False)
    def test_disabled_by_default(self):
        self.ready_with(["gunicorn", "concrete_site.wsgi"]).assert_not_called()
