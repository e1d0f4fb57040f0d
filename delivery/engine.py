"""
Concrete mixer delivery simulation.

A :class:`DeliverySession` owns the truck fleet for one pour. It dispatches
trucks along stitched plant-to-site paths, advances them on every tick from
live corridor speeds, archives arrivals into an append-only delivery log and
reconciles the fleet with trip records kept in the database.

Two sources mutate the fleet: the tick loop and the trip sync. Both go
through :meth:`ConcreteTruck.advance_to` and :meth:`DeliverySession._archive`,
so progress never regresses and every truck is logged at most once.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Set

from .geo import Coordinate, format_duration, interpolate_position
from .stitcher import StitchedPath
from .traffic import TrafficCache, TrafficSample

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0
FALLBACK_SPEED_KMH = 40.0
MAX_MIXER_SPEED_KMH = 70.0
TRIP_IN_PROGRESS = "in_progress"


class TruckStatus(str, Enum):
    EN_ROUTE = "en-route"
    ARRIVED = "arrived"
    # Reserved for trucks queued at the plant; nothing produces it yet.
    WAITING = "waiting"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class DeliveryConfig:
    route_selector: str
    target_volume: float
    volume_per_truck: float = 8.0
    trucks_per_hour: float = 12.0
    start_time: Optional[datetime] = None
    default_speed_kmh: float = FALLBACK_SPEED_KMH
    speed_cap_kmh: float = MAX_MIXER_SPEED_KMH
    auto_dispatch: bool = False

    def __post_init__(self):
        if self.target_volume < 0:
            raise ValueError("target_volume must not be negative")
        if self.volume_per_truck <= 0:
            raise ValueError("volume_per_truck must be positive")
        if self.trucks_per_hour <= 0:
            raise ValueError("trucks_per_hour must be positive")
        if self.start_time is not None and self.start_time.tzinfo is None:
            object.__setattr__(self, "start_time", self.start_time.replace(tzinfo=timezone.utc))

    @property
    def total_trucks_needed(self) -> int:
        return math.ceil(self.target_volume / self.volume_per_truck)

    @property
    def interval_minutes(self) -> float:
        return 60.0 / self.trucks_per_hour

    def to_dict(self) -> Dict:
        return {
            "route_selector": self.route_selector,
            "target_volume": self.target_volume,
            "volume_per_truck": self.volume_per_truck,
            "trucks_per_hour": self.trucks_per_hour,
            "start_time": _iso(self.start_time),
            "default_speed_kmh": self.default_speed_kmh,
            "speed_cap_kmh": self.speed_cap_kmh,
            "auto_dispatch": self.auto_dispatch,
        }


@dataclass(frozen=True)
class TripRecord:
    """A trip row as read from the trip store."""

    id: str
    vehicle_id: str
    actual_start_at: Optional[datetime]
    actual_arrival_at: Optional[datetime] = None
    status: str = TRIP_IN_PROGRESS
    concrete_plant: Optional[str] = None


@dataclass
class ConcreteTruck:
    truck_id: str
    truck_number: int
    path_id: str
    departure_time: datetime
    estimated_arrival: datetime
    total_distance_km: float
    current_speed_kmh: float
    concrete_volume: float
    current_position: Coordinate = (0.0, 0.0)
    status: TruckStatus = TruckStatus.EN_ROUTE
    progress_ratio: float = 0.0
    arrival_time: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    trip_id: Optional[str] = None
    vehicle_id: Optional[str] = None

    @property
    def is_db_backed(self) -> bool:
        return self.trip_id is not None

    def advance_to(self, ratio: float) -> float:
        """Raise progress to ``ratio`` (clamped to [0, 1]); never lower it."""
        ratio = min(max(ratio, 0.0), 1.0)
        if ratio > self.progress_ratio:
            self.progress_ratio = ratio
        return self.progress_ratio

    def to_dict(self, now: Optional[datetime] = None) -> Dict:
        remaining = None
        if self.status == TruckStatus.EN_ROUTE and now is not None:
            remaining = format_duration((self.estimated_arrival - now).total_seconds())
        return {
            "truck_id": self.truck_id,
            "truck_number": self.truck_number,
            "path_id": self.path_id,
            "trip_id": self.trip_id,
            "vehicle_id": self.vehicle_id,
            "status": self.status.value,
            "position": list(self.current_position),
            "progress": round(self.progress_ratio * 100, 1),
            "speed_kmh": round(self.current_speed_kmh, 1),
            "distance_km": round(self.total_distance_km, 2),
            "departure_time": _iso(self.departure_time),
            "estimated_arrival": _iso(self.estimated_arrival),
            "eta_remaining": remaining,
            "arrival_time": _iso(self.arrival_time),
            "elapsed_seconds": round(self.elapsed_seconds),
            "concrete_volume": self.concrete_volume,
        }


@dataclass(frozen=True)
class DeliveryRecord:
    truck_id: str
    truck_number: int
    path_id: str
    departure_time: datetime
    arrival_time: datetime
    travel_time_seconds: float
    concrete_volume: float
    cumulative_volume: float
    hour_window: int
    trip_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "truck_id": self.truck_id,
            "truck_number": self.truck_number,
            "path_id": self.path_id,
            "trip_id": self.trip_id,
            "departure_time": _iso(self.departure_time),
            "arrival_time": _iso(self.arrival_time),
            "travel_time_minutes": round(self.travel_time_seconds / 60),
            "concrete_volume": self.concrete_volume,
            "cumulative_volume": self.cumulative_volume,
            "hour_window": self.hour_window,
        }


def resolve_speed(
    sample: Optional[TrafficSample],
    default_kmh: float,
    cap_kmh: float = MAX_MIXER_SPEED_KMH,
) -> float:
    """
    Pick the speed a loaded mixer travels on one corridor.

    =====================  ===========================
    traffic sample         speed used
    =====================  ===========================
    present, speed > 0     min(sample speed, cap)
    present, speed <= 0    min(default, cap)
    absent                 min(default, cap)
    =====================  ===========================

    Non-positive defaults and caps fall back to module constants.
    """
    default_kmh = default_kmh if default_kmh > 0 else FALLBACK_SPEED_KMH
    cap_kmh = cap_kmh if cap_kmh > 0 else MAX_MIXER_SPEED_KMH
    has_live_speed = sample is not None and sample.speed_kmh > 0
    speed = sample.speed_kmh if has_live_speed else default_kmh
    return min(speed, cap_kmh)


def path_average_speed(
    path: StitchedPath,
    traffic: TrafficCache,
    default_kmh: float,
    cap_kmh: float = MAX_MIXER_SPEED_KMH,
) -> float:
    """Length-weighted mean of the per-corridor speeds along ``path``."""
    weighted = 0.0
    total_km = 0.0
    for segment in path.segments:
        if segment.length_km <= 0:
            continue
        speed = resolve_speed(traffic.lookup(segment.corridor_id), default_kmh, cap_kmh)
        weighted += speed * segment.length_km
        total_km += segment.length_km
    if total_km <= 0:
        return resolve_speed(None, default_kmh, cap_kmh)
    return weighted / total_km


class DeliverySession:
    """Fleet state and operations for a single delivery session."""

    def __init__(
        self,
        traffic: Optional[TrafficCache] = None,
        plant_paths: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.traffic = traffic if traffic is not None else TrafficCache()
        self.plant_paths: Dict[str, str] = dict(plant_paths or {})
        self._clock = clock or _utcnow
        self._clear()

    def _clear(self) -> None:
        self.config: Optional[DeliveryConfig] = None
        self.path_geometries: Dict[str, Optional[StitchedPath]] = {}
        self.trucks: Dict[str, ConcreteTruck] = {}
        self.records: List[DeliveryRecord] = []
        self.trip_trucks: Dict[str, str] = {}
        self._archived_trips: Set[str] = set()
        self.next_truck_number = 1
        self.dispatched_count = 0
        self.next_dispatch_time: Optional[datetime] = None
        self.running = False

    def now(self) -> datetime:
        return self._clock()

    # ----- lifecycle -----

    def start(
        self,
        config: DeliveryConfig,
        path_geometries: Mapping[str, Optional[StitchedPath]],
    ) -> Dict:
        if config.start_time is None:
            config = replace(config, start_time=self.now())

        self._clear()
        self.config = config
        self.path_geometries = dict(path_geometries)
        self.running = True
        self.next_dispatch_time = config.start_time

        total_needed = config.total_trucks_needed
        interval = config.interval_minutes
        self.dispatch(config.route_selector)

        path = self.path_geometries.get(config.route_selector)
        logger.info(
            "Delivery session started on %s: %d trucks, 1 every %.1f min",
            config.route_selector, total_needed, interval,
        )
        return {
            "message": f"Delivery started: {total_needed} trucks needed, 1 every {interval:g} min",
            "total_trucks_needed": total_needed,
            "interval_minutes": interval,
            "total_distance_km": round(path.total_distance_km, 2) if path else 0.0,
            "segment_count": path.segment_count if path else 0,
        }

    def stop(self) -> None:
        self.running = False
        logger.info("Delivery session stopped")

    def reset(self) -> None:
        self._clear()
        logger.info("Delivery session reset")

    # ----- speed -----

    def current_speed(self, path_id: str) -> float:
        config = self.config
        default = config.default_speed_kmh if config else FALLBACK_SPEED_KMH
        cap = config.speed_cap_kmh if config else MAX_MIXER_SPEED_KMH
        path = self.path_geometries.get(path_id)
        if path is None:
            return resolve_speed(None, default, cap)
        return path_average_speed(path, self.traffic, default, cap)

    def baseline_travel_seconds(self) -> float:
        """Travel time of one truck on the primary path at the default speed."""
        if self.config is None:
            return 1800.0
        path = self.path_geometries.get(self.config.route_selector)
        if path is None or path.total_distance_km <= 0:
            return 1800.0
        speed = resolve_speed(None, self.config.default_speed_kmh, self.config.speed_cap_kmh)
        return path.total_distance_km / speed * SECONDS_PER_HOUR

    # ----- dispatch and tick -----

    def _usable_path(self, path_id: str) -> Optional[StitchedPath]:
        path = self.path_geometries.get(path_id)
        if path is None or not path.coordinates:
            return None
        return path

    def _next_truck_id(self) -> str:
        truck_id = f"CMX-{self.next_truck_number:03d}"
        self.next_truck_number += 1
        return truck_id

    def dispatch(self, path_id: Optional[str] = None) -> Optional[ConcreteTruck]:
        config = self.config
        if config is None or not self.running:
            return None
        path_id = path_id or config.route_selector
        path = self._usable_path(path_id)
        if path is None:
            logger.warning("No path geometry for %s; nothing dispatched", path_id)
            return None
        if self.dispatched_count >= config.total_trucks_needed:
            return None

        now = self.now()
        speed = self.current_speed(path_id)
        distance_km = path.total_distance_km
        travel_seconds = distance_km / speed * SECONDS_PER_HOUR

        truck_number = self.next_truck_number
        truck = ConcreteTruck(
            truck_id=self._next_truck_id(),
            truck_number=truck_number,
            path_id=path_id,
            departure_time=now,
            estimated_arrival=now + timedelta(seconds=travel_seconds),
            total_distance_km=distance_km,
            current_speed_kmh=speed,
            concrete_volume=config.volume_per_truck,
            current_position=path.coordinates[0],
        )
        self.trucks[truck.truck_id] = truck
        self.dispatched_count += 1
        self.next_dispatch_time = now + timedelta(minutes=config.interval_minutes)

        logger.info(
            "Dispatched %s on %s | speed %.1f km/h | ETA %.0fs",
            truck.truck_id, path_id, speed, travel_seconds,
        )
        return truck

    def tick(self, dt_seconds: float) -> None:
        config = self.config
        if config is None or not self.running:
            return

        now = self.now()
        if (
            config.auto_dispatch
            and self.next_dispatch_time is not None
            and now >= self.next_dispatch_time
        ):
            self.dispatch(config.route_selector)

        for truck in list(self.trucks.values()):
            if truck.status != TruckStatus.EN_ROUTE:
                continue
            path = self._usable_path(truck.path_id)
            if path is None:
                continue

            truck.elapsed_seconds += dt_seconds
            speed = self.current_speed(truck.path_id)
            truck.current_speed_kmh = speed

            if truck.total_distance_km > 0:
                covered_km = speed * truck.elapsed_seconds / SECONDS_PER_HOUR
                ratio = truck.advance_to(covered_km / truck.total_distance_km)
            else:
                ratio = truck.advance_to(1.0)
            truck.current_position = interpolate_position(
                path.coordinates, ratio, path.cumulative_km
            )

            remaining_km = truck.total_distance_km * (1 - ratio)
            truck.estimated_arrival = now + timedelta(
                seconds=remaining_km / speed * SECONDS_PER_HOUR
            )

            if ratio >= 1:
                self.complete_truck(truck.truck_id, now)

    # ----- completion -----

    def _hour_window(self, arrival: datetime) -> int:
        elapsed = (arrival - self.config.start_time).total_seconds()
        return max(0, math.floor(elapsed / SECONDS_PER_HOUR))

    def _archive(
        self,
        truck: ConcreteTruck,
        arrival: datetime,
        travel_seconds: Optional[float] = None,
    ) -> Optional[DeliveryRecord]:
        """Mark ``truck`` arrived and append its log record, once."""
        if self.config is None or truck.status == TruckStatus.ARRIVED:
            return None
        if travel_seconds is None:
            travel_seconds = truck.elapsed_seconds

        truck.status = TruckStatus.ARRIVED
        truck.arrival_time = arrival
        truck.progress_ratio = 1.0
        path = self._usable_path(truck.path_id)
        if path is not None:
            truck.current_position = path.coordinates[-1]

        cumulative = self.total_delivered() + truck.concrete_volume
        record = DeliveryRecord(
            truck_id=truck.truck_id,
            truck_number=truck.truck_number,
            path_id=truck.path_id,
            departure_time=truck.departure_time,
            arrival_time=arrival,
            travel_time_seconds=travel_seconds,
            concrete_volume=truck.concrete_volume,
            cumulative_volume=cumulative,
            hour_window=self._hour_window(arrival),
            trip_id=truck.trip_id,
        )
        self.records.append(record)
        logger.info(
            "%s arrived after %.0fs | hour %d | cumulative %.1f m3",
            truck.truck_id, travel_seconds, record.hour_window, cumulative,
        )
        return record

    def complete_truck(self, truck_id: str, now: Optional[datetime] = None) -> Optional[DeliveryRecord]:
        truck = self.trucks.get(truck_id)
        if truck is None:
            return None
        now = now or self.now()
        if truck.is_db_backed:
            return self.complete_truck_from_db(truck.trip_id, now)
        return self._archive(truck, now)

    # ----- trip reconciliation -----

    def _path_for_plant(self, plant: Optional[str]) -> str:
        if plant and plant in self.plant_paths:
            return self.plant_paths[plant]
        return self.config.route_selector

    def add_truck_from_trip(
        self,
        trip: TripRecord,
        default_speed_kmh: Optional[float] = None,
    ) -> Optional[ConcreteTruck]:
        """
        Create or refresh the truck mirroring an in-progress trip.

        Returns ``None`` when the trip is skipped, otherwise the truck, which
        may already be archived if the trip has run its full travel time.
        """
        config = self.config
        if config is None or trip.status != TRIP_IN_PROGRESS or trip.actual_start_at is None:
            return None
        trip_id = str(trip.id)
        if trip_id in self._archived_trips:
            return None

        truck_id = self.trip_trucks.get(trip_id)
        truck = self.trucks.get(truck_id) if truck_id else None
        if truck_id is not None and truck is None:
            # Mapped earlier but gone from the fleet: already completed.
            self._archived_trips.add(trip_id)
            return None

        path_id = truck.path_id if truck else self._path_for_plant(trip.concrete_plant)
        path = self._usable_path(path_id)
        if path is None:
            logger.warning("Trip %s: no path geometry for %s", trip_id, path_id)
            return None

        now = self.now()
        speed = resolve_speed(
            None,
            default_speed_kmh if default_speed_kmh is not None else config.default_speed_kmh,
            config.speed_cap_kmh,
        )
        elapsed = max(0.0, (now - trip.actual_start_at).total_seconds())
        travel_seconds = path.total_distance_km / speed * SECONDS_PER_HOUR
        ratio = min(elapsed / travel_seconds, 1.0) if travel_seconds > 0 else 1.0

        if truck is None:
            truck_number = self.next_truck_number
            truck = ConcreteTruck(
                truck_id=self._next_truck_id(),
                truck_number=truck_number,
                path_id=path_id,
                departure_time=trip.actual_start_at,
                estimated_arrival=trip.actual_start_at + timedelta(seconds=travel_seconds),
                total_distance_km=path.total_distance_km,
                current_speed_kmh=speed,
                concrete_volume=config.volume_per_truck,
                trip_id=trip_id,
                vehicle_id=trip.vehicle_id,
            )
            self.trucks[truck.truck_id] = truck
            self.trip_trucks[trip_id] = truck.truck_id
            logger.info("Tracking trip %s (vehicle %s) as %s", trip_id, trip.vehicle_id, truck.truck_id)

        ratio = truck.advance_to(ratio)
        truck.elapsed_seconds = max(truck.elapsed_seconds, elapsed)
        truck.current_position = interpolate_position(path.coordinates, ratio, path.cumulative_km)
        if truck.status == TruckStatus.EN_ROUTE:
            remaining_km = truck.total_distance_km * (1 - ratio)
            truck.estimated_arrival = now + timedelta(
                seconds=remaining_km / truck.current_speed_kmh * SECONDS_PER_HOUR
            )

        if ratio >= 1:
            self.complete_truck_from_db(trip_id, now)
        return truck

    def hydrate_from_trips(
        self,
        trips: Iterable[TripRecord],
        default_speed_kmh: Optional[float] = None,
    ) -> int:
        touched = 0
        for trip in trips:
            if trip.status != TRIP_IN_PROGRESS:
                continue
            if self.add_truck_from_trip(trip, default_speed_kmh) is not None:
                touched += 1
        return touched

    def complete_truck_from_db(
        self,
        trip_id: str,
        arrival_time: Optional[datetime] = None,
    ) -> Optional[DeliveryRecord]:
        """
        Archive the truck mirroring ``trip_id`` and drop it from the fleet,
        so the next trip sync cannot process it again.
        """
        trip_id = str(trip_id)
        truck_id = self.trip_trucks.get(trip_id)
        truck = self.trucks.get(truck_id) if truck_id else None
        if truck is None:
            return None

        arrival_time = arrival_time or self.now()
        travel_seconds = max(0.0, (arrival_time - truck.departure_time).total_seconds())
        record = self._archive(truck, arrival_time, travel_seconds)
        del self.trucks[truck.truck_id]
        del self.trip_trucks[trip_id]
        self._archived_trips.add(trip_id)
        return record

    def prune_inactive_trips(self, active_trip_ids: Iterable) -> List[str]:
        active = {str(trip_id) for trip_id in active_trip_ids}
        pruned: List[str] = []
        for trip_id, truck_id in list(self.trip_trucks.items()):
            if trip_id in active:
                continue
            self.trucks.pop(truck_id, None)
            del self.trip_trucks[trip_id]
            pruned.append(trip_id)
        self._archived_trips &= active
        if pruned:
            logger.info("Pruned %d trucks whose trips are no longer in progress", len(pruned))
        return pruned

    def sync_trips(
        self,
        trips: Iterable[TripRecord],
        default_speed_kmh: Optional[float] = None,
    ) -> Dict:
        """
        Reconcile the fleet with the current trip list: archive tracked
        trips that now carry an arrival, hydrate in-progress trips, and drop
        trucks whose trips have vanished.
        """
        trips = list(trips)
        completed = 0
        for trip in trips:
            if trip.status == TRIP_IN_PROGRESS or trip.actual_arrival_at is None:
                continue
            if self.complete_truck_from_db(trip.id, trip.actual_arrival_at) is not None:
                completed += 1

        in_progress = [trip for trip in trips if trip.status == TRIP_IN_PROGRESS]
        touched = self.hydrate_from_trips(in_progress, default_speed_kmh)
        pruned = self.prune_inactive_trips(trip.id for trip in in_progress)
        logger.debug(
            "Synced %d in-progress trips, completed %d, pruned %d",
            len(in_progress), completed, len(pruned),
        )
        return {
            "in_progress": len(in_progress),
            "tracked": touched,
            "completed": completed,
            "pruned": len(pruned),
        }

    # ----- queries -----

    def get_trucks(self) -> List[ConcreteTruck]:
        return list(self.trucks.values())

    def get_delivery_records(self) -> List[DeliveryRecord]:
        return list(self.records)

    def total_delivered(self) -> float:
        return sum(record.concrete_volume for record in self.records)

    def active_count(self) -> int:
        return sum(1 for truck in self.trucks.values() if truck.status == TruckStatus.EN_ROUTE)

    def completed_count(self) -> int:
        return len(self.records)

    def throughput(self, now: Optional[datetime] = None) -> Optional[Dict]:
        config = self.config
        if config is None:
            return None
        now = now or self.now()

        elapsed_hours = max(0.0, (now - config.start_time).total_seconds() / SECONDS_PER_HOUR)
        target_rate = config.trucks_per_hour
        total_needed = config.total_trucks_needed
        completed = len(self.records)
        expected_by_now = min(target_rate * elapsed_hours, total_needed)

        arrivals = Counter(record.hour_window for record in self.records)
        hourly = []
        for hour in range(math.floor(elapsed_hours) + 1):
            fraction = min(max(elapsed_hours - hour, 0.0), 1.0)
            target = target_rate * fraction
            actual = arrivals.get(hour, 0)
            hourly.append({
                "hour": hour,
                "target": round(target, 2),
                "actual": actual,
                "diff": round(actual - target, 2),
            })

        actual_rate = completed / elapsed_hours if elapsed_hours > 0 else 0.0
        remaining = max(0, total_needed - completed)
        planned_finish = now + timedelta(
            hours=remaining / target_rate, seconds=self.baseline_travel_seconds()
        )
        projected_finish = None
        delay_minutes = 0
        if actual_rate > 0:
            projected_finish = now + timedelta(hours=remaining / actual_rate)
            delay_minutes = max(
                0, round((projected_finish - planned_finish).total_seconds() / 60)
            )

        return {
            "elapsed_hours": round(elapsed_hours, 3),
            "expected_by_now": round(expected_by_now, 2),
            "actual": completed,
            "target_rate_per_hour": target_rate,
            "actual_rate_per_hour": round(actual_rate, 2),
            "behind_schedule": expected_by_now > completed,
            "hourly": hourly,
            "planned_finish": _iso(planned_finish),
            "projected_finish": _iso(projected_finish),
            "delay_minutes": delay_minutes,
        }

    def status(self, now: Optional[datetime] = None) -> Optional[Dict]:
        config = self.config
        if config is None:
            return None
        now = now or self.now()

        total_needed = config.total_trucks_needed
        delivered = self.total_delivered()
        completed = len(self.records)
        en_route = self.active_count()
        throughput = self.throughput(now)

        elapsed_hours = max(0.0, (now - config.start_time).total_seconds() / SECONDS_PER_HOUR)
        actual_rate = completed / elapsed_hours if elapsed_hours > 0 else 0.0
        trucks_remaining = max(0, total_needed - completed)
        estimated_completion = None
        if actual_rate > 0:
            estimated_completion = now + timedelta(hours=trucks_remaining / actual_rate)

        return {
            "config": config.to_dict(),
            "progress": {
                "running": self.running,
                "delivered": delivered,
                "remaining": max(0.0, config.target_volume - delivered),
                "percent_complete": (
                    round(delivered / config.target_volume * 100) if config.target_volume > 0 else 0
                ),
                "total_trucks_needed": total_needed,
                "trucks_dispatched": self.dispatched_count,
                "trucks_completed": completed,
                "trucks_en_route": en_route,
                "trucks_waiting": max(0, total_needed - completed - en_route),
                "delay_minutes": throughput["delay_minutes"],
                "estimated_completion": _iso(estimated_completion),
            },
            "throughput": throughput,
            "trucks": [truck.to_dict(now) for truck in self.trucks.values()],
            "delivery_log": [record.to_dict() for record in self.records],
            "timestamp": _iso(now),
        }
