from __future__ import annotations

import json
import logging

from django.conf import settings
from django.http import JsonResponse
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from django.views.generic import View

from .coordinator import get_coordinator
from .engine import DeliveryConfig, resolve_speed
from .forms import DeliveryStartForm, TripArriveForm, TripFilterForm, TripStartForm
from .geo import format_duration, path_length_km
from .stitcher import build_path_geometries, corridor_coordinates
from .traffic import get_traffic_snapshot
from .trips import (
    complete_trip,
    insert_trip,
    list_today_trips,
    to_trip_record,
    trip_count_status,
)

logger = logging.getLogger(__name__)


def _json_body(request):
    if not request.body:
        return {}
    return json.loads(request.body)


def _trip_dict(trip):
    return {
        "id": str(trip.id),
        "vehicle_id": trip.vehicle_id,
        "actual_start_at": trip.actual_start_at.isoformat(),
        "actual_arrival_at": trip.actual_arrival_at.isoformat() if trip.actual_arrival_at else None,
        "status": trip.status,
        "corrected": trip.corrected,
        "concrete_plant": trip.concrete_plant,
    }


def _truck_payload(session):
    now = session.now()
    trucks = [truck.to_dict(now) for truck in session.get_trucks()]
    return {"trucks": trucks, "count": len(trucks), "timestamp": now.isoformat()}


def _record_payload(session):
    records = [record.to_dict() for record in session.get_delivery_records()]
    return {
        "records": records,
        "count": len(records),
        "total_delivered": session.total_delivered(),
    }


@method_decorator(csrf_exempt, name="dispatch")
class DeliveryStartView(View):
    def post(self, request, *args, **kwargs):
        try:
            data = _json_body(request)
        except json.JSONDecodeError:
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        form = DeliveryStartForm(data)
        if not form.is_valid():
            return JsonResponse({"error": "Invalid delivery settings", "fields": form.errors}, status=400)
        cleaned = form.cleaned_data

        coordinator = get_coordinator()
        delivery_config = settings.DELIVERY_CONFIG
        paths = build_path_geometries(
            settings.DELIVERY_PATHS, coordinator.store, delivery_config["stitch_anchor"]
        )
        if not paths.get(cleaned["path_id"]):
            return JsonResponse({"error": "No path geometry found"}, status=400)

        try:
            config = DeliveryConfig(
                route_selector=cleaned["path_id"],
                target_volume=cleaned["target_volume"],
                volume_per_truck=cleaned["volume_per_truck"],
                trucks_per_hour=cleaned["trucks_per_hour"],
                start_time=cleaned.get("start_time"),
                default_speed_kmh=cleaned["default_speed"],
                speed_cap_kmh=delivery_config["speed_cap_kmh"],
                auto_dispatch=cleaned["auto_dispatch"],
            )
        except ValueError as e:
            return JsonResponse({"error": str(e)}, status=400)

        try:
            result = coordinator.call(coordinator.session.start, config, paths)
        except Exception as e:
            logger.error(f"Error starting delivery: {e}")
            return JsonResponse({"error": "An unexpected error occurred"}, status=500)
        return JsonResponse(result)


@method_decorator(csrf_exempt, name="dispatch")
class DeliveryStopView(View):
    def post(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        coordinator.call(coordinator.session.stop)
        status = coordinator.call(coordinator.session.status) or {}
        return JsonResponse({"message": "Delivery stopped", **status})


@method_decorator(csrf_exempt, name="dispatch")
class DeliveryResetView(View):
    def post(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        coordinator.call(coordinator.session.reset)
        return JsonResponse({"message": "Delivery session reset"})


class DeliveryStatusView(View):
    def get(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        status = coordinator.call(coordinator.session.status)
        if status is None:
            return JsonResponse({"error": "No active delivery session"}, status=404)
        return JsonResponse(status)


class TruckListView(View):
    def get(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        return JsonResponse(coordinator.call(_truck_payload, coordinator.session))


class DeliveryRecordListView(View):
    def get(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        return JsonResponse(coordinator.call(_record_payload, coordinator.session))


class TrafficDataAPIView(View):
    def get(self, request, *args, **kwargs):
        coordinator = get_coordinator()
        return JsonResponse(coordinator.call(get_traffic_snapshot, coordinator.traffic))


class RouteTrackingView(View):
    def get(self, request, route_id, *args, **kwargs):
        coordinator = get_coordinator()
        corridor = coordinator.store.get(route_id)
        if corridor is None:
            return JsonResponse(
                {
                    "error": f"Route {route_id} not found",
                    "available_routes": list(coordinator.store.filtered())[:10],
                },
                status=404,
            )

        delivery_config = settings.DELIVERY_CONFIG
        distance_km = path_length_km(corridor_coordinates(corridor.get("geometry")))
        sample = coordinator.call(coordinator.traffic.lookup, route_id)
        speed = resolve_speed(
            sample, delivery_config["no_data_speed_kmh"], delivery_config["speed_cap_kmh"]
        )
        properties = corridor.get("properties") or {}
        payload = coordinator.call(_truck_payload, coordinator.session)
        payload.update(
            {
                "route": {
                    "id": route_id,
                    "name": properties.get("NAME", "Unknown"),
                    "distance_km": round(distance_km, 2),
                    "speed_kmh": round(speed, 1),
                    "traffic": sample.to_dict() if sample else None,
                    "estimated_time": format_duration(distance_km / speed * 3600),
                },
                "statistics": {
                    "total_delivered": coordinator.session.total_delivered(),
                    "active_count": coordinator.session.active_count(),
                    "completed_count": coordinator.session.completed_count(),
                },
            }
        )
        return JsonResponse(payload)


@method_decorator(csrf_exempt, name="dispatch")
class TripStartView(View):
    def post(self, request, *args, **kwargs):
        try:
            form = TripStartForm(_json_body(request))
        except json.JSONDecodeError:
            return JsonResponse({"ok": False, "error": "Invalid JSON"}, status=400)
        if not form.is_valid():
            return JsonResponse({"ok": False, "error": form.errors}, status=400)

        try:
            trip = insert_trip(
                form.cleaned_data["vehicle_id"],
                form.cleaned_data.get("actual_start_at"),
                form.cleaned_data["concrete_plant"],
                form.cleaned_data.get("corrected", False),
            )
            coordinator = get_coordinator()
            truck = coordinator.call(
                coordinator.session.add_truck_from_trip,
                to_trip_record(trip),
                coordinator.default_speed_kmh,
            )
        except Exception as e:
            logger.error(f"Error starting trip: {e}")
            return JsonResponse({"ok": False, "error": "An unexpected error occurred"}, status=500)

        return JsonResponse(
            {"ok": True, "trip": _trip_dict(trip), "truck_id": truck.truck_id if truck else None},
            status=201,
        )


@method_decorator(csrf_exempt, name="dispatch")
class TripArriveView(View):
    def post(self, request, trip_id, *args, **kwargs):
        try:
            form = TripArriveForm(_json_body(request))
        except json.JSONDecodeError:
            return JsonResponse({"ok": False, "error": "Invalid JSON"}, status=400)
        if not form.is_valid():
            return JsonResponse({"ok": False, "error": form.errors}, status=400)

        try:
            trip = complete_trip(
                trip_id,
                form.cleaned_data.get("actual_arrival_at"),
                form.cleaned_data.get("corrected"),
            )
            if trip is None:
                return JsonResponse({"ok": False, "error": "Trip not found"}, status=404)
            coordinator = get_coordinator()
            record = coordinator.call(
                coordinator.session.complete_truck_from_db, str(trip.id), trip.actual_arrival_at
            )
        except Exception as e:
            logger.error(f"Error completing trip {trip_id}: {e}")
            return JsonResponse({"ok": False, "error": "An unexpected error occurred"}, status=500)

        return JsonResponse(
            {
                "ok": True,
                "trip": _trip_dict(trip),
                "delivery_record": record.to_dict() if record else None,
            }
        )


class TodayTripsView(View):
    def get(self, request, *args, **kwargs):
        form = TripFilterForm(request.GET)
        if not form.is_valid():
            return JsonResponse({"ok": False, "error": form.errors}, status=400)
        trips = list_today_trips(
            form.cleaned_data.get("date"),
            form.cleaned_data.get("hour_from"),
            form.cleaned_data.get("hour_to"),
        )
        return JsonResponse({"ok": True, "trips": [_trip_dict(trip) for trip in trips]})


class SimpleStatusView(View):
    def get(self, request, *args, **kwargs):
        return JsonResponse({"ok": True, **trip_count_status()})
