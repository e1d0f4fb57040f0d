"""
Trip and delivery target queries.

"Today" is the local date in ``settings.TIME_ZONE``; trips belong to the day
their ``actual_start_at`` falls on.
"""
from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from django.utils import timezone

from .engine import TripRecord
from .models import ConcretePlant, DeliveryTarget, Trip, TripStatus

logger = logging.getLogger(__name__)

DISPLAY_START_HOUR = 7
DISPLAY_END_HOUR = 24
TODAY_TRIPS_LIMIT = 200


def _local_bounds(day: date, hour_from: Optional[int] = None, hour_to: Optional[int] = None):
    midnight = timezone.make_aware(datetime.combine(day, time.min))
    start = midnight + timedelta(hours=hour_from or 0)
    end = midnight + timedelta(hours=hour_to if hour_to is not None else 24)
    return start, end


def to_trip_record(trip: Trip) -> TripRecord:
    return TripRecord(
        id=str(trip.id),
        vehicle_id=trip.vehicle_id,
        actual_start_at=trip.actual_start_at,
        actual_arrival_at=trip.actual_arrival_at,
        status=trip.status,
        concrete_plant=trip.concrete_plant,
    )


def list_today_trips(
    day: Optional[date] = None,
    hour_from: Optional[int] = None,
    hour_to: Optional[int] = None,
    limit: int = TODAY_TRIPS_LIMIT,
) -> List[Trip]:
    start, end = _local_bounds(day or timezone.localdate(), hour_from, hour_to)
    queryset = Trip.objects.filter(actual_start_at__gte=start, actual_start_at__lt=end)
    return list(queryset.order_by("actual_start_at")[:limit])


def today_trip_records() -> List[TripRecord]:
    start, end = _local_bounds(timezone.localdate())
    trips = Trip.objects.filter(actual_start_at__gte=start, actual_start_at__lt=end)
    return [to_trip_record(trip) for trip in trips.order_by("actual_start_at")]


def today_in_progress_trips() -> List[TripRecord]:
    return [record for record in today_trip_records() if record.status == TripStatus.IN_PROGRESS]


def insert_trip(
    vehicle_id: str,
    actual_start_at: Optional[datetime] = None,
    concrete_plant: Optional[str] = None,
    corrected: bool = False,
) -> Trip:
    if concrete_plant not in ConcretePlant.values:
        concrete_plant = ConcretePlant.GAMMON_TUEN_MUN
    trip = Trip.objects.create(
        vehicle_id=vehicle_id,
        actual_start_at=actual_start_at or timezone.now(),
        concrete_plant=concrete_plant,
        status=TripStatus.IN_PROGRESS,
        corrected=corrected,
    )
    logger.info("Trip %s started for vehicle %s from %s", trip.id, vehicle_id, concrete_plant)
    return trip


def complete_trip(
    trip_id,
    actual_arrival_at: Optional[datetime] = None,
    corrected: Optional[bool] = None,
) -> Optional[Trip]:
    trip = Trip.objects.filter(pk=trip_id).first()
    if trip is None:
        return None
    trip.actual_arrival_at = actual_arrival_at or timezone.now()
    trip.status = TripStatus.COMPLETED
    if corrected is not None:
        trip.corrected = corrected
    trip.save(update_fields=["actual_arrival_at", "status", "corrected", "updated_at"])
    logger.info("Trip %s completed at %s", trip.id, trip.actual_arrival_at.isoformat())
    return trip


def _today_target_row(day: Optional[date] = None) -> Optional[DeliveryTarget]:
    return (
        DeliveryTarget.objects.filter(operation_date=day or timezone.localdate())
        .order_by("-updated_at", "-created_at")
        .first()
    )


def today_delivery_target(day: Optional[date] = None) -> Optional[Dict]:
    row = _today_target_row(day)
    if row is None:
        return None
    start_at = timezone.make_aware(datetime.combine(row.operation_date, row.work_start_hour))
    return {
        "target_volume": float(row.target_concrete_volume) or 600.0,
        "trucks_per_hour": float(row.planned_trucks_per_hour) or 12.0,
        "start_time": start_at,
        "end_time": row.work_end_hour,
    }


def today_truck_plan(day: Optional[date] = None) -> Optional[Dict]:
    row = _today_target_row(day)
    if row is None:
        return None

    start_minutes = row.work_start_hour.hour * 60 + row.work_start_hour.minute
    end_minutes = row.work_end_hour.hour * 60 + row.work_end_hour.minute
    working_hours = max(0, end_minutes - start_minutes) / 60

    plan = row.hourly_plan or {}
    hourly_plan = {
        hour: int(plan.get(str(hour)) or 0)
        for hour in range(DISPLAY_START_HOUR, DISPLAY_END_HOUR)
    }
    return {
        "operation_date": row.operation_date.isoformat(),
        "trucks_per_hour": row.planned_trucks_per_hour,
        "working_hours": working_hours,
        "work_start": row.work_start_hour.strftime("%H:%M"),
        "work_end": row.work_end_hour.strftime("%H:%M"),
        "target_volume": row.target_concrete_volume,
        "hourly_plan": hourly_plan,
        "planned_trips_total": sum(hourly_plan.values()),
    }


def trip_count_status(now: Optional[datetime] = None) -> Dict:
    """
    Compare planned and completed trips per local hour. The shortfall only
    counts hours that have fully passed.
    """
    plan = today_truck_plan()
    if plan is None:
        return {"has_plan": False, "message": "No delivery target for today"}

    now = timezone.localtime(now or timezone.now())
    records = today_trip_records()
    completed = [record for record in records if record.status == TripStatus.COMPLETED]
    in_progress = [record for record in records if record.status == TripStatus.IN_PROGRESS]

    buckets = {
        hour: {"hour": hour, "planned": planned, "actual": 0}
        for hour, planned in plan["hourly_plan"].items()
    }
    for record in completed:
        if record.actual_arrival_at is None:
            continue
        hour = timezone.localtime(record.actual_arrival_at).hour
        if hour in buckets:
            buckets[hour]["actual"] += 1

    timeline = [buckets[hour] for hour in sorted(buckets)]
    planned_so_far = sum(b["planned"] for b in timeline if b["hour"] < now.hour)
    actual_so_far = sum(b["actual"] for b in timeline if b["hour"] < now.hour)

    planned_total = plan["planned_trips_total"]
    return {
        "has_plan": True,
        "plan": plan,
        "trips_summary": {
            "completed_count": len(completed),
            "in_progress_count": len(in_progress),
            "percent_complete": round(len(completed) / planned_total * 100) if planned_total else 0,
            "hourly_timeline": timeline,
            "total_shortfall": max(0, planned_so_far - actual_so_far),
        },
    }
