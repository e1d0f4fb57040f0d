"""
Distance and interpolation helpers for corridor geometry.

Coordinates are GeoJSON ordered ``(lng, lat)`` pairs throughout.
"""
from __future__ import annotations

import bisect
import math
from typing import List, Optional, Sequence, Tuple

EARTH_RADIUS_KM = 6371.0088

Coordinate = Tuple[float, float]


def haversine_km(start: Sequence[float], end: Sequence[float]) -> float:
    """
    Compute the great-circle distance between two (lng, lat) coordinates in kilometres.
    """
    lng1, lat1 = map(math.radians, start[:2])
    lng2, lat2 = map(math.radians, end[:2])
    d_lat = lat2 - lat1
    d_lng = lng2 - lng1
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def cumulative_km(coords: Sequence[Sequence[float]]) -> List[float]:
    cumulative: List[float] = [0.0]
    for start, end in zip(coords[:-1], coords[1:]):
        cumulative.append(cumulative[-1] + haversine_km(start, end))
    return cumulative


def path_length_km(coords: Sequence[Sequence[float]]) -> float:
    if len(coords) < 2:
        return 0.0
    return cumulative_km(coords)[-1]


def interpolate_position(
    coords: Sequence[Sequence[float]],
    progress_ratio: float,
    cumulative: Optional[Sequence[float]] = None,
) -> Coordinate:
    """
    Return the point lying ``progress_ratio`` of the way along the polyline,
    measured by haversine distance. Pass ``cumulative`` to reuse precomputed
    per-vertex distances.
    """
    if not coords:
        return (0.0, 0.0)

    first = (float(coords[0][0]), float(coords[0][1]))
    last = (float(coords[-1][0]), float(coords[-1][1]))
    if len(coords) == 1:
        return first

    if cumulative is None:
        cumulative = cumulative_km(coords)

    ratio = min(max(progress_ratio, 0.0), 1.0)
    distance_km = cumulative[-1] * ratio
    if distance_km <= 0:
        return first
    if distance_km >= cumulative[-1]:
        return last

    idx = bisect.bisect_left(cumulative, distance_km)
    if cumulative[idx] == distance_km:
        return (float(coords[idx][0]), float(coords[idx][1]))

    prev_idx = max(idx - 1, 0)
    start_lng, start_lat = coords[prev_idx][0], coords[prev_idx][1]
    end_lng, end_lat = coords[idx][0], coords[idx][1]
    segment_distance = cumulative[idx] - cumulative[prev_idx]
    if segment_distance <= 0:
        return (float(start_lng), float(start_lat))

    ratio = (distance_km - cumulative[prev_idx]) / segment_distance
    lng = start_lng + (end_lng - start_lng) * ratio
    lat = start_lat + (end_lat - start_lat) * ratio
    return (lng, lat)


def format_duration(seconds: float) -> str:
    """Format a duration as HH:MM:SS."""
    seconds = max(int(seconds), 0)
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
