"""
Stitch disjoint corridor centrelines into one continuous plant-to-site path.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from shapely.errors import ShapelyError
from shapely.geometry import LineString, shape

from .geo import Coordinate, cumulative_km, path_length_km

logger = logging.getLogger(__name__)

JUNCTION_TOLERANCE_SQ = 1e-10


@dataclass(frozen=True)
class PathSegment:
    corridor_id: int
    length_km: float


@dataclass
class StitchedPath:
    coordinates: List[Coordinate]
    segment_count: int
    segments: Tuple[PathSegment, ...] = ()
    cumulative_km: List[float] = field(default_factory=list)

    def __post_init__(self):
        if not self.cumulative_km:
            self.cumulative_km = cumulative_km(self.coordinates)

    @property
    def total_distance_km(self) -> float:
        return self.cumulative_km[-1] if self.cumulative_km else 0.0

    @property
    def corridor_ids(self) -> List[int]:
        return [segment.corridor_id for segment in self.segments]

    def to_dict(self) -> Dict:
        return {
            "coordinates": [list(point) for point in self.coordinates],
            "segment_count": self.segment_count,
            "distance_km": round(self.total_distance_km, 2),
        }


def _squared_distance(a: Sequence[float], b: Sequence[float]) -> float:
    dx = a[0] - b[0]
    dy = a[1] - b[1]
    return dx * dx + dy * dy


def corridor_coordinates(geometry: Optional[Mapping]) -> List[Coordinate]:
    """
    Flatten a LineString or MultiLineString geometry into one coordinate list.
    Anything else, or anything shapely refuses to build, yields no coordinates.
    """
    if not geometry:
        return []
    if geometry.get("type") == "MultiLineString":
        # Only the joined line is validated; one-point parts keep their point.
        parts = geometry.get("coordinates") or []
        geometry = {
            "type": "LineString",
            "coordinates": [point for part in parts for point in (part or [])],
        }
    try:
        line = shape(geometry)
    except (ShapelyError, ValueError, TypeError, KeyError, IndexError):
        logger.warning("Skipping unreadable corridor geometry of type %s", geometry.get("type"))
        return []

    if not isinstance(line, LineString):
        return []
    return [(float(x), float(y)) for x, y, *_ in line.coords]


def stitch_path(
    corridor_ids: Iterable[int],
    store,
    anchor: Optional[Sequence[float]] = None,
) -> Optional[StitchedPath]:
    """
    Order the given corridors into one polyline by greedy nearest-endpoint
    search starting from ``anchor``.

    ``store`` must provide ``get_corridor_geometry(route_id)``. Endpoint
    matching uses squared planar distance on raw lng/lat, which is only used
    to choose the next segment and orientation, never for distances.
    """
    segments: List[Tuple[int, List[Coordinate]]] = []
    for corridor_id in corridor_ids:
        coords = corridor_coordinates(store.get_corridor_geometry(corridor_id))
        if len(coords) >= 2:
            segments.append((corridor_id, coords))

    if not segments:
        return None

    cursor: Sequence[float] = anchor if anchor is not None else segments[0][1][0]
    used = set()
    ordered: List[Coordinate] = []
    path_segments: List[PathSegment] = []

    for _ in range(len(segments)):
        best_idx = -1
        best_dist = float("inf")
        best_reverse = False
        for idx, (_, coords) in enumerate(segments):
            if idx in used:
                continue
            d_first = _squared_distance(cursor, coords[0])
            d_last = _squared_distance(cursor, coords[-1])
            if d_first < best_dist:
                best_idx, best_dist, best_reverse = idx, d_first, False
            if d_last < best_dist:
                best_idx, best_dist, best_reverse = idx, d_last, True

        if best_idx == -1:
            break
        used.add(best_idx)

        corridor_id, coords = segments[best_idx]
        oriented = list(reversed(coords)) if best_reverse else coords
        if ordered and _squared_distance(ordered[-1], oriented[0]) < JUNCTION_TOLERANCE_SQ:
            oriented = oriented[1:]
        ordered.extend(oriented)
        path_segments.append(PathSegment(corridor_id, path_length_km(coords)))
        cursor = ordered[-1]

    logger.info(
        "Stitched %d/%d segments, %d total coords", len(used), len(segments), len(ordered)
    )
    return StitchedPath(
        coordinates=ordered,
        segment_count=len(used),
        segments=tuple(path_segments),
    )


def build_path_geometries(
    paths: Mapping[str, Sequence[int]],
    store,
    anchor: Optional[Sequence[float]] = None,
) -> Dict[str, Optional[StitchedPath]]:
    """Stitch every named path; unresolvable paths map to ``None``."""
    return {
        path_id: stitch_path(corridor_ids, store, anchor)
        for path_id, corridor_ids in paths.items()
    }
