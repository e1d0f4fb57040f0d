"""
In-memory corridor registry fed from the project GeoJSON export and the
road centreline WFS service.
"""
from __future__ import annotations

import json
import logging
import re
import threading
from typing import Dict, Iterable, List, Mapping, Optional, Set

import requests
from django.conf import settings

logger = logging.getLogger(__name__)

WFS_PAGE_SIZE = 10000
WFS_MAX_PAGES = 2
WFS_QUERY = {
    "service": "wfs",
    "request": "GetFeature",
    "typenames": "CENTERLINE",
    "outputFormat": "geojson",
    "srsName": "EPSG:4326",
    "filter": (
        "<Filter><Intersects><PropertyName>SHAPE</PropertyName>"
        "<gml:Envelope srsName='EPSG:4326'><gml:lowerCorner>22.15 113.81</gml:lowerCorner>"
        "<gml:upperCorner>22.62 114.45</gml:upperCorner></gml:Envelope></Intersects></Filter>"
    ),
}

_ROUTE_ID_TAGGED = re.compile(r"ROUTE_ID</[^>]*>[^<]*<[^>]*>(\d+)")
_ROUTE_ID_LOOSE = re.compile(r"ROUTE_ID[^<]*<[^>]*>(\d+)")
_NUMBER = re.compile(r"\d+")


def extract_route_id(feature: Mapping, known_ids: Iterable[int] = ()) -> Optional[int]:
    """
    Find the route id of a corridor feature, either from a ``ROUTE_ID``
    property or from the HTML table in its ``description``.
    """
    properties = feature.get("properties") or {}
    route_id = properties.get("ROUTE_ID")
    if route_id:
        try:
            return int(route_id)
        except (TypeError, ValueError):
            pass

    description = str(properties.get("description") or "")
    for pattern in (_ROUTE_ID_TAGGED, _ROUTE_ID_LOOSE):
        match = pattern.search(description)
        if match:
            return int(match.group(1))

    known = set(known_ids)
    for number in _NUMBER.findall(description):
        if int(number) in known:
            return int(number)
    return None


class CorridorStore:
    """Corridor features keyed by integer route id."""

    def __init__(self):
        self._features: Dict[int, Dict] = {}
        self._filtered: Dict[int, Dict] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._features)

    def __contains__(self, route_id) -> bool:
        return route_id in self._features

    def ids(self) -> List[int]:
        return list(self._features)

    def add(self, route_id: int, feature: Mapping) -> None:
        with self._lock:
            self._features[int(route_id)] = dict(feature)

    def add_many(self, batch: Mapping[int, Mapping]) -> int:
        with self._lock:
            for route_id, feature in batch.items():
                self._features[int(route_id)] = dict(feature)
        return len(batch)

    def clear(self) -> None:
        with self._lock:
            self._features.clear()
            self._filtered.clear()

    def get(self, route_id: int) -> Optional[Dict]:
        return self._features.get(route_id)

    def get_corridor_geometry(self, route_id: int) -> Optional[Dict]:
        feature = self._features.get(route_id)
        if not feature:
            return None
        return feature.get("geometry")

    def load_geojson(self, path: str, project_route_ids: Iterable[int] = ()) -> int:
        project_ids = set(project_route_ids)
        with open(path, "r", encoding="utf-8") as handle:
            collection = json.load(handle)

        batch: Dict[int, Dict] = {}
        for feature in collection.get("features", []):
            route_id = extract_route_id(feature, project_ids)
            if route_id:
                batch[route_id] = feature
        self.add_many(batch)

        project_count = len(project_ids.intersection(batch))
        logger.info(
            "Loaded %d corridors (%d project corridors) from %s", len(batch), project_count, path
        )
        return len(batch)

    def build_filtered(self, traffic_ids: Iterable[int], project_ids: Iterable[int]) -> int:
        keep: Set[int] = set(traffic_ids) | set(project_ids)
        with self._lock:
            self._filtered = {
                route_id: feature
                for route_id, feature in self._features.items()
                if route_id in keep
            }
        logger.info("Filtered corridors: %d routes", len(self._filtered))
        return len(self._filtered)

    def filtered(self) -> Dict[int, Dict]:
        return dict(self._filtered or self._features)


def fetch_wfs_corridors(
    store: CorridorStore,
    url: Optional[str] = None,
    page_size: int = WFS_PAGE_SIZE,
    max_pages: int = WFS_MAX_PAGES,
) -> int:
    """
    Page through the centreline WFS and add every feature carrying a
    ``ROUTE_ID`` to ``store``. Request failures propagate to the caller.
    """
    url = url or settings.CORRIDOR_WFS_URL
    timeout = settings.TRAFFIC_CONFIG.get("timeout_seconds", 10)
    total_added = 0

    for page in range(max_pages):
        start_index = page * page_size
        params = dict(WFS_QUERY, maxFeatures=page_size, startIndex=start_index)
        logger.info("Fetching WFS page startIndex=%d", start_index)
        response = requests.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        features = response.json().get("features") or []
        if not features:
            logger.info("No more WFS features, stopping paging.")
            break

        batch: Dict[int, Dict] = {}
        for feature in features:
            properties = feature.get("properties") or {}
            route_id = properties.get("ROUTE_ID")
            if not route_id:
                continue
            batch[int(route_id)] = {
                "type": feature.get("type", "Feature"),
                "properties": dict(properties, IS_FROM_WFS=True),
                "geometry": feature.get("geometry"),
            }
        total_added += store.add_many(batch)
        logger.info("WFS page startIndex=%d added %d routes", start_index, len(batch))
    else:
        logger.info("Reached max WFS pages (%d), stopping.", max_pages)

    return total_added


_STORE = CorridorStore()


def get_corridor_store() -> CorridorStore:
    return _STORE
