"""
Live corridor speeds from the traffic detector feed.

The feed publishes an average speed per road segment; segment ids line up
with corridor route ids. Samples are cached per corridor and stay
authoritative until the next successful fetch overwrites them.
"""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Mapping, Optional

import requests
from django.conf import settings

LOGGER = logging.getLogger(__name__)

RED_BELOW_KMH = 30.0
YELLOW_BELOW_KMH = 50.0


class TrafficState(str, Enum):
    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


@dataclass
class TrafficSample:
    corridor_id: int
    state: TrafficState
    speed_kmh: float
    last_updated: datetime

    def to_dict(self) -> Dict:
        return {
            "id": self.corridor_id,
            "state": self.state.value,
            "speed_kmh": round(self.speed_kmh, 1),
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class SpeedReading:
    segment_id: int
    speed: float
    valid: bool
    capture_date: Optional[str] = None
    capture_time: Optional[str] = None


def speed_to_state(speed: float) -> TrafficState:
    if speed < RED_BELOW_KMH:
        return TrafficState.RED
    if speed < YELLOW_BELOW_KMH:
        return TrafficState.YELLOW
    return TrafficState.GREEN


class TrafficCache:
    """
    Corridor id -> latest TrafficSample. No eviction: a sample is replaced
    only by a newer observation for the same corridor.
    """

    def __init__(self):
        self._samples: Dict[int, TrafficSample] = {}
        self.last_refreshed: Optional[datetime] = None

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[TrafficSample]:
        return iter(list(self._samples.values()))

    def ids(self) -> List[int]:
        return list(self._samples)

    def update(
        self,
        corridor_id: int,
        state: TrafficState,
        speed_kmh: float,
        now: Optional[datetime] = None,
    ) -> TrafficSample:
        now = now or datetime.now(timezone.utc)
        sample = self._samples.get(corridor_id)
        if sample is None:
            sample = TrafficSample(corridor_id, state, speed_kmh, now)
            self._samples[corridor_id] = sample
        else:
            sample.state = state
            sample.speed_kmh = speed_kmh
            sample.last_updated = now
        return sample

    def lookup(self, corridor_id: int) -> Optional[TrafficSample]:
        return self._samples.get(corridor_id)

    def clear(self) -> None:
        self._samples.clear()
        self.last_refreshed = None


def _field(element: ET.Element, *names: str) -> Optional[str]:
    for name in names:
        value = element.findtext(name)
        if value is None:
            value = element.get(name)
        if value is not None:
            return value.strip()
    return None


def parse_speed_xml(xml_text: str) -> Dict[int, SpeedReading]:
    root = ET.fromstring(xml_text)
    capture_date = _field(root, "date")
    capture_time = _field(root, "time")

    readings: Dict[int, SpeedReading] = {}
    for segment in root.iter("segment"):
        try:
            segment_id = int(_field(segment, "segment_id", "segmentid") or 0)
            speed = float(_field(segment, "speed") or 0)
        except ValueError:
            continue
        if segment_id <= 0 or speed < 0:
            continue
        readings[segment_id] = SpeedReading(
            segment_id=segment_id,
            speed=speed,
            valid=(_field(segment, "valid") or "").upper() == "Y",
            capture_date=capture_date,
            capture_time=capture_time,
        )
    return readings


def fetch_traffic_speed_map(url: Optional[str] = None) -> Dict[int, SpeedReading]:
    """
    Download and parse the detector speed feed. Failures are logged and
    produce an empty mapping so cached samples stay in place.
    """
    url = url or settings.TRAFFIC_CONFIG.get("feed_url")
    if not url:
        return {}

    LOGGER.info("Fetching traffic speeds from %s", url)
    try:
        response = requests.get(url, timeout=settings.TRAFFIC_CONFIG.get("timeout_seconds", 10))
        response.raise_for_status()
        readings = parse_speed_xml(response.text)
    except requests.exceptions.RequestException as error:
        LOGGER.warning("Traffic speed request failed: %s", error)
        return {}
    except ET.ParseError as error:
        LOGGER.warning("Traffic speed feed could not be parsed: %s", error)
        return {}

    valid_count = sum(1 for reading in readings.values() if reading.valid)
    LOGGER.info("Fetched traffic data for %d segments (%d valid)", len(readings), valid_count)
    return readings


def refresh_traffic(
    cache: TrafficCache,
    store,
    speed_map: Mapping[int, SpeedReading],
    now: Optional[datetime] = None,
) -> int:
    """Apply a fetched speed map to the cache for corridors the store knows."""
    now = now or datetime.now(timezone.utc)
    updated = 0
    for segment_id, reading in speed_map.items():
        if segment_id not in store:
            continue
        cache.update(segment_id, speed_to_state(reading.speed), reading.speed, now)
        updated += 1
    cache.last_refreshed = now
    LOGGER.info("Updated traffic state for %d corridors", updated)
    return updated


def get_traffic_snapshot(cache: TrafficCache) -> Dict:
    samples = sorted(cache, key=lambda sample: sample.corridor_id)
    counts = {state.value: 0 for state in TrafficState}
    for sample in samples:
        counts[sample.state.value] += 1
    return {
        "source": settings.TRAFFIC_CONFIG.get("provider", ""),
        "generated": (cache.last_refreshed or datetime.now(timezone.utc)).isoformat(),
        "counts": counts,
        "corridors": [sample.to_dict() for sample in samples],
    }
