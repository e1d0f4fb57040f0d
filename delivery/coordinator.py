"""
Serialises every mutation of the delivery session through one command queue.

The tick timer, the traffic refresh and the trip sync each run on their own
timer thread. Network and database reads happen on those threads; only the
resulting state changes are queued, and a single worker applies them in
order. Before :meth:`DeliveryCoordinator.start` is called, commands run
inline under a lock, which is what request handlers and tests see.
"""
from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Callable, Dict, List, Optional

from django.conf import settings
from django.db import close_old_connections

from .corridors import CorridorStore, get_corridor_store
from .engine import DeliverySession
from .traffic import TrafficCache, fetch_traffic_speed_map, refresh_traffic

logger = logging.getLogger(__name__)

_STOP = object()


class DeliveryCoordinator:
    def __init__(
        self,
        session: DeliverySession,
        store: CorridorStore,
        tick_interval: float = 1.0,
        traffic_interval: float = 60.0,
        sync_interval: float = 5.0,
        default_speed_kmh: Optional[float] = None,
        traffic_fetcher: Optional[Callable[[], Dict]] = None,
        trip_loader: Optional[Callable[[], List]] = None,
    ):
        self.session = session
        self.store = store
        self.tick_interval = tick_interval
        self.traffic_interval = traffic_interval
        self.sync_interval = sync_interval
        self.default_speed_kmh = default_speed_kmh
        self._fetch_traffic = traffic_fetcher or fetch_traffic_speed_map
        self._load_trips = trip_loader or _load_today_trips
        self._commands: "queue.Queue" = queue.Queue()
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def traffic(self) -> TrafficCache:
        return self.session.traffic

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._stopped.is_set()

    def submit(self, func: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        if not self.running:
            with self._lock:
                _run(future, func, args, kwargs)
            return future
        self._commands.put((future, func, args, kwargs))
        return future

    def call(self, func: Callable, *args, timeout: Optional[float] = 10.0, **kwargs):
        return self.submit(func, *args, **kwargs).result(timeout=timeout)

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._threads = [
            threading.Thread(target=self._drain, name="delivery-worker", daemon=True),
            self._loop("delivery-tick", self.tick_interval, self.tick_job),
            self._loop("delivery-traffic", self.traffic_interval, self.traffic_job),
            self._loop("delivery-sync", self.sync_interval, self.sync_job),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Coordinator started: tick %ss, traffic %ss, sync %ss",
            self.tick_interval, self.traffic_interval, self.sync_interval,
        )

    def shutdown(self, timeout: float = 5.0) -> None:
        if not self._threads:
            return
        self._stopped.set()
        self._commands.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Coordinator stopped")

    def _drain(self) -> None:
        while True:
            item = self._commands.get()
            if item is _STOP:
                break
            future, func, args, kwargs = item
            with self._lock:
                _run(future, func, args, kwargs)

    def _loop(self, name: str, interval: float, job: Callable[[], None]) -> threading.Thread:
        def run():
            while not self._stopped.wait(interval):
                try:
                    job()
                except Exception:
                    logger.exception("%s job failed", name)

        return threading.Thread(target=run, name=name, daemon=True)

    def tick_job(self) -> Future:
        return self.submit(self.session.tick, self.tick_interval)

    def fetch_speed_map(self) -> Dict:
        return self._fetch_traffic()

    def traffic_job(self) -> Optional[Future]:
        speed_map = self.fetch_speed_map()
        if not speed_map:
            return None
        return self.submit(refresh_traffic, self.traffic, self.store, speed_map)

    def sync_job(self) -> Future:
        trips = self._load_trips()
        return self.submit(self.session.sync_trips, trips, self.default_speed_kmh)


def _run(future: Future, func: Callable, args, kwargs) -> None:
    if not future.set_running_or_notify_cancel():
        return
    try:
        result = func(*args, **kwargs)
    except Exception as error:
        logger.exception("Delivery command %s failed", getattr(func, "__name__", func))
        future.set_exception(error)
    else:
        future.set_result(result)


def _load_today_trips() -> List:
    from .trips import today_trip_records

    # Runs on a timer thread, which owns its own database connection.
    close_old_connections()
    try:
        return today_trip_records()
    finally:
        close_old_connections()


_COORDINATOR: Optional[DeliveryCoordinator] = None
_COORDINATOR_LOCK = threading.Lock()


def build_coordinator() -> DeliveryCoordinator:
    config = settings.DELIVERY_CONFIG
    session = DeliverySession(traffic=TrafficCache(), plant_paths=settings.PLANT_PATHS)
    return DeliveryCoordinator(
        session,
        get_corridor_store(),
        tick_interval=config.get("tick_interval_seconds", 1),
        traffic_interval=settings.TRAFFIC_CONFIG.get("update_interval_seconds", 60),
        sync_interval=config.get("sync_interval_seconds", 5),
        default_speed_kmh=config.get("default_speed_kmh"),
    )


def get_coordinator() -> DeliveryCoordinator:
    global _COORDINATOR
    with _COORDINATOR_LOCK:
        if _COORDINATOR is None:
            _COORDINATOR = build_coordinator()
        return _COORDINATOR
