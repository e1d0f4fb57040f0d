"""
Bring a delivery coordinator to life in the current process: load
corridors, seed traffic, start today's session and run the timers.

Both ``run_delivery`` and the web process (``DELIVERY_AUTOSTART``) go
through :func:`bootstrap_delivery`, so HTTP handlers and timers share one
in-memory session.
"""
from __future__ import annotations

import logging
import os
from typing import Dict, Optional

import requests
from django.conf import settings
from django.db import close_old_connections

from .coordinator import DeliveryCoordinator, get_coordinator
from .corridors import fetch_wfs_corridors
from .engine import DeliveryConfig
from .stitcher import build_path_geometries
from .traffic import refresh_traffic
from .trips import today_delivery_target

logger = logging.getLogger(__name__)


def load_corridors(coordinator: DeliveryCoordinator, geojson_path: Optional[str] = None, use_wfs: bool = False) -> int:
    store = coordinator.store
    geojson_path = geojson_path or settings.CORRIDOR_GEOJSON_PATH
    if os.path.exists(geojson_path):
        store.load_geojson(geojson_path, settings.PROJECT_ROUTE_IDS)
    else:
        logger.warning("Corridor GeoJSON not found at %s", geojson_path)

    if use_wfs:
        try:
            fetch_wfs_corridors(store)
        except requests.exceptions.RequestException as e:
            logger.error(f"WFS corridor fetch failed: {e}")

    speed_map = coordinator.fetch_speed_map()
    refresh_traffic(coordinator.traffic, store, speed_map)
    store.build_filtered(speed_map.keys(), settings.PROJECT_ROUTE_IDS)
    logger.info("Corridors loaded: %d, with traffic: %d", len(store), len(coordinator.traffic))
    return len(store)


def start_today_session(coordinator: DeliveryCoordinator, auto_dispatch: bool = False) -> Optional[Dict]:
    """Start a session from today's delivery target, or the configured defaults."""
    delivery_config = settings.DELIVERY_CONFIG
    paths = build_path_geometries(
        settings.DELIVERY_PATHS, coordinator.store, delivery_config["stitch_anchor"]
    )
    primary = delivery_config["primary_path"]
    if not paths.get(primary):
        logger.warning("No path geometry for %s; session not started", primary)
        return None

    target = today_delivery_target() or {}
    config = DeliveryConfig(
        route_selector=primary,
        target_volume=target.get("target_volume", delivery_config["default_target_volume"]),
        volume_per_truck=delivery_config["default_volume_per_truck"],
        trucks_per_hour=target.get("trucks_per_hour", delivery_config["default_trucks_per_hour"]),
        start_time=target.get("start_time"),
        default_speed_kmh=delivery_config["default_speed_kmh"],
        speed_cap_kmh=delivery_config["speed_cap_kmh"],
        auto_dispatch=auto_dispatch or delivery_config["auto_dispatch"],
    )
    result = coordinator.call(coordinator.session.start, config, paths)
    synced = coordinator.sync_job().result(timeout=10)
    result["restored_trips"] = synced["tracked"]
    logger.info("%s; restored %d in-progress trips", result["message"], synced["tracked"])
    return result


def bootstrap_delivery(
    coordinator: Optional[DeliveryCoordinator] = None,
    geojson_path: Optional[str] = None,
    use_wfs: bool = False,
    start_session: bool = True,
    auto_dispatch: bool = False,
) -> DeliveryCoordinator:
    """Idempotent: a coordinator that is already running is returned as is."""
    coordinator = coordinator or get_coordinator()
    if coordinator.running:
        return coordinator

    load_corridors(coordinator, geojson_path, use_wfs)
    if start_session:
        start_today_session(coordinator, auto_dispatch)
    coordinator.start()
    return coordinator


def bootstrap_in_background() -> None:
    """Entry point for the web process's bootstrap thread."""
    close_old_connections()
    try:
        bootstrap_delivery(use_wfs=settings.DELIVERY_CONFIG.get("autostart_wfs", False))
    except Exception:
        logger.exception("Delivery bootstrap failed")
    finally:
        close_old_connections()
