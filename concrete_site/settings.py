"""
Django settings for the concrete delivery tracker.

Values that change between deployments are read from the environment.
"""
from __future__ import annotations

import json
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "delivery.apps.DeliveryAppConfig",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "concrete_site.urls"
WSGI_APPLICATION = "concrete_site.wsgi.application"

DATABASES = {
    "default": {
        "ENGINE": os.environ.get("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", ""),
        "PORT": os.environ.get("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "Asia/Hong_Kong"
USE_I18N = False
USE_TZ = True

TRAFFIC_CONFIG = {
    "provider": os.environ.get("TRAFFIC_PROVIDER", "td-irn"),
    "feed_url": os.environ.get(
        "TRAFFIC_FEED_URL",
        "https://resource.data.one.gov.hk/td/traffic-detectors/irnAvgSpeed-all.xml",
    ),
    "timeout_seconds": int(os.environ.get("TRAFFIC_TIMEOUT_SECONDS", "10")),
    "update_interval_seconds": 60,
}

DELIVERY_CONFIG = {
    "tick_interval_seconds": 1,
    "sync_interval_seconds": 5,
    "default_target_volume": 600.0,
    "default_trucks_per_hour": 12.0,
    "default_volume_per_truck": 8.0,
    "default_speed_kmh": 40.0,
    # Used by the route ETA card for corridors without traffic data.
    "no_data_speed_kmh": 50.0,
    "speed_cap_kmh": 70.0,
    "auto_dispatch": os.environ.get("DELIVERY_AUTO_DISPATCH", "0") == "1",
    "stitch_anchor": (113.99065, 22.41476),
    "primary_path": "GAMMON_TM",
    "autostart_wfs": os.environ.get("DELIVERY_AUTOSTART_WFS", "0") == "1",
}

# Load corridors, start today's session and run the timers inside the web
# process, so the API and the tick/traffic/sync loops share one session.
DELIVERY_AUTOSTART = os.environ.get("DELIVERY_AUTOSTART", "0") == "1"

# Corridors (road centreline route ids) that make up the project paths.
PROJECT_ROUTE_IDS = [
    94765, 96983, 118058, 93890, 93888, 164954, 94416, 94948, 272383, 94336,
    95362, 93889, 94949, 94951, 94144, 94145, 97263, 110551, 96730, 279711,
    97261, 96558, 95310, 96560, 97096, 96561, 95308, 97095, 96745, 95306, 97210, 96747,
    96003, 96260, 96754, 95974, 96752, 97133, 95981, 96756, 95983, 96765,
    95987, 96763, 95985, 279712, 95977, 96782, 111898, 98048, 96220, 96784,
    93848, 260731, 96883, 96913, 97271, 96793, 94129, 96791, 96885, 93855,
    96800, 279744, 96932, 96803, 93853, 96926, 96808, 96927, 93231, 93153,
    93151, 96842, 93148, 96860, 93147, 93171, 93166, 110565, 110564, 111985,
    165814, 111986, 111322, 122796, 122797, 165821, 260443, 165819, 285509, 285514,
]

DELIVERY_PATHS = (
    json.loads(os.environ["DELIVERY_PATHS_JSON"])
    if os.environ.get("DELIVERY_PATHS_JSON")
    else {
        "GAMMON_TM": PROJECT_ROUTE_IDS,
        "HKC_TY": [],
    }
)

PLANT_PATHS = {
    "Gammon Tuen Mun Plant": "GAMMON_TM",
    "HKC Tsing Yi Plant": "HKC_TY",
}

CORRIDOR_GEOJSON_PATH = os.environ.get(
    "CORRIDOR_GEOJSON_PATH", str(BASE_DIR / "data" / "project_route.geojson")
)
CORRIDOR_WFS_URL = os.environ.get(
    "CORRIDOR_WFS_URL",
    "https://portal.csdi.gov.hk/server/services/common/td_rcd_1638949160594_2844/MapServer/WFSServer",
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "simple": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "simple"},
    },
    "loggers": {
        "delivery": {
            "handlers": ["console"],
            "level": os.environ.get("DELIVERY_LOG_LEVEL", "INFO"),
        },
    },
}
