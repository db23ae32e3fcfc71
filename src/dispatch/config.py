import os
from functools import lru_cache

from dotenv import load_dotenv

# Pick up a local .env file when present (device installs ship one)
load_dotenv()


@lru_cache()
def get_settings():
    """
    Returns dispatch settings from environment variables.
    Cached to avoid reading env vars on every call; use get_settings.cache_clear() in tests.
    """
    return {
        "database_url": os.environ.get("DISPATCH_DATABASE_URL", "sqlite:///dispatch_queue.db"),
        "api_keys": [key for key in os.environ.get("API_KEYS", "").split(",") if key],
        "max_retries": int(os.environ.get("DISPATCH_MAX_RETRIES", "3")),
        "retention_days": int(os.environ.get("DISPATCH_RETENTION_DAYS", "7")),
        "geofence_radius_m": float(os.environ.get("DISPATCH_GEOFENCE_RADIUS_M", "100")),
    }
