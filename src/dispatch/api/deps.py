from fastapi import Header, HTTPException, status
from typing import Any, Dict

from ..config import get_settings
from ..db.database import SessionLocal
from ..offline_queue import OfflineActionQueue
from ..retry import RetryPolicy


# --- Queue Dependency ---

def get_queue() -> OfflineActionQueue:
    """
    Returns the device-local action queue backed by the configured database.
    Tests override this dependency with a queue bound to their own engine.
    """
    settings = get_settings()
    return OfflineActionQueue(SessionLocal, policy=RetryPolicy(max_retries=settings["max_retries"]))


# --- Auth Dependency ---

async def get_api_key(api_key: str = Header(..., alias="api-key")) -> Dict[str, Any]:
    """
    Validate API key for protected endpoints.

    Args:
        api_key: API key extracted from the 'api-key' header

    Returns:
        Dict containing the API key

    Raises:
        HTTPException: If API key is invalid or missing
    """
    settings = get_settings()
    if api_key not in settings["api_keys"]:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API Key",
        )
    return {"api_key": api_key}
