"""
Exception types raised by the dispatch core.

Malformed input (out-of-range coordinates, a time window whose start is not
before its end, missing model fields) is rejected at model construction and
surfaces as pydantic's ValidationError, re-exported here so callers can
catch every dispatch failure from one module.
"""

from typing import List, Optional

from pydantic import ValidationError


class DispatchError(Exception):
    """Base class for all dispatch core errors."""


class GeoError(DispatchError, ValueError):
    """Malformed geohash, out-of-range coordinate for encoding, or empty point set."""


class TransitionError(DispatchError):
    """An illegal status change or a transition missing required evidence."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid transition")


class SyncError(DispatchError):
    """A queued action's handler failed (network or remote rejection alike)."""

    def __init__(self, action_id: int, action_type: str, message: str):
        self.action_id = action_id
        self.action_type = action_type
        self.message = message
        super().__init__(f"Action {action_id} ({action_type}) failed: {message}")


class ExhaustedRetriesError(SyncError):
    """A queued action used up its retries and is now terminally failed."""

    def __init__(self, action_id: int, action_type: str, retries: int, last_error: Optional[str] = None):
        self.retries = retries
        message = f"max retries exceeded after {retries} attempts"
        if last_error:
            message = f"{message}: {last_error}"
        super().__init__(action_id, action_type, message)


__all__ = [
    "DispatchError",
    "GeoError",
    "TransitionError",
    "SyncError",
    "ExhaustedRetriesError",
    "ValidationError",
]
