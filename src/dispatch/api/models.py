from datetime import date, datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import (
    Algorithm, Coordinates, Flavor, GeohashBounds, OperatingHours, RouteStop, Status, StopType,
    TimeWindow, TransitionEvidence,
)


# --- Route Requests ---

class OptimizeRouteRequest(BaseModel):
    """API request model for ordering a set of stops."""
    stops: List[RouteStop]
    start: Coordinates
    algorithm: Algorithm = Algorithm.NEAREST_NEIGHBOR
    now: Optional[datetime] = None # Departure time for time-window ordering; defaults to now

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "stops": [
                {"id": "s1", "type": "pickup", "clinic_id": "c1", "coordinates": {"lat": 40.7306, "lng": -73.9866}},
                {"id": "s2", "type": "delivery", "clinic_id": "c2", "coordinates": {"lat": 40.6782, "lng": -73.9442}},
            ],
            "start": {"lat": 40.7128, "lng": -74.0060},
            "algorithm": "nearest_neighbor",
        }
    })

class InsertStopRequest(BaseModel):
    stops: List[RouteStop]
    new_stop: RouteStop
    start: Coordinates

class RemoveStopRequest(BaseModel):
    stops: List[RouteStop]
    stop_id: str
    start: Optional[Coordinates] = None

class SequenceRequest(BaseModel):
    stops: List[RouteStop]


# --- Transition Requests ---

class TransitionRequest(BaseModel):
    """API request model for checking a status change."""
    flavor: Flavor
    current_status: Status
    target_status: Status
    evidence: TransitionEvidence = Field(default_factory=TransitionEvidence)
    stop_type: Optional[StopType] = None
    expected_coordinates: Optional[Coordinates] = None
    operating_hours: Optional[OperatingHours] = None


# --- Time Window Requests ---

class WindowRequest(BaseModel):
    window: TimeWindow
    operating_hours: OperatingHours

class AvailableWindowsRequest(BaseModel):
    day: date
    operating_hours: OperatingHours
    duration_min: int = Field(default=120, gt=0)

class SlaRequest(BaseModel):
    expected: datetime
    actual: Optional[datetime] = None


# --- Geo Responses ---

class GeohashResponse(BaseModel):
    geohash: str
    center: Coordinates
    bounds: GeohashBounds

class NeighborsResponse(BaseModel):
    geohash: str
    neighbors: List[str]


# --- Queue Requests ---

class EnqueueRequest(BaseModel):
    """API request model for queuing a field action."""
    action_type: str = Field(min_length=1)
    payload: Any = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "action_type": "UPDATE_STOP_STATUS",
            "payload": {"stop_id": "s1", "status": "arrived"},
        }
    })

class PurgeResponse(BaseModel):
    purged: int
