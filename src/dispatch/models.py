from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from .utils import parse_time_range


# --- Enums ---

class Status(str, Enum):
    """Shared status vocabulary for pickup requests and route stops."""
    PENDING = 'pending'
    ASSIGNED = 'assigned'
    EN_ROUTE = 'en_route'
    IN_PROGRESS = 'in_progress'
    ARRIVED = 'arrived'
    COMPLETED = 'completed'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'
    RESCHEDULED = 'rescheduled'

class Flavor(str, Enum):
    PICKUP = 'pickup'
    STOP = 'stop'

class StopType(str, Enum):
    PICKUP = 'pickup'
    DELIVERY = 'delivery'

class RouteStatus(str, Enum):
    SCHEDULED = 'scheduled'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

class ActionStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'

class Weekday(str, Enum):
    # Declared in datetime.weekday() order (Monday == 0)
    MON = 'mon'
    TUE = 'tue'
    WED = 'wed'
    THU = 'thu'
    FRI = 'fri'
    SAT = 'sat'
    SUN = 'sun'

    @classmethod
    def of(cls, moment: datetime) -> 'Weekday':
        return list(cls)[moment.weekday()]

class Algorithm(str, Enum):
    NEAREST_NEIGHBOR = 'nearest_neighbor'
    TIME_WINDOWS = 'time_windows'


# --- Core Models ---

class Coordinates(BaseModel):
    """A WGS84 point. Out-of-range values are rejected on construction."""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)

class TimeWindow(BaseModel):
    """A start/end instant pair during which a pickup or delivery must occur."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode='after')
    def check_order(self):
        if self.start >= self.end:
            raise ValueError("Window start must be before window end")
        return self

class OperatingHours(BaseModel):
    """
    Weekly opening schedule of a clinic.

    Each day maps to a list of "HH:MM-HH:MM" ranges, e.g.
    {"mon": ["08:00-12:00", "13:00-17:00"]}. Days that are missing or map to
    an empty list are closed.
    """
    timezone: str = 'UTC'
    schedule: Dict[Weekday, List[str]] = Field(default_factory=dict)

    @field_validator('schedule')
    @classmethod
    def check_ranges(cls, v):
        for day, ranges in v.items():
            for text in ranges:
                parse_time_range(text)  # raises ValueError on malformed ranges
        return v

    def ranges_for(self, day: Weekday) -> List[Tuple[int, int]]:
        """Returns the (open, close) ranges for a day as minutes since midnight."""
        return [parse_time_range(text) for text in self.schedule.get(day, [])]

class ProofOfService(BaseModel):
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    verification_code: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)

class RouteStop(BaseModel):
    """One pickup or delivery task holding a position within a Route."""
    id: str
    route_id: Optional[str] = None
    sequence: int = Field(default=0, ge=0)
    type: StopType
    clinic_id: str
    pickup_request_id: Optional[str] = None
    coordinates: Coordinates
    status: Status = Status.PENDING
    window: Optional[TimeWindow] = None
    desired_arrival: Optional[datetime] = None # Requested arrival, drives time bucketing
    estimated_arrival: Optional[datetime] = None # Calculated by the optimizer
    actual_arrival: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    leg_distance_km: Optional[float] = None # Distance from the previous stop (or route start)
    proof: Optional[ProofOfService] = None
    skip_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    distance_variance_m: Optional[float] = None # Recorded when arrival falls outside the geofence

    @property
    def is_terminal(self) -> bool:
        return self.status in (Status.COMPLETED, Status.CANCELLED, Status.SKIPPED)

class RouteMetrics(BaseModel):
    total_distance_km: float
    estimated_duration_min: int
    stops_total: int

class Route(BaseModel):
    """A driver's ordered list of stops. Metrics are always derived from the stops."""
    id: str
    driver_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    start_location: Optional[Coordinates] = None
    stops: List[RouteStop] = Field(default_factory=list)
    status: RouteStatus = RouteStatus.SCHEDULED
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @computed_field
    @property
    def metrics(self) -> RouteMetrics:
        from .routing import calculate_route_metrics
        return calculate_route_metrics(self.stops)

    def find_stop(self, stop_id: str) -> Optional[RouteStop]:
        for stop in self.stops:
            if stop.id == stop_id:
                return stop
        return None

class PickupRequest(BaseModel):
    """A clinic's request for the lab to collect packages within a time window."""
    id: str
    clinic_id: str
    lab_id: str
    window: TimeWindow
    package_count: int = Field(gt=0)
    status: Status = Status.PENDING
    driver_id: Optional[str] = None
    route_id: Optional[str] = None
    stop_id: Optional[str] = None
    notes: Optional[str] = None


# --- State Machine Models ---

class TransitionEvidence(BaseModel):
    """Data supplied alongside a status change. Which fields are required depends on the target."""
    driver_id: Optional[str] = None
    route_id: Optional[str] = None
    actual_arrival: Optional[datetime] = None
    coordinates: Optional[Coordinates] = None
    completed_at: Optional[datetime] = None
    signature_url: Optional[str] = None
    signed_by: Optional[str] = None
    verification_code: Optional[str] = None
    photo_urls: List[str] = Field(default_factory=list)
    skip_reason: Optional[str] = None
    new_window: Optional[TimeWindow] = None
    reschedule_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None

class TransitionResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    distance_variance_m: Optional[float] = None

class RouteReadiness(BaseModel):
    ok: bool
    reason: Optional[str] = None

class RouteEfficiency(BaseModel):
    completion_rate: float # Percentage of stops completed
    on_time_rate: float # Percentage of completed stops within the grace period
    average_stop_time_min: int


# --- Validation Result Models ---

class WindowValidation(BaseModel):
    valid: bool
    reason: Optional[str] = None
    suggestion: Optional[str] = None

class SlaResult(BaseModel):
    compliant: bool
    variance_minutes: int

class SequenceValidation(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)

class WindowFeasibility(BaseModel):
    can_complete: bool
    arrival_time: Optional[datetime] = None
    reason: Optional[str] = None

class LocationCheck(BaseModel):
    valid: bool
    distance_m: float
    error: Optional[str] = None

class GeohashBounds(BaseModel):
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

class OptimizedRoute(BaseModel):
    stops: List[RouteStop]
    metrics: RouteMetrics


# --- Offline Queue Models ---

class QueuedAction(BaseModel):
    """A field action waiting to reach the backend of record."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    action_type: str
    payload: Any = None
    timestamp: int # epoch millis
    status: ActionStatus
    retries: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    completed_at: Optional[int] = None # epoch millis

class ActionCounts(BaseModel):
    pending: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

class SyncResult(BaseModel):
    """Outcome of one pass over the pending actions."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    synced: int = 0
    failed: int = 0
    exhausted: List[int] = Field(default_factory=list) # ids that became terminally failed
    errors: List[Any] = Field(default_factory=list) # SyncError / ExhaustedRetriesError instances
