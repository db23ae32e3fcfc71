from fastapi import APIRouter, Depends, HTTPException, Path, Query, status as http_status
from typing import List, Optional

from .. import geo, routing, time_windows
from ..models import (
    ActionCounts, OptimizedRoute, QueuedAction, SequenceValidation, SlaResult, TimeWindow,
    TransitionResult, WindowValidation,
)
from ..config import get_settings
from ..offline_queue import OfflineActionQueue
from ..state_machine import validate_transition
from .deps import get_api_key, get_queue
from .models import (
    AvailableWindowsRequest, EnqueueRequest, GeohashResponse, InsertStopRequest, NeighborsResponse,
    OptimizeRouteRequest, PurgeResponse, RemoveStopRequest, SequenceRequest, SlaRequest,
    TransitionRequest, WindowRequest,
)

router = APIRouter(dependencies=[Depends(get_api_key)])


# --- Routes ---

@router.post("/routes/optimize", response_model=OptimizedRoute)
async def optimize_route(request: OptimizeRouteRequest):
    """
    Order stops for a single driver and return the sequence with aggregate metrics.
    An empty stop list yields an empty route, not an error.
    """
    return routing.optimize_route(request.stops, request.start, request.algorithm, request.now)


@router.post("/routes/insert-stop", response_model=OptimizedRoute)
async def insert_stop(request: InsertStopRequest):
    """Insert one stop at its cheapest position in an already ordered route."""
    if any(stop.id == request.new_stop.id for stop in request.stops):
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail=f"Stop {request.new_stop.id} is already on the route",
        )
    stops = routing.insert_stop(request.stops, request.new_stop, request.start)
    return OptimizedRoute(stops=stops, metrics=routing.calculate_route_metrics(stops))


@router.post("/routes/remove-stop", response_model=OptimizedRoute)
async def remove_stop(request: RemoveStopRequest):
    """Remove a stop by id and renumber the rest."""
    if not any(stop.id == request.stop_id for stop in request.stops):
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"Stop {request.stop_id} not found",
        )
    stops = routing.remove_stop(request.stops, request.stop_id, request.start)
    return OptimizedRoute(stops=stops, metrics=routing.calculate_route_metrics(stops))


@router.post("/routes/validate-sequence", response_model=SequenceValidation)
async def validate_sequence(request: SequenceRequest):
    return routing.validate_stop_sequence(request.stops)


# --- Transitions ---

@router.post("/transitions/validate", response_model=TransitionResult)
async def validate_status_transition(request: TransitionRequest):
    """
    Check a pickup or stop status change. Every violated rule is listed;
    geofence mismatches come back as warnings.
    """
    return validate_transition(
        request.flavor,
        request.current_status,
        request.target_status,
        request.evidence,
        stop_type=request.stop_type,
        expected_coordinates=request.expected_coordinates,
        operating_hours=request.operating_hours,
        geofence_radius_m=get_settings()["geofence_radius_m"],
    )


# --- Time Windows ---

@router.post("/time-windows/validate", response_model=WindowValidation)
async def validate_time_window(request: WindowRequest):
    return time_windows.validate(request.window, request.operating_hours)


@router.post("/time-windows/available", response_model=List[TimeWindow])
async def available_time_windows(request: AvailableWindowsRequest):
    return time_windows.available_windows(request.day, request.operating_hours, request.duration_min)


@router.post("/time-windows/sla", response_model=SlaResult)
async def sla_compliance(request: SlaRequest):
    return time_windows.sla_compliance(request.expected, request.actual)


# --- Geo ---

@router.get("/geo/geohash/{geohash}", response_model=GeohashResponse)
async def decode_geohash(geohash: str = Path(..., description="Geohash to decode")):
    return GeohashResponse(
        geohash=geohash,
        center=geo.decode_geohash(geohash),
        bounds=geo.geohash_bounds(geohash),
    )


@router.get("/geo/geohash/{geohash}/neighbors", response_model=NeighborsResponse)
async def geohash_neighbors(geohash: str = Path(..., description="Center cell")):
    return NeighborsResponse(geohash=geohash, neighbors=geo.get_neighbors(geohash))


# --- Offline Queue ---

@router.post("/queue/actions", response_model=QueuedAction, status_code=http_status.HTTP_201_CREATED)
def enqueue_action(request: EnqueueRequest, queue: OfflineActionQueue = Depends(get_queue)):
    """Queue a field action for later delivery. Returns immediately."""
    action_id = queue.enqueue(request.action_type, request.payload)
    return queue.get(action_id)


@router.get("/queue/actions", response_model=List[QueuedAction])
def list_pending_actions(queue: OfflineActionQueue = Depends(get_queue)):
    """Pending actions, oldest first."""
    return queue.list_pending()


@router.get("/queue/counts", response_model=ActionCounts)
def action_counts(queue: OfflineActionQueue = Depends(get_queue)):
    return queue.counts()


@router.post("/queue/actions/{action_id}/retry", response_model=QueuedAction)
def retry_failed_action(
    action_id: int = Path(..., ge=1),
    queue: OfflineActionQueue = Depends(get_queue),
):
    """Re-arm a failed action after operator review."""
    try:
        return queue.retry_failed(action_id)
    except KeyError:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail=f"Queued action {action_id} not found",
        )
    except ValueError as e:
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/queue/purge", response_model=PurgeResponse)
def purge_expired_actions(
    retention_days: Optional[int] = Query(None, ge=0),
    queue: OfflineActionQueue = Depends(get_queue),
):
    """Delete completed and failed actions past retention. Pending actions are kept."""
    if retention_days is None:
        retention_days = get_settings()["retention_days"]
    return PurgeResponse(purged=queue.purge_expired(retention_days=retention_days))
