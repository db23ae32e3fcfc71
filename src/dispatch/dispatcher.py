"""
Route-level dispatch operations.

DispatchService is the only place Route, RouteStop and PickupRequest values
change. Each operation validates against the state machine, returns new
values (inputs are never mutated), records field mutations in the offline
queue when one is attached, and reports changes through an optional
callback owned by the caller.
"""

import logging
from datetime import datetime
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .errors import TransitionError
from .geo import DEFAULT_GEOFENCE_RADIUS_M
from .models import (
    Algorithm, Coordinates, Flavor, OperatingHours, PickupRequest, ProofOfService, Route,
    RouteEfficiency, RouteStatus, RouteStop, Status, StopType, TransitionEvidence, TransitionResult,
)
from .offline_queue import OfflineActionQueue
from .routing import insert_stop, optimize_route, relink_stops
from .state_machine import is_allowed, require_transition, validate_route_transition
from .time_windows import SLA_GRACE_PERIOD

logger = logging.getLogger(__name__)

# Change notifications passed to on_change
ROUTE_PLANNED = "route_planned"
ROUTE_STATUS_CHANGED = "route_status_changed"
STOP_INSERTED = "stop_inserted"
STOP_REMOVED = "stop_removed"
STOP_STATUS_CHANGED = "stop_status_changed"
PICKUP_STATUS_CHANGED = "pickup_status_changed"

# Stop progress that is reflected onto the underlying pickup request.
# A skipped stop is absent: the request stays outstanding.
_STOP_TO_PICKUP = {
    Status.IN_PROGRESS: Status.EN_ROUTE,
    Status.ARRIVED: Status.ARRIVED,
    Status.COMPLETED: Status.COMPLETED,
}

ChangeCallback = Callable[[str, Any], None]


def _split_locked(stops: Sequence[RouteStop]) -> Tuple[List[RouteStop], List[RouteStop]]:
    """Splits off the leading run of terminal stops, whose positions are frozen."""
    index = 0
    while index < len(stops) and stops[index].is_terminal:
        index += 1
    return list(stops[:index]), list(stops[index:])


def _renumber_after(locked: List[RouteStop], open_stops: List[RouteStop]) -> List[RouteStop]:
    offset = len(locked)
    return locked + [stop.model_copy(update={'sequence': offset + stop.sequence}) for stop in open_stops]


def calculate_route_efficiency(route: Route) -> RouteEfficiency:
    """Completion rate, on-time rate (within the SLA grace period) and mean time on site."""
    total = len(route.stops)
    completed = [stop for stop in route.stops if stop.status == Status.COMPLETED]

    on_time = [
        stop for stop in completed
        if stop.estimated_arrival and stop.actual_arrival
        and stop.actual_arrival - stop.estimated_arrival <= SLA_GRACE_PERIOD
    ]
    timed = [
        (stop.completed_at - stop.actual_arrival).total_seconds()
        for stop in completed if stop.actual_arrival and stop.completed_at
    ]

    return RouteEfficiency(
        completion_rate=len(completed) / total * 100 if total else 0.0,
        on_time_rate=len(on_time) / len(completed) * 100 if completed else 0.0,
        average_stop_time_min=int(sum(timed) / len(timed) // 60) if timed else 0,
    )


class DispatchService:
    """
    Applies validated changes to routes, stops and pickup requests.

    Args:
        queue: When given, every field mutation is queued for the backend.
        on_change: Called as on_change(event, value) after each change.
        geofence_radius_m: Radius used to annotate arrivals away from the stop.
    """

    def __init__(
        self,
        queue: Optional[OfflineActionQueue] = None,
        on_change: Optional[ChangeCallback] = None,
        geofence_radius_m: float = DEFAULT_GEOFENCE_RADIUS_M,
    ):
        self.queue = queue
        self.on_change = on_change
        self.geofence_radius_m = geofence_radius_m

    def _notify(self, event: str, value: Any) -> None:
        if self.on_change is not None:
            self.on_change(event, value)

    @staticmethod
    def _require_start(route: Route) -> Coordinates:
        if route.start_location is None:
            raise ValueError(f"Route {route.id} has no start location")
        return route.start_location

    @staticmethod
    def _open_start(route: Route, locked: List[RouteStop]) -> Coordinates:
        return locked[-1].coordinates if locked else DispatchService._require_start(route)

    # --- Planning ---

    def plan_route(
        self,
        route: Route,
        stops: Sequence[RouteStop],
        algorithm: Algorithm = Algorithm.NEAREST_NEIGHBOR,
        now: Optional[datetime] = None,
    ) -> Route:
        """
        Orders a fresh set of stops for a scheduled route.

        Raises:
            TransitionError: If the route is no longer scheduled.
            ValueError: If the route has no start location.
        """
        if route.status != RouteStatus.SCHEDULED:
            raise TransitionError([f"Route {route.id} is {route.status.value}; only scheduled routes can be planned"])

        start = self._require_start(route)
        owned = [stop.model_copy(update={'route_id': route.id}) for stop in stops]
        optimized = optimize_route(owned, start, algorithm, now)
        planned = route.model_copy(update={'stops': optimized.stops})

        logger.info("Planned route %s: %d stops, %.1f km",
                    route.id, optimized.metrics.stops_total, optimized.metrics.total_distance_km)
        self._notify(ROUTE_PLANNED, planned)
        return planned

    def add_stop(self, route: Route, stop: RouteStop) -> Route:
        """
        Inserts a stop at its cheapest position among the stops not yet finished.

        Stops at the front of the route that are already terminal keep their positions.
        """
        if route.status in (RouteStatus.COMPLETED, RouteStatus.CANCELLED):
            raise TransitionError([f"Route {route.id} is {route.status.value}; stops cannot be added"])
        if route.find_stop(stop.id) is not None:
            raise ValueError(f"Stop {stop.id} is already on route {route.id}")

        locked, open_stops = _split_locked(route.stops)
        new_stop = stop.model_copy(update={'route_id': route.id})
        inserted = insert_stop(open_stops, new_stop, self._open_start(route, locked))
        updated = route.model_copy(update={'stops': _renumber_after(locked, inserted)})

        self._notify(STOP_INSERTED, updated.find_stop(stop.id))
        return updated

    def remove_stop(self, route: Route, stop_id: str) -> Route:
        """
        Takes a stop off the route and closes the sequence gap.

        Raises:
            KeyError: If the stop is not on the route.
            TransitionError: If the stop is already terminal.
        """
        stop = route.find_stop(stop_id)
        if stop is None:
            raise KeyError(f"Stop {stop_id} not found on route {route.id}")
        if stop.is_terminal:
            raise TransitionError([f"Stop {stop_id} is {stop.status.value} and cannot be changed"])

        locked, open_stops = _split_locked(route.stops)
        remaining = [s for s in open_stops if s.id != stop_id]
        relinked = relink_stops(remaining, self._open_start(route, locked))
        updated = route.model_copy(update={'stops': _renumber_after(locked, relinked)})

        self._notify(STOP_REMOVED, stop)
        return updated

    def assign_pickup(
        self,
        route: Route,
        pickup: PickupRequest,
        coordinates: Coordinates,
        stop_id: Optional[str] = None,
    ) -> Tuple[Route, PickupRequest]:
        """
        Puts a pending pickup request on a route as a new pickup stop.

        The request moves to assigned (needs the route's driver). The stop
        references the request but is a separate record.

        Raises:
            TransitionError: If the request cannot be assigned.
        """
        require_transition(
            Flavor.PICKUP, pickup.status, Status.ASSIGNED,
            TransitionEvidence(driver_id=route.driver_id, route_id=route.id),
        )

        stop = RouteStop(
            id=stop_id or f"{route.id}-{pickup.id}",
            route_id=route.id,
            type=StopType.PICKUP,
            clinic_id=pickup.clinic_id,
            pickup_request_id=pickup.id,
            coordinates=coordinates,
            window=pickup.window,
            desired_arrival=pickup.window.start,
        )
        updated_route = self.add_stop(route, stop)
        assigned = pickup.model_copy(update={
            'status': Status.ASSIGNED,
            'driver_id': route.driver_id,
            'route_id': route.id,
            'stop_id': stop.id,
        })

        self._notify(PICKUP_STATUS_CHANGED, assigned)
        return updated_route, assigned

    # --- Field Transitions ---

    def transition_stop(
        self,
        route: Route,
        stop_id: str,
        target: Status,
        evidence: Optional[TransitionEvidence] = None,
        operating_hours: Optional[OperatingHours] = None,
    ) -> Tuple[Route, TransitionResult]:
        """
        Moves one stop to a new status and records the evidence on it.

        Raises:
            KeyError: If the stop is not on the route.
            TransitionError: With every violated rule, if the change is not allowed.
        """
        stop = route.find_stop(stop_id)
        if stop is None:
            raise KeyError(f"Stop {stop_id} not found on route {route.id}")

        evidence = evidence or TransitionEvidence()
        result = require_transition(
            Flavor.STOP, stop.status, target, evidence,
            stop_type=stop.type,
            expected_coordinates=stop.coordinates,
            operating_hours=operating_hours,
            geofence_radius_m=self.geofence_radius_m,
        )

        changes = {'status': target}
        if target == Status.ARRIVED:
            changes['actual_arrival'] = evidence.actual_arrival
            changes['distance_variance_m'] = result.distance_variance_m
        elif target == Status.COMPLETED:
            changes['completed_at'] = evidence.completed_at
            changes['proof'] = ProofOfService(
                signature_url=evidence.signature_url,
                signed_by=evidence.signed_by,
                verification_code=evidence.verification_code,
                photo_urls=evidence.photo_urls,
            )
        elif target == Status.SKIPPED:
            changes['skip_reason'] = evidence.skip_reason
        elif target == Status.CANCELLED:
            changes['cancellation_reason'] = evidence.cancellation_reason
        elif target == Status.RESCHEDULED:
            changes['window'] = evidence.new_window
            changes['desired_arrival'] = evidence.new_window.start

        updated_stop = stop.model_copy(update=changes)
        updated_route = route.model_copy(update={
            'stops': [updated_stop if s.id == stop_id else s for s in route.stops],
        })

        if self.queue is not None:
            self.queue.queue_stop_update(stop_id, target, updated_stop.proof)
        self._notify(STOP_STATUS_CHANGED, updated_stop)
        return updated_route, result

    def transition_pickup(
        self,
        pickup: PickupRequest,
        target: Status,
        evidence: Optional[TransitionEvidence] = None,
        operating_hours: Optional[OperatingHours] = None,
    ) -> Tuple[PickupRequest, TransitionResult]:
        """
        Moves a pickup request to a new status.

        Raises:
            TransitionError: With every violated rule, if the change is not allowed.
        """
        evidence = evidence or TransitionEvidence()
        result = require_transition(
            Flavor.PICKUP, pickup.status, target, evidence, operating_hours=operating_hours,
        )

        changes = {'status': target}
        if target == Status.ASSIGNED:
            changes['driver_id'] = evidence.driver_id
            changes['route_id'] = evidence.route_id or pickup.route_id
        elif target == Status.RESCHEDULED:
            changes['window'] = evidence.new_window
        updated = pickup.model_copy(update=changes)

        if self.queue is not None and target == Status.COMPLETED:
            self.queue.queue_pickup_completion(pickup.id, {
                "completed_at": evidence.completed_at.isoformat(),
                "verification_code": evidence.verification_code,
                "package_count": pickup.package_count,
            })
        self._notify(PICKUP_STATUS_CHANGED, updated)
        return updated, result

    def mirror_stop_on_pickup(self, pickup: PickupRequest, stop: RouteStop) -> PickupRequest:
        """
        Reflects a pickup stop's progress onto its request.

        Only en route, arrived and completed are carried over, and only when
        the pickup table allows the step; otherwise the request is returned
        unchanged (a skipped stop leaves the request outstanding).
        """
        if stop.pickup_request_id != pickup.id:
            raise ValueError(f"Stop {stop.id} does not belong to pickup {pickup.id}")

        target = _STOP_TO_PICKUP.get(stop.status)
        if target is None or target == pickup.status or not is_allowed(Flavor.PICKUP, pickup.status, target):
            return pickup

        updated = pickup.model_copy(update={'status': target})
        self._notify(PICKUP_STATUS_CHANGED, updated)
        return updated

    def record_location(self, route: Route, coordinates: Coordinates, recorded_at: Optional[datetime] = None) -> Optional[int]:
        """Queues the driver's current position; returns the queued action id (None without a queue)."""
        if self.queue is None:
            return None
        return self.queue.queue_location_update(route.driver_id, route.id, coordinates, recorded_at)

    # --- Route Lifecycle ---

    def _change_route(self, route: Route, target: RouteStatus, result: TransitionResult, **changes) -> Route:
        if not result.valid:
            raise TransitionError(result.errors)
        updated = route.model_copy(update={'status': target, **changes})
        self._notify(ROUTE_STATUS_CHANGED, updated)
        return updated

    def start_route(self, route: Route, start_time: datetime) -> Route:
        result = validate_route_transition(route, RouteStatus.IN_PROGRESS, start_time=start_time)
        return self._change_route(route, RouteStatus.IN_PROGRESS, result, start_time=start_time)

    def complete_route(self, route: Route, end_time: datetime) -> Route:
        result = validate_route_transition(route, RouteStatus.COMPLETED, end_time=end_time)
        return self._change_route(route, RouteStatus.COMPLETED, result, end_time=end_time)

    def cancel_route(self, route: Route, reason: str) -> Route:
        result = validate_route_transition(route, RouteStatus.CANCELLED, cancellation_reason=reason)
        return self._change_route(route, RouteStatus.CANCELLED, result, cancellation_reason=reason)
