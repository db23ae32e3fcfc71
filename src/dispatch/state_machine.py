"""
Status transition rules for pickup requests, route stops and routes.

Pickups and stops share one status vocabulary but each flavor has its own
allow-list of (current, target) pairs. Completed, Cancelled and Skipped are
terminal for both flavors. The tables are checked for completeness when the
module is imported.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Mapping, Optional, Union

from .errors import TransitionError
from .geo import DEFAULT_GEOFENCE_RADIUS_M, check_location
from .models import (
    Coordinates, Flavor, OperatingHours, Route, RouteReadiness, RouteStatus, Status,
    StopType, TransitionEvidence, TransitionResult,
)
from .time_windows import validate as validate_window

logger = logging.getLogger(__name__)

TERMINAL_STATUSES: FrozenSet[Status] = frozenset({Status.COMPLETED, Status.CANCELLED, Status.SKIPPED})

FLAVOR_STATUSES: Dict[Flavor, FrozenSet[Status]] = {
    Flavor.PICKUP: frozenset({
        Status.PENDING, Status.ASSIGNED, Status.EN_ROUTE, Status.ARRIVED,
        Status.COMPLETED, Status.SKIPPED, Status.CANCELLED, Status.RESCHEDULED,
    }),
    Flavor.STOP: frozenset({
        Status.PENDING, Status.ASSIGNED, Status.IN_PROGRESS, Status.ARRIVED,
        Status.COMPLETED, Status.SKIPPED, Status.CANCELLED, Status.RESCHEDULED,
    }),
}

TRANSITIONS: Dict[Flavor, Dict[Status, FrozenSet[Status]]] = {
    Flavor.PICKUP: {
        Status.PENDING: frozenset({Status.ASSIGNED, Status.CANCELLED}),
        Status.ASSIGNED: frozenset({Status.EN_ROUTE, Status.RESCHEDULED, Status.CANCELLED}),
        Status.EN_ROUTE: frozenset({Status.ARRIVED, Status.RESCHEDULED, Status.CANCELLED}),
        Status.ARRIVED: frozenset({Status.COMPLETED, Status.SKIPPED, Status.RESCHEDULED}),
        Status.RESCHEDULED: frozenset({Status.PENDING, Status.CANCELLED}), # becomes a new pending request
        Status.COMPLETED: frozenset(),
        Status.SKIPPED: frozenset(),
        Status.CANCELLED: frozenset(),
    },
    Flavor.STOP: {
        Status.PENDING: frozenset({Status.ASSIGNED, Status.IN_PROGRESS, Status.SKIPPED, Status.CANCELLED}),
        Status.ASSIGNED: frozenset({Status.IN_PROGRESS, Status.RESCHEDULED, Status.SKIPPED, Status.CANCELLED}),
        Status.IN_PROGRESS: frozenset({Status.ARRIVED, Status.SKIPPED, Status.CANCELLED}),
        Status.ARRIVED: frozenset({Status.COMPLETED, Status.SKIPPED}),
        Status.RESCHEDULED: frozenset({Status.PENDING, Status.CANCELLED}),
        Status.COMPLETED: frozenset(),
        Status.SKIPPED: frozenset(),
        Status.CANCELLED: frozenset(),
    },
}

ROUTE_TRANSITIONS: Dict[RouteStatus, FrozenSet[RouteStatus]] = {
    RouteStatus.SCHEDULED: frozenset({RouteStatus.IN_PROGRESS, RouteStatus.CANCELLED}),
    RouteStatus.IN_PROGRESS: frozenset({RouteStatus.COMPLETED, RouteStatus.CANCELLED}),
    RouteStatus.COMPLETED: frozenset(),
    RouteStatus.CANCELLED: frozenset(),
}


def _check_tables() -> None:
    for flavor in Flavor:
        table = TRANSITIONS[flavor]
        states = FLAVOR_STATUSES[flavor]
        if set(table) != states:
            raise AssertionError(f"{flavor.value} transition table does not cover exactly its statuses")
        for current, targets in table.items():
            if not targets <= states:
                raise AssertionError(f"{flavor.value} {current.value} leads outside the flavor")
            if current in TERMINAL_STATUSES and targets:
                raise AssertionError(f"{flavor.value} {current.value} is terminal but has exits")
    if set(ROUTE_TRANSITIONS) != set(RouteStatus):
        raise AssertionError("Route transition table does not cover every route status")


_check_tables()


class LifecyclePhase(str, Enum):
    PLANNING = 'planning'
    EXECUTION = 'execution'
    TERMINAL = 'terminal'
    EXCEPTION = 'exception'


def is_terminal(status: Status) -> bool:
    return status in TERMINAL_STATUSES


def lifecycle_phase(status: Status) -> LifecyclePhase:
    if status == Status.PENDING:
        return LifecyclePhase.PLANNING
    if status in TERMINAL_STATUSES:
        return LifecyclePhase.TERMINAL
    if status == Status.RESCHEDULED:
        return LifecyclePhase.EXCEPTION
    return LifecyclePhase.EXECUTION


def is_allowed(flavor: Flavor, current: Status, target: Status) -> bool:
    return target in TRANSITIONS[flavor].get(current, frozenset())


EvidenceInput = Union[TransitionEvidence, Mapping, None]


def _coerce_evidence(evidence: EvidenceInput) -> TransitionEvidence:
    if evidence is None:
        return TransitionEvidence()
    if isinstance(evidence, TransitionEvidence):
        return evidence
    return TransitionEvidence.model_validate(evidence)


def _missing_evidence(
    flavor: Flavor,
    target: Status,
    evidence: TransitionEvidence,
    stop_type: Optional[StopType],
    operating_hours: Optional[OperatingHours],
) -> List[str]:
    errors = []

    def require(field: str):
        if not getattr(evidence, field):
            errors.append(f"{field} required for {target.value} status")

    if target == Status.ASSIGNED:
        require('driver_id')
    elif target == Status.ARRIVED:
        require('actual_arrival')
        require('coordinates')
    elif target == Status.COMPLETED:
        require('completed_at')
        if flavor == Flavor.PICKUP or stop_type == StopType.PICKUP:
            require('verification_code')
        elif stop_type == StopType.DELIVERY:
            require('signature_url')
        else:
            errors.append("stop_type required to validate completed status")
    elif target == Status.SKIPPED:
        require('skip_reason')
    elif target == Status.RESCHEDULED:
        require('new_window')
        if evidence.new_window is not None and operating_hours is not None:
            check = validate_window(evidence.new_window, operating_hours)
            if not check.valid:
                errors.append(f"new_window rejected: {check.reason}")
    elif target == Status.CANCELLED:
        require('cancellation_reason')

    return errors


def validate_transition(
    flavor: Flavor,
    current: Status,
    target: Status,
    evidence: EvidenceInput = None,
    stop_type: Optional[StopType] = None,
    expected_coordinates: Optional[Coordinates] = None,
    operating_hours: Optional[OperatingHours] = None,
    geofence_radius_m: float = DEFAULT_GEOFENCE_RADIUS_M,
) -> TransitionResult:
    """
    Checks a status change against the flavor's allow-list and evidence rules.

    Every violated rule is reported: an illegal (current, target) pair comes
    first, followed by each missing evidence field for the target. A
    reported position outside the geofence around expected_coordinates adds
    a warning and a distance variance but never invalidates the transition.

    Args:
        flavor: Pickup request or route stop rules.
        current: Status the record is in now.
        target: Requested status.
        evidence: TransitionEvidence or a mapping of its fields.
        stop_type: Required when completing a route stop (decides which proof applies).
        expected_coordinates: Where the driver should be, for the geofence check.
        operating_hours: When given, a rescheduled window must fit them.
        geofence_radius_m: Geofence radius in meters.

    Returns:
        TransitionResult listing all errors and warnings.
    """
    evidence = _coerce_evidence(evidence)
    errors: List[str] = []
    warnings: List[str] = []
    variance_m = None

    # The illegal-pair error, when present, is always errors[0].
    if not is_allowed(flavor, current, target):
        errors.append(f"Invalid {flavor.value} transition from {current.value} to {target.value}")

    errors.extend(_missing_evidence(flavor, target, evidence, stop_type, operating_hours))

    if evidence.coordinates is not None and expected_coordinates is not None:
        check = check_location(evidence.coordinates, expected_coordinates, geofence_radius_m)
        if not check.valid:
            variance_m = check.distance_m
            warnings.append(check.error)
            logger.warning("Geofence variance on %s -> %s: %.0fm", current.value, target.value, check.distance_m)

    return TransitionResult(valid=not errors, errors=errors, warnings=warnings, distance_variance_m=variance_m)


def require_transition(*args, **kwargs) -> TransitionResult:
    """Same as validate_transition but raises TransitionError when the change is not allowed."""
    result = validate_transition(*args, **kwargs)
    if not result.valid:
        raise TransitionError(result.errors)
    return result


# --- Route Lifecycle ---

def can_start_route(route: Route) -> RouteReadiness:
    if not route.driver_id:
        return RouteReadiness(ok=False, reason="No driver assigned")
    if not route.vehicle_id:
        return RouteReadiness(ok=False, reason="No vehicle assigned")
    if not route.stops:
        return RouteReadiness(ok=False, reason="No stops in route")
    if not any(stop.status == Status.PENDING for stop in route.stops):
        return RouteReadiness(ok=False, reason="No pending stops")
    return RouteReadiness(ok=True)


def can_complete_route(route: Route) -> RouteReadiness:
    open_stops = [stop for stop in route.stops if stop.status not in (Status.COMPLETED, Status.SKIPPED)]
    if open_stops:
        return RouteReadiness(ok=False, reason=f"{len(open_stops)} stop(s) not completed or skipped")
    return RouteReadiness(ok=True)


def validate_route_transition(
    route: Route,
    target: RouteStatus,
    start_time: Optional[datetime] = None,
    end_time: Optional[datetime] = None,
    cancellation_reason: Optional[str] = None,
) -> TransitionResult:
    """Checks a route status change, including readiness to start or finish."""
    errors = []
    if target not in ROUTE_TRANSITIONS[route.status]:
        errors.append(f"Invalid route transition from {route.status.value} to {target.value}")

    if target == RouteStatus.IN_PROGRESS:
        if start_time is None:
            errors.append("start_time required for in_progress status")
        readiness = can_start_route(route)
        if not readiness.ok:
            errors.append(readiness.reason)
    elif target == RouteStatus.COMPLETED:
        if end_time is None:
            errors.append("end_time required for completed status")
        elif route.start_time is not None and end_time < route.start_time:
            errors.append("end_time must not be before start_time")
        readiness = can_complete_route(route)
        if not readiness.ok:
            errors.append(readiness.reason)
    elif target == RouteStatus.CANCELLED and not cancellation_reason:
        errors.append("cancellation_reason required for cancelled status")

    return TransitionResult(valid=not errors, errors=errors)
