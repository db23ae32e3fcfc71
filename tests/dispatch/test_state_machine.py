import pytest
from datetime import datetime, timezone

from dispatch.errors import TransitionError
from dispatch.models import (
    Coordinates, Flavor, OperatingHours, Route, RouteStatus, Status, StopType, TimeWindow,
    TransitionEvidence,
)
from dispatch.state_machine import (
    FLAVOR_STATUSES, TERMINAL_STATUSES, TRANSITIONS, LifecyclePhase, can_complete_route,
    can_start_route, is_allowed, is_terminal, lifecycle_phase, require_transition,
    validate_route_transition, validate_transition,
)

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
CLINIC = Coordinates(lat=40.7128, lng=-74.0060)


# --- Tests for the transition tables ---

def test_tables_cover_every_flavor_status():
    for flavor in Flavor:
        assert set(TRANSITIONS[flavor]) == FLAVOR_STATUSES[flavor]

def test_terminal_states_have_no_exits():
    for flavor in Flavor:
        for current in TERMINAL_STATUSES:
            for target in FLAVOR_STATUSES[flavor]:
                assert not is_allowed(flavor, current, target)
                result = validate_transition(flavor, current, target)
                assert not result.valid

def test_flavor_specific_statuses():
    assert is_allowed(Flavor.PICKUP, Status.ASSIGNED, Status.EN_ROUTE)
    assert not is_allowed(Flavor.STOP, Status.ASSIGNED, Status.EN_ROUTE)
    assert is_allowed(Flavor.STOP, Status.ASSIGNED, Status.IN_PROGRESS)
    assert not is_allowed(Flavor.PICKUP, Status.ASSIGNED, Status.IN_PROGRESS)

def test_is_terminal_and_phase():
    assert is_terminal(Status.SKIPPED)
    assert not is_terminal(Status.ARRIVED)
    assert lifecycle_phase(Status.PENDING) == LifecyclePhase.PLANNING
    assert lifecycle_phase(Status.EN_ROUTE) == LifecyclePhase.EXECUTION
    assert lifecycle_phase(Status.RESCHEDULED) == LifecyclePhase.EXCEPTION
    assert lifecycle_phase(Status.CANCELLED) == LifecyclePhase.TERMINAL


# --- Tests for evidence rules ---

def test_pickup_cannot_jump_to_completed():
    """Pending straight to Completed is illegal and every missing proof is listed too."""
    result = validate_transition(Flavor.PICKUP, Status.PENDING, Status.COMPLETED, {})

    assert not result.valid
    assert result.errors[0] == "Invalid pickup transition from pending to completed"
    assert any("verification_code" in e for e in result.errors)
    assert any("completed_at" in e for e in result.errors)
    assert not any("signature_url" in e for e in result.errors)

def test_assigned_requires_driver():
    result = validate_transition(Flavor.PICKUP, Status.PENDING, Status.ASSIGNED, {})
    assert result.errors == ["driver_id required for assigned status"]

    ok = validate_transition(Flavor.PICKUP, Status.PENDING, Status.ASSIGNED, {"driver_id": "drv-1"})
    assert ok.valid

def test_arrived_requires_time_and_position():
    result = validate_transition(Flavor.STOP, Status.IN_PROGRESS, Status.ARRIVED, TransitionEvidence())
    assert result.errors == [
        "actual_arrival required for arrived status",
        "coordinates required for arrived status",
    ]

def test_delivery_stop_completion_requires_signature():
    evidence = {"completed_at": NOW}
    result = validate_transition(
        Flavor.STOP, Status.ARRIVED, Status.COMPLETED, evidence, stop_type=StopType.DELIVERY,
    )
    assert result.errors == ["signature_url required for completed status"]

    evidence["signature_url"] = "https://files.example.com/sig.png"
    assert validate_transition(
        Flavor.STOP, Status.ARRIVED, Status.COMPLETED, evidence, stop_type=StopType.DELIVERY,
    ).valid

def test_pickup_stop_completion_requires_verification_code():
    evidence = {"completed_at": NOW, "verification_code": "4821"}
    assert validate_transition(
        Flavor.STOP, Status.ARRIVED, Status.COMPLETED, evidence, stop_type=StopType.PICKUP,
    ).valid

def test_stop_completion_without_stop_type():
    result = validate_transition(Flavor.STOP, Status.ARRIVED, Status.COMPLETED, {"completed_at": NOW})
    assert result.errors == ["stop_type required to validate completed status"]

def test_skip_and_cancel_require_reasons():
    skipped = validate_transition(Flavor.STOP, Status.ARRIVED, Status.SKIPPED, {})
    assert skipped.errors == ["skip_reason required for skipped status"]

    cancelled = validate_transition(Flavor.PICKUP, Status.PENDING, Status.CANCELLED, {})
    assert cancelled.errors == ["cancellation_reason required for cancelled status"]

def test_reschedule_checks_new_window_against_hours():
    hours = OperatingHours(schedule={"mon": ["08:00-12:00"]})
    sunday = TimeWindow(
        start=datetime(2024, 1, 7, 9, tzinfo=timezone.utc),
        end=datetime(2024, 1, 7, 10, tzinfo=timezone.utc),
    )
    result = validate_transition(
        Flavor.PICKUP, Status.ASSIGNED, Status.RESCHEDULED,
        {"new_window": sunday}, operating_hours=hours,
    )
    assert result.errors == ["new_window rejected: closed"]

    missing = validate_transition(Flavor.PICKUP, Status.ASSIGNED, Status.RESCHEDULED, {})
    assert missing.errors == ["new_window required for rescheduled status"]


# --- Tests for geofence warnings ---

def test_geofence_mismatch_is_a_warning():
    """Arriving ~1 km from the clinic is still allowed, with the variance recorded."""
    evidence = {"actual_arrival": NOW, "coordinates": Coordinates(lat=40.7218, lng=-74.0060)}
    result = validate_transition(
        Flavor.PICKUP, Status.EN_ROUTE, Status.ARRIVED, evidence, expected_coordinates=CLINIC,
    )
    assert result.valid
    assert len(result.warnings) == 1
    assert result.distance_variance_m > 100

def test_geofence_match_has_no_warning():
    evidence = {"actual_arrival": NOW, "coordinates": CLINIC}
    result = validate_transition(
        Flavor.PICKUP, Status.EN_ROUTE, Status.ARRIVED, evidence, expected_coordinates=CLINIC,
    )
    assert result.valid
    assert result.warnings == []
    assert result.distance_variance_m is None

def test_require_transition_raises():
    with pytest.raises(TransitionError) as exc_info:
        require_transition(Flavor.STOP, Status.COMPLETED, Status.PENDING)
    assert exc_info.value.errors == ["Invalid stop transition from completed to pending"]

    result = require_transition(Flavor.STOP, Status.PENDING, Status.ASSIGNED, {"driver_id": "drv-1"})
    assert result.valid


# --- Tests for route lifecycle ---

@pytest.fixture
def ready_route(make_stop):
    return Route(
        id="route-1",
        driver_id="drv-1",
        vehicle_id="van-1",
        stops=[make_stop("a", 40.7, -74.0)],
    )

def test_can_start_route(ready_route):
    assert can_start_route(ready_route).ok
    assert can_start_route(ready_route.model_copy(update={"driver_id": None})).reason == "No driver assigned"
    assert can_start_route(ready_route.model_copy(update={"vehicle_id": None})).reason == "No vehicle assigned"
    assert can_start_route(ready_route.model_copy(update={"stops": []})).reason == "No stops in route"

def test_can_complete_route(ready_route):
    assert not can_complete_route(ready_route).ok
    done = ready_route.stops[0].model_copy(update={"status": Status.SKIPPED})
    assert can_complete_route(ready_route.model_copy(update={"stops": [done]})).ok

def test_route_transitions(ready_route):
    started = validate_route_transition(ready_route, RouteStatus.IN_PROGRESS, start_time=NOW)
    assert started.valid

    assert not validate_route_transition(ready_route, RouteStatus.IN_PROGRESS).valid
    skipped_ahead = validate_route_transition(ready_route, RouteStatus.COMPLETED, end_time=NOW)
    assert "Invalid route transition from scheduled to completed" in skipped_ahead.errors

    cancelled = validate_route_transition(ready_route, RouteStatus.CANCELLED)
    assert cancelled.errors == ["cancellation_reason required for cancelled status"]

def test_route_end_time_after_start(ready_route):
    done = ready_route.stops[0].model_copy(update={"status": Status.COMPLETED})
    running = ready_route.model_copy(update={
        "status": RouteStatus.IN_PROGRESS, "start_time": NOW, "stops": [done],
    })
    early = validate_route_transition(running, RouteStatus.COMPLETED, end_time=NOW.replace(hour=9))
    assert early.errors == ["end_time must not be before start_time"]
    assert validate_route_transition(running, RouteStatus.COMPLETED, end_time=NOW.replace(hour=11)).valid
