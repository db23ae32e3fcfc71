"""Shared fixtures for dispatch tests."""

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch.db.database import Base
from dispatch.db import models as db_models  # noqa: F401  (registers the queue table)
from dispatch.models import Coordinates, OperatingHours, RouteStop, StopType
from dispatch.offline_queue import OfflineActionQueue


class FakeClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def test_locations():
    """Real NYC area coordinates."""
    return {
        'manhattan': Coordinates(lat=40.7128, lng=-74.0060),
        'brooklyn': Coordinates(lat=40.6782, lng=-73.9442),
        'queens': Coordinates(lat=40.7282, lng=-73.7949),
        'bronx': Coordinates(lat=40.8448, lng=-73.8648),
        'staten': Coordinates(lat=40.5795, lng=-74.1502),
    }


@pytest.fixture
def make_stop():
    """Factory for stops; defaults to a pending delivery."""
    def _make(stop_id, lat, lng, stop_type=StopType.DELIVERY, **kwargs):
        return RouteStop(
            id=stop_id,
            type=stop_type,
            clinic_id=f"clinic-{stop_id}",
            coordinates=Coordinates(lat=lat, lng=lng),
            **kwargs,
        )
    return _make


@pytest.fixture
def clinic_hours():
    """Weekday hours with a lunch closure; closed on weekends."""
    return OperatingHours(
        timezone="UTC",
        schedule={
            "mon": ["08:00-12:00", "13:00-17:00"],
            "tue": ["08:00-12:00", "13:00-17:00"],
            "wed": ["08:00-12:00", "13:00-17:00"],
            "thu": ["08:00-12:00", "13:00-17:00"],
            "fri": ["08:00-12:00", "13:00-17:00"],
            "sat": [],
        },
    )


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def queue(session_factory, clock):
    return OfflineActionQueue(session_factory, clock=clock)
