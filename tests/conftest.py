#!/usr/bin/env python3
"""
Pytest configuration and shared fixtures.
Tests run against in-memory SQLite and an in-memory calendar, never the network.
"""

import os
import sys
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Add the project root to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from appointment_scheduler.core.config import Settings
from appointment_scheduler.core.errors import error_aggregator
from appointment_scheduler.crud.appointment import AppointmentStore
from appointment_scheduler.db.base import drop_db, init_db
from appointment_scheduler.db.session import build_engine, build_sessionmaker
from appointment_scheduler.schemas.appointment import ScheduleRequest
from appointment_scheduler.services.scheduling import SchedulingEngine
from mocks.external_services import CalendarMock

# Test database configuration
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_API_KEY = "test_api_key"

# Fixed "now" for engine tests: appointments are booked later the same day
NOW = datetime(2030, 1, 15, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def test_settings():
    """Settings for an isolated app instance"""
    return Settings(
        APP_ENV="testing",
        DATABASE_URL=TEST_DATABASE_URL,
        SCHEDULER_API_KEY=TEST_API_KEY,
        GOOGLE_CALENDAR_ENABLED=False,
    )


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine(TEST_DATABASE_URL)
    await init_db(engine)
    yield engine
    await drop_db(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    async with build_sessionmaker(db_engine)() as session:
        yield session


@pytest.fixture
def store(db_session):
    return AppointmentStore(db_session)


@pytest.fixture
def calendar():
    return CalendarMock()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def engine(store, calendar, clock):
    return SchedulingEngine(store, calendar, clock=clock)


@pytest.fixture
def make_request():
    """Factory for booking requests; keyword arguments override the defaults"""

    def _make(**overrides) -> ScheduleRequest:
        data = {
            "first_name": "John",
            "last_name": "Smith",
            "email": "john.smith@example.com",
            "phone_number": "+14165551234",
            "start_at": datetime(2030, 1, 15, 14, 0, tzinfo=timezone.utc),
            "end_at": datetime(2030, 1, 15, 14, 30, tzinfo=timezone.utc),
            "type": "consultation",
            "reason": "Regular appointment",
        }
        data.update(overrides)
        return ScheduleRequest(**data)

    return _make


@pytest.fixture
def api_client(test_settings, calendar):
    """App client with the API key set and the calendar replaced by the in-memory mock"""
    from fastapi.testclient import TestClient
    from appointment_scheduler.main import create_app

    app = create_app(test_settings)
    with TestClient(app, headers={"X-API-Key": TEST_API_KEY}) as client:
        app.state.calendar = calendar
        yield client


@pytest.fixture(autouse=True)
def reset_error_aggregator():
    """Aggregated error patterns are process-global"""
    error_aggregator.patterns.clear()
    yield
    error_aggregator.patterns.clear()


@pytest.fixture(autouse=True)
def monitor_test_performance(request):
    """Monitor test performance and warn about slow tests"""
    start_time = time.time()
    yield
    duration = time.time() - start_time

    node = request.node
    if node.get_closest_marker("unit") and duration > 1.0:
        print(f"⚠️ Unit test {node.name} took {duration:.2f}s (should be < 1s)")
    elif not node.get_closest_marker("slow") and duration > 10.0:
        print(f"⚠️ Test {node.name} took {duration:.2f}s (consider marking as @pytest.mark.slow)")


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Pure unit tests with no I/O")
    config.addinivalue_line("markers", "essential: Core functionality tests")
    config.addinivalue_line("markers", "integration: Tests that go through the HTTP app")
    config.addinivalue_line("markers", "slow: Long-running tests")


def pytest_collection_modifyitems(config, items):
    """Run fast tests first"""
    def test_priority(item):
        if item.get_closest_marker("unit"):
            return 0
        if item.get_closest_marker("integration"):
            return 2
        if item.get_closest_marker("slow"):
            return 3
        return 1

    items[:] = sorted(items, key=test_priority)
