"""
Global pytest configuration and fixtures for Guardline testing.
"""
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from guardline.core.config import EmergencySettings, LocationSettings
from guardline.core.database import DatabaseManager
from guardline.models.emergency import Actor, Role
from guardline.services.emergency.coordinator import EmergencyCoordinator
from guardline.services.emergency.notifications import NotificationDispatcher, WebSocketManager
from guardline.services.emergency.sos_store import SosAlertStore
from guardline.services.location.history_store import LocationHistoryStore
from guardline.services.location.share_store import LocationShareStore
from guardline.services.web.api import create_app
from tests.utils import TEST_SECRET, FakeClock, RecordingGateway


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db(temp_dir):
    """File-backed database so every pooled connection sees the same data"""
    manager = DatabaseManager(str(temp_dir / "guardline.db"), max_connections=8,
                              connection_wait=2.0, busy_timeout=5.0)
    yield manager
    manager.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def emergency_settings():
    return EmergencySettings(lock_timeout_seconds=5.0, store_timeout_seconds=5.0)


@pytest.fixture
def location_settings():
    return LocationSettings()


@pytest.fixture
def history_store(db, clock):
    return LocationHistoryStore(db, clock=clock)


@pytest.fixture
def share_store(db, history_store, location_settings, clock):
    return LocationShareStore(db, history_store, location_settings, clock=clock)


@pytest.fixture
def sos_store(db, emergency_settings, clock):
    return SosAlertStore(db, emergency_settings, clock=clock)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def coordinator(sos_store, share_store, history_store, gateway,
                emergency_settings, location_settings):
    return EmergencyCoordinator(
        sos_store, share_store, history_store, NotificationDispatcher(gateway),
        emergency_settings, location_settings
    )


@pytest.fixture
def citizen():
    return Actor("citizen-1", Role.CITIZEN)


@pytest.fixture
def volunteer():
    return Actor("volunteer-1", Role.VOLUNTEER)


@pytest.fixture
def police():
    return Actor("police-1", Role.POLICE)


@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def websocket_manager():
    return WebSocketManager()


@pytest.fixture
def client(coordinator, websocket_manager):
    """REST client over the test coordinator"""
    app = create_app(coordinator, websocket_manager, {"secret_key": TEST_SECRET})
    with TestClient(app) as test_client:
        yield test_client
