"""Shared test fixtures and configuration for backend tests."""
import pytest
from fastapi.testclient import TestClient

from app.chat.engine import ChatEngine
from app.config import AppConfig, RoomSettings
from app.main import create_app


class FakeClock:
    """Deterministic millisecond clock; advances by ``step`` per call."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> int:
        self.now += self.step
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    """A ChatEngine with default room settings and a fake clock."""
    return ChatEngine.from_settings(RoomSettings(), clock=clock)


@pytest.fixture
def app_config():
    return AppConfig()


@pytest.fixture
def api_client(app_config):
    """Provide a TestClient for a freshly built app.

    Every test gets its own room store and registry, so rooms created in one
    test are never visible in another. The client is entered so that all
    WebSocket sessions of a test share one event loop.
    """
    with TestClient(create_app(app_config)) as client:
        yield client
