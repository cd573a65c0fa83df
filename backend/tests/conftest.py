"""Shared pytest fixtures."""

import time
from collections.abc import AsyncIterator, Iterator

import pytest
from fastapi.testclient import TestClient

from genrelay.client.credentials import CredentialStore
from genrelay.client.reconciler import StateReconciler
from genrelay.config import Settings
from genrelay.main import create_app
from genrelay.services.tokens import create_token
from genrelay.utils.background_tasks import BackgroundTasks
from tests.fakes import FakeApi, FakeTransport
from tests.helpers import Clock

# ============================================================================
# CONFIGURATION
# ============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Settings with zero settle delays and immediate reconnects."""
    return Settings(
        _env_file=None,
        websocket_url="ws://testserver/ws",
        api_base_url="http://collaborator.test/api",
        reconnect_interval=0,
        reconnect_attempts=3,
        heartbeat_interval=3600,
        heartbeat_timeout=30,
        phase_two_delay=0,
        prompt_restore_delay=0,
        outpaint_select_delay=0,
        inpaint_select_delay=0,
        generation_soft_timeout=3600,
    )


@pytest.fixture
def user_token() -> str:
    """A valid token for user 7, signed with the configured secret."""
    return create_token(7)


# ============================================================================
# CLIENT CORE
# ============================================================================


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def credentials(user_token: str) -> CredentialStore:
    return CredentialStore(user_token)


@pytest.fixture
async def tasks() -> AsyncIterator[BackgroundTasks]:
    """Background tasks, cancelled when the test ends."""
    bg = BackgroundTasks()
    yield bg
    bg.cancel_all()
    await bg.wait(timeout=1.0)


@pytest.fixture
def reconciler() -> StateReconciler:
    return StateReconciler()


@pytest.fixture
def fake_api() -> FakeApi:
    return FakeApi()


@pytest.fixture
def clock() -> Clock:
    return Clock(time.time())


# ============================================================================
# SERVER
# ============================================================================


@pytest.fixture
def client() -> Iterator[TestClient]:
    """TestClient sharing one event loop between HTTP requests and WebSockets."""
    with TestClient(create_app()) as test_client:
        yield test_client
