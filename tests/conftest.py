# Copyright 2025 John Brosnihan
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Shared test fixtures for the character actor service.

This module provides pytest fixtures for testing the character actor:
- test_env: Test environment variables
- make_snapshot: Factory for CharacterSnapshot instances
- mock_orchestrator: AsyncMock standing in for OrchestratorClient
- make_grant: Factory for successful registration grants
- mock_http_client: AsyncMock standing in for httpx.AsyncClient in the app
- client: FastAPI TestClient running the real lifespan (no network)

Usage:
    Run tests with pytest:
        pytest tests/
        pytest tests/test_event_gateway.py -v
"""

import os
from datetime import timedelta
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from character_actor.models import (
    CharacterSnapshot,
    DecisionWeights,
    RegistrationSession,
    ResourcePool,
    utcnow,
)
from character_actor.services.orchestrator_client import OrchestratorClient, RegistrationGrant


@pytest.fixture
def test_env(tmp_path):
    """Fixture providing test environment variables.

    Auto-registration is off and all periodic tasks use long intervals,
    so the app starts without contacting an orchestrator.
    """
    return {
        "ORCHESTRATOR_BASE_URL": "http://localhost:3000",
        "CHARACTER_ID": "hero-1",
        "CHARACTER_NAME": "Brom",
        "CHARACTER_CLASS": "fighter",
        "MAX_HEALTH": "20",
        "MAX_MANA": "10",
        "AUTO_REGISTER": "false",
        "REGISTRATION_MAX_ATTEMPTS": "2",
        "REGISTRATION_BASE_DELAY": "0",
        "SUBMISSION_RETRY_DELAY": "0",
        "HEARTBEAT_INTERVAL": "3600",
        "SAVE_INTERVAL": "3600",
        "STATE_DIR": str(tmp_path / "state"),
        "SERVICE_NAME": "character-actor-test",
        "LOG_LEVEL": "INFO",
        "ENABLE_METRICS": "true",
        "RNG_SEED": "42",
    }


@pytest.fixture
def make_snapshot():
    """Factory fixture for snapshots.

    Usage:
        snapshot = make_snapshot(health=ResourcePool(current=5, maximum=20))
    """
    def _make(**overrides) -> CharacterSnapshot:
        data = {
            "id": "hero-1",
            "name": "Brom",
            "character_class": "commoner",
            "health": ResourcePool(current=20, maximum=20),
            "mana": ResourcePool(current=10, maximum=10),
            "weights": DecisionWeights(),
        }
        data.update(overrides)
        return CharacterSnapshot(**data)

    return _make


@pytest.fixture
def make_session():
    """Factory fixture for registration sessions."""
    def _make(session_id: str = "session-1", expires_in: timedelta = timedelta(hours=1)) -> RegistrationSession:
        now = utcnow()
        return RegistrationSession(
            session_id=session_id,
            bearer_token="token-abc",
            registered_at=now,
            orchestrator_endpoint="http://localhost:3000",
            expires_at=now + expires_in,
        )

    return _make


@pytest.fixture
def make_grant(make_session):
    """Factory fixture for successful registration grants."""
    def _make(session_id: str = "session-1") -> RegistrationGrant:
        return RegistrationGrant(session=make_session(session_id))

    return _make


@pytest.fixture
def mock_orchestrator():
    """AsyncMock with the OrchestratorClient interface."""
    client = AsyncMock(spec=OrchestratorClient)
    client.heartbeat.return_value = {"success": True}
    client.submit_action.return_value = {"accepted": True}
    client.unregister.return_value = None
    return client


@pytest.fixture
def mock_http_client():
    """AsyncMock replacing the httpx.AsyncClient created by the app lifespan.

    Every POST/DELETE answers 200 with an empty JSON object unless a test
    sets its own return value.
    """
    http_client = AsyncMock(spec=AsyncClient)
    response = Mock()
    response.status_code = 200
    response.json.return_value = {}
    response.raise_for_status = Mock()
    http_client.post.return_value = response
    http_client.delete.return_value = response
    return http_client


@pytest.fixture
def client(test_env, mock_http_client):
    """FastAPI TestClient running the real lifespan.

    The lifespan's AsyncClient is replaced with mock_http_client, so no
    request leaves the process. Components are reachable through
    client.app.state (store, lifecycle, gateway, engine, metrics).
    """
    with patch.dict(os.environ, test_env, clear=True):
        from character_actor.config import get_settings
        get_settings.cache_clear()

        from character_actor.main import app

        try:
            with patch("character_actor.main.AsyncClient", return_value=mock_http_client):
                with TestClient(app) as test_client:
                    yield test_client
        finally:
            get_settings.cache_clear()
