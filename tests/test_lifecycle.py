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
"""Tests for the registration lifecycle and heartbeat."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from character_actor.metrics import MetricsCollector
from character_actor.models import Spell
from character_actor.services.lifecycle import (
    AlreadyRegisteredError,
    LifecycleManager,
    LifecycleState,
    RegistrationCancelledError,
    RegistrationFailedError,
    infer_capabilities,
)
from character_actor.services.orchestrator_client import (
    OrchestratorSessionError,
    OrchestratorTimeoutError,
    OrchestratorUnavailableError,
    RegistrationGrant,
)
from character_actor.services.state_store import StateStore


@pytest.fixture
def store(make_snapshot):
    return StateStore(make_snapshot())


@pytest.fixture
def metrics():
    return MetricsCollector()


async def settle(rounds: int = 10) -> None:
    """Let pending tasks run up to their next real suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def make_lifecycle(mock_orchestrator, store, metrics):
    def _make(**kwargs) -> LifecycleManager:
        options = {
            "endpoint": "http://actor:8080",
            "max_attempts": 5,
            "base_delay": 0,
            "heartbeat_interval": 3600,
            "metrics": metrics,
        }
        options.update(kwargs)
        return LifecycleManager(mock_orchestrator, store, **options)

    return _make


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_after_transient_failures(self, make_lifecycle, mock_orchestrator, make_grant, store, metrics):
        mock_orchestrator.register.side_effect = [
            OrchestratorTimeoutError("t1"),
            OrchestratorTimeoutError("t2"),
            OrchestratorTimeoutError("t3"),
            make_grant("session-4"),
        ]
        lifecycle = make_lifecycle()

        session = await lifecycle.register()

        assert session.session_id == "session-4"
        assert lifecycle.state == LifecycleState.REGISTERED
        assert lifecycle.is_registered()
        assert lifecycle.heartbeat_running
        assert store.snapshot().session.session_id == "session-4"
        assert mock_orchestrator.register.await_count == 4
        assert metrics.get_metrics()["registration"] == {"attempts": 4, "successes": 1, "failures": 3}

        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_heartbeat_started_exactly_once(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()
        start = Mock(wraps=lifecycle.start_heartbeat)
        lifecycle.start_heartbeat = start

        await lifecycle.register()

        start.assert_called_once()
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_second_register_is_rejected_without_remote_call(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()
        await lifecycle.register()

        with pytest.raises(AlreadyRegisteredError):
            await lifecycle.register()

        assert mock_orchestrator.register.await_count == 1
        assert lifecycle.state == LifecycleState.REGISTERED
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_concurrent_register_calls(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()

        results = await asyncio.gather(lifecycle.register(), lifecycle.register(), return_exceptions=True)

        assert sum(isinstance(r, AlreadyRegisteredError) for r in results) == 1
        assert mock_orchestrator.register.await_count == 1
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_exhaustion_is_fatal(self, make_lifecycle, mock_orchestrator, store):
        mock_orchestrator.register.side_effect = OrchestratorUnavailableError("down", 503)
        lifecycle = make_lifecycle(max_attempts=3)

        with pytest.raises(RegistrationFailedError) as exc_info:
            await lifecycle.register()

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, OrchestratorUnavailableError)
        assert lifecycle.state == LifecycleState.FAULTED
        assert not lifecycle.heartbeat_running
        assert store.snapshot().session is None

    @pytest.mark.asyncio
    async def test_registration_payload(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()

        await lifecycle.register()
        payload = mock_orchestrator.register.call_args.args[0]

        assert payload["characterId"] == "hero-1"
        assert payload["containerEndpoint"] == "http://actor:8080"
        assert payload["health"] == {"current": 20, "maximum": 20}
        assert payload["capabilities"] == ["basic", "combat", "exploration"]
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_callbacks_receive_grant(self, make_lifecycle, mock_orchestrator, make_session):
        grant = RegistrationGrant(session=make_session(), initial_game_state={"combat": None})
        mock_orchestrator.register.return_value = grant
        lifecycle = make_lifecycle()
        sync_callback = Mock()
        async_callback = AsyncMock()
        lifecycle.on_registered(sync_callback)
        lifecycle.on_registered(async_callback)

        await lifecycle.register()

        sync_callback.assert_called_once_with(grant)
        async_callback.assert_awaited_once_with(grant)
        assert lifecycle.initial_game_state == {"combat": None}
        await lifecycle.shutdown()


class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_no_heartbeat_while_unregistered(self, make_lifecycle, mock_orchestrator):
        lifecycle = make_lifecycle()

        assert await lifecycle.send_heartbeat() is False
        mock_orchestrator.heartbeat.assert_not_called()

    @pytest.mark.asyncio
    async def test_heartbeat_reports_vitals(self, make_lifecycle, mock_orchestrator, make_grant, store, metrics):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()
        await lifecycle.register()

        assert await lifecycle.send_heartbeat() is True

        token, payload = mock_orchestrator.heartbeat.call_args.args
        assert token == "token-abc"
        assert payload["characterId"] == "hero-1"
        assert payload["status"] == "exploring"
        assert payload["health"] == {"current": 20, "maximum": 20}
        assert store.snapshot().last_heartbeat_at is not None
        assert metrics.get_metrics()["heartbeats"]["sent"] == 1
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_transient_heartbeat_failure_keeps_session(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.return_value = make_grant()
        mock_orchestrator.heartbeat.side_effect = OrchestratorTimeoutError("slow")
        lifecycle = make_lifecycle()
        await lifecycle.register()

        assert await lifecycle.send_heartbeat() is False
        assert lifecycle.state == LifecycleState.REGISTERED
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_rejected_heartbeat_reregisters(self, make_lifecycle, mock_orchestrator, make_grant, store):
        mock_orchestrator.register.side_effect = [make_grant("session-1"), make_grant("session-2")]
        mock_orchestrator.heartbeat.side_effect = OrchestratorSessionError("expired", 401)
        lifecycle = make_lifecycle()
        await lifecycle.register()

        assert await lifecycle.send_heartbeat() is False
        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert store.snapshot().session is None

        await lifecycle._reregister_task

        assert lifecycle.state == LifecycleState.REGISTERED
        assert store.snapshot().session.session_id == "session-2"
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_expired_session_is_dropped(self, make_lifecycle, mock_orchestrator, make_session, store):
        expired = make_session(expires_in=timedelta(seconds=-1))
        mock_orchestrator.register.return_value = RegistrationGrant(session=expired)
        lifecycle = make_lifecycle(reregister_on_session_error=False)
        await lifecycle.register()

        assert await lifecycle.send_heartbeat() is False

        mock_orchestrator.heartbeat.assert_not_called()
        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert store.snapshot().session is None
        await lifecycle.shutdown()


class TestUnregister:

    @pytest.mark.asyncio
    async def test_unregister_releases_session(self, make_lifecycle, mock_orchestrator, make_grant, store):
        mock_orchestrator.register.return_value = make_grant()
        lifecycle = make_lifecycle()
        await lifecycle.register()

        assert await lifecycle.unregister() is True

        mock_orchestrator.unregister.assert_awaited_once_with("hero-1", "token-abc")
        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert not lifecycle.heartbeat_running
        assert store.snapshot().session is None

    @pytest.mark.asyncio
    async def test_unregister_clears_session_when_remote_fails(self, make_lifecycle, mock_orchestrator, make_grant, store):
        mock_orchestrator.register.return_value = make_grant()
        mock_orchestrator.unregister.side_effect = OrchestratorUnavailableError("down", 503)
        lifecycle = make_lifecycle()
        await lifecycle.register()

        assert await lifecycle.unregister() is False

        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert store.snapshot().session is None

    @pytest.mark.asyncio
    async def test_unregister_without_session(self, make_lifecycle, mock_orchestrator):
        lifecycle = make_lifecycle()

        assert await lifecycle.unregister() is False
        mock_orchestrator.unregister.assert_not_called()

    @pytest.mark.asyncio
    async def test_register_again_after_unregister(self, make_lifecycle, mock_orchestrator, make_grant):
        mock_orchestrator.register.side_effect = [make_grant("a"), make_grant("b")]
        lifecycle = make_lifecycle()

        await lifecycle.register()
        await lifecycle.unregister()
        session = await lifecycle.register()

        assert session.session_id == "b"
        await lifecycle.shutdown()


class TestRegistrationOvertakenByUnregister:

    @pytest.mark.asyncio
    async def test_unregister_cancels_registration_in_flight(self, make_lifecycle, mock_orchestrator, make_grant, store):
        gate = asyncio.Event()

        async def slow_register(payload):
            await gate.wait()
            return make_grant(f"session-{mock_orchestrator.register.await_count}")

        mock_orchestrator.register.side_effect = slow_register
        lifecycle = make_lifecycle()

        first = asyncio.create_task(lifecycle.register())
        await settle()
        assert lifecycle.state == LifecycleState.REGISTERING

        assert await lifecycle.unregister() is False
        assert lifecycle.state == LifecycleState.UNREGISTERED
        with pytest.raises(RegistrationCancelledError):
            await first

        second = asyncio.create_task(lifecycle.register())
        await settle()
        gate.set()
        session = await second

        assert session.session_id == "session-2"
        assert store.snapshot().session.session_id == "session-2"
        assert lifecycle.state == LifecycleState.REGISTERED
        assert lifecycle.heartbeat_running
        mock_orchestrator.unregister.assert_not_called()
        await lifecycle.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_during_registration(self, make_lifecycle, mock_orchestrator, store):
        gate = asyncio.Event()

        async def never_answers(payload):
            await gate.wait()

        mock_orchestrator.register.side_effect = never_answers
        lifecycle = make_lifecycle()

        pending = asyncio.create_task(lifecycle.register())
        await settle()
        await lifecycle.shutdown()

        with pytest.raises(RegistrationCancelledError):
            await pending
        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert store.snapshot().session is None
        assert not lifecycle.heartbeat_running

    @pytest.mark.asyncio
    async def test_grant_after_unregister_is_released(self, make_lifecycle, mock_orchestrator, make_grant, store):
        mock_orchestrator.register.return_value = make_grant("session-late")
        lifecycle = make_lifecycle()

        # Holding the store lock parks register() between the grant and storing it.
        async with store.transaction(reason="busy"):
            pending = asyncio.create_task(lifecycle.register())
            await settle()
            assert mock_orchestrator.register.await_count == 1
            assert lifecycle.state == LifecycleState.REGISTERING
            await lifecycle.unregister()

        with pytest.raises(RegistrationCancelledError):
            await pending
        mock_orchestrator.unregister.assert_awaited_once_with("hero-1", "token-abc")
        assert store.snapshot().session is None
        assert lifecycle.state == LifecycleState.UNREGISTERED
        assert not lifecycle.heartbeat_running


@pytest.mark.parametrize("character_class,spells,expected", [
    ("fighter", [], ["basic", "combat", "exploration"]),
    ("Rogue", [], ["basic", "stealth", "trapfinding", "combat", "exploration"]),
    ("cleric", [Spell(name="cure_wounds", type="healing")], ["basic", "spellcasting", "healing", "combat", "exploration"]),
    ("bard", [], ["basic", "social", "inspiration", "combat", "exploration"]),
])
def test_infer_capabilities(make_snapshot, character_class, spells, expected):
    snapshot = make_snapshot(character_class=character_class, spells=spells)
    assert infer_capabilities(snapshot) == expected
