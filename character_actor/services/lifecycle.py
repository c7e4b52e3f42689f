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
"""Registration lease lifecycle and heartbeat.

States:
    unregistered -> registering -> registered -> unregistering -> unregistered
    registering -> faulted (attempt ceiling exhausted)

Registration retries with a linearly increasing delay (base_delay * attempt).
Exhausting the ceiling raises RegistrationFailedError, which the embedding
process treats as fatal at startup. The heartbeat runs as its own asyncio
task on a fixed period and only reports while a valid session is held; its
failures are logged and retried on the next tick.

unregister() overtakes a registration in flight: the pending attempt is
cancelled, and a grant that arrives anyway is released rather than stored,
so at most one session is ever held.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from character_actor.logging import StructuredLogger
from character_actor.metrics import MetricsCollector
from character_actor.models import CharacterSnapshot, RegistrationSession, utcnow
from character_actor.resilience import RetryConfig, RetryExhaustedError, with_retry
from character_actor.services.orchestrator_client import (
    OrchestratorClient,
    OrchestratorClientError,
    OrchestratorSessionError,
    RegistrationGrant,
)
from character_actor.services.state_store import StateStore

logger = StructuredLogger(__name__)

PROTOCOL_VERSION = "1.0.0"

RegisteredCallback = Callable[[RegistrationGrant], Any]


class LifecycleState(str, Enum):
    UNREGISTERED = "unregistered"
    REGISTERING = "registering"
    REGISTERED = "registered"
    UNREGISTERING = "unregistering"
    FAULTED = "faulted"


class AlreadyRegisteredError(Exception):
    """Raised when register() is called while registered or registering."""
    pass


class RegistrationCancelledError(Exception):
    """Raised by register() when unregister() or shutdown() overtook it."""
    pass


class RegistrationFailedError(Exception):
    """Raised when registration exhausts its attempt ceiling.

    Attributes:
        attempts: Number of attempts made
        last_error: The exception from the final attempt
    """

    def __init__(self, attempts: int, last_error: Exception):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Registration failed after {attempts} attempt(s): "
            f"{type(last_error).__name__}: {last_error}"
        )


def infer_capabilities(snapshot: CharacterSnapshot) -> List[str]:
    """Capabilities advertised at registration, from class tag and spell list."""
    capabilities = ["basic"]
    if snapshot.spells:
        capabilities.append("spellcasting")

    character_class = snapshot.character_class.lower()
    if character_class in ("rogue", "ranger"):
        capabilities.extend(["stealth", "trapfinding"])
    if character_class in ("cleric", "paladin"):
        capabilities.append("healing")
    if character_class == "bard":
        capabilities.extend(["social", "inspiration"])

    capabilities.extend(["combat", "exploration"])
    return capabilities


class LifecycleManager:
    """Owns the registration lease and the heartbeat task."""

    def __init__(
        self,
        client: OrchestratorClient,
        store: StateStore,
        endpoint: str,
        max_attempts: int = 5,
        base_delay: float = 2.0,
        heartbeat_interval: float = 60.0,
        reregister_on_session_error: bool = True,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Initialize the lifecycle manager.

        Args:
            client: Orchestrator client
            store: State store holding the character snapshot
            endpoint: URL at which the orchestrator can reach this actor
            max_attempts: Registration attempt ceiling
            base_delay: Base registration delay; attempt N waits base_delay * N
            heartbeat_interval: Seconds between heartbeat ticks
            reregister_on_session_error: Re-register in the background after
                the orchestrator rejects the session
            log: Logger (defaults to the module logger)
            metrics: Optional metrics collector
        """
        self.client = client
        self.store = store
        self.endpoint = endpoint
        self.heartbeat_interval = heartbeat_interval
        self.reregister_on_session_error = reregister_on_session_error
        self.log = log or logger
        self.metrics = metrics
        self.retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=base_delay * max_attempts,
            retryable_exceptions=(OrchestratorClientError,),
        )

        self._state = LifecycleState.UNREGISTERED
        self._callbacks: List[RegisteredCallback] = []
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reregister_task: Optional[asyncio.Task] = None
        self._attempt_task: Optional[asyncio.Future] = None
        # Bumped by register() and unregister(); a registration whose
        # generation is no longer current must not keep its session.
        self._generation = 0
        self.last_error: Optional[str] = None
        self.initial_game_state: Optional[Dict[str, Any]] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    def on_registered(self, callback: RegisteredCallback) -> None:
        """Register a callback (sync or async) invoked after each successful registration."""
        self._callbacks.append(callback)

    def is_registered(self) -> bool:
        return self._state == LifecycleState.REGISTERED and self.store.snapshot().is_registered()

    def build_registration_payload(self, snapshot: CharacterSnapshot) -> Dict[str, Any]:
        return {
            "characterId": snapshot.id,
            "name": snapshot.name,
            "class": snapshot.character_class,
            "level": snapshot.level,
            "containerEndpoint": self.endpoint,
            "capabilities": infer_capabilities(snapshot),
            "version": PROTOCOL_VERSION,
            "attributes": dict(snapshot.abilities),
            "health": snapshot.health.model_dump(by_alias=True),
            "mana": snapshot.mana.model_dump(by_alias=True),
        }

    async def register(self) -> RegistrationSession:
        """Register with the orchestrator, retrying with linear backoff.

        Returns:
            The new RegistrationSession

        Raises:
            AlreadyRegisteredError: If registered or a registration is in flight
            RegistrationFailedError: If every attempt failed
            RegistrationCancelledError: If unregister() ran before the
                session was stored; a grant received by then is released
        """
        if self._state in (LifecycleState.REGISTERED, LifecycleState.REGISTERING):
            self.log.warning("Registration rejected: already registered", state=self._state.value)
            raise AlreadyRegisteredError(f"Character is already {self._state.value}")

        self._generation += 1
        generation = self._generation
        self._state = LifecycleState.REGISTERING
        payload = self.build_registration_payload(self.store.snapshot())
        self.log.info(
            "Registering with orchestrator",
            capabilities=",".join(payload["capabilities"]),
            max_attempts=self.retry_config.max_attempts
        )

        def record_failure(attempt: int, error: Exception) -> None:
            self.last_error = f"{type(error).__name__}: {error}"
            if self.metrics:
                self.metrics.record_registration_attempt(success=False)

        @with_retry(self.retry_config, "register", on_failure=record_failure, log=self.log)
        async def attempt() -> RegistrationGrant:
            return await self.client.register(payload)

        def superseded() -> bool:
            return generation != self._generation

        task = self._attempt_task = asyncio.ensure_future(attempt())
        try:
            grant = await task
        except asyncio.CancelledError:
            if superseded():
                self.log.info("Registration cancelled by unregister")
                raise RegistrationCancelledError("Registration cancelled before it completed") from None
            self._state = LifecycleState.UNREGISTERED
            raise
        except RetryExhaustedError as e:
            if superseded():
                raise RegistrationCancelledError("Registration cancelled before it completed") from e
            self._state = LifecycleState.FAULTED
            raise RegistrationFailedError(e.attempts, e.last_error) from e
        except Exception as e:
            if superseded():
                raise RegistrationCancelledError("Registration cancelled before it completed") from e
            self._state = LifecycleState.FAULTED
            self.log.error(
                "Registration failed with unexpected error",
                error_type=type(e).__name__,
                error=str(e)
            )
            raise RegistrationFailedError(1, e) from e
        finally:
            if self._attempt_task is task:
                self._attempt_task = None

        if self.metrics:
            self.metrics.record_registration_attempt(success=True)

        def store_session(snapshot: CharacterSnapshot) -> None:
            if superseded():
                raise RegistrationCancelledError("Registration cancelled before the session was stored")
            snapshot.session = grant.session

        try:
            await self.store.update(store_session, reason="registered")
        except RegistrationCancelledError:
            await self._release_stale_grant(grant)
            raise
        if superseded():
            # unregister() read the stored session and releases it itself.
            raise RegistrationCancelledError("Registration cancelled after the session was stored")

        self._state = LifecycleState.REGISTERED
        self.last_error = None
        self.initial_game_state = grant.initial_game_state

        self.log.info(
            "Registered with orchestrator",
            session_id=grant.session.session_id,
            expires_at=grant.session.expires_at.isoformat() if grant.session.expires_at else None
        )

        self.start_heartbeat()
        for callback in self._callbacks:
            result = callback(grant)
            if inspect.isawaitable(result):
                await result
        return grant.session

    def start_heartbeat(self) -> bool:
        """Start the heartbeat task.

        Returns:
            False if the heartbeat was already running
        """
        if self.heartbeat_running:
            return False
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        self.log.info("Heartbeat started", interval_seconds=self.heartbeat_interval)
        return True

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.send_heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.error(
                    "Unexpected heartbeat failure",
                    error_type=type(e).__name__,
                    error=str(e)
                )

    def _heartbeat_payload(self, snapshot: CharacterSnapshot) -> Dict[str, Any]:
        return {
            "characterId": snapshot.id,
            "health": snapshot.health.model_dump(by_alias=True),
            "mana": snapshot.mana.model_dump(by_alias=True),
            "position": snapshot.position.model_dump(mode="json", by_alias=True),
            "status": "combat" if snapshot.combat.in_combat else "exploring",
            "timestamp": utcnow().isoformat(),
        }

    async def send_heartbeat(self) -> bool:
        """Send one heartbeat if a valid session is held.

        Vitals come from a non-blocking snapshot read, so a decision cycle
        in progress never delays the heartbeat.

        Returns:
            True if the orchestrator acknowledged the heartbeat
        """
        snapshot = self.store.snapshot()
        if self._state != LifecycleState.REGISTERED or not snapshot.is_registered():
            return False
        if not snapshot.has_valid_session():
            self.log.warning("Session token expired; skipping heartbeat")
            await self.handle_session_error("session expired")
            return False

        try:
            await self.client.heartbeat(snapshot.session.bearer_token, self._heartbeat_payload(snapshot))
        except OrchestratorSessionError:
            if self.metrics:
                self.metrics.record_heartbeat(success=False)
            await self.handle_session_error("heartbeat rejected")
            return False
        except OrchestratorClientError as e:
            if self.metrics:
                self.metrics.record_heartbeat(success=False)
            self.log.warning(
                "Heartbeat failed; retrying next tick",
                error_type=type(e).__name__,
                status_code=e.status_code
            )
            return False

        if self.metrics:
            self.metrics.record_heartbeat(success=True)
        sent_at = utcnow()

        def mark(s: CharacterSnapshot) -> None:
            s.last_heartbeat_at = sent_at

        await self.store.update(mark, reason="heartbeat")
        self.log.debug("Heartbeat acknowledged")
        return True

    async def _clear_session(self, reason: str) -> None:
        def clear(snapshot: CharacterSnapshot) -> None:
            snapshot.session = None

        await self.store.update(clear, reason=reason)

    async def handle_session_error(self, reason: str) -> None:
        """Drop a session the orchestrator no longer honours.

        Moves to unregistered and, when enabled, re-registers in the
        background. Repeated reports for the same session are ignored.
        """
        if self._state != LifecycleState.REGISTERED:
            return
        self.log.warning("Session invalidated; returning to unregistered", reason=reason)
        if self.metrics:
            self.metrics.record_error("session_invalidated")
        await self._clear_session(reason)
        self._state = LifecycleState.UNREGISTERED

        if self.reregister_on_session_error:
            self._reregister_task = asyncio.create_task(self._reregister())

    async def _reregister(self) -> None:
        try:
            await self.register()
        except (AlreadyRegisteredError, RegistrationCancelledError):
            pass
        except RegistrationFailedError as e:
            self.log.error(
                "Re-registration failed; lifecycle faulted",
                attempts=e.attempts,
                error=str(e.last_error)
            )

    async def unregister(self) -> bool:
        """Release the session. Local state always ends unregistered.

        A registration still in flight is cancelled; one that already holds
        a grant releases it instead of storing it.

        Returns:
            True if the orchestrator acknowledged the release
        """
        self._generation += 1
        await self._cancel_attempt()
        await self.stop_heartbeat()
        snapshot = self.store.snapshot()
        if snapshot.session is None:
            self._state = LifecycleState.UNREGISTERED
            return False

        self._state = LifecycleState.UNREGISTERING
        released = False
        try:
            await self.client.unregister(snapshot.id, snapshot.session.bearer_token)
            released = True
            self.log.info("Unregistered from orchestrator")
        except OrchestratorClientError as e:
            self.log.warning(
                "Unregister call failed; clearing session locally",
                error_type=type(e).__name__,
                status_code=e.status_code
            )
        finally:
            await self._clear_session("unregistered")
            self._state = LifecycleState.UNREGISTERED
        return released

    async def shutdown(self) -> None:
        """Stop background work and release the session (best effort)."""
        task, self._reregister_task = self._reregister_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.unregister()

    async def _cancel_attempt(self) -> None:
        task, self._attempt_task = self._attempt_task, None
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.wait([task])

    async def _release_stale_grant(self, grant: RegistrationGrant) -> None:
        """Best-effort release of a session granted to a cancelled registration."""
        try:
            await self.client.unregister(self.store.character_id, grant.session.bearer_token)
            self.log.info("Released session from cancelled registration", session_id=grant.session.session_id)
        except OrchestratorClientError as e:
            self.log.warning(
                "Failed to release session from cancelled registration",
                error_type=type(e).__name__,
                status_code=e.status_code
            )
