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
"""Orchestrator client for registration, heartbeat and action submission."""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from httpx import AsyncClient, HTTPStatusError, TimeoutException, TransportError

from character_actor.logging import StructuredLogger, redact_secrets, sanitize_for_log
from character_actor.metrics import MetricsCollector
from character_actor.models import RegistrationSession, utcnow

logger = StructuredLogger(__name__)


class OrchestratorClientError(Exception):
    """Base exception for orchestrator client errors.

    Attributes:
        status_code: HTTP status code if available, None otherwise
    """
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OrchestratorTimeoutError(OrchestratorClientError):
    """Raised when an orchestrator request times out."""
    pass


class OrchestratorUnavailableError(OrchestratorClientError):
    """Raised on connection failures and 5xx responses."""
    pass


class OrchestratorSessionError(OrchestratorClientError):
    """Raised when the orchestrator rejects the session token (401/403)."""
    pass


class OrchestratorNotFoundError(OrchestratorClientError):
    """Raised when the character is unknown to the orchestrator (404)."""
    pass


@dataclass
class RegistrationGrant:
    """Successful registration: the session plus the initial game-state view."""
    session: RegistrationSession
    initial_game_state: Optional[Dict[str, Any]] = None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def token_expiry(token: str, explicit: Any = None) -> Optional[datetime]:
    """Determine when a bearer token expires.

    An explicit expiry from the registration response wins; otherwise the
    token's ``exp`` claim is read. The signature is not verified here: the
    orchestrator is the party that validates its own tokens.

    Args:
        token: Bearer token
        explicit: Optional expiry (ISO 8601 string or epoch seconds)

    Returns:
        Expiry time (UTC), or None when unknown
    """
    expires_at = _parse_timestamp(explicit)
    if expires_at is not None:
        return expires_at
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


class OrchestratorClient:
    """Client for the central game orchestrator.

    This client handles:
    - Character registration (session lease acquisition)
    - Heartbeats reporting vitals
    - Action submission under the current session
    - Unregistration

    Each call carries its own bounded timeout. Errors are mapped onto the
    OrchestratorClientError hierarchy; retry policy belongs to the callers.
    """

    def __init__(
        self,
        base_url: str,
        http_client: AsyncClient,
        registration_timeout: float = 10.0,
        heartbeat_timeout: float = 5.0,
        submission_timeout: float = 10.0,
        unregister_timeout: float = 5.0,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Initialize orchestrator client.

        Args:
            base_url: Base URL of the orchestrator (e.g., http://localhost:3000)
            http_client: HTTP client for making requests
            registration_timeout: Timeout for one registration attempt in seconds
            heartbeat_timeout: Timeout for a heartbeat in seconds
            submission_timeout: Timeout for an action submission in seconds
            unregister_timeout: Timeout for unregistration in seconds
            log: Logger (defaults to the module logger)
            metrics: Optional metrics collector
        """
        self.base_url = base_url.rstrip('/')
        self.http_client = http_client
        self.registration_timeout = registration_timeout
        self.heartbeat_timeout = heartbeat_timeout
        self.submission_timeout = submission_timeout
        self.unregister_timeout = unregister_timeout
        self.log = log or logger
        self.metrics = metrics
        self.log.info(
            f"Initialized OrchestratorClient with base_url={self.base_url}, "
            f"registration_timeout={registration_timeout}s, heartbeat_timeout={heartbeat_timeout}s, "
            f"submission_timeout={submission_timeout}s"
        )

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        timeout: float,
        payload: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None
    ) -> Dict[str, Any]:
        """Send one request and map failures onto client errors.

        Returns:
            Decoded JSON body (empty dict when the body is not JSON)

        Raises:
            OrchestratorSessionError: On 401/403
            OrchestratorNotFoundError: On 404
            OrchestratorUnavailableError: On 5xx or connection failure
            OrchestratorTimeoutError: If the request times out
            OrchestratorClientError: For other errors
        """
        url = f"{self.base_url}{path}"
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        kwargs: Dict[str, Any] = {"headers": headers, "timeout": timeout}
        if payload is not None:
            kwargs["json"] = payload

        start_time = time.perf_counter()
        try:
            response = await getattr(self.http_client, method)(url, **kwargs)
            response.raise_for_status()
        except HTTPStatusError as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            status_code = e.response.status_code
            self.log.warning(
                f"Orchestrator {operation} returned HTTP error",
                status_code=status_code,
                duration_ms=f"{duration_ms:.2f}",
                response=sanitize_for_log(redact_secrets(str(getattr(e.response, 'text', ''))), 200)
            )
            if self.metrics:
                self.metrics.record_error(f"orchestrator_{operation}_http_{status_code}")
            if status_code in (401, 403):
                raise OrchestratorSessionError(
                    f"Orchestrator rejected session during {operation}", status_code
                ) from e
            if status_code == 404:
                raise OrchestratorNotFoundError(
                    f"Orchestrator {operation} target not found", status_code
                ) from e
            if status_code >= 500:
                raise OrchestratorUnavailableError(
                    f"Orchestrator {operation} failed with HTTP {status_code}", status_code
                ) from e
            raise OrchestratorClientError(
                f"Orchestrator {operation} failed with HTTP {status_code}", status_code
            ) from e
        except TimeoutException as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.log.warning(
                f"Orchestrator {operation} timed out",
                timeout_seconds=timeout,
                duration_ms=f"{duration_ms:.2f}"
            )
            if self.metrics:
                self.metrics.record_error(f"orchestrator_{operation}_timeout")
            raise OrchestratorTimeoutError(
                f"Orchestrator {operation} timed out after {timeout}s"
            ) from e
        except TransportError as e:
            self.log.warning(
                f"Orchestrator {operation} connection failed",
                error_type=type(e).__name__,
                error=sanitize_for_log(str(e))
            )
            if self.metrics:
                self.metrics.record_error(f"orchestrator_{operation}_unavailable")
            raise OrchestratorUnavailableError(
                f"Orchestrator {operation} connection failed: {type(e).__name__}"
            ) from e

        duration_ms = (time.perf_counter() - start_time) * 1000
        if self.metrics:
            self.metrics.record_latency(f"orchestrator_{operation}", duration_ms)
        self.log.debug(
            f"Orchestrator {operation} succeeded",
            status_code=getattr(response, 'status_code', None),
            duration_ms=f"{duration_ms:.2f}"
        )

        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def register(self, payload: Dict[str, Any]) -> RegistrationGrant:
        """Register the character and obtain a session lease.

        Makes a POST request to /api/registry/character. One call is one
        attempt; the lifecycle manager owns the retry policy.

        Args:
            payload: Registration request (characterId, name, class, level,
                     containerEndpoint, capabilities, vitals)

        Returns:
            RegistrationGrant with the new session

        Raises:
            OrchestratorClientError: If the orchestrator refuses or the
                response lacks a session id or token
        """
        data = await self._request(
            "post",
            "/api/registry/character",
            "register",
            self.registration_timeout,
            payload=payload,
        )

        if data.get("success") is False:
            raise OrchestratorClientError(
                f"Registration rejected: {sanitize_for_log(data.get('error') or data.get('message') or 'no reason')}"
            )

        token = data.get("bearerToken") or data.get("characterToken") or data.get("token")
        session_id = data.get("sessionId")
        if not token or not session_id:
            raise OrchestratorClientError("Registration response missing sessionId or token")

        session = RegistrationSession(
            session_id=str(session_id),
            bearer_token=token,
            registered_at=utcnow(),
            orchestrator_endpoint=self.base_url,
            expires_at=token_expiry(token, data.get("expiresAt")),
        )
        initial = data.get("initialGameStateView") or data.get("gameState")
        return RegistrationGrant(
            session=session,
            initial_game_state=initial if isinstance(initial, dict) else None,
        )

    async def heartbeat(self, token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Report vitals to the orchestrator (POST /api/registry/heartbeat)."""
        return await self._request(
            "post",
            "/api/registry/heartbeat",
            "heartbeat",
            self.heartbeat_timeout,
            payload=payload,
            token=token,
        )

    async def submit_action(self, token: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Submit a chosen action (POST /api/game/action).

        Returns:
            Acknowledgement body; ``accepted`` defaults to True when absent
        """
        data = await self._request(
            "post",
            "/api/game/action",
            "submit",
            self.submission_timeout,
            payload=payload,
            token=token,
        )
        data.setdefault("accepted", data.get("success", True))
        return data

    async def unregister(self, character_id: str, token: str) -> None:
        """Release the session (DELETE /api/registry/character/{id})."""
        await self._request(
            "delete",
            f"/api/registry/character/{character_id}",
            "unregister",
            self.unregister_timeout,
            token=token,
        )
