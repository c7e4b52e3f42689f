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
"""Reports chosen actions to the orchestrator under the current session.

Without a usable session the submitter returns a "not submitted" result
instead of raising. Timeouts, connection failures and 5xx responses are
retried a bounded number of times with the same timestamp, so the
orchestrator can recognise a repeat. Session rejections are not retried:
they are handed to the lifecycle manager, which re-registers.
"""

from typing import Awaitable, Callable, Optional, Union

from character_actor.logging import StructuredLogger
from character_actor.metrics import MetricsCollector
from character_actor.models import (
    CandidateAction,
    RegistrationSession,
    ScoredAction,
    SubmissionResult,
    utcnow,
)
from character_actor.resilience import RetryConfig, RetryExhaustedError, with_retry
from character_actor.services.orchestrator_client import (
    OrchestratorClient,
    OrchestratorClientError,
    OrchestratorSessionError,
    OrchestratorTimeoutError,
    OrchestratorUnavailableError,
)

logger = StructuredLogger(__name__)

SessionErrorHandler = Callable[[str], Awaitable[None]]


class ActionSubmitter:
    """Sends decided actions to the orchestrator."""

    def __init__(
        self,
        client: OrchestratorClient,
        max_attempts: int = 2,
        retry_delay: float = 0.5,
        enabled: bool = True,
        on_session_error: Optional[SessionErrorHandler] = None,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Initialize the submitter.

        Args:
            client: Orchestrator client
            max_attempts: Attempts per submission for transient failures
            retry_delay: Base delay; attempt N waits retry_delay * N
            enabled: When False every submission returns "not submitted"
            on_session_error: Awaited with a reason when the session is unusable
            log: Logger (defaults to the module logger)
            metrics: Optional metrics collector
        """
        self.client = client
        self.enabled = enabled
        self.on_session_error = on_session_error
        self.log = log or logger
        self.metrics = metrics
        self.retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=retry_delay,
            max_delay=max(retry_delay * max_attempts, retry_delay),
            retryable_exceptions=(OrchestratorTimeoutError, OrchestratorUnavailableError),
        )

    def _not_submitted(self, reason: str, error: Optional[str] = None, attempts: int = 0) -> SubmissionResult:
        if self.metrics:
            self.metrics.record_submission("not_submitted" if error is None else "failed")
        return SubmissionResult(submitted=False, reason=reason, error=error, attempts=attempts)

    async def _session_problem(self, reason: str) -> None:
        if self.on_session_error is not None:
            await self.on_session_error(reason)

    async def submit(
        self,
        character_id: str,
        action: Union[ScoredAction, CandidateAction],
        session: Optional[RegistrationSession]
    ) -> SubmissionResult:
        """Submit an action. Never raises for orchestrator failures.

        Args:
            character_id: Submitting character
            action: Chosen action (scored or bare)
            session: Session captured from the committed snapshot, or None

        Returns:
            SubmissionResult describing what happened
        """
        if isinstance(action, ScoredAction):
            action = action.action

        if not self.enabled:
            return self._not_submitted("submission disabled")
        if session is None:
            self.log.debug("Not submitting action: unregistered", action_type=action.type)
            return self._not_submitted("unregistered")
        if session.is_expired():
            self.log.warning("Not submitting action: session token expired", action_type=action.type)
            await self._session_problem("session expired")
            return self._not_submitted("session expired")

        payload = {
            "characterId": character_id,
            "sessionId": session.session_id,
            "action": action.model_dump(mode="json", by_alias=True),
            "timestamp": utcnow().isoformat(),
        }
        attempts = 0

        def count_failure(attempt: int, error: Exception) -> None:
            if self.metrics and self.retry_config.is_retryable(error) and attempt < self.retry_config.max_attempts:
                self.metrics.record_submission("retries")

        @with_retry(self.retry_config, "submit_action", on_failure=count_failure, log=self.log)
        async def send() -> dict:
            nonlocal attempts
            attempts += 1
            return await self.client.submit_action(session.bearer_token, payload)

        try:
            ack = await send()
        except OrchestratorSessionError as e:
            self.log.warning(
                "Action submission rejected: session invalid",
                action_type=action.type,
                status_code=e.status_code
            )
            await self._session_problem("session rejected")
            return self._not_submitted("session rejected", error=str(e), attempts=attempts)
        except RetryExhaustedError as e:
            return self._not_submitted("submission failed", error=str(e.last_error), attempts=e.attempts)
        except OrchestratorClientError as e:
            self.log.warning(
                "Action submission failed",
                action_type=action.type,
                error_type=type(e).__name__,
                status_code=e.status_code
            )
            return self._not_submitted("submission failed", error=str(e), attempts=attempts)

        accepted = bool(ack.get("accepted", True))
        if self.metrics:
            self.metrics.record_submission("submitted")
        self.log.info(
            "Action submitted",
            action_type=action.type,
            accepted=accepted,
            attempts=attempts
        )
        return SubmissionResult(
            submitted=True,
            accepted=accepted,
            attempts=attempts,
            submitted_at=utcnow(),
        )
