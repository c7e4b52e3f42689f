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
"""Structured logging for the character actor.

Every line logged through StructuredLogger carries the correlation fields
currently in context:

- request_id: set by the correlation middleware per HTTP request
- character_id: set once at startup, the actor plays a single character
- cycle_id: set by the decision engine for the duration of one cycle

Credentials issued by the orchestrator must pass through redact_secrets()
before they reach a log line.
"""

import json
import logging
import re
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

request_id_ctx: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
character_id_ctx: ContextVar[Optional[str]] = ContextVar('character_id', default=None)
cycle_id_ctx: ContextVar[Optional[str]] = ContextVar('cycle_id', default=None)

# Order here is the order fields appear in a log line.
_CORRELATION_FIELDS = (
    ('request_id', request_id_ctx),
    ('character_id', character_id_ctx),
    ('cycle_id', cycle_id_ctx),
)

_SECRET_PATTERNS = (
    (re.compile(r'Bearer\s+[a-zA-Z0-9\-._~+/]+=*', re.IGNORECASE), 'Bearer ***REDACTED***'),
    (re.compile(r'eyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]*'), '***REDACTED-JWT***'),
    (
        re.compile(r'((?:character_?)?token["\']?\s*[:=]\s*["\']?)([a-zA-Z0-9_\-.]{8,})', re.IGNORECASE),
        r'\1***REDACTED***',
    ),
)

_CONTROL_CHARS = re.compile(r'[\r\n\t\x00-\x1f\x7f-\x9f]')


def set_request_id(request_id: Optional[str]) -> None:
    request_id_ctx.set(request_id)


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def set_character_id(character_id: Optional[str]) -> None:
    """Bind the character this process plays to all subsequent log lines."""
    character_id_ctx.set(character_id)


def get_character_id() -> Optional[str]:
    return character_id_ctx.get()


def set_cycle_id(cycle_id: Optional[str]) -> None:
    """Tag log lines with the decision cycle in progress (None to clear)."""
    cycle_id_ctx.set(cycle_id)


def get_cycle_id() -> Optional[str]:
    return cycle_id_ctx.get()


def clear_context() -> None:
    """Drop per-request correlation; the character binding stays."""
    request_id_ctx.set(None)
    cycle_id_ctx.set(None)


def redact_secrets(text: str) -> str:
    """Mask bearer tokens, JWTs and token key/value pairs in text."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def sanitize_for_log(text: Any, max_length: int = 200) -> str:
    """Strip control characters and cap the length of untrusted input.

    Event payloads come from the orchestrator and may contain anything;
    this keeps a single payload from forging or flooding log lines.
    Use redact_secrets() for credentials.

    Args:
        text: Value to render
        max_length: Length after which the text is cut and "..." appended

    Returns:
        Single-line string safe to embed in a log message
    """
    cleaned = _CONTROL_CHARS.sub('', str(text))
    if len(cleaned) > max_length:
        return cleaned[:max_length] + "..."
    return cleaned


def get_structured_extras() -> Dict[str, Any]:
    """Correlation fields that are currently set, keyed by field name."""
    return {name: var.get() for name, var in _CORRELATION_FIELDS if var.get()}


class StructuredLogger:
    """Logger that appends correlation fields and keyword extras.

    ``log.info("Decision selected", action_type="combat.defend")`` renders as
    ``Decision selected | cycle_id=... action_type=combat.defend``; the same
    fields are attached to the record for JsonFormatter. Extras whose value
    is None are left out of the message.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log(self, level: int, message: str, **fields) -> None:
        if not self.logger.isEnabledFor(level):
            return

        extras = get_structured_extras()
        extras.update(fields)

        rendered = ' '.join(f'{key}={value}' for key, value in extras.items() if value is not None)
        if rendered:
            message = f"{message} | {rendered}"

        self.logger.log(level, message, extra=extras)

    def debug(self, message: str, **fields) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields) -> None:
        self._log(logging.ERROR, message, **fields)

    def critical(self, message: str, **fields) -> None:
        self._log(logging.CRITICAL, message, **fields)


class PhaseTimer:
    """Time one decision phase and log its outcome.

    A phase that raises is logged at WARNING with the exception type; the
    exception itself propagates so the engine can fall back.
    """

    def __init__(self, phase: str, logger: StructuredLogger):
        self.phase = phase
        self.logger = logger
        self.start_time = 0.0
        self.duration_ms = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        self.logger.debug(f"Phase started: {self.phase}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.perf_counter() - self.start_time) * 1000
        elapsed = f"{self.duration_ms:.2f}"

        if exc_type is None:
            self.logger.debug(f"Phase completed: {self.phase}", duration_ms=elapsed)
        else:
            self.logger.warning(
                f"Phase failed: {self.phase}",
                duration_ms=elapsed,
                error_type=exc_type.__name__
            )


# Attributes every LogRecord has; anything else on a record came from extra=.
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord('', logging.INFO, '', 0, '', None, None).__dict__
) | {'message', 'asctime', 'taskName'}


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, service,
    then correlation fields and any other extras."""

    def __init__(self, service_name: Optional[str] = None):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if self.service_name:
            entry['service'] = self.service_name

        for key, value in vars(record).items():
            if key not in _STANDARD_RECORD_ATTRS and key not in entry:
                entry[key] = value

        if record.exc_info:
            entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    service_name: str = "character-actor"
) -> None:
    """Install a single stderr handler on the root logger.

    Existing root handlers are removed, so calling this twice does not
    duplicate output.
    """
    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    handler.setFormatter(
        JsonFormatter(service_name=service_name)
        if json_format
        else logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(log_level)
    root.addHandler(handler)

    root.info(f"Logging configured: level={level}, json_format={json_format}, service={service_name}")
