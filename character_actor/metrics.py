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
"""In-memory metrics for the character actor.

Enabled with ENABLE_METRICS and served at GET /metrics. The application
creates one MetricsCollector and passes it to each component; a component
given None records nothing.
"""

import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional

REGISTRATION_OUTCOMES = ("attempts", "successes", "failures")
HEARTBEAT_OUTCOMES = ("sent", "failed")
SUBMISSION_OUTCOMES = ("submitted", "not_submitted", "failed", "retries")


@dataclass
class LatencyStats:
    """Running count, total and extremes of one latency series (ms)."""
    count: int = 0
    total: float = 0.0
    min: Optional[float] = None
    max: float = 0.0

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def record(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = max(self.max, value)

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "avg_ms": round(self.avg, 2),
            "min_ms": round(self.min, 2) if self.min is not None else 0.0,
            "max_ms": round(self.max, 2)
        }


class MetricsCollector:
    """Thread-safe counters and latency series.

    Tracked:
    - HTTP responses by status code
    - errors by type (e.g. "orchestrator_heartbeat_http_503")
    - latencies by operation ("decision_cycle", "orchestrator_submit", "event")
    - decisions keyed "mode:action_type", plus how many were fallbacks
    - registration attempts, heartbeats and submission outcomes
    """

    def __init__(self):
        self._lock = Lock()
        self._clear()

    def _clear(self) -> None:
        self._start_time = time.time()
        self._responses: Counter = Counter()
        self._errors: Counter = Counter()
        self._latencies: Dict[str, LatencyStats] = {}
        self._decisions: Counter = Counter()
        self._fallbacks = 0
        self._registration = Counter(dict.fromkeys(REGISTRATION_OUTCOMES, 0))
        self._heartbeats = Counter(dict.fromkeys(HEARTBEAT_OUTCOMES, 0))
        self._submissions = Counter(dict.fromkeys(SUBMISSION_OUTCOMES, 0))

    def record_request(self, status_code: int) -> None:
        with self._lock:
            self._responses[status_code] += 1

    def record_error(self, error_type: str) -> None:
        with self._lock:
            self._errors[error_type] += 1

    def record_latency(self, operation: str, duration_ms: float) -> None:
        with self._lock:
            self._latencies.setdefault(operation, LatencyStats()).record(duration_ms)

    def record_decision(self, mode: str, action_type: str, fallback: bool = False) -> None:
        """Count one completed decision cycle.

        Args:
            mode: "combat" or "exploration"
            action_type: Type tag of the chosen action
            fallback: True when the cycle failed and returned the fixed action
        """
        with self._lock:
            self._decisions[f"{mode}:{action_type}"] += 1
            self._fallbacks += int(fallback)

    def record_registration_attempt(self, success: bool) -> None:
        with self._lock:
            self._registration["attempts"] += 1
            self._registration["successes" if success else "failures"] += 1

    def record_heartbeat(self, success: bool) -> None:
        with self._lock:
            self._heartbeats["sent" if success else "failed"] += 1

    def record_submission(self, outcome: str) -> None:
        """Count a submission outcome, one of SUBMISSION_OUTCOMES."""
        with self._lock:
            self._submissions[outcome] += 1

    def get_metrics(self) -> Dict:
        with self._lock:
            total = sum(self._responses.values())
            ok = sum(n for status, n in self._responses.items() if 200 <= status < 400)

            return {
                "uptime_seconds": round(time.time() - self._start_time, 2),
                "requests": {
                    "total": total,
                    "success": ok,
                    "errors": total - ok,
                    "by_status_code": dict(self._responses)
                },
                "errors": {"by_type": dict(self._errors)},
                "latencies": {name: stats.to_dict() for name, stats in self._latencies.items()},
                "decisions": {
                    "total": sum(self._decisions.values()),
                    "fallbacks": self._fallbacks,
                    "by_mode_and_type": dict(self._decisions)
                },
                "registration": dict(self._registration),
                "heartbeats": dict(self._heartbeats),
                "submissions": dict(self._submissions)
            }

    def reset(self) -> None:
        with self._lock:
            self._clear()


class MetricsTimer:
    """Record the wall time of a block as a latency sample.

    The sample is recorded whether or not the block raises. With a None
    collector the timer only measures.
    """

    def __init__(self, operation: str, collector: Optional[MetricsCollector]):
        self.operation = operation
        self.collector = collector
        self.start_time = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.collector is not None:
            self.collector.record_latency(
                self.operation, (time.perf_counter() - self.start_time) * 1000
            )
