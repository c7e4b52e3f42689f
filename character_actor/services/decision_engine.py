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
"""DecisionEngine: one greedy decision per turn notification.

A decision cycle runs Idle -> Analyzing -> Generating -> Scoring -> Selected.
Any exception raised while analyzing, generating or scoring moves the cycle
straight to Fallback, which returns the mode's fixed safe action (Defend in
combat, a general Search in exploration). decide() never raises and never
returns "no action".

Key features:
- Pluggable analyzer, candidate generator and strategy selector
- Stable descending sort; ties keep candidate-generation order
- Optional seeded RNG per character for deterministic debugging
- Secure randomness by default
"""

import hashlib
import random
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from character_actor.logging import (
    PhaseTimer,
    StructuredLogger,
    get_cycle_id,
    set_cycle_id,
)
from character_actor.metrics import MetricsCollector, MetricsTimer
from character_actor.models import (
    CandidateAction,
    CharacterSnapshot,
    DecisionMode,
    GameStateView,
    ScoredAction,
)
from character_actor.services.candidates import fallback_action, generate_candidates
from character_actor.services.scoring import ScoringStrategy, strategy_for
from character_actor.services.situation import analyze_situation

logger = StructuredLogger(__name__)

# 8 hex characters of SHA-256 give 2^32 possible per-character seeds.
_SEED_HASH_DIGEST_LENGTH = 8


class DecisionPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    SCORING = "scoring"
    SELECTED = "selected"
    FALLBACK = "fallback"


@dataclass
class Decision:
    """Result of one decision cycle."""
    action: CandidateAction
    mode: DecisionMode
    phase: DecisionPhase
    cycle_id: str
    score: Optional[float] = None
    ranked: List[ScoredAction] = field(default_factory=list)
    failed_phase: Optional[DecisionPhase] = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def is_fallback(self) -> bool:
        return self.phase == DecisionPhase.FALLBACK

    def debug_metadata(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "mode": self.mode.value,
            "phase": self.phase.value,
            "action_type": self.action.type,
            "score": round(self.score, 3) if self.score is not None else None,
            "candidates": len(self.ranked),
            "failed_phase": self.failed_phase.value if self.failed_phase else None,
            "error": self.error,
        }


class DecisionEngine:
    """Orchestrates situation analysis, candidate generation and scoring.

    The engine holds no character state. Everything a cycle needs comes in
    through decide(): the snapshot (including its immutable DecisionWeights)
    is captured by the caller before the cycle starts, so weight updates
    only affect later cycles.
    """

    def __init__(
        self,
        analyzer: Callable = analyze_situation,
        generator: Callable = generate_candidates,
        strategy_selector: Callable[[str, DecisionMode], ScoringStrategy] = strategy_for,
        rng_seed: Optional[int] = None,
        randomize: bool = True,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        """Initialize the DecisionEngine.

        Args:
            analyzer: (snapshot, view, mode) -> Situation
            generator: candidate generator, see generate_candidates()
            strategy_selector: (class_tag, mode) -> ScoringStrategy
            rng_seed: Optional global RNG seed for deterministic behavior
            randomize: Apply the bounded random factor to scores
            log: Logger (defaults to the module logger)
            metrics: Optional metrics collector
        """
        self.analyzer = analyzer
        self.generator = generator
        self.strategy_selector = strategy_selector
        self.rng_seed = rng_seed
        self.randomize = randomize
        self.log = log or logger
        self.metrics = metrics
        self.phase = DecisionPhase.IDLE
        self._character_rngs: Dict[str, random.Random] = {}

        self.log.info(
            "Initialized DecisionEngine",
            randomize=randomize,
            rng_seed='<set>' if rng_seed is not None else '<none>'
        )

    def _get_rng(self, character_id: str) -> random.Random:
        """Get the RNG for a character.

        With a seed configured, each character gets its own deterministic
        Random derived from the seed and its id; otherwise SystemRandom.
        """
        if self.rng_seed is None:
            return random.SystemRandom()

        if character_id not in self._character_rngs:
            seed_str = f"{self.rng_seed}:{character_id}"
            seed_hash = hashlib.sha256(seed_str.encode()).hexdigest()
            self._character_rngs[character_id] = random.Random(
                int(seed_hash[:_SEED_HASH_DIGEST_LENGTH], 16)
            )
        return self._character_rngs[character_id]

    def _enter(self, phase: DecisionPhase) -> None:
        self.phase = phase
        self.log.debug("Decision phase", phase=phase.value)

    def decide(
        self,
        snapshot: CharacterSnapshot,
        view: Union[GameStateView, Dict[str, Any], None],
        mode: DecisionMode,
        available_actions: Optional[Iterable[str]] = None
    ) -> Decision:
        """Run one decision cycle. Never raises.

        Args:
            snapshot: Character state captured for this cycle
            view: Game-state view, raw (parsed here) or already parsed
            mode: Combat or exploration
            available_actions: Type tags offered by the orchestrator

        Returns:
            Decision carrying the chosen action
        """
        cycle_id = uuid.uuid4().hex[:12]
        previous_cycle = get_cycle_id()
        set_cycle_id(cycle_id)
        start = time.perf_counter()
        try:
            with MetricsTimer("decision_cycle", self.metrics):
                decision = self._run(snapshot, view, mode, available_actions, cycle_id)
            decision.duration_ms = (time.perf_counter() - start) * 1000

            if self.metrics:
                self.metrics.record_decision(mode.value, decision.action.type, decision.is_fallback)

            self.log.info(
                "Decision selected" if not decision.is_fallback else "Decision fell back",
                mode=mode.value,
                action_type=decision.action.type,
                score=f"{decision.score:.2f}" if decision.score is not None else None,
                candidates=len(decision.ranked),
                duration_ms=f"{decision.duration_ms:.2f}"
            )
            return decision
        finally:
            self.phase = DecisionPhase.IDLE
            set_cycle_id(previous_cycle)

    def _run(
        self,
        snapshot: CharacterSnapshot,
        view: Union[GameStateView, Dict[str, Any], None],
        mode: DecisionMode,
        available_actions: Optional[Iterable[str]],
        cycle_id: str
    ) -> Decision:
        phase = DecisionPhase.ANALYZING
        try:
            self._enter(phase)
            with PhaseTimer("analyze", self.log):
                parsed = view if isinstance(view, GameStateView) else GameStateView.model_validate(view or {})
                strategy = self.strategy_selector(snapshot.character_class, mode)
                weights = strategy.effective_weights(snapshot.weights)
                situation = self.analyzer(snapshot, parsed, mode)

            phase = DecisionPhase.GENERATING
            self._enter(phase)
            with PhaseTimer("generate", self.log):
                candidates = self.generator(
                    snapshot,
                    parsed,
                    available_actions=available_actions,
                    mode=mode,
                    weights=weights,
                    situation=situation,
                )

            phase = DecisionPhase.SCORING
            self._enter(phase)
            rng = self._get_rng(snapshot.id) if self.randomize else None
            with PhaseTimer("score", self.log):
                scored = [
                    ScoredAction(
                        action=candidate,
                        score=strategy.score(candidate, situation, snapshot, weights, rng),
                        index=index,
                    )
                    for index, candidate in enumerate(candidates)
                ]
            ranked = sorted(scored, key=lambda s: s.score, reverse=True)

        except Exception as e:
            self._enter(DecisionPhase.FALLBACK)
            self.log.error(
                "Decision cycle failed; using fallback action",
                failed_phase=phase.value,
                error_type=type(e).__name__,
                error=str(e)[:200]
            )
            if self.metrics:
                self.metrics.record_error(f"decision_{phase.value}_failed")
            return Decision(
                action=fallback_action(mode),
                mode=mode,
                phase=DecisionPhase.FALLBACK,
                cycle_id=cycle_id,
                failed_phase=phase,
                error=f"{type(e).__name__}: {e}",
            )

        if not ranked:
            self._enter(DecisionPhase.FALLBACK)
            self.log.warning("No candidates generated; using fallback action")
            return Decision(
                action=fallback_action(mode),
                mode=mode,
                phase=DecisionPhase.FALLBACK,
                cycle_id=cycle_id,
                failed_phase=DecisionPhase.GENERATING,
                error="no candidates",
            )

        self._enter(DecisionPhase.SELECTED)
        best = ranked[0]
        return Decision(
            action=best.action,
            mode=mode,
            phase=DecisionPhase.SELECTED,
            cycle_id=cycle_id,
            score=best.score,
            ranked=ranked,
        )
