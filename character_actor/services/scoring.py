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
"""Weighted scoring policy for candidate actions.

Each mode has a scoring strategy. A strategy computes a mode-specific base
score for a candidate, multiplies in weight-derived factors, then applies
one multiplicative random factor drawn uniformly from [0.925, 1.075] and
floors the result at 0.

Class-specific behavior is data: CLASS_MODIFIERS holds additive weight
adjustments per class tag, applied by the strategy selected for that tag.
"""

import random
from typing import Dict, Mapping, Optional

from character_actor.models import (
    ActionType,
    CandidateAction,
    CharacterSnapshot,
    DecisionMode,
    DecisionWeights,
)
from character_actor.services.situation import Situation

RANDOM_FACTOR_LOW = 0.925
RANDOM_FACTOR_HIGH = 1.075
UNKNOWN_ACTION_SCORE = 10.0

CLASS_MODIFIERS: Dict[str, Dict[str, float]] = {
    "fighter": {"aggressiveness": 0.2, "tactical": 0.3},
    "barbarian": {"aggressiveness": 0.3, "caution": -0.2},
    "rogue": {"secret_finding": 0.3, "trap_awareness": 0.2, "caution": 0.1},
    "ranger": {"trap_awareness": 0.2, "tactical": 0.1, "curiosity": 0.1},
    "cleric": {"teamwork": 0.2, "spellcasting": 0.2},
    "paladin": {"teamwork": 0.2, "aggressiveness": 0.1},
    "wizard": {"spellcasting": 0.4, "caution": 0.2, "aggressiveness": -0.1},
    "sorcerer": {"spellcasting": 0.4, "aggressiveness": 0.1},
    "bard": {"leadership": 0.3, "curiosity": 0.1},
}


class ScoringStrategy:
    """Base scoring strategy.

    Subclasses implement base_score(); score() adds the random factor and
    the non-negativity floor.
    """

    mode: DecisionMode = DecisionMode.EXPLORATION

    def __init__(self, class_modifiers: Optional[Mapping[str, float]] = None):
        self.class_modifiers = dict(class_modifiers or {})

    def effective_weights(self, weights: DecisionWeights) -> DecisionWeights:
        """Weights with this strategy's class modifiers applied."""
        if not self.class_modifiers:
            return weights
        return weights.adjusted(self.class_modifiers)

    def base_score(
        self,
        candidate: CandidateAction,
        situation: Situation,
        snapshot: CharacterSnapshot,
        weights: DecisionWeights
    ) -> float:
        raise NotImplementedError

    def score(
        self,
        candidate: CandidateAction,
        situation: Situation,
        snapshot: CharacterSnapshot,
        weights: DecisionWeights,
        rng: Optional[random.Random] = None
    ) -> float:
        """Score a candidate.

        Args:
            candidate: Candidate action
            situation: Situation of the current cycle
            snapshot: Character state at the start of the cycle
            weights: Effective decision weights
            rng: Source of the random factor; None disables randomization

        Returns:
            Non-negative score
        """
        value = self.base_score(candidate, situation, snapshot, weights)
        if rng is not None:
            value *= rng.uniform(RANDOM_FACTOR_LOW, RANDOM_FACTOR_HIGH)
        return max(0.0, value)


class CombatScoringStrategy(ScoringStrategy):
    mode = DecisionMode.COMBAT

    def base_score(self, candidate, situation, snapshot, weights) -> float:
        if candidate.type == ActionType.ATTACK:
            return self._attack(candidate, situation, weights)
        if candidate.type == ActionType.DEFEND:
            return self._defend(situation, weights)
        if candidate.type == ActionType.CAST_SPELL:
            return self._spell(candidate, situation, weights)
        if candidate.type == ActionType.USE_ITEM:
            return self._item(candidate, situation, weights)
        if candidate.type == ActionType.MOVE:
            return self._move(situation, weights)
        return UNKNOWN_ACTION_SCORE

    @staticmethod
    def _attack(action, situation: Situation, weights: DecisionWeights) -> float:
        score = 50.0 * (0.5 + weights.aggressiveness)
        score *= situation.health_percentage

        if action.target is not None:
            if (
                weights.tactical > 0.5
                and situation.weakest_enemy is not None
                and action.target == situation.weakest_enemy.id
            ):
                score *= 1.3
            if (
                weights.aggressiveness > 0.7
                and situation.strongest_enemy is not None
                and action.target == situation.strongest_enemy.id
            ):
                score *= 1.2

        if action.subtype == "ranged" and situation.outnumbered:
            score *= 1.2

        # Low risk tolerance backs off when in danger.
        if situation.in_danger and weights.risk_tolerance < 0.5:
            score *= 0.7

        return score

    @staticmethod
    def _defend(situation: Situation, weights: DecisionWeights) -> float:
        score = 30.0
        if situation.in_danger:
            score *= 2.5
        if situation.outnumbered:
            score *= 1.5
        score *= (2.0 - weights.risk_tolerance)
        if situation.health_percentage > 0.8 and weights.aggressiveness > 0.6:
            score *= 0.5
        return score

    @staticmethod
    def _spell(action, situation: Situation, weights: DecisionWeights) -> float:
        score = 40.0 * (0.5 + weights.spellcasting)

        if situation.low_resources and not situation.in_danger:
            score *= 0.3

        if action.spell_type == "damage":
            score *= (0.7 + weights.aggressiveness * 0.6)
            if situation.enemy_count > 2:
                score *= 1.3
        elif action.spell_type == "healing":
            if situation.in_danger:
                score *= 3.0
            elif situation.health_percentage > 0.8:
                score *= 0.2
        elif action.spell_type == "buff":
            score *= weights.tactical
            if situation.encounter_round <= 2:
                score *= 1.5
        elif action.spell_type == "debuff":
            score *= weights.tactical
            if situation.strongest_enemy is not None:
                score *= 1.2
        elif action.spell_type == "utility":
            score *= weights.tactical * 0.8

        return score

    @staticmethod
    def _item(action, situation: Situation, weights: DecisionWeights) -> float:
        score = 20.0
        if action.item_type == "potion":
            if action.item_subtype == "healing" and situation.in_danger:
                score *= 4.0
            elif action.item_subtype == "mana" and situation.low_resources:
                score *= 2.0
        elif action.item_type == "scroll":
            score *= (0.5 + weights.spellcasting)
        elif action.item_type == "tool":
            score *= weights.tactical
        return score

    @staticmethod
    def _move(situation: Situation, weights: DecisionWeights) -> float:
        score = 25.0
        if situation.in_danger:
            score *= 1.8
        score *= weights.tactical
        if situation.outnumbered:
            score *= 1.3
        return score


class ExplorationScoringStrategy(ScoringStrategy):
    mode = DecisionMode.EXPLORATION

    LIGHT_MULTIPLIERS = {"bright": 1.2, "dim": 0.8, "dark": 0.5}

    def base_score(self, candidate, situation, snapshot, weights) -> float:
        if candidate.type == ActionType.MOVE:
            return self._move(candidate, situation, weights)
        if candidate.type == ActionType.SEARCH:
            return self._search(candidate, situation, weights)
        if candidate.type == ActionType.INVESTIGATE:
            return self._investigate(candidate, weights)
        if candidate.type == ActionType.REST:
            return self._rest(situation, weights)
        if candidate.type == ActionType.USE_ITEM:
            return self._item(candidate, situation, weights)
        return UNKNOWN_ACTION_SCORE

    @staticmethod
    def _move(action, situation: Situation, weights: DecisionWeights) -> float:
        score = 50.0
        if not action.destination_explored:
            score *= 1.8
            score += weights.curiosity * 20.0
        else:
            score *= 0.6

        if weights.caution > 0.5 and action.direction in situation.dangerous_directions:
            score *= 0.5
        if situation.objective_direction is not None and action.direction == situation.objective_direction:
            score *= 1.4
        if situation.is_injured and weights.caution < 0.3:
            score *= 0.7
        if weights.leadership > 0.6:
            score *= 1.2
        return score

    def _search(self, action, situation: Situation, weights: DecisionWeights) -> float:
        score = 40.0 * (0.5 + weights.thoroughness)

        if action.kind == "secrets":
            score *= (0.3 + weights.secret_finding * 1.4)
        elif action.kind == "traps":
            score *= (0.2 + weights.trap_awareness * 1.6)

        if situation.room_searched and weights.thoroughness < 0.8:
            score *= 0.3
        if situation.potential_secrets:
            score *= 1.5

        score *= self.LIGHT_MULTIPLIERS.get(situation.light_level, 1.0)
        return score

    @staticmethod
    def _investigate(action, weights: DecisionWeights) -> float:
        score = 60.0 * (0.4 + weights.curiosity)
        if action.interesting:
            score *= 1.6
        if action.dangerous and weights.caution > 0.6:
            score *= 0.6
        if action.advances_objective:
            score *= 1.8
        return score

    @staticmethod
    def _rest(situation: Situation, weights: DecisionWeights) -> float:
        score = 20.0
        if situation.is_injured:
            score *= min(2.0, 1.0 + (1.0 - situation.health_percentage))
        if not situation.can_rest:
            score *= 0.1
        score *= (0.7 + weights.caution * 0.6)
        if situation.recently_rested:
            score *= 0.2
        return score

    @staticmethod
    def _item(action, situation: Situation, weights: DecisionWeights) -> float:
        score = 30.0
        if action.item_type == "tool":
            if action.item_name == "torch" and situation.visibility_reduced:
                score *= 2.5
            elif action.item_name == "rope" and situation.needs_climbing:
                score *= 2.0
            elif action.item_name == "thieves_tools" and situation.potential_secrets:
                score *= 1.8
        elif action.item_type == "potion":
            if action.item_subtype == "healing" and situation.is_injured:
                score *= 1.5
        elif action.item_type == "scroll":
            if action.item_spell in ("detect_magic", "find_traps"):
                score *= (0.5 + weights.thoroughness)
        return score


STRATEGIES = {
    DecisionMode.COMBAT: CombatScoringStrategy,
    DecisionMode.EXPLORATION: ExplorationScoringStrategy,
}


def strategy_for(class_tag: str, mode: DecisionMode) -> ScoringStrategy:
    """Select the scoring strategy for a class tag and mode."""
    return STRATEGIES[mode](CLASS_MODIFIERS.get((class_tag or "").lower()))


def score(
    candidate: CandidateAction,
    situation: Situation,
    snapshot: CharacterSnapshot,
    weights: DecisionWeights,
    rng: Optional[random.Random] = None
) -> float:
    """Score a candidate with the plain strategy for the situation's mode."""
    return STRATEGIES[situation.mode]().score(candidate, situation, snapshot, weights, rng)
