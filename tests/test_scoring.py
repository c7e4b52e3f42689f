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
"""Tests for the weighted scoring policy.

Randomization is disabled (rng=None) unless a test is about the random
factor, so the expected scores below are exact.
"""

import random

import pytest

from character_actor.models import (
    AttackAction,
    DecisionMode,
    DecisionWeights,
    DefendAction,
    ExplorationMemory,
    GameStateView,
    MoveAction,
    Position,
    ResourcePool,
    SearchAction,
    UseItemAction,
)
from character_actor.services.scoring import (
    RANDOM_FACTOR_HIGH,
    RANDOM_FACTOR_LOW,
    CombatScoringStrategy,
    ExplorationScoringStrategy,
    score,
    strategy_for,
)
from character_actor.services.situation import analyze_situation


class TestCombatScoring:

    @pytest.fixture
    def endangered(self, make_snapshot):
        """Badly hurt, cautious character facing two enemies alone."""
        snapshot = make_snapshot(
            health=ResourcePool(current=5, maximum=20),
            weights=DecisionWeights(caution=0.8),
        )
        view = GameStateView.model_validate({
            "combat": {"enemies": [{"id": "goblin", "health": 5}, {"id": "ogre", "health": 40}]}
        })
        situation = analyze_situation(snapshot, view, DecisionMode.COMBAT)
        return snapshot, situation

    def test_defend_dominates_attack_when_endangered(self, endangered):
        snapshot, situation = endangered
        strategy = CombatScoringStrategy()
        weights = snapshot.weights

        attack = strategy.score(AttackAction(target="goblin"), situation, snapshot, weights)
        defend = strategy.score(DefendAction(), situation, snapshot, weights)

        assert attack == pytest.approx(8.75)
        assert defend == pytest.approx(202.5)
        assert defend > attack

    def test_healing_potion_when_endangered(self, endangered):
        snapshot, situation = endangered
        potion = UseItemAction(item_ref="potion", item_type="potion", item_subtype="healing")

        assert CombatScoringStrategy().score(potion, situation, snapshot, snapshot.weights) == pytest.approx(80.0)

    def test_aggressive_healthy_character_prefers_attack(self, make_snapshot):
        snapshot = make_snapshot(weights=DecisionWeights(aggressiveness=0.9, caution=0.2))
        view = GameStateView.model_validate({"combat": {"enemies": [{"id": "orc", "health": 10}]}})
        situation = analyze_situation(snapshot, view, DecisionMode.COMBAT)
        strategy = CombatScoringStrategy()

        attack = strategy.score(AttackAction(target="orc"), situation, snapshot, snapshot.weights)
        defend = strategy.score(DefendAction(), situation, snapshot, snapshot.weights)

        assert attack > defend


class TestExplorationScoring:

    def test_curious_character_prefers_unvisited_exit(self, make_snapshot):
        snapshot = make_snapshot(
            position=Position(x=5, y=5, z=0),
            weights=DecisionWeights(curiosity=0.9),
            exploration=ExplorationMemory(
                visited_rooms=["room_0_0_0", "room_0_-1_0", "room_1_0_0"],
                searched_rooms=["room_0_0_0"],
            ),
        )
        view = GameStateView.model_validate({"exploration": {"exits": ["north", "south", "east"]}})
        situation = analyze_situation(snapshot, view, DecisionMode.EXPLORATION)
        strategy = ExplorationScoringStrategy()
        weights = snapshot.weights

        north = MoveAction(direction="north", destination="room_0_1_0", destination_explored=False)
        south = MoveAction(direction="south", destination="room_0_-1_0", destination_explored=True)
        search = SearchAction()

        assert strategy.score(north, situation, snapshot, weights) == pytest.approx(108.0)
        assert strategy.score(south, situation, snapshot, weights) == pytest.approx(30.0)
        assert strategy.score(search, situation, snapshot, weights) == pytest.approx(13.2)

    def test_darkness_penalizes_search(self, make_snapshot):
        snapshot = make_snapshot()
        lit = analyze_situation(snapshot, GameStateView.model_validate({"exploration": {"lightLevel": "bright"}}))
        dark = analyze_situation(snapshot, GameStateView.model_validate({"exploration": {"lightLevel": "dark"}}))
        strategy = ExplorationScoringStrategy()

        assert strategy.score(SearchAction(), dark, snapshot, snapshot.weights) < strategy.score(
            SearchAction(), lit, snapshot, snapshot.weights
        )


def test_random_factor_is_bounded(make_snapshot):
    snapshot = make_snapshot()
    situation = analyze_situation(snapshot, GameStateView(), DecisionMode.COMBAT)
    strategy = CombatScoringStrategy()
    base = strategy.score(DefendAction(), situation, snapshot, snapshot.weights)
    rng = random.Random(7)

    for _ in range(200):
        value = strategy.score(DefendAction(), situation, snapshot, snapshot.weights, rng)
        assert base * RANDOM_FACTOR_LOW <= value <= base * RANDOM_FACTOR_HIGH


def test_scores_are_never_negative(make_snapshot):
    snapshot = make_snapshot(
        health=ResourcePool(current=0, maximum=20),
        weights=DecisionWeights(aggressiveness=0.0, tactical=0.0, caution=1.0),
    )
    situation = analyze_situation(snapshot, GameStateView(), DecisionMode.COMBAT)

    for action in (AttackAction(target="x"), MoveAction(direction="north"), DefendAction()):
        assert score(action, situation, snapshot, snapshot.weights) >= 0.0


@pytest.mark.parametrize("class_tag,weight,expected", [
    ("fighter", "aggressiveness", 0.7),
    ("Rogue", "secret_finding", 0.8),
    ("wizard", "aggressiveness", 0.4),
    ("commoner", "aggressiveness", 0.5),
])
def test_class_modifiers(class_tag, weight, expected):
    strategy = strategy_for(class_tag, DecisionMode.COMBAT)
    effective = strategy.effective_weights(DecisionWeights())
    assert getattr(effective, weight) == pytest.approx(expected)


def test_strategy_for_mode():
    assert isinstance(strategy_for("fighter", DecisionMode.COMBAT), CombatScoringStrategy)
    assert isinstance(strategy_for("fighter", DecisionMode.EXPLORATION), ExplorationScoringStrategy)
