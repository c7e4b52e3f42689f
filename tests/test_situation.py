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
"""Tests for situation analysis."""

from character_actor.models import (
    DecisionMode,
    ExplorationMemory,
    GameStateView,
    Position,
    ResourcePool,
)
from character_actor.services.situation import (
    analyze_situation,
    legal_exits,
    neighbor_room_id,
    room_id_for,
)


def _combat_view():
    return GameStateView.model_validate({
        "combat": {
            "enemies": [
                {"id": "goblin", "health": 5, "position": {"x": 30, "y": 0}},
                {"id": "ogre", "health": 40, "position": {"x": 5, "y": 0}},
            ],
            "allies": [],
            "round": 3,
        }
    })


def test_room_quantization():
    assert room_id_for(Position(x=15, y=-3, z=0)) == "room_1_-1_0"
    assert room_id_for(Position(x=15, y=3, room_id="hall")) == "hall"


def test_neighbor_room():
    origin = Position(x=5, y=5)
    assert neighbor_room_id(origin, "north") == "room_0_1_0"
    assert neighbor_room_id(origin, "west") == "room_-1_0_0"
    assert neighbor_room_id(origin, "up") is None


def test_combat_situation(make_snapshot):
    snapshot = make_snapshot(health=ResourcePool(current=5, maximum=20))

    situation = analyze_situation(snapshot, _combat_view(), DecisionMode.COMBAT)

    assert situation.health_percentage == 0.25
    assert situation.in_danger
    assert situation.is_injured
    assert situation.enemy_count == 2
    assert situation.outnumbered
    assert situation.weakest_enemy.id == "goblin"
    assert situation.strongest_enemy.id == "ogre"
    assert situation.nearest_enemy.id == "ogre"
    assert situation.encounter_round == 3


def test_enemies_without_positions_nearest_is_first(make_snapshot):
    view = GameStateView.model_validate({"combat": {"enemies": [{"id": "a"}, {"id": "b"}]}})
    situation = analyze_situation(make_snapshot(), view, DecisionMode.COMBAT)
    assert situation.nearest_enemy.id == "a"


def test_zero_maximum_pools(make_snapshot):
    snapshot = make_snapshot(mana=ResourcePool(current=0, maximum=0))
    situation = analyze_situation(snapshot, GameStateView(), DecisionMode.EXPLORATION)

    assert situation.resource_percentage == 0.0
    assert situation.low_resources


def test_exploration_danger_and_rest(make_snapshot):
    view = GameStateView.model_validate({"exploration": {"dangerLevel": 3}})
    situation = analyze_situation(make_snapshot(), view, DecisionMode.EXPLORATION)
    assert situation.in_danger
    assert not situation.can_rest

    view = GameStateView.model_validate({"exploration": {"safeToRest": False}})
    assert not analyze_situation(make_snapshot(), view).can_rest

    assert analyze_situation(make_snapshot(), GameStateView()).can_rest


def test_exploration_memory_flags(make_snapshot):
    memory = ExplorationMemory(
        searched_rooms=["room_0_0_0"],
        turn_counter=10,
        last_rest_turn=7,
    )
    view = GameStateView.model_validate({
        "exploration": {"lightLevel": "dark", "potentialSecrets": ["loose brick"]}
    })

    situation = analyze_situation(make_snapshot(exploration=memory), view)

    assert situation.room_searched
    assert situation.recently_rested
    assert situation.visibility_reduced
    assert situation.potential_secrets


def test_legal_exits_from_view_skips_blocked(make_snapshot):
    view = GameStateView.model_validate({
        "exploration": {
            "exits": [
                {"direction": "north", "roomId": "vault"},
                {"direction": "east", "blocked": True},
                "south",
            ],
            "blockedDirections": ["south"],
        }
    })

    assert legal_exits(make_snapshot(), view) == [("north", "vault")]


def test_legal_exits_default_cardinals(make_snapshot):
    view = GameStateView.model_validate({"exploration": {"blockedDirections": ["west"]}})
    exits = legal_exits(make_snapshot(), view)
    assert [direction for direction, _ in exits] == ["north", "south", "east"]
