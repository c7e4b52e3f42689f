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
"""Situation analysis for the decision pipeline.

analyze_situation() is a pure, total function: it derives a Situation
summary from a snapshot and a parsed game-state view and never raises for
well-formed inputs. Situations are recomputed every decision cycle and are
never persisted.
"""

import math
from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Sequence

from character_actor.models import (
    CharacterSnapshot,
    DecisionMode,
    Entity,
    GameStateView,
    Position,
)

ROOM_SIZE = 10
DANGER_HEALTH_RATIO = 0.3
LOW_RESOURCE_RATIO = 0.2
EXPLORATION_DANGER_LEVEL = 2
REST_COOLDOWN_TURNS = 5

CARDINAL_DIRECTIONS = ("north", "south", "east", "west")
DIRECTION_VECTORS = {
    "north": (0, 1),
    "south": (0, -1),
    "east": (1, 0),
    "west": (-1, 0),
    "up": None,
    "down": None,
}


@dataclass
class Situation:
    """Derived threat/opportunity summary used only as scoring input."""
    mode: DecisionMode
    health_percentage: float
    resource_percentage: float
    in_danger: bool
    low_resources: bool
    is_injured: bool
    enemy_count: int = 0
    ally_count: int = 0
    strongest_enemy: Optional[Entity] = None
    weakest_enemy: Optional[Entity] = None
    nearest_enemy: Optional[Entity] = None
    tactical_advantage: bool = False
    encounter_round: int = 1
    current_room: str = ""
    room_searched: bool = False
    has_unexplored_areas: bool = False
    visibility_reduced: bool = False
    light_level: str = "normal"
    can_rest: bool = True
    recently_rested: bool = False
    potential_secrets: bool = False
    potential_traps: bool = False
    needs_climbing: bool = False
    objective_direction: Optional[str] = None
    has_objective: bool = False
    dangerous_directions: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def outnumbered(self) -> bool:
        return self.enemy_count > self.ally_count


def ratio(current: float, maximum: float) -> float:
    """current / maximum, treating a non-positive maximum as 0."""
    if maximum <= 0:
        return 0.0
    return current / maximum


def distance(a: Optional[Position], b: Optional[Position]) -> float:
    """Euclidean distance; a missing position is infinitely far away."""
    if a is None or b is None:
        return math.inf
    return math.sqrt((a.x - b.x) ** 2 + (a.y - b.y) ** 2 + (a.z - b.z) ** 2)


def room_id_for(position: Position) -> str:
    """Quantize a position into a room identifier."""
    if position.room_id:
        return position.room_id
    return (
        f"room_{math.floor(position.x / ROOM_SIZE)}"
        f"_{math.floor(position.y / ROOM_SIZE)}"
        f"_{math.floor(position.z)}"
    )


def neighbor_room_id(position: Position, direction: str) -> Optional[str]:
    """Room one step away in a cardinal direction, or None if unknown."""
    vector = DIRECTION_VECTORS.get(direction)
    if vector is None:
        return None
    dx, dy = vector
    return room_id_for(Position(
        x=position.x + dx * ROOM_SIZE,
        y=position.y + dy * ROOM_SIZE,
        z=position.z,
    ))


def _strongest(entities: Sequence[Entity]) -> Optional[Entity]:
    best = None
    for entity in entities:
        if best is None or entity.health > best.health:
            best = entity
    return best


def _weakest(entities: Sequence[Entity]) -> Optional[Entity]:
    best = None
    for entity in entities:
        if best is None or entity.health < best.health:
            best = entity
    return best


def _nearest(origin: Position, entities: Sequence[Entity]) -> Optional[Entity]:
    best = None
    best_distance = math.inf
    for entity in entities:
        d = distance(origin, entity.position)
        if best is None or d < best_distance:
            best = entity
            best_distance = d
    return best


def legal_exits(snapshot: CharacterSnapshot, view: GameStateView) -> List[tuple]:
    """Currently legal (direction, destination_room) pairs.

    Uses the exits listed by the game-state view when present, otherwise
    the four cardinal directions; blocked directions are removed.
    """
    exploration = view.exploration
    blocked = set(exploration.blocked_directions) if exploration else set()

    if exploration and exploration.exits:
        exits = []
        for exit_ in exploration.exits:
            if exit_.blocked or exit_.direction in blocked:
                continue
            destination = exit_.room_id or neighbor_room_id(snapshot.position, exit_.direction)
            exits.append((exit_.direction, destination))
        return exits

    return [
        (direction, neighbor_room_id(snapshot.position, direction))
        for direction in CARDINAL_DIRECTIONS
        if direction not in blocked
    ]


def analyze_situation(
    snapshot: CharacterSnapshot,
    view: GameStateView,
    mode: DecisionMode = DecisionMode.EXPLORATION
) -> Situation:
    """Derive the Situation for one decision cycle.

    Args:
        snapshot: Character state at the start of the cycle
        view: Parsed game-state view
        mode: Combat or exploration

    Returns:
        Situation summary
    """
    health_pct = ratio(snapshot.health.current, snapshot.health.maximum)
    resource_pct = ratio(snapshot.mana.current, snapshot.mana.maximum)
    memory = snapshot.exploration

    situation = Situation(
        mode=mode,
        health_percentage=health_pct,
        resource_percentage=resource_pct,
        in_danger=health_pct <= DANGER_HEALTH_RATIO,
        low_resources=resource_pct <= LOW_RESOURCE_RATIO,
        is_injured=snapshot.health.current < snapshot.health.maximum,
        current_room=room_id_for(snapshot.position),
        has_objective=memory.current_objective is not None,
    )
    situation.room_searched = situation.current_room in memory.searched_rooms
    situation.recently_rested = (
        memory.last_rest_turn is not None
        and memory.turn_counter - memory.last_rest_turn < REST_COOLDOWN_TURNS
    )

    combat = view.combat
    if combat is not None:
        situation.enemy_count = len(combat.enemies)
        situation.ally_count = len(combat.allies)
        situation.encounter_round = combat.round
        if combat.enemies:
            situation.strongest_enemy = _strongest(combat.enemies)
            situation.weakest_enemy = _weakest(combat.enemies)
            situation.nearest_enemy = _nearest(snapshot.position, combat.enemies)

    situation.tactical_advantage = (
        situation.ally_count > situation.enemy_count
        or snapshot.position.z > 0
        or snapshot.position.cover
    )

    exploration = view.exploration
    if exploration is not None:
        if exploration.danger_level > EXPLORATION_DANGER_LEVEL or exploration.hostile_presence:
            situation.in_danger = True
        situation.light_level = exploration.light_level
        situation.visibility_reduced = exploration.light_level in ("dim", "dark")
        situation.potential_secrets = bool(exploration.potential_secrets) or exploration.suggests_search
        situation.potential_traps = bool(exploration.potential_traps)
        situation.needs_climbing = exploration.needs_climbing
        situation.objective_direction = exploration.objective_direction
        situation.has_objective = situation.has_objective or exploration.objective_direction is not None
        situation.dangerous_directions = frozenset(
            e.direction for e in exploration.exits if e.dangerous
        )
        safe_flag = exploration.safe_to_rest
        unexamined = [
            area for area in exploration.visible_areas
            if not area.get("examined") and area.get("id") not in memory.visited_rooms
        ]
    else:
        safe_flag = None
        unexamined = []

    situation.can_rest = not situation.in_danger and safe_flag is not False
    situation.has_unexplored_areas = bool(unexamined) or any(
        destination is not None and destination not in memory.visited_rooms
        for _, destination in legal_exits(snapshot, view)
    )

    return situation
