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
"""Tests for the state store and snapshot persistence."""

import asyncio
import json

import pytest

from character_actor.metrics import MetricsCollector
from character_actor.models import ResourcePool
from character_actor.services.state_store import SnapshotRepository, StateStore


class TestStateStoreTransactions:
    """Tests for serialized mutation and invariant clamping."""

    @pytest.mark.asyncio
    async def test_commit_applies_mutation(self, make_snapshot):
        store = StateStore(make_snapshot())

        async with store.transaction("damage") as working:
            working.health.current -= 5

        assert store.snapshot().health.current == 15
        assert store.version == 1

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, make_snapshot):
        store = StateStore(make_snapshot())

        with pytest.raises(RuntimeError):
            async with store.transaction("broken") as working:
                working.health.current = 1
                raise RuntimeError("boom")

        assert store.snapshot().health.current == 20
        assert store.version == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value,expected", [(-50, 0), (500, 20), (7, 7)])
    async def test_health_clamped_after_any_mutation(self, make_snapshot, value, expected):
        metrics = MetricsCollector()
        store = StateStore(make_snapshot(), metrics=metrics)

        def set_health(s):
            s.health.current = value

        await store.update(set_health, reason="test")

        assert store.snapshot().health.current == expected
        clamped = metrics.get_metrics()["errors"]["by_type"].get("invariant_clamped", 0)
        assert clamped == (0 if value == expected else 1)

    @pytest.mark.asyncio
    async def test_mana_and_level_clamped(self, make_snapshot):
        store = StateStore(make_snapshot())

        def corrupt(s):
            s.mana.current = -3
            s.level = 42

        await store.update(corrupt)
        snapshot = store.snapshot()

        assert snapshot.mana.current == 0
        assert snapshot.level == 20

    def test_initial_snapshot_is_clamped(self, make_snapshot):
        store = StateStore(make_snapshot(health=ResourcePool(current=99, maximum=20)))
        assert store.snapshot().health.current == 20

    @pytest.mark.asyncio
    async def test_snapshot_is_a_copy(self, make_snapshot):
        store = StateStore(make_snapshot())

        copy = store.snapshot()
        copy.health.current = 1

        assert store.snapshot().health.current == 20

    @pytest.mark.asyncio
    async def test_snapshot_read_does_not_wait_for_transaction(self, make_snapshot):
        store = StateStore(make_snapshot())
        entered = asyncio.Event()
        release = asyncio.Event()

        async def slow_mutation():
            async with store.transaction("slow") as working:
                working.health.current = 3
                entered.set()
                await release.wait()

        task = asyncio.create_task(slow_mutation())
        await entered.wait()

        # Stale but consistent: the committed value, not the working copy.
        assert store.locked
        assert store.snapshot().health.current == 20

        release.set()
        await task
        assert store.snapshot().health.current == 3

    @pytest.mark.asyncio
    async def test_concurrent_updates_are_not_lost(self, make_snapshot):
        store = StateStore(make_snapshot(health=ResourcePool(current=0, maximum=100)))

        async def heal_one():
            async with store.transaction("heal") as working:
                current = working.health.current
                await asyncio.sleep(0)
                working.health.current = current + 1

        await asyncio.gather(*(heal_one() for _ in range(50)))

        assert store.snapshot().health.current == 50
        assert store.version == 50


class TestSnapshotRepository:
    """Tests for persistence, repair and rejection of records."""

    def test_save_and_load_round_trip_drops_session(self, tmp_path, make_snapshot, make_session):
        repository = SnapshotRepository(str(tmp_path))
        snapshot = make_snapshot(session=make_session())
        snapshot.exploration.visited_rooms.append("room_0_0_0")

        path = repository.save(snapshot)
        loaded = repository.load("hero-1")

        assert path.name == "hero-1-state.json"
        assert loaded is not None
        assert loaded.session is None
        assert loaded.exploration.visited_rooms == ["room_0_0_0"]
        assert "token-abc" not in path.read_text()

    def test_load_repairs_out_of_range_values(self, tmp_path, make_snapshot):
        repository = SnapshotRepository(str(tmp_path))
        path = repository.save(make_snapshot())

        raw = json.loads(path.read_text())
        raw["health"]["current"] = -7
        raw["level"] = 0
        raw["weights"]["caution"] = 1.8
        path.write_text(json.dumps(raw))

        loaded = repository.load("hero-1")

        assert loaded.health.current == 0
        assert loaded.level == 1
        assert loaded.weights.caution == 1.0

    def test_load_falls_back_to_backup(self, tmp_path, make_snapshot):
        repository = SnapshotRepository(str(tmp_path))
        repository.save(make_snapshot(name="First"))
        repository.save(make_snapshot(name="Second"))

        repository.path_for("hero-1").write_text("{not json")

        loaded = repository.load("hero-1")
        assert loaded is not None
        assert loaded.name == "First"

    def test_load_rejects_record_for_other_character(self, tmp_path, make_snapshot):
        repository = SnapshotRepository(str(tmp_path))
        path = repository.save(make_snapshot())
        raw = json.loads(path.read_text())
        raw["id"] = "someone-else"
        path.write_text(json.dumps(raw))

        assert repository.load("hero-1") is None

    def test_load_missing_record(self, tmp_path):
        assert SnapshotRepository(str(tmp_path)).load("nobody") is None


class TestStateStorePersistence:

    @pytest.mark.asyncio
    async def test_commit_persists(self, tmp_path, make_snapshot):
        repository = SnapshotRepository(str(tmp_path))
        store = StateStore(make_snapshot(), repository=repository)

        def damage(s):
            s.health.current = 12

        await store.update(damage)

        assert repository.load("hero-1").health.current == 12

    @pytest.mark.asyncio
    async def test_save_without_repository(self, make_snapshot):
        store = StateStore(make_snapshot())
        assert await store.save() is False

    @pytest.mark.asyncio
    async def test_autosave_starts_once(self, tmp_path, make_snapshot):
        store = StateStore(make_snapshot(), repository=SnapshotRepository(str(tmp_path)))

        assert store.start_autosave(3600) is True
        assert store.start_autosave(3600) is False
        await store.stop_autosave()
