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
"""Guarded character state and its durable persistence.

This module provides:
- StateStore: the single owner of a CharacterSnapshot. All read-modify-write
  sequences go through transaction() (one asyncio.Lock, one mutation at a
  time); snapshot() is a non-blocking read of the last committed state.
- SnapshotRepository: JSON persistence keyed by character id, with a backup
  copy and a loader that repairs or rejects invalid records.
"""

import asyncio
import json
import os
import re
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, TypeVar

from pydantic import ValidationError

from character_actor.logging import StructuredLogger
from character_actor.metrics import MetricsCollector
from character_actor.models import CharacterSnapshot, utcnow

logger = StructuredLogger(__name__)

T = TypeVar('T')


class SnapshotRepository:
    """File-backed snapshot persistence.

    One record per character: ``{state_dir}/{character_id}-state.json`` plus
    ``{character_id}-backup.json`` holding the previous good record. Session
    credentials are never written to disk.
    """

    def __init__(self, state_dir: str, log: Optional[StructuredLogger] = None):
        self.state_dir = Path(state_dir)
        self.log = log or logger

    @staticmethod
    def _safe_id(character_id: str) -> str:
        return re.sub(r'[^A-Za-z0-9_.-]', '_', character_id)

    def path_for(self, character_id: str) -> Path:
        return self.state_dir / f"{self._safe_id(character_id)}-state.json"

    def backup_path_for(self, character_id: str) -> Path:
        return self.state_dir / f"{self._safe_id(character_id)}-backup.json"

    def save(self, snapshot: CharacterSnapshot) -> Path:
        """Write the snapshot atomically.

        Args:
            snapshot: Snapshot to persist

        Returns:
            Path of the written record
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(snapshot.id)

        data = snapshot.model_dump(mode="json", by_alias=True)
        data["session"] = None

        if path.exists():
            shutil.copyfile(path, self.backup_path_for(snapshot.id))

        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
        return path

    def load(self, character_id: str) -> Optional[CharacterSnapshot]:
        """Load and repair a persisted snapshot.

        The primary record is tried first, then the backup. Out-of-range
        vitals, levels and weights are clamped (with a warning); any
        persisted session is dropped. Records that cannot be parsed or that
        belong to a different character are rejected.

        Returns:
            The repaired snapshot, or None if no usable record exists
        """
        for path in (self.path_for(character_id), self.backup_path_for(character_id)):
            if not path.exists():
                continue
            snapshot = self._load_file(path, character_id)
            if snapshot is not None:
                return snapshot
        return None

    def _load_file(self, path: Path, character_id: str) -> Optional[CharacterSnapshot]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.log.warning(
                "Rejected unreadable snapshot record",
                path=str(path),
                error_type=type(e).__name__
            )
            return None

        if not isinstance(raw, dict):
            self.log.warning("Rejected snapshot record that is not an object", path=str(path))
            return None

        repairs = []
        weights = raw.get("weights")
        if isinstance(weights, dict):
            for name, value in weights.items():
                if isinstance(value, (int, float)) and not 0.0 <= value <= 1.0:
                    clamped = min(1.0, max(0.0, float(value)))
                    repairs.append(f"weights.{name} {value} -> {clamped}")
                    weights[name] = clamped

        try:
            snapshot = CharacterSnapshot.model_validate(raw)
        except ValidationError as e:
            self.log.warning(
                "Rejected invalid snapshot record",
                path=str(path),
                error_count=e.error_count()
            )
            return None

        if snapshot.id != character_id:
            self.log.warning(
                "Rejected snapshot record for a different character",
                path=str(path),
                record_id=snapshot.id
            )
            return None

        repairs.extend(snapshot.clamp_invariants())
        if snapshot.session is not None:
            repairs.append("session dropped")
            snapshot.session = None

        if repairs:
            self.log.warning(
                "Repaired persisted snapshot",
                path=str(path),
                repairs="; ".join(repairs)
            )
        else:
            self.log.info("Loaded persisted snapshot", path=str(path))
        return snapshot


class StateStore:
    """Exclusive owner of one character's snapshot.

    transaction() yields a private working copy under the store's lock. When
    the block exits normally the copy is clamped to the snapshot invariants
    and becomes the committed state; when it raises, the copy is discarded.
    Transactions are not reentrant: do not open one from inside another.

    snapshot() never waits for a transaction; it returns a copy of the last
    committed state, which is consistent but may be one mutation stale.
    """

    def __init__(
        self,
        snapshot: CharacterSnapshot,
        repository: Optional[SnapshotRepository] = None,
        persist_on_commit: bool = True,
        log: Optional[StructuredLogger] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        snapshot = snapshot.model_copy(deep=True)
        corrections = snapshot.clamp_invariants()
        self.log = log or logger
        if corrections:
            self.log.warning(
                "Initial snapshot violated invariants; clamped",
                corrections="; ".join(corrections)
            )
        self._committed = snapshot
        self._version = 0
        self._lock = asyncio.Lock()
        self._save_lock = asyncio.Lock()
        self.repository = repository
        self.persist_on_commit = persist_on_commit
        self.metrics = metrics
        self._autosave_task: Optional[asyncio.Task] = None

    @property
    def character_id(self) -> str:
        return self._committed.id

    @property
    def version(self) -> int:
        """Number of commits since construction."""
        return self._version

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def snapshot(self) -> CharacterSnapshot:
        """Copy of the last committed snapshot (non-blocking)."""
        return self._committed.model_copy(deep=True)

    @asynccontextmanager
    async def transaction(self, reason: str = "mutation") -> AsyncIterator[CharacterSnapshot]:
        """Serialize one read-modify-write against the snapshot.

        Args:
            reason: Short label used in logs

        Yields:
            Working copy to mutate in place
        """
        async with self._lock:
            working = self._committed.model_copy(deep=True)
            try:
                yield working
            except BaseException as e:
                self.log.warning(
                    "State transaction rolled back",
                    reason=reason,
                    error_type=type(e).__name__
                )
                raise

            corrections = working.clamp_invariants()
            if corrections:
                self.log.warning(
                    "Snapshot invariant violation clamped",
                    reason=reason,
                    corrections="; ".join(corrections)
                )
                if self.metrics:
                    self.metrics.record_error("invariant_clamped")

            working.updated_at = utcnow()
            self._committed = working
            self._version += 1

            if self.persist_on_commit and self.repository is not None:
                await self._write(working)

    async def update(self, mutator: Callable[[CharacterSnapshot], T], reason: str = "mutation") -> T:
        """Apply a synchronous mutator inside a transaction.

        Returns:
            Whatever the mutator returns
        """
        async with self.transaction(reason) as working:
            return mutator(working)

    async def save(self) -> bool:
        """Persist the committed snapshot now.

        Returns:
            True if written, False if no repository is configured or the write failed
        """
        if self.repository is None:
            return False
        return await self._write(self.snapshot())

    async def _write(self, snapshot: CharacterSnapshot) -> bool:
        async with self._save_lock:
            try:
                path = await asyncio.to_thread(self.repository.save, snapshot)
            except OSError as e:
                self.log.error(
                    "Failed to persist snapshot",
                    error_type=type(e).__name__,
                    error=str(e)
                )
                if self.metrics:
                    self.metrics.record_error("snapshot_save_failed")
                return False
        self.log.debug("Snapshot persisted", path=str(path), version=self._version)
        return True

    def start_autosave(self, interval: float) -> bool:
        """Start the periodic save task.

        Returns:
            False if it was already running
        """
        if self._autosave_task is not None and not self._autosave_task.done():
            return False
        self._autosave_task = asyncio.create_task(self._autosave_loop(interval))
        return True

    async def stop_autosave(self) -> None:
        task, self._autosave_task = self._autosave_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _autosave_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.save()
