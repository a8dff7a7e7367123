# catalog_tasks/client/state.py

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Union

from pydantic import ValidationError

from catalog_tasks.schemas.task import TaskRecord

logger = logging.getLogger(__name__)

STATE_NAME = "task-store"


class LocalTaskState:
    """
    Client-side task collection, newest first.

    Persisted as ``{"name", "version", "tasks"}`` so a schema change can be
    detected: a file written with another version is discarded on load rather
    than half-parsed. ``path=None`` keeps the state in memory only.
    """

    def __init__(self, path: Union[str, Path, None] = None, version: int = 1, limit: int = 1000):
        self.path = Path(path) if path is not None else None
        self.version = version
        self.limit = limit
        self._records: List[TaskRecord] = []
        self._dirty = False
        self._writer: Optional[asyncio.Task] = None

    def __iter__(self) -> Iterator[TaskRecord]:
        return iter(list(self._records))

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> List[TaskRecord]:
        return list(self._records)

    def load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read local task state {self.path}: {e}")
            return

        if not isinstance(raw, dict) or raw.get("name") != STATE_NAME or raw.get("version") != self.version:
            found = raw.get("version") if isinstance(raw, dict) else None
            logger.warning(
                f"Discarding local task state {self.path}: version {found!r}, expected {self.version}"
            )
            return

        records = []
        for item in raw.get("tasks", []):
            try:
                records.append(TaskRecord.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable local task record: {e.errors()[:1]}")
        self._records = records[: self.limit]
        logger.info(f"Loaded {len(self._records)} local task records")

    def save(self) -> None:
        """Write the current records, in the background when a loop is running"""
        if self.path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(self._document())
            return

        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(self._write_pending())

    async def _write_pending(self) -> None:
        # Coalesces bursts of changes into one write of the latest snapshot
        while self._dirty:
            self._dirty = False
            await asyncio.to_thread(self._write, self._document())

    async def flush(self) -> None:
        """Wait until the latest snapshot is on disk"""
        while self._writer is not None and not self._writer.done():
            await asyncio.wait({self._writer})

    def _document(self) -> dict:
        return {
            "name": STATE_NAME,
            "version": self.version,
            "tasks": [r.to_wire() for r in self._records],
        }

    def _write(self, document: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(document, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save local task state {self.path}: {e}")

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return next((r for r in self._records if r.id == task_id), None)

    def prepend(self, record: TaskRecord) -> None:
        self._records = [record, *self._records][: self.limit]
        self.save()

    def replace(self, record: TaskRecord) -> None:
        self._records = [record if r.id == record.id else r for r in self._records]
        self.save()

    def retain(self, keep: Callable[[TaskRecord], bool]) -> int:
        """Keep only matching records, return how many were removed"""
        before = len(self._records)
        self._records = [r for r in self._records if keep(r)]
        self.save()
        return before - len(self._records)

    def reset(self, records: List[TaskRecord]) -> None:
        self._records = sorted(records, key=lambda r: r.created_at, reverse=True)[: self.limit]
        self.save()
