# catalog_tasks/services/task_store.py

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from pydantic import ValidationError

from catalog_tasks.models.task import ACTIVE_STATUSES, TaskStatus, new_task_id, now_ms
from catalog_tasks.monitoring.metrics import task_store_operations
from catalog_tasks.schemas.task import ActivityResponse, TaskRecord, TaskRecordCreate, TaskRecordUpdate, TaskStats

logger = logging.getLogger(__name__)


class TaskStoreError(Exception):
	"""Backing file could not be read or written"""


class TaskNotFoundError(KeyError):
	pass


class TaskRecordStore:
	"""
	Durable, trimmed log of task records kept in a single JSON file.

	Every operation is a full read-modify-write of the file. Operations are
	serialized on one lock so concurrent patches for different ids cannot
	lose each other's updates.
	"""

	def __init__(self, path: Union[str, Path], retention_limit: int = 1000):
		self.path = Path(path)
		self.retention_limit = retention_limit
		self._lock = asyncio.Lock()

	# ---- lifecycle ----

	async def initialize(self) -> None:
		async with self._lock:
			await asyncio.to_thread(self._ensure_file)
		logger.info(f"Task store ready at {self.path}")

	async def close(self) -> None:
		"""Wait for an in-flight write to finish"""
		async with self._lock:
			return

	async def check(self) -> bool:
		try:
			await self.list()
			return True
		except TaskStoreError as e:
			logger.error(f"Task store health check failed: {e}")
			return False

	# ---- file access ----

	def _ensure_file(self) -> None:
		self.path.parent.mkdir(parents=True, exist_ok=True)
		if not self.path.exists() or self.path.stat().st_size == 0:
			self.path.write_text("[]", encoding="utf-8")

	def _read_sync(self) -> List[TaskRecord]:
		self._ensure_file()
		raw = json.loads(self.path.read_text(encoding="utf-8"))
		if not isinstance(raw, list):
			raise TaskStoreError(f"{self.path} does not hold a list of task records")

		records = []
		for item in raw:
			try:
				records.append(TaskRecord.model_validate(item))
			except ValidationError as e:
				logger.warning(f"Skipping unreadable task record in {self.path}: {e.errors()[:1]}")
		return records

	def _write_sync(self, records: List[TaskRecord]) -> None:
		self._ensure_file()
		tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
		data = [record.to_wire() for record in records]
		tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
		os.replace(tmp_path, self.path)

	async def _read(self) -> List[TaskRecord]:
		try:
			return await asyncio.to_thread(self._read_sync)
		except (OSError, ValueError) as e:
			raise TaskStoreError(f"Failed to read tasks: {e}") from e

	async def _write(self, records: List[TaskRecord]) -> None:
		try:
			await asyncio.to_thread(self._write_sync, records)
		except (OSError, TypeError, ValueError) as e:
			raise TaskStoreError(f"Failed to write tasks: {e}") from e

	def _sorted(self, records: List[TaskRecord]) -> List[TaskRecord]:
		# Stable: records sharing a timestamp keep their insertion order
		return sorted(records, key=lambda r: r.created_at, reverse=True)

	# ---- public API ----

	async def list(self) -> List[TaskRecord]:
		"""All retained records, newest first"""
		async with self._lock:
			records = await self._read()
		task_store_operations.labels(operation="list").inc()
		return self._sorted(records)

	async def create(self, data: Union[TaskRecordCreate, Dict[str, Any]]) -> Tuple[TaskRecord, bool]:
		"""
		Store a record, filling in missing fields.

		A record whose id already exists is merged into the stored one instead
		of being appended a second time. Returns ``(record, created)``.
		"""
		if isinstance(data, dict):
			data = TaskRecordCreate.model_validate(data)

		async with self._lock:
			records = await self._read()
			existing = next((i for i, r in enumerate(records) if data.id and r.id == data.id), None)

			if existing is not None:
				updates = data.model_dump(exclude_none=True, exclude={"id", "type", "created_at"})
				record = self._merge(records[existing], updates)
				records[existing] = record
				created = False
			else:
				now = now_ms()
				record = self._normalize_terminal(TaskRecord(
					id=data.id or new_task_id(),
					type=data.type,
					entity=data.entity or data.type.entity,
					payload=data.payload or {},
					status=data.status or TaskStatus.QUEUED,
					result=data.result,
					error=data.error,
					created_at=data.created_at or now,
					updated_at=data.updated_at or now,
					completed_at=data.completed_at,
				))
				records.insert(0, record)
				created = True

			records = self._sorted(records)[: self.retention_limit]
			await self._write(records)

		task_store_operations.labels(operation="create").inc()
		if created:
			logger.info(f"Task persisted: {record.id} {record.type.value}")
		else:
			logger.info(f"Task {record.id} already stored, merged")
		return record, created

	async def patch(self, task_id: str, updates: Union[TaskRecordUpdate, Dict[str, Any]]) -> TaskRecord:
		if isinstance(updates, dict):
			updates = TaskRecordUpdate.model_validate(updates)

		async with self._lock:
			records = await self._read()
			index = next((i for i, r in enumerate(records) if r.id == task_id), None)
			if index is None:
				raise TaskNotFoundError(task_id)

			record = self._merge(records[index], updates.model_dump(exclude_none=True))
			records[index] = record
			await self._write(records)

		task_store_operations.labels(operation="patch").inc()
		logger.info(f"Task updated: {task_id} {record.status.value}")
		return record

	@staticmethod
	def _normalize_terminal(record: TaskRecord) -> TaskRecord:
		"""A terminal record carries completed_at and exactly one of result/error"""
		if not record.status.is_terminal:
			return record
		updates: Dict[str, Any] = {"completed_at": record.completed_at or record.updated_at}
		if record.status == TaskStatus.SUCCESS:
			updates["result"] = record.result if record.result is not None else {}
			updates["error"] = None
		else:
			updates["error"] = record.error or "Task failed"
			updates["result"] = None
		return record.model_copy(update=updates)

	def _merge(self, record: TaskRecord, updates: Dict[str, Any]) -> TaskRecord:
		now = now_ms()
		if record.status.is_terminal:
			dropped = {k for k in ("status", "result", "error", "completed_at") if k in updates}
			if dropped and updates.get("status", record.status) != record.status:
				logger.warning(
					f"Ignoring status change {record.status.value} -> {updates['status']} "
					f"for terminal task {record.id}"
				)
			for key in dropped:
				updates.pop(key)
		elif "status" in updates:
			new_status = TaskStatus(updates["status"])
			if new_status.rank < record.status.rank:
				logger.warning(f"Ignoring status regression {record.status.value} -> {new_status.value} for task {record.id}")
				updates.pop("status")
			elif new_status.is_terminal:
				updates.setdefault("completed_at", now)
				# Only the field matching the outcome survives
				if new_status == TaskStatus.SUCCESS:
					updates["error"] = None
				else:
					updates["result"] = None

		merged = record.model_copy(update=updates)
		merged.updated_at = max(now, record.updated_at, updates.get("updated_at") or 0)
		return self._normalize_terminal(merged)

	async def stats(self) -> TaskStats:
		return TaskStats.from_records(await self.list())

	async def clear_completed(self) -> int:
		"""Drop terminal records and return how many remain"""
		async with self._lock:
			records = await self._read()
			active = [r for r in records if r.status in ACTIVE_STATUSES]
			await self._write(active)

		task_store_operations.labels(operation="clear_completed").inc()
		logger.info(f"Cleared {len(records) - len(active)} completed tasks, {len(active)} remaining")
		return len(active)

	async def recent_activities(self, limit: int = 10) -> List[ActivityResponse]:
		"""Activity feed built from the newest records"""
		activities = []
		for record in (await self.list())[:limit]:
			verb = record.type.value.split("-")[0]
			name = record.payload.get("name") or record.payload.get("newName") or "Unknown"
			activities.append(ActivityResponse(
				id=record.id,
				type=verb,
				entity=record.entity,
				status=record.status,
				description=f"{verb} {record.entity}: {name}",
				created_at=_iso(record.created_at),
				updated_at=_iso(record.updated_at),
			))
		return activities


def _iso(ms: int) -> str:
	return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
