# =====================================
# catalog_tasks/schemas/task.py
# =====================================
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from catalog_tasks.models.task import TaskStatus, TaskType, new_task_id, now_ms


class CamelModel(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

	def to_wire(self) -> Dict[str, Any]:
		return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class TaskRecord(CamelModel):
	id: str = Field(default_factory=new_task_id)
	type: TaskType
	entity: Optional[str] = None
	payload: Dict[str, Any] = {}
	status: TaskStatus = TaskStatus.QUEUED
	result: Optional[Any] = None
	error: Optional[str] = None
	created_at: int = Field(default_factory=now_ms)
	updated_at: int = Field(default_factory=now_ms)
	completed_at: Optional[int] = None

	def model_post_init(self, __context: Any) -> None:
		if not self.entity:
			self.entity = self.type.entity


class TaskRecordCreate(CamelModel):
	"""Body of POST /tasks: every field but ``type`` may be left to the store"""
	id: Optional[str] = None
	type: TaskType
	entity: Optional[str] = None
	payload: Optional[Dict[str, Any]] = None
	status: Optional[TaskStatus] = None
	result: Optional[Any] = None
	error: Optional[str] = None
	created_at: Optional[int] = None
	updated_at: Optional[int] = None
	completed_at: Optional[int] = None


class TaskRecordUpdate(CamelModel):
	status: Optional[TaskStatus] = None
	result: Optional[Any] = None
	error: Optional[str] = None
	payload: Optional[Dict[str, Any]] = None
	updated_at: Optional[int] = None
	completed_at: Optional[int] = None


class TaskStats(BaseModel):
	total: int = 0
	queued: int = 0
	processing: int = 0
	success: int = 0
	error: int = 0

	@classmethod
	def from_records(cls, records: Iterable[TaskRecord]) -> "TaskStats":
		counts = {status.value: 0 for status in TaskStatus}
		total = 0
		for record in records:
			counts[record.status.value] += 1
			total += 1
		return cls(total=total, **counts)


class ClearCompletedResponse(BaseModel):
	message: str
	remaining: int


class TaskStatusUpdate(CamelModel):
	"""Payload of a ``task-status-update`` push envelope"""
	task_id: str
	status: TaskStatus
	error: Optional[str] = None
	data: Optional[Any] = None


class ActivityResponse(CamelModel):
	id: str
	type: str
	entity: Optional[str] = None
	status: TaskStatus
	description: str
	created_at: str
	updated_at: str
