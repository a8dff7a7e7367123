# =====================================
# catalog_tasks/models/task.py
# =====================================
import enum
import time
import uuid


class TaskStatus(str, enum.Enum):
	QUEUED = "queued"
	PROCESSING = "processing"
	SUCCESS = "success"
	ERROR = "error"

	@property
	def is_terminal(self) -> bool:
		return self in TERMINAL_STATUSES

	@property
	def rank(self) -> int:
		return STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.ERROR})
ACTIVE_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.PROCESSING})

# Transitions only ever move to a higher rank
STATUS_RANK = {
	TaskStatus.QUEUED: 0,
	TaskStatus.PROCESSING: 1,
	TaskStatus.SUCCESS: 2,
	TaskStatus.ERROR: 2,
}


class TaskType(str, enum.Enum):
	CREATE_BRAND = "create-brand"
	CREATE_CATEGORY = "create-category"
	CREATE_PURPOSE = "create-purpose"
	CREATE_PRODUCT = "create-product"
	UPDATE_PRODUCT_NAME = "update-product-name"

	@property
	def entity(self) -> str:
		return TASK_ENTITIES[self]


TASK_ENTITIES = {
	TaskType.CREATE_BRAND: "brand",
	TaskType.CREATE_CATEGORY: "category",
	TaskType.CREATE_PURPOSE: "purpose",
	TaskType.CREATE_PRODUCT: "product",
	TaskType.UPDATE_PRODUCT_NAME: "product",
}

_missing_entities = set(TaskType) - set(TASK_ENTITIES)
if _missing_entities:
	raise RuntimeError(f"Task types without entity label: {sorted(t.value for t in _missing_entities)}")


def now_ms() -> int:
	"""Current time as epoch milliseconds (wire format for task timestamps)"""
	return int(time.time() * 1000)


def new_task_id() -> str:
	return str(uuid.uuid4())
