# catalog_tasks/client/executor.py

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set, Type, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from catalog_tasks.client.api_client import CatalogApiClient
from catalog_tasks.client.state import LocalTaskState
from catalog_tasks.models.task import TaskStatus, TaskType, now_ms
from catalog_tasks.schemas.task import TaskRecord, TaskStats, TaskStatusUpdate

logger = logging.getLogger(__name__)

NETWORK_ERROR = "Network error"
CONFIRMATION_TIMEOUT_ERROR = "Timed out waiting for the task outcome"


class TaskValidationError(ValueError):
    """Enqueue payload does not match its task type; no record was created"""


# ---- payloads ----

class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class EntityPayload(_Payload):
    name: str = Field(min_length=1)


class ProductPayload(_Payload):
    name: str = Field(min_length=1)
    image_path: str = Field(min_length=1)
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    purpose_id: Optional[str] = None


class RenamePayload(_Payload):
    product_id: str = Field(min_length=1)
    new_name: str = Field(min_length=1)


PAYLOAD_MODELS: Dict[TaskType, Type[_Payload]] = {
    TaskType.CREATE_BRAND: EntityPayload,
    TaskType.CREATE_CATEGORY: EntityPayload,
    TaskType.CREATE_PURPOSE: EntityPayload,
    TaskType.CREATE_PRODUCT: ProductPayload,
    TaskType.UPDATE_PRODUCT_NAME: RenamePayload,
}


# ---- dispatch table ----

TaskHandler = Callable[[CatalogApiClient, TaskRecord], Awaitable[httpx.Response]]


def _entity_handler(path: str) -> TaskHandler:
    async def handler(api: CatalogApiClient, record: TaskRecord) -> httpx.Response:
        return await api.create_entity(path, {**record.payload, "taskId": record.id})
    return handler


async def _create_product(api: CatalogApiClient, record: TaskRecord) -> httpx.Response:
    payload = ProductPayload.model_validate(record.payload)
    fields = {
        "name": payload.name,
        "taskId": record.id,
        "categoryId": payload.category_id,
        "brandId": payload.brand_id,
        "purposeId": payload.purpose_id,
    }
    return await api.create_product(fields, payload.image_path)


async def _rename_product(api: CatalogApiClient, record: TaskRecord) -> httpx.Response:
    payload = RenamePayload.model_validate(record.payload)
    return await api.rename_product(payload.product_id, {**record.payload, "taskId": record.id})


TASK_HANDLERS: Dict[TaskType, TaskHandler] = {
    TaskType.CREATE_BRAND: _entity_handler("/brands"),
    TaskType.CREATE_CATEGORY: _entity_handler("/categories"),
    TaskType.CREATE_PURPOSE: _entity_handler("/purposes"),
    TaskType.CREATE_PRODUCT: _create_product,
    TaskType.UPDATE_PRODUCT_NAME: _rename_product,
}

for _table_name, _table in (("TASK_HANDLERS", TASK_HANDLERS), ("PAYLOAD_MODELS", PAYLOAD_MODELS)):
    _missing = set(TaskType) - set(_table)
    if _missing:
        raise RuntimeError(f"{_table_name} has no entry for {sorted(t.value for t in _missing)}")


def error_message(response: httpx.Response) -> str:
    """Best human-readable message carried by an error response"""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("detail", "error", "message"):
            if isinstance(body.get(key), str) and body[key]:
                return body[key]
    return response.text or f"HTTP {response.status_code}"


class TaskExecutor:
    """
    Single-flight client queue for catalog mutations.

    At most one record is ``processing`` at a time. A record leaves
    ``processing`` when either its HTTP call fails or a status push for its id
    arrives; only then does the queue move on. Terminal statuses are sticky.
    """

    def __init__(
        self,
        api: CatalogApiClient,
        state: Optional[LocalTaskState] = None,
        *,
        confirm_timeout: Optional[float] = None,
    ):
        self.api = api
        self.state = state if state is not None else LocalTaskState()
        self.confirm_timeout = confirm_timeout

        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._waiters: Dict[str, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()
        # Last persistence write per record; the next write for that record waits on it
        self._persist_chain: Dict[str, asyncio.Task] = {}

    @property
    def is_processing(self) -> bool:
        return self._draining

    # ---- background work ----

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _persist(self, task_id: str, write: Callable[[], Awaitable[Any]], what: str) -> None:
        previous = self._persist_chain.get(task_id)

        async def run():
            if previous is not None:
                await asyncio.wait({previous})
            try:
                await write()
            except Exception as e:
                logger.error(f"Failed to {what} task {task_id} in backend: {e}")

        task = self._spawn(run())
        self._persist_chain[task_id] = task
        task.add_done_callback(
            lambda t: self._persist_chain.pop(task_id, None) if self._persist_chain.get(task_id) is t else None
        )

    def _schedule_drain(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = self._spawn(self.drain())

    # ---- operations ----

    def restore(self) -> None:
        """Load persisted local state and resume any queued records.

        Records persisted as ``processing`` stay that way until an outcome
        arrives by push or by :meth:`sync_from_backend`.
        """
        self.state.load()
        self._schedule_drain()

    def enqueue(self, task_type: Union[TaskType, str], payload: Dict[str, Any]) -> TaskRecord:
        """Queue a mutation and start draining if the queue is idle"""
        try:
            task_type = TaskType(task_type)
        except ValueError:
            raise TaskValidationError(f"Unknown task type: {task_type}")

        try:
            validated = PAYLOAD_MODELS[task_type].model_validate(payload or {})
        except ValidationError as e:
            raise TaskValidationError(f"Invalid payload for {task_type.value}: {e}") from e

        record = TaskRecord(
            type=task_type,
            entity=task_type.entity,
            payload=validated.model_dump(by_alias=True, exclude_none=True),
            status=TaskStatus.QUEUED,
        )
        self.state.prepend(record)
        logger.info(f"Queued task {record.id} {task_type.value}")

        self._persist(record.id, lambda: self.api.create_task_record(record), "persist")
        self._schedule_drain()
        return record

    def _next_queued(self) -> Optional[TaskRecord]:
        # State is newest-first, so the oldest queued record is the last match
        queued = [r for r in self.state if r.status == TaskStatus.QUEUED]
        return queued[-1] if queued else None

    async def drain(self) -> None:
        """Process queued records one at a time until none is left"""
        if self._draining:
            return
        self._draining = True
        try:
            while True:
                record = self._next_queued()
                if record is None:
                    logger.debug("No tasks in queue")
                    break
                await self._run(record)
        finally:
            self._draining = False

    async def _run(self, record: TaskRecord) -> None:
        waiter = self._waiters[record.id] = asyncio.Event()
        self._set_processing(record.id)
        logger.info(f"Processing task {record.id} {record.type.value}")

        # The outcome push may be delivered before the HTTP response; the
        # waiter is already registered so it is not lost.
        try:
            pending = self._persist_chain.get(record.id)
            if pending is not None:
                await asyncio.wait({pending})

            response = await TASK_HANDLERS[record.type](self.api, record)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            message = error_message(e.response)
            logger.warning(f"Task {record.id} rejected ({e.response.status_code}): {message}")
            self.finalize(record.id, TaskStatus.ERROR, error=message)
        except httpx.HTTPError as e:
            logger.error(f"Task {record.id} execution failed: {e}")
            self.finalize(record.id, TaskStatus.ERROR, error=str(e) or NETWORK_ERROR)
        except (OSError, ValidationError) as e:
            logger.error(f"Task {record.id} could not be sent: {e}")
            self.finalize(record.id, TaskStatus.ERROR, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure running task {record.id}")
            self.finalize(record.id, TaskStatus.ERROR, error=str(e) or NETWORK_ERROR)

        try:
            await self._wait_for_outcome(record.id, waiter)
        finally:
            self._waiters.pop(record.id, None)

    async def _wait_for_outcome(self, task_id: str, waiter: asyncio.Event) -> None:
        if waiter.is_set():
            return
        try:
            await asyncio.wait_for(waiter.wait(), timeout=self.confirm_timeout)
        except asyncio.TimeoutError:
            logger.error(f"No outcome for task {task_id} after {self.confirm_timeout}s")
            self.finalize(task_id, TaskStatus.ERROR, error=CONFIRMATION_TIMEOUT_ERROR)

    def _set_processing(self, task_id: str) -> None:
        record = self.state.get(task_id)
        if record is None or record.status != TaskStatus.QUEUED:
            return
        self.state.replace(record.model_copy(update={"status": TaskStatus.PROCESSING, "updated_at": now_ms()}))

    def finalize(
        self,
        task_id: str,
        status: Union[TaskStatus, str],
        result: Optional[Any] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Move a record into a terminal status.

        Returns False without touching anything when the record is unknown or
        already terminal.
        """
        status = TaskStatus(status)
        if not status.is_terminal:
            raise ValueError(f"finalize() needs a terminal status, got {status.value}")

        record = self.state.get(task_id)
        if record is None:
            logger.warning(f"Dropping {status.value} outcome for unknown task {task_id}")
            return False
        if record.status.is_terminal:
            logger.debug(f"Task {task_id} already {record.status.value}, ignoring {status.value}")
            return False

        now = max(now_ms(), record.updated_at)
        updates: Dict[str, Any] = {"status": status, "updated_at": now, "completed_at": now}
        if status == TaskStatus.SUCCESS:
            updates["result"] = result if result is not None else {}
            updates["error"] = None
        else:
            updates["error"] = error or "Task failed"
            updates["result"] = None

        finished = record.model_copy(update=updates)
        self.state.replace(finished)
        logger.info(f"Task {task_id} finished: {status.value}")

        patch = {
            "status": status.value,
            "updatedAt": finished.updated_at,
            "completedAt": finished.completed_at,
        }
        if status == TaskStatus.SUCCESS:
            patch["result"] = finished.result
        else:
            patch["error"] = finished.error
        self._persist(task_id, lambda: self.api.patch_task_record(task_id, patch), "update")

        waiter = self._waiters.get(task_id)
        if waiter is not None:
            waiter.set()
        else:
            self._schedule_drain()
        return True

    def handle_status_update(self, update: TaskStatusUpdate) -> bool:
        """Apply a pushed status; only terminal statuses change local state"""
        if not update.status.is_terminal:
            logger.debug(f"Task {update.task_id} reported {update.status.value}")
            return False
        return self.finalize(update.task_id, update.status, result=update.data, error=update.error)

    def clear_completed(self) -> int:
        removed = self.state.retain(lambda r: not r.status.is_terminal)
        logger.info(f"Cleared {removed} completed tasks")
        return removed

    def stats(self) -> TaskStats:
        return TaskStats.from_records(self.state)

    async def sync_from_backend(self) -> int:
        """
        Pull the server task log and converge local state with it.

        Returns the number of local records finalized from the server copy.
        """
        try:
            remote = await self.api.list_task_records()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to sync tasks from backend: {e}")
            return 0

        finalized = 0
        imported = []
        for remote_record in remote:
            local = self.state.get(remote_record.id)
            if local is None:
                # Another client's history; its active records belong to its own queue
                if remote_record.status.is_terminal:
                    imported.append(remote_record)
                continue
            if remote_record.status.is_terminal and not local.status.is_terminal:
                if self.finalize(remote_record.id, remote_record.status, remote_record.result, remote_record.error):
                    finalized += 1

        if imported:
            self.state.reset([*self.state.records, *imported])
        logger.info(f"Synced tasks from backend: {finalized} finalized, {len(imported)} imported")
        return finalized

    async def join(self) -> None:
        """Wait until the current drain loop (if any) has finished"""
        while self._drain_task is not None and not self._drain_task.done():
            await asyncio.wait({self._drain_task})

    async def flush(self) -> None:
        """Wait for pending backend writes and the local state file"""
        while self._persist_chain:
            await asyncio.wait(set(self._persist_chain.values()))
        await self.state.flush()

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._waiters.clear()
        await self.state.flush()
