# =====================================
# catalog_tasks/api/v1/tasks.py
# =====================================
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Response, status

from catalog_tasks.api.dependencies import get_task_store
from catalog_tasks.schemas.task import ClearCompletedResponse, TaskRecord, TaskRecordCreate, TaskRecordUpdate, TaskStats
from catalog_tasks.services.task_store import TaskNotFoundError, TaskRecordStore, TaskStoreError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=List[TaskRecord], response_model_exclude_none=True)
async def list_tasks(store: TaskRecordStore = Depends(get_task_store)):
	"""List all retained task records, newest first"""
	try:
		return await store.list()
	except TaskStoreError as e:
		logger.error(f"Error reading tasks: {e}")
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to read tasks")


@router.post(
	"",
	response_model=TaskRecord,
	response_model_exclude_none=True,
	status_code=status.HTTP_201_CREATED,
)
async def create_task(
		task_data: TaskRecordCreate,
		response: Response,
		store: TaskRecordStore = Depends(get_task_store)
):
	"""Persist a task record; a known id is merged into the stored record"""
	try:
		record, created = await store.create(task_data)
	except TaskStoreError as e:
		logger.error(f"Error creating task: {e}")
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create task")

	if not created:
		response.status_code = status.HTTP_200_OK
	return record


# Registered before /{task_id} so "stats" is not taken for an id
@router.get("/stats", response_model=TaskStats)
async def get_task_stats(store: TaskRecordStore = Depends(get_task_store)):
	"""Counts by status over the retained window"""
	try:
		return await store.stats()
	except TaskStoreError as e:
		logger.error(f"Error getting task stats: {e}")
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to get task statistics")


@router.delete("/completed", response_model=ClearCompletedResponse)
async def clear_completed_tasks(store: TaskRecordStore = Depends(get_task_store)):
	try:
		remaining = await store.clear_completed()
	except TaskStoreError as e:
		logger.error(f"Error clearing completed tasks: {e}")
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to clear completed tasks")

	return ClearCompletedResponse(message="Completed tasks cleared", remaining=remaining)


@router.patch("/{task_id}", response_model=TaskRecord, response_model_exclude_none=True)
async def update_task(
		task_id: str,
		updates: TaskRecordUpdate,
		store: TaskRecordStore = Depends(get_task_store)
):
	"""Merge a partial record into the stored one"""
	try:
		return await store.patch(task_id, updates)
	except TaskNotFoundError:
		raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
	except TaskStoreError as e:
		logger.error(f"Error updating task {task_id}: {e}")
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update task")
