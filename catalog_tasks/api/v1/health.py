# catalog_tasks/api/v1/health.py
import logging
import platform
from datetime import datetime, timezone
from typing import List

import psutil
from fastapi import APIRouter, Depends, HTTPException, Query, status

from catalog_tasks.api.dependencies import get_broadcaster, get_task_store
from catalog_tasks.schemas.task import ActivityResponse
from catalog_tasks.services.broadcaster import PushBroadcaster
from catalog_tasks.services.task_store import TaskRecordStore, TaskStoreError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check(
		store: TaskRecordStore = Depends(get_task_store),
		broadcaster: PushBroadcaster = Depends(get_broadcaster)
):
	"""Status of the task log and push channel"""
	tasks_storage = await store.check()

	health_status = {
		"api": True,
		"tasksStorage": tasks_storage,
		"websocket": True,
		"websocketClients": len(broadcaster.connections),
		"lastChecked": datetime.now(timezone.utc).isoformat(),
		"system": {},
	}

	try:
		health_status["system"] = {
			"cpu_percent": psutil.cpu_percent(interval=None),
			"memory_percent": psutil.virtual_memory().percent,
			"python_version": platform.python_version(),
		}
	except Exception as e:
		logger.error(f"Failed to get system metrics: {e}")

	health_status["overall_health"] = "healthy" if tasks_storage else "degraded"
	return health_status


@router.get("/activities/recent", response_model=List[ActivityResponse])
async def recent_activities(
		limit: int = Query(10, ge=1, le=100),
		store: TaskRecordStore = Depends(get_task_store)
):
	"""Most recent tasks rendered as an activity feed"""
	try:
		return await store.recent_activities(limit)
	except TaskStoreError as e:
		logger.error(f"Error fetching recent activities: {e}")
		raise HTTPException(
			status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
			detail="Failed to fetch recent activities"
		)
