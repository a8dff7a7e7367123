import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from catalog_tasks.api.dependencies import get_broadcaster, get_catalog, get_task_store
from catalog_tasks.models.task import TaskStatus
from catalog_tasks.schemas.catalog import DashboardStats, EntityCreate, ProductRename
from catalog_tasks.schemas.task import TaskRecordUpdate
from catalog_tasks.services.broadcaster import PushBroadcaster
from catalog_tasks.services.catalog_service import (
	CatalogConflictError,
	CatalogNotFoundError,
	CatalogService,
	ProductImage,
)
from catalog_tasks.services.task_store import TaskNotFoundError, TaskRecordStore, TaskStoreError

router = APIRouter()
logger = logging.getLogger(__name__)


async def record_outcome(
		store: TaskRecordStore,
		broadcaster: PushBroadcaster,
		task_id: str,
		task_status: TaskStatus,
		error: Optional[str] = None,
		data: Optional[Any] = None
):
	"""Write the outcome to the task log, then push it to every client"""
	try:
		await store.patch(task_id, TaskRecordUpdate(status=task_status, result=data, error=error))
	except TaskNotFoundError:
		logger.warning(f"Task {task_id} not in task store yet, outcome only pushed")
	except TaskStoreError as e:
		logger.error(f"Failed to update task in backend: {e}")

	await broadcaster.notify(task_id, task_status, error, data)


async def run_task(
		task_id: str,
		operation: Callable[[], Awaitable[Dict[str, Any]]],
		store: TaskRecordStore,
		broadcaster: PushBroadcaster,
		fallback_error: str = "Database error"
) -> Dict[str, Any]:
	"""Run one catalog mutation on behalf of a queued task.

	The caller learns the outcome twice: from the HTTP response and from the
	``task-status-update`` push that is sent before the response.
	"""
	await broadcaster.notify(task_id, TaskStatus.PROCESSING)
	try:
		result = await operation()
	except CatalogConflictError as e:
		await record_outcome(store, broadcaster, task_id, TaskStatus.ERROR, error=str(e))
		raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
	except CatalogNotFoundError as e:
		await record_outcome(store, broadcaster, task_id, TaskStatus.ERROR, error=str(e))
		raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
	except Exception as e:
		logger.exception(f"Task {task_id} failed")
		await record_outcome(store, broadcaster, task_id, TaskStatus.ERROR, error=fallback_error)
		raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e) or fallback_error)

	await record_outcome(store, broadcaster, task_id, TaskStatus.SUCCESS, data=result)
	return result


def _entity_routes(kind: str, path: str):
	"""Register create/list routes for a name-only catalog entity"""

	@router.post(path, status_code=status.HTTP_201_CREATED, name=f"create_{kind}")
	async def create_entity(
			body: EntityCreate,
			catalog: CatalogService = Depends(get_catalog),
			store: TaskRecordStore = Depends(get_task_store),
			broadcaster: PushBroadcaster = Depends(get_broadcaster)
	):
		if not body.name or not body.taskId:
			raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing name or taskId")
		return await run_task(
			body.taskId,
			lambda: catalog.create_entity(kind, body.name),
			store,
			broadcaster,
		)

	@router.get(path, name=f"list_{kind}")
	async def list_entities(catalog: CatalogService = Depends(get_catalog)):
		return await catalog.list_entities(kind)


_entity_routes("brand", "/brands")
_entity_routes("category", "/categories")
_entity_routes("purpose", "/purposes")


@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
		name: Optional[str] = Form(None),
		taskId: Optional[str] = Form(None),
		categoryId: Optional[str] = Form(None),
		brandId: Optional[str] = Form(None),
		purposeId: Optional[str] = Form(None),
		image: Optional[UploadFile] = File(None),
		catalog: CatalogService = Depends(get_catalog),
		store: TaskRecordStore = Depends(get_task_store),
		broadcaster: PushBroadcaster = Depends(get_broadcaster)
):
	"""Create a product together with its image"""
	if not name or not taskId or image is None:
		raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing name, taskId, or image")

	content = await image.read()
	product_image = ProductImage(
		filename=image.filename or "image",
		contentType=image.content_type,
		size=len(content),
	)

	return await run_task(
		taskId,
		lambda: catalog.create_product(name, product_image, categoryId, brandId, purposeId),
		store,
		broadcaster,
		fallback_error="Failed to create product.",
	)


@router.get("/products")
async def list_products(catalog: CatalogService = Depends(get_catalog)):
	return await catalog.list_products()


@router.put("/products/{product_id}/name")
async def update_product_name(
		product_id: str,
		body: ProductRename,
		catalog: CatalogService = Depends(get_catalog),
		store: TaskRecordStore = Depends(get_task_store),
		broadcaster: PushBroadcaster = Depends(get_broadcaster)
):
	"""Rename a product; its id changes to the slug of the new name"""
	if not body.newName or not body.taskId:
		raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing newName or taskId")

	return await run_task(
		body.taskId,
		lambda: catalog.rename_product(product_id, body.newName),
		store,
		broadcaster,
		fallback_error="Failed to update product name.",
	)


@router.get("/stats", response_model=DashboardStats)
async def get_dashboard_stats(catalog: CatalogService = Depends(get_catalog)):
	return await catalog.counts()
