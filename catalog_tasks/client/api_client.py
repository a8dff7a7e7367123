# catalog_tasks/client/api_client.py

import asyncio
import logging
import mimetypes
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from catalog_tasks.schemas.task import TaskRecord

logger = logging.getLogger(__name__)


class CatalogApiClient:
    """Thin async wrapper over the catalog HTTP API.

    Methods return the raw ``httpx.Response`` for domain mutations so the
    executor can decide how a non-2xx status maps onto task state; task log
    methods raise for status and return parsed records.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CatalogApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ---- task log ----

    async def create_task_record(self, record: TaskRecord) -> TaskRecord:
        r = await self._client.post("/tasks", json=record.to_wire())
        r.raise_for_status()
        return TaskRecord.model_validate(r.json())

    async def patch_task_record(self, task_id: str, updates: Dict[str, Any]) -> TaskRecord:
        r = await self._client.patch(f"/tasks/{task_id}", json=updates)
        r.raise_for_status()
        return TaskRecord.model_validate(r.json())

    async def list_task_records(self) -> List[TaskRecord]:
        r = await self._client.get("/tasks")
        r.raise_for_status()
        records = []
        for item in r.json():
            try:
                records.append(TaskRecord.model_validate(item))
            except ValidationError as e:
                # Records of task types this client does not know are skipped
                logger.warning(f"Skipping unreadable task record from backend: {e.errors()[:1]}")
        return records

    # ---- catalog mutations ----

    async def create_entity(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        return await self._client.post(path, json=payload)

    async def create_product(self, fields: Dict[str, Any], image_path: str) -> httpx.Response:
        path = Path(image_path)
        content = await asyncio.to_thread(path.read_bytes)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        data = {k: str(v) for k, v in fields.items() if v is not None}
        return await self._client.post(
            "/products",
            data=data,
            files={"image": (path.name, content, content_type)},
        )

    async def rename_product(self, product_id: str, payload: Dict[str, Any]) -> httpx.Response:
        return await self._client.put(f"/products/{product_id}/name", json=payload)
