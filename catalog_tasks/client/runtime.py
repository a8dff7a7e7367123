# catalog_tasks/client/runtime.py

import logging
from typing import Optional

from catalog_tasks.client.api_client import CatalogApiClient
from catalog_tasks.client.channel import ReconciliationChannel
from catalog_tasks.client.executor import TaskExecutor
from catalog_tasks.client.state import LocalTaskState
from catalog_tasks.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class TaskClient:
    """Wires the executor and the push channel from settings.

    Use as ``async with TaskClient() as client: client.executor.enqueue(...)``.
    """

    def __init__(self, settings: Optional[Settings] = None, api: Optional[CatalogApiClient] = None):
        self.settings = settings or default_settings
        self.api = api or CatalogApiClient(
            self.settings.API_BASE_URL,
            timeout=self.settings.HTTP_TIMEOUT_SECONDS,
        )
        self.state = LocalTaskState(
            self.settings.CLIENT_STATE_FILE,
            version=self.settings.CLIENT_STATE_VERSION,
            limit=self.settings.TASK_RETENTION_LIMIT,
        )
        self.executor = TaskExecutor(
            self.api,
            self.state,
            confirm_timeout=self.settings.PUSH_CONFIRM_TIMEOUT_SECONDS,
        )
        self.channel = ReconciliationChannel(
            self.executor,
            self.settings.WS_URL,
            initial_delay=self.settings.RECONNECT_INITIAL_DELAY_SECONDS,
            max_delay=self.settings.RECONNECT_MAX_DELAY_SECONDS,
            keepalive_interval=self.settings.WS_KEEPALIVE_SECONDS,
        )

    async def start(self) -> None:
        self.executor.restore()
        self.channel.start()
        logger.info(f"Task client started against {self.settings.API_BASE_URL}")

    async def close(self) -> None:
        await self.channel.close()
        await self.executor.close()
        await self.api.aclose()
        logger.info("Task client stopped")

    async def __aenter__(self) -> "TaskClient":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
