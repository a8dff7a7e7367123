import pytest
from typing import AsyncGenerator
from httpx import ASGITransport, AsyncClient

from catalog_tasks.client.api_client import CatalogApiClient
from catalog_tasks.client.channel import ReconciliationChannel
from catalog_tasks.client.executor import TaskExecutor
from catalog_tasks.client.state import LocalTaskState
from catalog_tasks.config import Settings
from catalog_tasks.main import create_app
from catalog_tasks.services.broadcaster import PushBroadcaster
from catalog_tasks.services.catalog_service import CatalogService
from catalog_tasks.services.task_store import TaskRecordStore

from fakes import FakeCatalogApi, FakeServerWebSocket


@pytest.fixture
def settings(tmp_path) -> Settings:
	"""Settings pointing every file at the per-test tmp directory"""
	return Settings(
		TASKS_FILE=str(tmp_path / "tasks.json"),
		CLIENT_STATE_FILE=str(tmp_path / "client-tasks.json"),
		WS_HEARTBEAT_SECONDS=0,
		PUSH_CONFIRM_TIMEOUT_SECONDS=None,
	)


@pytest.fixture
def task_store(settings: Settings) -> TaskRecordStore:
	return TaskRecordStore(settings.TASKS_FILE, settings.TASK_RETENTION_LIMIT)


@pytest.fixture
def broadcaster() -> PushBroadcaster:
	return PushBroadcaster()


@pytest.fixture
def catalog() -> CatalogService:
	return CatalogService()


@pytest.fixture
def server_app(settings, task_store, broadcaster, catalog):
	return create_app(settings, task_store, broadcaster, catalog)


@pytest.fixture
async def client(server_app) -> AsyncGenerator[AsyncClient, None]:
	"""HTTP client talking to the app in-process"""
	async with AsyncClient(transport=ASGITransport(app=server_app), base_url="http://test") as client:
		yield client


@pytest.fixture
def fake_api() -> FakeCatalogApi:
	return FakeCatalogApi()


@pytest.fixture
async def executor(fake_api) -> AsyncGenerator[TaskExecutor, None]:
	executor = TaskExecutor(fake_api, LocalTaskState())
	yield executor
	await executor.close()


@pytest.fixture
async def pipeline(settings, server_app, broadcaster):
	"""
	Executor + channel wired to the in-process app.

	The channel is attached to the broadcaster through a loopback socket so
	pushes reach the executor exactly like they would over a real WebSocket.
	"""
	api = CatalogApiClient(
		f"http://test{settings.API_V1_PREFIX}",
		transport=ASGITransport(app=server_app),
	)
	executor = TaskExecutor(api, LocalTaskState(settings.CLIENT_STATE_FILE))
	channel = ReconciliationChannel(executor, "ws://test/api/v1/ws", sync_on_connect=False)
	loopback = FakeServerWebSocket(on_send=channel.handle_message)

	yield executor, channel, loopback

	await executor.close()
	await api.aclose()
