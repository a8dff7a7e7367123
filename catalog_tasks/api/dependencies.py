from starlette.requests import HTTPConnection

from catalog_tasks.services.broadcaster import PushBroadcaster
from catalog_tasks.services.catalog_service import CatalogService
from catalog_tasks.services.task_store import TaskRecordStore


# HTTPConnection covers both plain requests and WebSocket connections
def get_task_store(connection: HTTPConnection) -> TaskRecordStore:
	return connection.app.state.task_store


def get_broadcaster(connection: HTTPConnection) -> PushBroadcaster:
	return connection.app.state.broadcaster


def get_catalog(connection: HTTPConnection) -> CatalogService:
	return connection.app.state.catalog
