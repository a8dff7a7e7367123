import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from starlette.websockets import WebSocket, WebSocketState

from catalog_tasks.models.task import TaskStatus
from catalog_tasks.monitoring.metrics import push_connections, push_deliveries_failed, push_notifications

logger = logging.getLogger(__name__)

TASK_STATUS_UPDATE = "task-status-update"
HEALTH_CHECK = "health-check"


class PushBroadcaster:
	"""Fan task status changes out to every open WebSocket connection.

	Delivery is best effort: nothing is queued, persisted or acknowledged, and a
	client that connects after a notification never sees it.
	"""

	def __init__(self):
		self.connections: Set[WebSocket] = set()

	def register(self, websocket: WebSocket):
		self.connections.add(websocket)
		push_connections.set(len(self.connections))
		logger.info(f"Push client connected ({len(self.connections)} open)")

	def unregister(self, websocket: WebSocket):
		self.connections.discard(websocket)
		push_connections.set(len(self.connections))
		logger.info(f"Push client disconnected ({len(self.connections)} open)")

	@staticmethod
	def is_open(websocket: WebSocket) -> bool:
		return (
			websocket.application_state == WebSocketState.CONNECTED
			and websocket.client_state == WebSocketState.CONNECTED
		)

	async def broadcast(self, message: Dict[str, Any]) -> int:
		"""Send ``message`` to every open connection, return the delivered count"""
		text = json.dumps(message, default=str)
		delivered = 0
		dropped = set()

		for connection in list(self.connections):
			if not self.is_open(connection):
				continue
			try:
				await connection.send_text(text)
				delivered += 1
			except Exception as e:
				logger.debug(f"Dropping push connection after failed send: {e}")
				push_deliveries_failed.inc()
				dropped.add(connection)

		for connection in dropped:
			self.unregister(connection)

		return delivered

	async def notify(
			self,
			task_id: str,
			status: TaskStatus,
			error: Optional[str] = None,
			data: Optional[Any] = None
	) -> int:
		status = TaskStatus(status)
		delivered = await self.broadcast({
			"type": TASK_STATUS_UPDATE,
			"payload": {
				"taskId": task_id,
				"status": status.value,
				"error": error,
				"data": data,
			},
		})
		push_notifications.labels(status=status.value).inc()
		logger.info(f"Task {task_id} -> {status.value} pushed to {delivered} client(s)")
		return delivered

	async def send_heartbeat(self) -> int:
		return await self.broadcast({"type": HEALTH_CHECK})

	async def run_heartbeat(self, interval_seconds: float):
		"""Periodically ask clients for a ``health-ack``"""
		while True:
			await asyncio.sleep(interval_seconds)
			try:
				await self.send_heartbeat()
			except Exception as e:
				logger.error(f"Heartbeat failed: {e}")

	async def close_all(self, code: int = 1001, reason: str = "Server shutting down"):
		for connection in list(self.connections):
			if self.is_open(connection):
				try:
					await connection.close(code=code, reason=reason)
				except Exception as e:
					logger.debug(f"Error while closing push connection: {e}")
			self.unregister(connection)
