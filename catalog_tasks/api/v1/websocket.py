from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import json
import logging

from catalog_tasks.api.dependencies import get_broadcaster

router = APIRouter()
logger = logging.getLogger(__name__)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
	"""WebSocket endpoint for real-time task status updates"""
	broadcaster = get_broadcaster(websocket)

	await websocket.accept()
	broadcaster.register(websocket)

	try:
		while True:
			message = await websocket.receive()
			if message["type"] == "websocket.disconnect":
				break
			raw = message.get("text")
			if raw is None:
				logger.debug("Ignoring binary push channel frame")
				continue
			try:
				data = json.loads(raw)
			except ValueError:
				logger.debug("Ignoring non-JSON push channel message")
				continue
			if not isinstance(data, dict):
				continue

			message_type = data.get("type")

			if message_type == "ping":
				await websocket.send_json({"type": "pong"})

			elif message_type == "health-ack":
				logger.debug("Push client answered health-check")

	except WebSocketDisconnect:
		pass
	finally:
		broadcaster.unregister(websocket)
