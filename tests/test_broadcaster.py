import json

import pytest
from starlette.testclient import TestClient

from catalog_tasks.models.task import TaskStatus
from catalog_tasks.services.broadcaster import PushBroadcaster

from fakes import FakeServerWebSocket


@pytest.mark.asyncio
async def test_notify_reaches_open_connections_only(broadcaster: PushBroadcaster):
	open_socket = FakeServerWebSocket(open=True)
	closed_socket = FakeServerWebSocket(open=False)
	broadcaster.register(open_socket)
	broadcaster.register(closed_socket)

	delivered = await broadcaster.notify("task-1", TaskStatus.SUCCESS, data={"id": "acme"})

	assert delivered == 1
	assert len(open_socket.sent) == 1
	assert closed_socket.sent == []
	assert json.loads(open_socket.sent[0]) == {
		"type": "task-status-update",
		"payload": {"taskId": "task-1", "status": "success", "error": None, "data": {"id": "acme"}},
	}


@pytest.mark.asyncio
async def test_failed_send_drops_connection(broadcaster: PushBroadcaster):
	healthy = FakeServerWebSocket()
	broken = FakeServerWebSocket(fail=True)
	broadcaster.register(healthy)
	broadcaster.register(broken)

	delivered = await broadcaster.notify("task-2", "error", error="Database error")

	assert delivered == 1
	assert broken not in broadcaster.connections
	assert healthy in broadcaster.connections


@pytest.mark.asyncio
async def test_notify_without_clients(broadcaster: PushBroadcaster):
	assert await broadcaster.notify("task-3", TaskStatus.PROCESSING) == 0


@pytest.mark.asyncio
async def test_heartbeat_and_close_all(broadcaster: PushBroadcaster):
	socket = FakeServerWebSocket()
	broadcaster.register(socket)

	await broadcaster.send_heartbeat()
	await broadcaster.close_all()

	assert json.loads(socket.sent[0]) == {"type": "health-check"}
	assert broadcaster.connections == set()


def test_websocket_endpoint_answers_ping(server_app, broadcaster: PushBroadcaster):
	with TestClient(server_app) as test_client:
		with test_client.websocket_connect("/api/v1/ws") as ws:
			ws.send_text("not json")
			ws.send_json({"type": "health-ack"})
			ws.send_json({"type": "ping"})
			assert ws.receive_json() == {"type": "pong"}
			assert len(broadcaster.connections) == 1


def test_websocket_endpoint_ignores_binary_frames(server_app, broadcaster: PushBroadcaster):
	with TestClient(server_app) as test_client:
		with test_client.websocket_connect("/api/v1/ws") as ws:
			ws.send_bytes(b"\x00\x01")
			ws.send_json({"type": "ping"})
			assert ws.receive_json() == {"type": "pong"}
			assert len(broadcaster.connections) == 1
