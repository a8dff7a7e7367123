# tests/fakes.py

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from starlette.websockets import WebSocketState
from websockets.exceptions import ConnectionClosedError

from catalog_tasks.schemas.task import TaskRecord


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
	"""Poll ``predicate`` on the event loop until it holds or the timeout hits"""
	deadline = time.monotonic() + timeout
	while not predicate():
		if time.monotonic() > deadline:
			raise AssertionError("condition not reached before timeout")
		await asyncio.sleep(0.005)


class FakeServerWebSocket:
	"""Stands in for a Starlette WebSocket registered with the broadcaster"""

	def __init__(self, open: bool = True, on_send: Optional[Callable[[str], Any]] = None, fail: bool = False):
		state = WebSocketState.CONNECTED if open else WebSocketState.DISCONNECTED
		self.application_state = state
		self.client_state = state
		self.sent: List[str] = []
		self.on_send = on_send
		self.fail = fail

	async def send_text(self, text: str):
		if self.fail:
			raise RuntimeError("socket is gone")
		self.sent.append(text)
		if self.on_send is not None:
			await self.on_send(text)

	async def close(self, code: int = 1000, reason: str = ""):
		self.application_state = WebSocketState.DISCONNECTED


_NORMAL = object()
_DROP = object()


class FakeClientConnection:
	"""Client side push connection fed from a queue"""

	def __init__(self, messages=()):
		self._inbox: asyncio.Queue = asyncio.Queue()
		for message in messages:
			self._inbox.put_nowait(message)
		self.sent: List[str] = []
		self.close_code: Optional[int] = None

	def push(self, message: str):
		self._inbox.put_nowait(message)

	def drop(self):
		"""Lose the connection without a close frame"""
		self._inbox.put_nowait(_DROP)

	def close_normally(self):
		self._inbox.put_nowait(_NORMAL)

	def __aiter__(self):
		return self

	async def __anext__(self):
		item = await self._inbox.get()
		if item is _NORMAL:
			self.close_code = 1000
			raise StopAsyncIteration
		if item is _DROP:
			self.close_code = 1006
			raise ConnectionClosedError(None, None)
		return item

	async def send(self, text: str):
		self.sent.append(text)

	async def close(self, code: int = 1000, reason: str = ""):
		self.close_code = code
		self._inbox.put_nowait(_NORMAL)


class FakeCatalogApi:
	"""In-memory replacement for CatalogApiClient used by executor tests"""

	def __init__(self):
		self.calls: List[tuple] = []
		self.created: Dict[str, TaskRecord] = {}
		self.patches: List[tuple] = []
		self.remote: List[TaskRecord] = []
		# on_call(path, payload) may return an httpx.Response or raise
		self.on_call: Optional[Callable[[str, Dict[str, Any]], Any]] = None
		self.persist_error: Optional[Exception] = None
		self.list_error: Optional[Exception] = None

	async def create_task_record(self, record: TaskRecord) -> TaskRecord:
		if self.persist_error is not None:
			raise self.persist_error
		self.created[record.id] = record
		return record

	async def patch_task_record(self, task_id: str, updates: Dict[str, Any]):
		self.patches.append((task_id, updates))

	async def list_task_records(self) -> List[TaskRecord]:
		if self.list_error is not None:
			raise self.list_error
		return list(self.remote)

	async def _respond(self, method: str, path: str, payload: Dict[str, Any]) -> httpx.Response:
		self.calls.append((method, path, payload))
		response = None
		if self.on_call is not None:
			response = self.on_call(path, payload)
		if response is None:
			response = httpx.Response(201, json={"id": payload.get("name", "x")})
		response.request = httpx.Request(method, f"http://test{path}")
		return response

	async def create_entity(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
		return await self._respond("POST", path, payload)

	async def create_product(self, fields: Dict[str, Any], image_path: str) -> httpx.Response:
		with open(image_path, "rb"):
			pass
		return await self._respond("POST", "/products", fields)

	async def rename_product(self, product_id: str, payload: Dict[str, Any]) -> httpx.Response:
		return await self._respond("PUT", f"/products/{product_id}/name", payload)

	async def aclose(self):
		pass
