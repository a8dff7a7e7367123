import asyncio
import json

import pytest

from catalog_tasks.client.channel import ReconciliationChannel
from catalog_tasks.client.executor import TaskExecutor
from catalog_tasks.models.task import TaskStatus, TaskType
from catalog_tasks.schemas.task import TaskRecord

from fakes import FakeClientConnection, wait_until


class Connector:
	"""Hands out prepared connections; an exception in the list is raised instead"""

	def __init__(self, *outcomes):
		self.outcomes = list(outcomes)
		self.urls = []

	async def __call__(self, url):
		self.urls.append(url)
		outcome = self.outcomes.pop(0) if self.outcomes else FakeClientConnection()
		if isinstance(outcome, Exception):
			raise outcome
		return outcome


def make_channel(executor: TaskExecutor, connector: Connector, **kwargs) -> ReconciliationChannel:
	return ReconciliationChannel(
		executor,
		"ws://test/api/v1/ws",
		initial_delay=kwargs.pop("initial_delay", 0.01),
		max_delay=kwargs.pop("max_delay", 0.05),
		connect=connector,
		**kwargs,
	)


@pytest.mark.asyncio
async def test_reconnects_after_abnormal_close(executor: TaskExecutor):
	first, second = FakeClientConnection(), FakeClientConnection()
	channel = make_channel(executor, Connector(first, second))
	channel.start()
	try:
		await wait_until(lambda: channel.connected)
		first.drop()

		await wait_until(lambda: channel.connect_count == 2 and channel.connected)

		assert channel.last_close_code == 1006
		assert channel.last_delay <= channel.max_delay
		# a successful connect resets the backoff
		assert channel.next_delay == channel.initial_delay
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_backoff_doubles_up_to_the_cap(executor: TaskExecutor):
	channel = make_channel(executor, Connector(), initial_delay=0.001, max_delay=0.005)

	delays = []
	for _ in range(6):
		await channel._backoff()
		delays.append(channel.last_delay)

	assert delays == pytest.approx([0.001, 0.002, 0.004, 0.005, 0.005, 0.005])


@pytest.mark.asyncio
async def test_failed_connects_are_retried(executor: TaskExecutor):
	connection = FakeClientConnection()
	connector = Connector(OSError("refused"), OSError("refused"), connection)
	channel = make_channel(executor, connector)
	channel.start()
	try:
		await wait_until(lambda: channel.connected)

		assert len(connector.urls) == 3
		assert channel.connect_count == 1
		assert channel.last_delay == pytest.approx(0.02)
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_server_normal_close_reconnects(executor: TaskExecutor):
	record = TaskRecord(type=TaskType.CREATE_BRAND, payload={"name": "Acme"}, status=TaskStatus.PROCESSING)
	executor.state.prepend(record)
	first, second = FakeClientConnection(), FakeClientConnection()
	channel = make_channel(executor, Connector(first, second))
	channel.start()
	try:
		await wait_until(lambda: channel.connected)
		first.close_normally()
		await wait_until(lambda: channel.connect_count == 2 and channel.connected)

		second.push(json.dumps({
			"type": "task-status-update",
			"payload": {"taskId": record.id, "status": "success", "data": {"id": "acme"}},
		}))
		await wait_until(lambda: executor.state.get(record.id).status == TaskStatus.SUCCESS)

		assert channel.last_close_code == 1000
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_failed_sync_keeps_channel_alive(executor: TaskExecutor, fake_api):
	fake_api.list_error = ValueError("Expecting value: line 1 column 1 (char 0)")
	record = TaskRecord(type=TaskType.CREATE_BRAND, payload={"name": "Acme"}, status=TaskStatus.PROCESSING)
	executor.state.prepend(record)
	connection = FakeClientConnection()
	channel = make_channel(executor, Connector(connection))
	task = channel.start()
	try:
		await wait_until(lambda: channel.connected)
		connection.push(json.dumps({
			"type": "task-status-update",
			"payload": {"taskId": record.id, "status": "error", "error": "boom"},
		}))

		await wait_until(lambda: executor.state.get(record.id).status == TaskStatus.ERROR)
		assert not task.done()
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_unexpected_failure_reconnects(executor: TaskExecutor, monkeypatch):
	calls = []

	async def broken_sync():
		calls.append(1)
		if len(calls) == 1:
			raise RuntimeError("sync blew up")
		return 0

	monkeypatch.setattr(executor, "sync_from_backend", broken_sync)
	first, second = FakeClientConnection(), FakeClientConnection()
	channel = make_channel(executor, Connector(first, second))
	task = channel.start()
	try:
		await wait_until(lambda: channel.connect_count == 2 and channel.connected)

		assert channel.last_close_code == 1006
		assert first.close_code == 1000
		assert not task.done()
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_explicit_close_sends_normal_closure(executor: TaskExecutor):
	connection = FakeClientConnection()
	channel = make_channel(executor, Connector(connection))
	task = channel.start()
	await wait_until(lambda: channel.connected)

	await channel.close()

	assert connection.close_code == 1000
	assert task.done()
	assert channel.connected is False


@pytest.mark.asyncio
async def test_health_check_is_acknowledged(executor: TaskExecutor):
	connection = FakeClientConnection()
	channel = make_channel(executor, Connector(connection))
	channel.start()
	try:
		await wait_until(lambda: channel.connected)
		connection.push(json.dumps({"type": "health-check"}))

		await wait_until(lambda: connection.sent)
		assert json.loads(connection.sent[0]) == {"type": "health-ack"}
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_status_update_reaches_executor(executor: TaskExecutor):
	record = TaskRecord(type=TaskType.CREATE_BRAND, payload={"name": "Acme"}, status=TaskStatus.PROCESSING)
	executor.state.prepend(record)
	connection = FakeClientConnection()
	channel = make_channel(executor, Connector(connection))
	channel.start()
	try:
		await wait_until(lambda: channel.connected)
		connection.push(json.dumps({
			"type": "task-status-update",
			"payload": {"taskId": record.id, "status": "success", "data": {"id": "acme"}},
		}))

		await wait_until(lambda: executor.state.get(record.id).status == TaskStatus.SUCCESS)
		assert executor.state.get(record.id).result == {"id": "acme"}
	finally:
		await channel.close()


@pytest.mark.asyncio
async def test_garbage_is_ignored(executor: TaskExecutor):
	record = TaskRecord(type=TaskType.CREATE_BRAND, payload={"name": "Acme"}, status=TaskStatus.PROCESSING)
	executor.state.prepend(record)
	channel = make_channel(executor, Connector())

	await channel.handle_message("not json")
	await channel.handle_message(json.dumps([1, 2, 3]))
	await channel.handle_message(json.dumps({"type": "something-new", "payload": {}}))
	await channel.handle_message(json.dumps({"type": "task-status-update", "payload": {"status": "success"}}))
	await channel.handle_message(json.dumps({"type": "task-status-update", "payload": {"taskId": record.id, "status": "done"}}))

	assert executor.state.get(record.id).status == TaskStatus.PROCESSING


@pytest.mark.asyncio
async def test_sync_on_connect_recovers_missed_outcome(executor: TaskExecutor, fake_api):
	record = TaskRecord(type=TaskType.CREATE_BRAND, payload={"name": "Acme"}, status=TaskStatus.PROCESSING)
	executor.state.prepend(record)
	fake_api.remote = [record.model_copy(update={"status": TaskStatus.ERROR, "error": "Brand name already exists."})]
	channel = make_channel(executor, Connector(FakeClientConnection()))
	channel.start()
	try:
		await wait_until(lambda: executor.state.get(record.id).status == TaskStatus.ERROR)
		assert executor.state.get(record.id).error == "Brand name already exists."
	finally:
		await channel.close()
