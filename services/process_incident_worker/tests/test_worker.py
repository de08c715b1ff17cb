from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest

import scripts.worker as worker_module
from libs.config import Settings
from libs.constants import COMMAND_CREATE_OR_REPLACE, HEADER_ERROR, HEADER_RETRY_COUNT
from libs.models import Outcome
from scripts.worker import IncidentWorker


class DummyMessage(SimpleNamespace):
    def __init__(self, body: bytes, headers=None):
        super().__init__(body=body, headers=headers or {}, processed=False, rejected=None)

    @asynccontextmanager
    async def process(self, requeue: bool = False):
        try:
            yield
        except Exception:
            self.rejected = {"requeue": requeue}
            raise
        self.processed = True


class StubController:
    def __init__(self, outcome: Outcome):
        self.outcome = outcome
        self.seen = []

    async def handle_message(self, payload, *, cancel=None, deadline=None):
        self.seen.append((payload, cancel, deadline))
        return self.outcome


@pytest.fixture
def published(monkeypatch):
    sent = []

    async def fake_retry(channel, prefix, body, delay_ms, headers=None):
        sent.append(("retry", prefix, body, delay_ms, dict(headers or {})))

    async def fake_dlq(channel, prefix, body, headers=None):
        sent.append(("dlq", prefix, body, dict(headers or {})))

    monkeypatch.setattr(worker_module, "schedule_retry", fake_retry)
    monkeypatch.setattr(worker_module, "publish_to_dlq", fake_dlq)
    return sent


def make_worker(outcome: Outcome, **overrides) -> IncidentWorker:
    settings = Settings(
        queue_prefix="test",
        max_retries=2,
        retry_delays_ms=[100, 200],
        message_deadline_seconds=7,
        **overrides,
    )
    worker = IncidentWorker(StubController(outcome), settings)
    worker._channel = object()  # type: ignore[assignment]
    return worker


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "outcome",
    [Outcome.handled(COMMAND_CREATE_OR_REPLACE), Outcome.ignored("decode: bad json")],
)
async def test_handled_and_ignored_messages_are_acked_only(published, outcome):
    worker = make_worker(outcome)
    message = DummyMessage(b"{}")

    await worker._on_message(message)  # type: ignore[arg-type]

    assert message.processed
    assert published == []


@pytest.mark.asyncio
async def test_controller_receives_body_stop_event_and_deadline(published):
    worker = make_worker(Outcome.handled(COMMAND_CREATE_OR_REPLACE))
    await worker._on_message(DummyMessage(b'{"msg_version": 2}'))  # type: ignore[arg-type]

    payload, cancel, deadline = worker.controller.seen[0]
    assert payload == b'{"msg_version": 2}'
    assert cancel is worker._stopping
    assert deadline == 7


@pytest.mark.asyncio
async def test_failed_message_is_scheduled_for_retry(published):
    worker = make_worker(Outcome.failed("stop_process_instance failed: down", COMMAND_CREATE_OR_REPLACE))
    message = DummyMessage(b"payload", headers={"traceparent": "x"})

    await worker._on_message(message)  # type: ignore[arg-type]

    assert message.processed
    kind, prefix, body, delay, headers = published[0]
    assert (kind, prefix, body, delay) == ("retry", "test", b"payload", 100)
    assert headers[HEADER_RETRY_COUNT] == 1
    assert headers["traceparent"] == "x"


@pytest.mark.asyncio
async def test_retry_delay_follows_retry_count(published):
    worker = make_worker(Outcome.failed("boom", COMMAND_CREATE_OR_REPLACE))
    await worker._on_message(DummyMessage(b"p", headers={HEADER_RETRY_COUNT: 1}))  # type: ignore[arg-type]

    _, _, _, delay, headers = published[0]
    assert delay == 200
    assert headers[HEADER_RETRY_COUNT] == 2


@pytest.mark.asyncio
async def test_exhausted_retries_go_to_dlq_with_reason(published):
    worker = make_worker(Outcome.failed("upsert failed: gone", COMMAND_CREATE_OR_REPLACE))
    await worker._on_message(DummyMessage(b"p", headers={HEADER_RETRY_COUNT: 2}))  # type: ignore[arg-type]

    assert len(published) == 1
    kind, prefix, body, headers = published[0]
    assert (kind, prefix, body) == ("dlq", "test", b"p")
    assert headers[HEADER_ERROR] == "upsert failed: gone"


@pytest.mark.asyncio
async def test_redeliver_requires_open_channel(published):
    worker = make_worker(Outcome.failed("boom"))
    worker._channel = None
    with pytest.raises(RuntimeError):
        await worker._redeliver(DummyMessage(b"p"), Outcome.failed("boom"))  # type: ignore[arg-type]


def test_stop_sets_event():
    worker = make_worker(Outcome.handled(COMMAND_CREATE_OR_REPLACE))
    worker.stop()
    assert worker._stopping.is_set()


@pytest.mark.asyncio
async def test_failed_republish_rejects_delivery(monkeypatch):
    async def broken_retry(channel, prefix, body, delay_ms, headers=None):
        raise ConnectionError("channel closed")

    monkeypatch.setattr(worker_module, "schedule_retry", broken_retry)
    worker = make_worker(Outcome.failed("boom", COMMAND_CREATE_OR_REPLACE))
    message = DummyMessage(b"p")

    with pytest.raises(ConnectionError):
        await worker._on_message(message)  # type: ignore[arg-type]

    assert not message.processed
    assert message.rejected == {"requeue": False}
