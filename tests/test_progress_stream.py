import asyncio
import json

from portledger.core.job_store import CANCELED, DONE, ERROR, MISSING, SCANNING, JobStore
from portledger.core.observability import metrics
from portledger.core.progress import KEEPALIVE, SNAPSHOT, STREAM_ERROR, ProgressPublisher, encode_sse
from portledger.core.scheduler import Scheduler


class _FastPublisher(ProgressPublisher):
    min_interval = 0.0


def _publisher(store=None, **kwargs) -> ProgressPublisher:
    options = {"interval": 0.01, "keepalive": 60.0, "disconnect_poll": 0.005, "read_retries": 2, "retry_backoff": 0.0}
    options.update(kwargs)
    return _FastPublisher(store or JobStore(), **options)


async def _collect(stream, limit: int = 50, on_message=None):
    messages = []
    async for message in stream:
        messages.append(message)
        if on_message is not None:
            on_message(len(messages), message)
        if len(messages) >= limit:
            await stream.aclose()
            break
    return messages


def test_snapshot_for_existing_and_missing_job(make_server):
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    publisher = _publisher()

    snap = publisher.snapshot(job_id)
    assert snap["type"] == SNAPSHOT
    assert snap["job_id"] == job_id
    assert snap["status"] == "queued"
    assert snap["finished_at"] is None

    assert publisher.snapshot(999) == {"type": MISSING, "job_id": 999, "status": MISSING}


def test_active_lists_only_live_jobs(make_server):
    scheduler = Scheduler()
    store = JobStore()
    live = scheduler.request_scan(make_server("alpha")).job_id
    finished = scheduler.request_scan(make_server("beta")).job_id
    store.finish(finished, DONE)

    assert [row["job_id"] for row in _publisher(store).active()] == [live]


def test_subscribe_to_missing_job_emits_once_and_closes():
    messages = asyncio.run(_collect(_publisher().subscribe(4040)))

    assert messages == [{"type": MISSING, "job_id": 4040, "status": MISSING}]
    snap = metrics.snapshot()["streams"]
    assert snap["opened"] == 1
    assert snap["closed"] == 1
    assert snap["active"] == 0


def test_subscribe_to_finished_job_emits_terminal_snapshot_only(make_server):
    store = JobStore()
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    store.finish(job_id, ERROR, error_detail="connection refused")

    messages = asyncio.run(_collect(_publisher(store).subscribe(job_id)))

    assert len(messages) == 1
    assert messages[0]["status"] == ERROR
    assert messages[0]["error_detail"] == "connection refused"
    assert "stream_error" not in messages[0]


def test_subscription_follows_agent_to_completion(make_server):
    store = JobStore()
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    steps = [(8192, 0), (16384, 1), (32768, 1)]

    def agent_step(count, message):
        if message["type"] != SNAPSHOT:
            return
        if steps:
            completed, found = steps.pop(0)
            store.report_progress(job_id, completed, found)
        else:
            store.finish(job_id, DONE, found_units=1)

    messages = asyncio.run(_collect(_publisher(store).subscribe(job_id), on_message=agent_step))
    snapshots = [m for m in messages if m["type"] == SNAPSHOT]

    completed = [m["completed_units"] for m in snapshots]
    assert completed == sorted(completed)
    assert all(value <= 65535 for value in completed)
    assert 32768 in completed
    assert snapshots[0]["status"] == "queued"
    assert snapshots[-1]["status"] == DONE
    assert snapshots[-1]["completed_units"] == 65535
    assert messages[-1] is snapshots[-1]
    assert [m["status"] for m in snapshots].count(DONE) == 1


def test_subscription_stops_after_cancellation(make_server):
    store = JobStore()
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    store.report_progress(job_id, 100, 0)

    def cancel_after_first(count, message):
        if count == 1:
            store.cancel(job_id)

    messages = asyncio.run(_collect(_publisher(store).subscribe(job_id), on_message=cancel_after_first))

    assert [m["status"] for m in messages] == [SCANNING, CANCELED]


def test_subscription_emits_missing_when_job_disappears(make_server):
    from portledger.db.models import ScanJob
    from portledger.db.session import get_session

    store = JobStore()
    job_id = Scheduler().request_scan(make_server("alpha")).job_id

    def delete_job(count, message):
        if count == 1:
            with get_session() as session:
                session.delete(session.get(ScanJob, job_id))

    messages = asyncio.run(_collect(_publisher(store).subscribe(job_id), on_message=delete_job))

    assert [m["type"] for m in messages] == [SNAPSHOT, MISSING]


def test_unchanged_job_is_deduplicated_with_keepalives(make_server):
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    publisher = _publisher(keepalive=0.02)

    messages = asyncio.run(_collect(publisher.subscribe(job_id), limit=4))

    assert messages[0]["type"] == SNAPSHOT
    assert all(m["type"] == KEEPALIVE for m in messages[1:])
    assert metrics.snapshot()["streams"]["active"] == 0


def test_disconnect_ends_subscription_promptly(make_server):
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    publisher = _publisher(interval=30.0)
    state = {"gone": False}

    async def is_disconnected() -> bool:
        return state["gone"]

    async def run():
        stream = publisher.subscribe(job_id, is_disconnected)
        first = await stream.__anext__()
        state["gone"] = True
        rest = await asyncio.wait_for(_collect(stream), timeout=1.0)
        return [first] + rest

    messages = asyncio.run(run())

    assert len(messages) == 1
    assert messages[0]["status"] == "queued"
    snap = metrics.snapshot()["streams"]
    assert snap["closed"] == 1
    assert snap["active"] == 0


def test_disconnect_before_first_read_emits_nothing(make_server):
    job_id = Scheduler().request_scan(make_server("alpha")).job_id

    async def gone() -> bool:
        return True

    assert asyncio.run(_collect(_publisher().subscribe(job_id, gone))) == []


class _FlakyStore:
    def __init__(self, store: JobStore, failures: int) -> None:
        self.store = store
        self.failures = failures
        self.calls = 0

    def get(self, job_id):
        self.calls += 1
        if self.calls > 1 and self.failures > 0:
            self.failures -= 1
            raise RuntimeError("database is locked")
        return self.store.get(job_id)


def test_transient_read_failure_is_retried(make_server):
    store = JobStore()
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    flaky = _FlakyStore(store, failures=2)

    def finish_after_first(count, message):
        if count == 1:
            store.finish(job_id, DONE)

    messages = asyncio.run(_collect(_publisher(flaky).subscribe(job_id), on_message=finish_after_first))

    assert [m["status"] for m in messages] == ["queued", DONE]


def test_persistent_read_failure_reports_stream_error(make_server):
    job_id = Scheduler().request_scan(make_server("alpha")).job_id
    flaky = _FlakyStore(JobStore(), failures=100)

    messages = asyncio.run(_collect(_publisher(flaky, read_retries=2).subscribe(job_id)))

    assert [m["type"] for m in messages] == [SNAPSHOT, STREAM_ERROR]
    error = messages[-1]
    assert "status" not in error
    assert error["stream_error"]["retryable"] is True
    assert flaky.calls == 1 + 3
    assert metrics.snapshot()["streams"]["transport_errors"] == 1


def test_ordering_guard_never_regresses():
    from datetime import datetime

    from portledger.db.models import ScanJobRead

    base = dict(
        job_id=1,
        target_id=1,
        total_units=100,
        found_units=2,
        error_detail=None,
        created_at=datetime(2024, 1, 1),
        started_at=None,
        finished_at=None,
    )
    last = ScanJobRead(status=SCANNING, completed_units=50, **base)

    assert ProgressPublisher._ordered(ScanJobRead(status="queued", completed_units=60, **base), last) is None
    clamped = ProgressPublisher._ordered(ScanJobRead(status=SCANNING, completed_units=40, **base), last)
    assert clamped.completed_units == 50


def test_encode_sse():
    assert encode_sse({"type": KEEPALIVE, "job_id": 1}) == ": keepalive\n\n"
    frame = encode_sse({"type": MISSING, "job_id": 1, "status": MISSING})
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):]) == {"type": MISSING, "job_id": 1, "status": MISSING}


def test_publisher_never_ticks_faster_than_once_a_second():
    assert ProgressPublisher(JobStore(), interval=0.01).interval == 1.0
    assert ProgressPublisher(JobStore(), interval=2.5).interval == 2.5
