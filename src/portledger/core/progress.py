"""
Read side of scan jobs: point-in-time snapshots and long-lived subscriptions.

A subscription emits the current snapshot immediately and then re-reads the
job every ``interval`` seconds, emitting only when something changed (with a
keepalive while idle). It ends after the first terminal or ``missing`` message,
after a storage read keeps failing (``stream_error``), or when the consumer
disconnects; every exit path releases the tick timer and the disconnect watcher.

Messages are plain dicts tagged by ``type``:

* ``snapshot``     - the job's fields, including its own ``status``
* ``missing``      - the job id does not exist (``status`` is ``missing``)
* ``stream_error`` - transport failure, reported under ``stream_error`` and
  never as a job status
* ``keepalive``    - nothing changed since the last emitted snapshot
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from portledger.config import settings
from portledger.core.job_store import MISSING, STATUS_RANK, JobStore, is_terminal
from portledger.core.observability import Metrics, log_event, metrics as default_metrics
from portledger.db.models import ScanJobRead

logger = logging.getLogger(__name__)

SNAPSHOT = "snapshot"
KEEPALIVE = "keepalive"
STREAM_ERROR = "stream_error"

DisconnectProbe = Callable[[], Awaitable[bool]]


class StreamReadError(RuntimeError):
    pass


def snapshot_message(job: ScanJobRead) -> Dict[str, Any]:
    payload = job.model_dump(mode="json")
    payload["type"] = SNAPSHOT
    return payload


def missing_message(job_id: int) -> Dict[str, Any]:
    return {"type": MISSING, "job_id": job_id, "status": MISSING}


def stream_error_message(job_id: int, error: str) -> Dict[str, Any]:
    return {"type": STREAM_ERROR, "job_id": job_id, "stream_error": {"message": error, "retryable": True}}


def encode_sse(message: Dict[str, Any]) -> str:
    if message.get("type") == KEEPALIVE:
        return ": keepalive\n\n"
    return f"data: {json.dumps(message)}\n\n"


class ProgressPublisher:
    # subscribers are never ticked faster than this, whatever the caller asks for
    min_interval = 1.0

    def __init__(
        self,
        store: Optional[JobStore] = None,
        *,
        interval: Optional[float] = None,
        keepalive: Optional[float] = None,
        disconnect_poll: Optional[float] = None,
        read_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        recorder: Metrics = default_metrics,
    ) -> None:
        self.store = store or JobStore()
        requested = interval if interval is not None else settings.stream_interval_seconds
        self.interval = max(self.min_interval, requested)
        self.keepalive = keepalive if keepalive is not None else settings.stream_keepalive_seconds
        self.disconnect_poll = (
            disconnect_poll if disconnect_poll is not None else settings.stream_disconnect_poll_seconds
        )
        self.read_retries = read_retries if read_retries is not None else settings.stream_read_retries
        self.retry_backoff = retry_backoff if retry_backoff is not None else settings.stream_retry_backoff_seconds
        self._metrics = recorder

    def snapshot(self, job_id: int) -> Dict[str, Any]:
        job = self.store.get(job_id)
        return snapshot_message(job) if job else missing_message(job_id)

    def active(self) -> List[Dict[str, Any]]:
        return [snapshot_message(job) for job in self.store.list_active()]

    async def subscribe(
        self, job_id: int, is_disconnected: Optional[DisconnectProbe] = None
    ) -> AsyncIterator[Dict[str, Any]]:
        loop = asyncio.get_running_loop()
        self._metrics.record_stream_opened()
        log_event(logger, "scan_stream_opened", job_id=job_id)
        transport_error = False
        reason = "disconnected"
        last: Optional[ScanJobRead] = None
        last_fingerprint: Optional[str] = None
        last_emit = loop.time()
        try:
            while True:
                if is_disconnected is not None and await is_disconnected():
                    break
                try:
                    job = await self._read(job_id)
                except StreamReadError as exc:
                    transport_error = True
                    reason = STREAM_ERROR
                    yield stream_error_message(job_id, str(exc))
                    return
                if job is None:
                    reason = MISSING
                    yield missing_message(job_id)
                    return
                job = self._ordered(job, last)
                if job is not None:
                    fingerprint = job.model_dump_json()
                    if fingerprint != last_fingerprint:
                        last, last_fingerprint, last_emit = job, fingerprint, loop.time()
                        yield snapshot_message(job)
                        if is_terminal(job.status):
                            reason = job.status
                            return
                    elif loop.time() - last_emit >= self.keepalive:
                        last_emit = loop.time()
                        yield {"type": KEEPALIVE, "job_id": job_id}
                if await self._wait_tick(is_disconnected):
                    break
        finally:
            self._metrics.record_stream_closed(transport_error)
            log_event(logger, "scan_stream_closed", job_id=job_id, reason=reason)

    async def _read(self, job_id: int) -> Optional[ScanJobRead]:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(self.store.get, job_id)
            except Exception as exc:  # pylint: disable=broad-except
                if attempt >= self.read_retries:
                    logger.exception("scan_stream_read_failed job_id=%s", job_id)
                    raise StreamReadError("Failed to read scan status") from exc
                delay = self.retry_backoff * (2**attempt)
                attempt += 1
                logger.warning("scan_stream_read_retry job_id=%s attempt=%s error=%s", job_id, attempt, exc)
                await asyncio.sleep(delay)

    @staticmethod
    def _ordered(job: ScanJobRead, last: Optional[ScanJobRead]) -> Optional[ScanJobRead]:
        """Hold the per-subscription ordering: status never regresses, counters never drop."""
        if last is None:
            return job
        if STATUS_RANK.get(job.status, 0) < STATUS_RANK.get(last.status, 0):
            return None
        updates: Dict[str, int] = {}
        if job.completed_units < last.completed_units:
            updates["completed_units"] = last.completed_units
        if job.found_units < last.found_units:
            updates["found_units"] = last.found_units
        return job.model_copy(update=updates) if updates else job

    async def _wait_tick(self, is_disconnected: Optional[DisconnectProbe]) -> bool:
        """Sleep one interval or until the consumer goes away, whichever comes first."""
        if is_disconnected is None:
            await asyncio.sleep(self.interval)
            return False
        sleeper = asyncio.ensure_future(asyncio.sleep(self.interval))
        watcher = asyncio.ensure_future(self._watch_disconnect(is_disconnected))
        try:
            done, _ = await asyncio.wait({sleeper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, watcher):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, watcher, return_exceptions=True)
        if watcher not in done:
            return False
        # a probe that blows up means the client can no longer be reached
        return watcher.exception() is not None or bool(watcher.result())

    async def _watch_disconnect(self, is_disconnected: DisconnectProbe) -> bool:
        while True:
            if await is_disconnected():
                return True
            await asyncio.sleep(self.disconnect_poll)
