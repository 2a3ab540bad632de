"""
Scan job creation: on demand for one server, and periodic sweeps over the fleet.

The Scheduler only queues jobs. It does not throttle how many run at once; the
fleet-wide ``scan_concurrency`` cap is applied when the agent claims work (see
:meth:`portledger.core.job_store.JobStore.claim_next`).
"""

from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timedelta
from typing import Collection, List, Optional

from sqlalchemy import and_
from sqlmodel import func, select

from portledger.config import settings
from portledger.core.errors import InvalidRequest, TargetNotFound
from portledger.core.guard import Admission, ConcurrencyGuard
from portledger.core.job_store import DONE, SessionFactory
from portledger.core.observability import Metrics, log_event, metrics as default_metrics
from portledger.core.scan_settings import load_scan_settings
from portledger.db.models import ScanJob, ScanSettingsRead, Server, utcnow
from portledger.db.session import get_session

logger = logging.getLogger(__name__)


def _require_target_id(target_id: object) -> int:
    if isinstance(target_id, bool) or not isinstance(target_id, int) or target_id <= 0:
        raise InvalidRequest("server_id must be a positive integer")
    return target_id


class Scheduler:
    def __init__(
        self,
        guard: Optional[ConcurrencyGuard] = None,
        session_factory: SessionFactory = get_session,
        sweep_size: Optional[int] = None,
        recorder: Metrics = default_metrics,
    ) -> None:
        self._session_factory = session_factory
        self.guard = guard or ConcurrencyGuard(session_factory)
        self.sweep_size = sweep_size or settings.sweep_size
        self._metrics = recorder

    def request_scan(self, target_id: int) -> Admission:
        """Queue a scan for one server, or hand back the job already in flight for it."""
        target_id = _require_target_id(target_id)
        with self._session_factory() as session:
            if session.get(Server, target_id) is None:
                raise TargetNotFound(target_id)
        admission = self.guard.admit(target_id, self.sweep_size)
        self._metrics.record_job_created(admission.already_running)
        log_event(
            logger,
            "scan_job_already_running" if admission.already_running else "scan_job_created",
            job_id=admission.job_id,
            target_id=target_id,
        )
        return admission

    def run_periodic_sweep(self, only: Optional[Collection[int]] = None) -> int:
        """Queue every non-excluded server that has no live job; returns how many were queued.

        ``only`` narrows the sweep to a precomputed set of due servers.
        """
        queued = self.guard.admit_many(self.sweep_size, only=only)
        self._metrics.record_sweep(queued)
        log_event(
            logger,
            "periodic_sweep_completed",
            queued=queued,
            restricted=only is not None,
        )
        return queued


class PeriodicSweeper:
    """Timer that decides which servers are due and hands them to the Scheduler."""

    def __init__(
        self,
        scheduler: Scheduler,
        session_factory: SessionFactory = get_session,
        tick_seconds: Optional[float] = None,
    ) -> None:
        self.scheduler = scheduler
        self._session_factory = session_factory
        self.tick_seconds = tick_seconds or settings.sweep_tick_seconds

    def due_targets(self, scan_settings: ScanSettingsRead, now: Optional[datetime] = None) -> List[int]:
        now = now or utcnow()
        interval = timedelta(minutes=scan_settings.scan_interval_minutes)
        last_done = func.max(ScanJob.finished_at)
        with self._session_factory() as session:
            rows = session.exec(
                select(Server.id, last_done)
                .select_from(Server)
                .outerjoin(ScanJob, and_(ScanJob.target_id == Server.id, ScanJob.status == DONE))
                .where(Server.exclude_from_scan.is_(False))
                .group_by(Server.id)
                .order_by(Server.id)
            ).all()
        return [server_id for server_id, finished_at in rows if finished_at is None or now - finished_at >= interval]

    def tick(self, now: Optional[datetime] = None) -> int:
        scan_settings = load_scan_settings(self._session_factory)
        if not scan_settings.scan_enabled:
            logger.debug("Periodic scanning disabled; skipping sweep")
            return 0
        due = self.due_targets(scan_settings, now=now)
        if not due:
            return 0
        return self.scheduler.run_periodic_sweep(only=due)

    async def run_forever(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.tick)
            except asyncio.CancelledError:
                logger.info("Periodic sweep loop cancelled")
                break
            except Exception:
                logger.exception("Periodic sweep failed")
            try:
                await asyncio.sleep(self.tick_seconds)
            except asyncio.CancelledError:
                logger.info("Periodic sweep loop cancelled during sleep")
                break

    def run_blocking(self, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Periodic sweep failed")
            stop.wait(self.tick_seconds)
