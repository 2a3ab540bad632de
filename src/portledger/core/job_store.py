"""
Durable scan job records and their state machine.

Jobs are created ``queued`` (see :mod:`portledger.core.guard`), advanced to
``scanning`` by the agent and finish exactly once in ``done``, ``error`` or
``canceled``. Every mutation here is a single conditional UPDATE keyed on the
job still being live, so the first terminal transition wins no matter which
writer (agent or cancellation) arrives first.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from typing import Callable, ContextManager, Dict, List, Optional

from sqlalchemy import case, func, literal, update
from sqlalchemy import select as sa_select
from sqlmodel import Session, select

from portledger.core.errors import InvalidRequest
from portledger.db.models import ScanJob, ScanJobRead, utcnow
from portledger.db.session import get_session

logger = logging.getLogger(__name__)

QUEUED = "queued"
SCANNING = "scanning"
DONE = "done"
ERROR = "error"
CANCELED = "canceled"
# reported for ids with no stored row, never persisted
MISSING = "missing"

LIVE_STATUSES = (QUEUED, SCANNING)
TERMINAL_STATUSES = (DONE, ERROR, CANCELED)
STATUS_RANK = {QUEUED: 0, SCANNING: 1, DONE: 2, ERROR: 2, CANCELED: 2}

SessionFactory = Callable[[], ContextManager[Session]]

_jobs = ScanJob.__table__
# queued rows a claimant tries before giving up on a contended queue
_CLAIM_CANDIDATES = 5


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def _live(job_id: int):
    return (
        _jobs.c.id == job_id,
        _jobs.c.status.in_(LIVE_STATUSES),
        _jobs.c.finished_at.is_(None),
    )


def _advance(column, value: int):
    """SQL expression moving ``column`` up to ``value`` (capped at total_units), never down."""
    capped = case((_jobs.c.total_units < value, _jobs.c.total_units), else_=literal(value))
    return case((column < capped, capped), else_=column)


def _check_count(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidRequest(f"{name} must be a non-negative integer")
    return value


class JobStore:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> SessionFactory:
        return self._session_factory

    def _scope(self, session: Optional[Session]) -> ContextManager[Session]:
        """Use the caller's session when one is passed so writes share its transaction."""
        return nullcontext(session) if session is not None else self._session_factory()

    def get(self, job_id: int, session: Optional[Session] = None) -> Optional[ScanJobRead]:
        with self._scope(session) as active:
            row = active.get(ScanJob, job_id)
            return ScanJobRead.from_row(row) if row else None

    def list_active(self) -> List[ScanJobRead]:
        with self._session_factory() as session:
            rows = session.exec(
                select(ScanJob)
                .where(ScanJob.status.in_(LIVE_STATUSES))
                .order_by(ScanJob.created_at.desc(), ScanJob.id.desc())
            ).all()
            return [ScanJobRead.from_row(row) for row in rows]

    def status_counts(self) -> Dict[str, int]:
        with self._session_factory() as session:
            rows = session.exec(select(ScanJob.status, func.count()).group_by(ScanJob.status)).all()
            return {status: count for status, count in rows}

    def claim_next(self, max_scanning: Optional[int] = None) -> Optional[ScanJobRead]:
        """Atomically move the oldest queued job to scanning.

        With ``max_scanning`` set, the claim only succeeds while fewer than that
        many jobs are scanning fleet-wide; the count is evaluated inside the same
        UPDATE so concurrent claimants cannot overshoot it.
        """
        now = utcnow()
        with self._session_factory() as session:
            for candidate in self._queued_candidates(session, _CLAIM_CANDIDATES):
                stmt = update(_jobs).where(_jobs.c.id == candidate, _jobs.c.status == QUEUED)
                if max_scanning is not None:
                    others = _jobs.alias("scanning_jobs")
                    scanning = (
                        sa_select(func.count(others.c.id)).where(others.c.status == SCANNING).scalar_subquery()
                    )
                    stmt = stmt.where(scanning < max_scanning)
                result = session.exec(stmt.values(status=SCANNING, started_at=now, updated_at=now))
                if result.rowcount > 0:
                    return ScanJobRead.from_row(session.get(ScanJob, candidate))
                # another claimant took it first, or the fleet is at capacity
                logger.debug("scan_claim_missed job_id=%s", candidate)
            return None

    def _queued_candidates(self, session: Session, limit: int) -> List[int]:
        return list(
            session.exec(
                select(ScanJob.id)
                .where(ScanJob.status == QUEUED)
                .order_by(ScanJob.created_at, ScanJob.id)
                .limit(limit)
            ).all()
        )

    def report_progress(self, job_id: int, completed_units: int, found_units: int) -> bool:
        completed = _check_count("completed_units", completed_units)
        found = _check_count("found_units", found_units)
        now = utcnow()
        with self._session_factory() as session:
            result = session.exec(
                update(_jobs)
                .where(*_live(job_id))
                .values(
                    status=SCANNING,
                    started_at=func.coalesce(_jobs.c.started_at, now),
                    completed_units=_advance(_jobs.c.completed_units, completed),
                    found_units=_advance(_jobs.c.found_units, found),
                    updated_at=now,
                )
            )
            accepted = result.rowcount > 0
        if not accepted:
            logger.debug("scan_progress_rejected job_id=%s", job_id)
        return accepted

    def finish(
        self,
        job_id: int,
        status: str,
        *,
        found_units: Optional[int] = None,
        error_detail: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> bool:
        """Record the agent's terminal outcome. Returns False if the job was already terminal."""
        if status not in (DONE, ERROR):
            raise InvalidRequest(f"agent cannot finish a job as {status!r}")
        now = utcnow()
        values: Dict[str, object] = {"status": status, "finished_at": now, "updated_at": now}
        if status == DONE:
            values["completed_units"] = _jobs.c.total_units
            values["error_detail"] = None
        else:
            values["error_detail"] = (error_detail or "scan failed").strip()[:2000]
        if found_units is not None:
            values["found_units"] = _advance(_jobs.c.found_units, _check_count("found_units", found_units))
        with self._scope(session) as active:
            result = active.exec(update(_jobs).where(*_live(job_id)).values(**values))
            return result.rowcount > 0

    def cancel(self, job_id: int) -> bool:
        now = utcnow()
        with self._session_factory() as session:
            result = session.exec(
                update(_jobs).where(*_live(job_id)).values(status=CANCELED, finished_at=now, updated_at=now)
            )
            return result.rowcount > 0
