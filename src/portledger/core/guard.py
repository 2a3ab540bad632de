"""
Admission control for scan jobs.

A target may have at most one live (queued or scanning) job. Admission is a
single ``INSERT ... SELECT ... WHERE NOT EXISTS`` statement so the check and the
insert cannot be split by a concurrent request; the partial unique index
created in :mod:`portledger.db.migrations` backs it up when two writers race.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Optional

from sqlalchemy import exists, insert, literal
from sqlalchemy import select as sa_select
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from portledger.core.job_store import LIVE_STATUSES, QUEUED, SessionFactory
from portledger.db.models import ScanJob, Server, utcnow
from portledger.db.session import get_session

logger = logging.getLogger(__name__)

_jobs = ScanJob.__table__
_servers = Server.__table__
_INSERT_COLUMNS = [
    "target_id",
    "status",
    "total_units",
    "completed_units",
    "found_units",
    "created_at",
    "updated_at",
]
_MAX_ATTEMPTS = 3


class AdmissionError(RuntimeError):
    pass


@dataclass(frozen=True)
class Admission:
    job_id: int
    already_running: bool


def _live_job_exists(target_column):
    live = _jobs.alias("live_jobs")
    return exists().where(live.c.target_id == target_column, live.c.status.in_(LIVE_STATUSES))


def _job_row(target, total_units: int):
    now = utcnow()
    return (
        target,
        literal(QUEUED),
        literal(total_units),
        literal(0),
        literal(0),
        literal(now, _jobs.c.created_at.type),
        literal(now, _jobs.c.updated_at.type),
    )


class ConcurrencyGuard:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    def admit(self, target_id: int, total_units: int) -> Admission:
        """Create a queued job for ``target_id`` unless one is already live.

        Returns the new job id, or the id of the job that is already in flight.
        """
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                with self._session_factory() as session:
                    source = sa_select(*_job_row(literal(target_id), total_units)).where(
                        ~_live_job_exists(literal(target_id))
                    )
                    result = session.exec(insert(_jobs).from_select(_INSERT_COLUMNS, source))
                    created = result.rowcount > 0
                    job_id = session.exec(
                        select(ScanJob.id).where(
                            ScanJob.target_id == target_id, ScanJob.status.in_(LIVE_STATUSES)
                        )
                    ).first()
            except IntegrityError:
                logger.info("scan_job_admission_race target_id=%s attempt=%s", target_id, attempt)
                continue
            if job_id is not None:
                return Admission(job_id=job_id, already_running=not created)
            # the live job we collided with finished before we could read it back
        raise AdmissionError(f"Could not admit a scan job for target {target_id}")

    def admit_many(self, total_units: int, only: Optional[Collection[int]] = None) -> int:
        """Queue a job for every scan-eligible server without a live job, in one statement."""
        if only is not None and not only:
            return 0
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            source = sa_select(*_job_row(_servers.c.id, total_units)).where(
                _servers.c.exclude_from_scan.is_(False),
                ~_live_job_exists(_servers.c.id),
            )
            if only is not None:
                source = source.where(_servers.c.id.in_(sorted(set(only))))
            try:
                with self._session_factory() as session:
                    result = session.exec(insert(_jobs).from_select(_INSERT_COLUMNS, source))
                    return max(0, result.rowcount or 0)
            except IntegrityError:
                logger.info("scan_sweep_admission_race attempt=%s", attempt)
        raise AdmissionError("Could not queue periodic scan jobs")
