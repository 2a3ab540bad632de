"""
Write side used by the external scan agent.

The agent claims queued work, reports monotonically increasing progress and
finishes each job once. Writes against a job that is already terminal (for
example one the operator canceled) are refused and reported back as not
accepted so the agent can stop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from portledger.core.errors import InvalidRequest
from portledger.core.job_store import DONE, ERROR, MISSING, JobStore
from portledger.core.observability import Metrics, log_event, metrics as default_metrics
from portledger.core.reconciler import ReconcileSummary, StalenessReconciler, normalize_port_numbers
from portledger.core.scan_settings import load_scan_settings
from portledger.db.models import ScanJobRead, Server

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Claim:
    job: ScanJobRead
    target_ip: Optional[str]


@dataclass(frozen=True)
class WriteOutcome:
    job_id: int
    accepted: bool
    status: str
    reconciled: Optional[ReconcileSummary] = None


class AgentChannel:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        reconciler: Optional[StalenessReconciler] = None,
        recorder: Metrics = default_metrics,
    ) -> None:
        self.store = store or JobStore()
        self.reconciler = reconciler or StalenessReconciler(self.store.session_factory)
        self._metrics = recorder

    def _status(self, job_id: int) -> str:
        job = self.store.get(job_id)
        return job.status if job else MISSING

    def claim(self) -> Optional[Claim]:
        scan_settings = load_scan_settings(self.store.session_factory)
        job = self.store.claim_next(max_scanning=scan_settings.scan_concurrency)
        if job is None:
            return None
        with self.store.session_factory() as session:
            server = session.get(Server, job.target_id)
            target_ip = server.ip if server else None
        log_event(logger, "scan_job_claimed", job_id=job.job_id, target_id=job.target_id)
        return Claim(job=job, target_ip=target_ip)

    def progress(self, job_id: int, completed_units: int, found_units: int) -> WriteOutcome:
        accepted = self.store.report_progress(job_id, completed_units, found_units)
        return WriteOutcome(job_id=job_id, accepted=accepted, status=self._status(job_id))

    def complete(self, job_id: int, open_ports: Iterable[int]) -> WriteOutcome:
        ports = normalize_port_numbers(open_ports)
        summary = None
        # done and the port bookkeeping commit together or not at all
        with self.store.session_factory() as session:
            accepted = self.store.finish(job_id, DONE, found_units=len(ports), session=session)
            job = self.store.get(job_id, session=session)
            if accepted and job is not None:
                summary = self.reconciler.apply_completion(job, ports, session=session)
        if not accepted or job is None:
            log_event(logger, "scan_job_finish_rejected", job_id=job_id, status=job.status if job else MISSING)
            return WriteOutcome(job_id=job_id, accepted=False, status=job.status if job else MISSING)
        self._metrics.record_job_finished(DONE)
        log_event(logger, "scan_job_done", job_id=job_id, target_id=job.target_id, open_ports=len(ports))
        return WriteOutcome(job_id=job_id, accepted=True, status=job.status, reconciled=summary)

    def fail(self, job_id: int, error: str) -> WriteOutcome:
        if not error or not error.strip():
            raise InvalidRequest("error is required")
        accepted = self.store.finish(job_id, ERROR, error_detail=error)
        status = self._status(job_id)
        if accepted:
            self._metrics.record_job_finished(ERROR)
            log_event(logger, "scan_job_failed", job_id=job_id, error=error)
        return WriteOutcome(job_id=job_id, accepted=accepted, status=status)
