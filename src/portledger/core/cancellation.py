from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from portledger.core.errors import InvalidRequest
from portledger.core.job_store import MISSING, JobStore
from portledger.core.observability import Metrics, log_event, metrics as default_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancelOutcome:
    job_id: int
    canceled: bool
    status: str


class CancellationController:
    """Marks live jobs canceled; the agent is expected to notice and stop."""

    def __init__(self, store: Optional[JobStore] = None, recorder: Metrics = default_metrics) -> None:
        self.store = store or JobStore()
        self._metrics = recorder

    def cancel(self, job_id: int) -> CancelOutcome:
        if isinstance(job_id, bool) or not isinstance(job_id, int) or job_id <= 0:
            raise InvalidRequest("job_id must be a positive integer")
        applied = self.store.cancel(job_id)
        current = self.store.get(job_id)
        status = current.status if current else MISSING
        self._metrics.record_cancel(applied)
        if applied:
            log_event(logger, "scan_job_canceled", job_id=job_id)
        else:
            # already finished (or never existed): nothing to do
            log_event(logger, "scan_job_cancel_noop", job_id=job_id, status=status)
        return CancelOutcome(job_id=job_id, canceled=applied, status=status)
