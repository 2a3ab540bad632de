from __future__ import annotations

from typing import Optional

from sqlmodel import func, select

from portledger.core.job_store import DONE, SessionFactory
from portledger.db.models import ScanJob, ScanSettings, ScanSettingsRead
from portledger.db.session import get_session

DEFAULT_SCAN_ENABLED = True
DEFAULT_SCAN_INTERVAL_MINUTES = 1440
DEFAULT_SCAN_CONCURRENCY = 2


def _clamp(value: Optional[int], default: int, min_value: int, max_value: int) -> int:
    if value is None:
        return default
    return max(min_value, min(max_value, int(value)))


def load_scan_settings(session_factory: SessionFactory = get_session) -> ScanSettingsRead:
    """Return the singleton scan settings row, creating it with defaults when absent."""
    with session_factory() as session:
        row = session.exec(select(ScanSettings).order_by(ScanSettings.id).limit(1)).first()
        if row is None:
            row = ScanSettings(
                scan_enabled=DEFAULT_SCAN_ENABLED,
                scan_interval_minutes=DEFAULT_SCAN_INTERVAL_MINUTES,
                scan_concurrency=DEFAULT_SCAN_CONCURRENCY,
            )
            session.add(row)
            session.flush()
        last_scan_at = session.exec(
            select(func.max(ScanJob.finished_at)).where(ScanJob.status == DONE)
        ).one()
        return ScanSettingsRead(
            scan_enabled=bool(row.scan_enabled),
            scan_interval_minutes=_clamp(row.scan_interval_minutes, DEFAULT_SCAN_INTERVAL_MINUTES, 1, 1440),
            scan_concurrency=_clamp(row.scan_concurrency, DEFAULT_SCAN_CONCURRENCY, 1, 10),
            last_scan_at=last_scan_at,
        )
