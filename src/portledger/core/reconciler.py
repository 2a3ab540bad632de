"""
Post-scan port bookkeeping.

When a job finishes ``done`` every port of the scanned server gets its
``last_checked_at`` advanced to the job's ``finished_at``; ports the agent
reported open also get ``last_seen_at`` advanced, and open ports not seen
before are recorded. A port is *down* when its latest check did not see it
open. Down ports are only ever removed by explicit id.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, or_, update
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from portledger.core.errors import InvalidRequest
from portledger.core.job_store import DONE, SessionFactory
from portledger.core.observability import log_event
from portledger.db.models import DownPortRead, Port, ScanJobRead, Server
from portledger.db.session import get_session

logger = logging.getLogger(__name__)

_ports = Port.__table__


@dataclass(frozen=True)
class ReconcileSummary:
    checked: int = 0
    confirmed: int = 0
    added: int = 0


def down_clause():
    return (
        Port.last_checked_at.is_not(None),
        or_(Port.last_seen_at.is_(None), Port.last_seen_at < Port.last_checked_at),
    )


def normalize_port_numbers(values: Iterable[object]) -> Set[int]:
    ports: Set[int] = set()
    for value in values:
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
            raise InvalidRequest(f"invalid port number: {value!r}")
        ports.add(value)
    return ports


def normalize_ids(values: Optional[Sequence[object]]) -> List[int]:
    """Keep the positive integer ids from ``values``; an empty result is rejected."""
    ids = sorted(
        {
            value
            for value in (values or [])
            if isinstance(value, int) and not isinstance(value, bool) and value > 0
        }
    )
    if not ids:
        raise InvalidRequest("ids are required")
    return ids


class StalenessReconciler:
    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session_factory = session_factory

    def apply_completion(
        self, job: ScanJobRead, open_ports: Iterable[int], session: Optional[Session] = None
    ) -> ReconcileSummary:
        """Stamp the server's ports with the result of ``job``.

        Pass the session that wrote the job's ``done`` status so both land in one
        transaction; a failure here then leaves the job live for the agent to retry.
        """
        if job.status != DONE or job.finished_at is None:
            logger.debug("Skipping reconciliation for job %s in status %s", job.job_id, job.status)
            return ReconcileSummary()
        seen = normalize_port_numbers(open_ports)
        finished_at = job.finished_at
        # never move a timestamp backwards if an older job reconciles late
        not_newer = or_(_ports.c.last_checked_at.is_(None), _ports.c.last_checked_at <= finished_at)
        scope = nullcontext(session) if session is not None else self._session_factory()
        with scope as session:
            checked = session.exec(
                update(_ports)
                .where(_ports.c.server_id == job.target_id, not_newer)
                .values(last_checked_at=finished_at)
            ).rowcount
            confirmed = 0
            if seen:
                confirmed = session.exec(
                    update(_ports)
                    .where(
                        _ports.c.server_id == job.target_id,
                        _ports.c.port.in_(sorted(seen)),
                        or_(_ports.c.last_seen_at.is_(None), _ports.c.last_seen_at <= finished_at),
                    )
                    .values(last_seen_at=finished_at)
                ).rowcount
            known = set(session.exec(select(Port.port).where(Port.server_id == job.target_id)).all())
            fresh = sorted(seen - known)
            for number in fresh:
                session.add(
                    Port(
                        server_id=job.target_id,
                        port=number,
                        last_seen_at=finished_at,
                        last_checked_at=finished_at,
                    )
                )
        summary = ReconcileSummary(checked=checked, confirmed=confirmed, added=len(fresh))
        log_event(
            logger,
            "ports_reconciled",
            job_id=job.job_id,
            target_id=job.target_id,
            checked=summary.checked,
            confirmed=summary.confirmed,
            added=summary.added,
        )
        return summary

    def down_ports(self) -> List[DownPortRead]:
        host = aliased(Server)
        with self._session_factory() as session:
            rows = session.exec(
                select(Port, Server.name, Server.host_id, host.name)
                .join(Server, Server.id == Port.server_id)
                .outerjoin(host, host.id == Server.host_id)
                .where(*down_clause())
                .order_by(Server.name, Port.port)
            ).all()
            return [
                DownPortRead(
                    id=port.id,
                    server_id=port.server_id,
                    port=port.port,
                    note=port.note,
                    server_name=server_name,
                    server_host_id=host_id,
                    host_name=host_name,
                    last_seen_at=port.last_seen_at,
                    last_checked_at=port.last_checked_at,
                )
                for port, server_name, host_id, host_name in rows
            ]

    def remove_ports(self, ids: Optional[Sequence[object]]) -> int:
        """Delete exactly the given port ids and report how many rows went away."""
        port_ids = normalize_ids(ids)
        with self._session_factory() as session:
            deleted = session.exec(delete(_ports).where(_ports.c.id.in_(port_ids))).rowcount
        log_event(logger, "ports_removed", requested=len(port_ids), deleted=deleted)
        return deleted
