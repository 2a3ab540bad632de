from __future__ import annotations

import os

import pytest

# Use an isolated in-memory test database so we don't mutate local dev data.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
# The periodic timer is driven explicitly by the tests.
os.environ.setdefault("SWEEP_TIMER_ENABLED", "0")

from sqlmodel import delete  # noqa: E402

from portledger.core.observability import metrics  # noqa: E402
from portledger.db.models import Port, ScanJob, ScanSettings, Server  # noqa: E402
from portledger.db.session import get_session, init_db  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_db() -> None:
    """Start each test with clean tables and zeroed metrics."""
    init_db()
    with get_session() as session:
        for model in (ScanJob, Port, ScanSettings, Server):
            session.exec(delete(model))
    metrics.reset()


@pytest.fixture
def make_server():
    def _make(name: str, ip: str = "192.0.2.10", host_id=None, exclude_from_scan: bool = False) -> int:
        with get_session() as session:
            server = Server(name=name, ip=ip, host_id=host_id, exclude_from_scan=exclude_from_scan)
            session.add(server)
            session.flush()
            return server.id

    return _make


@pytest.fixture
def make_port():
    def _make(server_id: int, number: int, **fields) -> int:
        with get_session() as session:
            port = Port(server_id=server_id, port=number, **fields)
            session.add(port)
            session.flush()
            return port.id

    return _make
