import threading
from contextlib import contextmanager
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine, func, select

from portledger.core.errors import InvalidRequest, TargetNotFound
from portledger.core.guard import ConcurrencyGuard
from portledger.core.job_store import DONE, QUEUED, SCANNING, JobStore
from portledger.core.observability import Metrics, metrics
from portledger.core.scheduler import PeriodicSweeper, Scheduler
from portledger.db.migrations import apply_migrations
from portledger.db.models import ScanJob, ScanSettings, Server, utcnow
from portledger.db.session import get_session


def _live_count(target_id: int) -> int:
    with get_session() as session:
        return session.exec(
            select(func.count())
            .select_from(ScanJob)
            .where(ScanJob.target_id == target_id, ScanJob.status.in_([QUEUED, SCANNING]))
        ).one()


def _total_jobs() -> int:
    with get_session() as session:
        return session.exec(select(func.count()).select_from(ScanJob)).one()


def test_request_scan_creates_queued_job(make_server):
    server_id = make_server("alpha")

    admission = Scheduler().request_scan(server_id)

    assert admission.already_running is False
    job = JobStore().get(admission.job_id)
    assert job.target_id == server_id
    assert job.status == QUEUED
    assert job.total_units == 65535


def test_request_scan_twice_returns_same_job(make_server):
    server_id = make_server("alpha")
    scheduler = Scheduler()

    first = scheduler.request_scan(server_id)
    second = scheduler.request_scan(server_id)

    assert second.job_id == first.job_id
    assert second.already_running is True
    assert _total_jobs() == 1
    snap = metrics.snapshot()
    assert snap["jobs"]["created"] == 1
    assert snap["jobs"]["already_running"] == 1


def test_request_scan_while_scanning_returns_in_flight_job(make_server):
    server_id = make_server("alpha")
    scheduler = Scheduler()
    first = scheduler.request_scan(server_id)
    JobStore().report_progress(first.job_id, 100, 0)

    again = scheduler.request_scan(server_id)

    assert again.job_id == first.job_id
    assert again.already_running is True


def test_request_scan_after_terminal_job_creates_new_one(make_server):
    server_id = make_server("alpha")
    scheduler = Scheduler()
    first = scheduler.request_scan(server_id)
    JobStore().finish(first.job_id, DONE)

    second = scheduler.request_scan(server_id)

    assert second.job_id != first.job_id
    assert second.already_running is False
    assert _live_count(server_id) == 1


@pytest.mark.parametrize("bad", [0, -3, None, "7", True])
def test_request_scan_rejects_invalid_target(bad):
    with pytest.raises(InvalidRequest):
        Scheduler().request_scan(bad)
    assert _total_jobs() == 0


def test_request_scan_unknown_target():
    with pytest.raises(TargetNotFound):
        Scheduler().request_scan(999)
    assert _total_jobs() == 0


def test_storage_refuses_second_live_job_for_target(make_server):
    server_id = make_server("alpha")
    ConcurrencyGuard().admit(server_id, 65535)

    with pytest.raises(IntegrityError):
        with get_session() as session:
            session.add(ScanJob(target_id=server_id, status=SCANNING))

    assert _live_count(server_id) == 1


def test_concurrent_requests_for_one_server_share_one_job(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'admission.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)
    apply_migrations(engine)

    @contextmanager
    def file_session():
        session = Session(engine, expire_on_commit=False)
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    with file_session() as session:
        server = Server(name="alpha", ip="192.0.2.10")
        session.add(server)
        session.flush()
        server_id = server.id

    scheduler = Scheduler(session_factory=file_session, recorder=Metrics())
    workers = 16
    barrier = threading.Barrier(workers)
    lock = threading.Lock()
    admissions, errors = [], []

    def request():
        barrier.wait()
        try:
            admission = scheduler.request_scan(server_id)
        except Exception as exc:  # pylint: disable=broad-except
            with lock:
                errors.append(exc)
            return
        with lock:
            admissions.append(admission)

    threads = [threading.Thread(target=request) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    try:
        assert errors == []
        assert len(admissions) == workers
        assert len({admission.job_id for admission in admissions}) == 1
        assert sum(not admission.already_running for admission in admissions) == 1
        with file_session() as session:
            rows = session.exec(select(ScanJob).where(ScanJob.target_id == server_id)).all()
            assert len(rows) == 1
            assert rows[0].status == QUEUED
    finally:
        engine.dispose()


def test_periodic_sweep_skips_targets_with_live_jobs(make_server):
    servers = [make_server(f"host-{idx}") for idx in range(5)]
    scheduler = Scheduler()
    for server_id in servers[:3]:
        scheduler.request_scan(server_id)

    queued = scheduler.run_periodic_sweep()

    assert queued == 2
    for server_id in servers:
        assert _live_count(server_id) == 1
    assert _total_jobs() == 5


def test_periodic_sweep_ignores_excluded_servers(make_server):
    make_server("alpha")
    excluded = make_server("beta", exclude_from_scan=True)

    assert Scheduler().run_periodic_sweep() == 1
    assert _live_count(excluded) == 0


def test_periodic_sweep_can_be_restricted(make_server):
    alpha = make_server("alpha")
    beta = make_server("beta")

    assert Scheduler().run_periodic_sweep(only=[beta]) == 1
    assert _live_count(alpha) == 0
    assert _live_count(beta) == 1
    assert Scheduler().run_periodic_sweep(only=[]) == 0


def test_periodic_sweep_is_idempotent(make_server):
    make_server("alpha")
    make_server("beta")
    scheduler = Scheduler()

    assert scheduler.run_periodic_sweep() == 2
    assert scheduler.run_periodic_sweep() == 0
    assert metrics.snapshot()["jobs"]["sweeps"] == 2


def _finish_done_at(job_id: int, finished_at) -> None:
    with get_session() as session:
        job = session.get(ScanJob, job_id)
        job.status = DONE
        job.finished_at = finished_at
        session.add(job)


def test_sweeper_only_queues_due_targets(make_server):
    now = utcnow()
    fresh = make_server("fresh")
    stale = make_server("stale")
    never = make_server("never")
    make_server("skipped", exclude_from_scan=True)
    scheduler = Scheduler()
    _finish_done_at(scheduler.request_scan(fresh).job_id, now - timedelta(minutes=5))
    _finish_done_at(scheduler.request_scan(stale).job_id, now - timedelta(minutes=90))
    with get_session() as session:
        session.add(ScanSettings(scan_enabled=True, scan_interval_minutes=60, scan_concurrency=2))

    sweeper = PeriodicSweeper(scheduler)

    assert sweeper.tick(now=now) == 2
    assert _live_count(fresh) == 0
    assert _live_count(stale) == 1
    assert _live_count(never) == 1


def test_sweeper_does_nothing_when_scanning_disabled(make_server):
    make_server("alpha")
    with get_session() as session:
        session.add(ScanSettings(scan_enabled=False, scan_interval_minutes=60, scan_concurrency=2))

    assert PeriodicSweeper(Scheduler()).tick() == 0
    assert _total_jobs() == 0


def test_sweeper_creates_default_settings(make_server):
    make_server("alpha")

    assert PeriodicSweeper(Scheduler()).tick() == 1
    with get_session() as session:
        row = session.exec(select(ScanSettings)).one()
        assert row.scan_enabled is True
        assert row.scan_interval_minutes == 1440
        assert row.scan_concurrency == 2
