from contextlib import contextmanager
from pathlib import Path

from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from portledger.config import settings
from portledger.db.migrations import apply_migrations
from portledger.db import models  # noqa: F401  # ensure models are registered with metadata

engine_kwargs = {"echo": False}
if settings.database_url.startswith("sqlite"):
    engine_kwargs["connect_args"] = {"check_same_thread": False}
    if ":memory:" in settings.database_url:
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(settings.database_url, **engine_kwargs)
_initialized = False


def init_db(force: bool = False) -> None:
    global _initialized
    if _initialized and not force:
        return
    # In test runs, ensure a clean SQLite file once to avoid stale schema/index conflicts.
    if settings.database_url.startswith("sqlite:///") and "test" in settings.database_url and not _initialized:
        path = Path(settings.database_url.replace("sqlite:///", ""))
        if path.exists():
            path.unlink()
    SQLModel.metadata.create_all(engine)
    apply_migrations(engine)
    _initialized = True


@contextmanager
def get_session() -> Session:
    if not _initialized:
        init_db()
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
