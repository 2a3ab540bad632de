from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.engine import Engine


def _has_column(engine: Engine, table: str, column: str) -> bool:
    with engine.connect() as connection:
        result = connection.execute(text(f"PRAGMA table_info({table})"))
        for row in result.mappings():
            if row["name"] == column:
                return True
    return False


def _table_exists(engine: Engine, table: str) -> bool:
    with engine.connect() as connection:
        result = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type='table' AND name=:name"), {"name": table}
        )
        return result.first() is not None


def add_column_if_missing(engine: Engine, table: str, column: str, ddl: str) -> None:
    if not _table_exists(engine, table):
        return
    if _has_column(engine, table, column):
        return
    with engine.connect() as connection:
        connection.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
        connection.commit()


def ensure_live_job_index(engine: Engine) -> None:
    """
    Enforce at most one queued/scanning job per target inside the database.

    Conditional inserts already skip targets with a live job; the partial index
    turns a lost race between two writers into an IntegrityError instead of a
    second live row.
    """
    with engine.connect() as connection:
        connection.execute(
            text(
                "CREATE UNIQUE INDEX IF NOT EXISTS ux_scanjob_live_target "
                "ON scanjob (target_id) WHERE status IN ('queued', 'scanning')"
            )
        )
        connection.commit()


def apply_migrations(engine: Engine) -> None:
    if engine.dialect.name != "sqlite":
        ensure_live_job_index(engine)
        return
    add_column_if_missing(engine, "server", "host_id", "INTEGER")
    add_column_if_missing(engine, "server", "exclude_from_scan", "INTEGER DEFAULT 0")
    add_column_if_missing(engine, "port", "note", "TEXT")
    add_column_if_missing(engine, "port", "last_seen_at", "TEXT")
    add_column_if_missing(engine, "port", "last_checked_at", "TEXT")
    add_column_if_missing(engine, "scanjob", "error_detail", "TEXT")
    add_column_if_missing(engine, "scanjob", "started_at", "TEXT")
    add_column_if_missing(engine, "scanjob", "updated_at", "TEXT")
    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode = WAL"))
        connection.commit()
    ensure_live_job_index(engine)
