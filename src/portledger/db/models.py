from datetime import datetime, timezone
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ServerBase(SQLModel):
    name: str = Field(max_length=255, index=True)
    ip: str = Field(max_length=255, description="Address probed by the scan agent")
    host_id: Optional[int] = Field(
        default=None,
        foreign_key="server.id",
        description="Owning host when this server is a virtual machine",
    )
    exclude_from_scan: bool = Field(default=False)


class Server(ServerBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)

    ports: List["Port"] = Relationship(back_populates="server")


class Port(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    server_id: int = Field(foreign_key="server.id", index=True)
    port: int = Field(ge=1, le=65535)
    note: Optional[str] = Field(default=None, max_length=500)
    # last scan that found the port open / last scan that covered its server
    last_seen_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None

    server: Optional[Server] = Relationship(back_populates="ports")

    @property
    def is_down(self) -> bool:
        if self.last_checked_at is None:
            return False
        return self.last_seen_at is None or self.last_seen_at < self.last_checked_at


class ScanJobBase(SQLModel):
    target_id: int = Field(foreign_key="server.id", index=True)
    status: str = Field(default="queued", max_length=32, index=True)
    total_units: int = Field(default=65535)
    completed_units: int = Field(default=0)
    found_units: int = Field(default=0)
    error_detail: Optional[str] = None


class ScanJob(ScanJobBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow, nullable=False)


class ScanJobRead(ScanJobBase):
    job_id: int
    created_at: datetime
    started_at: Optional[datetime]
    finished_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: ScanJob) -> "ScanJobRead":
        return cls(
            job_id=row.id,
            target_id=row.target_id,
            status=row.status,
            total_units=row.total_units,
            completed_units=row.completed_units,
            found_units=row.found_units,
            error_detail=row.error_detail,
            created_at=row.created_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
        )


class ScanSettings(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    scan_enabled: bool = Field(default=True)
    scan_interval_minutes: int = Field(default=1440, ge=1, le=1440)
    scan_concurrency: int = Field(default=2, ge=1, le=10)


class ScanSettingsRead(SQLModel):
    scan_enabled: bool
    scan_interval_minutes: int
    scan_concurrency: int
    last_scan_at: Optional[datetime] = None


class DownPortRead(SQLModel):
    id: int
    server_id: int
    port: int
    note: Optional[str]
    server_name: str
    server_host_id: Optional[int]
    host_name: Optional[str]
    last_seen_at: Optional[datetime]
    last_checked_at: Optional[datetime]


__all__ = [
    "utcnow",
    "Server",
    "ServerBase",
    "Port",
    "ScanJob",
    "ScanJobBase",
    "ScanJobRead",
    "ScanSettings",
    "ScanSettingsRead",
    "DownPortRead",
]
