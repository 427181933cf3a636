from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import DateTime, UniqueConstraint
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC copy of ``dt``; naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware column that always binds and loads UTC.

    SQLite keeps no offset, so loaded values are re-tagged as UTC.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        return as_utc(value) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value) if value is not None else None


class Heartbeat(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("host_id", "timestamp", name="uq_heartbeat_host_ts"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    host_id: str = Field(index=True)
    timestamp: datetime = Field(sa_type=UTCDateTime, index=True)  # agent clock
    version: str = ""
    status: str = Field(default="online")  # online|offline
    metrics: str = "{}"  # JSON string of the metrics payload
    blocked_ips: Optional[str] = None  # JSON list
    received_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class LatestHeartbeat(SQLModel, table=True):
    """One row per host pointing at its newest heartbeat by timestamp."""

    host_id: str = Field(primary_key=True)
    heartbeat_id: int
    timestamp: datetime = Field(sa_type=UTCDateTime, index=True)
    status: str = Field(default="online")


class Command(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    command_id: str = Field(index=True, unique=True)
    host_id: str = Field(index=True)
    action: str  # Install|Uninstall|Start|Stop
    submitted_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
