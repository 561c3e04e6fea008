from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # Stored timestamps are naive UTC so SQLite and PostgreSQL compare the same way.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class FileRecord(SQLModel, table=True):
    token: str = Field(primary_key=True, max_length=64)
    storage_key: str = Field(unique=True, max_length=255)
    original_name: str
    mime_type: str
    size_bytes: int
    # Explicit column type keeps storage naive on every sqlmodel release
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=DateTime)
    expires_at: datetime = Field(index=True, sa_type=DateTime)
    max_downloads: int = Field(default=1)
    download_count: int = Field(default=0)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
    blob_reclaimed: bool = Field(default=False, index=True)

    @property
    def remaining_downloads(self) -> int:
        return max(self.max_downloads - self.download_count, 0)

    @property
    def is_exhausted(self) -> bool:
        return self.download_count >= self.max_downloads

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def status(self, now: datetime | None = None) -> str:
        if self.is_deleted:
            return "deleted"
        if self.is_expired(now):
            return "expired"
        return "active"