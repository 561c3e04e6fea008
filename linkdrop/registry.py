"""
Token-indexed metadata registry.

The registry is the single source of truth for expiry, quota and soft-delete
state. `SQLRegistry` keeps it in any SQLAlchemy-supported database and runs
the download consumption check as one conditional UPDATE, so concurrent
downloads of the same token are serialized by the database itself (SQLite's
write lock, PostgreSQL's row lock) across every process sharing the store.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import DateTime, Engine, and_, case, func, literal, or_, true
from sqlalchemy import delete as sql_delete
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from linkdrop.core.errors import ConflictError, GoneError, GoneReason, NotFoundError
from linkdrop.db import ensure_connection, session_scope
from linkdrop.models import FileRecord, utcnow

logger = logging.getLogger("linkdrop.registry")

_files = FileRecord.__table__


@dataclass(frozen=True)
class Consumption:
    record: FileRecord
    should_delete: bool


class ScanCursor(NamedTuple):
    """Keyset position: the last record's sort column value and token."""

    sort_value: datetime
    token: str


class Registry(ABC):
    @abstractmethod
    def create(self, record: FileRecord) -> FileRecord: ...

    @abstractmethod
    def get(self, token: str) -> FileRecord | None: ...

    @abstractmethod
    def try_consume(self, token: str, now: datetime | None = None) -> Consumption:
        """
        Atomically grant one download.

        Raises NotFoundError for an unknown token and GoneError when the record
        is deleted, expired or exhausted. On success the counter has already
        been persisted; `should_delete` is true for exactly the call that took
        the counter to the quota, and that record is already soft-deleted.
        """

    @abstractmethod
    def mark_deleted(self, token: str, *, blob_reclaimed: bool = False) -> None:
        """Soft-delete; `blob_reclaimed` records that the blob is already gone."""

    @abstractmethod
    def scan_expired_active(
        self, limit: int, cursor: ScanCursor | None = None, now: datetime | None = None
    ) -> list[FileRecord]: ...

    @abstractmethod
    def scan_exhausted_active(self, limit: int, cursor: ScanCursor | None = None) -> list[FileRecord]: ...

    @abstractmethod
    def scan_unreclaimed(
        self, deleted_before: datetime, limit: int, cursor: ScanCursor | None = None
    ) -> list[FileRecord]:
        """Soft-deleted records whose blob removal was never confirmed."""

    @abstractmethod
    def scan_purgeable(
        self, purge_horizon: datetime, limit: int, cursor: ScanCursor | None = None
    ) -> list[FileRecord]: ...

    @abstractmethod
    def delete(self, token: str) -> None: ...

    @abstractmethod
    def is_available(self) -> bool: ...


def _refusal(record: FileRecord | None, token: str, now: datetime) -> Exception:
    if record is None:
        return NotFoundError(token)
    if record.is_deleted:
        # A record soft-deleted by its own last download reads as exhausted.
        reason = GoneReason.LIMIT_REACHED if record.is_exhausted else GoneReason.DELETED
    elif record.is_expired(now):
        reason = GoneReason.EXPIRED
    else:
        reason = GoneReason.LIMIT_REACHED
    return GoneError(reason, token)


class SQLRegistry(Registry):
    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, record: FileRecord) -> FileRecord:
        record.download_count = 0
        record.is_deleted = False
        record.deleted_at = None
        record.blob_reclaimed = False
        with session_scope(self.engine) as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(f"token or storage key already registered: {record.token}") from exc
        return record

    def get(self, token: str) -> FileRecord | None:
        with session_scope(self.engine) as session:
            return session.get(FileRecord, token)

    def try_consume(self, token: str, now: datetime | None = None) -> Consumption:
        now = now or utcnow()
        stmt = (
            update(_files)
            .where(
                _files.c.token == token,
                _files.c.is_deleted == False,  # noqa: E712
                _files.c.expires_at > now,
                _files.c.download_count < _files.c.max_downloads,
            )
            .values(
                download_count=_files.c.download_count + 1,
                # SET expressions see pre-update values, hence the + 1
                is_deleted=case(
                    (_files.c.download_count + 1 >= _files.c.max_downloads, true()),
                    else_=_files.c.is_deleted,
                ),
                deleted_at=case(
                    (_files.c.download_count + 1 >= _files.c.max_downloads, literal(now, DateTime)),
                    else_=_files.c.deleted_at,
                ),
            )
        )
        with session_scope(self.engine) as session:
            result = session.connection().execute(stmt)
            if result.rowcount == 1:
                # Read back inside the same transaction so the count is ours alone.
                record = session.exec(select(FileRecord).where(FileRecord.token == token)).one()
                session.commit()
                return Consumption(record=record, should_delete=record.is_exhausted)
            record = session.get(FileRecord, token)
        raise _refusal(record, token, now)

    def mark_deleted(self, token: str, *, blob_reclaimed: bool = False) -> None:
        values = {
            "is_deleted": True,
            "deleted_at": func.coalesce(_files.c.deleted_at, literal(utcnow(), DateTime)),
        }
        if blob_reclaimed:
            values["blob_reclaimed"] = True
        stmt = update(_files).where(_files.c.token == token).values(**values)
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def _page(self, stmt, sort_column, cursor: ScanCursor | None, limit: int) -> list[FileRecord]:
        if limit <= 0:
            return []
        if cursor is not None:
            stmt = stmt.where(
                or_(
                    sort_column > cursor.sort_value,
                    and_(sort_column == cursor.sort_value, FileRecord.token > cursor.token),
                )
            )
        stmt = stmt.order_by(sort_column, FileRecord.token).limit(limit)
        with session_scope(self.engine) as session:
            return list(session.exec(stmt).all())

    def scan_expired_active(
        self, limit: int, cursor: ScanCursor | None = None, now: datetime | None = None
    ) -> list[FileRecord]:
        now = now or utcnow()
        stmt = select(FileRecord).where(
            FileRecord.is_deleted == False,  # noqa: E712
            FileRecord.expires_at <= now,
        )
        return self._page(stmt, FileRecord.expires_at, cursor, limit)

    def scan_exhausted_active(self, limit: int, cursor: ScanCursor | None = None) -> list[FileRecord]:
        stmt = select(FileRecord).where(
            FileRecord.is_deleted == False,  # noqa: E712
            FileRecord.download_count >= FileRecord.max_downloads,
        )
        return self._page(stmt, FileRecord.created_at, cursor, limit)

    def scan_purgeable(
        self, purge_horizon: datetime, limit: int, cursor: ScanCursor | None = None
    ) -> list[FileRecord]:
        stmt = select(FileRecord).where(
            FileRecord.is_deleted == True,  # noqa: E712
            FileRecord.expires_at <= purge_horizon,
        )
        return self._page(stmt, FileRecord.expires_at, cursor, limit)

    def scan_unreclaimed(
        self, deleted_before: datetime, limit: int, cursor: ScanCursor | None = None
    ) -> list[FileRecord]:
        stmt = select(FileRecord).where(
            FileRecord.is_deleted == True,  # noqa: E712
            FileRecord.blob_reclaimed == False,  # noqa: E712
            FileRecord.deleted_at <= deleted_before,
        )
        return self._page(stmt, FileRecord.deleted_at, cursor, limit)

    def delete(self, token: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(sql_delete(_files).where(_files.c.token == token))

    def is_available(self) -> bool:
        return ensure_connection(self.engine)
