from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from linkdrop import config
from linkdrop.core.errors import (
    ConflictError,
    GoneError,
    InvalidKeyError,
    NotFoundError,
    StorageIOError,
)
from linkdrop.core.metrics import MetricsStore
from linkdrop.models import FileRecord, to_naive_utc, utcnow
from linkdrop.registry import Registry
from linkdrop.storage.base import StorageAdapter
from linkdrop.tokens import generate_token, mask_token

logger = logging.getLogger("linkdrop")

_MAX_TOKEN_ATTEMPTS = 5


@dataclass(frozen=True)
class UploadResult:
    token: str
    expires_at: datetime
    max_downloads: int
    original_name: str
    mime_type: str
    size: int


@dataclass(frozen=True)
class FileInfo:
    token: str
    original_name: str
    mime_type: str
    size: int
    created_at: datetime
    expires_at: datetime
    download_count: int
    max_downloads: int
    remaining_downloads: int
    status: str

    @classmethod
    def from_record(cls, record: FileRecord, now: datetime | None = None) -> "FileInfo":
        return cls(
            token=record.token,
            original_name=record.original_name,
            mime_type=record.mime_type,
            size=record.size_bytes,
            created_at=record.created_at,
            expires_at=record.expires_at,
            download_count=record.download_count,
            max_downloads=record.max_downloads,
            remaining_downloads=record.remaining_downloads,
            status=record.status(now),
        )


@dataclass
class Download:
    """A granted download. The quota is already spent when this exists."""

    record: FileRecord
    stream: Iterator[bytes]
    should_delete: bool
    source: Iterator[bytes] | None = None

    def close(self) -> None:
        # An unstarted wrapper never reaches its finally, so close the source too
        for stream in (self.stream, self.source):
            close = getattr(stream, "close", None)
            if close is not None:
                close()


def _primed(first: bytes, stream: Iterator[bytes]) -> Iterator[bytes]:
    try:
        if first:
            yield first
        yield from stream
    finally:
        close = getattr(stream, "close", None)
        if close is not None:
            close()


class FileService:
    """Upload, download and info entry points over a registry and a storage adapter."""

    def __init__(
        self,
        registry: Registry,
        storage: StorageAdapter,
        *,
        default_expiry_hours: int = 24,
        default_max_downloads: int = 1,
        max_downloads_cap: int = 10,
        metrics: MetricsStore | None = None,
    ):
        if not 1 <= default_max_downloads <= max_downloads_cap:
            raise ValueError("default_max_downloads must be between 1 and max_downloads_cap")
        self.registry = registry
        self.storage = storage
        self.default_expiry = timedelta(hours=default_expiry_hours)
        self.default_max_downloads = default_max_downloads
        self.max_downloads_cap = max_downloads_cap
        self.metrics = metrics

    @classmethod
    def from_config(cls, registry: Registry, storage: StorageAdapter, metrics: MetricsStore | None = None):
        return cls(
            registry,
            storage,
            default_expiry_hours=config.DEFAULT_EXPIRY_HOURS,
            default_max_downloads=min(config.DEFAULT_MAX_DOWNLOADS, config.MAX_DOWNLOADS_CAP),
            max_downloads_cap=config.MAX_DOWNLOADS_CAP,
            metrics=metrics,
        )

    def resolve_options(
        self,
        expires_at: datetime | None = None,
        max_downloads: int | None = None,
        now: datetime | None = None,
    ) -> tuple[datetime, int]:
        """Apply defaults and bounds; raises ValueError with a user-facing message."""
        now = now or utcnow()
        if expires_at is None:
            expires_at = now + self.default_expiry
        else:
            expires_at = to_naive_utc(expires_at)
            if expires_at <= now:
                raise ValueError("expiresAt must be in the future")
        if max_downloads is None:
            max_downloads = self.default_max_downloads
        elif max_downloads < 1:
            raise ValueError("maxDownloads must be at least 1")
        elif max_downloads > self.max_downloads_cap:
            raise ValueError(f"maxDownloads cannot exceed {self.max_downloads_cap}")
        return expires_at, max_downloads

    def upload(
        self,
        staging_path: str,
        original_name: str,
        mime_type: str,
        expires_at: datetime | None = None,
        max_downloads: int | None = None,
    ) -> UploadResult:
        now = utcnow()
        expires_at, max_downloads = self.resolve_options(expires_at, max_downloads, now)

        for attempt in range(1, _MAX_TOKEN_ATTEMPTS + 1):
            token = generate_token()
            try:
                saved = self.storage.save_from_staging(
                    staging_path, token=token, original_name=original_name, mime_type=mime_type
                )
            except ConflictError:
                logger.warning("event=token_collision stage=storage attempt=%d", attempt)
                continue

            record = FileRecord(
                token=token,
                storage_key=saved.storage_key,
                original_name=original_name,
                mime_type=mime_type,
                size_bytes=saved.size,
                created_at=now,
                expires_at=expires_at,
                max_downloads=max_downloads,
            )
            try:
                self.registry.create(record)
            except ConflictError:
                # The blob was published under our key only, so it is ours to drop
                logger.warning("event=token_collision stage=registry attempt=%d", attempt)
                self._discard_blob(saved.storage_key, token)
                continue
            except Exception:
                self._discard_blob(saved.storage_key, token)
                raise

            if self.metrics is not None:
                self.metrics.record_upload(saved.size)
            logger.info(
                "event=upload_success token=%s size_bytes=%s mime_type=%s max_downloads=%s expires_at=%s",
                mask_token(token),
                saved.size,
                mime_type,
                max_downloads,
                expires_at.isoformat(),
            )
            return UploadResult(
                token=token,
                expires_at=expires_at,
                max_downloads=max_downloads,
                original_name=original_name,
                mime_type=mime_type,
                size=saved.size,
            )

        raise ConflictError("Unable to allocate a unique token")

    def open_download(self, token: str) -> Download:
        """
        Spend one download and open the blob.

        The first chunk is read before returning so a missing or unreadable
        blob surfaces here, before any response bytes are sent. Storage
        failures never give the download back.
        """
        try:
            consumption = self.registry.try_consume(token)
        except (NotFoundError, GoneError) as exc:
            reason = exc.reason.value if isinstance(exc, GoneError) else "not_found"
            if self.metrics is not None:
                self.metrics.record_refusal(reason)
            logger.info("event=download_refused token=%s reason=%s", mask_token(token), reason)
            raise

        record = consumption.record
        try:
            stream = self.storage.open_read_stream(record.storage_key)
            first = next(stream, b"")
        except (StorageIOError, InvalidKeyError) as exc:
            logger.error(
                "event=download_unavailable token=%s error_type=%s error=%s",
                mask_token(token),
                type(exc).__name__,
                exc,
            )
            if consumption.should_delete and self._discard_blob(record.storage_key, token):
                self._mark_reclaimed(token)
            raise

        if self.metrics is not None:
            self.metrics.record_download()
        logger.info(
            "event=download_granted token=%s download_count=%s max_downloads=%s should_delete=%s",
            mask_token(token),
            record.download_count,
            record.max_downloads,
            consumption.should_delete,
        )
        return Download(
            record=record,
            stream=_primed(first, stream),
            should_delete=consumption.should_delete,
            source=stream,
        )

    def finish_download(self, download: Download) -> None:
        """
        Close the stream and reclaim the blob of a record this download exhausted.

        Runs however the response ended, including client aborts. A blob that
        cannot be removed here is picked up by the reaper's reclaim loop.
        """
        download.close()
        if not download.should_delete:
            return
        record = download.record
        if self._discard_blob(record.storage_key, record.token):
            self._mark_reclaimed(record.token)

    def _mark_reclaimed(self, token: str) -> None:
        try:
            self.registry.mark_deleted(token, blob_reclaimed=True)
        except SQLAlchemyError as exc:
            logger.error("event=mark_deleted_failure token=%s error=%s", mask_token(token), exc)

    def info(self, token: str, now: datetime | None = None) -> FileInfo:
        record = self.registry.get(token)
        if record is None:
            raise NotFoundError(token)
        return FileInfo.from_record(record, now)

    def _discard_blob(self, storage_key: str, token: str) -> bool:
        try:
            self.storage.delete(storage_key)
        except (StorageIOError, InvalidKeyError) as exc:
            logger.error("event=blob_delete_failure token=%s error=%s", mask_token(token), exc)
            return False
        return True
