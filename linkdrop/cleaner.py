"""
Background reaper.

One pass reconciles the registry with storage in four bounded loops:
expired active records, exhausted active records, soft-deleted records whose
blob removal was never confirmed, and (unless running in soft-delete-only
mode) soft-deleted records past the purge horizon. Per-record
failures are counted and left for the next pass; their condition still holds,
so they are picked up again.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError

from linkdrop import config
from linkdrop.core.errors import InvalidKeyError, StorageIOError
from linkdrop.core.metrics import MetricsStore
from linkdrop.models import FileRecord, utcnow
from linkdrop.registry import Registry, ScanCursor
from linkdrop.storage.base import StorageAdapter
from linkdrop.tokens import mask_token

logger = logging.getLogger("linkdrop.reaper")


class ReaperState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class ReaperOptions:
    interval_seconds: int = 5 * 60
    batch_size: int = 100
    soft_delete_only: bool = False
    purge_after_hours: int = 24
    reclaim_grace_seconds: int = 60 * 60

    @classmethod
    def from_config(cls) -> "ReaperOptions":
        return cls(
            interval_seconds=config.CLEANUP_INTERVAL_SECONDS,
            batch_size=config.CLEANUP_BATCH_SIZE,
            soft_delete_only=config.CLEANUP_SOFT_DELETE_ONLY,
            purge_after_hours=config.CLEANUP_PURGE_AFTER_HOURS,
            reclaim_grace_seconds=config.CLEANUP_RECLAIM_GRACE_SECONDS,
        )


@dataclass
class ReaperStats:
    scanned_expired: int = 0
    scanned_exhausted: int = 0
    scanned_unreclaimed: int = 0
    scanned_purge: int = 0
    blob_deleted: int = 0
    marked_deleted: int = 0
    reclaimed: int = 0
    purged: int = 0
    errors: int = 0
    elapsed_ms: int = 0


class Reaper:
    def __init__(
        self,
        registry: Registry,
        storage: StorageAdapter,
        options: ReaperOptions | None = None,
        metrics: MetricsStore | None = None,
    ):
        self.registry = registry
        self.storage = storage
        self.options = options or ReaperOptions()
        self.metrics = metrics
        self.last_stats: ReaperStats | None = None
        self._run_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._stopping = threading.Event()
        self._scheduler: BackgroundScheduler | None = None

    @property
    def state(self) -> ReaperState:
        return ReaperState.RUNNING if self._run_lock.locked() else ReaperState.IDLE

    @property
    def started(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        if self._scheduler is not None:
            return
        self._stopping.clear()
        scheduler = BackgroundScheduler(daemon=True)
        # A tick that fires mid-pass is dropped, never queued behind it
        scheduler.add_job(
            self._tick,
            "interval",
            seconds=max(1, self.options.interval_seconds),
            id="linkdrop-reaper",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "event=reaper_started interval_seconds=%s batch_size=%s soft_delete_only=%s",
            self.options.interval_seconds,
            self.options.batch_size,
            self.options.soft_delete_only,
        )

    def stop(self, timeout: float | None = None) -> bool:
        """Stop scheduling, let an in-flight pass finish, wait up to `timeout`."""
        self._stopping.set()
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        finished = self._idle.wait(timeout)
        if finished:
            logger.info("event=reaper_stopped")
        else:
            logger.warning("event=reaper_stop_timeout timeout_seconds=%s", timeout)
        return finished

    def _tick(self) -> None:
        try:
            self.run_once()
        except Exception as e:
            logger.error("event=reaper_tick_error error=%s", e, exc_info=True)

    def run_once(self, now: datetime | None = None) -> ReaperStats | None:
        """Run one pass; returns None when skipped (in flight, stopping or database down)."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("event=reaper_skipped reason=pass_in_flight")
            return None
        # Cleared before the stopping check so a concurrent stop() waits for us
        self._idle.clear()
        try:
            if self._stopping.is_set():
                logger.info("event=reaper_skipped reason=stopping")
                return None
            if not self.registry.is_available():
                logger.warning("event=reaper_skipped reason=db_unreachable")
                return None
            return self._pass(now)
        finally:
            self._idle.set()
            self._run_lock.release()

    def _pass(self, now: datetime | None) -> ReaperStats:
        started = time.monotonic()
        stats = ReaperStats()
        try:
            now = now or utcnow()
            self._drain(
                lambda limit, cursor: self.registry.scan_expired_active(limit, cursor, now=now),
                "expires_at",
                "scanned_expired",
                stats,
                action="mark",
            )
            self._drain(
                self.registry.scan_exhausted_active,
                "created_at",
                "scanned_exhausted",
                stats,
                action="mark",
            )
            grace = now - timedelta(seconds=self.options.reclaim_grace_seconds)
            self._drain(
                lambda limit, cursor: self.registry.scan_unreclaimed(grace, limit, cursor),
                "deleted_at",
                "scanned_unreclaimed",
                stats,
                action="reclaim",
            )
            if not self.options.soft_delete_only:
                horizon = now - timedelta(hours=self.options.purge_after_hours)
                self._drain(
                    lambda limit, cursor: self.registry.scan_purgeable(horizon, limit, cursor),
                    "expires_at",
                    "scanned_purge",
                    stats,
                    action="purge",
                )
        except Exception as exc:
            # Batch-level failure: the remaining loops wait for the next tick.
            stats.errors += 1
            logger.error("event=reaper_pass_error error=%s", exc, exc_info=True)
        finally:
            stats.elapsed_ms = int((time.monotonic() - started) * 1000)
            self.last_stats = stats
            if self.metrics is not None:
                self.metrics.record_reaper_pass(
                    stats.marked_deleted, stats.purged, stats.errors, stats.elapsed_ms
                )
            logger.info(
                "event=reaper_pass %s",
                " ".join(f"{key}={value}" for key, value in asdict(stats).items()),
            )
        return stats

    def _drain(
        self,
        fetch: Callable[[int, ScanCursor | None], list[FileRecord]],
        sort_attr: str,
        counter: str,
        stats: ReaperStats,
        *,
        action: str,
    ) -> None:
        batch_size = self.options.batch_size
        cursor: ScanCursor | None = None
        while True:
            page = fetch(batch_size, cursor)
            if not page:
                return
            setattr(stats, counter, getattr(stats, counter) + len(page))
            for record in page:
                self._reap(record, stats, action)
            if len(page) < batch_size:
                return
            # Page past records that failed so they are not re-read this pass
            last = page[-1]
            cursor = ScanCursor(getattr(last, sort_attr), last.token)

    def _reap(self, record: FileRecord, stats: ReaperStats, action: str) -> None:
        try:
            self.storage.delete(record.storage_key)
            stats.blob_deleted += 1
            if action == "purge":
                self.registry.delete(record.token)
                stats.purged += 1
            else:
                self.registry.mark_deleted(record.token, blob_reclaimed=True)
                if action == "reclaim":
                    stats.reclaimed += 1
                else:
                    stats.marked_deleted += 1
        except InvalidKeyError as exc:
            stats.errors += 1
            logger.error("event=reaper_invalid_key token=%s error=%s", mask_token(record.token), exc)
        except (StorageIOError, SQLAlchemyError) as exc:
            stats.errors += 1
            logger.error(
                "event=reaper_item_error token=%s action=%s error=%s",
                mask_token(record.token),
                action,
                exc,
            )
