from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime
from typing import Any, Optional

from linkdrop.models import utcnow


class MetricsStore:
    """Thread-safe in-process counters shared by the routes and the reaper."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._refusals: Counter[str] = Counter()
        self._last_pass_at: Optional[datetime] = None
        self._last_pass_ms = 0

    def _bump(self, **amounts: int) -> None:
        with self._lock:
            for name, amount in amounts.items():
                self._counts[name] += max(amount, 0)

    def record_upload(self, size_bytes: int) -> None:
        self._bump(uploads=1, bytes_uploaded=size_bytes)

    def record_download(self) -> None:
        self._bump(downloads=1)

    def record_refusal(self, reason: str) -> None:
        with self._lock:
            self._counts["downloads_refused"] += 1
            self._refusals[reason] += 1

    def record_reaper_pass(self, reaped: int, purged: int, errors: int, elapsed_ms: int = 0) -> None:
        with self._lock:
            self._counts["reaper_passes"] += 1
            self._counts["reaped"] += max(reaped, 0)
            self._counts["purged"] += max(purged, 0)
            self._counts["reaper_errors"] += max(errors, 0)
            self._last_pass_at = utcnow()
            self._last_pass_ms = elapsed_ms

    def snapshot(self) -> dict[str, Any]:
        names = (
            "uploads",
            "bytes_uploaded",
            "downloads",
            "downloads_refused",
            "reaper_passes",
            "reaped",
            "purged",
            "reaper_errors",
        )
        with self._lock:
            payload: dict[str, Any] = {name: self._counts[name] for name in names}
            payload["refusals_by_reason"] = dict(self._refusals)
            payload["last_reaper_pass_at"] = (
                self._last_pass_at.isoformat(timespec="seconds") + "Z" if self._last_pass_at else None
            )
            payload["last_reaper_pass_ms"] = self._last_pass_ms
        return payload
