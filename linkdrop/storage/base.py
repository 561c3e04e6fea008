"""
Storage adapter contract.

Adapters map an opaque storage key to bytes on a backing medium. They know
nothing about expiry or quotas; the registry owns that state. Every adapter
validates keys through `validate_key` so that no key, however it was derived,
can address anything outside the adapter's root.
"""

from __future__ import annotations

import posixpath
import re
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath

from linkdrop.core.errors import InvalidKeyError
from linkdrop.models import utcnow

CHUNK_SIZE = 64 * 1024

_EXTENSION_RE = re.compile(r"^\.[a-z0-9]{1,8}$")
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class SavedBlob:
    storage_key: str
    size: int


@dataclass(frozen=True)
class BlobStat:
    exists: bool
    size: int | None = None


def sanitize_extension(original_name: str) -> str:
    """Return a lower-cased `.ext` from the allow-listed charset, or ''."""
    # Both separators count so that a Windows-style name cannot smuggle a path.
    basename = (original_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    ext = posixpath.splitext(basename)[1].lower()
    return ext if _EXTENSION_RE.match(ext) else ""


def build_storage_key(token: str, original_name: str, now: datetime | None = None) -> str:
    if not _TOKEN_RE.match(token or ""):
        raise InvalidKeyError("token contains characters not allowed in a storage key")
    now = now or utcnow()
    return f"{now:%Y}/{now:%m}/{now:%d}/{token}{sanitize_extension(original_name)}"


def validate_key(storage_key: str) -> str:
    """Reject keys that are absolute, contain backslashes or dot segments."""
    if not storage_key or "\\" in storage_key or "\x00" in storage_key:
        raise InvalidKeyError("malformed storage key")
    path = PurePosixPath(storage_key)
    if path.is_absolute():
        raise InvalidKeyError("storage key must be relative")
    parts = storage_key.split("/")
    if any(part in {"", ".", ".."} for part in parts):
        raise InvalidKeyError("storage key contains empty or dot segments")
    return storage_key


class StorageAdapter(ABC):
    """
    Contract shared by every storage backend.

    Implementations must be safe to call from several threads at once; they
    keep no mutable state besides the medium itself.
    """

    name = "abstract"

    @abstractmethod
    def save_from_staging(
        self, staging_path: str, *, token: str, original_name: str, mime_type: str
    ) -> SavedBlob:
        """
        Copy a staged upload into managed storage.

        The key is derived from the token and a sanitized extension. The
        returned size is measured from the stored object. Raises
        ConflictError if the key already exists and StorageIOError on I/O
        failure; a failed save never leaves a partial object under the key.
        """

    @abstractmethod
    def open_read_stream(self, storage_key: str) -> Iterator[bytes]:
        """
        Lazy, non-restartable byte chunks.

        BlobNotFoundError is raised on the first read if the object is missing.
        """

    @abstractmethod
    def stat(self, storage_key: str) -> BlobStat:
        """Report whether the blob exists. Never raises."""

    @abstractmethod
    def delete(self, storage_key: str) -> None:
        """Remove the object; an already absent object is not an error."""
