from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from pathlib import Path

from linkdrop.core.errors import BlobNotFoundError, ConflictError, InvalidKeyError, StorageIOError
from linkdrop.storage.base import (
    CHUNK_SIZE,
    BlobStat,
    SavedBlob,
    StorageAdapter,
    build_storage_key,
    validate_key,
)

logger = logging.getLogger("linkdrop.storage")


class LocalStorage(StorageAdapter):
    """Blobs as files under a root directory, one date-partitioned path per key."""

    name = "local"

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, storage_key: str) -> Path:
        validate_key(storage_key)
        try:
            path = (self.root / storage_key).resolve()
            path.relative_to(self.root)
        except (ValueError, RuntimeError) as exc:
            raise InvalidKeyError("storage key escapes the storage root") from exc
        return path

    def save_from_staging(
        self, staging_path: str, *, token: str, original_name: str, mime_type: str
    ) -> SavedBlob:
        storage_key = build_storage_key(token, original_name)
        dest = self._resolve(storage_key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, partial = tempfile.mkstemp(prefix=".partial-", dir=dest.parent)
            try:
                with os.fdopen(fd, "wb") as out, open(staging_path, "rb") as src:
                    shutil.copyfileobj(src, out, CHUNK_SIZE)
                    out.flush()
                    os.fsync(out.fileno())
                # link() refuses to replace an existing key, unlike rename()
                os.link(partial, dest)
            finally:
                Path(partial).unlink(missing_ok=True)
            size = dest.stat().st_size
        except FileExistsError as exc:
            raise ConflictError(f"storage key already exists: {storage_key}") from exc
        except OSError as exc:
            logger.error("event=storage_save_failure key=%s error=%s", storage_key, exc)
            raise StorageIOError("failed to store upload") from exc

        logger.debug("event=storage_saved key=%s size_bytes=%s mime_type=%s", storage_key, size, mime_type)
        return SavedBlob(storage_key=storage_key, size=size)

    def open_read_stream(self, storage_key: str) -> Iterator[bytes]:
        return self._iter_file(self._resolve(storage_key))

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        try:
            handle = open(path, "rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            raise BlobNotFoundError("blob not found") from exc
        except OSError as exc:
            raise StorageIOError("failed to open blob") from exc
        with handle:
            while True:
                try:
                    chunk = handle.read(CHUNK_SIZE)
                except OSError as exc:
                    raise StorageIOError("failed to read blob") from exc
                if not chunk:
                    break
                yield chunk

    def stat(self, storage_key: str) -> BlobStat:
        try:
            path = self._resolve(storage_key)
            st = path.stat()
        except (InvalidKeyError, OSError):
            return BlobStat(exists=False)
        if not path.is_file():
            return BlobStat(exists=False)
        return BlobStat(exists=True, size=st.st_size)

    def delete(self, storage_key: str) -> None:
        path = self._resolve(storage_key)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageIOError("failed to delete blob") from exc
