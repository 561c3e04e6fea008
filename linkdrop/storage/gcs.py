"""
Google Cloud Storage adapter.

Objects live under `<prefix>/<storage key>` in a single bucket. Uploads use an
`if_generation_match=0` precondition so an existing object is never
overwritten, and GCS only makes an object visible once the upload completes,
so no partial blob is ever addressable.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import suppress

from google.api_core.exceptions import PreconditionFailed
from google.cloud import storage
from google.cloud.exceptions import GoogleCloudError, NotFound

from linkdrop.core.errors import BlobNotFoundError, ConflictError, StorageIOError
from linkdrop.storage.base import (
    CHUNK_SIZE,
    BlobStat,
    SavedBlob,
    StorageAdapter,
    build_storage_key,
    validate_key,
)

logger = logging.getLogger("linkdrop.storage")


class GCSStorage(StorageAdapter):
    name = "gcs"

    def __init__(self, bucket_name: str, prefix: str = "", client: storage.Client | None = None):
        if not bucket_name or not bucket_name.strip():
            raise ValueError("bucket_name cannot be empty")
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")
        if self.prefix:
            validate_key(self.prefix)
        self.client = client or storage.Client()
        self.bucket = self.client.bucket(bucket_name)

    def _blob_name(self, storage_key: str) -> str:
        validate_key(storage_key)
        return f"{self.prefix}/{storage_key}" if self.prefix else storage_key

    def save_from_staging(
        self, staging_path: str, *, token: str, original_name: str, mime_type: str
    ) -> SavedBlob:
        storage_key = build_storage_key(token, original_name)
        blob = self.bucket.blob(self._blob_name(storage_key))
        try:
            blob.upload_from_filename(staging_path, content_type=mime_type, if_generation_match=0)
        except PreconditionFailed as exc:
            raise ConflictError(f"storage key already exists: {storage_key}") from exc
        except (GoogleCloudError, OSError) as exc:
            logger.error("event=storage_save_failure key=%s bucket=%s error=%s", storage_key, self.bucket_name, exc)
            raise StorageIOError("failed to store upload") from exc
        try:
            blob.reload()
        except (GoogleCloudError, OSError) as exc:
            logger.error(
                "event=storage_save_failure key=%s bucket=%s stage=reload error=%s",
                storage_key,
                self.bucket_name,
                exc,
            )
            # Nothing references the object yet
            with suppress(GoogleCloudError, OSError):
                blob.delete()
            raise StorageIOError("failed to store upload") from exc
        return SavedBlob(storage_key=storage_key, size=int(blob.size or 0))

    def open_read_stream(self, storage_key: str) -> Iterator[bytes]:
        return self._iter_blob(self.bucket.blob(self._blob_name(storage_key)))

    @staticmethod
    def _iter_blob(blob) -> Iterator[bytes]:
        try:
            reader = blob.open("rb", chunk_size=CHUNK_SIZE)
        except NotFound as exc:
            raise BlobNotFoundError("blob not found") from exc
        except (GoogleCloudError, OSError) as exc:
            raise StorageIOError("failed to open blob") from exc
        try:
            first = reader.read(CHUNK_SIZE)
        except (GoogleCloudError, OSError) as exc:
            with suppress(GoogleCloudError, OSError):
                reader.close()
            if isinstance(exc, NotFound):
                raise BlobNotFoundError("blob not found") from exc
            raise StorageIOError("failed to open blob") from exc
        with reader:
            chunk = first
            while chunk:
                yield chunk
                try:
                    chunk = reader.read(CHUNK_SIZE)
                except (GoogleCloudError, OSError) as exc:
                    raise StorageIOError("failed to read blob") from exc

    def stat(self, storage_key: str) -> BlobStat:
        try:
            blob = self.bucket.get_blob(self._blob_name(storage_key))
        except Exception:
            return BlobStat(exists=False)
        if blob is None:
            return BlobStat(exists=False)
        return BlobStat(exists=True, size=blob.size)

    def delete(self, storage_key: str) -> None:
        blob = self.bucket.blob(self._blob_name(storage_key))
        try:
            blob.delete()
        except NotFound:
            return
        except (GoogleCloudError, OSError) as exc:
            raise StorageIOError("failed to delete blob") from exc
