import logging

from linkdrop import config
from linkdrop.storage.base import StorageAdapter
from linkdrop.storage.local import LocalStorage

logger = logging.getLogger("linkdrop.storage")


def build_storage() -> StorageAdapter:
    """Create the adapter selected by STORAGE_TYPE."""
    if config.STORAGE_TYPE == "gcs":
        # Lazy import so google-cloud-storage is only touched when selected
        from linkdrop.storage.gcs import GCSStorage

        adapter = GCSStorage(config.GCS_BUCKET_NAME, prefix=config.GCS_PREFIX)
        logger.info("event=storage_ready backend=gcs bucket=%s prefix=%s", config.GCS_BUCKET_NAME, config.GCS_PREFIX)
        return adapter

    adapter = LocalStorage(config.STORAGE_LOCAL_DIR)
    logger.info("event=storage_ready backend=local root=%s", adapter.root)
    return adapter
