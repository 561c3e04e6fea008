from datetime import timedelta

import pytest

from linkdrop.db import create_db_engine, init_db
from linkdrop.models import FileRecord, utcnow
from linkdrop.registry import SQLRegistry
from linkdrop.storage.local import LocalStorage
from linkdrop.tokens import generate_token


@pytest.fixture
def engine(tmp_path):
    db_engine = create_db_engine(f"sqlite:///{tmp_path / 'registry.db'}")
    init_db(db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def registry(engine):
    return SQLRegistry(engine)


@pytest.fixture
def storage(tmp_path):
    return LocalStorage(tmp_path / "blobs")


@pytest.fixture
def make_record(registry):
    def _make(max_downloads=1, expires_in=timedelta(hours=1), created_at=None, storage_key=None, **fields):
        token = fields.pop("token", None) or generate_token()
        now = utcnow()
        record = FileRecord(
            token=token,
            storage_key=storage_key or f"2026/01/01/{token}.txt",
            original_name=fields.pop("original_name", "report.txt"),
            mime_type=fields.pop("mime_type", "text/plain"),
            size_bytes=fields.pop("size_bytes", 5),
            created_at=created_at or now,
            expires_at=now + expires_in,
            max_downloads=max_downloads,
            **fields,
        )
        return registry.create(record)

    return _make
