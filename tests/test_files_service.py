from datetime import timedelta, timezone

import pytest

from linkdrop.core.errors import BlobNotFoundError, GoneError, GoneReason, NotFoundError
from linkdrop.core.metrics import MetricsStore
from linkdrop.models import utcnow
from linkdrop.services import files as files_module
from linkdrop.services.files import FileService
from linkdrop.storage.base import build_storage_key
from linkdrop.tokens import is_valid_token


@pytest.fixture
def metrics():
    return MetricsStore()


@pytest.fixture
def service(registry, storage, metrics):
    return FileService(registry, storage, default_expiry_hours=24, max_downloads_cap=10, metrics=metrics)


@pytest.fixture
def staged(tmp_path):
    path = tmp_path / "incoming.upload"
    path.write_bytes(b"quarterly numbers")
    return str(path)


def test_upload_registers_and_stores(service, registry, storage, staged, metrics):
    result = service.upload(staged, "Q3 report.pdf", "application/pdf", max_downloads=2)

    assert is_valid_token(result.token)
    assert result.size == len(b"quarterly numbers")
    assert result.max_downloads == 2
    record = registry.get(result.token)
    assert record.storage_key.endswith(f"{result.token}.pdf")
    assert storage.stat(record.storage_key).exists is True
    assert abs((record.expires_at - utcnow()) - timedelta(hours=24)) < timedelta(minutes=1)
    assert metrics.snapshot()["uploads"] == 1
    assert metrics.snapshot()["bytes_uploaded"] == result.size


def test_resolve_options_bounds(service):
    now = utcnow()
    with pytest.raises(ValueError, match="future"):
        service.resolve_options(now - timedelta(seconds=1), None, now)
    with pytest.raises(ValueError, match="at least 1"):
        service.resolve_options(None, 0, now)
    with pytest.raises(ValueError, match="cannot exceed 10"):
        service.resolve_options(None, 11, now)

    aware = (now + timedelta(hours=2)).replace(tzinfo=timezone.utc)
    expires_at, max_downloads = service.resolve_options(aware, None, now)
    assert expires_at.tzinfo is None
    assert expires_at == now + timedelta(hours=2)
    assert max_downloads == 1


def test_single_download_then_reclaimed(service, registry, storage, staged, metrics):
    result = service.upload(staged, "notes.txt", "text/plain")

    download = service.open_download(result.token)
    assert download.should_delete is True
    assert b"".join(download.stream) == b"quarterly numbers"
    service.finish_download(download)

    record = registry.get(result.token)
    assert record.is_deleted is True
    assert record.download_count == 1
    assert storage.stat(record.storage_key).exists is False
    assert record.blob_reclaimed is True

    with pytest.raises(GoneError) as excinfo:
        service.open_download(result.token)
    assert excinfo.value.reason is GoneReason.LIMIT_REACHED
    assert metrics.snapshot()["downloads"] == 1
    assert metrics.snapshot()["downloads_refused"] == 1
    assert metrics.snapshot()["refusals_by_reason"] == {"limit_reached": 1}


def test_multi_download_keeps_blob_until_last(service, registry, storage, staged):
    result = service.upload(staged, "notes.txt", "text/plain", max_downloads=2)

    first = service.open_download(result.token)
    assert first.should_delete is False
    b"".join(first.stream)
    service.finish_download(first)
    record = registry.get(result.token)
    assert storage.stat(record.storage_key).exists is True

    info = service.info(result.token)
    assert info.remaining_downloads == 1
    assert info.status == "active"


def test_missing_blob_still_spends_the_download(service, registry, storage, staged):
    result = service.upload(staged, "notes.txt", "text/plain", max_downloads=3)
    record = registry.get(result.token)
    storage.delete(record.storage_key)

    with pytest.raises(BlobNotFoundError):
        service.open_download(result.token)

    assert registry.get(result.token).download_count == 1


def test_unknown_token_info_raises(service):
    with pytest.raises(NotFoundError):
        service.info("b" * 20)
    with pytest.raises(NotFoundError):
        service.open_download("b" * 20)


def test_token_collision_in_registry_is_retried(monkeypatch, service, registry, storage, staged, make_record):
    taken = make_record()
    fresh = "c" * 20
    tokens = iter([taken.token, fresh])
    monkeypatch.setattr(files_module, "generate_token", lambda: next(tokens))

    result = service.upload(staged, "notes.txt", "text/plain")

    assert result.token == fresh
    assert registry.get(taken.token).storage_key == taken.storage_key
    assert storage.stat(build_storage_key(taken.token, "notes.txt")).exists is False


def test_expired_info_reports_status(service, registry, make_record):
    record = make_record(expires_in=timedelta(minutes=-1))

    info = service.info(record.token)

    assert info.status == "expired"
    assert info.remaining_downloads == 1
