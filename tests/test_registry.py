import threading
from datetime import timedelta

import pytest
from sqlalchemy import update

from linkdrop.core.errors import ConflictError, GoneError, GoneReason, NotFoundError
from linkdrop.db import create_db_engine
from linkdrop.models import FileRecord, utcnow
from linkdrop.registry import ScanCursor, SQLRegistry


def _force(engine, token, **values):
    with engine.begin() as conn:
        conn.execute(update(FileRecord.__table__).where(FileRecord.__table__.c.token == token).values(**values))


def test_create_and_get_round_trip(registry, make_record):
    record = make_record(max_downloads=3)

    stored = registry.get(record.token)
    assert stored is not None
    assert stored.download_count == 0
    assert stored.is_deleted is False
    assert stored.max_downloads == 3
    assert registry.get("0" * 20) is None


def test_create_rejects_duplicate_token(registry, make_record):
    record = make_record()
    duplicate = FileRecord(
        token=record.token,
        storage_key="2026/01/01/other.bin",
        original_name="other.bin",
        mime_type="application/octet-stream",
        size_bytes=1,
        expires_at=utcnow() + timedelta(hours=1),
    )
    with pytest.raises(ConflictError):
        registry.create(duplicate)


def test_create_rejects_duplicate_storage_key(registry, make_record):
    record = make_record()
    with pytest.raises(ConflictError):
        make_record(storage_key=record.storage_key)


def test_consume_until_quota_then_limit_reached(registry, make_record):
    record = make_record(max_downloads=2)

    first = registry.try_consume(record.token)
    assert first.record.download_count == 1
    assert first.should_delete is False
    assert first.record.is_deleted is False

    second = registry.try_consume(record.token)
    assert second.record.download_count == 2
    assert second.should_delete is True
    assert second.record.is_deleted is True

    with pytest.raises(GoneError) as excinfo:
        registry.try_consume(record.token)
    assert excinfo.value.reason is GoneReason.LIMIT_REACHED
    assert registry.get(record.token).download_count == 2


def test_expired_record_is_refused_without_spending(registry, make_record):
    record = make_record(max_downloads=5, expires_in=timedelta(minutes=-1))

    with pytest.raises(GoneError) as excinfo:
        registry.try_consume(record.token)

    assert excinfo.value.reason is GoneReason.EXPIRED
    assert registry.get(record.token).download_count == 0


def test_expiry_boundary_is_exclusive(registry, make_record):
    record = make_record(max_downloads=5)

    with pytest.raises(GoneError) as excinfo:
        registry.try_consume(record.token, now=record.expires_at)
    assert excinfo.value.reason is GoneReason.EXPIRED

    granted = registry.try_consume(record.token, now=record.expires_at - timedelta(seconds=1))
    assert granted.record.download_count == 1


def test_unknown_token_is_not_found(registry):
    with pytest.raises(NotFoundError):
        registry.try_consume("a" * 20)


def test_deleted_record_reports_deleted(registry, make_record):
    record = make_record(max_downloads=3)
    registry.mark_deleted(record.token)

    with pytest.raises(GoneError) as excinfo:
        registry.try_consume(record.token)
    assert excinfo.value.reason is GoneReason.DELETED


def test_mark_deleted_is_idempotent(registry, make_record):
    record = make_record()

    registry.mark_deleted(record.token)
    registry.mark_deleted(record.token)
    registry.mark_deleted("f" * 20)

    assert registry.get(record.token).is_deleted is True


def test_concurrent_consumers_never_exceed_quota(registry, make_record):
    quota = 3
    workers = 12
    record = make_record(max_downloads=quota)
    barrier = threading.Barrier(workers)
    granted = []
    refused = []
    lock = threading.Lock()

    def consume():
        barrier.wait()
        try:
            result = registry.try_consume(record.token)
        except GoneError as exc:
            with lock:
                refused.append(exc.reason)
        else:
            with lock:
                granted.append(result)

    threads = [threading.Thread(target=consume) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(granted) == quota
    assert sorted(item.record.download_count for item in granted) == list(range(1, quota + 1))
    assert sum(1 for item in granted if item.should_delete) == 1
    assert len(refused) == workers - quota
    assert set(refused) == {GoneReason.LIMIT_REACHED}

    stored = registry.get(record.token)
    assert stored.download_count == quota
    assert stored.is_deleted is True


def test_scan_expired_active_pages_with_cursor(registry, make_record):
    now = utcnow()
    expired = [make_record(expires_in=timedelta(minutes=-(10 - i))) for i in range(3)]
    make_record(expires_in=timedelta(hours=1))
    gone = make_record(expires_in=timedelta(minutes=-30))
    registry.mark_deleted(gone.token)

    first_page = registry.scan_expired_active(2, now=now)
    assert [r.token for r in first_page] == [r.token for r in expired[:2]]

    last = first_page[-1]
    second_page = registry.scan_expired_active(2, ScanCursor(last.expires_at, last.token), now=now)
    assert [r.token for r in second_page] == [expired[2].token]


def test_scan_exhausted_active(engine, registry, make_record):
    exhausted = make_record(max_downloads=2)
    _force(engine, exhausted.token, download_count=2)
    make_record(max_downloads=2)

    page = registry.scan_exhausted_active(10)

    assert [r.token for r in page] == [exhausted.token]


def test_scan_purgeable_respects_horizon(registry, make_record):
    old = make_record(expires_in=timedelta(hours=-48))
    recent = make_record(expires_in=timedelta(hours=-1))
    still_active = make_record(expires_in=timedelta(hours=-72))
    registry.mark_deleted(old.token)
    registry.mark_deleted(recent.token)

    page = registry.scan_purgeable(utcnow() - timedelta(hours=24), 10)

    assert [r.token for r in page] == [old.token]
    assert still_active.token not in {r.token for r in page}


def test_scan_with_zero_limit_returns_nothing(registry, make_record):
    make_record(expires_in=timedelta(minutes=-5))
    assert registry.scan_expired_active(0) == []


def test_delete_removes_record(registry, make_record):
    record = make_record()

    registry.delete(record.token)
    registry.delete(record.token)

    assert registry.get(record.token) is None


def test_timestamps_round_trip_as_naive_utc(registry, make_record):
    record = make_record(max_downloads=2, expires_in=timedelta(hours=3))

    stored = registry.get(record.token)

    assert stored.created_at.tzinfo is None
    assert stored.expires_at.tzinfo is None
    assert stored.expires_at == record.expires_at
    assert registry.try_consume(record.token).record.expires_at == record.expires_at


def test_final_consume_stamps_deleted_at(registry, make_record):
    record = make_record(max_downloads=1)
    moment = utcnow()

    registry.try_consume(record.token, now=moment)

    stored = registry.get(record.token)
    assert stored.deleted_at == moment
    assert stored.blob_reclaimed is False


def test_mark_deleted_keeps_first_deletion_time(registry, make_record):
    record = make_record()
    registry.mark_deleted(record.token)
    first = registry.get(record.token).deleted_at

    registry.mark_deleted(record.token, blob_reclaimed=True)

    stored = registry.get(record.token)
    assert stored.deleted_at == first
    assert stored.blob_reclaimed is True


def test_scan_unreclaimed_respects_grace(registry, make_record):
    pending = make_record()
    reclaimed = make_record()
    registry.try_consume(pending.token, now=utcnow() - timedelta(hours=2))
    registry.mark_deleted(reclaimed.token, blob_reclaimed=True)

    assert registry.scan_unreclaimed(utcnow() - timedelta(hours=3), 10) == []
    page = registry.scan_unreclaimed(utcnow() - timedelta(hours=1), 10)
    assert [r.token for r in page] == [pending.token]


def test_is_available_reports_unreachable_database(tmp_path, registry):
    assert registry.is_available() is True

    broken = SQLRegistry(create_db_engine(f"sqlite:///{tmp_path / 'missing' / 'dir' / 'x.db'}"))
    assert broken.is_available() is False
