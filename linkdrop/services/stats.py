from sqlalchemy import Engine, func
from sqlmodel import select

from linkdrop.db import session_scope
from linkdrop.models import FileRecord


def fetch_storage_totals(engine: Engine) -> dict[str, int]:
    with session_scope(engine) as session:
        active_files = session.exec(
            select(func.count(FileRecord.token)).where(FileRecord.is_deleted == False)  # noqa: E712
        ).one()
        active_bytes = session.exec(
            select(func.coalesce(func.sum(FileRecord.size_bytes), 0)).where(FileRecord.is_deleted == False)  # noqa: E712
        ).one()
        soft_deleted = session.exec(
            select(func.count(FileRecord.token)).where(FileRecord.is_deleted == True)  # noqa: E712
        ).one()

    return {
        "active_files": int(active_files or 0),
        "active_bytes": int(active_bytes or 0),
        "soft_deleted_files": int(soft_deleted or 0),
    }
