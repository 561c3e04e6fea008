from collections.abc import Iterator
from contextlib import contextmanager
import logging

from sqlalchemy import Engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import QueuePool
from sqlmodel import Session, SQLModel, create_engine

from linkdrop import config

logger = logging.getLogger("linkdrop.db")


def create_db_engine(url: str | None = None) -> Engine:
    url = url or config.DB_URL
    # Pooling parameters keep long-running processes healthy across idle periods
    return create_engine(
        url,
        connect_args=config.connect_args_for(url),
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=20,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,   # Recycle connections after 1 hour
        echo=False,
    )


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)
    logger.info("event=db_ready url=%s", engine.url.render_as_string(hide_password=True))


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    with Session(engine, expire_on_commit=False) as session:
        yield session


def ensure_connection(engine: Engine) -> bool:
    """Readiness check: run a trivial query on a pooled connection."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False
