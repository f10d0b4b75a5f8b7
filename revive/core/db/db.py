"""Database connection and session management."""

import logging
import time
from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    Built once at process start and passed to every component that
    touches the database.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
        else:
            engine_kwargs.update(pool_size=10, max_overflow=20)

        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        logger.info(f"DatabaseManager initialized ({self.engine.dialect.name})")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_db(self):
        """Create tables that do not exist yet (dev/test; prod uses alembic)."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables ensured")

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Yield a session that commits on success and rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()


def get_database_manager(database_url: Optional[str]) -> Optional[DatabaseManager]:
    """Build a DatabaseManager, or None when no URL is configured."""
    if not database_url:
        logger.warning("DATABASE_URL not set. Pipeline state will be unavailable.")
        return None
    return DatabaseManager(database_url)


def wait_for_db(database_url: str, retries: int = 10, delay: float = 2.0) -> bool:
    """Block until the database accepts connections or retries run out."""
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        for attempt in range(1, retries + 1):
            try:
                with engine.connect() as conn:
                    conn.execute(text("SELECT 1"))
                logger.info("Database is available")
                return True
            except OperationalError as e:
                logger.warning(
                    f"Database not ready (attempt {attempt}/{retries}): {e}"
                )
                time.sleep(delay)
        return False
    finally:
        engine.dispose()
