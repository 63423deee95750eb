"""
Engine, session factory and schema bootstrap

SQLite URLs get a single shared connection (StaticPool) so that an in-memory
database is visible to every session; anything else gets a pre-pinged pool.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)

if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")


def _build_engine(url: str):
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=7,
        max_overflow=15,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=30,
        echo=False,
    )


engine = _build_engine(Config.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables() -> bool:
    """Create missing tables; existing ones are left alone"""
    table_names = sorted(Base.metadata.tables)
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
    except Exception as e:
        logger.error(f"❌ SCHEMA_CREATE_FAILED: {e}", exc_info=True)
        return False
    logger.info(f"🏗️ SCHEMA_READY: {len(table_names)} tables ({', '.join(table_names)})")
    return True


@contextmanager
def managed_session(factory: Optional[Callable[[], Session]] = None):
    """Session that commits on success and rolls back on error"""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"❌ SESSION_ROLLBACK: {e}")
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI dependencies"""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def test_connection() -> bool:
    """SELECT 1 against the engine; used by the health probe"""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"❌ DB_PING_FAILED: {e}")
        return False
    return True
