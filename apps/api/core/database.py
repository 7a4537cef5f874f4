"""
Engine, session factory and declarative base.

PostgreSQL is the production target. A sqlite URL is accepted for local
runs and the test suite; for it, transaction control is taken over from
pysqlite so SAVEPOINTs (Session.begin_nested) behave as on PostgreSQL.
"""
import logging
import time
from typing import Iterator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url
IS_SQLITE = DATABASE_URL.startswith("sqlite")

CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_SECONDS = 0.1


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, echo=settings.DEBUG)
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )


engine = _build_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_conn, connection_record):
        # Disable pysqlite's implicit BEGIN; the "begin" hook below emits it.
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


def _open_session() -> Session:
    """Session with a verified connection, retried with exponential backoff."""
    attempt = 0
    while True:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
            return db
        except OperationalError as e:
            db.close()
            attempt += 1
            if attempt >= CONNECT_ATTEMPTS:
                logger.error(f"Failed to establish database connection after {CONNECT_ATTEMPTS} attempts: {e}")
                raise
            logger.warning(f"Database connection attempt {attempt} failed, retrying...")
            time.sleep(CONNECT_BACKOFF_SECONDS * (2 ** (attempt - 1)))


def get_db() -> Iterator[Session]:
    """
    FastAPI dependency: one session per request.

    Commits when the endpoint returns, rolls back on any exception. Service
    errors (HTTPException subclasses) are expected outcomes and not logged.
    """
    from fastapi import HTTPException

    db = _open_session()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        db.close()


def check_db_connection() -> bool:
    """True if a connection can be opened and used."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except OperationalError as e:
        logger.error(f"Database connection check failed: {e}")
        return False
