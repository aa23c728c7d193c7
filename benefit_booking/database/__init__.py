"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import logging
import random
import time
from typing import Any, Callable, Generator, Iterator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker

from benefit_booking.core.config import settings
from benefit_booking.core.exceptions import TRANSIENT_EXCEPTIONS, is_lock_contention

logger = logging.getLogger(__name__)


Base: DeclarativeMeta = declarative_base()


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Pool settings for server databases; SQLite gets a busy timeout instead."""
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 30}, "future": True}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        # Fail fast when the pool is exhausted so callers can back off and retry
        "pool_timeout": settings.db_pool_timeout_seconds,
        "pool_pre_ping": True,
        "future": True,
    }


def make_engine(db_url: str) -> Engine:
    created = create_engine(db_url, **_build_engine_kwargs(db_url))

    @event.listens_for(created, "connect")
    def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info["connect_time"] = datetime.now()
        logger.debug("Database connection established")

    return created


engine: Engine = make_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Context manager for short-lived DB operations (tasks, scripts)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


T = TypeVar("T")


def _is_retryable_db_error(exc: Exception) -> bool:
    # Repositories wrap driver errors, so look through the exception chain
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, TRANSIENT_EXCEPTIONS):
            return True
        if isinstance(current, OperationalError) and is_lock_contention(current):
            return True
        current = current.__cause__ or current.__context__
    return False


def _retry_delay(attempt: int) -> float:
    base = 0.05 * (2 ** (attempt - 1))
    return base + random.uniform(0, 0.05 * attempt)


def with_db_retry(op_name: str, func: Callable[[], T], *, max_attempts: int | None = None) -> T:
    """
    Execute a whole engine operation with retries for transient storage failures.

    The booking engine never retries on its own; every operation it exposes
    is all-or-nothing, so the caller re-running it whole cannot double-apply
    effects.
    """
    attempts_allowed = max_attempts or settings.db_retry_max_attempts
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            if attempt >= attempts_allowed or not _is_retryable_db_error(exc):
                raise

            delay = _retry_delay(attempt)
            logger.warning(
                "Transient storage failure detected, retrying",
                extra={
                    "event": "db_retry",
                    "op": op_name,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            time.sleep(delay)
            attempt += 1


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "get_db",
    "get_db_session",
    "make_engine",
    "with_db_retry",
]
