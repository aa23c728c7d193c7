# tests/conftest.py
"""
Shared fixtures for the booking engine test suite.

Every test gets its own in-memory SQLite database. Concurrency tests use a
file-backed database instead, so that independent sessions really contend.
"""

import os

# Set before any benefit_booking import reads settings
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["REDIS_URL"] = ""
os.environ["FACILITY_TIMEZONE"] = "UTC"
os.environ.setdefault("CI", "1")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from tests.helpers.booking_factories import (
    BRANCH_ID,
    SAUNA,
    create_grant,
    create_package,
    create_settings,
    create_slot,
)

from benefit_booking.core.enums import NoShowPolicy
from benefit_booking.database import Base
import benefit_booking.models  # noqa: F401
from benefit_booking.services.booking_policy import SettingsSnapshot


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db(db_engine) -> Session:
    SessionLocal = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False, future=True)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def file_engine(tmp_path):
    """
    File-backed SQLite engine where every transaction starts with BEGIN IMMEDIATE.

    The first statement of a transaction takes the write lock, so concurrent
    sessions queue up behind each other instead of failing on lock upgrades.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'concurrency.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False, future=True)


@pytest.fixture
def deferred_session_factory(tmp_path):
    """
    File-backed SQLite with the driver's default deferred transactions.

    Reads take no lock, so another session can commit between a request's
    reads and its writes, as under READ COMMITTED on a server database.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'interleaving.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 5},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, future=True)
    engine.dispose()


@pytest.fixture
def make_slot(db):
    return lambda **kwargs: create_slot(db, **kwargs)


@pytest.fixture
def make_grant(db):
    return lambda **kwargs: create_grant(db, **kwargs)


@pytest.fixture
def make_settings(db):
    return lambda **kwargs: create_settings(db, **kwargs)


@pytest.fixture
def make_package(db):
    return lambda **kwargs: create_package(db, **kwargs)


@pytest.fixture
def default_settings() -> SettingsSnapshot:
    return SettingsSnapshot(
        branch_id=BRANCH_ID,
        benefit_type=SAUNA,
        slot_duration_minutes=60,
        no_show_policy=NoShowPolicy.FORFEIT_CREDIT,
    )
