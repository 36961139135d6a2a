"""Pytest configuration and fixtures for test isolation."""

import os

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lifecycle.database import Base
from lifecycle.conditional_order_store import ConditionalOrderStore
from lifecycle.order_store import OrderStore
from lifecycle.position_store import PositionStore
from lifecycle.retry import RetryPolicy
from lifecycle.trade_store import TradeStore


# Use a separate test database (in-memory SQLite unless overridden)
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")


def _make_engine(url):
    if not url.startswith("sqlite"):
        return create_engine(url)

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite needs explicit BEGIN for SAVEPOINT-based test isolation
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine."""
    engine = _make_engine(TEST_DATABASE_URL)

    # Drop all tables first to ensure clean state
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def use_test_database(monkeypatch, test_engine):
    """Patch all database connections to use the test database with transaction rollback."""
    from lifecycle import database, base_store

    # One connection and one outer transaction for the whole test
    connection = test_engine.connect()
    transaction = connection.begin()

    # Each store session runs inside a SAVEPOINT so its commit/rollback stays inside the test
    TestSessionLocal = sessionmaker(bind=connection, join_transaction_mode="create_savepoint")

    monkeypatch.setattr(database, "engine", test_engine)
    monkeypatch.setattr(database, "SessionLocal", TestSessionLocal)

    # BaseStore captured SessionLocal at import time
    monkeypatch.setattr(base_store, "SessionLocal", TestSessionLocal)

    yield

    # Rollback the transaction after the test - this cleans up all test data
    if transaction.is_active:
        transaction.rollback()
    connection.close()


@pytest.fixture
def db_session():
    """A session on the test transaction, for inserting raw rows."""
    from lifecycle import database

    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def order_store():
    return OrderStore()


@pytest.fixture
def position_store():
    return PositionStore()


@pytest.fixture
def conditional_store():
    return ConditionalOrderStore()


@pytest.fixture
def trade_store():
    return TradeStore()


@pytest.fixture
def sleeps():
    """Delays requested by the retry policy."""
    return []


@pytest.fixture
def no_sleep_retry(sleeps):
    """Three-attempt retry policy that records delays instead of sleeping."""
    return RetryPolicy(max_attempts=3, delay_seconds=0.5, sleep=sleeps.append)
