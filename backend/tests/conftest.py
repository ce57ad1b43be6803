from __future__ import annotations

import datetime as dt
import os
import tempfile
from pathlib import Path
from typing import Generator

os.environ.setdefault("LT_SQLITE_PATH", str(Path(tempfile.mkdtemp()) / "loipentrack.db"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from loipentrack import models
from loipentrack.database import get_db
from loipentrack.main import app, get_now
from loipentrack.timer import TimerRegistry


class Clock:
    """Adjustable wall clock handed to the app instead of the real one."""

    def __init__(self, now: dt.datetime):
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def set(self, value: str) -> dt.datetime:
        self.now = dt.datetime.combine(self.now.date(), dt.time.fromisoformat(value))
        return self.now

    def advance(self, **kwargs) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def temp_db_path() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "test.db"
        yield path


@pytest.fixture(scope="session")
def engine(temp_db_path: Path):
    url = f"sqlite:///{temp_db_path}"
    engine = create_engine(url, connect_args={"check_same_thread": False}, future=True)

    # pysqlite only emits BEGIN itself on DML; take over so SAVEPOINTs nest
    # inside the per-test transaction and are rolled back with it
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    models.Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(scope="function")
def session(engine) -> Generator[Session, None, None]:
    connection = engine.connect()
    transaction = connection.begin()
    SessionTesting = sessionmaker(
        bind=connection,
        autoflush=False,
        autocommit=False,
        future=True,
        join_transaction_mode="create_savepoint",
    )
    session = SessionTesting()
    try:
        yield session
    finally:
        session.close()
        transaction.rollback()
        connection.close()


@pytest.fixture()
def sample_day() -> dt.date:
    return dt.date(2025, 1, 10)


@pytest.fixture()
def clock(sample_day: dt.date) -> Clock:
    return Clock(dt.datetime.combine(sample_day, dt.time(8, 0)))


@pytest.fixture(scope="function")
def client(session: Session, clock: Clock) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_now] = clock
    runtime_state = app.state.runtime_state
    previous_timers = runtime_state.timers
    runtime_state.timers = TimerRegistry(checkpoint_pauses=True)
    with TestClient(app) as c:
        yield c
    runtime_state.timers = previous_timers
    app.dependency_overrides.clear()
