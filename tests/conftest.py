# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("NONCE_DATABASE_URL", "sqlite://")

from nonce_utility.db.session import Base, create_tables, drop_tables
from nonce_utility.repositories.sql_repo import SqlNonceRepository
from nonce_utility.services.nonce_service import NonceService

TEST_DB_URL = "sqlite://"


@dataclass(frozen=True)
class Owner:
    """Minimal principal satisfying the NonceOwner protocol."""

    id: str


class FrozenClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_tables(bind=engine)
    try:
        yield engine
    finally:
        drop_tables(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def db_session(engine: Engine, session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()
        # Repositories commit, so wipe rows to keep tests independent.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def repository(db_session: Session) -> SqlNonceRepository:
    return SqlNonceRepository(db_session)


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def nonce_service(repository: SqlNonceRepository) -> NonceService:
    """Service over the SQL repository using the real clock."""
    return NonceService(repository)


@pytest.fixture()
def frozen_service(repository: SqlNonceRepository, clock: FrozenClock) -> NonceService:
    """Service over the SQL repository with a controllable clock."""
    return NonceService(repository, clock=clock)


@pytest.fixture()
def owner() -> Owner:
    return Owner(id="user-1")


@pytest.fixture()
def other_owner() -> Owner:
    return Owner(id="user-2")
