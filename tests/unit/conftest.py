from collections.abc import Generator
from contextlib import ExitStack, nullcontext
from unittest.mock import patch

import pytest

from invoice_pipeline.config.settings import Settings

from tests.unit.fakes import (
    CONNECTION_USERS,
    FakeConnection,
    FakeJobRepository,
    FakeLedger,
    FakeSessionRepository,
    InMemoryDb,
    InMemoryStorage,
    make_settings,
)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def fake_conn() -> Generator[FakeConnection, None, None]:
    """Route every get_connection() in the service modules to one fake connection."""
    conn = FakeConnection()
    with ExitStack() as stack:
        for module in CONNECTION_USERS:
            stack.enter_context(patch(f"{module}.get_connection", lambda: nullcontext(conn)))
        yield conn


@pytest.fixture
def db() -> InMemoryDb:
    return InMemoryDb()


@pytest.fixture
def session_repo(db: InMemoryDb) -> FakeSessionRepository:
    return FakeSessionRepository(db)


@pytest.fixture
def job_repo(db: InMemoryDb) -> FakeJobRepository:
    return FakeJobRepository(db)


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger({7: 100})


