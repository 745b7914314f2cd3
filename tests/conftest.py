"""Shared fixtures for the calsync test suite."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING

import pytest

from calsync.testing import InMemoryEventStore

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer


@pytest.fixture
def memory_store() -> InMemoryEventStore:
    """Fresh in-memory event store with no settings."""
    return InMemoryEventStore()


@pytest.fixture
def restore_root_logging() -> Iterator[None]:
    """Snapshot root logger handlers/level and restore them after the test."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Session-wide Postgres testcontainer for DB-backed tests."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg
