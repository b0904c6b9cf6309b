"""Pytest configuration and shared fixtures."""
import os

import pytest

from fdts.config import DatabaseSettings
from fdts.db.manager import DatabaseManager
from fdts.db.pool import PoolConfig
from fdts.logging_config import configure_logging

configure_logging(level="WARNING", colors=False)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless FDTS_INTEGRATION=1."""
    if os.environ.get("FDTS_INTEGRATION") in ("1", "true", "True"):
        return
    skip = pytest.mark.skip(reason="Set FDTS_INTEGRATION=1 to run integration tests")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


@pytest.fixture
def db_settings(tmp_path):
    """Settings pointing at a throwaway database."""
    return DatabaseSettings(
        database_path=tmp_path / "data" / "fdts.db",
        backup_path=tmp_path / "data" / "backups",
        max_connections=4,
        acquire_timeout=5.0,
    )


@pytest.fixture
def make_manager(tmp_path):
    """Factory for managers on a temp database; all are closed on teardown."""
    created = []

    def factory(max_connections=4, **config):
        config.setdefault("acquire_timeout", 5.0)
        db = DatabaseManager(
            tmp_path / "data" / "fdts.db",
            tmp_path / "data" / "backups",
            config=PoolConfig(max_connections=max_connections, **config),
        )
        created.append(db)
        return db

    yield factory

    for db in created:
        db.close()


@pytest.fixture
def manager(make_manager):
    db = make_manager()
    db.initialize()
    return db


@pytest.fixture
def items_table(manager):
    manager.execute_update(
        "CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE, value INTEGER)"
    )
    return "items"
