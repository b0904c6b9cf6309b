"""
Database package for the FDTS datastore.

Provides:
- SQLite connection pooling
- The ``DatabaseManager`` query/transaction façade
- Schema migrations and backups
"""

from __future__ import annotations

from .errors import (
    DatabaseConnectionError,
    DatabaseError,
    InitializationError,
    MigrationError,
    NotInitializedError,
    PoolExhaustedError,
    QueryError,
    TransactionError,
    TransactionTimeoutError,
)
from .manager import DatabaseManager, DatabaseStats, SavepointStep, UpdateResult
from .migrations import MigrationManager
from .pool import ConnectionPool, PoolConfig, PooledConnection

__all__ = [
    "ConnectionPool",
    "DatabaseConnectionError",
    "DatabaseError",
    "DatabaseManager",
    "DatabaseStats",
    "InitializationError",
    "MigrationError",
    "MigrationManager",
    "NotInitializedError",
    "PoolConfig",
    "PoolExhaustedError",
    "PooledConnection",
    "QueryError",
    "SavepointStep",
    "TransactionError",
    "TransactionTimeoutError",
    "UpdateResult",
]
