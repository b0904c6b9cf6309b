"""
Exception hierarchy for the FDTS datastore.

Every error raised by the connection pool, the manager façade and the
migration toolkit derives from :class:`DatabaseError`, so callers that only
care about "the database failed" can catch a single type.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any


class DatabaseError(Exception):
    """Base class for datastore failures."""


class InitializationError(DatabaseError):
    """Directory creation, the main connection or the initial pool fill failed.

    Fatal: a process that cannot initialize its datastore should not serve
    traffic.
    """


class NotInitializedError(DatabaseError):
    """An operation ran before ``initialize()`` with lazy start-up disabled."""


class DatabaseConnectionError(DatabaseError):
    """A pooled connection could not be opened or was lost while waiting."""


class PoolExhaustedError(DatabaseConnectionError):
    """No connection became available before the acquire timeout elapsed."""

    def __init__(self, timeout: float, active: int, max_connections: int):
        self.timeout = timeout
        self.active = active
        self.max_connections = max_connections
        super().__init__(
            f"No connection available within {timeout}s "
            f"(active: {active}/{max_connections})"
        )


class QueryError(DatabaseError):
    """A SQL statement failed.

    The failing statement and its parameters are kept on the exception; the
    engine error is available as ``__cause__``.
    """

    def __init__(
        self,
        sql: str,
        params: Sequence[Any] | Mapping[str, Any] | None,
        message: str,
    ):
        self.sql = sql
        self.params = params
        super().__init__(message)


class TransactionError(DatabaseError):
    """``BEGIN`` or ``COMMIT`` itself failed."""


class TransactionTimeoutError(TransactionError):
    """A transaction ran longer than its timeout and was rolled back."""


class MigrationError(DatabaseError):
    """A schema migration could not be applied or tracked."""
