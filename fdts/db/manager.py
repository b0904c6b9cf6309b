"""
Transactional query façade over the SQLite connection pool.

``DatabaseManager`` is the only entry point repositories and services use
to reach the database. It owns:

- the connection pool (``fdts.db.pool.ConnectionPool``)
- one long-lived main connection reserved for schema setup and migration
  tooling, not counted against the pool
- the initialize/close lifecycle

Construct one instance at process start-up and hand it to whatever needs it
(see ``fdts.container``). Every public operation other than ``initialize``
starts the manager lazily when ``PoolConfig.lazy_initialize`` is set.

Example:
    from fdts.db import DatabaseManager

    db = DatabaseManager("data/fdts.db", "data/backups", max_connections=10)
    db.initialize()

    db.execute_update("INSERT INTO departments (id, name, code) VALUES (?, ?, ?)",
                      ("d1", "Computer Science", "CSE"))
    rows = db.execute_query("SELECT * FROM departments")

    def approve(conn):
        conn.execute("UPDATE submissions SET status = 'approved' WHERE id = ?", (sid,))
        conn.execute("INSERT INTO audit_logs (id, action, entity_type) VALUES (?, ?, ?)",
                     (log_id, "approve", "submission"))

    db.execute_transaction(approve)
    db.close()

Note:
    ``":memory:"`` works as a path, but every pooled connection then opens
    its own private in-memory database.
"""

from __future__ import annotations

import re
import sqlite3
import threading
import time
from collections.abc import Callable, Generator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, TypeVar

from fdts.db.errors import (
    DatabaseError,
    InitializationError,
    NotInitializedError,
    QueryError,
    TransactionError,
    TransactionTimeoutError,
)
from fdts.db.pool import _CONFIGURED, ConnectionPool, PoolConfig
from fdts.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Params = Sequence[Any] | Mapping[str, Any]

_SAVEPOINT_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Engine messages worth another attempt
_RETRYABLE_MESSAGES = ("database is locked", "database is busy", "database table is locked")


@dataclass(frozen=True)
class UpdateResult:
    """Outcome of an INSERT/UPDATE/DELETE."""

    changes: int
    last_insert_id: int


@dataclass(frozen=True)
class DatabaseStats:
    """Pool counters plus on-disk size as reported by the engine."""

    active_connections: int
    pool_size: int
    database_size: int
    page_count: int
    page_size: int


@dataclass(frozen=True)
class SavepointStep:
    """One step of ``DatabaseManager.execute_with_savepoints``."""

    name: str
    operation: Callable[[sqlite3.Connection], Any]
    on_error: Callable[[Exception, sqlite3.Connection], None] | None = None


class DatabaseManager:
    """
    Connection-pooled access to the FDTS SQLite database.

    Callers never open, configure or close connections themselves; they use
    the ``execute_*`` primitives, or ``connection()`` / ``transaction()``
    when they need the raw connection for a scoped block.
    """

    def __init__(
        self,
        database_path: Path | str,
        backup_path: Path | str | None = None,
        max_connections: int | None = None,
        config: PoolConfig | None = None,
    ):
        """
        Args:
            database_path: Location of the database file; its parent
                directory is created on initialize
            backup_path: Directory for backups (default: ``<db dir>/backups``)
            max_connections: Hard cap on pooled connections, overriding
                ``config.max_connections``
            config: Pool and pragma configuration
        """
        self.database_path = Path(database_path)
        self.backup_path = (
            Path(backup_path)
            if backup_path is not None
            else self.database_path.parent / "backups"
        )

        config = config or PoolConfig()
        if max_connections is not None:
            config = replace(config, max_connections=max_connections)
        self.config = config

        self.pool = ConnectionPool(self.database_path, self.config)
        self._main: sqlite3.Connection | None = None
        self._initialized = False
        self._init_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any) -> DatabaseManager:
        """Build a manager from ``fdts.config.DatabaseSettings``."""
        return cls(
            settings.database_path,
            settings.backup_path,
            config=settings.pool_config(),
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def max_connections(self) -> int:
        return self.config.max_connections

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        Create directories, open the main connection and pre-fill the pool.

        Idempotent: calling it again on an initialized manager does nothing.

        Raises:
            InitializationError: If anything fails; the process should not
                continue without a database.
        """
        with self._init_lock:
            if self._initialized:
                return

            try:
                self.database_path.parent.mkdir(parents=True, exist_ok=True)
                self.backup_path.mkdir(parents=True, exist_ok=True)

                self.pool.open()
                self._main = self.pool.connect()
                self.pool.fill(self.config.initial_fill)
            except (OSError, DatabaseError) as e:
                logger.error(
                    "database_initialization_failed",
                    database_path=str(self.database_path),
                    error=str(e),
                )
                self._teardown()
                raise InitializationError(f"Database initialization failed: {e}") from e

            self._initialized = True

        logger.info(
            "database_manager_initialized",
            database_path=str(self.database_path),
            max_connections=self.config.max_connections,
            pool_size=self.pool.available,
        )

    def close(self) -> None:
        """
        Close pooled connections and the main connection, reset counters.

        Safe to call repeatedly and before ``initialize``. A later
        ``initialize`` rebuilds everything.
        """
        with self._init_lock:
            was_initialized = self._initialized
            self._teardown()
            self._initialized = False

        if was_initialized:
            logger.info("database_manager_closed", database_path=str(self.database_path))

    def _teardown(self) -> None:
        self.pool.close_all()
        if self._main is not None:
            try:
                self._main.close()
            except sqlite3.Error as e:
                logger.error("main_connection_close_failed", error=str(e))
            self._main = None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        if not self.config.lazy_initialize:
            raise NotInitializedError("DatabaseManager.initialize() has not been called")
        self.initialize()

    def __enter__(self) -> DatabaseManager:
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def get_connection(self, timeout: Any = _CONFIGURED) -> sqlite3.Connection:
        """
        Check out a configured connection.

        Blocks while the pool is at capacity. Every connection obtained here
        must be handed back with ``release_connection`` exactly once, from
        the same thread; prefer ``connection()`` which guarantees it.

        Args:
            timeout: Seconds to wait at capacity, None for no limit.
                Defaults to ``PoolConfig.acquire_timeout``.

        Raises:
            PoolExhaustedError: If the timeout elapses
            DatabaseConnectionError: If a new connection cannot be opened
                or the manager is closed concurrently
        """
        self._ensure_initialized()
        return self.pool.acquire(timeout)

    def release_connection(self, conn: sqlite3.Connection) -> None:
        """Return a connection obtained from ``get_connection``."""
        self.pool.release(conn)

    def get_main_connection(self) -> sqlite3.Connection:
        """The long-lived connection reserved for schema and migration work."""
        self._ensure_initialized()
        if self._main is None:
            raise DatabaseError("Main database connection not available")
        return self._main

    @contextmanager
    def connection(self, timeout: Any = _CONFIGURED) -> Generator[sqlite3.Connection, None, None]:
        """Scoped acquisition: the connection is released on every exit path."""
        conn = self.get_connection(timeout)
        try:
            yield conn
        finally:
            self.release_connection(conn)

    @contextmanager
    def transaction(self, timeout: float | None = None) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block inside ``BEGIN`` ... ``COMMIT`` on one pooled connection.

        Any exception from the block rolls the transaction back and is
        re-raised unchanged. A failed rollback is logged and does not mask
        the original error.

        Args:
            timeout: Seconds the whole transaction may take, counted from
                the request for a connection. Checked once ``BEGIN`` has run
                and again before ``COMMIT``; None disables the check.

        Raises:
            TransactionError: If ``BEGIN`` or ``COMMIT`` fails
            TransactionTimeoutError: If ``timeout`` is exceeded
        """
        started = time.monotonic()
        with self.connection() as conn:
            try:
                conn.execute("BEGIN")
            except sqlite3.Error as e:
                logger.error("transaction_begin_failed", error=str(e))
                raise TransactionError(f"Failed to begin transaction: {e}") from e
            logger.debug("transaction_started", timeout=timeout)

            try:
                _check_elapsed(started, timeout, "before execution")
                yield conn
                _check_elapsed(started, timeout, "before commit")
            except Exception as e:
                self._rollback(conn)
                logger.error(
                    "transaction_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                raise

            if not conn.in_transaction:
                # The block already ended the transaction itself
                return
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                logger.error("transaction_commit_failed", error=str(e))
                raise TransactionError(f"Failed to commit transaction: {e}") from e
            logger.debug(
                "transaction_committed",
                duration_ms=int((time.monotonic() - started) * 1000),
            )

    def execute_transaction(
        self,
        work: Callable[[sqlite3.Connection], T],
        retry_attempts: int = 1,
        retry_delay: float = 0.1,
        timeout: float | None = None,
    ) -> T:
        """
        Call ``work(conn)`` inside a transaction and return its result.

        Writes made by ``work`` are all committed, or, if it raises, all
        rolled back before the exception propagates.

        Args:
            work: Unit of work receiving the transaction's connection
            retry_attempts: Total attempts; a failed attempt is retried only
                when the engine reported the database as locked or busy
            retry_delay: Seconds to sleep between attempts
            timeout: Per-attempt limit, see ``transaction()``
        """
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")

        attempt = 0
        while True:
            attempt += 1
            try:
                with self.transaction(timeout) as conn:
                    return work(conn)
            except Exception as e:
                if attempt >= retry_attempts or not is_retryable_error(e):
                    raise
                logger.warning(
                    "transaction_retrying",
                    attempt=attempt,
                    max_attempts=retry_attempts,
                    error=str(e),
                )
                time.sleep(retry_delay)

    def execute_batch(
        self,
        operations: Sequence[Callable[[sqlite3.Connection], T]],
        **options: Any,
    ) -> list[T]:
        """
        Run several units of work in one transaction, in order.

        Returns their results in the same order. The first failure rolls
        back every operation. ``options`` are passed to
        ``execute_transaction``.
        """

        def run(conn: sqlite3.Connection) -> list[T]:
            results = []
            for index, operation in enumerate(operations):
                try:
                    results.append(operation(conn))
                except Exception as e:
                    logger.error(
                        "batch_operation_failed",
                        operation_index=index,
                        total_operations=len(operations),
                        error=str(e),
                    )
                    raise
            return results

        return self.execute_transaction(run, **options)

    @contextmanager
    def savepoint(self, conn: sqlite3.Connection, name: str) -> Generator[sqlite3.Connection, None, None]:
        """
        Nest a named savepoint inside the transaction open on ``conn``.

        An exception from the block rolls back to the savepoint, so only the
        block's writes are undone, and is re-raised. Otherwise the savepoint
        is released and its writes become part of the enclosing transaction.

        Raises:
            ValueError: If ``name`` is not a plain identifier
            TransactionError: If no transaction is open on ``conn`` or the
                savepoint cannot be created or released
        """
        if not _SAVEPOINT_NAME.match(name):
            raise ValueError(f"Invalid savepoint name: {name!r}")
        if not conn.in_transaction:
            raise TransactionError(f"No active transaction for savepoint {name}")

        try:
            conn.execute(f"SAVEPOINT {name}")
        except sqlite3.Error as e:
            logger.error("savepoint_create_failed", name=name, error=str(e))
            raise TransactionError(f"Failed to create savepoint {name}: {e}") from e
        logger.debug("savepoint_created", name=name)

        try:
            yield conn
        except Exception as e:
            logger.warning("savepoint_rolled_back", name=name, error=str(e))
            try:
                conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                conn.execute(f"RELEASE SAVEPOINT {name}")
            except sqlite3.Error as rollback_error:
                logger.error("savepoint_rollback_failed", name=name, error=str(rollback_error))
            raise

        try:
            conn.execute(f"RELEASE SAVEPOINT {name}")
        except sqlite3.Error as e:
            logger.error("savepoint_release_failed", name=name, error=str(e))
            raise TransactionError(f"Failed to release savepoint {name}: {e}") from e
        logger.debug("savepoint_released", name=name)

    def execute_with_savepoints(self, steps: Sequence[SavepointStep], **options: Any) -> list[Any]:
        """
        Run each step under its own savepoint inside one transaction.

        A failing step is rolled back to its savepoint. When the step has an
        ``on_error`` handler it is called with the error and the connection
        and the remaining steps continue; otherwise the error aborts the
        whole transaction. Returns the results of the steps that succeeded.
        """

        def run(conn: sqlite3.Connection) -> list[Any]:
            results = []
            for step in steps:
                try:
                    with self.savepoint(conn, step.name):
                        results.append(step.operation(conn))
                except TransactionError:
                    raise
                except Exception as e:
                    if step.on_error is None:
                        raise
                    step.on_error(e, conn)
            return results

        return self.execute_transaction(run, **options)

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
                logger.debug("transaction_rolled_back")
        except sqlite3.Error as e:
            logger.error("transaction_rollback_failed", error=str(e))

    # ------------------------------------------------------------------
    # Query primitives
    # ------------------------------------------------------------------

    def execute_query(self, sql: str, params: Params = ()) -> list[sqlite3.Row]:
        """Run a query and return every row."""
        with self.connection() as conn:
            logger.debug("executing_query", sql=sql, params=params)
            return self._execute(conn, sql, params).fetchall()

    def execute_query_single(self, sql: str, params: Params = ()) -> sqlite3.Row | None:
        """Run a query and return the first row, or None."""
        with self.connection() as conn:
            logger.debug("executing_single_query", sql=sql, params=params)
            cursor = self._execute(conn, sql, params)
            try:
                return cursor.fetchone()
            finally:
                # Finalize the statement so no read snapshot stays open
                cursor.close()

    def execute_update(self, sql: str, params: Params = ()) -> UpdateResult:
        """Run INSERT/UPDATE/DELETE (or DDL) and report the affected rows."""
        with self.connection() as conn:
            logger.debug("executing_update", sql=sql, params=params)
            cursor = self._execute(conn, sql, params)
            return UpdateResult(
                changes=max(cursor.rowcount, 0),
                last_insert_id=cursor.lastrowid or 0,
            )

    def execute_script(self, script: str) -> None:
        """Run a multi-statement script on a single pooled connection."""
        with self.connection() as conn:
            for statement in split_statements(script):
                self._execute(conn, statement, ())

    @staticmethod
    def _execute(conn: sqlite3.Connection, sql: str, params: Params) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, params)
        except sqlite3.Error as e:
            logger.error("query_failed", sql=sql, params=params, error=str(e))
            raise QueryError(sql, params, f"Query failed: {e}") from e

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def health_check(self) -> bool:
        """Return True when a trivial SELECT succeeds. Never raises."""
        try:
            row = self.execute_query_single("SELECT 1 AS health")
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            return False
        return row is not None and row["health"] == 1

    def get_stats(self) -> DatabaseStats:
        """Pool counters and database size from ``page_count * page_size``."""
        page_count = self.execute_query_single("PRAGMA page_count")
        page_size = self.execute_query_single("PRAGMA page_size")
        count = page_count[0] if page_count else 0
        size = page_size[0] if page_size else 0
        return DatabaseStats(
            active_connections=self.pool.active,
            pool_size=self.pool.available,
            database_size=count * size,
            page_count=count,
            page_size=size,
        )


def split_statements(script: str) -> list[str]:
    """
    Split a SQL script into individual statements.

    ``sqlite3`` only executes one statement per ``execute`` call, and
    ``executescript`` commits any open transaction first, so scripts that
    must run inside a transaction are fed statement by statement.
    """
    statements: list[str] = []
    buffer = ""
    chunks = script.split(";")
    for index, chunk in enumerate(chunks):
        buffer += chunk
        if index < len(chunks) - 1:
            buffer += ";"
        if sqlite3.complete_statement(buffer):
            if _has_sql(buffer.replace(";", " ")):
                statements.append(buffer.strip())
            buffer = ""
    if _has_sql(buffer):
        statements.append(buffer.strip())
    return statements


def _has_sql(text: str) -> bool:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("--"):
            return True
    return False


def is_retryable_error(error: BaseException | None) -> bool:
    """True when ``error``, or an error it was raised from, is a locked/busy engine error."""
    while error is not None:
        if isinstance(error, sqlite3.OperationalError):
            message = str(error).lower()
            if any(pattern in message for pattern in _RETRYABLE_MESSAGES):
                return True
        error = error.__cause__
    return False


def _check_elapsed(started: float, timeout: float | None, stage: str) -> None:
    if timeout is None:
        return
    elapsed = time.monotonic() - started
    if elapsed > timeout:
        raise TransactionTimeoutError(
            f"Transaction timed out {stage} ({elapsed:.3f}s > {timeout}s)"
        )
