"""
SQLite connection pooling for the FDTS datastore.

Provides thread-safe connection management for a single embedded database
file. Every connection is configured with the same engine pragmas (WAL
journaling, foreign keys, busy timeout, ...) before anyone gets to use it.

Policy:
- Idle connections are reused LIFO, so the most recently released (warm)
  connection is handed out first.
- ``active`` counts idle plus checked-out connections and never exceeds
  ``max_connections``.
- Callers at capacity block on a condition variable until a release frees a
  slot, optionally bounded by a timeout.

Example:
    from fdts.db.pool import ConnectionPool, PoolConfig

    pool = ConnectionPool("data/fdts.db", PoolConfig(max_connections=5))
    pool.fill(2)

    conn = pool.acquire()
    try:
        rows = conn.execute("SELECT * FROM users").fetchall()
    finally:
        pool.release(conn)

    pool.close_all()
"""

from __future__ import annotations

import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from fdts.db.errors import DatabaseConnectionError, PoolExhaustedError
from fdts.logging_config import get_logger

logger = get_logger(__name__)

# Sentinel for "use the configured acquire timeout"
_CONFIGURED = object()


@dataclass
class PoolConfig:
    """Configuration for the connection pool and per-connection pragmas."""

    # Pool size limits
    max_connections: int = 10
    initial_connections: int = 3

    # Seconds to wait for a free slot; None waits forever
    acquire_timeout: float | None = 30.0

    # Start-up
    lazy_initialize: bool = True

    # SQLite settings
    journal_mode: str = "WAL"
    enable_foreign_keys: bool = True
    synchronous: str = "NORMAL"
    cache_size: int = -64000  # 64MB page cache (negative = KB)
    temp_store: str = "MEMORY"
    mmap_size: int = 268435456  # 256MB
    busy_timeout_ms: int = 30000

    def __post_init__(self):
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if self.initial_connections < 0:
            raise ValueError("initial_connections must be >= 0")
        if self.acquire_timeout is not None and self.acquire_timeout < 0:
            raise ValueError("acquire_timeout must be >= 0 or None")
        if self.busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")

    @property
    def initial_fill(self) -> int:
        """Connections opened up-front by ``initialize``."""
        return min(self.initial_connections, self.max_connections)

    def pragmas(self) -> list[tuple[str, Any]]:
        """Pragmas applied, in order, to every new connection."""
        return [
            ("journal_mode", self.journal_mode),
            ("foreign_keys", "ON" if self.enable_foreign_keys else "OFF"),
            ("synchronous", self.synchronous),
            ("cache_size", self.cache_size),
            ("temp_store", self.temp_store),
            ("mmap_size", self.mmap_size),
            ("busy_timeout", self.busy_timeout_ms),
        ]


@dataclass
class PooledConnection:
    """Bookkeeping for a connection owned by the pool."""

    conn: sqlite3.Connection
    generation: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    last_used: datetime = field(default_factory=datetime.now)
    use_count: int = 0
    in_use: bool = False
    owner: int | None = None

    def mark_used(self):
        self.last_used = datetime.now()
        self.use_count += 1
        self.in_use = True
        self.owner = threading.get_ident()

    def mark_returned(self):
        self.last_used = datetime.now()
        self.in_use = False
        self.owner = None

    def close(self):
        """Close the underlying connection, logging instead of raising."""
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.error("connection_close_failed", error=str(e))


class ConnectionPool:
    """
    Thread-safe pool of connections to one SQLite file.

    The idle list and counters are only touched while holding ``_lock``.
    Physical opens happen outside the lock after a slot has been reserved,
    so a slow open never stalls releases.

    ``close_all`` bumps the pool generation. Connections checked out under
    an older generation are closed when released instead of being pooled,
    and callers waiting for capacity are woken with an error.
    A closed pool lends nothing until ``open`` is called again.
    """

    def __init__(self, db_path: Path | str, config: PoolConfig | None = None):
        """
        Initialize the connection pool. No connection is opened here.

        Args:
            db_path: Path to SQLite database
            config: Pool configuration
        """
        self.db_path = Path(db_path)
        self.config = config or PoolConfig()

        self._idle: list[PooledConnection] = []
        self._checked_out: dict[int, PooledConnection] = {}
        self._active = 0
        self._generation = 0
        self._closed = False
        self._lock = threading.Lock()
        self._available = threading.Condition(self._lock)

        self._stats = {
            "connections_created": 0,
            "connections_closed": 0,
            "acquires": 0,
            "releases": 0,
            "waits": 0,
            "timeouts": 0,
        }

    def connect(self) -> sqlite3.Connection:
        """Open and configure a connection that the pool does not track.

        Raises:
            DatabaseConnectionError: If the open or the pragma setup fails
        """
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.config.busy_timeout_ms / 1000,
                check_same_thread=False,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            logger.error("connection_open_failed", db_path=str(self.db_path), error=str(e))
            raise DatabaseConnectionError(
                f"Failed to open database {self.db_path}: {e}"
            ) from e

        try:
            for name, value in self.config.pragmas():
                conn.execute(f"PRAGMA {name} = {value}")
        except sqlite3.Error as e:
            conn.close()
            logger.error("connection_configure_failed", error=str(e))
            raise DatabaseConnectionError(f"Failed to configure connection: {e}") from e

        # Row factory for dict-like access
        conn.row_factory = sqlite3.Row
        return conn

    def open(self) -> None:
        """Allow lending again after ``close_all``."""
        with self._available:
            self._closed = False

    def fill(self, count: int) -> int:
        """Pre-open up to ``count`` idle connections without exceeding the cap.

        Returns:
            Number of connections added
        """
        added = 0
        for _ in range(count):
            generation = self._reserve_slot()
            if generation is None:
                break
            pooled = self._open_reserved(generation)
            with self._available:
                if pooled.generation != self._generation:
                    pooled.close()
                    break
                pooled.mark_returned()
                self._idle.append(pooled)
                self._available.notify()
            added += 1

        logger.debug(
            "connection_pool_filled",
            added=added,
            max_connections=self.config.max_connections,
        )
        return added

    def acquire(self, timeout: Any = _CONFIGURED) -> sqlite3.Connection:
        """
        Check a connection out of the pool.

        Reuses the most recently released idle connection, otherwise opens a
        new one while under ``max_connections``, otherwise waits for a
        release.

        Args:
            timeout: Seconds to wait at capacity; None waits forever.
                Defaults to ``config.acquire_timeout``.

        Raises:
            PoolExhaustedError: If the timeout elapses at capacity
            DatabaseConnectionError: If opening fails or the pool is (or
                gets) closed
        """
        if timeout is _CONFIGURED:
            timeout = self.config.acquire_timeout
        deadline = None if timeout is None else time.monotonic() + timeout

        with self._available:
            if self._closed:
                raise DatabaseConnectionError("Connection pool is closed")
            generation = self._generation
            waited = False
            while True:
                if self._idle:
                    return self._check_out(self._idle.pop())

                if self._active < self.config.max_connections:
                    self._active += 1
                    break

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    self._stats["timeouts"] += 1
                    raise PoolExhaustedError(
                        timeout, self._active, self.config.max_connections
                    )

                if not waited:
                    waited = True
                    self._stats["waits"] += 1
                    logger.warning(
                        "connection_pool_exhausted",
                        active_connections=self._active,
                        max_connections=self.config.max_connections,
                    )

                self._available.wait(remaining)

                if self._generation != generation:
                    raise DatabaseConnectionError("Connection pool closed while waiting")

        pooled = self._open_reserved(generation)
        with self._available:
            if pooled.generation != self._generation:
                pooled.close()
                raise DatabaseConnectionError("Connection pool closed while connecting")
            return self._check_out(pooled)

    def release(self, conn: sqlite3.Connection) -> None:
        """
        Return a checked-out connection.

        Only the thread that checked a connection out may return it. Releases
        of connections the pool does not currently lend to the calling thread
        are logged and ignored without touching the connection.

        A connection left inside an open transaction is rolled back first.
        It goes back to the idle list while there is room, otherwise it is
        closed and its slot freed. Close failures are logged; the slot is
        freed regardless.
        """
        with self._available:
            pooled = self._checked_out.get(id(conn))
            if pooled is None:
                logger.warning("release_of_unknown_connection")
                return
            if pooled.owner != threading.get_ident():
                logger.warning(
                    "release_from_non_owner_thread",
                    owner=pooled.owner,
                    caller=threading.get_ident(),
                )
                return
            del self._checked_out[id(conn)]
            self._stats["releases"] += 1

        broken = False
        try:
            if conn.in_transaction:
                logger.warning("released_connection_in_transaction")
                conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("connection_reset_failed", error=str(e))
            broken = True

        with self._available:
            stale = pooled.generation != self._generation

            if not (stale or broken) and len(self._idle) < self.config.max_connections:
                pooled.mark_returned()
                self._idle.append(pooled)
                self._available.notify()
                logger.debug("connection_returned", pool_size=len(self._idle))
                return

            if not stale:
                self._active -= 1
            self._stats["connections_closed"] += 1
            self._available.notify()

        pooled.close()
        logger.debug(
            "connection_closed",
            reason="stale" if stale else "broken" if broken else "pool_full",
            active_connections=self.active,
        )

    def close_all(self) -> int:
        """Close idle connections and reset the counters.

        Connections still checked out are closed when they are released.

        Returns:
            Number of idle connections closed
        """
        with self._available:
            idle, self._idle = self._idle, []
            self._closed = True
            outstanding = self._in_use_locked()
            self._active = 0
            self._generation += 1
            self._stats["connections_closed"] += len(idle)
            self._available.notify_all()

        for pooled in idle:
            pooled.close()

        if outstanding:
            logger.warning("connection_pool_closed_with_outstanding", checked_out=outstanding)
        return len(idle)

    @property
    def active(self) -> int:
        """Open connections owned by the pool (idle + checked out)."""
        with self._lock:
            return self._active

    @property
    def available(self) -> int:
        """Number of idle connections."""
        with self._lock:
            return len(self._idle)

    @property
    def in_use(self) -> int:
        """Number of connections currently checked out."""
        with self._lock:
            return self._in_use_locked()

    def _in_use_locked(self) -> int:
        return sum(
            1 for p in self._checked_out.values() if p.generation == self._generation
        )

    def stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        with self._lock:
            return {
                **self._stats,
                "active": self._active,
                "available": len(self._idle),
                "in_use": self._in_use_locked(),
                "closed": self._closed,
                "max_connections": self.config.max_connections,
                "db_path": str(self.db_path),
            }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reserve_slot(self) -> int | None:
        with self._available:
            if self._closed or self._active >= self.config.max_connections:
                return None
            self._active += 1
            return self._generation

    def _open_reserved(self, generation: int) -> PooledConnection:
        """Open a connection for a reserved slot, freeing the slot on failure."""
        try:
            conn = self.connect()
        except DatabaseConnectionError:
            with self._available:
                if generation == self._generation:
                    self._active -= 1
                self._available.notify()
            raise

        with self._available:
            self._stats["connections_created"] += 1
            active = self._active

        logger.debug(
            "connection_created",
            active_connections=active,
            max_connections=self.config.max_connections,
        )
        return PooledConnection(conn=conn, generation=generation)

    def _check_out(self, pooled: PooledConnection) -> sqlite3.Connection:
        # Caller holds the lock
        pooled.mark_used()
        self._checked_out[id(pooled.conn)] = pooled
        self._stats["acquires"] += 1
        return pooled.conn
