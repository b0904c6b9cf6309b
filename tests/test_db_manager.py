"""
Tests for the DatabaseManager query and transaction façade.
"""

import sqlite3
import threading
import time

import pytest

from fdts.db.errors import (
    DatabaseConnectionError,
    InitializationError,
    NotInitializedError,
    PoolExhaustedError,
    QueryError,
    TransactionError,
    TransactionTimeoutError,
)
from fdts.db.manager import (
    DatabaseManager,
    SavepointStep,
    UpdateResult,
    is_retryable_error,
    split_statements,
)
from fdts.db.pool import PoolConfig


def test_initialize_creates_directories_and_fills_pool(tmp_path):
    db = DatabaseManager(tmp_path / "a" / "fdts.db", tmp_path / "b" / "backups")
    db.initialize()
    try:
        assert (tmp_path / "a").is_dir()
        assert (tmp_path / "b" / "backups").is_dir()
        assert db.is_initialized
        stats = db.get_stats()
        assert stats.active_connections == 3
        assert stats.pool_size == 3
    finally:
        db.close()


def test_initialize_is_idempotent(manager):
    before = manager.get_stats()
    manager.initialize()
    after = manager.get_stats()

    assert after.active_connections == before.active_connections
    assert after.pool_size == before.pool_size


def test_initial_fill_is_capped_by_max_connections(make_manager):
    db = make_manager(max_connections=2)
    db.initialize()
    assert db.pool.active == 2
    assert db.pool.available == 2


def test_initialize_failure_raises_initialization_error(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")
    db = DatabaseManager(blocker / "fdts.db", tmp_path / "backups")

    with pytest.raises(InitializationError) as excinfo:
        db.initialize()

    assert excinfo.value.__cause__ is not None
    assert not db.is_initialized
    db.close()


def test_operations_initialize_lazily(make_manager):
    db = make_manager()
    assert not db.is_initialized
    assert db.execute_query_single("SELECT 1 AS one")["one"] == 1
    assert db.is_initialized


def test_lazy_initialize_can_be_disabled(make_manager):
    db = make_manager(lazy_initialize=False)
    with pytest.raises(NotInitializedError):
        db.get_connection()
    db.initialize()
    conn = db.get_connection()
    db.release_connection(conn)


def test_close_before_initialize_and_twice(make_manager):
    db = make_manager()
    db.close()
    db.initialize()
    db.close()
    db.close()

    assert not db.is_initialized
    assert db.pool.active == 0
    assert db.pool.available == 0


def test_close_then_initialize_rebuilds(manager):
    manager.close()
    manager.initialize()
    assert manager.pool.active == 3
    assert manager.health_check()


def test_main_connection_is_separate_from_pool(manager):
    main = manager.get_main_connection()
    assert main.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    conn = manager.get_connection()
    try:
        assert conn is not main
    finally:
        manager.release_connection(conn)
    assert manager.pool.active == 3


def test_execute_update_and_queries(manager, items_table):
    result = manager.execute_update(
        "INSERT INTO items (name, value) VALUES (?, ?)", ("alpha", 100)
    )
    assert result == UpdateResult(changes=1, last_insert_id=1)

    manager.execute_update("INSERT INTO items (name, value) VALUES (?, ?)", ("beta", 200))

    rows = manager.execute_query("SELECT * FROM items ORDER BY id")
    assert [r["name"] for r in rows] == ["alpha", "beta"]

    row = manager.execute_query_single("SELECT * FROM items WHERE name = ?", ("beta",))
    assert row["value"] == 200

    assert manager.execute_query_single("SELECT * FROM items WHERE name = ?", ("nope",)) is None

    updated = manager.execute_update("UPDATE items SET value = value + 1")
    assert updated.changes == 2


def test_named_parameters(manager, items_table):
    manager.execute_update(
        "INSERT INTO items (name, value) VALUES (:name, :value)", {"name": "n", "value": 7}
    )
    row = manager.execute_query_single("SELECT value FROM items WHERE name = :name", {"name": "n"})
    assert row["value"] == 7


def test_query_error_carries_sql_and_params(manager):
    with pytest.raises(QueryError) as excinfo:
        manager.execute_query("SELECT * FROM missing_table WHERE id = ?", (1,))

    assert excinfo.value.sql == "SELECT * FROM missing_table WHERE id = ?"
    assert excinfo.value.params == (1,)
    assert excinfo.value.__cause__ is not None
    # Connection went back to the pool despite the failure
    assert manager.pool.in_use == 0


def test_foreign_keys_are_enforced(manager):
    manager.execute_update("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
    manager.execute_update(
        "CREATE TABLE child (id INTEGER PRIMARY KEY, parent_id INTEGER REFERENCES parent(id))"
    )
    with pytest.raises(QueryError):
        manager.execute_update("INSERT INTO child (parent_id) VALUES (42)")


def test_transaction_commits(manager, items_table):
    def work(conn):
        conn.execute("INSERT INTO items (name) VALUES ('tx1')")
        conn.execute("INSERT INTO items (name) VALUES ('tx2')")
        return "success"

    assert manager.execute_transaction(work) == "success"
    assert len(manager.execute_query("SELECT * FROM items")) == 2


def test_transaction_rolls_back_and_reraises(manager, items_table):
    class Boom(Exception):
        pass

    def work(conn):
        conn.execute("INSERT INTO items (name) VALUES ('tx3')")
        conn.execute("INSERT INTO items (name) VALUES ('tx4')")
        raise Boom("Transaction failed")

    with pytest.raises(Boom, match="Transaction failed"):
        manager.execute_transaction(work)

    assert manager.execute_query("SELECT * FROM items") == []
    assert manager.pool.in_use == 0


def test_transaction_rollback_on_constraint_error(manager, items_table):
    manager.execute_update("INSERT INTO items (name) VALUES ('dup')")

    def work(conn):
        conn.execute("INSERT INTO items (name) VALUES ('fresh')")
        conn.execute("INSERT INTO items (name) VALUES ('dup')")

    with pytest.raises(sqlite3.IntegrityError):
        manager.execute_transaction(work)

    names = [r["name"] for r in manager.execute_query("SELECT name FROM items")]
    assert names == ["dup"]


def test_transaction_context_manager(manager, items_table):
    with manager.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('ctx')")
        assert conn.in_transaction

    assert manager.execute_query_single("SELECT COUNT(*) AS n FROM items")["n"] == 1


def test_transaction_begin_failure(manager, monkeypatch):
    acquire = manager.pool.acquire

    def already_in_transaction(timeout):
        conn = acquire(timeout)
        conn.execute("BEGIN")
        return conn

    monkeypatch.setattr(manager.pool, "acquire", already_in_transaction)

    with pytest.raises(TransactionError, match="begin"):
        with manager.transaction():
            pass

    monkeypatch.undo()
    assert manager.pool.in_use == 0


def test_transaction_commit_failure_rolls_back(manager):
    manager.execute_script(
        """
        CREATE TABLE parent (id INTEGER PRIMARY KEY);
        CREATE TABLE child (
            id INTEGER PRIMARY KEY,
            parent_id INTEGER REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED
        );
        """
    )

    def work(conn):
        conn.execute("INSERT INTO child (parent_id) VALUES (99)")

    with pytest.raises(TransactionError, match="commit"):
        manager.execute_transaction(work)

    assert manager.execute_query("SELECT * FROM child") == []
    assert manager.pool.in_use == 0


def test_block_may_end_transaction_itself(manager, items_table):
    with manager.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('early')")
        conn.execute("COMMIT")

    assert manager.execute_query_single("SELECT name FROM items")["name"] == "early"


def test_transactions_never_share_a_connection(make_manager):
    db = make_manager(max_connections=2)
    seen = []
    barrier = threading.Barrier(2)

    def work(conn):
        seen.append(id(conn))
        barrier.wait(timeout=5)

    threads = [threading.Thread(target=db.execute_transaction, args=(work,)) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert len(set(seen)) == 2


def test_third_checkout_blocks_until_release(make_manager):
    db = make_manager(max_connections=2, acquire_timeout=None)
    db.initialize()
    first = db.get_connection()
    db.get_connection()
    got = []

    waiter = threading.Thread(target=lambda: got.append(db.get_connection()))
    waiter.start()
    time.sleep(0.2)
    assert waiter.is_alive()
    assert db.pool.active <= 2

    db.release_connection(first)
    waiter.join(timeout=5)

    assert not waiter.is_alive()
    assert got == [first]
    assert db.pool.active <= 2


def test_checkout_timeout_raises_pool_exhausted(make_manager):
    db = make_manager(max_connections=1)
    conn = db.get_connection()
    try:
        with pytest.raises(PoolExhaustedError):
            db.get_connection(timeout=0.05)
    finally:
        db.release_connection(conn)


def test_pool_of_one_reuses_single_connection(make_manager):
    db = make_manager(max_connections=1)
    db.initialize()

    for _ in range(2):
        conn = db.get_connection()
        db.release_connection(conn)
        assert db.pool.available <= 1

    assert db.pool.active == 1
    db.close()
    assert db.pool.active == 0


def test_health_check(manager):
    assert manager.health_check() is True


def test_health_check_never_raises(manager, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("engine gone")

    monkeypatch.setattr(manager.pool, "acquire", broken)
    assert manager.health_check() is False


def test_health_check_on_unusable_path(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    db = DatabaseManager(blocker / "fdts.db")
    assert db.health_check() is False


def test_stats_size_is_page_count_times_page_size(manager, items_table):
    for i in range(50):
        manager.execute_update("INSERT INTO items (name, value) VALUES (?, ?)", (f"n{i}", i))

    stats = manager.get_stats()
    assert stats.page_count > 0
    assert stats.page_size > 0
    assert stats.database_size == stats.page_count * stats.page_size


def test_execute_script(manager):
    manager.execute_script(
        """
        -- two tables; one statement per line
        CREATE TABLE a (id INTEGER PRIMARY KEY);
        CREATE TABLE b (id INTEGER PRIMARY KEY, note TEXT DEFAULT 'x;y');
        INSERT INTO a DEFAULT VALUES;
        """
    )
    assert manager.execute_query_single("SELECT COUNT(*) FROM a")[0] == 1
    assert manager.execute_query_single("SELECT note FROM b") is None


def test_split_statements_handles_triggers_and_comments():
    script = """
    CREATE TABLE t (x INTEGER); -- trailing; comment
    CREATE TRIGGER tr AFTER INSERT ON t BEGIN
        UPDATE t SET x = x + 1;
    END;
    ;
    -- nothing but a comment
    """
    statements = split_statements(script)
    assert len(statements) == 2
    assert statements[1].startswith("-- trailing; comment")
    assert statements[1].rstrip().endswith("END;")


def test_context_manager_protocol(tmp_path):
    with DatabaseManager(tmp_path / "ctx.db", config=PoolConfig(max_connections=2)) as db:
        assert db.is_initialized
    assert not db.is_initialized


def test_close_between_check_and_acquire_lends_nothing(manager, monkeypatch):
    ensure = manager._ensure_initialized

    def close_right_after_check():
        ensure()
        manager.close()

    monkeypatch.setattr(manager, "_ensure_initialized", close_right_after_check)

    with pytest.raises(DatabaseConnectionError):
        manager.get_connection()
    assert manager.pool.active == 0
    assert manager.pool.available == 0

    monkeypatch.undo()
    manager.initialize()
    assert manager.health_check()


def test_retries_locked_database(manager, items_table):
    calls = []

    def work(conn):
        calls.append(1)
        conn.execute("INSERT INTO items (name) VALUES (?)", (f"try{len(calls)}",))
        if len(calls) < 3:
            raise sqlite3.OperationalError("database is locked")
        return len(calls)

    assert manager.execute_transaction(work, retry_attempts=3, retry_delay=0) == 3

    names = [r["name"] for r in manager.execute_query("SELECT name FROM items")]
    assert names == ["try3"]


def test_retries_give_up_after_last_attempt(manager):
    calls = []

    def work(conn):
        calls.append(1)
        raise sqlite3.OperationalError("database is busy")

    with pytest.raises(sqlite3.OperationalError):
        manager.execute_transaction(work, retry_attempts=2, retry_delay=0)
    assert len(calls) == 2


def test_other_errors_are_not_retried(manager):
    calls = []

    def work(conn):
        calls.append(1)
        raise ValueError("bad input")

    with pytest.raises(ValueError):
        manager.execute_transaction(work, retry_attempts=5, retry_delay=0)
    assert len(calls) == 1

    with pytest.raises(ValueError):
        manager.execute_transaction(work, retry_attempts=0)


def test_retry_waits_out_a_real_writer(make_manager, items_table):
    db = make_manager(busy_timeout_ms=0)
    blocker = sqlite3.connect(
        str(db.database_path), isolation_level=None, check_same_thread=False
    )
    blocker.execute("BEGIN IMMEDIATE")
    timer = threading.Timer(0.2, lambda: blocker.execute("COMMIT"))
    timer.start()
    try:
        db.execute_transaction(
            lambda conn: conn.execute("INSERT INTO items (name) VALUES ('late')"),
            retry_attempts=50,
            retry_delay=0.05,
        )
    finally:
        timer.join()
        blocker.close()

    assert db.execute_query_single("SELECT name FROM items")["name"] == "late"


def test_is_retryable_error_follows_cause():
    locked = sqlite3.OperationalError("database is locked")
    wrapped = TransactionError("Failed to commit transaction")
    wrapped.__cause__ = locked

    assert is_retryable_error(locked)
    assert is_retryable_error(wrapped)
    assert not is_retryable_error(sqlite3.OperationalError("no such table: x"))
    assert not is_retryable_error(None)


def test_transaction_timeout_rolls_back(manager, items_table):
    def slow(conn):
        conn.execute("INSERT INTO items (name) VALUES ('slow')")
        time.sleep(0.2)

    with pytest.raises(TransactionTimeoutError, match="before commit"):
        manager.execute_transaction(slow, timeout=0.05)

    assert manager.execute_query("SELECT * FROM items") == []
    assert manager.pool.in_use == 0


def test_transaction_within_timeout_commits(manager, items_table):
    manager.execute_transaction(
        lambda conn: conn.execute("INSERT INTO items (name) VALUES ('quick')"),
        timeout=5,
    )
    assert len(manager.execute_query("SELECT * FROM items")) == 1


def test_execute_batch(manager, items_table):
    operations = [
        lambda conn: conn.execute("INSERT INTO items (name) VALUES ('b1')").lastrowid,
        lambda conn: conn.execute("INSERT INTO items (name) VALUES ('b2')").lastrowid,
    ]
    assert manager.execute_batch(operations) == [1, 2]


def test_execute_batch_failure_rolls_back_everything(manager, items_table):
    operations = [
        lambda conn: conn.execute("INSERT INTO items (name) VALUES ('b1')"),
        lambda conn: conn.execute("INSERT INTO items (name) VALUES ('b1')"),
    ]
    with pytest.raises(sqlite3.IntegrityError):
        manager.execute_batch(operations)

    assert manager.execute_query("SELECT * FROM items") == []


def test_savepoint_rolls_back_only_inner_block(manager, items_table):
    with manager.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('outer')")
        with pytest.raises(RuntimeError):
            with manager.savepoint(conn, "inner"):
                conn.execute("INSERT INTO items (name) VALUES ('inner')")
                raise RuntimeError("undo inner")
        with manager.savepoint(conn, "kept"):
            conn.execute("INSERT INTO items (name) VALUES ('kept')")
        assert conn.in_transaction

    names = sorted(r["name"] for r in manager.execute_query("SELECT name FROM items"))
    assert names == ["kept", "outer"]


def test_savepoint_requires_transaction_and_valid_name(manager):
    with manager.connection() as conn:
        with pytest.raises(TransactionError):
            with manager.savepoint(conn, "sp"):
                pass

    with manager.transaction() as conn:
        with pytest.raises(ValueError):
            with manager.savepoint(conn, "sp; DROP TABLE x"):
                pass


def test_execute_with_savepoints(manager, items_table):
    handled = []

    def fail(conn):
        conn.execute("INSERT INTO items (name) VALUES ('partial')")
        raise RuntimeError("step failed")

    steps = [
        SavepointStep("first", lambda conn: conn.execute("INSERT INTO items (name) VALUES ('a')").lastrowid),
        SavepointStep("second", fail, on_error=lambda e, conn: handled.append(str(e))),
        SavepointStep("third", lambda conn: conn.execute("INSERT INTO items (name) VALUES ('c')").lastrowid),
    ]

    results = manager.execute_with_savepoints(steps)

    assert len(results) == 2
    assert handled == ["step failed"]
    names = sorted(r["name"] for r in manager.execute_query("SELECT name FROM items"))
    assert names == ["a", "c"]


def test_execute_with_savepoints_without_handler_aborts(manager, items_table):
    def fail(conn):
        raise RuntimeError("stop")

    steps = [
        SavepointStep("first", lambda conn: conn.execute("INSERT INTO items (name) VALUES ('a')")),
        SavepointStep("second", fail),
    ]

    with pytest.raises(RuntimeError, match="stop"):
        manager.execute_with_savepoints(steps)
    assert manager.execute_query("SELECT * FROM items") == []
