"""
Database bootstrap and inspection helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from fdts.db.errors import DatabaseError, MigrationError
from fdts.db.manager import DatabaseManager
from fdts.db.migrations import MigrationManager
from fdts.logging_config import get_logger

logger = get_logger(__name__)

# Tables created by the packaged migrations
CORE_TABLES = ("departments", "users", "submissions", "notifications", "audit_logs")


@dataclass
class SchemaReport:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    tables: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DatabaseInfo:
    version: str
    encoding: str
    page_size: int
    page_count: int
    size: int
    tables: list[str]


def initialize_database(
    db: DatabaseManager,
    migrations: MigrationManager,
    expected_tables: tuple[str, ...] = CORE_TABLES,
) -> SchemaReport:
    """
    Start the manager, apply pending migrations and verify the schema.

    Raises:
        InitializationError: If the manager cannot start
        MigrationError: If a migration fails or the schema is invalid
    """
    logger.info("database_bootstrap_started")
    db.initialize()

    results = migrations.migrate()
    failed = [r for r in results if not r.success]
    if failed:
        raise MigrationError(
            "Migrations failed: " + ", ".join(f"{r.version} ({r.error})" for r in failed)
        )

    report = verify_schema(db, expected_tables)
    if not report.valid:
        raise MigrationError("Schema validation failed: " + "; ".join(report.errors))
    for warning in report.warnings:
        logger.warning("schema_warning", warning=warning)

    logger.info("database_bootstrap_completed", tables=len(report.tables))
    return report


def list_tables(db: DatabaseManager) -> list[str]:
    rows = db.execute_query(
        "SELECT name FROM sqlite_master "
        "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    )
    return [row["name"] for row in rows]


def verify_schema(
    db: DatabaseManager,
    expected_tables: tuple[str, ...] = CORE_TABLES,
) -> SchemaReport:
    """Run the engine integrity checks and look for the expected tables."""
    report = SchemaReport(valid=True)
    report.tables = list_tables(db)

    for table in expected_tables:
        if table not in report.tables:
            report.errors.append(f"Missing table: {table}")

    integrity = [row[0] for row in db.execute_query("PRAGMA integrity_check")]
    if integrity != ["ok"]:
        report.errors.extend(f"Integrity check: {line}" for line in integrity)

    for row in db.execute_query("PRAGMA foreign_key_check"):
        report.warnings.append(
            f"Foreign key violation in {row[0]} (rowid {row[1]}) referencing {row[2]}"
        )

    report.valid = not report.errors
    return report


def needs_initialization(db: DatabaseManager) -> bool:
    """True when the ``users`` table is missing or the check itself fails."""
    try:
        row = db.execute_query_single(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'users'"
        )
    except DatabaseError as e:
        logger.error("initialization_check_failed", error=str(e))
        return True
    return row is None


def get_database_info(db: DatabaseManager) -> DatabaseInfo:
    version = db.execute_query_single("SELECT sqlite_version() AS version")
    encoding = db.execute_query_single("PRAGMA encoding")
    page_size = db.execute_query_single("PRAGMA page_size")
    page_count = db.execute_query_single("PRAGMA page_count")

    size = page_size[0] if page_size else 0
    count = page_count[0] if page_count else 0
    return DatabaseInfo(
        version=version["version"] if version else "unknown",
        encoding=encoding[0] if encoding else "unknown",
        page_size=size,
        page_count=count,
        size=size * count,
        tables=list_tables(db),
    )


def reset_database(db: DatabaseManager, migrations: MigrationManager) -> list[str]:
    """
    Drop every user table and re-apply all migrations. Destroys all data.

    Runs on the main connection with foreign keys switched off for the drop.

    Returns:
        Names of the dropped tables
    """
    logger.warning("database_reset_requested", database_path=str(db.database_path))

    conn = db.get_main_connection()
    tables = [
        row[0]
        for row in conn.execute(
            "SELECT name FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
        )
    ]

    conn.execute("PRAGMA foreign_keys = OFF")
    try:
        conn.execute("BEGIN")
        for table in tables:
            conn.execute(f'DROP TABLE IF EXISTS "{table}"')
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.execute(
            f"PRAGMA foreign_keys = {'ON' if db.config.enable_foreign_keys else 'OFF'}"
        )

    logger.info("tables_dropped", tables=tables)

    results = migrations.migrate()
    failed = [r.version for r in results if not r.success]
    if failed:
        raise MigrationError(f"Migrations failed after reset: {', '.join(failed)}")

    logger.info("database_reset_completed")
    return tables
