"""
Versioned schema migrations.

Migrations are plain ``.sql`` files applied in filename order. Each file is
run inside one transaction together with the ``schema_migrations`` row that
records it, so a failing migration leaves no trace. Applied files are
fingerprinted with SHA-256 to detect later edits.

File layout::

    -- Migration: 003_add_submission_attachments
    -- Description: Track uploaded evidence per submission
    -- Created: 2025-02-01

    CREATE TABLE IF NOT EXISTS attachments (...);
"""

from __future__ import annotations

import hashlib
import re
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from fdts.db.errors import DatabaseError
from fdts.db.manager import DatabaseManager, split_statements
from fdts.logging_config import get_logger

logger = get_logger(__name__)

MIGRATION_TABLE = "schema_migrations"

# Migrations shipped inside the package
PACKAGED_MIGRATIONS_DIR = Path(__file__).resolve().parent / "sql"

_DESCRIPTION_RE = re.compile(r"^-- Description: (.+)$", re.MULTILINE)

_TEMPLATE = """-- Migration: {version}
-- Description: {description}
-- Created: {created}

-- Add your SQL statements here
-- Example:
-- CREATE TABLE IF NOT EXISTS example_table (
--     id TEXT PRIMARY KEY,
--     name TEXT NOT NULL,
--     created_at DATETIME DEFAULT CURRENT_TIMESTAMP
-- );
"""


@dataclass(frozen=True)
class Migration:
    version: str
    description: str
    filename: str
    sql: str
    checksum: str


@dataclass(frozen=True)
class AppliedMigration:
    version: str
    description: str
    applied_at: str
    checksum: str


@dataclass
class MigrationResult:
    version: str
    description: str
    success: bool
    duration_ms: int
    error: str | None = None


@dataclass
class MigrationStatus:
    applied: list[AppliedMigration] = field(default_factory=list)
    pending: list[Migration] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.applied) + len(self.pending)


@dataclass
class ValidationReport:
    valid: bool
    issues: list[str] = field(default_factory=list)


class MigrationManager:
    """Discovers, applies and audits the migrations in ``migrations_dir``."""

    def __init__(self, db: DatabaseManager, migrations_dir: Path | str):
        self.db = db
        self.migrations_dir = Path(migrations_dir)

    @property
    def targets_packaged_dir(self) -> bool:
        """True when ``migrations_dir`` is the directory shipped with the package."""
        return self.migrations_dir.resolve() == PACKAGED_MIGRATIONS_DIR

    def migrate(self) -> list[MigrationResult]:
        """
        Apply every pending migration in order.

        Stops at the first failure; the failed result is the last entry of
        the returned list.
        """
        logger.info("migration_started", migrations_dir=str(self.migrations_dir))
        self.ensure_migration_table()

        applied = {m.version for m in self.applied_migrations()}
        pending = [m for m in self.available_migrations() if m.version not in applied]

        if not pending:
            logger.info("no_pending_migrations")
            return []

        logger.info("pending_migrations_found", pending=[m.version for m in pending])

        results: list[MigrationResult] = []
        for migration in pending:
            result = self._apply(migration)
            results.append(result)
            if not result.success:
                logger.error("migration_halted", version=migration.version)
                break

        logger.info(
            "migration_finished",
            successful=sum(1 for r in results if r.success),
            attempted=len(results),
        )
        return results

    def rollback(self) -> AppliedMigration | None:
        """
        Forget the most recently applied migration.

        Only the tracking row is removed; schema changes made by the
        migration are left in place.

        Returns:
            The migration that was removed, or None when nothing is applied
        """
        self.ensure_migration_table()
        applied = self.applied_migrations()
        if not applied:
            logger.info("no_migrations_to_rollback")
            return None

        last = applied[-1]
        self.db.execute_update(
            f"DELETE FROM {MIGRATION_TABLE} WHERE version = ?", (last.version,)
        )
        logger.warning(
            "migration_rolled_back",
            version=last.version,
            applied_at=last.applied_at,
            note="schema changes were not reverted",
        )
        return last

    def status(self) -> MigrationStatus:
        self.ensure_migration_table()
        applied = self.applied_migrations()
        versions = {m.version for m in applied}
        pending = [m for m in self.available_migrations() if m.version not in versions]
        return MigrationStatus(applied=applied, pending=pending)

    def validate(self) -> ValidationReport:
        """
        Check applied migrations against the files on disk.

        Reports applied versions whose file is gone, checksum mismatches and
        available versions skipped between two applied ones.
        """
        issues: list[str] = []
        try:
            self.ensure_migration_table()
            available = self.available_migrations()
            applied = self.applied_migrations()
        except (OSError, DatabaseError) as e:
            logger.error("migration_validation_failed", error=str(e))
            return ValidationReport(valid=False, issues=[f"Validation error: {e}"])

        by_version = {m.version: m for m in available}
        for record in applied:
            migration = by_version.get(record.version)
            if migration is None:
                issues.append(f"Applied migration {record.version} not found in migration files")
                continue
            if migration.checksum != record.checksum:
                issues.append(f"Checksum mismatch for migration {record.version}")

        available_versions = [m.version for m in available]
        applied_versions = sorted(v for v in (r.version for r in applied) if v in by_version)
        for current, following in zip(applied_versions, applied_versions[1:]):
            start = available_versions.index(current)
            end = available_versions.index(following)
            if end - start > 1:
                skipped = ", ".join(available_versions[start + 1 : end])
                issues.append(f"Skipped migrations detected: {skipped}")

        report = ValidationReport(valid=not issues, issues=issues)
        if report.valid:
            logger.info("migration_validation_passed")
        else:
            logger.warning("migration_validation_issues", issues=issues)
        return report

    def create(self, description: str) -> Path:
        """Write an empty, timestamped migration file and return its path.

        Writing into the packaged directory works but logs a warning.
        """
        slug = re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", description.strip().lower()))
        if not slug:
            raise ValueError("Migration description must contain letters or digits")

        now = datetime.now(UTC)
        version = f"{now:%Y%m%d%H%M%S}_{slug}"
        path = self.migrations_dir / f"{version}.sql"
        if self.targets_packaged_dir:
            logger.warning(
                "migration_created_in_package",
                migrations_dir=str(self.migrations_dir),
                hint="set FDTS_MIGRATIONS_DIR to keep migrations outside the package",
            )

        self.migrations_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(
            _TEMPLATE.format(version=version, description=description.strip(), created=f"{now:%Y-%m-%d}"),
            encoding="utf-8",
        )
        logger.info("migration_created", path=str(path))
        return path

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def ensure_migration_table(self) -> None:
        self.db.execute_update(
            f"""
            CREATE TABLE IF NOT EXISTS {MIGRATION_TABLE} (
                version TEXT PRIMARY KEY,
                description TEXT NOT NULL,
                applied_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                checksum TEXT NOT NULL
            )
            """
        )

    def available_migrations(self) -> list[Migration]:
        """Migration files on disk, sorted by filename."""
        if not self.migrations_dir.is_dir():
            return []

        migrations = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            sql = path.read_text(encoding="utf-8")
            match = _DESCRIPTION_RE.search(sql)
            migrations.append(
                Migration(
                    version=path.stem,
                    description=match.group(1).strip() if match else "No description",
                    filename=path.name,
                    sql=sql,
                    checksum=hashlib.sha256(sql.encode("utf-8")).hexdigest(),
                )
            )
        return migrations

    def applied_migrations(self) -> list[AppliedMigration]:
        rows = self.db.execute_query(
            f"SELECT version, description, applied_at, checksum "
            f"FROM {MIGRATION_TABLE} ORDER BY applied_at ASC, version ASC"
        )
        return [
            AppliedMigration(
                version=row["version"],
                description=row["description"],
                applied_at=str(row["applied_at"]),
                checksum=row["checksum"],
            )
            for row in rows
        ]

    def _apply(self, migration: Migration) -> MigrationResult:
        logger.info(
            "applying_migration",
            version=migration.version,
            description=migration.description,
        )
        started = time.perf_counter()

        def work(conn):
            for statement in split_statements(migration.sql):
                conn.execute(statement)
            conn.execute(
                f"INSERT INTO {MIGRATION_TABLE} (version, description, checksum) VALUES (?, ?, ?)",
                (migration.version, migration.description, migration.checksum),
            )

        try:
            self.db.execute_transaction(work)
        except (sqlite3.Error, DatabaseError) as e:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.error(
                "migration_failed",
                version=migration.version,
                error=str(e),
                duration_ms=duration_ms,
            )
            return MigrationResult(
                version=migration.version,
                description=migration.description,
                success=False,
                duration_ms=duration_ms,
                error=str(e),
            )

        duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info("migration_applied", version=migration.version, duration_ms=duration_ms)
        return MigrationResult(
            version=migration.version,
            description=migration.description,
            success=True,
            duration_ms=duration_ms,
        )
