from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any

from fdts.config import DatabaseSettings
from fdts.container import Container
from fdts.db import backup, schema
from fdts.db.manager import DatabaseManager
from fdts.db.migrations import MigrationManager
from fdts.logging_config import configure_from_settings


def _emit(payload: Any, as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        print(text)


def cmd_migrate(migrations: MigrationManager, as_json: bool) -> int:
    results = migrations.migrate()
    failed = [r for r in results if not r.success]

    lines = []
    if not results:
        lines.append("OK: no pending migrations, database is up to date")
    for r in results:
        mark = "OK  " if r.success else "FAIL"
        lines.append(f"{mark} {r.version} - {r.description} ({r.duration_ms}ms)")
        if r.error:
            lines.append(f"     error: {r.error}")
    if results:
        lines.append(f"\nSummary: {len(results) - len(failed)} successful, {len(failed)} failed")

    _emit([asdict(r) for r in results], as_json, "\n".join(lines))
    return 1 if failed else 0


def cmd_status(migrations: MigrationManager, as_json: bool) -> int:
    st = migrations.status()
    lines = [
        f"Total migrations: {st.total}",
        f"Applied: {len(st.applied)}",
        f"Pending: {len(st.pending)}",
    ]
    if st.applied:
        lines.append("\nApplied:")
        lines += [f"  {m.version} - {m.description} ({m.applied_at})" for m in st.applied]
    if st.pending:
        lines.append("\nPending:")
        lines += [f"  {m.version} - {m.description}" for m in st.pending]

    payload = {
        "total": st.total,
        "applied": [asdict(m) for m in st.applied],
        "pending": [{"version": m.version, "description": m.description} for m in st.pending],
    }
    _emit(payload, as_json, "\n".join(lines))
    return 0


def cmd_create(migrations: MigrationManager, description: str, as_json: bool) -> int:
    if migrations.targets_packaged_dir:
        print(
            f"WARNING: writing into the packaged migrations directory {migrations.migrations_dir}; "
            "set FDTS_MIGRATIONS_DIR to keep migrations outside the installed package",
            file=sys.stderr,
        )
    path = migrations.create(description)
    _emit({"path": str(path)}, as_json, f"OK: created {path}")
    return 0


def cmd_rollback(migrations: MigrationManager, as_json: bool) -> int:
    removed = migrations.rollback()
    if removed is None:
        _emit(None, as_json, "OK: nothing to roll back")
        return 0
    _emit(
        asdict(removed),
        as_json,
        f"OK: rolled back {removed.version}\n"
        "Note: schema changes were not reverted, manual cleanup may be required.",
    )
    return 0


def cmd_validate(migrations: MigrationManager, as_json: bool) -> int:
    report = migrations.validate()
    text = "OK: migration integrity validated"
    if not report.valid:
        text = "FAIL: migration integrity\n" + "\n".join(f"- {i}" for i in report.issues)
    _emit(asdict(report), as_json, text)
    return 0 if report.valid else 1


def cmd_schema(db: DatabaseManager, as_json: bool) -> int:
    report = schema.verify_schema(db)
    lines = [("OK" if report.valid else "FAIL") + f": {len(report.tables)} tables"]
    lines += [f"- error: {e}" for e in report.errors]
    lines += [f"- warning: {w}" for w in report.warnings]
    _emit(asdict(report), as_json, "\n".join(lines))
    return 0 if report.valid else 1


def cmd_health(db: DatabaseManager, as_json: bool) -> int:
    healthy = db.health_check()
    _emit({"healthy": healthy}, as_json, "OK: database healthy" if healthy else "FAIL: database unhealthy")
    return 0 if healthy else 1


def cmd_stats(db: DatabaseManager, as_json: bool) -> int:
    stats = db.get_stats()
    text = "\n".join(f"{k:20} {v}" for k, v in asdict(stats).items())
    _emit(asdict(stats), as_json, text)
    return 0


def cmd_info(db: DatabaseManager, as_json: bool) -> int:
    info = schema.get_database_info(db)
    text = "\n".join(
        [
            f"SQLite version: {info.version}",
            f"Encoding:       {info.encoding}",
            f"Size:           {info.size} bytes ({info.page_count} x {info.page_size})",
            f"Tables:         {', '.join(info.tables) or '(none)'}",
        ]
    )
    _emit(asdict(info), as_json, text)
    return 0


def cmd_backup(db: DatabaseManager, label: str | None, keep: int | None, as_json: bool) -> int:
    path = backup.create_backup(db, label=label)
    removed = backup.prune_backups(db.backup_path, keep) if keep is not None else []
    lines = [f"OK: backup written to {path}"]
    if removed:
        lines.append(f"Pruned {len(removed)} old backup(s)")
    _emit({"path": str(path), "pruned": [str(p) for p in removed]}, as_json, "\n".join(lines))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fdts-db", description="FDTS database maintenance")
    p.add_argument("--database", help="Database file (overrides DATABASE_PATH)")
    p.add_argument("--env-file", help="Env file to load settings from")
    p.add_argument("--json", action="store_true", help="Machine-readable output")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("migrate", aliases=["up"], help="Run all pending migrations")
    sub.add_parser("status", help="Show migration status")

    create = sub.add_parser("create", help="Create a new migration file")
    create.add_argument("description")

    sub.add_parser("rollback", aliases=["down"], help="Forget the last applied migration")
    sub.add_parser("validate", help="Validate migration integrity")
    sub.add_parser("schema", help="Validate the database schema")
    sub.add_parser("health", help="Check database connectivity")
    sub.add_parser("stats", help="Show pool and size statistics")
    sub.add_parser("info", help="Show engine and table information")

    bk = sub.add_parser("backup", help="Write an online backup")
    bk.add_argument("--label", default=None)
    bk.add_argument("--keep", type=int, default=None, help="Prune to the N newest backups")

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = DatabaseSettings.from_env(Path(args.env_file) if args.env_file else None)
    if args.database:
        settings.database_path = Path(args.database)

    configure_from_settings(settings, verbose=args.verbose)

    container = Container(settings)
    db = container.get(DatabaseManager)
    migrations = container.get(MigrationManager)

    try:
        if args.cmd in ("migrate", "up"):
            return cmd_migrate(migrations, args.json)
        elif args.cmd == "status":
            return cmd_status(migrations, args.json)
        elif args.cmd == "create":
            return cmd_create(migrations, args.description, args.json)
        elif args.cmd in ("rollback", "down"):
            return cmd_rollback(migrations, args.json)
        elif args.cmd == "validate":
            return cmd_validate(migrations, args.json)
        elif args.cmd == "schema":
            return cmd_schema(db, args.json)
        elif args.cmd == "health":
            return cmd_health(db, args.json)
        elif args.cmd == "stats":
            return cmd_stats(db, args.json)
        elif args.cmd == "info":
            return cmd_info(db, args.json)
        elif args.cmd == "backup":
            return cmd_backup(db, args.label, args.keep, args.json)
    except Exception as e:
        # clean, agent-friendly failure
        raise SystemExit(f"ERROR: {e}") from e
    finally:
        container.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
