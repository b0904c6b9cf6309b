"""
Online backups of the FDTS database.

Backups use SQLite's backup API from a pooled connection, so they are
consistent snapshots taken while the application keeps serving requests.
"""

from __future__ import annotations

import re
import sqlite3
from datetime import datetime
from pathlib import Path

from fdts.db.errors import DatabaseError
from fdts.db.manager import DatabaseManager
from fdts.logging_config import get_logger

logger = get_logger(__name__)

BACKUP_PREFIX = "fdts-"
BACKUP_SUFFIX = ".db"


def create_backup(
    db: DatabaseManager,
    backup_dir: Path | None = None,
    label: str | None = None,
) -> Path:
    """
    Copy the live database into ``backup_dir``.

    Args:
        db: Manager whose database is backed up
        backup_dir: Target directory (default: ``db.backup_path``)
        label: Optional suffix for the file name

    Returns:
        Path of the new backup file
    """
    backup_dir = Path(backup_dir) if backup_dir is not None else db.backup_path
    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    name = f"{BACKUP_PREFIX}{timestamp}"
    if label:
        name += "-" + re.sub(r"[^A-Za-z0-9_.-]+", "_", label)
    target = backup_dir / f"{name}{BACKUP_SUFFIX}"

    logger.info("backup_started", target=str(target))
    with db.connection() as conn:
        dest = sqlite3.connect(str(target))
        try:
            conn.backup(dest)
        except sqlite3.Error as e:
            logger.error("backup_failed", target=str(target), error=str(e))
            dest.close()
            target.unlink(missing_ok=True)
            raise DatabaseError(f"Backup to {target} failed: {e}") from e
        dest.close()

    logger.info("backup_completed", target=str(target), size_bytes=target.stat().st_size)
    return target


def list_backups(backup_dir: Path) -> list[Path]:
    """Backup files in ``backup_dir``, newest first."""
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []
    return sorted(
        backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"),
        key=lambda p: p.name,
        reverse=True,
    )


def prune_backups(backup_dir: Path, keep: int) -> list[Path]:
    """Delete all but the ``keep`` newest backups and return what was removed."""
    if keep < 0:
        raise ValueError("keep must be >= 0")

    removed = []
    for path in list_backups(backup_dir)[keep:]:
        try:
            path.unlink()
            removed.append(path)
        except OSError as e:
            logger.error("backup_prune_failed", path=str(path), error=str(e))

    if removed:
        logger.info("backups_pruned", removed=len(removed), kept=keep)
    return removed
