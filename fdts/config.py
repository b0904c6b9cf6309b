"""Datastore configuration.

Settings come from an optional ``KEY=VALUE`` env file followed by the
process environment (environment variables win).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from fdts.db.migrations import PACKAGED_MIGRATIONS_DIR
from fdts.db.pool import PoolConfig

DEFAULT_ENV_FILE = Path("config") / "database.env"

_TRUE = ("1", "true", "yes", "on")


@dataclass
class DatabaseSettings:
    """Everything needed to construct a ``DatabaseManager``."""

    database_path: Path = Path("data") / "fdts.db"
    # None keeps backups next to the database in ``<db dir>/backups``
    backup_path: Path | None = None
    max_connections: int = 10
    acquire_timeout: float | None = 30.0
    busy_timeout_ms: int = 30000
    lazy_initialize: bool = True
    migrations_dir: Path = PACKAGED_MIGRATIONS_DIR
    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def from_env(
        cls,
        env_file: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> DatabaseSettings:
        """Load settings from ``env_file`` (if present) and the environment.

        Args:
            env_file: Env file to read first (default: ``config/database.env``)
            environ: Mapping to use instead of ``os.environ``
        """
        values = load_env_file(env_file or DEFAULT_ENV_FILE)
        values.update(os.environ if environ is None else environ)

        defaults = cls()
        return cls(
            database_path=Path(values.get("DATABASE_PATH", defaults.database_path)),
            backup_path=_parse_path(values.get("DATABASE_BACKUP_PATH")),
            max_connections=int(
                values.get("DATABASE_MAX_CONNECTIONS", defaults.max_connections)
            ),
            acquire_timeout=_parse_timeout(
                values.get("DATABASE_ACQUIRE_TIMEOUT"), defaults.acquire_timeout
            ),
            busy_timeout_ms=int(
                values.get("DATABASE_BUSY_TIMEOUT_MS", defaults.busy_timeout_ms)
            ),
            lazy_initialize=_parse_bool(
                values.get("DATABASE_LAZY_INIT"), defaults.lazy_initialize
            ),
            migrations_dir=Path(values.get("FDTS_MIGRATIONS_DIR", defaults.migrations_dir)),
            log_level=values.get("LOG_LEVEL", defaults.log_level).upper(),
            log_json=_parse_bool(values.get("LOG_JSON"), defaults.log_json),
        )

    def pool_config(self) -> PoolConfig:
        return PoolConfig(
            max_connections=self.max_connections,
            acquire_timeout=self.acquire_timeout,
            busy_timeout_ms=self.busy_timeout_ms,
            lazy_initialize=self.lazy_initialize,
        )


def load_env_file(path: Path) -> dict[str, str]:
    """Parse a ``KEY=VALUE`` file; missing files yield an empty dict."""
    if not path.exists():
        return {}

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[7:]
        if "=" in line:
            key, value = line.split("=", 1)
            values[key.strip()] = value.strip().strip('"').strip("'")

    return values


def _parse_path(raw: str | None) -> Path | None:
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip())


def _parse_bool(raw: str | None, default: bool) -> bool:
    if raw is None:
        return default
    return raw.strip().lower() in _TRUE


def _parse_timeout(raw: str | None, default: float | None) -> float | None:
    if raw is None:
        return default
    raw = raw.strip().lower()
    if raw in ("", "0", "none", "never"):
        return None
    return float(raw)
