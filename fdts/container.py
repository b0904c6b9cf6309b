"""Dependency injection container for the FDTS datastore.

One ``DatabaseManager`` is created per process and handed to the
repositories and services that need it, instead of living in a module
global.

Usage:
    container = Container(DatabaseSettings.from_env())
    db = container.get(DatabaseManager)
    migrations = container.get(MigrationManager)
    ...
    container.shutdown()
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from fdts.config import DatabaseSettings
from fdts.db.manager import DatabaseManager
from fdts.db.migrations import MigrationManager

T = TypeVar("T")


class Container:
    """Lazily builds and caches one instance per registered type."""

    def __init__(self, settings: DatabaseSettings | None = None):
        """
        Args:
            settings: Datastore settings (default: loaded from the environment)
        """
        self.settings = settings or DatabaseSettings.from_env()
        self._singletons: dict[type, Any] = {}
        self._factories: dict[type, Callable[[], Any]] = {}
        self.setup_defaults()

    def register(self, interface: type[T], factory: Callable[[], T]) -> None:
        """Register a factory for a type (replacing any cached instance)."""
        self._factories[interface] = factory
        self._singletons.pop(interface, None)

    def register_singleton(self, interface: type[T], instance: T) -> None:
        self._singletons[interface] = instance

    def get(self, interface: type[T]) -> T:
        """Get the instance of a type, building it on first use.

        Raises:
            ValueError: If no factory registered for type
        """
        if interface in self._singletons:
            return self._singletons[interface]

        if interface in self._factories:
            instance = self._factories[interface]()
            self._singletons[interface] = instance
            return instance

        raise ValueError(f"No factory registered for {interface}")

    def has(self, interface: type) -> bool:
        return interface in self._singletons or interface in self._factories

    def setup_defaults(self) -> None:
        self.register(DatabaseManager, lambda: DatabaseManager.from_settings(self.settings))
        self.register(
            MigrationManager,
            lambda: MigrationManager(self.get(DatabaseManager), self.settings.migrations_dir),
        )

    def shutdown(self) -> None:
        """Close the database manager (if built) and forget cached instances."""
        db = self._singletons.get(DatabaseManager)
        if db is not None:
            db.close()
        self._singletons.clear()
