"""
Migration Registry for stratum

Discovers and registers available migration units.

Features:
- Auto-discovery of units from the versions package
- Version validation (no gaps, no duplicates)
- Ordered unit sequencing
- Query available and pending units
"""

import importlib
import inspect
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .migration_base import MigrationBase

logger = logging.getLogger(__name__)


class MigrationRegistry:
    """
    Migration Registry - ordered, append-only catalog of migration units

    Pattern: Auto-discovery from versions package with validation
    Lifetime: Created on-demand for migration operations

    Example:
        registry = MigrationRegistry()
        registry.discover()
        for migration in registry.get_pending_migrations(current_version=2):
            print(f"Apply {migration}")
    """

    def __init__(self, versions_package: str = "stratum.migrations.versions"):
        """
        Initialize Migration Registry.

        Args:
            versions_package: Python package containing unit modules
                            (default: "stratum.migrations.versions")
        """
        self.versions_package = versions_package
        self._migrations: Dict[int, MigrationBase] = {}
        self._discovered = False

    @classmethod
    def from_migrations(cls, migrations: List[MigrationBase]) -> "MigrationRegistry":
        """
        Build a registry from explicit units instead of package discovery.

        Raises:
            ValueError: If versions are duplicated or the sequence has gaps
        """
        registry = cls(versions_package="")
        for migration in migrations:
            registry.register(migration)
        registry._validate_sequence()
        registry._discovered = True
        return registry

    def discover(self) -> None:
        """
        Discover and register all units from the versions package.

        Scans the package for modules, imports them, and registers any
        MigrationBase subclasses defined in them.

        Raises:
            ValueError: If a unit cannot be instantiated, a version is
                        duplicated, or the sequence has gaps
        """
        if self._discovered:
            return

        try:
            package = importlib.import_module(self.versions_package)
        except ImportError:
            logger.warning("Versions package %s not importable; registry is empty", self.versions_package)
            self._discovered = True
            return

        package_path = Path(package.__file__).parent

        for module_file in sorted(package_path.glob("*.py")):
            if module_file.name.startswith("_"):
                continue

            # A unit module that fails to import is a broken release, not an
            # optional plugin: let the ImportError propagate.
            module_name = f"{self.versions_package}.{module_file.stem}"
            module = importlib.import_module(module_name)

            for name, obj in inspect.getmembers(module, inspect.isclass):
                if (issubclass(obj, MigrationBase) and
                        obj is not MigrationBase and
                        not inspect.isabstract(obj) and
                        obj.__module__ == module_name):
                    try:
                        migration = obj()
                    except Exception as e:
                        raise ValueError(
                            f"Failed to instantiate migration {name} in {module_name}: {e}"
                        ) from e
                    self.register(migration)

        self._validate_sequence()
        self._discovered = True
        logger.debug("Discovered %d migrations in %s", len(self._migrations), self.versions_package)

    def register(self, migration: MigrationBase) -> None:
        """
        Manually register a unit.

        Args:
            migration: Unit instance to register

        Raises:
            ValueError: If the version is already registered
        """
        if migration.version in self._migrations:
            existing = self._migrations[migration.version]
            raise ValueError(
                f"Duplicate migration version {migration.version}: "
                f"{migration} conflicts with {existing}"
            )

        self._migrations[migration.version] = migration

    def _validate_sequence(self) -> None:
        """
        Validate the version sequence.

        Versions must start at 1 and be consecutive.

        Raises:
            ValueError: If the sequence is invalid
        """
        if not self._migrations:
            return

        versions = sorted(self._migrations.keys())

        if versions[0] != 1:
            raise ValueError(
                f"Migration versions must start at 1, found {versions[0]}"
            )

        for i, version in enumerate(versions, start=1):
            if version != i:
                raise ValueError(
                    f"Migration version gap detected: expected {i}, found {version}"
                )

    def get_migration(self, version: int) -> Optional[MigrationBase]:
        """Get a specific unit by version, or None."""
        if not self._discovered:
            self.discover()

        return self._migrations.get(version)

    def get_all_migrations(self) -> List[MigrationBase]:
        """Get all registered units in ascending version order."""
        if not self._discovered:
            self.discover()

        return [self._migrations[v] for v in sorted(self._migrations.keys())]

    def get_pending_migrations(self, current_version: int,
                               target_version: Optional[int] = None) -> List[MigrationBase]:
        """
        Get units that still need to be applied.

        Args:
            current_version: Highest applied version in the store
            target_version: Stop after this version (default: latest)

        Returns:
            Units with current_version < version <= target_version, ascending
        """
        if not self._discovered:
            self.discover()

        pending = []
        for version in sorted(self._migrations.keys()):
            if version <= current_version:
                continue
            if target_version is not None and version > target_version:
                break
            pending.append(self._migrations[version])

        return pending

    def get_latest_version(self) -> int:
        """Highest registered version, or 0 if there are no units."""
        if not self._discovered:
            self.discover()

        if not self._migrations:
            return 0

        return max(self._migrations.keys())

    def has_migrations(self) -> bool:
        """True if any unit is registered."""
        if not self._discovered:
            self.discover()

        return len(self._migrations) > 0

    def get_migration_count(self) -> int:
        """Total number of registered units."""
        if not self._discovered:
            self.discover()

        return len(self._migrations)

    def clear(self) -> None:
        """Clear all registered units."""
        self._migrations.clear()
        self._discovered = False

    def __repr__(self) -> str:
        count = len(self._migrations)
        latest = max(self._migrations.keys()) if self._migrations else 0
        return f"<MigrationRegistry: {count} migrations, latest v{latest}>"
