"""Migration registry for discovering and ordering migrations.

Provides:
- Discovery of migration modules from a versions package
- Name-keyed lookup of loaded definitions
- Deterministic version ordering
"""

import importlib
import inspect
import logging
import pkgutil
from typing import Optional

from .base import BaseMigration, MigrationLoadError
from .utils import parse_migration_filename

logger = logging.getLogger(__name__)


class MigrationRegistry:
    """Name-keyed collection of migration definitions.

    Definitions are immutable once registered; the registry only grows.
    """

    def __init__(self, migrations: Optional[list[BaseMigration]] = None):
        self._migrations: dict[str, BaseMigration] = {}
        self._sorted: Optional[list[BaseMigration]] = None
        for migration in migrations or []:
            self.register(migration)

    def __len__(self) -> int:
        return len(self._migrations)

    def __contains__(self, name: object) -> bool:
        return name in self._migrations

    def register(self, migration: BaseMigration) -> None:
        """Register a migration.

        Raises:
            MigrationLoadError: If the object is not a migration or its
                name is already taken
        """
        if not isinstance(migration, BaseMigration):
            raise MigrationLoadError(
                f"Expected a BaseMigration instance, got {type(migration).__name__}"
            )

        if migration.name in self._migrations:
            existing = self._migrations[migration.name]
            raise MigrationLoadError(
                f"Duplicate migration name '{migration.name}': "
                f"versions {existing.version} and {migration.version}"
            )

        self._migrations[migration.name] = migration
        self._sorted = None

    def get(self, name: str) -> Optional[BaseMigration]:
        """Get a migration by name."""
        return self._migrations.get(name)

    def get_all(self) -> list[BaseMigration]:
        """All migrations, ascending by version (name breaks ties)."""
        if self._sorted is None:
            self._sorted = sorted(self._migrations.values(), key=lambda m: (m.version, m.name))
        return self._sorted.copy()

    def names(self) -> list[str]:
        """Migration names in execution order."""
        return [m.name for m in self.get_all()]


def _migration_classes(module) -> list[type[BaseMigration]]:
    return [
        obj
        for _, obj in inspect.getmembers(module, inspect.isclass)
        if issubclass(obj, BaseMigration)
        and obj is not BaseMigration
        and obj.__module__ == module.__name__
        and not inspect.isabstract(obj)
    ]


def load_migration_module(module_name: str) -> BaseMigration:
    """Import one migration module and instantiate its migration.

    Raises:
        MigrationLoadError: If the module fails to import or does not
            define exactly one migration class
    """
    try:
        module = importlib.import_module(module_name)
    except Exception as e:
        raise MigrationLoadError(f"Failed to load migration module {module_name}: {e}") from e

    classes = _migration_classes(module)
    if len(classes) != 1:
        raise MigrationLoadError(
            f"Migration module {module_name} must define exactly one migration, found {len(classes)}"
        )

    return classes[0]()


def discover_migrations(package: str) -> MigrationRegistry:
    """Discover all migrations in a versions package.

    Every module named '<version>_<slug>' is loaded; other modules are
    ignored. A package that does not exist yields an empty registry.

    Raises:
        MigrationLoadError: On any malformed module or duplicate name
    """
    registry = MigrationRegistry()

    try:
        versions_module = importlib.import_module(package)
    except ModuleNotFoundError as e:
        # Only the package itself (or a parent) being absent counts as
        # missing; anything its __init__ fails to import is a load error.
        missing = e.name or ""
        if missing and (package == missing or package.startswith(f"{missing}.")):
            logger.warning(f"Migrations package not found: {package} ({e})")
            return registry
        raise MigrationLoadError(f"Failed to import migrations package {package}: {e}") from e
    except Exception as e:
        raise MigrationLoadError(f"Failed to import migrations package {package}: {e}") from e

    search_path = getattr(versions_module, "__path__", None)
    if search_path is None:
        raise MigrationLoadError(f"{package} is a module, not a package")

    module_names = sorted(
        name
        for _, name, ispkg in pkgutil.iter_modules(search_path)
        if not ispkg and parse_migration_filename(f"{name}.py")
    )
    logger.info(f"Found {len(module_names)} migration files in {package}")

    for name in module_names:
        migration = load_migration_module(f"{package}.{name}")
        registry.register(migration)
        logger.debug(f"Loaded migration: {migration.name} (v{migration.version})")

    return registry
