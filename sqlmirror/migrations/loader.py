"""
Per-migration config loading.

A migration may ship a config module next to its SQL files
(``1.0.0C__add_users.py``) exporting a zero-argument ``config()`` function
that returns a SchemaConfig or a plain dictionary. When present and
non-empty, the migrator re-renders the SQL files from it before execution.

The Migrator only depends on the ConfigLoader interface, so tests can inject
a loader that returns configs without importing any code from disk.
"""

import importlib.util
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from sqlmirror.errors import ConfigModuleError, SqlMirrorError
from sqlmirror.schema.models import SchemaConfig

logger = logging.getLogger(__name__)

CONFIG_FUNCTION = "config"


class ConfigLoader(ABC):
    """Resolves a config module path into a SchemaConfig."""

    @abstractmethod
    def load(self, path: Path) -> Optional[SchemaConfig]:
        """
        Load the schema config for one migration.

        Args:
            path: Path of the config module

        Returns:
            SchemaConfig, or None when the module returns an empty config
        """


def _coerce(result: Any) -> Optional[SchemaConfig]:
    if not result:
        return None
    config = SchemaConfig.from_data(result)
    return None if config.is_empty() else config


class ModuleConfigLoader(ConfigLoader):
    """Imports config modules from disk with importlib."""

    def load(self, path: Path) -> Optional[SchemaConfig]:
        module_name = f"sqlmirror_migration_config_{path.stem.replace('.', '_').replace('-', '_')}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ConfigModuleError(f"Could not load spec for {path}", details={"filename": path.name})

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except OSError:
            raise
        except Exception as e:
            raise ConfigModuleError(
                f"Failed to import config module {path.name}: {e}",
                details={"filename": path.name},
            ) from e

        factory = getattr(module, CONFIG_FUNCTION, None)
        if not callable(factory):
            raise ConfigModuleError(
                f"Config module {path.name} does not export a {CONFIG_FUNCTION}() function",
                details={"filename": path.name},
            )

        try:
            result = factory()
        except SqlMirrorError as e:
            e.details.setdefault("filename", path.name)
            raise
        except Exception as e:
            raise ConfigModuleError(
                f"{path.name}: {CONFIG_FUNCTION}() raised {type(e).__name__}: {e}",
                details={"filename": path.name},
            ) from e

        logger.debug(f"[ConfigLoader] Loaded {path.name}")
        try:
            return _coerce(result)
        except SqlMirrorError as e:
            e.details.setdefault("filename", path.name)
            raise


class StaticConfigLoader(ConfigLoader):
    """Serves configs from memory, keyed by config module filename."""

    def __init__(self, configs: Dict[str, Any]):
        self._configs = dict(configs)

    def load(self, path: Path) -> Optional[SchemaConfig]:
        return _coerce(self._configs.get(path.name))
