"""
Dynamic Plugin Loader.

This module resolves a plugin spec into a validated plugin object.

Key features:
- spec.load() is authoritative when provided (sync or async)
- importlib integration for file paths and importable module names
- Extension probing for file specifiers ("", ".py", "/__init__.py")
- Structural type detection, done once and carried as PluginType
- Best-effort load_all() that skips disabled specs
"""

import importlib
import importlib.util
import logging
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any

from relaykit.core.utils import maybe_await, sanitize_id
from relaykit.errors import PluginLoadError
from relaykit.plugin.bridge import is_legacy_plugin, wrap_legacy_plugin

logger = logging.getLogger(__name__)

_SEMVER_PREFIX = re.compile(r"^\d+\.\d+\.\d+")

REQUIRED_FIELDS = ("id", "name", "version", "install")


class PluginType(Enum):
    """How a loaded plugin is driven by the runtime."""

    NATIVE = "native"
    COMPATIBILITY_BRIDGE = "compatibility-bridge"


@dataclass
class PluginSpec:
    """
    Declarative description of a loadable plugin.

    Attributes:
        id: Plugin id, unique within one runtime generation
        module: Module specifier (file path or importable module name)
        enabled: Disabled specs are never loaded
        config: Configuration passed to install()
        source: Provenance record from the config store
        load: Optional loader returning the module or plugin object
    """

    id: str
    module: str = ""
    enabled: bool = True
    config: dict[str, Any] = field(default_factory=dict)
    source: dict[str, Any] | None = None
    load: Callable[[], Any] | None = None


@dataclass
class LoadResult:
    plugin: Any
    type: PluginType
    module_path: str


def is_native_plugin(obj: Any) -> bool:
    return (
        isinstance(getattr(obj, "id", None), str)
        and isinstance(getattr(obj, "name", None), str)
        and isinstance(getattr(obj, "version", None), str)
        and callable(getattr(obj, "install", None))
    )


def detect_plugin_type(module: Any) -> PluginType | None:
    """
    Detect the plugin type of a loaded module.

    A module's exported plugin is its ``plugin`` attribute when present,
    otherwise the module itself.

    Returns:
        The detected type, or None if the shape is not recognized
    """
    exported = getattr(module, "plugin", module)
    if is_native_plugin(exported):
        return PluginType.NATIVE
    if is_legacy_plugin(module) or is_legacy_plugin(exported):
        return PluginType.COMPATIBILITY_BRIDGE
    return None


class PluginLoader:
    """
    Resolves plugin specs into plugin objects.

    Relative file specifiers are resolved against ``base_dir`` (the current
    directory by default).
    """

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = base_dir
        # plugin id -> sys.modules name of file-imported modules
        self._module_names: dict[str, str] = {}

    async def load(self, spec: PluginSpec) -> LoadResult:
        """
        Load and validate one plugin.

        Args:
            spec: Plugin spec

        Returns:
            LoadResult with the plugin object and its type

        Raises:
            PluginLoadError: If resolution, detection or validation fails
        """
        logger.debug("Loading plugin %s from %s", spec.id, spec.module or "<load()>")

        try:
            module_path = self._resolve_module_path(spec.module)
            if spec.load is not None:
                module = await maybe_await(spec.load())
            else:
                module = self._import_module(module_path, spec.id)

            plugin_type = detect_plugin_type(module)
            if plugin_type is None:
                raise PluginLoadError(f"Unknown plugin type for {spec.id}")

            plugin = self._extract_plugin(module, spec, plugin_type)
            self._validate_plugin(plugin, spec.id)
        except Exception as e:
            logger.error("Failed to load plugin %s: %s", spec.id, e)
            raise PluginLoadError(f"Failed to load plugin {spec.id}: {e}") from e

        logger.info(
            "Plugin loaded: id=%s type=%s version=%s",
            spec.id,
            plugin_type.value,
            plugin.version,
        )
        return LoadResult(plugin=plugin, type=plugin_type, module_path=module_path)

    async def load_all(self, specs: list[PluginSpec]) -> list[LoadResult]:
        """Load every enabled spec, skipping the ones that fail."""
        results = []
        for spec in specs:
            if not spec.enabled:
                logger.debug("Plugin %s disabled, skipping", spec.id)
                continue
            try:
                results.append(await self.load(spec))
            except PluginLoadError as e:
                logger.error("Skipping plugin %s: %s", spec.id, e)
        return results

    def _resolve_module_path(self, module: str) -> str:
        if not module.startswith((".", "/")):
            return module
        path = Path(module)
        if not path.is_absolute():
            path = (self.base_dir or Path.cwd()) / path
        return str(path.resolve())

    def _import_module(self, module_path: str, plugin_id: str) -> ModuleType:
        if not module_path:
            raise PluginLoadError("Missing module specifier")
        if not Path(module_path).is_absolute():
            return importlib.import_module(module_path)

        for candidate in self._probe_paths(Path(module_path)):
            if candidate.is_file():
                return self._import_file(candidate, plugin_id)

        raise PluginLoadError(f"Module not found: {module_path}")

    @staticmethod
    def _probe_paths(path: Path) -> list[Path]:
        return [path, Path(f"{path}.py"), path / "__init__.py"]

    def _import_file(self, entry_point: Path, plugin_id: str) -> ModuleType:
        module_name = f"relaykit_plugin_{sanitize_id(plugin_id).replace('-', '_')}"
        search_locations = None
        if entry_point.name == "__init__.py":
            search_locations = [str(entry_point.parent)]

        spec = importlib.util.spec_from_file_location(
            module_name, entry_point, submodule_search_locations=search_locations
        )
        if spec is None or spec.loader is None:
            raise PluginLoadError(f"Failed to create module spec for {entry_point}")

        module = importlib.util.module_from_spec(spec)

        # Add to sys.modules before execution
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            del sys.modules[module_name]
            raise

        self._module_names[plugin_id] = module_name
        return module

    def _extract_plugin(
        self, module: Any, spec: PluginSpec, plugin_type: PluginType
    ) -> Any:
        if plugin_type is PluginType.NATIVE:
            return getattr(module, "plugin", module)
        return wrap_legacy_plugin(module, spec.id, spec.config)

    def _validate_plugin(self, plugin: Any, expected_id: str) -> None:
        for field_name in REQUIRED_FIELDS:
            if not getattr(plugin, field_name, None):
                raise PluginLoadError(f"Plugin missing required field: {field_name}")

        if plugin.id != expected_id:
            logger.warning(
                "Plugin id mismatch: expected %s, got %s", expected_id, plugin.id
            )

        if not _SEMVER_PREFIX.match(plugin.version):
            logger.warning(
                "Plugin %s version %r may not follow semver", expected_id, plugin.version
            )

        if not callable(plugin.install):
            raise PluginLoadError("Plugin install must be callable")

    def unload_module(self, plugin_id: str) -> None:
        """Forget a file-imported plugin module so the next load re-executes it."""
        module_name = self._module_names.pop(plugin_id, None)
        if module_name and module_name in sys.modules:
            del sys.modules[module_name]
