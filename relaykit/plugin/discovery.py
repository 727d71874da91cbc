"""
Plugin spec discovery.

Builds the spec list the runtime starts from, out of three sources:

1. Config store entries (highest priority; modules must resolve under the
   data root)
2. Local plugins found in ``<plugins>/local`` (single ``.py`` files and
   package directories)
3. Builtin plugins shipped with relaykit

A higher-priority source replaces a lower-priority spec with the same id;
equal-priority duplicates are skipped. Any id present in the config store,
including a disabled tombstone, suppresses local discovery of that id.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from relaykit.config.settings import RelaySettings
from relaykit.config.store import ConfigStore
from relaykit.core.utils import sanitize_id
from relaykit.errors import ConfigError
from relaykit.plugin.builtin import builtin_specs
from relaykit.plugin.loader import PluginSpec

logger = logging.getLogger(__name__)

PRIORITY_CONFIG = 3
PRIORITY_LOCAL = 2
PRIORITY_BUILTIN = 1

_PACKAGE_ENTRIES = ("__init__.py", "plugin.py")


@dataclass
class _Discovered:
    spec: PluginSpec
    priority: int
    order: int


class _SpecCollector:
    def __init__(self):
        self._specs: dict[str, _Discovered] = {}
        self._order = 0

    def __contains__(self, plugin_id: str) -> bool:
        return plugin_id in self._specs

    def add(self, spec: PluginSpec, priority: int) -> None:
        existing = self._specs.get(spec.id)
        if existing is None or priority > existing.priority:
            if existing is not None:
                logger.info(
                    "Plugin spec %s overridden by higher priority source", spec.id
                )
            self._specs[spec.id] = _Discovered(spec, priority, self._order)
            self._order += 1
            return

        if priority == PRIORITY_BUILTIN:
            logger.info("Builtin plugin %s skipped (overridden by user plugin)", spec.id)
            return
        logger.warning("Duplicate plugin id skipped: %s (%s)", spec.id, spec.module)

    def specs(self) -> list[PluginSpec]:
        ordered = sorted(self._specs.values(), key=lambda d: d.order)
        return [d.spec for d in ordered]


def _collect_config_specs(store: ConfigStore, collector: _SpecCollector) -> None:
    for entry in store.read():
        try:
            module_path = store.resolve_module_path(entry.module)
        except ConfigError as e:
            logger.warning("Skipping plugin %s: %s", entry.id, e)
            continue

        collector.add(
            PluginSpec(
                id=sanitize_id(entry.id),
                module=str(module_path),
                enabled=entry.enabled,
                config=entry.config or {},
                source=entry.source,
            ),
            PRIORITY_CONFIG,
        )


def _local_module_path(path: Path) -> Path | None:
    if path.is_file():
        return path if path.suffix == ".py" else None
    if path.is_dir():
        for name in _PACKAGE_ENTRIES:
            if (path / name).is_file():
                return path / name
    return None


def _collect_local_specs(local_dir: Path, collector: _SpecCollector) -> None:
    if not local_dir.is_dir():
        return

    for path in sorted(local_dir.iterdir(), key=lambda p: p.name):
        if path.name.startswith((".", "_")):
            continue

        module_path = _local_module_path(path)
        if module_path is None:
            continue

        plugin_id = sanitize_id(path.stem if path.is_file() else path.name)
        if plugin_id in collector:
            continue

        collector.add(
            PluginSpec(id=plugin_id, module=str(module_path)), PRIORITY_LOCAL
        )


def discover_plugin_specs(
    settings: RelaySettings,
    store: ConfigStore | None = None,
    builtins: list[PluginSpec] | None = None,
) -> list[PluginSpec]:
    """
    Discover plugin specs from config, local plugins and builtins.

    Args:
        settings: Host settings
        store: Config store (created from settings if omitted)
        builtins: Builtin specs (relaykit's own builtins if omitted)

    Returns:
        Specs in discovery order
    """
    store = store or ConfigStore(settings)
    collector = _SpecCollector()

    try:
        _collect_config_specs(store, collector)
    except ConfigError as e:
        logger.error("Failed to read plugin config: %s", e)

    try:
        local_dir = settings.data_root.resolve(settings.local_plugins_dir)
    except ConfigError as e:
        logger.error("Local plugins directory rejected: %s", e)
    else:
        _collect_local_specs(local_dir, collector)

    for spec in builtin_specs() if builtins is None else builtins:
        collector.add(spec, PRIORITY_BUILTIN)

    return collector.specs()
