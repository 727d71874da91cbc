"""
Plugin Configuration Store.

The store is the hand-off point between the marketplace installer (which
writes entries) and spec discovery (which turns entries into plugin specs).

Key features:
- TOML document ``{version = 1, plugins = [...]}`` under the data root
- Atomic writes with a .bak copy and recovery from it
- Module specifiers stored relative to the config file directory
- Upsert (kept sorted by id), patch and remove by sanitized id
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from relaykit.config.settings import RelaySettings
from relaykit.config.toml_handler import TOMLError, read_toml_with_backup, write_toml
from relaykit.core.utils import sanitize_id
from relaykit.errors import ConfigError

logger = logging.getLogger(__name__)

STORE_VERSION = 1

_UNSET: Any = object()


@dataclass
class PluginConfigEntry:
    """
    One plugin entry in the config store.

    Attributes:
        id: Sanitized plugin id
        module: Module path, relative to the config file directory
        enabled: Whether the runtime should load the plugin
        config: Plugin configuration passed to install()
        source: Provenance record (marketplace installs only)
    """

    id: str
    module: str
    enabled: bool = True
    config: dict[str, Any] | None = None
    source: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PluginConfigEntry":
        config = data.get("config")
        source = data.get("source")
        return cls(
            id=data["id"],
            module=data["module"],
            enabled=data.get("enabled") is not False,
            config=dict(config) if isinstance(config, dict) else None,
            source=dict(source) if isinstance(source, dict) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module": self.module,
            "enabled": self.enabled,
            "config": self.config,
            "source": self.source,
        }

    @property
    def is_marketplace(self) -> bool:
        return bool(self.source) and self.source.get("type") == "marketplace"


class ConfigStore:
    """
    File-backed plugin configuration store.

    Every path the store reads or writes is resolved through the settings'
    confined data root.
    """

    def __init__(self, settings: RelaySettings):
        self.settings = settings
        self.root = settings.data_root

    @property
    def path(self) -> Path:
        return self.root.resolve(self.settings.config_path)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    def read(self) -> list[PluginConfigEntry]:
        """
        Read all entries.

        Entries without an id or module are dropped. A missing or corrupt
        file falls back to its backup, then to an empty list.

        Returns:
            List of config entries in file order
        """
        path = self.path
        try:
            data = read_toml_with_backup(path)
        except TOMLError as e:
            logger.error("Failed to read plugin config %s: %s", path, e)
            return []

        if not data:
            return []

        entries = []
        for raw in data.get("plugins", []):
            if not isinstance(raw, dict):
                continue
            if not isinstance(raw.get("id"), str) or not raw["id"]:
                continue
            if not isinstance(raw.get("module"), str) or not raw["module"]:
                continue
            entries.append(PluginConfigEntry.from_dict(raw))
        return entries

    def get(self, plugin_id: str) -> PluginConfigEntry | None:
        pid = sanitize_id(plugin_id)
        for entry in self.read():
            if entry.id == pid:
                return entry
        return None

    def _write(self, entries: list[PluginConfigEntry]) -> None:
        data = {
            "version": STORE_VERSION,
            "plugins": [entry.to_dict() for entry in entries],
        }
        try:
            write_toml(self.path, data)
        except TOMLError as e:
            raise ConfigError(str(e)) from e

    def normalize_module_specifier(self, module: str) -> tuple[str, Path]:
        """
        Normalize a module specifier for storage.

        The path is resolved against the config directory, confined to the
        data root, and stored as ``./relative/path`` when it sits under the
        config directory.

        Args:
            module: Raw module specifier

        Returns:
            Tuple of (stored specifier, absolute path)

        Raises:
            ConfigError: If the specifier is empty or escapes the data root
        """
        raw = str(module or "").strip()
        if not raw:
            raise ConfigError("Missing module")

        if raw.startswith("file://"):
            raw = raw[len("file://"):]

        absolute = self.root.resolve(self.base_dir / raw)
        rel = os.path.relpath(absolute, self.base_dir)
        if rel == ".." or rel.startswith(".." + os.sep):
            return str(absolute), absolute
        return "./" + Path(rel).as_posix(), absolute

    def resolve_module_path(self, module: str) -> Path:
        """Resolve a stored specifier to an absolute, confined path."""
        return self.normalize_module_specifier(module)[1]

    def upsert(
        self,
        plugin_id: str,
        module: str,
        enabled: bool = True,
        config: dict[str, Any] | None = None,
        source: dict[str, Any] | None = None,
    ) -> PluginConfigEntry:
        """
        Insert or replace an entry.

        Args:
            plugin_id: Plugin id (sanitized before use)
            module: Module specifier
            enabled: Enabled flag
            config: Plugin configuration
            source: Provenance record

        Returns:
            The stored entry

        Raises:
            ConfigError: If the module specifier is unsafe
        """
        stored, _ = self.normalize_module_specifier(module)
        record = PluginConfigEntry(
            id=sanitize_id(plugin_id),
            module=stored,
            enabled=enabled is not False,
            config=config,
            source=source,
        )

        entries = [e for e in self.read() if e.id != record.id]
        entries.append(record)
        entries.sort(key=lambda e: e.id)
        self._write(entries)
        logger.debug("Upserted plugin config entry %s", record.id)
        return record

    def patch(
        self,
        plugin_id: str,
        *,
        module: str | None = None,
        enabled: bool | None = None,
        config: Any = _UNSET,
        source: Any = _UNSET,
    ) -> PluginConfigEntry:
        """
        Update selected fields of an entry.

        When the plugin has no entry yet, one is created pointing at
        ``./local/<id>``; this is how local plugins get tombstoned.

        Returns:
            The stored entry
        """
        pid = sanitize_id(plugin_id)
        entries = self.read()
        index = next((i for i, e in enumerate(entries) if e.id == pid), None)

        if index is None:
            return self.upsert(
                pid,
                module or f"./local/{pid}",
                enabled=enabled is not False,
                config=None if config is _UNSET else config,
                source=None if source is _UNSET else source,
            )

        entry = entries[index]
        if enabled is not None:
            entry.enabled = enabled
        if config is not _UNSET:
            entry.config = config
        if source is not _UNSET:
            entry.source = source
        if module and module.strip():
            entry.module, _ = self.normalize_module_specifier(module)

        self._write(entries)
        return entry

    def remove(self, plugin_id: str) -> bool:
        """Remove an entry. Returns False if it did not exist."""
        pid = sanitize_id(plugin_id)
        entries = self.read()
        remaining = [e for e in entries if e.id != pid]
        if len(remaining) == len(entries):
            return False
        self._write(remaining)
        return True
