"""
Per-plugin key/value storage.

Each plugin gets its own directory under ``<data>/plugins-data/<id>/`` with
one JSON file per key. Keys are sanitized, so a plugin cannot address files
outside its own directory.
"""

import json
import logging
from pathlib import Path
from typing import Any

from relaykit.config.paths import ConfinedRoot
from relaykit.core.utils import sanitize_id

logger = logging.getLogger(__name__)


class PluginStorage:
    """JSON file storage scoped to one plugin."""

    def __init__(self, plugin_id: str, base_dir: Path):
        self.plugin_id = plugin_id
        self.directory = Path(base_dir) / sanitize_id(plugin_id)
        self._root = ConfinedRoot(base_dir)

    def _key_path(self, key: str) -> Path:
        name = sanitize_id(key, default="default")
        return self._root.resolve(self.directory / f"{name}.json")

    async def get(self, key: str, default: Any = None) -> Any:
        path = self._key_path(key)
        if not path.exists():
            return default
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                "Failed to read storage key %s for plugin %s: %s", key, self.plugin_id, e
            )
            return default

    async def set(self, key: str, value: Any) -> None:
        path = self._key_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(value, f, ensure_ascii=False, indent=2)
        tmp_path.replace(path)

    async def delete(self, key: str) -> bool:
        path = self._key_path(key)
        if not path.exists():
            return False
        path.unlink()
        return True

    async def keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))

    async def clear(self) -> int:
        removed = 0
        for key in await self.keys():
            if await self.delete(key):
                removed += 1
        return removed
