"""
Marketplace Index Cache.

Marketplaces are registered in a small TOML registry and their index
documents are fetched on demand and cached as JSON, one file per
marketplace. The installer only ever reads the cache; an index that was
never refreshed cannot be installed from.

Key features:
- Registry of marketplace indexes (id, url, enabled)
- Explicit refresh via httpx, non-OK responses raise NetworkError
- Cache file ``marketplace-<id>.json`` holding ``{fetchedAt, url, data}``
- Schema-validated index loading for the installer
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from relaykit.config.settings import RelaySettings
from relaykit.config.toml_handler import TOMLError, read_toml_with_backup, write_toml
from relaykit.core.utils import sanitize_id
from relaykit.errors import ConfigError, IndexNotCachedError, NetworkError
from relaykit.marketplace.index import MarketplaceIndex, parse_marketplace_index

logger = logging.getLogger(__name__)


@dataclass
class MarketplaceIndexSpec:
    """A registered marketplace index."""

    id: str
    url: str
    enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "url": self.url, "enabled": self.enabled}


@dataclass
class CachedIndex:
    """
    Result of reading a cached index.

    Attributes:
        exists: Whether the cache file exists
        cache_path: Path of the cache file
        data: Decoded cache document ``{fetchedAt, url, data}`` or None
    """

    exists: bool
    cache_path: Path
    data: dict[str, Any] | None = None


class MarketplaceCache:
    """Registry and on-disk cache of marketplace indexes."""

    def __init__(self, settings: RelaySettings, client: httpx.AsyncClient | None = None):
        """
        Initialize the cache.

        Args:
            settings: Host settings
            client: HTTP client (a client without timeouts is created if omitted)
        """
        self.settings = settings
        self.root = settings.data_root
        self.client = client or httpx.AsyncClient(timeout=None, follow_redirects=True)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    # -- registry ------------------------------------------------------

    @property
    def registry_path(self) -> Path:
        return self.root.resolve(self.settings.marketplaces_path)

    def cache_path(self, marketplace_id: str) -> Path:
        cache_dir = self.root.resolve(self.settings.cache_dir)
        return self.root.resolve(
            cache_dir / f"marketplace-{sanitize_id(marketplace_id, 'market')}.json"
        )

    def read_marketplaces(self) -> list[MarketplaceIndexSpec]:
        """
        Read the registered marketplace indexes.

        Entries without an id or url are ignored.
        """
        try:
            data = read_toml_with_backup(self.registry_path)
        except TOMLError as e:
            logger.error("Failed to read marketplace registry: %s", e)
            return []
        if not data:
            return []

        specs = []
        for raw in data.get("indexes", []):
            if not isinstance(raw, dict):
                continue
            index_id = sanitize_id(str(raw.get("id") or ""), "")
            url = str(raw.get("url") or "").strip()
            if not index_id or not url:
                continue
            specs.append(
                MarketplaceIndexSpec(
                    id=index_id, url=url, enabled=raw.get("enabled") is not False
                )
            )
        return specs

    def _write_marketplaces(self, specs: list[MarketplaceIndexSpec]) -> None:
        try:
            write_toml(
                self.registry_path,
                {"version": 1, "indexes": [s.to_dict() for s in specs]},
            )
        except TOMLError as e:
            raise ConfigError(f"Failed to write marketplace registry: {e}") from e

    def get_marketplace(self, marketplace_id: str) -> MarketplaceIndexSpec | None:
        index_id = sanitize_id(marketplace_id, "market")
        for spec in self.read_marketplaces():
            if spec.id == index_id:
                return spec
        return None

    def upsert_marketplace_index(
        self, marketplace_id: str, url: str, enabled: bool = True
    ) -> MarketplaceIndexSpec:
        """
        Register or update a marketplace index.

        Args:
            marketplace_id: Marketplace id (sanitized)
            url: Index document URL
            enabled: Whether the index is enabled

        Returns:
            The stored spec
        """
        url = url.strip()
        if not url:
            raise ConfigError("Marketplace index url must not be empty")

        spec = MarketplaceIndexSpec(
            id=sanitize_id(marketplace_id, "market"), url=url, enabled=enabled
        )
        specs = [s for s in self.read_marketplaces() if s.id != spec.id]
        specs.append(spec)
        specs.sort(key=lambda s: s.id)
        self._write_marketplaces(specs)
        logger.info("Marketplace index %s registered: %s", spec.id, spec.url)
        return spec

    def remove_marketplace_index(self, marketplace_id: str) -> bool:
        """Unregister a marketplace index. Returns False if it was not registered."""
        index_id = sanitize_id(marketplace_id, "market")
        specs = self.read_marketplaces()
        remaining = [s for s in specs if s.id != index_id]
        if len(remaining) == len(specs):
            return False
        self._write_marketplaces(remaining)
        logger.info("Marketplace index %s removed", index_id)
        return True

    # -- cache ---------------------------------------------------------

    async def refresh_marketplace_index(
        self, marketplace_id: str, url: str | None = None
    ) -> CachedIndex:
        """
        Fetch an index document and write it to the cache.

        Args:
            marketplace_id: Marketplace id
            url: Index URL (the registered URL if omitted)

        Returns:
            The freshly written cache entry

        Raises:
            ConfigError: If no URL is given and the id is not registered
            NetworkError: If the request fails or the response is not OK
        """
        index_id = sanitize_id(marketplace_id, "market")
        if not url:
            spec = self.get_marketplace(index_id)
            if spec is None:
                raise ConfigError(f"Marketplace not registered: {index_id}")
            url = spec.url

        try:
            response = await self.client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(f"Failed to fetch marketplace index {url}: {e}") from e
        if not response.is_success:
            raise NetworkError(
                f"Failed to fetch marketplace index: {response.status_code} "
                f"{response.reason_phrase}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"Marketplace index is not valid JSON: {url}") from e

        document = {
            "fetchedAt": datetime.now(timezone.utc).isoformat(),
            "url": url,
            "data": data,
        }

        path = self.cache_path(index_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp_path, path)

        logger.info("Marketplace index %s refreshed from %s", index_id, url)
        return CachedIndex(exists=True, cache_path=path, data=document)

    def read_marketplace_cache(self, marketplace_id: str) -> CachedIndex:
        path = self.cache_path(marketplace_id)
        if not path.is_file():
            return CachedIndex(exists=False, cache_path=path)
        with open(path, encoding="utf-8") as f:
            return CachedIndex(exists=True, cache_path=path, data=json.load(f))

    def load_index(self, marketplace_id: str) -> MarketplaceIndex:
        """
        Load and validate a cached index.

        Raises:
            IndexNotCachedError: If the index was never refreshed
            ValidationError: If the cached document has the wrong schema
        """
        index_id = sanitize_id(marketplace_id, "market")
        try:
            cached = self.read_marketplace_cache(index_id)
        except ValueError as e:
            raise ConfigError(f"Corrupt marketplace cache for {index_id!r}: {e}") from e
        if not cached.exists:
            raise IndexNotCachedError(
                f"Marketplace cache not found for {index_id!r}; refresh it first"
            )
        return parse_marketplace_index((cached.data or {}).get("data"))
