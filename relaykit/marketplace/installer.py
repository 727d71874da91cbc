"""
Marketplace Installer.

This module installs plugin packages listed in a cached marketplace index
into ``<plugins>/<id>/<version>/`` and registers them in the plugin config
store, where the runtime picks them up on its next (re)load.

Key features:
- Install pipeline: resolve, validate, download with sha256 pinning,
  extract safely, optional sandboxed pnpm install, register
- Dry runs that resolve everything without touching disk or network
- Upgrade to a newer listed version, rollback to an on-disk version
- Uninstall (marketplace entries removed, local plugins tombstoned)
- One global InstallLock around every mutating operation
"""

import hashlib
import json
import logging
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from relaykit.config.settings import RelaySettings
from relaykit.config.store import ConfigStore, PluginConfigEntry
from relaykit.core.utils import sanitize_id
from relaykit.errors import (
    IntegrityError,
    NetworkError,
    PluginRuntimeError,
    ValidationError,
)
from relaykit.marketplace.archive import extract_archive
from relaykit.marketplace.cache import MarketplaceCache
from relaykit.marketplace.index import (
    Permissions,
    normalize_entry_path,
    pick_version,
    resolve_install_spec,
    validate_dist,
    validate_permissions,
)
from relaykit.marketplace.lock import InstallLock
from relaykit.marketplace.sandbox import (
    find_project_dir,
    link_host_sdk,
    resolve_entry_file,
    run_pnpm_install,
)
from relaykit.marketplace.versions import sort_versions
from relaykit.plugin.runtime import PluginRuntime

logger = logging.getLogger(__name__)

METADATA_FILE = "relaykit-plugin.json"

# Directories under the plugins root that are not plugin ids
RESERVED_IDS = frozenset({"tmp", "local", "cache"})

_DEFAULT_CONFIG_FILES = (
    "config.json",
    "config.toml",
    "dist/config.json",
    "dist/config.toml",
)


@dataclass
class InstallOptions:
    """
    Options for install_from_marketplace().

    Attributes:
        marketplace_id: Marketplace the plugin is listed in
        plugin_id: Plugin id as listed (sanitized before use)
        version: Exact version, or None for the highest listed
        enabled: Enabled flag (stored value, then True, if None)
        config: Plugin config (stored value, then package default, if None)
        reload: Reload the runtime after registering
        dry_run: Resolve and validate only
    """

    marketplace_id: str
    plugin_id: str
    version: str | None = None
    enabled: bool | None = None
    config: dict[str, Any] | None = None
    reload: bool = False
    dry_run: bool = False


@dataclass
class UpgradeOptions:
    marketplace_id: str | None = None
    version: str | None = None
    reload: bool = False
    dry_run: bool = False


@dataclass
class RollbackOptions:
    version: str | None = None
    reload: bool = False
    dry_run: bool = False


@dataclass
class UninstallOptions:
    remove_files: bool = False
    reload: bool = False
    dry_run: bool = False


@dataclass
class PluginInstallResult:
    """
    Result of an install or upgrade.

    Attributes:
        id: Sanitized plugin id
        version: Installed version
        entry_path: Entry file relative to the install directory
        module: Module specifier stored in the config store
        install_dir: ``<plugins>/<id>/<version>``
        permissions: Granted permissions
        source: Provenance record stored with the config entry
        dry_run: True if nothing was written
    """

    id: str
    version: str
    entry_path: str
    module: str
    install_dir: Path
    permissions: Permissions
    source: dict[str, Any] = field(default_factory=dict)
    dry_run: bool = False


@dataclass
class RollbackResult:
    id: str
    from_version: str
    to_version: str
    module: str


@dataclass
class UninstallResult:
    id: str
    removed: bool
    files_removed: bool


@dataclass
class PluginVersions:
    current: str | None
    installed: list[str]


def build_module_specifier(plugin_id: str, version: str, entry_path: str) -> str:
    return f"./{plugin_id}/{version}/{entry_path}"


def _validate_version_dir(version: str) -> str:
    if not version or version in (".", "..") or "/" in version or "\\" in version:
        raise ValidationError(f"Invalid version: {version!r}")
    return version


class MarketplaceInstaller:
    """
    Installs, upgrades, rolls back and uninstalls marketplace plugins.

    Args:
        settings: Host settings (data root, capability gates)
        store: Plugin config store
        cache: Marketplace index cache
        lock: Install lock (one per process)
        http_client: Client used for archive downloads
        runtime: Runtime to reload when an operation asks for it
    """

    def __init__(
        self,
        settings: RelaySettings,
        store: ConfigStore | None = None,
        cache: MarketplaceCache | None = None,
        lock: InstallLock | None = None,
        http_client: httpx.AsyncClient | None = None,
        runtime: PluginRuntime | None = None,
    ):
        self.settings = settings
        self.root = settings.data_root
        self.store = store or ConfigStore(settings)
        self.client = http_client or httpx.AsyncClient(
            timeout=None, follow_redirects=True
        )
        self.cache = cache or MarketplaceCache(settings, client=self.client)
        self.lock = lock or InstallLock()
        self.runtime = runtime

    async def close(self) -> None:
        await self.client.aclose()

    # -- paths ---------------------------------------------------------

    @property
    def plugins_root(self) -> Path:
        return self.root.resolve(self.settings.plugins_root)

    def _plugin_dir(self, plugin_id: str) -> Path:
        if plugin_id in RESERVED_IDS:
            raise ValidationError(f"Reserved plugin id: {plugin_id}")
        return self.root.resolve(self.plugins_root / plugin_id)

    def _install_dir(self, plugin_id: str, version: str) -> Path:
        return self.root.resolve(
            self._plugin_dir(plugin_id) / _validate_version_dir(version)
        )

    # -- helpers -------------------------------------------------------

    def _infer_current_version(
        self, plugin_id: str, entry: PluginConfigEntry | None = None
    ) -> str | None:
        entry = entry or self.store.get(plugin_id)
        if entry is None:
            return None
        source = entry.source or {}
        if isinstance(source.get("version"), str) and source["version"]:
            return source["version"]
        match = re.match(rf"^\./{re.escape(plugin_id)}/([^/]+)/", entry.module)
        return match.group(1) if match else None

    def _list_installed_versions(self, plugin_id: str) -> list[str]:
        plugin_dir = self._plugin_dir(plugin_id)
        if not plugin_dir.is_dir():
            return []
        return sort_versions([p.name for p in plugin_dir.iterdir() if p.is_dir()])

    async def _download(self, url: str, archive_path: Path) -> str:
        """Stream url to archive_path and return the sha256 hex digest."""
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()
        size = 0
        try:
            async with self.client.stream("GET", url) as response:
                if not response.is_success:
                    raise NetworkError(
                        f"Download failed: {response.status_code} {response.reason_phrase}"
                    )
                with open(archive_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        digest.update(chunk)
                        f.write(chunk)
                        size += len(chunk)
        except httpx.HTTPError as e:
            archive_path.unlink(missing_ok=True)
            raise NetworkError(f"Download failed: {e}") from e
        except NetworkError:
            archive_path.unlink(missing_ok=True)
            raise

        logger.debug("Downloaded %d bytes to %s", size, archive_path)
        return digest.hexdigest()

    def _load_default_config(self, install_dir: Path) -> dict[str, Any] | None:
        for base in (install_dir, install_dir / "package"):
            for name in _DEFAULT_CONFIG_FILES:
                candidate = base / name
                if not candidate.is_file():
                    continue
                try:
                    if candidate.suffix == ".json":
                        data = json.loads(candidate.read_text(encoding="utf-8"))
                    else:
                        with open(candidate, "rb") as f:
                            data = tomllib.load(f)
                except (OSError, ValueError) as e:
                    logger.warning("Failed to load default config %s: %s", candidate, e)
                    continue
                if isinstance(data, dict):
                    return data
        return None

    def _read_metadata(self, install_dir: Path) -> dict[str, Any] | None:
        path = install_dir / METADATA_FILE
        if not path.is_file():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable install metadata %s: %s", path, e)
            return None
        return data if isinstance(data, dict) else None

    async def _reload_runtime(self) -> None:
        if self.runtime is None:
            logger.warning("Reload requested but no runtime is attached")
            return
        try:
            await self.runtime.reload()
        except PluginRuntimeError as e:
            logger.error("Runtime reload failed: %s", e)

    # -- operations ----------------------------------------------------

    async def install_from_marketplace(self, opts: InstallOptions) -> PluginInstallResult:
        """
        Install a plugin from a cached marketplace index.

        Raises:
            IndexNotCachedError: If the index was never refreshed
            ValidationError: If the listing is malformed or the version is unknown
            PluginPermissionError: If requested permissions are not granted
            SandboxRefusalError: If pnpm install is not allowed
            NetworkError: If the download fails
            IntegrityError: If the archive digest does not match
            ArchiveSafetyError: If the archive contains unsafe entries
        """
        async with self.lock:
            return await self._install(opts)

    async def _install(self, opts: InstallOptions) -> PluginInstallResult:
        marketplace_id = sanitize_id(opts.marketplace_id, "market")
        plugin_id = sanitize_id(opts.plugin_id)
        logger.info(
            "Marketplace install started: %s from %s (version=%s, dry_run=%s)",
            plugin_id,
            marketplace_id,
            opts.version or "latest",
            opts.dry_run,
        )

        existing = self.store.get(plugin_id)
        if opts.enabled is not None:
            enabled = opts.enabled
        else:
            enabled = existing.enabled if existing else True
        config = opts.config if opts.config is not None else (
            existing.config if existing else None
        )

        index = self.cache.load_index(marketplace_id)
        listed = index.find_plugin(plugin_id)
        if listed is None:
            raise ValidationError(f"Plugin not found in marketplace: {plugin_id}")

        target = pick_version(listed.versions, opts.version)
        version = target.version
        entry_path = normalize_entry_path(target.entry_path)
        dist_type, url, expected = validate_dist(target)

        permissions = Permissions.from_dict(target.permissions)
        validate_permissions(permissions, self.settings)
        install = resolve_install_spec(target.install, self.settings)

        install_dir = self._install_dir(plugin_id, version)
        source = {
            "type": "marketplace",
            "marketplaceId": marketplace_id,
            "pluginId": plugin_id,
            "version": version,
            "dist": {"type": dist_type, "url": url, "sha256": expected},
            "install": install.to_dict(),
            "permissions": permissions.to_dict(),
        }

        if opts.dry_run:
            logger.info("Dry run resolved %s@%s", plugin_id, version)
            return PluginInstallResult(
                id=plugin_id,
                version=version,
                entry_path=entry_path,
                module=build_module_specifier(plugin_id, version, entry_path),
                install_dir=install_dir,
                permissions=permissions,
                source=source,
                dry_run=True,
            )

        download_dir = self.root.resolve(self.settings.download_dir)
        archive_path = self.root.resolve(
            download_dir / f"{plugin_id}-{version}.{dist_type}"
        )
        sha256 = await self._download(url, archive_path)
        if sha256 != expected:
            archive_path.unlink(missing_ok=True)
            raise IntegrityError(f"sha256 mismatch: expected={expected} got={sha256}")

        shutil.rmtree(install_dir, ignore_errors=True)
        install_dir.mkdir(parents=True, exist_ok=True)
        try:
            await extract_archive(dist_type, archive_path, install_dir)
        finally:
            archive_path.unlink(missing_ok=True)

        if install.mode == "pnpm":
            project_dir = find_project_dir(install_dir)
            if project_dir is None:
                raise ValidationError(
                    "install.mode=pnpm but package.json not found after extract"
                )
            await run_pnpm_install(project_dir, install, self.settings)

        link_host_sdk(install_dir, self.settings)

        entry_file = self.root.resolve(resolve_entry_file(install_dir, entry_path))
        entry_rel = entry_file.relative_to(install_dir).as_posix()

        if config is None:
            config = self._load_default_config(install_dir)
            if config is not None:
                logger.info("Applied default config for %s", plugin_id)

        metadata = {
            "installedAt": datetime.now(timezone.utc).isoformat(),
            **source,
            "entry": {"path": entry_rel},
        }
        (install_dir / METADATA_FILE).write_text(
            json.dumps(metadata, indent=2), encoding="utf-8"
        )

        record = self.store.upsert(
            plugin_id, str(entry_file), enabled=enabled, config=config, source=source
        )
        logger.info("Marketplace install completed: %s@%s", plugin_id, version)

        if opts.reload:
            await self._reload_runtime()

        return PluginInstallResult(
            id=plugin_id,
            version=version,
            entry_path=entry_rel,
            module=record.module,
            install_dir=install_dir,
            permissions=permissions,
            source=source,
        )

    async def upgrade_plugin(
        self, plugin_id: str, opts: UpgradeOptions | None = None
    ) -> PluginInstallResult:
        """
        Upgrade an installed plugin to another listed version.

        The marketplace defaults to the one recorded in the plugin's
        provenance.

        Raises:
            ValidationError: If the marketplace cannot be determined, the
                plugin is not listed, or it is already on the target version
        """
        opts = opts or UpgradeOptions()
        async with self.lock:
            pid = sanitize_id(plugin_id)
            entry = self.store.get(pid)
            current = self._infer_current_version(pid, entry)

            marketplace_id = (opts.marketplace_id or "").strip()
            if not marketplace_id:
                source = (entry.source if entry else None) or {}
                marketplace_id = str(source.get("marketplaceId") or "")
                if not marketplace_id:
                    raise ValidationError(
                        "Missing marketplace id (not installed from a marketplace?)"
                    )
            marketplace_id = sanitize_id(marketplace_id, "market")

            index = self.cache.load_index(marketplace_id)
            listed = index.find_plugin(pid)
            if listed is None:
                raise ValidationError(f"Plugin not found in marketplace: {pid}")
            target = pick_version(listed.versions, opts.version)
            if current and target.version == current:
                raise ValidationError(f"Already on version {current}")

            logger.info("Upgrading %s: %s -> %s", pid, current or "-", target.version)
            return await self._install(
                InstallOptions(
                    marketplace_id=marketplace_id,
                    plugin_id=pid,
                    version=target.version,
                    reload=opts.reload,
                    dry_run=opts.dry_run,
                )
            )

    async def rollback_plugin(
        self, plugin_id: str, opts: RollbackOptions | None = None
    ) -> RollbackResult:
        """
        Point a plugin back at another version already on disk.

        No network access. The target defaults to the newest on-disk version
        other than the current one.

        Raises:
            ValidationError: If the plugin is not installed, no other version
                exists, or the target lacks install metadata
        """
        opts = opts or RollbackOptions()
        async with self.lock:
            pid = sanitize_id(plugin_id)
            current = self._infer_current_version(pid)
            if not current:
                raise ValidationError(f"Plugin not installed: {pid}")

            installed = self._list_installed_versions(pid)
            if not installed:
                raise ValidationError("No installed versions on disk")

            target = opts.version
            if not target:
                candidates = [v for v in installed if v != current]
                if not candidates:
                    raise ValidationError("No previous version to rollback to")
                target = candidates[-1]
            if target not in installed:
                raise ValidationError(f"Target version not installed: {target}")

            install_dir = self._install_dir(pid, target)
            metadata = self._read_metadata(install_dir) or {}
            entry_rel = str((metadata.get("entry") or {}).get("path") or "").strip()
            if not entry_rel:
                raise ValidationError("Missing entry metadata for rollback target")
            entry_rel = normalize_entry_path(entry_rel)

            module = build_module_specifier(pid, target, entry_rel)
            if not opts.dry_run:
                source = {
                    k: v for k, v in metadata.items() if k not in ("installedAt", "entry")
                }
                source["version"] = target
                entry_file = self.root.resolve(install_dir / entry_rel)
                record = self.store.patch(pid, module=str(entry_file), source=source)
                module = record.module
                logger.info("Rolled back %s: %s -> %s", pid, current, target)
                if opts.reload:
                    await self._reload_runtime()

            return RollbackResult(
                id=pid, from_version=current, to_version=target, module=module
            )

    def _local_module_path(self, plugin_id: str) -> Path:
        local_dir = self.root.resolve(self.settings.local_plugins_dir)
        single_file = local_dir / f"{plugin_id}.py"
        return single_file if single_file.is_file() else local_dir / plugin_id

    async def uninstall_plugin(
        self, plugin_id: str, opts: UninstallOptions | None = None
    ) -> UninstallResult:
        """
        Uninstall a plugin.

        Marketplace entries are removed from the config store. Local plugins
        get a disabled tombstone entry so discovery does not bring them back.

        Args:
            plugin_id: Plugin id
            opts: Uninstall options (remove_files purges ``<plugins>/<id>``)

        Returns:
            UninstallResult (removed is True if a config entry existed)
        """
        opts = opts or UninstallOptions()
        async with self.lock:
            pid = sanitize_id(plugin_id)
            entry = self.store.get(pid)
            removed = entry is not None

            if not opts.dry_run:
                if entry is not None and entry.is_marketplace:
                    self.store.remove(pid)
                    logger.info("Removed marketplace plugin entry %s", pid)
                elif entry is not None:
                    self.store.patch(pid, enabled=False)
                    logger.info("Tombstoned local plugin %s", pid)
                elif self.runtime is not None and pid in self.runtime.get_last_report().loaded:
                    self.store.upsert(pid, str(self._local_module_path(pid)), enabled=False)
                    logger.info("Tombstoned discovered plugin %s", pid)

            files_removed = False
            if opts.remove_files and not opts.dry_run:
                shutil.rmtree(self._plugin_dir(pid), ignore_errors=True)
                files_removed = True

            if opts.reload and not opts.dry_run:
                await self._reload_runtime()

            return UninstallResult(id=pid, removed=removed, files_removed=files_removed)

    def get_plugin_versions(self, plugin_id: str) -> PluginVersions:
        """Report the current version and every version on disk."""
        pid = sanitize_id(plugin_id)
        return PluginVersions(
            current=self._infer_current_version(pid),
            installed=self._list_installed_versions(pid),
        )
