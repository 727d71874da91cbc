"""
Marketplace Index Schema.

This module parses and validates marketplace index documents
(``schemaVersion: 1``). Index contents are untrusted: parsing is lenient
so one bad version does not hide the others, and every field is checked
again by the helpers below right before the installer uses it.

Key features:
- Dataclasses for plugins, versions, entry, dist, install and permissions
- Version selection (explicit match or highest by version order)
- sha256 / entry path / dist type / install mode validation
- Permission manifests checked against host capability gates
"""

import re
from dataclasses import dataclass, field
from typing import Any

from relaykit.config.settings import RelaySettings
from relaykit.core.utils import sanitize_id
from relaykit.errors import PluginPermissionError, SandboxRefusalError, ValidationError
from relaykit.marketplace.archive import is_safe_archive_path
from relaykit.marketplace.versions import version_key

SCHEMA_VERSION = 1
DIST_TYPES = ("zip", "tgz")
INSTALL_MODES = ("none", "pnpm")

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class Permissions:
    """Requested capabilities of one plugin version."""

    network: list[str] = field(default_factory=list)
    fs: list[str] = field(default_factory=list)
    instances: list[int | str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "Permissions":
        data = data if isinstance(data, dict) else {}

        def _list(key: str) -> list:
            value = data.get(key)
            return value if isinstance(value, list) else []

        return cls(
            network=[str(x) for x in _list("network")],
            fs=[str(x) for x in _list("fs")],
            instances=[
                x if isinstance(x, int) and not isinstance(x, bool) else str(x)
                for x in _list("instances")
            ],
        )

    def to_dict(self) -> dict[str, list]:
        return {
            "network": list(self.network),
            "fs": list(self.fs),
            "instances": list(self.instances),
        }


@dataclass
class InstallSpec:
    """
    Dependency install instructions.

    Attributes:
        mode: "none" or "pnpm"
        production: Skip dev dependencies (default True)
        ignore_scripts: Do not run package install scripts (default True)
        frozen_lockfile: Require an up-to-date lockfile (default False)
        registry: Package registry override
    """

    mode: str = "none"
    production: bool = True
    ignore_scripts: bool = True
    frozen_lockfile: bool = False
    registry: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "production": self.production,
            "ignoreScripts": self.ignore_scripts,
            "frozenLockfile": self.frozen_lockfile,
            "registry": self.registry,
        }


@dataclass
class IndexVersion:
    """One installable version as listed in the index (unvalidated)."""

    version: str
    entry_path: str = ""
    dist_type: str = ""
    dist_url: str = ""
    dist_sha256: str = ""
    install: dict[str, Any] = field(default_factory=dict)
    permissions: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexVersion":
        entry = data.get("entry") if isinstance(data.get("entry"), dict) else {}
        dist = data.get("dist") if isinstance(data.get("dist"), dict) else {}
        install = data.get("install")
        permissions = data.get("permissions")
        return cls(
            version=str(data.get("version") or ""),
            entry_path=str(entry.get("path") or ""),
            dist_type=str(dist.get("type") or ""),
            dist_url=str(dist.get("url") or ""),
            dist_sha256=str(dist.get("sha256") or ""),
            install=install if isinstance(install, dict) else {},
            permissions=permissions if isinstance(permissions, dict) else {},
        )


@dataclass
class IndexPlugin:
    id: str
    name: str | None = None
    description: str | None = None
    versions: list[IndexVersion] = field(default_factory=list)


@dataclass
class MarketplaceIndex:
    """
    A parsed marketplace index.

    Attributes:
        name: Optional marketplace display name
        plugins: Listed plugins
    """

    plugins: list[IndexPlugin]
    name: str | None = None

    def find_plugin(self, plugin_id: str) -> IndexPlugin | None:
        """Find a plugin by id, comparing sanitized ids."""
        for plugin in self.plugins:
            if sanitize_id(plugin.id) == plugin_id:
                return plugin
        return None


def parse_marketplace_index(data: Any) -> MarketplaceIndex:
    """
    Parse an index document.

    Args:
        data: Decoded JSON document

    Returns:
        MarketplaceIndex

    Raises:
        ValidationError: If the schema version or plugin list is wrong
    """
    if not isinstance(data, dict) or data.get("schemaVersion") != SCHEMA_VERSION:
        raise ValidationError("Invalid marketplace index schema")
    if not isinstance(data.get("plugins"), list):
        raise ValidationError("Invalid marketplace index schema: 'plugins' must be a list")

    plugins = []
    for raw in data["plugins"]:
        if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
            continue
        versions = raw.get("versions") if isinstance(raw.get("versions"), list) else []
        plugins.append(
            IndexPlugin(
                id=raw["id"],
                name=raw.get("name"),
                description=raw.get("description"),
                versions=[IndexVersion.from_dict(v) for v in versions if isinstance(v, dict)],
            )
        )

    name = data.get("name")
    return MarketplaceIndex(plugins=plugins, name=name if isinstance(name, str) else None)


def pick_version(versions: list[IndexVersion], requested: str | None = None) -> IndexVersion:
    """
    Select the version to install.

    Args:
        versions: Listed versions
        requested: Exact version string, or None for the highest

    Raises:
        ValidationError: If no versions exist or the requested one is missing
    """
    if not versions:
        raise ValidationError("No versions available")
    if requested:
        for version in versions:
            if version.version == requested:
                return version
        raise ValidationError(f"Version not found: {requested}")
    return max(versions, key=lambda v: version_key(v.version))


def normalize_sha256(value: str) -> str:
    digest = str(value or "").strip().lower()
    if not _SHA256_HEX.match(digest):
        raise ValidationError("Invalid sha256 (expected 64 hex chars)")
    return digest


def normalize_entry_path(value: str) -> str:
    """
    Normalize entry.path relative to the install directory.

    Leading slashes are dropped; dot segments and backslashes are rejected.

    Raises:
        ValidationError: If the path is empty or could leave the install directory
    """
    entry_path = str(value or "").strip().lstrip("/")
    if not entry_path:
        raise ValidationError("Invalid entry.path")
    if entry_path.endswith("/") or not is_safe_archive_path(entry_path):
        raise ValidationError(f"Unsafe entry.path: {value}")
    return entry_path


def validate_dist(version: IndexVersion) -> tuple[str, str, str]:
    """
    Validate the dist descriptor.

    Returns:
        (dist type, url, normalized sha256)

    Raises:
        ValidationError: If any dist field is invalid
    """
    if version.dist_type not in DIST_TYPES:
        raise ValidationError(f"Invalid dist.type: {version.dist_type!r}")
    url = version.dist_url.strip()
    if not url:
        raise ValidationError("Missing dist.url")
    return version.dist_type, url, normalize_sha256(version.dist_sha256)


def _rule_allowed(rule: str, allowlist: list[str]) -> bool:
    # Prefixes match in either direction, so a rule broader than an allowlist
    # entry (``*``, ``https://``) is accepted as long as it covers that entry.
    prefix = rule[:-1] if rule.endswith("*") else rule
    return any(prefix.startswith(a) or a.startswith(prefix) for a in allowlist)


def validate_permissions(permissions: Permissions, settings: RelaySettings) -> None:
    """
    Check requested permissions against host gates.

    Raises:
        PluginPermissionError: If a capability is not enabled or not allowlisted
    """
    if permissions.network:
        if not settings.plugin_allow_network:
            raise PluginPermissionError(
                "Plugin requests network permission but PLUGIN_ALLOW_NETWORK is not enabled"
            )
        allowlist = settings.network_allowlist
        if allowlist:
            for rule in permissions.network:
                if not _rule_allowed(rule, allowlist):
                    raise PluginPermissionError(
                        f"Network permission not allowed by PLUGIN_NETWORK_ALLOWLIST: {rule}"
                    )

    if permissions.fs and not settings.plugin_allow_fs:
        raise PluginPermissionError(
            "Plugin requests fs permission but PLUGIN_ALLOW_FS is not enabled"
        )


def resolve_install_spec(raw: dict[str, Any], settings: RelaySettings) -> InstallSpec:
    """
    Resolve install instructions and check the install-mode gate.

    Raises:
        ValidationError: If the mode is unknown
        SandboxRefusalError: If pnpm is requested without PLUGIN_ALLOW_NPM_INSTALL
    """
    mode = raw.get("mode") or "none"
    if mode not in INSTALL_MODES:
        raise ValidationError(f"Invalid install.mode: {mode!r}")

    registry = raw.get("registry") or settings.plugin_npm_registry
    spec = InstallSpec(
        mode=mode,
        production=raw.get("production") is not False,
        ignore_scripts=raw.get("ignoreScripts") is not False,
        frozen_lockfile=raw.get("frozenLockfile") is True,
        registry=str(registry).strip() or None if registry else None,
    )

    if spec.mode == "pnpm" and not settings.plugin_allow_npm_install:
        raise SandboxRefusalError(
            "Plugin requires pnpm install; set PLUGIN_ALLOW_NPM_INSTALL=1 to enable"
        )
    return spec
