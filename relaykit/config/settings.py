"""
Environment-driven settings.

The installer never trusts a plugin's own permission manifest: every
requested capability is checked against the gates defined here.

Key features:
- Data root and plugin directory layout (overridable per path)
- Capability gates for network, filesystem, npm install and install scripts
- Comma-separated network allowlist parsed into prefixes
- Frozen settings object passed explicitly to every consumer
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relaykit.config.paths import ConfinedRoot


class RelaySettings(BaseSettings):
    """
    Host-side settings for the plugin runtime and marketplace installer.

    Field names double as environment variable names (case-insensitive),
    e.g. ``PLUGIN_ALLOW_NETWORK=1``.
    """

    model_config = SettingsConfigDict(
        case_sensitive=False,
        extra="ignore",
        frozen=True,
        env_ignore_empty=True,
        validate_default=True,
    )

    data_dir: Path = Field(Path("data"), description="Confined data root")

    # Capability gates
    plugin_allow_network: bool = Field(False, description="Allow network permissions")
    plugin_allow_fs: bool = Field(False, description="Allow filesystem permissions")
    plugin_allow_npm_install: bool = Field(
        False, description="Allow pnpm dependency installs"
    )
    plugin_allow_install_scripts: bool = Field(
        False, description="Allow package install scripts to run"
    )
    plugin_network_allowlist: str = Field(
        "", description="Comma-separated URL prefixes allowed for network rules"
    )
    plugin_npm_registry: str | None = Field(None, description="Registry override")

    # Logging
    log_level: str = Field("INFO", description="Level for relaykit loggers")
    log_json: bool = Field(False, description="Render log records as JSON lines")

    # Layout overrides
    plugin_host_sdk_dir: Path | None = None
    plugins_dir: Path | None = None
    plugins_config_path: Path | None = None
    plugins_cache_dir: Path | None = None
    plugins_marketplaces_path: Path | None = None

    @field_validator(
        "data_dir",
        "plugin_host_sdk_dir",
        "plugins_dir",
        "plugins_config_path",
        "plugins_cache_dir",
        "plugins_marketplaces_path",
    )
    @classmethod
    def make_absolute(cls, v: Path | None) -> Path | None:
        """Anchor relative paths at the working directory."""
        if v is None:
            return None
        return v.expanduser().absolute()

    @property
    def network_allowlist(self) -> list[str]:
        return [
            item.strip()
            for item in self.plugin_network_allowlist.split(",")
            if item.strip()
        ]

    @property
    def data_root(self) -> ConfinedRoot:
        return ConfinedRoot(self.data_dir)

    @property
    def plugins_root(self) -> Path:
        """Directory holding installed versions, downloads and local plugins."""
        if self.plugins_dir is not None:
            return self.plugins_dir
        return self.data_dir / "plugins"

    @property
    def config_path(self) -> Path:
        if self.plugins_config_path is not None:
            return self.plugins_config_path
        return self.plugins_root / "plugins.toml"

    @property
    def cache_dir(self) -> Path:
        if self.plugins_cache_dir is not None:
            return self.plugins_cache_dir
        return self.plugins_root / "cache"

    @property
    def marketplaces_path(self) -> Path:
        if self.plugins_marketplaces_path is not None:
            return self.plugins_marketplaces_path
        return self.plugins_root / "marketplaces.toml"

    @property
    def local_plugins_dir(self) -> Path:
        return self.plugins_root / "local"

    @property
    def download_dir(self) -> Path:
        return self.plugins_root / "tmp"

    @property
    def plugin_data_dir(self) -> Path:
        """Per-plugin storage root (``<data>/plugins-data``)."""
        return self.data_dir / "plugins-data"
