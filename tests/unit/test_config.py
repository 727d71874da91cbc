"""
Tests for Configuration System.

This test suite covers:
1. Environment-driven settings and derived paths
2. Confined root path resolution
3. TOML writing with backups and recovery
4. Plugin config store operations
5. Logging setup
"""

import json
import logging
import os

import pytest

from relaykit.config.logging import configure_logging, get_plugin_logger
from relaykit.config.paths import ConfinedRoot
from relaykit.config.settings import RelaySettings
from relaykit.config.store import ConfigStore
from relaykit.config.toml_handler import (
    TOMLError,
    backup_path,
    read_toml,
    read_toml_with_backup,
    write_toml,
)
from relaykit.errors import ConfigError


class TestSettings:
    """Test RelaySettings."""

    def test_defaults_derive_layout(self, tmp_path):
        """Plugin paths derive from the data directory."""
        settings = RelaySettings(data_dir=tmp_path)

        assert settings.plugins_root == tmp_path / "plugins"
        assert settings.config_path == tmp_path / "plugins" / "plugins.toml"
        assert settings.cache_dir == tmp_path / "plugins" / "cache"
        assert settings.marketplaces_path == tmp_path / "plugins" / "marketplaces.toml"
        assert settings.local_plugins_dir == tmp_path / "plugins" / "local"
        assert settings.plugin_data_dir == tmp_path / "plugins-data"
        assert not settings.plugin_allow_network

    def test_environment_gates(self, tmp_path, monkeypatch):
        """Gates and overrides are read from the environment."""
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("PLUGIN_ALLOW_NETWORK", "1")
        monkeypatch.setenv("PLUGIN_ALLOW_FS", "true")
        monkeypatch.setenv("PLUGIN_NETWORK_ALLOWLIST", "https://api.example.com/, https://cdn.x/")
        monkeypatch.setenv("PLUGINS_CONFIG_PATH", str(tmp_path / "conf" / "p.toml"))

        settings = RelaySettings()

        assert settings.data_dir == tmp_path
        assert settings.plugin_allow_network
        assert settings.plugin_allow_fs
        assert not settings.plugin_allow_npm_install
        assert settings.network_allowlist == ["https://api.example.com/", "https://cdn.x/"]
        assert settings.config_path == tmp_path / "conf" / "p.toml"

    def test_relative_data_dir_is_absolute(self, tmp_path, monkeypatch):
        """A relative data dir is anchored at the working directory."""
        monkeypatch.chdir(tmp_path)

        settings = RelaySettings(data_dir="data")

        assert settings.data_dir == tmp_path / "data"
        assert settings.data_root.resolve(settings.config_path).parent.name == "plugins"


class TestConfinedRoot:
    """Test confined path resolution."""

    def test_relative_paths_resolve_under_root(self, tmp_path):
        root = ConfinedRoot(tmp_path)
        assert root.resolve("a/b.txt") == root.root / "a" / "b.txt"
        assert root.join("x", "y") == root.root / "x" / "y"

    def test_escape_rejected(self, tmp_path):
        """Paths leaving the root raise ConfigError."""
        root = ConfinedRoot(tmp_path / "root")

        with pytest.raises(ConfigError, match="escapes confined root"):
            root.resolve("../outside")
        with pytest.raises(ConfigError):
            root.resolve("/etc/passwd")

    def test_symlink_escape_rejected(self, tmp_path):
        """Symlinks pointing outside the root are resolved and rejected."""
        (tmp_path / "root").mkdir()
        (tmp_path / "secret").mkdir()
        os.symlink(tmp_path / "secret", tmp_path / "root" / "link")
        root = ConfinedRoot(tmp_path / "root")

        with pytest.raises(ConfigError):
            root.resolve("link/file")

    def test_prefix_sibling_is_not_contained(self, tmp_path):
        """A sibling sharing the root's name prefix is outside."""
        root = ConfinedRoot(tmp_path / "data")
        assert not root.contains(str(tmp_path / "data-other"))


class TestTOMLHandler:
    """Test TOML reading and writing."""

    def test_write_and_read(self, tmp_path):
        """None values are stripped when writing."""
        path = tmp_path / "sub" / "file.toml"
        write_toml(path, {"version": 1, "items": [{"a": 1, "b": None}]})

        assert read_toml(path) == {"version": 1, "items": [{"a": 1}]}

    def test_backup_written_on_overwrite(self, tmp_path):
        path = tmp_path / "file.toml"
        write_toml(path, {"n": 1})
        write_toml(path, {"n": 2})

        assert read_toml(backup_path(path)) == {"n": 1}
        assert read_toml(path) == {"n": 2}

    def test_corrupt_file_recovered_from_backup(self, tmp_path):
        """A corrupt primary is restored from its backup."""
        path = tmp_path / "file.toml"
        write_toml(path, {"n": 1})
        write_toml(path, {"n": 2})
        path.write_text("not = [valid", encoding="utf-8")

        assert read_toml_with_backup(path) == {"n": 1}
        assert read_toml(path) == {"n": 1}

    def test_missing_files(self, tmp_path):
        assert read_toml_with_backup(tmp_path / "none.toml") is None

    def test_corrupt_without_backup_raises(self, tmp_path):
        path = tmp_path / "file.toml"
        path.write_text("= broken", encoding="utf-8")

        with pytest.raises(TOMLError):
            read_toml_with_backup(path)


class TestConfigStore:
    """Test the plugin config store."""

    @pytest.fixture
    def store(self, settings):
        return ConfigStore(settings)

    def test_empty_store(self, store):
        assert store.read() == []
        assert store.get("missing") is None

    def test_upsert_normalizes_module(self, store, settings):
        """Module paths are stored relative to the config directory."""
        entry = store.upsert("My Plugin!", "./demo/1.0.0/index.py", config={"a": 1})

        assert entry.id == "My-Plugin"
        assert entry.module == "./demo/1.0.0/index.py"
        assert store.get("My-Plugin").config == {"a": 1}
        assert store.resolve_module_path(entry.module) == (
            settings.data_root.root / "plugins" / "demo" / "1.0.0" / "index.py"
        )

    def test_upsert_accepts_absolute_and_file_url(self, store, settings):
        target = settings.plugins_root / "x" / "main.py"

        assert store.upsert("x", str(target)).module == "./x/main.py"
        assert store.upsert("y", f"file://{target}").module == "./x/main.py"

    def test_module_outside_data_root_rejected(self, store):
        with pytest.raises(ConfigError):
            store.upsert("evil", "../../../etc/passwd")
        with pytest.raises(ConfigError, match="Missing module"):
            store.upsert("empty", "  ")

    def test_entries_sorted_and_replaced(self, store):
        store.upsert("b", "./b.py")
        store.upsert("a", "./a.py")
        store.upsert("b", "./b2.py", enabled=False)

        entries = store.read()
        assert [e.id for e in entries] == ["a", "b"]
        assert entries[1].module == "./b2.py"
        assert entries[1].enabled is False

    def test_patch_existing_entry(self, store):
        """patch() only touches the given fields."""
        store.upsert("a", "./a.py", config={"k": 1}, source={"type": "marketplace"})

        entry = store.patch("a", enabled=False)

        assert entry.enabled is False
        assert entry.config == {"k": 1}
        assert store.get("a").is_marketplace

        store.patch("a", config=None)
        assert store.get("a").config is None

    def test_patch_missing_entry_creates_local_tombstone(self, store):
        entry = store.patch("local-one", enabled=False)

        assert entry.module == "./local/local-one"
        assert entry.enabled is False
        assert not entry.is_marketplace

    def test_remove(self, store):
        store.upsert("a", "./a.py")

        assert store.remove("a") is True
        assert store.remove("a") is False
        assert store.read() == []

    def test_invalid_entries_dropped(self, store, settings):
        """Entries without id or module are ignored on read."""
        write_toml(
            settings.config_path,
            {"version": 1, "plugins": [{"id": "ok", "module": "./ok.py"}, {"id": "nomod"}]},
        )

        assert [e.id for e in store.read()] == ["ok"]


@pytest.fixture
def root_handlers():
    """Remove handlers installed by configure_logging after the test."""
    installed = []
    yield installed
    root = logging.getLogger()
    for handler in installed:
        root.removeHandler(handler)
    logging.getLogger("relaykit").setLevel(logging.NOTSET)


class TestLogging:
    """Test logging setup."""

    def test_levels_from_settings_and_verbose(self, tmp_path, root_handlers):
        settings = RelaySettings(data_dir=tmp_path, log_level="warning")

        root_handlers.append(configure_logging(settings))
        assert logging.getLogger("relaykit").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

        root_handlers.append(configure_logging(settings, verbose=True))
        assert logging.getLogger("relaykit").level == logging.DEBUG

    def test_unknown_level_rejected(self, tmp_path):
        with pytest.raises(ConfigError, match="Unknown log level"):
            configure_logging(RelaySettings(data_dir=tmp_path, log_level="chatty"))

    def test_reconfigure_replaces_own_handler_only(self, tmp_path, root_handlers):
        settings = RelaySettings(data_dir=tmp_path)
        other = logging.NullHandler()
        logging.getLogger().addHandler(other)
        root_handlers.append(other)

        first = configure_logging(settings)
        second = configure_logging(settings)
        root_handlers.extend([first, second])

        handlers = logging.getLogger().handlers
        assert other in handlers
        assert second in handlers
        assert first not in handlers

    def test_json_records_carry_plugin_id(self, tmp_path, root_handlers):
        """Plugin logger records are rendered with a ``plugin`` key."""
        handler = configure_logging(RelaySettings(data_dir=tmp_path, log_json=True))
        root_handlers.append(handler)
        name = get_plugin_logger("weather").name
        record = logging.LogRecord(name, logging.INFO, __file__, 1, "hello %s", ("oslo",), None)

        rendered = json.loads(handler.format(record))

        assert rendered["event"] == "hello oslo"
        assert rendered["plugin"] == "weather"
        assert rendered["level"] == "info"

    def test_plugin_logger_is_child(self):
        assert get_plugin_logger("demo").name == "relaykit.plugins.demo"
