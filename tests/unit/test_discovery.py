"""
Tests for plugin spec discovery and the builtin plugins.

This test suite covers:
1. Config store, local directory and builtin sources
2. Priority overrides and duplicate handling
3. Tombstones suppressing local discovery
4. The ping-pong builtin end to end
"""

import pytest

from relaykit.config.store import ConfigStore
from relaykit.core.events import MESSAGE
from relaykit.plugin.builtin import builtin_specs
from relaykit.plugin.discovery import discover_plugin_specs
from relaykit.plugin.loader import PluginSpec
from relaykit.plugin.runtime import PluginRuntime


def write_local(settings, name, content="plugin = None\n"):
    path = settings.local_plugins_dir / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestDiscovery:
    """Test spec discovery."""

    def test_builtins_only(self, settings):
        specs = discover_plugin_specs(settings)

        assert [s.id for s in specs] == ["ping-pong"]
        assert specs[0].load is not None

    def test_local_files_and_packages(self, settings):
        """Single files and package directories are discovered."""
        write_local(settings, "weather.py")
        write_local(settings, "dice/__init__.py")
        write_local(settings, "notes/plugin.py")
        write_local(settings, "_private.py")
        write_local(settings, "README.md")

        specs = discover_plugin_specs(settings, builtins=[])

        assert [s.id for s in specs] == ["dice", "notes", "weather"]
        assert specs[0].module.endswith("dice/__init__.py")

    def test_config_entries_override_local_and_builtin(self, settings):
        """Configured plugins win over local and builtin specs of the same id."""
        store = ConfigStore(settings)
        module = write_local(settings, "weather.py")
        store.upsert("weather", str(module), config={"city": "Oslo"})
        store.upsert("ping-pong", str(module))

        specs = {s.id: s for s in discover_plugin_specs(settings, store)}

        assert specs["weather"].config == {"city": "Oslo"}
        assert specs["ping-pong"].load is None
        assert specs["ping-pong"].module == str(module.resolve())

    def test_tombstone_suppresses_local_plugin(self, settings):
        """A disabled entry keeps the local plugin from being re-enabled."""
        write_local(settings, "weather.py")
        ConfigStore(settings).patch("weather", enabled=False)

        specs = discover_plugin_specs(settings, builtins=[])

        assert [(s.id, s.enabled) for s in specs] == [("weather", False)]

    def test_equal_priority_duplicates_skipped(self, settings):
        """The first builtin with an id wins."""
        first = PluginSpec(id="dup", module="a")
        second = PluginSpec(id="dup", module="b")

        specs = discover_plugin_specs(settings, builtins=[first, second])

        assert specs == [first]


class TestPingPong:
    """Test the builtin ping-pong plugin."""

    @pytest.mark.asyncio
    async def test_ping_pong_replies(self, settings, event_bus, make_event):
        runtime = PluginRuntime(settings=settings, event_bus=event_bus)
        report = await runtime.start(builtin_specs())
        sent = []

        await event_bus.publish(MESSAGE, make_event("Ping?", sent=sent))
        await event_bus.publish(MESSAGE, make_event("hello", sent=sent))

        assert report.loaded == ["ping-pong"]
        assert sent == [("reply", "pong!")]
        await runtime.teardown()
