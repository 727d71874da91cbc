"""
Tests for Plugin Runtime.

This test suite covers:
1. start(): dedup, missing ids, disabled specs, load and install failures
2. Non-reentrant start returning the cached report
3. reload_plugin / unload_plugin error handling
4. Late host API injection
5. Reload via a spec source and teardown
"""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from relaykit.core.events import MESSAGE, PLUGIN_RELOAD
from relaykit.errors import (
    DuplicatePluginError,
    MissingPluginIdError,
    PluginLoadError,
    PluginNotFoundError,
    PluginRuntimeError,
    RuntimeInactiveError,
)
from relaykit.plugin.context import HostApis
from relaykit.plugin.lifecycle import PluginState
from relaykit.plugin.loader import PluginSpec, PluginType
from relaykit.plugin.runtime import PluginRuntime


class CountingPlugin:
    name = "Counting"
    version = "1.0.0"

    def __init__(self, plugin_id, fail_install=False):
        self.id = plugin_id
        self.fail_install = fail_install
        self.installs = 0
        self.uninstalls = 0
        self.context = None

    def install(self, ctx, config):
        self.installs += 1
        self.context = ctx
        if self.fail_install:
            raise RuntimeError("cannot install")
        ctx.on(MESSAGE, lambda e: None)
        ctx.command("count", lambda *a: None)

    def uninstall(self):
        self.uninstalls += 1


def spec_for(plugin, **kwargs):
    return PluginSpec(id=plugin.id, load=lambda: plugin, **kwargs)


@pytest.fixture
def runtime(settings, event_bus):
    return PluginRuntime(settings=settings, event_bus=event_bus)


class TestStart:
    """Test runtime start."""

    @pytest.mark.asyncio
    async def test_start_installs_plugins(self, runtime):
        """Loaded plugins are installed and reported."""
        a, b = CountingPlugin("a"), CountingPlugin("b")

        report = await runtime.start([spec_for(a), spec_for(b)])

        assert report.enabled
        assert report.loaded == ["a", "b"]
        assert report.failed == []
        assert report.stats.installed == 2
        assert [p.id for p in report.loaded_plugins] == ["a", "b"]
        assert runtime.is_active()
        assert runtime.get_plugin_type("a") is PluginType.NATIVE
        assert a.installs == 1

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, runtime):
        """The first spec wins; duplicates never reach the loader."""
        first, second = CountingPlugin("dup"), CountingPlugin("dup")
        loader_calls = []

        def load_second():
            loader_calls.append("second")
            return second

        report = await runtime.start(
            [spec_for(first), PluginSpec(id="dup", load=load_second)]
        )

        assert report.loaded == ["dup"]
        assert len(report.failed) == 1
        assert isinstance(report.failed[0].error, DuplicatePluginError)
        assert "already loaded" in str(report.failed[0].error)
        assert loader_calls == []
        assert runtime.get_plugin("dup").plugin is first

    @pytest.mark.asyncio
    async def test_missing_id_fails_without_loading(self, runtime):
        """Specs without an id fail with a dedicated error."""
        load = MagicMock()

        report = await runtime.start([PluginSpec(id="", module="./x.py", load=load)])

        assert report.loaded == []
        assert report.failed[0].id == "./x.py"
        assert isinstance(report.failed[0].error, MissingPluginIdError)
        load.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_specs_skipped(self, runtime):
        """Disabled specs are neither loaded nor reported as failed."""
        load = MagicMock()

        report = await runtime.start([PluginSpec(id="off", enabled=False, load=load)])

        assert report.loaded == []
        assert report.failed == []
        load.assert_not_called()

    @pytest.mark.asyncio
    async def test_load_and_install_failures_reported(self, runtime):
        """Load and install failures end up in failed; others still run."""
        good = CountingPlugin("good")
        broken = CountingPlugin("broken", fail_install=True)

        report = await runtime.start(
            [
                PluginSpec(id="unloadable", load=lambda: SimpleNamespace()),
                spec_for(broken),
                spec_for(good),
            ]
        )

        failed = {f.id: f.error for f in report.failed}
        assert report.loaded == ["good"]
        assert isinstance(failed["unloadable"], PluginLoadError)
        assert isinstance(failed["broken"], PluginRuntimeError)
        assert runtime.get_plugin("broken").state is PluginState.ERROR
        assert report.stats.error == 1

    @pytest.mark.asyncio
    async def test_start_is_not_reentrant(self, runtime):
        """A second start returns the cached report unchanged."""
        a = CountingPlugin("a")
        first = await runtime.start([spec_for(a)])

        second = await runtime.start([spec_for(CountingPlugin("b"))])

        assert second is first
        assert runtime.get_last_report() is first
        assert runtime.get_plugin("b") is None
        assert a.installs == 1


class TestSinglePluginOperations:
    """Test reload_plugin and unload_plugin."""

    @pytest.mark.asyncio
    async def test_reload_plugin_requires_active_runtime(self, runtime):
        with pytest.raises(RuntimeInactiveError):
            await runtime.reload_plugin("a")

    @pytest.mark.asyncio
    async def test_reload_plugin_unknown_id(self, runtime):
        await runtime.start([])

        with pytest.raises(PluginNotFoundError):
            await runtime.reload_plugin("ghost")

    @pytest.mark.asyncio
    async def test_reload_plugin_publishes_event(self, runtime, event_bus):
        """A successful reload swaps config and announces itself."""
        a = CountingPlugin("a")
        await runtime.start([spec_for(a, config={"v": 1})])
        events = []
        event_bus.subscribe(PLUGIN_RELOAD, events.append)

        result = await runtime.reload_plugin("a", {"v": 2})
        await event_bus.drain()

        assert result.success
        assert a.installs == 2
        assert runtime.get_plugin("a").config == {"v": 2}
        assert [e.plugin_id for e in events] == ["a"]

    @pytest.mark.asyncio
    async def test_reload_plugin_failure_raises(self, runtime):
        """A failed reload is raised, and the instance stays visible."""
        a = CountingPlugin("a")
        await runtime.start([spec_for(a)])
        a.fail_install = True

        with pytest.raises(PluginRuntimeError):
            await runtime.reload_plugin("a")

        assert runtime.get_plugin("a").state is PluginState.ERROR

    @pytest.mark.asyncio
    async def test_unload_plugin(self, runtime, event_bus):
        """Unloading uninstalls and removes the instance."""
        a = CountingPlugin("a")
        await runtime.start([spec_for(a)])

        result = await runtime.unload_plugin("a")

        assert result.success
        assert a.uninstalls == 1
        assert runtime.get_plugin("a") is None
        assert event_bus.get_plugin_subscription_count("a") == 0

        with pytest.raises(PluginNotFoundError):
            await runtime.unload_plugin("a")


class TestRuntimeManagement:
    """Test API injection, reload and teardown."""

    @pytest.mark.asyncio
    async def test_set_apis_reaches_running_plugins(self, runtime):
        """APIs injected after start are visible to installed contexts."""
        a = CountingPlugin("a")
        await runtime.start([spec_for(a)])
        message_api = MagicMock()

        runtime.set_apis(HostApis(message=message_api))

        assert a.context.message is message_api

    @pytest.mark.asyncio
    async def test_commands_are_merged(self, runtime):
        await runtime.start([spec_for(CountingPlugin("a"))])

        assert "count" in runtime.get_commands()

    @pytest.mark.asyncio
    async def test_reload_uses_spec_source(self, settings, event_bus):
        """reload() restarts with the specs from the spec source."""
        generations = [[CountingPlugin("a")], [CountingPlugin("b")]]
        runtime = PluginRuntime(
            settings=settings,
            event_bus=event_bus,
            spec_source=lambda: [spec_for(p) for p in generations.pop(0)],
        )
        await runtime.start([spec_for(p) for p in generations.pop(0)])

        report = await runtime.reload()

        assert report.loaded == ["b"]
        assert runtime.get_plugin("a") is None

    @pytest.mark.asyncio
    async def test_reload_without_source_raises(self, runtime):
        await runtime.start([])

        with pytest.raises(PluginRuntimeError):
            await runtime.reload()

    @pytest.mark.asyncio
    async def test_teardown_resets_state(self, runtime, event_bus):
        """teardown() stops plugins and clears all runtime state."""
        a = CountingPlugin("a")
        await runtime.start([spec_for(a)])

        await runtime.teardown()

        assert not runtime.is_active()
        assert a.uninstalls == 1
        assert runtime.get_all_plugins() == []
        assert runtime.get_last_report().loaded == []
        assert event_bus.get_subscription_count() == 0
