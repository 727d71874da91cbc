"""
Tests for Plugin Context and Plugin Storage.

This test suite covers:
1. Plugin-tagged subscriptions and cleanup
2. Command registry with aliases
3. Reload / unload callbacks with error isolation
4. Placeholder and injected host APIs
5. JSON file storage
"""

from unittest.mock import MagicMock

import pytest

from relaykit.core.events import MESSAGE, NOTICE
from relaykit.plugin.context import HostApis, PlaceholderApi, PluginContext
from relaykit.plugin.storage import PluginStorage


@pytest.fixture
def context(tmp_path, event_bus):
    return PluginContext(
        "demo", {"greeting": "hi"}, event_bus, PluginStorage("demo", tmp_path)
    )


class TestContextEvents:
    """Test event subscriptions made through a context."""

    def test_subscriptions_are_tagged(self, context, event_bus):
        """Subscriptions carry the plugin id."""
        sub = context.on(MESSAGE, lambda e: None)
        context.once(NOTICE, lambda e: None)

        assert sub.plugin_id == "demo"
        assert event_bus.get_plugin_subscription_count("demo") == 2

    def test_cleanup_removes_everything(self, context, event_bus):
        """cleanup() drops subscriptions, commands and callbacks."""
        context.on(MESSAGE, lambda e: None)
        context.command("hello", lambda *a: None)
        context.on_unload(lambda: None)

        assert context.cleanup() == 1
        assert event_bus.get_subscription_count() == 0
        assert context.get_commands() == {}


class TestCommands:
    """Test command registration."""

    def test_command_with_aliases(self, context):
        """Aliases point at the same command config."""
        handler = MagicMock()
        result = context.command("weather", handler, aliases=["w", "wx"], description="d")

        commands = context.get_commands()
        assert result is context
        assert set(commands) == {"weather", "w", "wx"}
        assert commands["w"] is commands["weather"]
        assert commands["weather"].handler is handler


class TestCallbacks:
    """Test reload / unload callbacks."""

    @pytest.mark.asyncio
    async def test_failing_callback_does_not_stop_others(self, context):
        """Each callback runs even when an earlier one raises."""
        calls = []

        def broken():
            raise RuntimeError("boom")

        async def good():
            calls.append("good")

        context.on_reload(broken)
        context.on_reload(good)
        context.on_unload(lambda: calls.append("unload"))

        await context.trigger_reload()
        await context.trigger_unload()

        assert calls == ["good", "unload"]


class TestHostApis:
    """Test placeholder and injected APIs."""

    @pytest.mark.asyncio
    async def test_placeholder_returns_default(self, context):
        """Calling a missing API logs and returns a neutral value."""
        assert isinstance(context.message, PlaceholderApi)
        assert await context.message.send("x") == {"message_id": None}
        assert await context.instance.list() == []
        assert await context.group.anything() is None

    def test_bind_apis_replaces_placeholders(self, context):
        """Injected APIs replace placeholders; web is bound to the plugin id."""
        message_api = MagicMock()
        web_api = MagicMock()

        context.bind_apis(HostApis(message=message_api, web=web_api))
        register = MagicMock()
        context.web.register_routes(register)

        assert context.message is message_api
        web_api.register_routes.assert_called_once_with(register, "demo")
        assert isinstance(context.user, PlaceholderApi)


class TestPluginStorage:
    """Test per-plugin storage."""

    @pytest.mark.asyncio
    async def test_set_get_delete(self, tmp_path):
        """Values round-trip through JSON files."""
        storage = PluginStorage("demo", tmp_path)

        assert await storage.get("counter", 0) == 0
        await storage.set("counter", {"n": 3})
        assert await storage.get("counter") == {"n": 3}
        assert (tmp_path / "demo" / "counter.json").is_file()

        assert await storage.delete("counter") is True
        assert await storage.delete("counter") is False

    @pytest.mark.asyncio
    async def test_keys_and_clear(self, tmp_path):
        """keys() lists stored keys and clear() removes them."""
        storage = PluginStorage("demo", tmp_path)
        await storage.set("b", 2)
        await storage.set("a", 1)

        assert await storage.keys() == ["a", "b"]
        assert await storage.clear() == 2
        assert await storage.keys() == []

    @pytest.mark.asyncio
    async def test_keys_cannot_escape(self, tmp_path):
        """Traversal in keys is sanitized into the plugin directory."""
        storage = PluginStorage("demo", tmp_path)
        await storage.set("../../evil", True)

        assert not (tmp_path.parent / "evil.json").exists()
        assert await storage.get("../../evil") is True

    @pytest.mark.asyncio
    async def test_corrupt_value_returns_default(self, tmp_path):
        """Unreadable JSON falls back to the default."""
        storage = PluginStorage("demo", tmp_path)
        (tmp_path / "demo").mkdir()
        (tmp_path / "demo" / "bad.json").write_text("{not json", encoding="utf-8")

        assert await storage.get("bad", "fallback") == "fallback"
