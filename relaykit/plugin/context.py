"""
Plugin Context.

Every plugin instance receives its own context at install time. The context
is the plugin's only handle on the host: event subscriptions, commands,
lifecycle callbacks, storage and the capability APIs.

Key features:
- Event subscriptions tagged with the plugin id for bulk cleanup
- Command registry with aliases
- on_reload / on_unload callbacks, isolated from each other
- Late-bound host APIs with logging placeholders until injected
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relaykit.config.logging import get_plugin_logger
from relaykit.core.event_bus import EventBus, EventSubscription
from relaykit.core.utils import maybe_await
from relaykit.plugin.storage import PluginStorage

Callback = Callable[[], Any]


@dataclass
class HostApis:
    """
    Capability APIs provided by the host.

    Attributes:
        message: Send / recall / fetch messages
        instance: Inspect bridged instances
        user: User lookups
        group: Group administration
        web: Route registration, called as ``register_routes(register, plugin_id)``
        database: Optional database handle
    """

    message: Any = None
    instance: Any = None
    user: Any = None
    group: Any = None
    web: Any = None
    database: Any = None


@dataclass
class CommandConfig:
    name: str
    handler: Callable[..., Any]
    aliases: list[str] = field(default_factory=list)
    description: str = ""
    usage: str = ""
    admin_only: bool = False


class PlaceholderApi:
    """
    Stand-in for a host API that has not been injected yet.

    Any method call logs a warning and returns a neutral default.
    """

    def __init__(self, name: str, logger: logging.Logger, defaults: dict[str, Any]):
        self._name = name
        self._logger = logger
        self._defaults = defaults

    def __getattr__(self, method: str) -> Callable[..., Any]:
        if method.startswith("_"):
            raise AttributeError(method)

        async def _unavailable(*args: Any, **kwargs: Any) -> Any:
            self._logger.warning("%s API is not available yet (%s)", self._name, method)
            return self._defaults.get(method)

        return _unavailable


class _PluginWebApi:
    """Web API bound to one plugin id."""

    def __init__(self, web: Any, plugin_id: str):
        self._web = web
        self._plugin_id = plugin_id

    def register_routes(self, register: Callable[[Any], Any]) -> Any:
        return self._web.register_routes(register, self._plugin_id)


class PluginContext:
    """
    Runtime context handed to a plugin's install hook.

    Attributes:
        plugin_id: Owning plugin id
        config: Plugin configuration
        logger: Plugin-scoped logger
        storage: Plugin-scoped key/value storage
    """

    def __init__(
        self,
        plugin_id: str,
        config: Any,
        event_bus: EventBus,
        storage: PluginStorage,
        apis: HostApis | None = None,
    ):
        self.plugin_id = plugin_id
        self.config = config
        self.logger = get_plugin_logger(plugin_id)
        self.storage = storage
        self._event_bus = event_bus

        self._commands: dict[str, CommandConfig] = {}
        self._reload_callbacks: list[Callback] = []
        self._unload_callbacks: list[Callback] = []

        self.bind_apis(apis or HostApis())

    def bind_apis(self, apis: HostApis) -> None:
        """Install host APIs, keeping placeholders for the ones not provided."""
        self.database = apis.database
        self.message = apis.message or PlaceholderApi(
            "Message", self.logger, {"send": {"message_id": None}}
        )
        self.instance = apis.instance or PlaceholderApi(
            "Instance", self.logger, {"list": [], "get_status": "unknown"}
        )
        self.user = apis.user or PlaceholderApi(
            "User", self.logger, {"is_friend": False}
        )
        self.group = apis.group or PlaceholderApi(
            "Group", self.logger, {"get_members": []}
        )
        if apis.web is not None:
            self.web = _PluginWebApi(apis.web, self.plugin_id)
        else:
            self.web = PlaceholderApi("Web", self.logger, {})

    def on(
        self,
        event_type: str,
        handler: Callable[[Any], Any],
        filter: Callable[[Any], bool] | None = None,
    ) -> EventSubscription:
        """
        Subscribe to a host event on behalf of this plugin.

        Args:
            event_type: Event type (``message``, ``notice``, ...)
            handler: Callback taking the event
            filter: Optional predicate applied before the handler

        Returns:
            The subscription, removed automatically on uninstall
        """
        return self._event_bus.subscribe(
            event_type, handler, filter=filter, plugin_id=self.plugin_id
        )

    def once(
        self,
        event_type: str,
        handler: Callable[[Any], Any],
        filter: Callable[[Any], bool] | None = None,
    ) -> EventSubscription:
        return self._event_bus.once(
            event_type, handler, filter=filter, plugin_id=self.plugin_id
        )

    def command(
        self,
        name: str,
        handler: Callable[..., Any],
        aliases: list[str] | None = None,
        description: str = "",
        usage: str = "",
        admin_only: bool = False,
    ) -> "PluginContext":
        """Register a command (and its aliases). Returns self for chaining."""
        config = CommandConfig(
            name=name,
            handler=handler,
            aliases=list(aliases or []),
            description=description,
            usage=usage,
            admin_only=admin_only,
        )
        self._commands[name] = config
        for alias in config.aliases:
            self._commands[alias] = config

        self.logger.debug("Command registered: %s %s", name, config.aliases or "")
        return self

    def get_commands(self) -> dict[str, CommandConfig]:
        return dict(self._commands)

    def on_reload(self, callback: Callback) -> None:
        self._reload_callbacks.append(callback)

    def on_unload(self, callback: Callback) -> None:
        self._unload_callbacks.append(callback)

    async def _run_callbacks(self, callbacks: list[Callback], kind: str) -> None:
        for callback in list(callbacks):
            try:
                await maybe_await(callback())
            except Exception as e:
                self.logger.error("Error in %s callback: %s", kind, e, exc_info=True)

    async def trigger_reload(self) -> None:
        await self._run_callbacks(self._reload_callbacks, "reload")

    async def trigger_unload(self) -> None:
        await self._run_callbacks(self._unload_callbacks, "unload")

    def cleanup(self) -> int:
        """
        Drop everything this plugin registered.

        Returns:
            Number of event subscriptions removed
        """
        removed = self._event_bus.remove_plugin_subscriptions(self.plugin_id)
        self._commands.clear()
        self._reload_callbacks.clear()
        self._unload_callbacks.clear()
        return removed
