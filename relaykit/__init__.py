"""
RelayKit - Plugin runtime and marketplace installer for a chat-relay bot.

This is the main package that exports the public API: the event bus, the
plugin runtime with its lifecycle manager, and the marketplace installer.
"""

__version__ = "0.1.0"

from relaykit.config.settings import RelaySettings
from relaykit.core.event_bus import EventBus, EventSubscription
from relaykit.core.event_publisher import EventPublisher
from relaykit.marketplace.installer import MarketplaceInstaller
from relaykit.plugin.lifecycle import LifecycleManager, PluginState
from relaykit.plugin.loader import PluginLoader, PluginSpec, PluginType
from relaykit.plugin.runtime import PluginRuntime, RuntimeReport

__all__ = [
    "__version__",
    "EventBus",
    "EventPublisher",
    "EventSubscription",
    "LifecycleManager",
    "MarketplaceInstaller",
    "PluginLoader",
    "PluginRuntime",
    "PluginSpec",
    "PluginState",
    "PluginType",
    "RelaySettings",
    "RuntimeReport",
]
