"""
Plugin Runtime.

This module orchestrates the loader, the lifecycle manager and the event bus
across the whole plugin set. The runtime owns the authoritative instance
table; it is an explicit value created once by the host and passed to
whoever needs it.

Key features:
- start(): best-effort load + sequential install with a cached report
- Duplicate and missing ids reported as failures, never loaded
- reload() / reload_plugin() / unload_plugin() with typed errors
- Late host API injection propagated to live plugin contexts
- teardown() for test isolation
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relaykit.config.settings import RelaySettings
from relaykit.core.event_bus import EventBus
from relaykit.core.event_publisher import EventPublisher
from relaykit.core.events import PLUGIN_RELOAD, PluginReloadEvent
from relaykit.errors import (
    DuplicatePluginError,
    MissingPluginIdError,
    PluginLoadError,
    PluginNotFoundError,
    PluginRuntimeError,
    RuntimeInactiveError,
)
from relaykit.plugin.context import CommandConfig, HostApis, PluginContext
from relaykit.plugin.lifecycle import (
    LifecycleManager,
    LifecycleResult,
    PluginFailure,
    PluginInstance,
    PluginState,
)
from relaykit.plugin.loader import PluginLoader, PluginSpec, PluginType
from relaykit.plugin.storage import PluginStorage

logger = logging.getLogger(__name__)

_NO_CONFIG: Any = object()


@dataclass
class RuntimeStats:
    total: int = 0
    native: int = 0
    installed: int = 0
    error: int = 0


@dataclass
class LoadedPluginInfo:
    id: str
    name: str
    version: str
    type: PluginType
    description: str | None = None


@dataclass
class RuntimeReport:
    """
    Outcome of one start() call.

    Attributes:
        enabled: True once the runtime has started
        loaded: Ids of plugins that were loaded and installed
        failed: Plugins that failed validation, loading or installation
        stats: Instance table counters after start
        loaded_plugins: Descriptions of every instance in the table
    """

    enabled: bool = False
    loaded: list[str] = field(default_factory=list)
    failed: list[PluginFailure] = field(default_factory=list)
    stats: RuntimeStats = field(default_factory=RuntimeStats)
    loaded_plugins: list[LoadedPluginInfo] = field(default_factory=list)


class PluginRuntime:
    """
    Runs a set of plugins.

    Args:
        settings: Host settings (plugin storage lives under its data root)
        event_bus: Bus shared with the host's event publishers
        loader: Plugin loader
        lifecycle: Lifecycle manager
        apis: Host capability APIs, may be injected later via set_apis()
        spec_source: Callable returning the current spec set, used by
            reload() when no specs are passed
    """

    def __init__(
        self,
        settings: RelaySettings | None = None,
        event_bus: EventBus | None = None,
        loader: PluginLoader | None = None,
        lifecycle: LifecycleManager | None = None,
        apis: HostApis | None = None,
        spec_source: Callable[[], list[PluginSpec]] | None = None,
    ):
        self.settings = settings or RelaySettings()
        self.event_bus = event_bus or EventBus()
        self.loader = loader or PluginLoader()
        self.lifecycle = lifecycle or LifecycleManager()
        self.spec_source = spec_source
        self._apis = apis or HostApis()

        self._plugins: dict[str, PluginInstance] = {}
        self._running = False
        self._last_report = RuntimeReport()

    def set_apis(self, apis: HostApis) -> None:
        """Inject host APIs, including into contexts of running plugins."""
        self._apis = apis
        for instance in self._plugins.values():
            instance.context.bind_apis(apis)

    async def start(self, specs: list[PluginSpec]) -> RuntimeReport:
        """
        Load and install a set of plugins.

        Starting an already-running runtime returns the cached report.

        Args:
            specs: Plugin specs, in install order

        Returns:
            RuntimeReport for this start
        """
        if self._running:
            logger.warning("PluginRuntime is already running")
            return self._last_report

        logger.info("Starting PluginRuntime with %d specs", len(specs))
        report = RuntimeReport(enabled=True)
        seen: set[str] = set()

        for spec in specs:
            if not spec.id:
                error = MissingPluginIdError(
                    f"Plugin id is required (module: {spec.module or '<unknown>'})"
                )
                report.failed.append(PluginFailure(spec.module or "<unknown>", error))
                logger.error("%s", error)
                continue

            if not spec.enabled:
                logger.debug("Plugin %s disabled, skipping", spec.id)
                continue

            if spec.id in seen:
                error = DuplicatePluginError(f"Plugin {spec.id} is already loaded")
                report.failed.append(PluginFailure(spec.id, error))
                logger.error("%s", error)
                continue
            seen.add(spec.id)

            try:
                await self._load_plugin(spec)
            except PluginLoadError as e:
                report.failed.append(PluginFailure(spec.id, e))

        batch = await self.lifecycle.install_all(list(self._plugins.values()))
        report.loaded = batch.succeeded
        report.failed.extend(batch.failed)
        report.stats = self.get_stats()
        report.loaded_plugins = [
            LoadedPluginInfo(
                id=instance.id,
                name=instance.plugin.name,
                version=instance.plugin.version,
                type=instance.type,
                description=getattr(instance.plugin, "description", None),
            )
            for instance in self._plugins.values()
        ]

        self._running = True
        self._last_report = report
        logger.info(
            "PluginRuntime started: %d loaded, %d failed",
            len(report.loaded),
            len(report.failed),
        )
        return report

    async def _load_plugin(self, spec: PluginSpec) -> PluginInstance:
        result = await self.loader.load(spec)

        if result.plugin.id != spec.id:
            logger.warning(
                "Overriding plugin id %s with spec id %s", result.plugin.id, spec.id
            )
            try:
                result.plugin.id = spec.id
            except AttributeError as e:
                raise PluginLoadError(
                    f"Plugin {spec.id} declares id {result.plugin.id!r}"
                ) from e

        config = spec.config or {}
        context = PluginContext(
            spec.id,
            config,
            self.event_bus,
            PluginStorage(spec.id, self.settings.plugin_data_dir),
            self._apis,
        )
        instance = PluginInstance(
            id=spec.id,
            plugin=result.plugin,
            context=context,
            config=config,
            type=result.type,
        )
        self._plugins[spec.id] = instance
        return instance

    async def stop(self) -> None:
        """Uninstall every plugin and clear the instance table and the bus."""
        if not self._running:
            logger.warning("PluginRuntime is not running")
            return

        logger.info("Stopping PluginRuntime")
        await self.lifecycle.uninstall_all(list(self._plugins.values()))
        for plugin_id in self._plugins:
            self.loader.unload_module(plugin_id)

        self._plugins.clear()
        self.event_bus.clear()
        self._running = False
        logger.info("PluginRuntime stopped")

    async def reload(self, specs: list[PluginSpec] | None = None) -> RuntimeReport:
        """
        Restart the runtime with a freshly resolved spec set.

        Args:
            specs: Specs to start with; defaults to ``spec_source()``

        Raises:
            PluginRuntimeError: If no specs are given and no spec source is set
        """
        if specs is None:
            if self.spec_source is None:
                raise PluginRuntimeError(
                    "No plugin specs given and no spec source configured"
                )
            specs = self.spec_source()

        logger.info("Reloading PluginRuntime")
        await self.stop()
        return await self.start(specs)

    async def reload_plugin(
        self, plugin_id: str, new_config: Any = _NO_CONFIG
    ) -> LifecycleResult:
        """
        Reload one plugin in place.

        Args:
            plugin_id: Plugin id
            new_config: Replacement configuration (omit to keep the current one)

        Returns:
            The successful LifecycleResult

        Raises:
            RuntimeInactiveError: If the runtime is not running
            PluginNotFoundError: If the id is unknown
            PluginRuntimeError: If the reload fails
        """
        if not self._running:
            raise RuntimeInactiveError("PluginRuntime is not running")

        instance = self._plugins.get(plugin_id)
        if instance is None:
            raise PluginNotFoundError(f"Plugin not loaded: {plugin_id}")

        if new_config is _NO_CONFIG:
            result = await self.lifecycle.reload(instance)
        else:
            result = await self.lifecycle.reload(instance, new_config)

        if not result.success:
            raise result.error

        self.event_bus.publish_sync(PLUGIN_RELOAD, PluginReloadEvent(plugin_id))
        return result

    async def unload_plugin(self, plugin_id: str) -> LifecycleResult:
        """
        Uninstall one plugin and drop it from the instance table.

        Raises:
            PluginNotFoundError: If the id is unknown
        """
        instance = self._plugins.get(plugin_id)
        if instance is None:
            raise PluginNotFoundError(f"Plugin {plugin_id} not found")

        result = await self.lifecycle.uninstall(instance)
        if not result.success:
            logger.warning("Plugin %s removed after failed uninstall", plugin_id)

        del self._plugins[plugin_id]
        self.loader.unload_module(plugin_id)
        logger.info("Plugin unloaded: %s", plugin_id)
        return result

    async def teardown(self) -> None:
        """Stop if running and reset all runtime state."""
        if self._running:
            await self.stop()
        self._plugins.clear()
        self.event_bus.clear()
        self.event_bus.reset_stats()
        self._last_report = RuntimeReport()
        self._apis = HostApis()

    def get_plugin(self, plugin_id: str) -> PluginInstance | None:
        return self._plugins.get(plugin_id)

    def get_all_plugins(self) -> list[PluginInstance]:
        return list(self._plugins.values())

    def get_plugin_type(self, plugin_id: str) -> PluginType | None:
        instance = self._plugins.get(plugin_id)
        return instance.type if instance else None

    def get_commands(self) -> dict[str, CommandConfig]:
        """Merge the command registries of all installed plugins."""
        commands: dict[str, CommandConfig] = {}
        for instance in self._plugins.values():
            if instance.state is PluginState.INSTALLED:
                commands.update(instance.context.get_commands())
        return commands

    def get_stats(self) -> RuntimeStats:
        instances = list(self._plugins.values())
        return RuntimeStats(
            total=len(instances),
            native=sum(1 for i in instances if i.type is PluginType.NATIVE),
            installed=sum(1 for i in instances if i.state is PluginState.INSTALLED),
            error=sum(1 for i in instances if i.state is PluginState.ERROR),
        )

    def get_last_report(self) -> RuntimeReport:
        return self._last_report

    def get_event_publisher(self) -> EventPublisher:
        """Publisher for platform adapters, bound to this runtime's bus."""
        return EventPublisher(self.event_bus)

    def is_active(self) -> bool:
        return self._running
