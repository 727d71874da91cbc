"""
Plugin Lifecycle Manager.

This module drives the install / uninstall / reload state machine of one
plugin instance. Instances are owned by the runtime; the manager mutates
their state, error and timestamps in place.

Key features:
- PluginState enumeration with ERROR always carrying the stored error
- Idempotent uninstall (second call is a zero-duration success)
- Reload through the plugin's own hook, or a full uninstall/install cycle
- Sequential batch install / uninstall that never raise
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from relaykit.core.utils import maybe_await
from relaykit.errors import PluginHookError, PluginRuntimeError
from relaykit.plugin.context import PluginContext
from relaykit.plugin.loader import PluginType

logger = logging.getLogger(__name__)

_NO_CONFIG: Any = object()


class PluginState(Enum):
    """Plugin state enumeration."""

    UNINITIALIZED = "uninitialized"
    INSTALLING = "installing"
    INSTALLED = "installed"
    UNINSTALLING = "uninstalling"
    UNINSTALLED = "uninstalled"
    ERROR = "error"


@dataclass
class PluginInstance:
    """
    Live record for one loaded plugin.

    Attributes:
        id: Plugin id
        plugin: Plugin object (native or bridged)
        context: The plugin's context
        config: Current configuration
        type: Plugin type detected at load time
        state: Current lifecycle state
        error: Error stored when state is ERROR
        installed_at: Time of the last successful install
        uninstalled_at: Time of the last successful uninstall
    """

    id: str
    plugin: Any
    context: PluginContext
    config: Any = None
    type: PluginType = PluginType.NATIVE
    state: PluginState = PluginState.UNINITIALIZED
    error: BaseException | None = None
    installed_at: datetime | None = None
    uninstalled_at: datetime | None = None


@dataclass
class LifecycleResult:
    success: bool
    duration: float
    error: BaseException | None = None


@dataclass
class PluginFailure:
    id: str
    error: BaseException


@dataclass
class BatchResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[PluginFailure] = field(default_factory=list)


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleManager:
    """Drives lifecycle transitions for plugin instances."""

    def _fail(
        self, instance: PluginInstance, error: BaseException, start: float, action: str
    ) -> LifecycleResult:
        instance.state = PluginState.ERROR
        instance.error = error
        duration = _elapsed_ms(start)
        logger.error(
            "Plugin %s failed for %s after %.1fms: %s", action, instance.id, duration, error
        )
        return LifecycleResult(success=False, duration=duration, error=error)

    async def install(self, instance: PluginInstance) -> LifecycleResult:
        """
        Install a plugin instance.

        An already-installed instance is rejected and left untouched.

        Args:
            instance: Instance to install

        Returns:
            LifecycleResult; on hook failure the instance is in ERROR state
        """
        start = time.monotonic()

        if instance.state is PluginState.INSTALLED:
            error = PluginRuntimeError(f"Plugin {instance.id} is already installed")
            logger.warning("%s", error)
            return LifecycleResult(success=False, duration=0.0, error=error)

        logger.info("Installing plugin %s", instance.id)
        instance.state = PluginState.INSTALLING
        try:
            await maybe_await(instance.plugin.install(instance.context, instance.config))
        except Exception as e:
            error = PluginHookError(f"Install hook failed for {instance.id}: {e}")
            error.__cause__ = e
            return self._fail(instance, error, start, "install")

        instance.state = PluginState.INSTALLED
        instance.installed_at = _now()
        instance.error = None

        duration = _elapsed_ms(start)
        logger.info("Plugin installed: %s (%.1fms)", instance.id, duration)
        return LifecycleResult(success=True, duration=duration)

    async def uninstall(self, instance: PluginInstance) -> LifecycleResult:
        """
        Uninstall a plugin instance.

        Runs context unload callbacks, the plugin's uninstall hook and
        context cleanup (event subscriptions, commands, callbacks), in
        that order. Uninstalling an UNINSTALLED instance is a no-op.

        Args:
            instance: Instance to uninstall

        Returns:
            LifecycleResult
        """
        if instance.state is PluginState.UNINSTALLED:
            logger.debug("Plugin %s is already uninstalled", instance.id)
            return LifecycleResult(success=True, duration=0.0)

        start = time.monotonic()
        logger.info("Uninstalling plugin %s", instance.id)
        instance.state = PluginState.UNINSTALLING
        try:
            await instance.context.trigger_unload()

            uninstall_hook = getattr(instance.plugin, "uninstall", None)
            if callable(uninstall_hook):
                await maybe_await(uninstall_hook())

            instance.context.cleanup()
        except Exception as e:
            error = PluginHookError(f"Uninstall hook failed for {instance.id}: {e}")
            error.__cause__ = e
            return self._fail(instance, error, start, "uninstall")

        instance.state = PluginState.UNINSTALLED
        instance.uninstalled_at = _now()

        duration = _elapsed_ms(start)
        logger.info("Plugin uninstalled: %s (%.1fms)", instance.id, duration)
        return LifecycleResult(success=True, duration=duration)

    async def reload(
        self, instance: PluginInstance, new_config: Any = _NO_CONFIG
    ) -> LifecycleResult:
        """
        Reload a plugin instance, optionally with new configuration.

        Context reload callbacks always run first. A plugin ``reload`` hook
        is preferred; without one the instance goes through a full
        uninstall, config swap and install.

        Args:
            instance: Instance to reload
            new_config: Replacement configuration (omit to keep the current one)

        Returns:
            LifecycleResult
        """
        start = time.monotonic()
        logger.info("Reloading plugin %s", instance.id)

        try:
            await instance.context.trigger_reload()

            reload_hook = getattr(instance.plugin, "reload", None)
            if callable(reload_hook):
                await maybe_await(reload_hook())
                self._swap_config(instance, new_config)
            else:
                result = await self.uninstall(instance)
                if not result.success:
                    raise result.error

                self._swap_config(instance, new_config)
                instance.state = PluginState.UNINITIALIZED

                result = await self.install(instance)
                if not result.success:
                    raise result.error
        except Exception as e:
            error = e
            if not isinstance(e, PluginRuntimeError):
                error = PluginHookError(f"Reload failed for {instance.id}: {e}")
                error.__cause__ = e
            return self._fail(instance, error, start, "reload")

        duration = _elapsed_ms(start)
        logger.info("Plugin reloaded: %s (%.1fms)", instance.id, duration)
        return LifecycleResult(success=True, duration=duration)

    @staticmethod
    def _swap_config(instance: PluginInstance, new_config: Any) -> None:
        if new_config is _NO_CONFIG:
            return
        instance.config = new_config
        instance.context.config = new_config

    async def install_all(self, instances: list[PluginInstance]) -> BatchResult:
        """Install instances one after another, collecting failures."""
        batch = BatchResult()
        for instance in instances:
            result = await self.install(instance)
            if result.success:
                batch.succeeded.append(instance.id)
            else:
                batch.failed.append(PluginFailure(instance.id, result.error))

        logger.info(
            "Batch installation completed: %d succeeded, %d failed",
            len(batch.succeeded),
            len(batch.failed),
        )
        return batch

    async def uninstall_all(self, instances: list[PluginInstance]) -> BatchResult:
        """Uninstall instances in reverse order, collecting failures."""
        batch = BatchResult()
        for instance in reversed(instances):
            result = await self.uninstall(instance)
            if result.success:
                batch.succeeded.append(instance.id)
            else:
                batch.failed.append(PluginFailure(instance.id, result.error))

        logger.info(
            "Batch uninstallation completed: %d succeeded, %d failed",
            len(batch.succeeded),
            len(batch.failed),
        )
        return batch

    @staticmethod
    def is_healthy(instance: PluginInstance) -> bool:
        return instance.state is PluginState.INSTALLED and instance.error is None

    @staticmethod
    def get_stats(instances: list[PluginInstance]) -> dict[str, int]:
        return {
            "total": len(instances),
            "installed": sum(1 for i in instances if i.state is PluginState.INSTALLED),
            "error": sum(1 for i in instances if i.state is PluginState.ERROR),
            "uninstalled": sum(
                1 for i in instances if i.state is PluginState.UNINSTALLED
            ),
        }
