"""
Compatibility bridge for legacy ``apply(ctx, config)`` plugins.

Plugins written for the legacy chat-bot contract expose an ``apply``
function instead of the native ``install`` hook. This module wraps them in
a native plugin object and translates host message events into the legacy
session shape. It only maps data; the legacy framework's scheduler,
middleware chain and command parser are not provided.

Key features:
- Host segment <-> legacy element translation in both directions
- LegacySession with string content, element list and send callbacks
- Minimal legacy context supporting ``on("message")`` and ``middleware()``
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relaykit.core.events import MESSAGE, MessageEvent
from relaykit.core.utils import maybe_await
from relaykit.errors import PluginLoadError, PluginRuntimeError

logger = logging.getLogger(__name__)

BRIDGED_VERSION = "1.0.0"

_MEDIA_TYPES = ("video", "audio")


def to_legacy_elements(segments: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert host message segments into legacy elements."""
    elements = []
    for segment in segments or []:
        seg_type = segment.get("type")
        data = segment.get("data") or {}

        if seg_type == "text":
            elements.append({"type": "text", "attrs": {"content": data.get("text", "")}})
        elif seg_type == "at":
            elements.append(
                {
                    "type": "at",
                    "attrs": {"id": data.get("user_id"), "name": data.get("user_name")},
                }
            )
        elif seg_type == "image":
            elements.append(
                {"type": "img", "attrs": {"src": data.get("url") or data.get("file")}}
            )
        elif seg_type in _MEDIA_TYPES:
            elements.append(
                {"type": seg_type, "attrs": {"src": data.get("url") or data.get("file")}}
            )
        elif seg_type == "reply":
            elements.append({"type": "quote", "attrs": {"id": data.get("message_id")}})
        else:
            elements.append({"type": seg_type, "attrs": data})
    return elements


def from_legacy_elements(elements: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Convert legacy elements back into host message segments."""
    segments = []
    for element in elements or []:
        el_type = element.get("type")
        attrs = element.get("attrs") or {}

        if el_type == "text":
            segments.append({"type": "text", "data": {"text": attrs.get("content", "")}})
        elif el_type == "at":
            segments.append(
                {
                    "type": "at",
                    "data": {"user_id": attrs.get("id"), "user_name": attrs.get("name")},
                }
            )
        elif el_type in ("img", "image"):
            segments.append({"type": "image", "data": {"url": attrs.get("src")}})
        elif el_type in _MEDIA_TYPES:
            segments.append({"type": el_type, "data": {"url": attrs.get("src")}})
        elif el_type == "quote":
            segments.append({"type": "reply", "data": {"message_id": attrs.get("id")}})
        else:
            segments.append({"type": el_type, "data": attrs})
    return segments


def parse_legacy_content(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "data": {"text": content}}]
    return from_legacy_elements(content)


def _message_id(result: Any) -> Any:
    if isinstance(result, dict):
        return result.get("message_id")
    return getattr(result, "message_id", result)


@dataclass
class LegacySession:
    """Message session in the shape legacy plugins expect."""

    platform: str
    self_id: str
    user_id: str
    channel_id: str
    author: dict[str, Any]
    content: str
    elements: list[dict[str, Any]]
    timestamp: int
    guild_id: str | None = None
    quote: dict[str, Any] | None = None
    type: str = "message"
    referrer: MessageEvent | None = field(default=None, repr=False)

    async def send(self, content: str | list[dict[str, Any]]) -> list[Any]:
        if self.referrer is None:
            raise PluginRuntimeError("Session has no originating event")
        result = await self.referrer.send(parse_legacy_content(content))
        return [_message_id(result)]

    async def send_queued(self, content: str | list[dict[str, Any]]) -> list[Any]:
        return await self.send(content)

    @classmethod
    def from_event(cls, event: MessageEvent) -> "LegacySession":
        quote = None
        for segment in event.message.segments:
            if segment.get("type") == "reply":
                data = segment.get("data") or {}
                quote = {"id": data.get("message_id"), "content": data.get("text", "")}
                break

        return cls(
            platform="onebot" if event.platform == "qq" else "telegram",
            self_id=str(event.instance_id),
            user_id=event.sender.user_id,
            channel_id=event.channel_id,
            guild_id=event.channel_id if event.channel_type == "group" else None,
            author={"user_id": event.sender.user_id, "username": event.sender.user_name},
            content=event.message.text,
            elements=to_legacy_elements(event.message.segments),
            quote=quote,
            timestamp=event.message.timestamp,
            referrer=event,
        )


class LegacyContext:
    """The subset of the legacy context that wrapped plugins may call."""

    def __init__(self, plugin_id: str):
        self.plugin_id = plugin_id
        self._handlers: list[Callable[[LegacySession], Any]] = []

    def on(self, event: str, handler: Callable[[LegacySession], Any]) -> None:
        if event == "message":
            self._handlers.append(handler)
        else:
            logger.debug("Ignoring legacy %s listener for %s", event, self.plugin_id)

    def middleware(self, callback: Callable[[LegacySession, Callable], Any]) -> None:
        async def _noop_next() -> None:
            return None

        async def _handler(session: LegacySession) -> None:
            await maybe_await(callback(session, _noop_next))

        self._handlers.append(_handler)

    async def handle_message(self, session: LegacySession) -> None:
        for handler in list(self._handlers):
            try:
                await maybe_await(handler(session))
            except Exception as e:
                logger.error("Legacy handler error in %s: %s", self.plugin_id, e)


class BridgedPlugin:
    """Native plugin wrapping a legacy ``apply`` function."""

    version = BRIDGED_VERSION

    def __init__(
        self,
        plugin_id: str,
        apply: Callable[[LegacyContext, Any], Any],
        name: str | None = None,
        config: Any = None,
    ):
        self.id = plugin_id
        self.name = name or plugin_id
        self.description = f"Legacy plugin wrapped for relaykit: {self.name}"
        self._apply = apply
        self._config = config
        self.legacy_context: LegacyContext | None = None

    async def install(self, ctx: Any, config: Any = None) -> None:
        self.legacy_context = LegacyContext(self.id)
        await maybe_await(self._apply(self.legacy_context, config or self._config))

        async def _on_message(event: MessageEvent) -> None:
            if self.legacy_context is None:
                return
            await self.legacy_context.handle_message(LegacySession.from_event(event))

        ctx.on(MESSAGE, _on_message)
        logger.info("Legacy plugin installed (wrapped): %s", self.id)

    async def uninstall(self) -> None:
        self.legacy_context = None


def is_legacy_plugin(obj: Any) -> bool:
    return callable(getattr(obj, "apply", None))


def wrap_legacy_plugin(module: Any, plugin_id: str, config: Any = None) -> BridgedPlugin:
    """
    Wrap a legacy plugin module or object.

    Args:
        module: Module or object exposing ``apply`` (directly or via ``plugin``)
        plugin_id: Host plugin id
        config: Fallback configuration for apply()

    Returns:
        A native plugin object

    Raises:
        PluginLoadError: If no apply function is found
    """
    for candidate in (module, getattr(module, "plugin", None)):
        if candidate is not None and is_legacy_plugin(candidate):
            name = getattr(candidate, "name", None) or getattr(module, "name", None)
            if not isinstance(name, str):
                name = None
            return BridgedPlugin(plugin_id, candidate.apply, name=name, config=config)

    raise PluginLoadError("Invalid legacy plugin: apply function not found")
