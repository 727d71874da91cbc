"""
Normalized chat events.

The host's platform adapters publish these records on the event bus; plugins
receive them through ``context.on(...)``. Platform-specific payloads travel
untouched in ``raw``.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from relaykit.core.utils import maybe_await
from relaykit.errors import PluginRuntimeError

MESSAGE = "message"
FRIEND_REQUEST = "friend-request"
GROUP_REQUEST = "group-request"
NOTICE = "notice"
INSTANCE_STATUS = "instance-status"
PLUGIN_RELOAD = "plugin-reload"

EVENT_TYPES = frozenset(
    {MESSAGE, FRIEND_REQUEST, GROUP_REQUEST, NOTICE, INSTANCE_STATUS, PLUGIN_RELOAD}
)

SendCallback = Callable[[Any], Any]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Sender:
    user_id: str
    user_name: str = ""
    user_nick: str | None = None
    is_admin: bool = False
    is_owner: bool = False


@dataclass
class MessageContent:
    """
    Message body.

    Attributes:
        id: Platform message id
        ref: Platform-qualified message reference (``qq:<id>``, ``tg:<chat>:<id>``)
        text: Plain-text rendering of the message
        segments: Normalized segments, e.g. ``{"type": "text", "data": {...}}``
        timestamp: Milliseconds since the epoch
        quote: Quoted message (``id``, ``user_id``, ``text``), if any
    """

    id: str
    text: str = ""
    segments: list[dict[str, Any]] = field(default_factory=list)
    timestamp: int = field(default_factory=now_ms)
    ref: str = ""
    quote: dict[str, Any] | None = None


@dataclass
class MessageEvent:
    """A chat message received on one bridged instance."""

    event_id: str
    instance_id: int
    platform: str
    channel_id: str
    channel_type: str
    sender: Sender
    message: MessageContent
    thread_id: int | None = None
    raw: Any = None
    channel_ref: str = ""
    send_handler: SendCallback | None = None
    reply_handler: SendCallback | None = None
    recall_handler: Callable[[], Any] | None = None

    async def send(self, content: Any) -> Any:
        """Send content to the channel this event came from."""
        if self.send_handler is None:
            raise PluginRuntimeError("send is not available for this event")
        return await maybe_await(self.send_handler(content))

    async def reply(self, content: Any) -> Any:
        """Reply to this message, falling back to a plain send."""
        if self.reply_handler is None:
            return await self.send(content)
        return await maybe_await(self.reply_handler(content))

    async def recall(self) -> None:
        """Recall (delete) this message."""
        if self.recall_handler is None:
            raise PluginRuntimeError("recall is not available for this event")
        await maybe_await(self.recall_handler())


class _RequestActions:
    """approve()/reject() shared by friend and group requests."""

    approve_handler: Callable[[], Any] | None
    reject_handler: Callable[[str | None], Any] | None

    async def approve(self) -> None:
        if self.approve_handler is None:
            raise PluginRuntimeError("approve is not available for this request")
        await maybe_await(self.approve_handler())

    async def reject(self, reason: str | None = None) -> None:
        if self.reject_handler is None:
            raise PluginRuntimeError("reject is not available for this request")
        await maybe_await(self.reject_handler(reason))


@dataclass
class FriendRequestEvent(_RequestActions):
    event_id: str
    instance_id: int
    platform: str
    request_id: str
    user_id: str
    user_name: str = ""
    comment: str | None = None
    timestamp: int = field(default_factory=now_ms)
    approve_handler: Callable[[], Any] | None = None
    reject_handler: Callable[[str | None], Any] | None = None


@dataclass
class GroupRequestEvent(_RequestActions):
    event_id: str
    instance_id: int
    platform: str
    request_id: str
    group_id: str
    user_id: str
    user_name: str = ""
    comment: str | None = None
    sub_type: str = "add"
    timestamp: int = field(default_factory=now_ms)
    approve_handler: Callable[[], Any] | None = None
    reject_handler: Callable[[str | None], Any] | None = None


@dataclass
class NoticeEvent:
    event_id: str
    instance_id: int
    platform: str
    notice_type: str
    group_id: str | None = None
    user_id: str | None = None
    operator_id: str | None = None
    duration: int | None = None
    raw: Any = None
    timestamp: int = field(default_factory=now_ms)


@dataclass
class InstanceStatusEvent:
    instance_id: int
    status: str
    error: BaseException | None = None
    timestamp: int = field(default_factory=now_ms)


@dataclass
class PluginReloadEvent:
    plugin_id: str
    timestamp: int = field(default_factory=now_ms)
