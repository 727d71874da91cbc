"""
Event Publisher - entry point for platform adapters.

Adapters report what happens on a bridged instance through an
EventPublisher. It builds the normalized event records, attaches the
adapter's send/reply/recall and approve/reject callbacks, and hands the
event to EventBus.publish_sync so the adapter never waits on plugins.

Key features:
- Message events with platform-qualified channel and message references
- Friend and group requests with approve/reject actions
- Notices and instance status changes
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from typing import Any

from relaykit.core.event_bus import EventBus
from relaykit.core.events import (
    FRIEND_REQUEST,
    GROUP_REQUEST,
    INSTANCE_STATUS,
    MESSAGE,
    NOTICE,
    FriendRequestEvent,
    GroupRequestEvent,
    InstanceStatusEvent,
    MessageContent,
    MessageEvent,
    NoticeEvent,
    Sender,
    SendCallback,
    now_ms,
)

logger = logging.getLogger(__name__)

INSTANCE_STATUSES = ("starting", "running", "stopping", "stopped", "error")


def channel_ref(platform: str, channel_type: str, channel_id: str) -> str:
    """
    Build the platform-qualified channel reference.

    QQ channels are ``qq:private:<id>`` or ``qq:group:<id>``; every other
    platform uses ``<platform>:<id>``.
    """
    if platform == "qq":
        kind = "private" if channel_type == "private" else "group"
        return f"qq:{kind}:{channel_id}"
    return f"{platform}:{channel_id}"


def message_ref(platform: str, channel_id: str, message_id: str) -> str:
    # QQ message ids are global; Telegram ids are only unique per chat
    if platform == "qq":
        return f"qq:{message_id}"
    return f"{platform}:{channel_id}:{message_id}"


class EventPublisher:
    """
    Publishes normalized events on an EventBus.

    Every publish_* method is fire-and-forget and returns the scheduled
    task (None when no event loop is running).
    """

    def __init__(self, event_bus: EventBus):
        self.event_bus = event_bus

    def publish_message(
        self,
        instance_id: int,
        platform: str,
        channel_id: str,
        channel_type: str,
        sender: Sender,
        message: MessageContent,
        thread_id: int | None = None,
        raw: Any = None,
        send: SendCallback | None = None,
        reply: SendCallback | None = None,
        recall: Callable[[], Any] | None = None,
    ) -> asyncio.Task | None:
        """
        Publish a chat message.

        Args:
            instance_id: Bridged instance the message arrived on
            platform: Source platform (``qq``, ``tg``)
            channel_id: Platform channel id
            channel_type: ``group``, ``private`` or ``channel``
            sender: Message author
            message: Message body; its ``ref`` is filled in here
            thread_id: Forum topic / thread, if any
            raw: Untouched platform payload
            send: Callback sending content to the channel
            reply: Callback replying to this message
            recall: Callback recalling this message

        Returns:
            The scheduled publish task, or None
        """
        content = dataclasses.replace(
            message, ref=message_ref(platform, channel_id, message.id)
        )
        event = MessageEvent(
            event_id=f"msg-{instance_id}-{message.id}-{now_ms()}",
            instance_id=instance_id,
            platform=platform,
            channel_id=channel_id,
            channel_type=channel_type,
            sender=sender,
            message=content,
            thread_id=thread_id,
            raw=raw,
            channel_ref=channel_ref(platform, channel_type, channel_id),
            send_handler=send,
            reply_handler=reply,
            recall_handler=recall,
        )

        logger.debug(
            "Publishing message event: instance=%s platform=%s channel=%s message=%s",
            instance_id,
            platform,
            channel_id,
            message.id,
        )
        return self.event_bus.publish_sync(MESSAGE, event)

    def publish_friend_request(
        self,
        instance_id: int,
        platform: str,
        request_id: str,
        user_id: str,
        user_name: str = "",
        comment: str | None = None,
        timestamp: int | None = None,
        approve: Callable[[], Any] | None = None,
        reject: Callable[[str | None], Any] | None = None,
    ) -> asyncio.Task | None:
        event = FriendRequestEvent(
            event_id=f"friend-request-{instance_id}-{request_id}-{now_ms()}",
            instance_id=instance_id,
            platform=platform,
            request_id=request_id,
            user_id=user_id,
            user_name=user_name,
            comment=comment,
            timestamp=timestamp if timestamp is not None else now_ms(),
            approve_handler=approve,
            reject_handler=reject,
        )
        return self.event_bus.publish_sync(FRIEND_REQUEST, event)

    def publish_group_request(
        self,
        instance_id: int,
        platform: str,
        request_id: str,
        group_id: str,
        user_id: str,
        user_name: str = "",
        comment: str | None = None,
        sub_type: str = "add",
        timestamp: int | None = None,
        approve: Callable[[], Any] | None = None,
        reject: Callable[[str | None], Any] | None = None,
    ) -> asyncio.Task | None:
        """Publish a join request or invitation (``sub_type`` ``add``/``invite``)."""
        event = GroupRequestEvent(
            event_id=f"group-request-{instance_id}-{request_id}-{now_ms()}",
            instance_id=instance_id,
            platform=platform,
            request_id=request_id,
            group_id=group_id,
            user_id=user_id,
            user_name=user_name,
            comment=comment,
            sub_type=sub_type,
            timestamp=timestamp if timestamp is not None else now_ms(),
            approve_handler=approve,
            reject_handler=reject,
        )
        return self.event_bus.publish_sync(GROUP_REQUEST, event)

    def publish_notice(
        self,
        instance_id: int,
        platform: str,
        notice_type: str,
        group_id: str | None = None,
        user_id: str | None = None,
        operator_id: str | None = None,
        duration: int | None = None,
        timestamp: int | None = None,
        raw: Any = None,
    ) -> asyncio.Task | None:
        event = NoticeEvent(
            event_id=f"notice-{instance_id}-{notice_type}-{now_ms()}",
            instance_id=instance_id,
            platform=platform,
            notice_type=notice_type,
            group_id=group_id,
            user_id=user_id,
            operator_id=operator_id,
            duration=duration,
            raw=raw,
            timestamp=timestamp if timestamp is not None else now_ms(),
        )
        return self.event_bus.publish_sync(NOTICE, event)

    def publish_instance_status(
        self, instance_id: int, status: str, error: BaseException | None = None
    ) -> asyncio.Task | None:
        if status not in INSTANCE_STATUSES:
            logger.warning("Unknown instance status %r for instance %s", status, instance_id)
        event = InstanceStatusEvent(instance_id=instance_id, status=status, error=error)
        return self.event_bus.publish_sync(INSTANCE_STATUS, event)
