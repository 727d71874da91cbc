"""
Tests for the adapter-facing Event Publisher.

This test suite covers:
1. Message events with channel / message references and callbacks
2. Friend and group requests with approve / reject actions
3. Notices and instance status changes
"""

import pytest

from relaykit.core.event_publisher import EventPublisher, channel_ref, message_ref
from relaykit.core.events import (
    FRIEND_REQUEST,
    GROUP_REQUEST,
    INSTANCE_STATUS,
    MESSAGE,
    NOTICE,
    MessageContent,
    Sender,
)
from relaykit.errors import PluginRuntimeError
from relaykit.plugin.runtime import PluginRuntime


def collect(event_bus, event_type):
    received = []
    event_bus.subscribe(event_type, received.append)
    return received


class TestReferences:
    """Test platform-qualified references."""

    @pytest.mark.parametrize(
        "platform,channel_type,expected",
        [
            ("qq", "private", "qq:private:42"),
            ("qq", "group", "qq:group:42"),
            ("qq", "channel", "qq:group:42"),
            ("tg", "group", "tg:42"),
        ],
    )
    def test_channel_ref(self, platform, channel_type, expected):
        assert channel_ref(platform, channel_type, "42") == expected

    def test_message_ref(self):
        assert message_ref("qq", "42", "m1") == "qq:m1"
        assert message_ref("tg", "-100", "7") == "tg:-100:7"


class TestPublishMessage:
    """Test message publishing."""

    @pytest.mark.asyncio
    async def test_message_event_built_and_delivered(self, event_bus):
        """The event carries references, sender and the adapter callbacks."""
        received = collect(event_bus, MESSAGE)
        sent = []
        body = MessageContent(id="m1", text="hello", quote={"id": "q1", "user_id": "200"})

        publisher = EventPublisher(event_bus)
        task = publisher.publish_message(
            instance_id=1,
            platform="qq",
            channel_id="42",
            channel_type="private",
            sender=Sender(user_id="100", user_name="User"),
            message=body,
            raw={"source": "raw"},
            send=lambda content: sent.append(("send", content)),
            reply=lambda content: sent.append(("reply", content)),
            recall=lambda: sent.append(("recall", None)),
        )
        await task

        assert len(received) == 1
        event = received[0]
        assert event.event_id.startswith("msg-1-m1-")
        assert event.channel_ref == "qq:private:42"
        assert event.message.ref == "qq:m1"
        assert event.message.quote == {"id": "q1", "user_id": "200"}
        assert event.raw == {"source": "raw"}
        # The caller's message object is left untouched
        assert body.ref == ""

        await event.reply("pong")
        await event.send("hi")
        await event.recall()
        assert sent == [("reply", "pong"), ("send", "hi"), ("recall", None)]

    @pytest.mark.asyncio
    async def test_missing_callbacks(self, event_bus):
        """Without adapter callbacks, reply falls back to send which is unavailable."""
        received = collect(event_bus, MESSAGE)

        await EventPublisher(event_bus).publish_message(
            instance_id=2,
            platform="tg",
            channel_id="-100",
            channel_type="group",
            sender=Sender(user_id="1"),
            message=MessageContent(id="7", text="hi"),
            thread_id=3,
        )

        event = received[0]
        assert event.channel_ref == "tg:-100"
        assert event.message.ref == "tg:-100:7"
        assert event.thread_id == 3
        with pytest.raises(PluginRuntimeError, match="send is not available"):
            await event.reply("x")
        with pytest.raises(PluginRuntimeError, match="recall is not available"):
            await event.recall()

    def test_no_running_loop_drops_event(self, event_bus):
        received = collect(event_bus, MESSAGE)

        task = EventPublisher(event_bus).publish_message(
            instance_id=1,
            platform="qq",
            channel_id="42",
            channel_type="group",
            sender=Sender(user_id="1"),
            message=MessageContent(id="m1"),
        )

        assert task is None
        assert received == []


class TestRequestsAndNotices:
    """Test request, notice and status events."""

    @pytest.mark.asyncio
    async def test_friend_request_actions(self, event_bus):
        received = collect(event_bus, FRIEND_REQUEST)
        calls = []

        async def approve():
            calls.append("approve")

        await EventPublisher(event_bus).publish_friend_request(
            instance_id=1,
            platform="qq",
            request_id="r1",
            user_id="100",
            user_name="User",
            comment="let me in",
            timestamp=123,
            approve=approve,
            reject=lambda reason: calls.append(("reject", reason)),
        )

        event = received[0]
        assert event.event_id.startswith("friend-request-1-r1-")
        assert event.timestamp == 123
        await event.approve()
        await event.reject("spam")
        assert calls == ["approve", ("reject", "spam")]

    @pytest.mark.asyncio
    async def test_group_request_without_actions(self, event_bus):
        received = collect(event_bus, GROUP_REQUEST)

        await EventPublisher(event_bus).publish_group_request(
            instance_id=1,
            platform="qq",
            request_id="r2",
            group_id="g1",
            user_id="100",
            sub_type="invite",
        )

        event = received[0]
        assert event.sub_type == "invite"
        assert event.group_id == "g1"
        with pytest.raises(PluginRuntimeError, match="approve is not available"):
            await event.approve()

    @pytest.mark.asyncio
    async def test_notice(self, event_bus):
        received = collect(event_bus, NOTICE)

        await EventPublisher(event_bus).publish_notice(
            instance_id=1,
            platform="qq",
            notice_type="group-ban",
            group_id="g1",
            user_id="100",
            operator_id="1",
            duration=600,
            raw={"t": 1},
        )

        event = received[0]
        assert event.event_id.startswith("notice-1-group-ban-")
        assert (event.group_id, event.user_id, event.operator_id) == ("g1", "100", "1")
        assert event.duration == 600

    @pytest.mark.asyncio
    async def test_instance_status(self, event_bus):
        received = collect(event_bus, INSTANCE_STATUS)
        error = ConnectionError("lost")

        await EventPublisher(event_bus).publish_instance_status(1, "error", error)

        assert received[0].status == "error"
        assert received[0].error is error

    @pytest.mark.asyncio
    async def test_runtime_publisher_shares_bus(self, settings, event_bus):
        runtime = PluginRuntime(settings=settings, event_bus=event_bus)
        received = collect(event_bus, INSTANCE_STATUS)

        await runtime.get_event_publisher().publish_instance_status(3, "running")

        assert [e.instance_id for e in received] == [3]
