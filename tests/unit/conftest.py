"""Shared fixtures for relaykit unit tests."""

import pytest

from relaykit.config.settings import RelaySettings
from relaykit.core.event_bus import EventBus
from relaykit.core.events import MessageContent, MessageEvent, Sender


@pytest.fixture
def settings(tmp_path):
    """Settings confined to a temporary data root with every gate closed."""
    return RelaySettings(data_dir=tmp_path / "data")


@pytest.fixture
def event_bus():
    return EventBus()


def make_message_event(text="hello", sent=None, platform="qq", channel_type="group"):
    """Build a MessageEvent whose send/reply append to ``sent``."""
    if sent is None:
        sent = []

    def send(content):
        sent.append(("send", content))
        return {"message_id": "m-2"}

    def reply(content):
        sent.append(("reply", content))
        return {"message_id": "m-3"}

    return MessageEvent(
        event_id="evt-1",
        instance_id=1,
        platform=platform,
        channel_id="1001",
        channel_type=channel_type,
        sender=Sender(user_id="42", user_name="alice"),
        message=MessageContent(
            id="m-1",
            text=text,
            segments=[{"type": "text", "data": {"text": text}}],
        ),
        send_handler=send,
        reply_handler=reply,
    )


@pytest.fixture
def message_event():
    return make_message_event()


@pytest.fixture
def make_event():
    """Factory fixture for message events."""
    return make_message_event
