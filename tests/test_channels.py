import asyncio

import pytest

from conftest import FakeChannel
from relaybot.agent.engine import ReplyPayload
from relaybot.bus.events import OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.channels.base import deliver_payloads
from relaybot.channels.manager import ChannelManager
from relaybot.config.schema import TelegramConfig


@pytest.mark.asyncio
async def test_deliver_payloads_chunks_text_and_captions_first_media():
    channel = FakeChannel(text_chunk_limit=10)

    sent = await deliver_payloads(channel, "t", [
        ReplyPayload(text="aaaa bbbb cccc"),
        ReplyPayload(text="   "),
        ReplyPayload(text="cap", media_urls=["https://x/1.png", "https://x/2.png"]),
    ])

    assert sent == 4
    assert channel.sent == [
        ("t", "aaaa bbbb", None),
        ("t", "cccc", None),
        ("t", "cap", "https://x/1.png"),
        ("t", "", "https://x/2.png"),
    ]


@pytest.mark.asyncio
async def test_deliver_payloads_propagates_channel_errors():
    with pytest.raises(RuntimeError, match="network down"):
        await deliver_payloads(FakeChannel(fail=True), "t", [ReplyPayload(text="hi")])


@pytest.mark.asyncio
async def test_outbound_message_is_sent_with_media():
    channel = FakeChannel()

    await channel.send(OutboundMessage(channel="fake", chat_id="9", content="look", media=["/tmp/a.jpg"]))

    assert channel.sent == [("9", "look", "/tmp/a.jpg")]


def test_allow_list_matches_any_part_of_composite_sender_id():
    channel = FakeChannel()
    channel.config = TelegramConfig(allow_from=["alice"])

    assert channel.is_allowed("7|alice")
    assert not channel.is_allowed("8|bob")
    assert not channel.is_allowed("7")


@pytest.mark.asyncio
async def test_channel_denies_sender_outside_allow_list():
    bus = MessageBus()
    channel = FakeChannel()
    channel.bus = bus
    channel.config = TelegramConfig(allow_from=["7"])

    await channel._handle_message(sender_id="8|bob", chat_id="8", content="hi")

    assert bus.inbound_size == 0


@pytest.mark.asyncio
async def test_manager_dispatches_outbound_and_reports_status(config):
    bus = MessageBus()
    fake = FakeChannel()
    manager = ChannelManager(config, bus, channels={"fake": fake})

    assert manager.provider_summary() == ["fake: stopped"]
    await manager.start_all()
    assert manager.provider_summary() == ["fake: running"]
    assert manager.get_status() == {"fake": {"enabled": True, "running": True}}

    await bus.publish_outbound(OutboundMessage(channel="nowhere", chat_id="1", content="lost"))
    await bus.publish_outbound(OutboundMessage(channel="fake", chat_id="1", content="hello"))
    for _ in range(100):
        if fake.sent:
            break
        await asyncio.sleep(0.01)

    await manager.stop_all()
    assert fake.sent == [("1", "hello", None)]
    assert not fake.is_running


def test_manager_without_enabled_channels_is_empty(config):
    manager = ChannelManager(config, MessageBus())

    assert manager.enabled_channels == []
    assert manager.get_channel("telegram") is None
