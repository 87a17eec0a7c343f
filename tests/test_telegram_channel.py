from types import SimpleNamespace

import pytest

from relaybot.bus.queue import MessageBus
from relaybot.channels.telegram import TelegramChannel, _markdown_to_telegram_html
from relaybot.config.schema import TelegramConfig


class _DummyBot:
    def __init__(self, fail_html: bool = False):
        self.fail_html = fail_html
        self.message_calls = []
        self.photo_calls = []
        self.document_calls = []
        self.actions = []

    async def send_message(self, **kwargs):
        if self.fail_html and kwargs.get("parse_mode") == "HTML":
            raise RuntimeError("can't parse entities")
        self.message_calls.append(kwargs)
        return SimpleNamespace(message_id=103)

    async def send_photo(self, chat_id, photo, caption=None):
        self.photo_calls.append((chat_id, photo, caption))
        return SimpleNamespace(message_id=104)

    async def send_document(self, chat_id, document, caption=None):
        self.document_calls.append((chat_id, document, caption))
        return SimpleNamespace(message_id=105)

    async def send_voice(self, chat_id, voice, caption=None):
        return SimpleNamespace(message_id=106)

    async def send_audio(self, chat_id, audio, caption=None):
        return SimpleNamespace(message_id=107)

    async def send_chat_action(self, **kwargs):
        self.actions.append(kwargs)


def _channel(bot: _DummyBot | None = None) -> TelegramChannel:
    ch = TelegramChannel(config=TelegramConfig(token="t"), bus=MessageBus())
    ch._app = SimpleNamespace(bot=bot or _DummyBot())
    return ch


def test_markdown_conversion_escapes_and_formats():
    html = _markdown_to_telegram_html("**bold** <x> `a<b` [site](https://e.com)\n```py\nx = 1 & 2\n```")

    assert "<b>bold</b>" in html
    assert "&lt;x&gt;" in html
    assert "<code>a&lt;b</code>" in html
    assert '<a href="https://e.com">site</a>' in html
    assert "<pre><code>x = 1 &amp; 2\n</code></pre>" in html


@pytest.mark.asyncio
async def test_send_text_uses_html():
    bot = _DummyBot()

    await _channel(bot).send_text("42", "**hi**")

    assert bot.message_calls == [{"chat_id": 42, "text": "<b>hi</b>", "parse_mode": "HTML"}]


@pytest.mark.asyncio
async def test_send_text_falls_back_to_plain_text():
    bot = _DummyBot(fail_html=True)

    await _channel(bot).send_text("42", "**hi**")

    assert bot.message_calls == [{"chat_id": 42, "text": "**hi**"}]


@pytest.mark.asyncio
async def test_send_media_picks_method_by_extension():
    bot = _DummyBot()
    channel = _channel(bot)

    await channel.send_media("42", "caption", "https://e.com/pic.png?size=1")
    await channel.send_media("42", "", "https://e.com/report.pdf")

    assert bot.photo_calls == [(42, "https://e.com/pic.png?size=1", "caption")]
    assert bot.document_calls == [(42, "https://e.com/report.pdf", None)]


@pytest.mark.asyncio
async def test_send_without_app_raises():
    channel = TelegramChannel(config=TelegramConfig(token="t"), bus=MessageBus())

    with pytest.raises(RuntimeError, match="not running"):
        await channel.send_text("42", "hi")


@pytest.mark.asyncio
async def test_group_message_is_published_with_mention_metadata():
    bus = MessageBus()
    channel = TelegramChannel(config=TelegramConfig(token="t"), bus=bus)
    message = SimpleNamespace(
        text="@relay_bot what's new?",
        caption=None,
        photo=None,
        voice=None,
        audio=None,
        document=None,
        chat=SimpleNamespace(type="group", title="Team"),
        chat_id=-42,
        message_id=5,
        reply_to_message=None,
    )
    update = SimpleNamespace(
        message=message,
        effective_user=SimpleNamespace(id=7, username="alice", full_name="Alice A"),
    )
    context = SimpleNamespace(bot=SimpleNamespace(username="relay_bot", id=1))

    await channel._on_message(update, context)

    msg = bus.inbound.get_nowait()
    assert msg.channel == "telegram"
    assert msg.sender_id == "7|alice"
    assert msg.chat_id == "-42"
    assert msg.is_group is True
    assert msg.metadata["was_mentioned"] is True
    assert msg.metadata["group_subject"] == "Team"
    assert msg.metadata["user_id"] == 7
