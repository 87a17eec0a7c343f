"""Base channel interface for chat platforms."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from relaybot.agent.engine import ReplyPayload
from relaybot.bus.events import InboundMessage, OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.utils.helpers import chunk_text


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel (Telegram, WhatsApp, etc.) implements send_text/send_media
    for one recipient address and pushes inbound messages onto the bus.
    """

    name: str = "base"
    text_chunk_limit: int | None = None

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Start the channel and begin listening for messages."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send_text(self, target: str, text: str) -> None:
        """Send one text message to target."""
        pass

    @abstractmethod
    async def send_media(self, target: str, text: str, media_url: str) -> None:
        """Send one media item (path or URL) with an optional caption."""
        pass

    async def send_typing(self, target: str) -> None:
        """Show a typing indicator, where the platform has one."""
        return None

    async def send(self, msg: OutboundMessage) -> None:
        """Deliver an outbound bus message."""
        await self.deliver(msg.chat_id, [ReplyPayload(text=msg.content, media_urls=list(msg.media) or None)])

    async def deliver(self, target: str, payloads: list[ReplyPayload]) -> None:
        await deliver_payloads(self, target, payloads)

    def is_allowed(self, sender_id: str) -> bool:
        """Check whether sender_id passes the channel-level allow list."""
        allow_list = getattr(self.config, "allow_from", [])
        if not allow_list:
            return True

        sender_str = str(sender_id)
        if sender_str in allow_list:
            return True
        if "|" in sender_str:
            for part in sender_str.split("|"):
                if part and part in allow_list:
                    return True
        return False

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        media_type: str | None = None,
        is_group: bool = False,
        sender_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Check permissions and forward an incoming message to the bus."""
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Access denied for sender {sender_id} on channel {self.name}. "
                f"Add them to allowFrom list in config to grant access."
            )
            return

        msg = InboundMessage(
            channel=self.name,
            sender_id=str(sender_id),
            chat_id=str(chat_id),
            content=content,
            media=media or [],
            media_type=media_type,
            is_group=is_group,
            sender_name=sender_name,
            metadata=metadata or {},
        )
        await self.bus.publish_inbound(msg)

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running


async def deliver_payloads(channel: BaseChannel, target: str, payloads: list[ReplyPayload]) -> int:
    """
    Render reply payloads in order.

    Text-only payloads are split at the channel's chunk limit. Media payloads
    send one message per item, with the text as caption on the first item.
    Returns the number of messages sent; channel errors propagate.
    """
    sent = 0
    for payload in payloads:
        text = payload.text or ""
        media = payload.media
        if not text.strip() and not media:
            continue
        if not media:
            chunks = chunk_text(text, channel.text_chunk_limit) if channel.text_chunk_limit else [text]
            for chunk in chunks:
                await channel.send_text(target, chunk)
                sent += 1
            continue
        for index, url in enumerate(media):
            await channel.send_media(target, text if index == 0 else "", url)
            sent += 1
    return sent
