"""Async message queue for decoupled channel-agent communication."""

import asyncio

from relaybot.bus.events import InboundMessage, OutboundMessage


class MessageBus:
    """
    Async message bus that decouples chat channels from the agent loop.

    Channels push messages to the inbound queue, and the agent loop
    processes them and pushes replies to the outbound queue.
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """Publish a message from a channel to the agent."""
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """Consume the next inbound message (blocks until available)."""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """Publish a reply from the agent to channels."""
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        """Consume the next outbound message (blocks until available)."""
        return await self.outbound.get()

    def has_pending_inbound_for_session(self, session_key: str) -> bool:
        """Whether a not-yet-consumed inbound message targets session_key."""
        # asyncio.Queue keeps its items in a deque; peeking does not consume.
        for msg in list(self.inbound._queue):  # type: ignore[attr-defined]
            key = msg.metadata.get("session_key") if isinstance(msg.metadata, dict) else None
            if not isinstance(key, str) or not key:
                key = msg.session_key
            if key == session_key:
                return True
        return False

    @property
    def inbound_size(self) -> int:
        """Number of pending inbound messages."""
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        """Number of pending outbound messages."""
        return self.outbound.qsize()
