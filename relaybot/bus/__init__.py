"""Message bus module for decoupled channel-agent communication."""

from relaybot.bus.events import InboundMessage, OutboundMessage
from relaybot.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
