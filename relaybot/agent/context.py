"""Inbound message context handed to the reply orchestrator."""

from dataclasses import dataclass, field
from typing import Any, Literal


@dataclass
class MessageContext:
    """
    One inbound message as seen by the reply flow.

    sender/recipient are channel addresses (phone numbers, chat ids, or
    group:<id> for group chats). body may be rewritten by transcription.
    """

    body: str = ""
    sender: str | None = None
    recipient: str | None = None
    channel: str | None = None
    chat_type: Literal["direct", "group"] | None = None
    group_id: str | None = None
    group_subject: str | None = None
    group_members: str | None = None
    sender_e164: str | None = None
    sender_name: str | None = None
    was_mentioned: bool = False
    reply_target: str | None = None
    media_path: str | None = None
    media_url: str | None = None
    media_type: str | None = None
    transcript: str | None = None
    message_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_group(self) -> bool:
        if self.chat_type == "group":
            return True
        sender = self.sender or ""
        return "@g.us" in sender or sender.startswith("group:")

    @property
    def delivery_target(self) -> str | None:
        """Address replies for this conversation should go to."""
        return self.reply_target or self.sender
