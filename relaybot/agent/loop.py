"""Gateway loop: feeds bus messages through the reply orchestrator."""

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from relaybot.agent.context import MessageContext
from relaybot.agent.directives import is_abort_trigger, normalize_command_mentions, normalize_group_activation
from relaybot.agent.engine import ReplyPayload
from relaybot.agent.reply import SILENT_REPLY_TOKEN, ReplyOptions, ReplyOrchestrator, ReplyResult
from relaybot.bus.events import InboundMessage, OutboundMessage
from relaybot.bus.queue import MessageBus
from relaybot.errors import TurnAborted
from relaybot.session.keys import resolve_session_key

if TYPE_CHECKING:
    from relaybot.channels.manager import ChannelManager

PENDING_NOTICE = "I already received a newer message from you and will process it next."
ERROR_REPLY = "Sorry, I encountered an error while processing your message."


def to_message_context(msg: InboundMessage) -> MessageContext:
    """Map a channel message onto the orchestrator's message context."""
    meta = msg.metadata or {}
    user_id = meta.get("user_id") or msg.sender_id.split("|", 1)[0]
    sender = f"{msg.channel}:{user_id}"
    return MessageContext(
        body=msg.content,
        sender=sender,
        # Non-phone channels identify owners by their channel address.
        sender_e164=sender,
        recipient=None,
        channel=msg.channel,
        chat_type="group" if msg.is_group else "direct",
        group_id=f"{msg.channel}:{msg.chat_id}" if msg.is_group else None,
        group_subject=meta.get("group_subject"),
        sender_name=msg.sender_name,
        was_mentioned=bool(meta.get("was_mentioned")),
        reply_target=msg.chat_id,
        media_path=msg.media[0] if msg.media else None,
        media_type=msg.media_type,
        message_id=str(meta["message_id"]) if meta.get("message_id") is not None else None,
    )


def reply_payloads(result: ReplyResult) -> list[ReplyPayload]:
    """Flatten a reply result and drop silent or empty payloads."""
    if result is None:
        return []
    payloads = result if isinstance(result, list) else [result]
    visible = []
    for payload in payloads:
        text = (payload.text or "").strip()
        if text == SILENT_REPLY_TOKEN and not payload.media:
            continue
        if not text and not payload.media:
            continue
        visible.append(payload)
    return visible


class AgentLoop:
    """
    Consumes inbound bus messages and publishes replies.

    Messages for one conversation are handled strictly in order by a
    per-session worker; different conversations run concurrently, bounded
    by ``max_concurrency``.
    """

    def __init__(
        self,
        bus: MessageBus,
        orchestrator: ReplyOrchestrator,
        channels: "ChannelManager | None" = None,
        max_concurrency: int = 4,
    ):
        self.bus = bus
        self.orchestrator = orchestrator
        self.channels = channels
        self._running = False
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))
        self._session_queues: dict[str, asyncio.Queue[InboundMessage]] = {}
        self._session_workers: dict[str, asyncio.Task[None]] = {}
        self._abort_events: dict[str, asyncio.Event] = {}

    async def run(self) -> None:
        """Run the loop, processing messages from the bus."""
        self._running = True
        logger.info("Agent loop started")

        try:
            while self._running:
                try:
                    msg = await asyncio.wait_for(self.bus.consume_inbound(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                self.dispatch(msg)
        finally:
            await self._shutdown_session_workers()

    def dispatch(self, msg: InboundMessage) -> None:
        """Queue msg on its session worker; an abort word also cancels the running turn."""
        session_key = self._resolve_session_key(msg)
        if is_abort_trigger(normalize_command_mentions(msg.content).strip().lower()):
            event = self._abort_events.get(session_key)
            if event is not None:
                logger.info(f"Abort requested for in-flight turn on {session_key}")
                event.set()
        queue = self._session_queues.setdefault(session_key, asyncio.Queue())
        queue.put_nowait(msg)
        self._ensure_session_worker(session_key)

    def _ensure_session_worker(self, session_key: str) -> None:
        """Ensure a per-session worker exists so sessions can run in parallel."""
        worker = self._session_workers.get(session_key)
        if worker is None or worker.done():
            queue = self._session_queues[session_key]
            self._session_workers[session_key] = asyncio.create_task(
                self._session_worker(session_key, queue)
            )

    async def _session_worker(self, session_key: str, queue: asyncio.Queue[InboundMessage]) -> None:
        """Process one session queue serially, while other sessions run concurrently."""
        try:
            while not queue.empty():
                msg = queue.get_nowait()
                async with self._semaphore:
                    await self._process_inbound_message(msg, session_key)
        finally:
            if self._session_workers.get(session_key) is asyncio.current_task():
                self._session_workers.pop(session_key, None)
            if queue.empty():
                self._session_queues.pop(session_key, None)

    async def _process_inbound_message(self, msg: InboundMessage, session_key: str) -> None:
        """Process one inbound message and publish replies or a short error notice."""
        preview = msg.content[:80] + "..." if len(msg.content) > 80 else msg.content
        logger.info(f"Processing message from {msg.channel}:{msg.sender_id}: {preview}")

        ctx = to_message_context(msg)
        if not await self._should_respond(ctx):
            logger.debug(f"Ignoring unmentioned group message in {session_key}")
            return

        abort_event = asyncio.Event()
        self._abort_events[session_key] = abort_event

        async def _typing() -> None:
            await self._send_typing(msg)

        async def _partial(payload: ReplyPayload) -> None:
            await self._publish(msg, [payload])

        options = ReplyOptions(
            on_reply_start=_typing,
            on_partial_reply=_partial,
            on_tool_result=_partial,
            abort_event=abort_event,
        )
        try:
            result = await self.orchestrator.get_reply(ctx, options)
        except TurnAborted:
            logger.info(f"Turn for {session_key} aborted")
            return
        except Exception as e:
            logger.error(f"Error processing message: {e}")
            await self._publish(msg, [ReplyPayload(text=ERROR_REPLY)])
            return
        finally:
            if self._abort_events.get(session_key) is abort_event:
                self._abort_events.pop(session_key, None)

        payloads = reply_payloads(result)
        if not payloads:
            return
        if self.bus.has_pending_inbound_for_session(session_key) or not self._session_queue_empty(session_key):
            last = payloads[-1]
            if last.text:
                payloads[-1] = ReplyPayload(
                    text=f"Result for your previous message:\n\n{last.text}\n\n{PENDING_NOTICE}",
                    media_url=last.media_url,
                    media_urls=last.media_urls,
                )
        await self._publish(msg, payloads)

    async def _should_respond(self, ctx: MessageContext) -> bool:
        """Group chats in mention mode only answer mentions and slash commands."""
        if not ctx.is_group or ctx.was_mentioned or ctx.body.lstrip().startswith("/"):
            return True
        cfg = self.orchestrator.config
        key = resolve_session_key(cfg.session.scope, ctx, cfg.session.main_key)
        record = await self.orchestrator.store.get(key)
        activation = normalize_group_activation(record.group_activation if record else None)
        if activation is None:
            activation = "always" if cfg.routing.group_chat.require_mention is False else "mention"
        return activation == "always"

    async def _publish(self, msg: InboundMessage, payloads: list[ReplyPayload]) -> None:
        for payload in reply_payloads(payloads):
            await self.bus.publish_outbound(OutboundMessage(
                channel=msg.channel,
                chat_id=msg.chat_id,
                content=payload.text or "",
                media=list(payload.media),
                metadata=msg.metadata or {},
            ))

    async def _send_typing(self, msg: InboundMessage) -> None:
        channel = self.channels.get_channel(msg.channel) if self.channels else None
        if channel is None:
            return
        try:
            await channel.send_typing(msg.chat_id)
        except Exception as e:
            logger.debug(f"Typing indicator failed for {msg.channel}:{msg.chat_id}: {e}")

    def _session_queue_empty(self, session_key: str) -> bool:
        queue = self._session_queues.get(session_key)
        return queue is None or queue.empty()

    async def _shutdown_session_workers(self) -> None:
        """Cancel and await all active session workers."""
        workers = list(self._session_workers.values())
        self._session_workers.clear()
        self._session_queues.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def stop(self) -> None:
        """Stop the agent loop."""
        self._running = False
        logger.info("Agent loop stopping")

    @staticmethod
    def _resolve_session_key(msg: InboundMessage) -> str:
        """Queue key for msg; channels may pin one via metadata["session_key"]."""
        metadata_session_key = msg.metadata.get("session_key") if isinstance(msg.metadata, dict) else None
        if isinstance(metadata_session_key, str) and metadata_session_key:
            return metadata_session_key
        return msg.session_key
