"""Reply orchestration: turns one inbound message into zero or more reply payloads."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from relaybot.agent.abort import AbortMemory
from relaybot.agent.context import MessageContext
from relaybot.agent.directives import (
    ModelDirective,
    ThinkDirective,
    VerboseDirective,
    extract_model_directive,
    extract_think_directive,
    extract_verbose_directive,
    is_abort_trigger,
    is_restart_command,
    is_status_command,
    match_reset_trigger,
    normalize_command_mentions,
    normalize_group_activation,
    parse_activation_command,
    strip_mentions,
    strip_structural_prefixes,
)
from relaybot.agent.engine import (
    AgentEngine,
    AgentRunRequest,
    AgentRunResult,
    PayloadCallback,
    ReplyPayload,
    Transcriber,
)
from relaybot.agent.levels import normalize_think_level, normalize_verbose_level
from relaybot.agent.models import (
    AllowedModels,
    ModelRef,
    ModelSelection,
    build_allowed_model_set,
    effective_model,
    format_model_list,
    override_changes,
    resolve_configured_model_ref,
    resolve_context_tokens,
    select_model,
    stored_override_is_valid,
)
from relaybot.agent.status import build_status_message
from relaybot.agent.system_events import (
    SystemEventQueue,
    compact_system_event,
    format_system_block,
)
from relaybot.config.schema import Config
from relaybot.errors import TurnAborted, UpstreamFailure
from relaybot.session.keys import (
    DEFAULT_RESET_TRIGGERS,
    UNKNOWN_KEY,
    Fresh,
    evaluate_session,
    resolve_session,
    resolve_session_key,
)
from relaybot.session.store import SessionRecord, SessionStore, resolve_store_path
from relaybot.utils.helpers import normalize_address, now_ms

SYSTEM_MARK = "⚙️"
SILENT_REPLY_TOKEN = "NO_REPLY"

BARE_SESSION_RESET_PROMPT = (
    "A new session was started via /new or /reset. Say hi briefly (1-2 sentences) "
    "and ask what the user wants to do next. Do not mention internal steps, files, "
    "tools, or reasoning."
)
ABORTED_HINT = (
    "Note: The previous agent run was aborted by the user. "
    "Resume carefully or ask for clarification."
)
MEDIA_REPLY_HINT = (
    "To send an image back, add a line like: MEDIA:https://example.com/image.jpg "
    "(no spaces). Keep caption in the text body."
)
EMPTY_BODY_REPLY = "I didn't receive any text in your message. Please resend or add a caption."
ABORT_REPLY = f"{SYSTEM_MARK} Agent was aborted."

ReplyResult = ReplyPayload | list[ReplyPayload] | None


@dataclass
class ReplyOptions:
    """Per-call hooks supplied by the channel that received the message."""

    on_reply_start: Callable[[], Awaitable[None]] | None = None
    on_partial_reply: PayloadCallback | None = None
    on_tool_result: PayloadCallback | None = None
    abort_event: asyncio.Event | None = None
    session_id: str | None = None


class TypingController:
    """Fires on_reply_start once, then keeps re-firing it on an interval until stopped."""

    def __init__(self, on_reply_start: Callable[[], Awaitable[None]] | None, interval_seconds: float):
        self._callback = on_reply_start
        self._interval = interval_seconds
        self._started = False
        self._task: asyncio.Task[None] | None = None

    async def trigger_once(self) -> None:
        if self._started or not self._callback:
            return
        self._started = True
        await self._callback()

    async def start(self) -> None:
        if not self._callback or self._interval <= 0 or self._task:
            return
        await self.trigger_once()
        self._task = asyncio.create_task(self._loop())

    async def start_on_text(self, text: str | None) -> None:
        trimmed = (text or "").strip()
        if not trimmed or trimmed == SILENT_REPLY_TOKEN:
            return
        await self.start()

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._callback()
            except Exception as e:
                logger.debug(f"Typing indicator failed: {e}")

    def stop(self) -> None:
        if self._task:
            self._task.cancel()
            self._task = None


@dataclass
class Terminal:
    """A rule's final answer for the turn; payload None means stay silent."""

    payload: ReplyPayload | None


@dataclass
class _Turn:
    ctx: MessageContext
    options: ReplyOptions
    body: str
    is_group: bool
    key: str
    session_id: str
    is_new: bool
    record: SessionRecord | None
    typing: TypingController
    think: ThinkDirective
    verbose: VerboseDirective
    model_directive: ModelDirective
    default_model: ModelRef
    model: ModelRef
    allowed: AllowedModels
    force_new: bool = False
    command_body: str = ""
    raw_normalized: str = ""
    sender_e164: str = ""
    owners: list[str] = field(default_factory=list)
    transcript: str | None = None
    reset_override: bool = False
    context_tokens: int = 0
    think_level: str | None = None
    verbose_level: str | None = None
    aborted_last_run: bool = False


class ReplyOrchestrator:
    """
    Runs the reply flow for inbound messages.

    One instance is shared by every channel. Store writes are per-key
    read-modify-write; at most one engine delegation runs per session key.
    """

    def __init__(
        self,
        config: Config,
        engine: AgentEngine,
        store: SessionStore | None = None,
        *,
        transcriber: Transcriber | None = None,
        system_events: SystemEventQueue | None = None,
        abort_memory: AbortMemory | None = None,
        provider_summary: Callable[[], list[str]] | None = None,
        restart_hook: Callable[[], Any] | None = None,
        skills_loader: Callable[[Path], Any] | None = None,
    ):
        self.config = config
        self.engine = engine
        self.store = store or SessionStore(resolve_store_path(config.session.store))
        self.transcriber = transcriber
        self.system_events = system_events or SystemEventQueue()
        self.abort_memory = abort_memory or AbortMemory()
        self.provider_summary = provider_summary
        self.restart_hook = restart_hook
        self.skills_loader = skills_loader
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self._rules: list[tuple[str, Callable[[_Turn], Awaitable[Terminal | None]]]] = [
            ("activation", self._rule_activation),
            ("restart", self._rule_restart),
            ("status", self._rule_status),
            ("abort", self._rule_abort),
        ]

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    async def get_reply(self, ctx: MessageContext, options: ReplyOptions | None = None) -> ReplyResult:
        """
        Process one inbound message.

        Returns a single payload, an ordered list of payloads, or None when
        the turn produces no visible reply. Engine failures propagate after
        any state already written has been committed.
        """
        options = options or ReplyOptions()
        agent_cfg = self.config.agent
        typing = TypingController(options.on_reply_start, agent_cfg.typing_interval_seconds)
        try:
            return await self._get_reply(ctx, options, typing)
        finally:
            typing.stop()

    async def _get_reply(self, ctx: MessageContext, options: ReplyOptions, typing: TypingController) -> ReplyResult:
        cfg = self.config
        body = normalize_command_mentions(ctx.body or "")
        transcript = await self._transcribe(ctx)
        if transcript:
            body = transcript

        is_group = ctx.is_group
        if not self._is_sender_allowed(ctx, is_group):
            return None

        raw_normalized = strip_structural_prefixes(body).lower()
        command_body = self._strip_mentions(raw_normalized, ctx) if is_group else raw_normalized
        sender_e164 = normalize_address(ctx.sender_e164)
        owners = self._owner_list(ctx)
        if is_group and not (sender_e164 and sender_e164 in owners):
            command = self._privileged_command(command_body)
            if command:
                logger.debug(f"Ignoring {command} from non-owner in group: {sender_e164 or '<unknown>'}")
                return None

        structural = strip_structural_prefixes(body)
        reset_candidates = [body.strip(), self._strip_mentions(structural, ctx) if is_group else structural]
        reset = match_reset_trigger(
            reset_candidates,
            cfg.session.reset_triggers or list(DEFAULT_RESET_TRIGGERS),
        )

        key = resolve_session_key(cfg.session.scope, ctx, cfg.session.main_key)
        resolution = await resolve_session(
            self.store,
            key,
            now_ms=now_ms(),
            idle_minutes=cfg.session.idle_minutes,
            explicit_session_id=options.session_id,
            force_new=reset.matched,
        )
        if reset.matched and resolution.base is None:
            logger.info(f"Session reset for {key}: new session {resolution.session_id}")

        think = extract_think_directive(reset.remainder if reset.matched else body)
        verbose = extract_verbose_directive(think.cleaned)
        model_directive = extract_model_directive(verbose.cleaned)
        default_model = resolve_configured_model_ref(cfg.agent)
        turn = _Turn(
            ctx=ctx,
            options=options,
            body=model_directive.cleaned,
            is_group=is_group,
            key=resolution.key or key,
            session_id=resolution.session_id,
            is_new=resolution.is_new,
            record=None,
            typing=typing,
            think=think,
            verbose=verbose,
            model_directive=model_directive,
            default_model=default_model,
            model=default_model,
            allowed=build_allowed_model_set(
                cfg.agent.allowed_models,
                cfg.agent.model_catalog,
                default_model.provider,
            ),
            force_new=reset.matched,
            command_body=command_body,
            raw_normalized=raw_normalized,
            sender_e164=sender_e164,
            owners=owners,
            transcript=transcript,
        )

        # A bare abort word for a conversation without a live session does not start one.
        if is_abort_trigger(raw_normalized) and resolution.base is None and not options.session_id:
            turn.aborted_last_run = self.abort_memory.get(self._abort_key(turn))
        else:
            await self._open_session(turn, resolution.base)

        terminal = await self._apply_directives(turn)
        if terminal:
            return terminal.payload

        for name, rule in self._rules:
            terminal = await rule(turn)
            if terminal:
                logger.debug(f"Turn for {turn.key} answered by {name} rule")
                return terminal.payload

        return await self._run_agent_turn(turn)

    # ------------------------------------------------------------------
    # session bookkeeping
    # ------------------------------------------------------------------

    async def _open_session(self, turn: _Turn, base: SessionRecord | None) -> None:
        """Create or refresh the record for the turn, merging with what is stored now."""
        ctx = turn.ctx
        abort_key = self._abort_key(turn)
        remembered_abort = self.abort_memory.get(abort_key) if base is None else False
        idle_minutes = self.config.session.idle_minutes

        def _mutate(current: SessionRecord | None) -> SessionRecord:
            stamp = now_ms()
            # Another turn for this key may have opened or reset the session since it was resolved.
            if (
                current is not None
                and not turn.force_new
                and not turn.options.session_id
                and isinstance(evaluate_session(current, stamp, idle_minutes), Fresh)
            ):
                turn.session_id = current.session_id
                turn.is_new = False
            if turn.is_new:
                record = SessionRecord(
                    session_id=turn.session_id,
                    updated_at=stamp,
                    system_sent=False,
                    aborted_last_run=remembered_abort,
                )
                # Delivery targets and group settings outlive a session reset.
                if current is not None:
                    record.group_activation = current.group_activation
                    record.last_channel = current.last_channel
                    record.last_to = current.last_to
            else:
                record = current or (base.model_copy(deep=True) if base else None)
                if record is None:
                    record = SessionRecord(session_id=turn.session_id, updated_at=stamp)
                record.session_id = turn.session_id
                record.updated_at = stamp
                if remembered_abort:
                    record.aborted_last_run = True
            if ctx.channel:
                record.last_channel = ctx.channel
            target = ctx.delivery_target
            if target and not turn.is_group:
                record.last_to = target
            return record

        turn.record = await self.store.update(turn.key, _mutate)
        if remembered_abort:
            self.abort_memory.set(abort_key, False)
        turn.aborted_last_run = bool(turn.record and turn.record.aborted_last_run)

    def turn_lock(self, key: str) -> asyncio.Lock:
        """Lock held while an engine run is in flight for key; shared with cron turns."""
        return self._turn_locks.setdefault(key, asyncio.Lock())

    async def _patch(self, turn: _Turn, *, touch: bool = True, **changes: Any) -> None:
        if turn.record is None:
            return
        turn.record = await self.store.patch(turn.key, turn.session_id, touch=touch, **changes)

    def _abort_key(self, turn: _Turn) -> str | None:
        if turn.key and turn.key != UNKNOWN_KEY:
            return turn.key
        return normalize_address(turn.ctx.sender) or normalize_address(turn.ctx.recipient) or None

    # ------------------------------------------------------------------
    # access control
    # ------------------------------------------------------------------

    @staticmethod
    def _strip_whatsapp(address: str | None) -> str:
        value = (address or "").strip()
        if value.lower().startswith("whatsapp:"):
            value = value[len("whatsapp:"):]
        return value

    def _effective_allow_from(self, ctx: MessageContext) -> list[str]:
        configured = [entry for entry in self.config.routing.allow_from if entry]
        if configured:
            return configured
        to = self._strip_whatsapp(ctx.recipient)
        # Without configuration only the account owner may talk to the bot.
        return [to] if to else []

    def _is_sender_allowed(self, ctx: MessageContext, is_group: bool) -> bool:
        sender = self._strip_whatsapp(ctx.sender)
        recipient = self._strip_whatsapp(ctx.recipient)
        if sender and recipient and sender == recipient:
            logger.debug(f"Allowing self-chat from {sender}")
            return True
        if is_group:
            return True
        allow_from = self._effective_allow_from(ctx)
        if not allow_from or "*" in allow_from:
            return True
        wanted = normalize_address(sender)
        if any(normalize_address(entry) == wanted for entry in allow_from):
            return True
        logger.debug(f"Skipping reply: sender {sender or '<unknown>'} not in allowFrom list")
        return False

    def _owner_list(self, ctx: MessageContext) -> list[str]:
        candidates = [entry for entry in self._effective_allow_from(ctx) if entry != "*"]
        if not candidates and ctx.recipient:
            candidates = [self._strip_whatsapp(ctx.recipient)]
        return [owner for owner in (normalize_address(c) for c in candidates) if owner]

    @staticmethod
    def _privileged_command(command_body: str) -> str | None:
        """Name of an owner-only group command in command_body, if any."""
        if parse_activation_command(command_body).has_command:
            return "/activation"
        if is_restart_command(command_body):
            return "/restart"
        if is_status_command(command_body):
            return "/status"
        return None

    def _strip_mentions(self, text: str, ctx: MessageContext) -> str:
        return strip_mentions(
            text,
            mention_patterns=self.config.routing.group_chat.mention_patterns,
            self_address=ctx.recipient,
        )

    async def _transcribe(self, ctx: MessageContext) -> str | None:
        if not self.config.routing.transcribe_audio or not self.transcriber:
            return None
        if not (ctx.media_type or "").lower().startswith("audio"):
            return None
        text = await self.transcriber.transcribe(ctx)
        if text:
            ctx.transcript = text
            logger.debug("Replaced message body with audio transcript")
        return text or None

    # ------------------------------------------------------------------
    # directives and model policy
    # ------------------------------------------------------------------

    async def _apply_directives(self, turn: _Turn) -> Terminal | None:
        agent_cfg = self.config.agent
        record = turn.record
        if record and not stored_override_is_valid(record, turn.allowed, turn.default_model.provider):
            logger.warning(
                f"Clearing disallowed model override {record.provider_override}/{record.model_override} "
                f"for {turn.key}"
            )
            await self._patch(turn, provider_override=None, model_override=None)
            turn.reset_override = True
        turn.model = effective_model(turn.record, turn.allowed, turn.default_model)
        turn.context_tokens = resolve_context_tokens(agent_cfg, turn.model.model)

        turn.think_level = (
            turn.think.level
            or normalize_think_level(turn.record.thinking_level if turn.record else None)
            or agent_cfg.thinking_default
        )
        turn.verbose_level = (
            turn.verbose.level
            or normalize_verbose_level(turn.record.verbose_level if turn.record else None)
            or agent_cfg.verbose_default
        )

        if turn.think.is_invalid:
            return Terminal(ReplyPayload(
                text=f'Unrecognized thinking level "{turn.think.raw}". '
                "Valid levels: off, minimal, low, medium, high."
            ))
        if turn.verbose.is_invalid:
            return Terminal(ReplyPayload(
                text=f'Unrecognized verbose level "{turn.verbose.raw}". Valid levels: off, on.'
            ))

        has_any = turn.think.has_directive or turn.verbose.has_directive or turn.model_directive.has_directive
        if not has_any:
            return None
        if self._is_directive_only(turn):
            return await self._answer_directives(turn)
        await self._persist_inline_directives(turn)
        return None

    def _is_directive_only(self, turn: _Turn) -> bool:
        remaining = strip_structural_prefixes(turn.body)
        if turn.is_group:
            remaining = self._strip_mentions(remaining, turn.ctx)
        return not remaining

    async def _answer_directives(self, turn: _Turn) -> Terminal:
        think, verbose, model_dir = turn.think, turn.verbose, turn.model_directive

        if model_dir.has_directive and not model_dir.raw:
            text = format_model_list(turn.allowed, turn.model, turn.default_model, turn.reset_override)
            return Terminal(ReplyPayload(text=text))

        # A bare keyword reports the current level.
        if think.has_directive and not think.raw and not verbose.has_directive and not model_dir.has_directive:
            return Terminal(ReplyPayload(
                text=f"Current thinking level: {turn.think_level or 'off'}. "
                "Options: off, minimal, low, medium, high."
            ))
        if verbose.has_directive and not verbose.raw and not think.has_directive and not model_dir.has_directive:
            return Terminal(ReplyPayload(
                text=f"Current verbose level: {turn.verbose_level or 'off'}. Options: on, off."
            ))

        selection: ModelSelection | None = None
        if model_dir.raw:
            picked = select_model(model_dir.raw, turn.allowed, turn.default_model)
            if isinstance(picked, str):
                return Terminal(ReplyPayload(text=picked))
            selection = picked

        changes = self._directive_changes(turn, selection)
        if changes:
            await self._patch(turn, **changes)

        parts: list[str] = []
        if think.level:
            parts.append("Thinking disabled." if think.level == "off" else f"Thinking level set to {think.level}.")
        if verbose.level:
            state = "disabled" if verbose.level == "off" else "enabled"
            parts.append(f"{SYSTEM_MARK} Verbose logging {state}.")
        if selection:
            parts.append(
                f"Model reset to default ({selection.label})."
                if selection.is_default
                else f"Model set to {selection.label}."
            )
        logger.info(f"Directive-only turn for {turn.key}: {changes or 'no changes'}")
        return Terminal(ReplyPayload(text=" ".join(parts).strip() or "OK."))

    @staticmethod
    def _directive_changes(turn: _Turn, selection: ModelSelection | None) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if turn.think.level:
            changes["thinking_level"] = None if turn.think.level == "off" else turn.think.level
        if turn.verbose.level:
            changes["verbose_level"] = None if turn.verbose.level == "off" else turn.verbose.level
        if selection:
            changes.update(override_changes(selection))
        return changes

    async def _persist_inline_directives(self, turn: _Turn) -> None:
        selection: ModelSelection | None = None
        raw_model = turn.model_directive.raw
        if raw_model:
            picked = select_model(raw_model, turn.allowed, turn.default_model)
            if isinstance(picked, str):
                logger.debug(f"Ignoring inline model directive for {turn.key}: {picked}")
            else:
                selection = picked
                turn.model = ModelRef(picked.provider, picked.model)
                turn.context_tokens = resolve_context_tokens(self.config.agent, picked.model)
        changes = self._directive_changes(turn, selection)
        if changes:
            await self._patch(turn, **changes)

    # ------------------------------------------------------------------
    # command rules, evaluated in order
    # ------------------------------------------------------------------

    async def _rule_activation(self, turn: _Turn) -> Terminal | None:
        command = parse_activation_command(turn.command_body)
        if not command.has_command:
            return None
        if not turn.is_group:
            return Terminal(ReplyPayload(text=f"{SYSTEM_MARK} Group activation only applies to group chats."))
        if not command.mode:
            return Terminal(ReplyPayload(text=f"{SYSTEM_MARK} Usage: /activation mention|always"))
        await self._patch(turn, group_activation=command.mode, group_activation_needs_system_intro=True)
        return Terminal(ReplyPayload(text=f"{SYSTEM_MARK} Group activation set to {command.mode}."))

    async def _rule_restart(self, turn: _Turn) -> Terminal | None:
        if not is_restart_command(turn.command_body):
            return None
        if not self.restart_hook:
            return Terminal(ReplyPayload(text=f"{SYSTEM_MARK} Restart is not available here."))
        logger.info(f"Restart requested from {turn.key}")
        result = self.restart_hook()
        if asyncio.iscoroutine(result):
            await result
        return Terminal(ReplyPayload(
            text=f"{SYSTEM_MARK} Restarting relaybot; give me a few seconds to come back online."
        ))

    async def _rule_status(self, turn: _Turn) -> Terminal | None:
        if not is_status_command(turn.command_body):
            return None
        text = build_status_message(
            self.config.agent,
            record=turn.record,
            session_key=turn.key,
            session_scope=self.config.session.scope,
            store_path=self.store.path,
            workspace=self.config.workspace_path,
            provider=turn.model.provider,
            model=turn.model.model,
            context_tokens=turn.context_tokens,
            resolved_think=turn.think_level,
            resolved_verbose=turn.verbose_level,
            provider_summary=self.provider_summary() if self.provider_summary else None,
        )
        return Terminal(ReplyPayload(text=text))

    async def _rule_abort(self, turn: _Turn) -> Terminal | None:
        if not is_abort_trigger(turn.raw_normalized):
            return None
        if turn.record is not None:
            await self._patch(turn, aborted_last_run=True)
        else:
            self.abort_memory.set(self._abort_key(turn), True)
        logger.info(f"Abort requested for {turn.key}")
        return Terminal(ReplyPayload(text=ABORT_REPLY))

    # ------------------------------------------------------------------
    # prompt assembly and delegation
    # ------------------------------------------------------------------

    def _group_intro(self, turn: _Turn) -> str:
        record = turn.record
        require_mention = self.config.routing.group_chat.require_mention
        activation = (
            normalize_group_activation(record.group_activation if record else None)
            or ("always" if require_mention is False else "mention")
        )
        subject = (turn.ctx.group_subject or "").strip()
        members = (turn.ctx.group_members or "").strip()
        lines = [
            f'You are replying inside the group "{subject}".' if subject else "You are replying inside a group chat.",
        ]
        if members:
            lines.append(f"Group members: {members}.")
        if activation == "always":
            lines.append("Activation: always-on (you receive every group message).")
            lines.append(
                f'If no response is needed, reply with exactly "{SILENT_REPLY_TOKEN}" '
                "(no other text) so the bot stays silent."
            )
            lines.append(
                "Be extremely selective: reply only when you are directly addressed, asked a question, "
                "or can add clear value. Otherwise stay silent."
            )
        else:
            lines.append(
                "Activation: trigger-only (you are invoked only when explicitly mentioned; "
                "recent context may be included)."
            )
        return " ".join(lines) + " Address the specific sender noted in the message context."

    def _media_note(self, ctx: MessageContext) -> str | None:
        if not ctx.media_path:
            return None
        kind = f" ({ctx.media_type})" if ctx.media_type else ""
        url = f" | {ctx.media_url}" if ctx.media_url else ""
        return f"[media attached: {ctx.media_path}{kind}{url}]"

    def _decorate(self, turn: _Turn, text: str) -> str:
        """Append the transcript and prepend the media note to text."""
        if turn.transcript:
            text = "\n\n".join(part for part in (text, f"Transcript:\n{turn.transcript}") if part)
        note = self._media_note(turn.ctx)
        if note:
            text = "\n".join(part for part in (note, MEDIA_REPLY_HINT, text) if part).strip()
        return text

    async def _run_agent_turn(self, turn: _Turn) -> ReplyResult:
        cfg = self.config
        ctx = turn.ctx
        record = turn.record
        system_sent = bool(record and record.system_sent)
        is_first_turn = turn.is_new or not system_sent
        should_inject_intro = turn.is_group and (
            is_first_turn or bool(record and record.group_activation_needs_system_intro)
        )
        group_intro = self._group_intro(turn) if should_inject_intro else ""

        base_body = turn.body
        is_bare_reset = turn.is_new and not base_body.strip() and bool((ctx.body or "").strip())
        if is_bare_reset:
            base_body = BARE_SESSION_RESET_PROMPT
        if not base_body.strip():
            await turn.typing.trigger_once()
            logger.debug(f"Inbound body empty after normalization for {turn.key}; skipping agent run")
            return ReplyPayload(text=EMPTY_BODY_REPLY)

        prompt = base_body
        if turn.aborted_last_run:
            prompt = f"{ABORTED_HINT}\n\n{prompt}"
            if turn.record is not None:
                await self._patch(turn, aborted_last_run=False)
            else:
                self.abort_memory.set(self._abort_key(turn), False)

        is_main_session = not turn.is_group and turn.key == (cfg.session.main_key or "main")
        if is_main_session:
            lines = [line for line in map(compact_system_event, self.system_events.drain()) if line]
            if turn.is_new and self.provider_summary:
                lines = list(self.provider_summary()) + lines
            if lines:
                prompt = f"{format_system_block(lines)}\n\n{prompt}"

        skills_snapshot = record.skills_snapshot if record else None
        if turn.record is not None:
            if is_first_turn:
                changes: dict[str, Any] = {"system_sent": True}
                if self.skills_loader:
                    skills_snapshot = self.skills_loader(cfg.workspace_path)
                    changes["skills_snapshot"] = skills_snapshot
                await self._patch(turn, **changes)
            elif skills_snapshot is None and self.skills_loader:
                skills_snapshot = self.skills_loader(cfg.workspace_path)
                await self._patch(turn, skills_snapshot=skills_snapshot)

        prompt = self._decorate(turn, prompt)
        queued_body = self._decorate(turn, base_body)

        think_level = turn.think_level
        # A leftover leading level word (e.g. "high what is ...") sets the level for this turn.
        if not think_level and prompt:
            head, _, rest = prompt.partition(" ")
            maybe = normalize_think_level(head)
            if maybe:
                think_level = maybe
                prompt = rest.strip()

        if self.engine.queue_message(turn.session_id, queued_body):
            logger.info(f"Queued message into running turn for {turn.key}")
            await self._patch(turn)
            return None

        async with self.turn_lock(turn.key):
            if not ctx.is_group or ctx.was_mentioned:
                await turn.typing.start()
            result = await self._delegate(turn, prompt, think_level, group_intro or None, skills_snapshot)

        return await self._finish_turn(turn, result, should_inject_intro)

    async def _delegate(
        self,
        turn: _Turn,
        prompt: str,
        think_level: str | None,
        extra_system_prompt: str | None,
        skills_snapshot: Any,
    ) -> AgentRunResult:
        agent_cfg = self.config.agent
        timeout_s = max(agent_cfg.timeout_seconds, 1)
        options = turn.options

        async def _on_partial(payload: ReplyPayload) -> None:
            await turn.typing.start_on_text(payload.text)
            if options.on_partial_reply:
                await options.on_partial_reply(payload)

        async def _on_tool(payload: ReplyPayload) -> None:
            await turn.typing.start_on_text(payload.text)
            if options.on_tool_result:
                await options.on_tool_result(payload)

        async def _should_emit_tool_result() -> bool:
            # The level may change mid-run via another message, so re-read it.
            stored = await self.store.get(turn.key)
            current = normalize_verbose_level(stored.verbose_level if stored else None)
            if current:
                return current == "on"
            return turn.verbose_level == "on"

        request = AgentRunRequest(
            session_id=turn.session_id,
            session_key=turn.key,
            prompt=prompt,
            provider=turn.model.provider,
            model=turn.model.model,
            timeout_ms=timeout_s * 1000,
            think_level=think_level,
            verbose_level=turn.verbose_level,
            extra_system_prompt=extra_system_prompt,
            skills_snapshot=skills_snapshot,
            workspace=str(self.config.workspace_path),
            owner_numbers=turn.owners or None,
            on_partial_reply=_on_partial if options.on_partial_reply else None,
            on_tool_result=_on_tool if options.on_tool_result else None,
            should_emit_tool_result=_should_emit_tool_result,
        )

        preview = prompt[:80] + "..." if len(prompt) > 80 else prompt
        logger.info(f"Agent turn for {turn.key} ({turn.model.key}): {preview}")

        run_task = asyncio.create_task(self.engine.run(request))
        waiters: set[asyncio.Future[Any]] = {run_task}
        abort_task: asyncio.Task[Any] | None = None
        if options.abort_event is not None:
            abort_task = asyncio.create_task(options.abort_event.wait())
            waiters.add(abort_task)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout_s, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            run_task.cancel()
            raise
        finally:
            if abort_task is not None:
                abort_task.cancel()

        if run_task in done:
            return run_task.result()

        run_task.cancel()
        await asyncio.gather(run_task, return_exceptions=True)
        if options.abort_event is not None and options.abort_event.is_set():
            logger.info(f"Agent turn for {turn.key} cancelled")
            await self._patch(turn, aborted_last_run=True)
            raise TurnAborted(turn.session_id)
        raise UpstreamFailure(f"Agent run timed out after {timeout_s}s")

    async def _finish_turn(self, turn: _Turn, result: AgentRunResult, intro_injected: bool) -> ReplyResult:
        if intro_injected and turn.record and turn.record.group_activation_needs_system_intro:
            await self._patch(turn, group_activation_needs_system_intro=False)

        payloads = list(result.payloads or [])
        if not payloads:
            return None
        if any(
            ((p.text or "").strip() and (p.text or "").strip() != SILENT_REPLY_TOKEN) or p.media
            for p in payloads
        ):
            await turn.typing.start()

        if turn.record is not None:
            meta = result.agent_meta
            model_used = (meta.model if meta else None) or turn.model.model
            context_tokens = resolve_context_tokens(self.config.agent, model_used)
            usage = meta.usage if meta else None
            if usage:
                await self._patch(
                    turn,
                    input_tokens=usage.input or 0,
                    output_tokens=usage.output or 0,
                    total_tokens=usage.total_tokens(),
                    model=model_used,
                    context_tokens=context_tokens,
                )
            else:
                await self._patch(turn, touch=False, model=model_used, context_tokens=context_tokens)

        preview_text = payloads[0].text or ""
        preview = preview_text[:120] + "..." if len(preview_text) > 120 else preview_text
        logger.info(f"Response for {turn.key}: {preview}")

        if turn.verbose_level == "on" and turn.is_new:
            payloads = [ReplyPayload(text=f"🧭 New session: {turn.session_id}"), *payloads]
        return payloads[0] if len(payloads) == 1 else payloads
