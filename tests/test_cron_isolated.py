import asyncio

import pytest

from conftest import FakeChannel
from relaybot.agent.context import MessageContext
from relaybot.agent.reply import ReplyOrchestrator
from relaybot.config.schema import Config
from relaybot.cron.isolated import SUMMARY_LIMIT, resolve_delivery_target, run_cron_agent_turn
from relaybot.cron.types import AgentTurnPayload, CronJob
from relaybot.session.store import SessionRecord

CRON_KEY = "cron:j1"


def _job(**payload) -> CronJob:
    return CronJob(id="j1", name="Daily", payload=AgentTurnPayload(message="report", **payload))


@pytest.mark.asyncio
async def test_cron_turn_runs_in_its_own_session(config, engine, store):
    result = await run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store)

    assert result.status == "ok"
    assert result.summary == "echo: [cron:j1 Daily] report"
    request = engine.requests[0]
    assert request.prompt == "[cron:j1 Daily] report"
    assert request.lane == "cron"
    assert request.session_key == CRON_KEY
    record = await store.get(CRON_KEY)
    assert record.system_sent is True
    assert record.total_tokens == 100


@pytest.mark.asyncio
async def test_fresh_cron_session_is_reused(config, engine, store):
    await run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store)
    await run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store)

    assert engine.requests[0].session_id == engine.requests[1].session_id


@pytest.mark.asyncio
async def test_summary_is_truncated(config, engine, store):
    engine.replies.append("x" * (SUMMARY_LIMIT + 500))

    result = await run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store)

    assert len(result.summary) == SUMMARY_LIMIT + 1
    assert result.summary.endswith("…")


@pytest.mark.asyncio
async def test_delivers_to_last_channel(config, engine, store):
    await store.patch("main", "main-sid", last_channel="telegram", last_to="999")
    telegram = FakeChannel("telegram")

    result = await run_cron_agent_turn(
        config, engine, _job(deliver=True), "report", CRON_KEY,
        store=store, channels={"telegram": telegram},
    )

    assert result.status == "ok"
    assert telegram.sent == [("999", "echo: [cron:j1 Daily] report", None)]


@pytest.mark.asyncio
async def test_missing_whatsapp_recipient(config, engine, store):
    failed = await run_cron_agent_turn(config, engine, _job(deliver=True), "report", CRON_KEY, store=store)
    skipped = await run_cron_agent_turn(
        config, engine, _job(deliver=True, best_effort_deliver=True), "report", CRON_KEY, store=store
    )

    assert failed.status == "error"
    assert failed.error == "Cron delivery to WhatsApp requires a recipient."
    assert skipped.status == "skipped"
    assert skipped.summary == "Delivery skipped (no WhatsApp recipient)."


@pytest.mark.asyncio
async def test_engine_failure_is_reported(config, engine, store):
    engine.error = RuntimeError("boom")

    result = await run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store)

    assert result.status == "error"
    assert result.error == "boom"


@pytest.mark.asyncio
async def test_cron_turn_waits_for_shared_lock(config, engine, store):
    lock = asyncio.Lock()
    await lock.acquire()

    task = asyncio.create_task(
        run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store, turn_lock=lock)
    )
    await asyncio.sleep(0.05)
    assert engine.requests == []

    lock.release()
    result = await task
    assert result.status == "ok"


def test_whatsapp_target_is_forced_onto_allow_list():
    config = Config.model_validate({"routing": {"allowFrom": ["+15550001111"]}})

    assert resolve_delivery_target(config, None, "whatsapp", "+15559999999") == ("whatsapp", "+15550001111")
    assert resolve_delivery_target(config, None, "whatsapp", "+1 555 000 1111") == ("whatsapp", "+15550001111")
    assert resolve_delivery_target(config, None, "whatsapp", None) == ("whatsapp", "+15550001111")


def test_last_channel_never_picks_webchat(config):
    main = SessionRecord(session_id="m", updated_at=1, last_channel="webchat", last_to="abc")

    assert resolve_delivery_target(config, main, "last", None) == ("whatsapp", "abc")
    assert resolve_delivery_target(config, main, "telegram", "42") == ("telegram", "42")


@pytest.mark.asyncio
async def test_concurrent_cron_turns_share_one_session(config, engine, store):
    results = await asyncio.gather(
        run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store),
        run_cron_agent_turn(config, engine, _job(), "report", CRON_KEY, store=store),
    )

    assert [result.status for result in results] == ["ok", "ok"]
    record = await store.get(CRON_KEY)
    assert {request.session_id for request in engine.requests} == {record.session_id}



def _inbound(body: str) -> MessageContext:
    return MessageContext(body=body, sender="+15550001111", recipient="+15559990000", channel="whatsapp")


@pytest.mark.asyncio
async def test_cron_and_interactive_turns_on_same_key_share_one_session(config, engine, store):
    key = "+15550001111"
    orchestrator = ReplyOrchestrator(config, engine, store)

    directive_reply, reply, result = await asyncio.gather(
        orchestrator.get_reply(_inbound("/think high")),
        orchestrator.get_reply(_inbound("hello")),
        run_cron_agent_turn(
            config, engine, _job(), "report", key, store=store, turn_lock=orchestrator.turn_lock(key)
        ),
    )

    assert directive_reply.text == "Thinking level set to high."
    assert reply.text == "echo: hello"
    assert result.status == "ok"
    assert len(engine.requests) == 2
    record = await store.get(key)
    assert {request.session_id for request in engine.requests} == {record.session_id}
    assert record.thinking_level == "high"
    assert record.system_sent is True
