import asyncio
import json

import pytest

from relaybot.session.store import SessionRecord, SessionStore, resolve_store_path


@pytest.mark.asyncio
async def test_patch_creates_record_and_serializes_camel_case(tmp_path):
    path = tmp_path / "sessions.json"
    store = SessionStore(path)

    record = await store.patch("+15550001111", "sid-1", thinking_level="high")

    assert record.session_id == "sid-1"
    raw = json.loads(path.read_text())
    assert raw["+15550001111"]["sessionId"] == "sid-1"
    assert raw["+15550001111"]["thinkingLevel"] == "high"
    assert "verboseLevel" not in raw["+15550001111"]


@pytest.mark.asyncio
async def test_concurrent_patches_keep_each_others_fields(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    await store.patch("main", "sid", system_sent=True)

    await asyncio.gather(
        store.patch("main", "sid", thinking_level="high"),
        store.patch("main", "sid", verbose_level="on"),
        store.patch("other", "sid-2", model="m"),
    )

    record = await store.get("main")
    assert record.thinking_level == "high"
    assert record.verbose_level == "on"
    assert record.system_sent is True
    assert (await store.get("other")).model == "m"


@pytest.mark.asyncio
async def test_patch_none_clears_field_and_touch_false_keeps_timestamp(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    first = await store.patch("k", "sid", thinking_level="low")
    stamp = first.updated_at

    record = await store.patch("k", "sid", touch=False, thinking_level=None)

    assert record.thinking_level is None
    assert record.updated_at == stamp


@pytest.mark.asyncio
async def test_update_returning_none_leaves_store_untouched(tmp_path):
    path = tmp_path / "sessions.json"
    store = SessionStore(path)

    result = await store.update("k", lambda current: None)

    assert result is None
    assert not path.exists()


@pytest.mark.asyncio
async def test_unknown_keys_survive_and_malformed_records_are_dropped(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text(json.dumps({
        "good": {"sessionId": "a", "updatedAt": 1, "futureField": {"x": 1}},
        "bad": {"updatedAt": "not-a-number"},
        "junk": 5,
    }))
    store = SessionStore(path)

    records = await store.load()
    assert list(records) == ["good"]

    await store.patch("good", "a", system_sent=True)
    raw = json.loads(path.read_text())
    assert raw["good"]["futureField"] == {"x": 1}
    assert raw["good"]["systemSent"] is True


@pytest.mark.asyncio
async def test_unreadable_store_is_treated_as_empty(tmp_path):
    path = tmp_path / "sessions.json"
    path.write_text("{not json")

    assert await SessionStore(path).load() == {}


@pytest.mark.asyncio
async def test_find_by_session_id(tmp_path):
    store = SessionStore(tmp_path / "sessions.json")
    await store.patch("a", "sid-a")
    await store.patch("b", "sid-b")

    key, record = await store.find_by_session_id("sid-b")

    assert key == "b"
    assert record.session_id == "sid-b"
    assert await store.find_by_session_id("missing") is None


def test_record_accepts_snake_and_camel_case():
    a = SessionRecord.model_validate({"sessionId": "x", "updatedAt": 1, "abortedLastRun": True})
    b = SessionRecord(session_id="x", updated_at=1, aborted_last_run=True)

    assert a.to_json() == b.to_json()


def test_resolve_store_path_expands_user(tmp_path):
    assert resolve_store_path(str(tmp_path / "s.json")) == tmp_path / "s.json"
    assert resolve_store_path(None).name == "sessions.json"
    assert "~" not in str(resolve_store_path("~/x.json"))
