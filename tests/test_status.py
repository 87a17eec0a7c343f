from relaybot.agent.status import (
    build_status_message,
    format_age,
    format_context_usage,
    format_tokens,
    summarize_sessions,
)
from relaybot.config.schema import AgentConfig
from relaybot.session.store import SessionRecord

NOW = 10_000_000_000


def test_format_helpers():
    assert format_age(None) == "unknown"
    assert format_age(30_000) == "just now"
    assert format_age(5 * 60_000) == "5m ago"
    assert format_age(3 * 3_600_000) == "3h ago"
    assert format_age(72 * 3_600_000) == "3d ago"
    assert format_tokens(50_000, 200_000) == "50k/200k (25%)"
    assert format_tokens(None, 200_000) == "unknown/200k"


def test_status_message_for_group_session():
    record = SessionRecord(
        session_id="sid",
        updated_at=NOW - 5 * 60_000,
        total_tokens=50_000,
        aborted_last_run=True,
        group_activation="always",
    )

    text = build_status_message(
        AgentConfig(),
        record=record,
        session_key="group:123@g.us",
        session_scope="per-sender",
        store_path="/var/relay/sessions.json",
        resolved_think="high",
        provider_summary=["telegram: running"],
        now=NOW,
    )

    lines = text.splitlines()
    assert lines[0] == "⚙️ Status"
    assert lines[1] == "Channels: telegram: running"
    assert lines[2] == "Agent: anthropic/claude-opus-4-5"
    assert lines[3] == "Context: 50k/200k (25%) • last run aborted"
    assert lines[4] == "Session: group:123@g.us • scope per-sender • updated 5m ago • store /var/relay/sessions.json"
    assert lines[5] == "Group activation: always"
    assert lines[6].startswith("Options: thinking=high | verbose=off")


def test_summarize_skips_global_and_unknown_and_sorts_recent_first():
    records = {
        "global": SessionRecord(session_id="g", updated_at=NOW),
        "unknown": SessionRecord(session_id="u", updated_at=NOW),
        "+1": SessionRecord(session_id="a", updated_at=NOW - 10, thinking_level="high"),
        "group:x": SessionRecord(session_id="b", updated_at=NOW - 5, input_tokens=10, output_tokens=5),
        "+2": SessionRecord(session_id="c", updated_at=NOW - 20),
    }

    summary = summarize_sessions(records, AgentConfig(), limit=2, now=NOW)

    assert summary["count"] == 3
    assert summary["defaults"] == {"model": "claude-opus-4-5", "contextTokens": 200_000}
    assert [s.key for s in summary["recent"]] == ["group:x", "+1"]
    assert summary["recent"][0].kind == "group"
    assert summary["recent"][0].total_tokens == 15
    assert summary["recent"][1].flags == ["think:high", "id:a"]


def test_format_context_usage():
    records = {"+1": SessionRecord(session_id="a", updated_at=NOW, total_tokens=50_000)}

    status = summarize_sessions(records, AgentConfig(), now=NOW)["recent"][0]

    assert format_context_usage(status) == "tokens: 50k used, 150k left of 200k (25%)"
