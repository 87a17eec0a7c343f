import json

from relaybot.config.loader import _migrate_config, load_config, save_config
from relaybot.config.schema import Config


def test_migrate_moves_legacy_inbound_section():
    data = {
        "inbound": {
            "allowFrom": ["+15550001111"],
            "session": {"scope": "global", "idleMinutes": 5},
        }
    }

    migrated = _migrate_config(data)

    assert "inbound" not in migrated
    assert migrated["routing"]["allowFrom"] == ["+15550001111"]
    assert migrated["session"] == {"scope": "global", "idleMinutes": 5}


def test_migrate_does_not_override_existing_keys():
    data = {
        "session": {"scope": "per-group"},
        "routing": {"allowFrom": ["*"]},
        "inbound": {"allowFrom": ["+1"], "session": {"scope": "global", "mainKey": "home"}},
    }

    migrated = _migrate_config(data)

    assert migrated["session"] == {"scope": "per-group", "mainKey": "home"}
    assert migrated["routing"]["allowFrom"] == ["*"]


def test_load_accepts_camel_case(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "agent": {"thinkingDefault": "low", "timeoutSeconds": 30},
        "session": {"idleMinutes": 15, "resetTriggers": ["/fresh"]},
        "routing": {"groupChat": {"requireMention": False}},
        "channels": {"telegram": {"enabled": True, "allowFrom": ["alice"]}},
    }))

    config = load_config(path)

    assert config.agent.thinking_default == "low"
    assert config.agent.timeout_seconds == 30
    assert config.session.idle_minutes == 15
    assert config.session.reset_triggers == ["/fresh"]
    assert config.routing.group_chat.require_mention is False
    assert config.channels.telegram.allow_from == ["alice"]


def test_invalid_config_falls_back_to_defaults(tmp_path):
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{nope")
    bad_value = tmp_path / "bad_value.json"
    bad_value.write_text(json.dumps({"session": {"scope": "per-planet"}}))

    assert load_config(bad_json) == Config()
    assert load_config(bad_value).session.scope == "per-sender"


def test_save_round_trips_with_camel_case(tmp_path):
    path = tmp_path / "out" / "config.json"
    config = Config()
    config.gateway.max_concurrency = 8

    save_config(config, path)

    raw = json.loads(path.read_text())
    assert raw["gateway"]["maxConcurrency"] == 8
    assert load_config(path).gateway.max_concurrency == 8
