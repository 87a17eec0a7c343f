from relaybot.agent.models import (
    DEFAULT_CONTEXT_TOKENS,
    ModelRef,
    build_allowed_model_set,
    effective_model,
    format_model_list,
    override_changes,
    parse_model_ref,
    resolve_configured_model_ref,
    resolve_context_tokens,
    select_model,
    stored_override_is_valid,
)
from relaybot.config.schema import AgentConfig, ModelCatalogEntry
from relaybot.session.store import SessionRecord

CATALOG = [
    ModelCatalogEntry(provider="anthropic", id="claude-opus-4-5", name="Opus", context_window=200_000),
    ModelCatalogEntry(provider="openai", id="gpt-5", context_window=400_000),
]


def test_configured_model_ref_parses_provider_prefix():
    assert resolve_configured_model_ref(AgentConfig()) == ModelRef("anthropic", "claude-opus-4-5")
    assert resolve_configured_model_ref(AgentConfig(model="openai/gpt-5")) == ModelRef("openai", "gpt-5")
    assert resolve_configured_model_ref(AgentConfig(provider="openai", model="gpt-5")).key == "openai/gpt-5"


def test_parse_model_ref_rejects_half_refs():
    assert parse_model_ref("openai/", "anthropic") is None
    assert parse_model_ref("  ", "anthropic") is None
    assert parse_model_ref("gpt-5", "openai") == ModelRef("openai", "gpt-5")


def test_allow_list_is_intersected_with_catalog():
    allowed = build_allowed_model_set(["openai/gpt-5", "nope/x"], CATALOG, "anthropic")

    assert allowed.allow_any is False
    assert allowed.keys == {"openai/gpt-5"}
    assert allowed.permits("openai", "gpt-5")
    assert not allowed.permits("anthropic", "claude-opus-4-5")


def test_allow_list_matching_nothing_fails_open():
    allowed = build_allowed_model_set(["nope/x"], CATALOG, "anthropic")

    assert allowed.allow_any is True
    assert allowed.permits("openai", "gpt-5")


def test_select_model_validates_against_allow_list():
    default = ModelRef("anthropic", "claude-opus-4-5")
    allowed = build_allowed_model_set(["openai/gpt-5"], CATALOG, "anthropic")

    picked = select_model("openai/gpt-5", allowed, default)
    rejected = select_model("anthropic/claude-opus-4-5", allowed, default)

    assert picked.label == "openai/gpt-5" and not picked.is_default
    assert isinstance(rejected, str) and "not allowed" in rejected


def test_selecting_default_clears_override():
    default = ModelRef("anthropic", "claude-opus-4-5")
    allowed = build_allowed_model_set([], CATALOG, "anthropic")

    selection = select_model("claude-opus-4-5", allowed, default)

    assert selection.is_default
    assert override_changes(selection) == {"provider_override": None, "model_override": None}


def test_stored_override_round_trip_and_invalidation():
    default = ModelRef("anthropic", "claude-opus-4-5")
    record = SessionRecord(session_id="s", updated_at=1, provider_override="openai", model_override="gpt-5")
    open_set = build_allowed_model_set([], CATALOG, "anthropic")
    strict = build_allowed_model_set(["anthropic/claude-opus-4-5"], CATALOG, "anthropic")

    assert stored_override_is_valid(record, open_set, "anthropic")
    assert effective_model(record, open_set, default) == ModelRef("openai", "gpt-5")
    assert not stored_override_is_valid(record, strict, "anthropic")
    assert effective_model(record, strict, default) == default


def test_context_tokens_resolution():
    assert resolve_context_tokens(AgentConfig(model_catalog=CATALOG), "gpt-5") == 400_000
    assert resolve_context_tokens(AgentConfig(), "unknown") == DEFAULT_CONTEXT_TOKENS
    assert resolve_context_tokens(AgentConfig(context_tokens=1234, model_catalog=CATALOG), "gpt-5") == 1234


def test_format_model_list_marks_reset():
    default = ModelRef("anthropic", "claude-opus-4-5")
    allowed = build_allowed_model_set([], CATALOG, "anthropic")

    text = format_model_list(allowed, ModelRef("openai", "gpt-5"), default, reset_override=True)

    assert text.splitlines()[0] == "Models (current: openai/gpt-5, default: anthropic/claude-opus-4-5):"
    assert "(previous selection reset to default)" in text
    assert "- anthropic/claude-opus-4-5 — Opus" in text
