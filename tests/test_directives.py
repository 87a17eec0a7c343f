import pytest

from relaybot.agent.directives import (
    extract_model_directive,
    extract_think_directive,
    extract_verbose_directive,
    is_abort_trigger,
    is_restart_command,
    is_status_command,
    match_reset_trigger,
    normalize_command_mentions,
    parse_activation_command,
    strip_mentions,
    strip_structural_prefixes,
)
from relaybot.agent.levels import normalize_think_level, normalize_verbose_level


@pytest.mark.parametrize(
    "body,level,cleaned",
    [
        ("/think high explain this", "high", "explain this"),
        ("/think:medium please", "medium", "please"),
        ("/t low", "low", ""),
        ("/thinking max go", "high", "go"),
        ("please /think minimal now", "minimal", "please now"),
    ],
)
def test_think_directive_levels(body, level, cleaned):
    directive = extract_think_directive(body)

    assert directive.has_directive
    assert directive.level == level
    assert directive.cleaned == cleaned


def test_think_extraction_is_idempotent():
    once = extract_think_directive("/think high do it /t low")
    twice = extract_think_directive(once.cleaned)

    assert once.cleaned == "do it"
    assert twice.has_directive is False
    assert twice.cleaned == once.cleaned


def test_words_starting_with_t_are_not_think_directives():
    directive = extract_think_directive("/tomorrow we ship")

    assert directive.has_directive is False
    assert directive.cleaned == "/tomorrow we ship"


def test_bare_and_invalid_think_directives():
    bare = extract_think_directive("/think")
    invalid = extract_think_directive("/think banana")

    assert bare.has_directive and bare.raw is None and not bare.is_invalid
    assert invalid.is_invalid
    assert invalid.raw == "banana"


def test_verbose_directive():
    on = extract_verbose_directive("/v on hello")
    invalid = extract_verbose_directive("/verbose maybe")

    assert on.level == "on"
    assert on.cleaned == "hello"
    assert invalid.is_invalid


def test_model_directive_with_provider():
    directive = extract_model_directive("/model openai/gpt-5 hi there")

    assert directive.has_directive
    assert directive.raw == "openai/gpt-5"
    assert directive.cleaned == "hi there"
    assert extract_model_directive("/model").raw is None


def test_level_aliases():
    assert normalize_think_level("ULTRA") == "high"
    assert normalize_think_level("mid") == "medium"
    assert normalize_think_level("bogus") is None
    assert normalize_verbose_level("yes") == "on"
    assert normalize_verbose_level("0") == "off"


def test_command_mentions_and_structural_prefixes():
    assert normalize_command_mentions("/status@relay_bot") == "/status"
    assert strip_structural_prefixes("[Jan 1 10:00] Alice: /status") == "/status"
    assert (
        strip_structural_prefixes("history\n[Current message - respond to this] Bob: stop")
        == "stop"
    )


def test_strip_mentions_skips_invalid_patterns():
    text = strip_mentions(
        "@relay (bad /status",
        mention_patterns=["(", r"@relay\b"],
        self_address="whatsapp:+15559990000",
    )

    assert text == "(bad /status"
    assert strip_mentions("@15559990000 hi", self_address="+15559990000") == "hi"


def test_abort_status_restart_activation():
    assert is_abort_trigger("  STOP ")
    assert not is_abort_trigger("stop now")
    assert is_status_command("/status")
    assert is_status_command("status")
    assert not is_status_command("/statusbar")
    assert is_restart_command("/restart now")

    always = parse_activation_command("/activation always")
    bare = parse_activation_command("/activation")
    assert always.has_command and always.mode == "always"
    assert bare.has_command and bare.mode is None
    assert not parse_activation_command("activation always").has_command


def test_reset_trigger_full_and_prefix_match():
    full = match_reset_trigger(["/NEW"], ["/new", "/reset"])
    prefixed = match_reset_trigger(["/reset Hello There"], ["/new", "/reset"])
    miss = match_reset_trigger(["/newer things"], ["/new"])

    assert full.matched and full.remainder == ""
    assert prefixed.matched and prefixed.remainder == "Hello There"
    assert not miss.matched
