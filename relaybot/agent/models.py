"""Model selection: configured defaults, allow-list and per-session overrides."""

from dataclasses import dataclass, field

from relaybot.config.schema import AgentConfig, ModelCatalogEntry
from relaybot.session.store import SessionRecord

DEFAULT_PROVIDER = "anthropic"
DEFAULT_MODEL = "claude-opus-4-5"
DEFAULT_CONTEXT_TOKENS = 200_000


@dataclass(frozen=True)
class ModelRef:
    provider: str
    model: str

    @property
    def key(self) -> str:
        return model_key(self.provider, self.model)


@dataclass(frozen=True)
class ModelSelection:
    """A validated /model choice. Only non-default choices are persisted."""

    provider: str
    model: str
    is_default: bool

    @property
    def label(self) -> str:
        return model_key(self.provider, self.model)


@dataclass
class AllowedModels:
    allow_any: bool
    catalog: list[ModelCatalogEntry] = field(default_factory=list)
    keys: set[str] = field(default_factory=set)

    def permits(self, provider: str, model: str) -> bool:
        # An empty key set means nothing restricts the choice.
        return not self.keys or model_key(provider, model) in self.keys


def model_key(provider: str, model: str) -> str:
    return f"{provider}/{model}"


def parse_model_ref(raw: str | None, default_provider: str) -> ModelRef | None:
    """Parse "provider/model" or a bare model name; None when malformed."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    if "/" not in trimmed:
        return ModelRef(default_provider, trimmed)
    provider, _, model = trimmed.partition("/")
    provider, model = provider.strip(), model.strip()
    if not provider or not model:
        return None
    return ModelRef(provider, model)


def resolve_configured_model_ref(
    agent: AgentConfig,
    default_provider: str = DEFAULT_PROVIDER,
    default_model: str = DEFAULT_MODEL,
) -> ModelRef:
    """Resolve the configured default pair, falling back to the built-in defaults."""
    raw_provider = (agent.provider or "").strip()
    raw_model = (agent.model or "").strip()
    provider = raw_provider or default_provider
    if raw_model:
        parsed = parse_model_ref(raw_model, provider)
        if parsed:
            return parsed
        return ModelRef(provider, raw_model)
    return ModelRef(provider, default_model)


def build_allowed_model_set(
    allowed_models: list[str],
    catalog: list[ModelCatalogEntry],
    default_provider: str,
) -> AllowedModels:
    """
    Intersect the catalog with the allow-list.

    An allow-list that matches nothing in the catalog is treated as absent,
    so a misconfigured list never locks every model out.
    """
    catalog_keys = {model_key(entry.provider, entry.id) for entry in catalog}
    if not allowed_models:
        return AllowedModels(True, list(catalog), catalog_keys)

    keys: set[str] = set()
    for raw in allowed_models:
        parsed = parse_model_ref(str(raw), default_provider)
        if parsed and parsed.key in catalog_keys:
            keys.add(parsed.key)

    allowed_catalog = [entry for entry in catalog if model_key(entry.provider, entry.id) in keys]
    if not allowed_catalog:
        return AllowedModels(True, list(catalog), catalog_keys)
    return AllowedModels(False, allowed_catalog, keys)


def lookup_context_tokens(model: str | None, catalog: list[ModelCatalogEntry]) -> int | None:
    """Context window advertised by the catalog for model, if any."""
    if not model:
        return None
    for entry in catalog:
        if entry.context_window and (entry.id == model or model_key(entry.provider, entry.id) == model):
            return entry.context_window
    return None


def resolve_context_tokens(agent: AgentConfig, model: str | None) -> int:
    return (
        agent.context_tokens
        or lookup_context_tokens(model, agent.model_catalog)
        or DEFAULT_CONTEXT_TOKENS
    )


def stored_override_is_valid(
    record: SessionRecord,
    allowed: AllowedModels,
    default_provider: str,
) -> bool:
    """Whether record's persisted override (if any) is still allowed."""
    model = (record.model_override or "").strip()
    if not model:
        return True
    provider = (record.provider_override or "").strip() or default_provider
    return allowed.permits(provider, model)


def effective_model(
    record: SessionRecord | None,
    allowed: AllowedModels,
    default: ModelRef,
) -> ModelRef:
    """The pair a turn runs on: a valid stored override, else the default."""
    if record is None:
        return default
    model = (record.model_override or "").strip()
    if not model:
        return default
    provider = (record.provider_override or "").strip() or default.provider
    if allowed.permits(provider, model):
        return ModelRef(provider, model)
    return default


def select_model(
    raw: str,
    allowed: AllowedModels,
    default: ModelRef,
) -> ModelSelection | str:
    """Validate a /model argument; returns the selection or a user-facing error."""
    parsed = parse_model_ref(raw, default.provider)
    if parsed is None:
        return f'Unrecognized model "{raw}". Use /model to list available models.'
    if not allowed.permits(parsed.provider, parsed.model):
        return f'Model "{parsed.key}" is not allowed. Use /model to list available models.'
    is_default = parsed.provider == default.provider and parsed.model == default.model
    return ModelSelection(parsed.provider, parsed.model, is_default)


def override_changes(selection: ModelSelection) -> dict[str, str | None]:
    """Record fields to write for a selection; the default clears the override."""
    if selection.is_default:
        return {"provider_override": None, "model_override": None}
    return {"provider_override": selection.provider, "model_override": selection.model}


def format_model_list(
    allowed: AllowedModels,
    current: ModelRef,
    default: ModelRef,
    reset_override: bool = False,
) -> str:
    """Render the reply for a bare /model."""
    if not allowed.catalog:
        return "No models available."
    if current.key == default.key:
        lines = [f"Models (current: {current.key}):"]
    else:
        lines = [f"Models (current: {current.key}, default: {default.key}):"]
    if reset_override:
        lines.append("(previous selection reset to default)")
    for entry in allowed.catalog:
        suffix = f" — {entry.name}" if entry.name and entry.name != entry.id else ""
        lines.append(f"- {model_key(entry.provider, entry.id)}{suffix}")
    return "\n".join(lines)
