"""Provider registry: model descriptors, deprecated-id migration, upstream credentials."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from config import settings
from services.errors import ConfigurationError

logger = logging.getLogger(__name__)


class Provider(str, enum.Enum):
    OPENROUTER = "openrouter"
    KLUSTER = "kluster"
    SARVAM = "sarvam"


class Capability(str, enum.Enum):
    WEB_SEARCH = "web_search"
    WIKI_GROUNDING = "wiki_grounding"
    VISION = "vision"


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    provider: Provider
    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    multiplier: float = 1.0
    legacy: bool = False

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    api_key: str
    header_style: str  # bearer | subscription_key
    headers: dict[str, str]
    timeout: float


_WS = Capability.WEB_SEARCH
_WIKI = Capability.WIKI_GROUNDING
_VIS = Capability.VISION


def _m(model_id, name, provider=Provider.OPENROUTER, caps=(), multiplier=1.0, legacy=False):
    return ModelDescriptor(model_id, name, provider, frozenset(caps), multiplier, legacy)


MODELS: dict[str, ModelDescriptor] = {
    m.id: m
    for m in (
        _m("google/gemini-2.0-flash-001", "Gemini Flash 2.0", multiplier=0.5),
        _m("openai/gpt-4o", "GPT-4o", caps=(_VIS,)),
        _m("anthropic/claude-3-5-sonnet-20241022", "Claude Sonnet", caps=(_WS, _VIS), multiplier=1.5),
        _m("x-ai/grok-beta", "Grok Beta", multiplier=1.5),
        _m("google/gemini-2.5-pro-exp-03-25", "Gemini 2.5 Pro", caps=(_VIS,)),
        _m("mistralai/Magistral-Small-2506", "Mistral Small", Provider.KLUSTER, caps=(_VIS,)),
        _m("klusterai/Meta-Llama-3.3-70B-Instruct-Turbo", "Llama 3.3 70B", Provider.KLUSTER),
        _m("sarvam-m", "Sarvam M", Provider.SARVAM, caps=(_WIKI,)),
        # Legacy models (kept for compatibility)
        _m("openai/gpt-4o-mini", "GPT-4o Mini", multiplier=0.75, legacy=True),
        _m("deepseek/deepseek-r1", "DeepSeek R1", legacy=True),
        _m("google/gemini-2.5-flash-preview", "Gemini 2.5 Flash Preview", multiplier=0.5, legacy=True),
        _m("anthropic/claude-3-opus-20240229", "Claude 3 Opus", multiplier=2.0, legacy=True),
        _m("anthropic/claude-3-sonnet-20240229", "Claude 3 Sonnet", multiplier=1.5, legacy=True),
        _m("google/gemini-1.5-pro", "Gemini 1.5 Pro", legacy=True),
        _m("meta-llama/llama-3-70b-instruct", "Llama-3-70B", legacy=True),
    )
}

# Append-only: deprecated or renamed identifier -> current identifier.
# Targets may themselves be migrated; resolution follows the chain.
MODEL_MIGRATIONS: dict[str, str] = {
    "anthropic/claude-3.5-sonnet": "anthropic/claude-3-5-sonnet-20241022",
    "anthropic/claude-sonnet-4": "anthropic/claude-3.5-sonnet",
    "anthropic/claude-opus-4": "anthropic/claude-3-opus-20240229",
    "x-ai/grok-3-beta": "x-ai/grok-beta",
    "x-ai/grok-3": "x-ai/grok-3-beta",
    "google/gemini-2.5-pro": "google/gemini-2.5-pro-exp-03-25",
    "google/gemini-2.5-flash": "google/gemini-2.0-flash-001",
    "mistralai/magistral-small-2506": "mistralai/Magistral-Small-2506",
    "klusterai/meta-llama-3.3-70b-instruct-turbo": "klusterai/Meta-Llama-3.3-70B-Instruct-Turbo",
}

_MODELS_CASEFOLD = {key.casefold(): key for key in MODELS}


def get_model(model_id: str) -> ModelDescriptor | None:
    return MODELS.get(model_id)


def list_models(include_legacy: bool = True) -> list[ModelDescriptor]:
    return [m for m in MODELS.values() if include_legacy or not m.legacy]


def migrate_model_id(model_id: str) -> str:
    """Rewrite deprecated identifiers to their current equivalent.

    Unknown identifiers fall back to ``settings.DEFAULT_MODEL``. The result is
    always a fixed point: migrating it again returns it unchanged.
    """
    candidate = (model_id or "").strip()
    seen: set[str] = set()
    while candidate not in MODELS and candidate in MODEL_MIGRATIONS and candidate not in seen:
        seen.add(candidate)
        candidate = MODEL_MIGRATIONS[candidate]

    if candidate in MODELS:
        return candidate
    if candidate.casefold() in _MODELS_CASEFOLD:
        return _MODELS_CASEFOLD[candidate.casefold()]

    logger.warning("Unknown model %r, falling back to %s", model_id, settings.DEFAULT_MODEL)
    return settings.DEFAULT_MODEL


def model_supports(model_id: str, capability: Capability | str) -> bool:
    descriptor = MODELS.get(model_id)
    if descriptor is None:
        return False
    return descriptor.supports(Capability(capability))


def model_multiplier(model_id: str) -> float:
    descriptor = MODELS.get(model_id)
    return descriptor.multiplier if descriptor else 1.0


def resolve_provider(model_id: str) -> ProviderConfig:
    """Return the upstream endpoint/credentials for *model_id*.

    Raises :class:`ConfigurationError` when the provider's key is not set.
    """
    descriptor = MODELS.get(model_id)
    provider = descriptor.provider if descriptor else Provider.OPENROUTER

    if provider == Provider.KLUSTER:
        config = ProviderConfig(
            name="Kluster AI",
            base_url=settings.KLUSTER_BASE_URL,
            api_key=settings.KLUSTER_API_KEY,
            header_style="bearer",
            headers={},
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    elif provider == Provider.SARVAM:
        config = ProviderConfig(
            name="Sarvam AI",
            base_url=settings.SARVAM_BASE_URL,
            api_key=settings.SARVAM_API_KEY,
            header_style="subscription_key",
            headers={"api-subscription-key": settings.SARVAM_API_KEY},
            timeout=settings.SARVAM_TIMEOUT_SECONDS,
        )
    else:
        config = ProviderConfig(
            name="OpenRouter",
            base_url=settings.OPENROUTER_BASE_URL,
            api_key=settings.OPENROUTER_API_KEY,
            header_style="bearer",
            headers={"HTTP-Referer": settings.SITE_URL, "X-Title": settings.APP_TITLE},
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        )

    if not config.api_key:
        raise ConfigurationError(
            f"{config.name} API key not configured",
            {"provider": config.name},
        )
    return config
