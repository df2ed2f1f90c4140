"""Token estimation, usage extraction, and effective-cost multipliers."""

from __future__ import annotations

import logging
import math

logger = logging.getLogger(__name__)

# Characters per token by model-id prefix; Gemini tokenizes a little denser.
_CHARS_PER_TOKEN: list[tuple[str, float]] = [
    ("google/gemini", 4.5),
]
_DEFAULT_CHARS_PER_TOKEN = 4.0

# Role markers and separators the provider adds around each message.
MESSAGE_OVERHEAD_TOKENS = 4


def _chars_per_token(model_id: str) -> float:
    lower = (model_id or "").lower()
    for prefix, ratio in _CHARS_PER_TOKEN:
        if lower.startswith(prefix):
            return ratio
    return _DEFAULT_CHARS_PER_TOKEN


def estimate_tokens(text: str, model_id: str = "") -> int:
    """Character-count approximation: deterministic and monotonic in ``len(text)``."""
    if not text:
        return 0
    return math.ceil(len(text) / _chars_per_token(model_id))


def estimate_conversation_tokens(messages: list[dict], model_id: str = "") -> int:
    total_text = "\n".join(msg["content"] for msg in messages)
    return estimate_tokens(total_text, model_id) + len(messages) * MESSAGE_OVERHEAD_TOKENS


def extract_usage_from_response(response) -> dict:
    """Extract token usage from a single AIMessage (or similar LangChain response).

    Returns dict with input_tokens, output_tokens, total_tokens.
    """
    usage = getattr(response, "usage_metadata", None)
    if usage and isinstance(usage, dict):
        input_t = usage.get("input_tokens", 0) or 0
        output_t = usage.get("output_tokens", 0) or 0
        return {
            "input_tokens": input_t,
            "output_tokens": output_t,
            "total_tokens": input_t + output_t,
        }
    return {"input_tokens": 0, "output_tokens": 0, "total_tokens": 0}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def effective_cost(model_id: str, raw_tokens: int, used_web_search: bool = False) -> int:
    """Scale *raw_tokens* by the model multiplier and web-search surcharge.

    Charged only against the daily allowance. Falls back to the raw count if
    the multiplier configuration cannot be read.
    """
    try:
        from config import settings
        from services.providers import model_multiplier

        multiplier = model_multiplier(model_id)
        search_multiplier = settings.WEB_SEARCH_MULTIPLIER if used_web_search else 1.0
        return _round_half_up(raw_tokens * multiplier * search_multiplier)
    except Exception:
        logger.exception("Effective cost calculation failed for %s, charging raw tokens", model_id)
        return raw_tokens
