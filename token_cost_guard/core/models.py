"""
Engine to canonical model normalization.

Callers name the backend they target ("vllm", "sglang", ...); pricing and
encoder lookup use canonical model names.
"""

from typing import Dict, Optional

DEFAULT_MODEL = "gpt-3.5-turbo"

# Static table, not configurable per request
ENGINE_TO_MODEL: Dict[str, str] = {
    "vllm": "gpt-3.5-turbo",
    "sglang": "gpt-4",
    "openai": "gpt-3.5-turbo",
    "anthropic": "claude-3-sonnet",
}

DEFAULT_MAX_OUTPUT_TOKENS = 512

_MAX_OUTPUT_TOKENS: Dict[str, int] = {
    "gpt-4": 1024,
    "gpt-4-turbo": 1024,
    "claude-3-opus": 1024,
}


def normalize_model(model: Optional[str]) -> str:
    """Map an engine name or model name to its canonical model.

    Args:
        model: Engine or model identifier; None or empty selects the default

    Returns:
        Canonical model name; unknown names pass through unchanged
    """
    if not model or not model.strip():
        return DEFAULT_MODEL
    return ENGINE_TO_MODEL.get(model.strip().lower(), model)


def default_max_tokens(model: Optional[str]) -> int:
    """Default expected output tokens for a model when the caller declares none."""
    return _MAX_OUTPUT_TOKENS.get(normalize_model(model).lower(), DEFAULT_MAX_OUTPUT_TOKENS)


def is_gpt_family(model: Optional[str]) -> bool:
    """True for models the OpenAI tokenizer endpoint understands."""
    name = normalize_model(model).lower()
    return "gpt" in name or "davinci" in name
