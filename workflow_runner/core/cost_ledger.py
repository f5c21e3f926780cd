"""Model pricing, provider lookup and cost accounting."""

from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..config import AppConfig, AppEnv
from .logging import get_logger

logger = get_logger(__name__)

# USD per 1M tokens: (input, output)
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4-turbo": (10.00, 30.00),
    "gpt-3.5-turbo": (0.50, 1.50),
    "claude-3-5-sonnet": (3.00, 15.00),
    "claude-3-haiku": (0.25, 1.25),
}

# Credits per character
TTS_CREDITS_PER_CHAR: Dict[str, float] = {
    "eleven_turbo_v2_5": 0.5,
    "eleven_monolingual_v1": 1.0,
    "eleven_multilingual_v2": 1.0,
}
DEFAULT_TTS_CREDITS_PER_CHAR = 0.5

DEFAULT_MAX_TOKENS = 4096

DEFAULT_MODELS = {
    AppEnv.DEV: "gpt-4o-mini",
    AppEnv.PROD: "gpt-4o",
}

PROVIDER_PREFIXES = (
    ("gpt-", "openai"),
    ("claude-", "anthropic"),
)

UNKNOWN_PROVIDER = "unknown"


def get_model_provider(model: str) -> str:
    """Provider name for a model, from its name prefix."""
    for prefix, provider in PROVIDER_PREFIXES:
        if model.startswith(prefix):
            return provider
    return UNKNOWN_PROVIDER


def get_model_pricing(model: str) -> Optional[Tuple[float, float]]:
    """Pricing for an exact model name, falling back to the longest known prefix.

    Dated releases such as ``claude-3-5-sonnet-20241022`` resolve to their family.
    """
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    matches = [name for name in MODEL_PRICING if model.startswith(name + "-")]
    if not matches:
        return None
    return MODEL_PRICING[max(matches, key=len)]


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost in USD for one call. Unknown models cost 0."""
    pricing = get_model_pricing(model)
    if pricing is None:
        logger.debug(f"No pricing for model {model}; recording zero cost")
        return 0.0
    input_price, output_price = pricing
    return (input_tokens * input_price + output_tokens * output_price) / 1_000_000


def calculate_tts_credits(text: str, model: Optional[str] = None) -> float:
    rate = TTS_CREDITS_PER_CHAR.get(model or "", DEFAULT_TTS_CREDITS_PER_CHAR)
    return len(text) * rate


def get_default_model(env: Union[AppEnv, str]) -> str:
    return DEFAULT_MODELS[AppEnv.from_value(getattr(env, "value", env))]


def extract_usage(usage: Optional[Dict[str, Any]]) -> Tuple[int, int]:
    """Read (input, output) token counts from OpenAI or Anthropic usage blocks."""
    if not usage:
        return 0, 0
    input_tokens = usage.get("prompt_tokens", usage.get("input_tokens")) or 0
    output_tokens = usage.get("completion_tokens", usage.get("output_tokens")) or 0
    return int(input_tokens), int(output_tokens)


def aggregate_costs(costs: Iterable[Optional[float]]) -> float:
    """Sum step costs, ignoring steps that recorded none."""
    return sum(cost for cost in costs if cost is not None)


class ModelLedger:
    """Resolves models to providers and API keys for one configuration."""

    def __init__(self, config: AppConfig):
        self.env = config.app_env
        self._api_keys = config.get_provider_api_keys()

    def get_model_provider(self, model: str) -> str:
        return get_model_provider(model)

    def get_provider_api_key(self, provider: str) -> Optional[str]:
        """API key for a provider, or None when unset or the provider is unknown."""
        key = self._api_keys.get(provider)
        return key or None

    def get_default_model(self) -> str:
        return get_default_model(self.env)

    def get_model_config(self, model: Optional[str] = None) -> Dict[str, Any]:
        """Provider, key and limits for a model (the env default when omitted)."""
        model = model or self.get_default_model()
        provider = get_model_provider(model)
        pricing = get_model_pricing(model)
        return {
            "model": model,
            "provider": provider,
            "api_key": self.get_provider_api_key(provider),
            "max_tokens": DEFAULT_MAX_TOKENS,
            "pricing": {"input": pricing[0], "output": pricing[1]} if pricing else None,
        }

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(model, input_tokens, output_tokens)

    def has_any_provider_key(self) -> bool:
        return any(self._api_keys.values())
