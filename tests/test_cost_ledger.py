"""Tests for model pricing and provider resolution."""

import pytest

from workflow_runner.config import AppConfig, AppEnv
from workflow_runner.core.cost_ledger import (
    ModelLedger, aggregate_costs, calculate_cost, calculate_tts_credits, extract_usage,
    get_default_model, get_model_pricing, get_model_provider
)


class TestPricing:
    """Test cases for provider lookup and cost calculation."""

    @pytest.mark.parametrize("model,provider", [
        ("gpt-4o", "openai"),
        ("gpt-4o-mini", "openai"),
        ("claude-3-5-sonnet-20241022", "anthropic"),
        ("llama-3", "unknown"),
    ])
    def test_provider_by_prefix(self, model, provider):
        assert get_model_provider(model) == provider

    def test_cost_per_million_tokens(self):
        assert calculate_cost("gpt-4o", 1_000_000, 0) == pytest.approx(2.50)
        assert calculate_cost("gpt-4o-mini", 1000, 500) == pytest.approx((1000 * 0.15 + 500 * 0.60) / 1_000_000)

    def test_unknown_model_costs_nothing(self):
        assert calculate_cost("mystery-model", 1000, 1000) == 0.0

    def test_dated_model_uses_family_pricing(self):
        assert get_model_pricing("claude-3-5-sonnet-20241022") == (3.00, 15.00)
        assert get_model_pricing("gpt-4o-mini-2024-07-18") == (0.15, 0.60)

    def test_default_model_by_env(self):
        assert get_default_model(AppEnv.DEV) == "gpt-4o-mini"
        assert get_default_model("prod") == "gpt-4o"
        assert get_default_model("staging") == "gpt-4o"

    def test_tts_credits(self):
        assert calculate_tts_credits("hello", "eleven_monolingual_v1") == 5.0
        assert calculate_tts_credits("hello") == 2.5

    def test_extract_usage_handles_both_providers(self):
        assert extract_usage({"prompt_tokens": 10, "completion_tokens": 4}) == (10, 4)
        assert extract_usage({"input_tokens": 7, "output_tokens": 3}) == (7, 3)
        assert extract_usage(None) == (0, 0)

    def test_aggregate_costs_skips_missing(self):
        assert aggregate_costs([0.5, None, 0.25]) == pytest.approx(0.75)
        assert aggregate_costs([]) == 0


class TestModelLedger:
    """Test cases for the configured ledger."""

    def test_api_keys_come_from_config(self):
        ledger = ModelLedger(AppConfig(app_env="dev", openai_api_key="sk-test"))
        assert ledger.get_provider_api_key("openai") == "sk-test"
        assert ledger.get_provider_api_key("anthropic") is None
        assert ledger.get_provider_api_key("unknown") is None
        assert ledger.has_any_provider_key()

    def test_model_config_defaults_to_env_model(self):
        ledger = ModelLedger(AppConfig(app_env="dev"))
        model_config = ledger.get_model_config()
        assert model_config["model"] == "gpt-4o-mini"
        assert model_config["provider"] == "openai"
        assert model_config["api_key"] is None
        assert model_config["max_tokens"] == 4096
        assert model_config["pricing"] == {"input": 0.15, "output": 0.60}
        assert not ledger.has_any_provider_key()

    def test_unknown_env_falls_back_to_prod(self):
        assert ModelLedger(AppConfig(app_env="staging")).get_default_model() == "gpt-4o"
