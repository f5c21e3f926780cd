"""Tests for executing individual steps."""

import pytest

from workflow_runner.config import AppEnv, get_testing_config
from workflow_runner.core.cost_ledger import ModelLedger
from workflow_runner.core.exceptions import ErrorType, NetworkError, ProviderError, RateLimitError
from workflow_runner.core.retry import RetryPolicy
from workflow_runner.core.step_executor import StepExecutor
from workflow_runner.core.tool_adapter import ToolAdapter
from workflow_runner.models.core import GateStep, LLMStep, ToolStep, TransformStep

from conftest import FakeProvider, RecordingTool

CONTEXT = {"input": {"topic": "ai"}, "steps": {}}


class TestLLMStep:
    """Test cases for llm steps."""

    @pytest.mark.asyncio
    async def test_renders_prompts_and_records_usage(self, executor, provider):
        provider.responses = ["Three feeds about AI."]
        step = LLMStep(id="summarize", name="Summarize", prompt_system="You summarize.", prompt_user="Topic: {{topic}}")

        result = await executor.execute(step, {"topic": "ai"}, CONTEXT)

        assert result.succeeded
        assert result.output == "Three feeds about AI."
        assert result.model == "gpt-4o-mini"
        assert result.prompt_user == "Topic: ai"
        assert result.token_count == 150
        assert result.cost == pytest.approx((100 * 0.15 + 50 * 0.60) / 1_000_000)
        assert result.trace == {
            "provider": "openai", "model": "gpt-4o-mini", "input_tokens": 100, "output_tokens": 50
        }
        call = provider.calls[0]
        assert call["api_key"] == "test-openai-key"
        assert call["messages"][-1] == {"role": "user", "content": "Topic: ai"}
        assert call["json_output"] is False

    @pytest.mark.asyncio
    async def test_output_schema_requests_and_parses_json(self, executor, provider):
        provider.responses = ['```json\n{"candidates": [{"name": "A"}]}\n```']
        step = LLMStep(id="suggest", name="Suggest", prompt_user="Suggest", output_schema={"candidates": "list"})

        result = await executor.execute(step, {}, CONTEXT)

        assert result.output == {"candidates": [{"name": "A"}]}
        assert provider.calls[0]["json_output"] is True

    @pytest.mark.asyncio
    async def test_missing_api_key(self, tool_registry, provider, retry_policy):
        step = LLMStep(id="s", name="S", model="claude-3-haiku", prompt_user="hi")
        executor = StepExecutor(
            ToolAdapter(tool_registry),
            ModelLedger(get_testing_config()),
            {"openai": provider, "anthropic": provider},
            retry_policy=retry_policy,
        )

        result = await executor.execute(step, {}, CONTEXT)

        assert result.error.type == ErrorType.MISSING_API_KEY
        assert "claude-3-haiku" in result.error.message
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_unknown_provider_is_configuration_error(self, executor, provider):
        step = LLMStep(id="s", name="S", model="llama-3-70b", prompt_user="hi")
        result = await executor.execute(step, {}, CONTEXT)
        assert result.error.type == ErrorType.CONFIGURATION
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_empty_prompts_are_configuration_error(self, executor):
        step = LLMStep(id="s", name="S", prompt_user="   ")
        result = await executor.execute(step, {}, CONTEXT)
        assert result.error.type == ErrorType.CONFIGURATION

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, executor, provider):
        provider.responses = [RateLimitError("slow down"), NetworkError("reset"), "finally"]
        step = LLMStep(id="s", name="S", prompt_user="hi")

        result = await executor.execute(step, {}, CONTEXT)

        assert result.output == "finally"
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_client_errors_fail_without_retry(self, executor, provider):
        provider.responses = [ProviderError("bad request", status_code=400)]
        step = LLMStep(id="s", name="S", prompt_user="hi")

        result = await executor.execute(step, {}, CONTEXT)

        assert not result.succeeded
        assert result.output is None
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_report_last_error(self, executor, provider):
        provider.responses = [RateLimitError("still limited", retry_after=2)]
        step = LLMStep(id="s", name="S", prompt_user="hi")

        result = await executor.execute(step, {}, CONTEXT)

        assert result.error.type == ErrorType.RATE_LIMIT
        assert result.error.retry_after == 2
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_policy_predicate_overrides_classifier(self, tool_registry, ledger, provider):
        provider.responses = [RateLimitError("slow down"), "unused"]
        executor = StepExecutor(
            ToolAdapter(tool_registry),
            ledger,
            {"openai": provider},
            retry_policy=RetryPolicy(max_retries=2, initial_delay=0.0, max_delay=0.0, should_retry=lambda e: False),
        )

        result = await executor.execute(LLMStep(id="s", name="S", prompt_user="hi"), {}, CONTEXT)

        assert result.error.type == ErrorType.RATE_LIMIT
        assert len(provider.calls) == 1


class TestToolStep:
    """Test cases for tool steps."""

    @pytest.mark.asyncio
    async def test_calls_tool_and_records_trace(self, executor, tool_registry):
        tool = RecordingTool({"feeds": ["a", "b"]})
        tool_registry.register_tool("discover", tool)
        step = ToolStep(id="d", name="Discover", tool_name="discover")

        result = await executor.execute(step, {"query": "ai"}, CONTEXT)

        assert result.output == {"feeds": ["a", "b"]}
        assert tool.calls == [{"query": "ai"}]
        assert result.trace["tool"] == "discover"
        assert result.trace["args"] == {"query": "ai"}
        assert result.trace["success"] is True
        assert result.trace["attempts"] == 1
        assert result.cost is None

    @pytest.mark.asyncio
    async def test_none_input_becomes_empty_object(self, executor, tool_registry):
        tool = RecordingTool({"ok": True})
        tool_registry.register_tool("t", tool)
        await executor.execute(ToolStep(id="t", name="T", tool_name="t"), None, CONTEXT)
        assert tool.calls == [{}]

    @pytest.mark.asyncio
    async def test_non_object_input_is_invalid(self, executor, tool_registry):
        tool_registry.register_tool("t", RecordingTool({}))
        result = await executor.execute(ToolStep(id="t", name="T", tool_name="t"), ["a"], CONTEXT)
        assert result.error.type == ErrorType.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_missing_tool_fails_without_retry(self, executor):
        result = await executor.execute(ToolStep(id="t", name="T", tool_name="nope"), {}, CONTEXT)
        assert result.error.type == ErrorType.UNKNOWN
        assert result.error.message == "Tool not found: nope"
        assert result.trace["attempts"] == 1

    @pytest.mark.asyncio
    async def test_network_failures_are_retried(self, executor, tool_registry):
        tool = RecordingTool(NetworkError("reset"), {"feeds": []})
        tool_registry.register_tool("flaky", tool)

        result = await executor.execute(ToolStep(id="f", name="F", tool_name="flaky"), {}, CONTEXT)

        assert result.succeeded
        assert len(tool.calls) == 2
        assert result.trace["attempts"] == 2

    @pytest.mark.asyncio
    async def test_other_failures_are_not_retried(self, executor, tool_registry):
        tool = RecordingTool(ValueError("invalid url"))
        tool_registry.register_tool("strict", tool)

        result = await executor.execute(ToolStep(id="s", name="S", tool_name="strict"), {}, CONTEXT)

        assert result.error.type == ErrorType.INVALID_INPUT
        assert result.error.message == "invalid url"
        assert result.trace["success"] is False
        assert len(tool.calls) == 1


class TestTransformAndGateSteps:
    """Test cases for transform and gate steps."""

    @pytest.mark.asyncio
    async def test_transform_without_name_passes_input_through(self, executor):
        result = await executor.execute(TransformStep(id="t", name="T"), {"a": 1}, CONTEXT)
        assert result.output == {"a": 1}

    @pytest.mark.asyncio
    async def test_named_transform(self, executor):
        data = {"feeds": [[{"rss_url": "u1"}, {"rss_url": "u1"}], {"rss_url": "u2"}]}
        result = await executor.execute(TransformStep(id="t", name="T", transform="flatten_feeds"), data, CONTEXT)
        assert result.output == {"feeds": [{"rss_url": "u1"}, {"rss_url": "u2"}]}

    @pytest.mark.asyncio
    async def test_unknown_transform(self, executor):
        result = await executor.execute(TransformStep(id="t", name="T", transform="nope"), {}, CONTEXT)
        assert result.error.type == ErrorType.CONFIGURATION

    @pytest.mark.asyncio
    async def test_gate_passes(self, executor):
        step = GateStep(id="g", name="G", condition="len(feeds) >= 2")
        result = await executor.execute(step, {"feeds": [1, 2]}, CONTEXT)
        assert result.output == {"passed": True, "condition": "len(feeds) >= 2", "actual": 2}

    @pytest.mark.asyncio
    async def test_gate_failure_is_invalid_input(self, executor):
        step = GateStep(id="g", name="G", condition="len(feeds) >= 3")
        result = await executor.execute(step, {"feeds": [1, 2]}, CONTEXT)
        assert result.error.type == ErrorType.INVALID_INPUT
        assert result.error.message == "Gate condition not met: len(feeds) >= 3"
        assert result.output is None

    @pytest.mark.asyncio
    async def test_default_model_follows_env(self, tool_registry, ledger, retry_policy):
        provider = FakeProvider(["ok"])
        executor = StepExecutor(
            ToolAdapter(tool_registry), ledger, {"openai": provider}, retry_policy=retry_policy, env=AppEnv.PROD
        )
        result = await executor.execute(LLMStep(id="s", name="S", prompt_user="hi"), {}, CONTEXT)
        assert result.model == "gpt-4o"
