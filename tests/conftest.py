"""Pytest configuration and fixtures."""

import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from workflow_runner.config import AppConfig, AppEnv, get_testing_config
from workflow_runner.core.cost_ledger import ModelLedger
from workflow_runner.core.llm_client import LLMResponse
from workflow_runner.core.orchestrator import RunOrchestrator
from workflow_runner.core.retry import RetryPolicy
from workflow_runner.core.step_executor import StepExecutor
from workflow_runner.core.tool_adapter import ToolAdapter
from workflow_runner.core.tool_registry import ToolRegistry
from workflow_runner.storage.database import init_database, reset_database_engine
from workflow_runner.storage.repository import EvalRepository, WorkflowRepository
from workflow_runner.tools import DEFAULT_TRANSFORMS


class FakeProvider:
    """LLM provider double returning scripted responses.

    Each entry in ``responses`` is a string, a dict (sent back as JSON), an
    exception to raise, or a callable taking the request kwargs.
    """

    def __init__(self, responses: Optional[List[Any]] = None, usage: Optional[Dict[str, int]] = None):
        self.responses = list(responses or [])
        self.usage = usage if usage is not None else {"prompt_tokens": 100, "completion_tokens": 50}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    async def complete(self, **kwargs) -> LLMResponse:
        self.calls.append(kwargs)
        response = self.responses.pop(0) if len(self.responses) > 1 else (self.responses[0] if self.responses else "ok")
        if callable(response):
            response = response(kwargs)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, (dict, list)):
            response = json.dumps(response)
        return LLMResponse(content=response, usage=self.usage, model=kwargs["model"])

    async def close(self):
        self.closed = True


class RecordingTool:
    """Tool double that records its calls and returns or raises scripted results."""

    def __init__(self, *results: Union[Any, BaseException, Callable[[Dict[str, Any]], Any]]):
        self.results = list(results)
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, params: Dict[str, Any]) -> Any:
        self.calls.append(params)
        result = self.results.pop(0) if len(self.results) > 1 else (self.results[0] if self.results else None)
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(params)
        return result


def make_feeds(*urls: str, published: str = "2026-10-10T00:00:00+00:00") -> List[Dict[str, Any]]:
    return [
        {"name": url, "rss_url": url, "validation": {"ok": True, "last_published_at": published}}
        for url in urls
    ]


@pytest.fixture
def config() -> AppConfig:
    """Testing configuration with an OpenAI key so llm steps can run."""
    return get_testing_config().model_copy(update={"openai_api_key": "test-openai-key"})


@pytest.fixture
def session_factory():
    """Fresh in-memory database per test."""
    factory = init_database("sqlite:///:memory:")
    yield factory
    reset_database_engine()


@pytest.fixture
def workflow_repository(session_factory) -> WorkflowRepository:
    return WorkflowRepository(AppEnv.DEV, session_factory)


@pytest.fixture
def eval_repository(session_factory) -> EvalRepository:
    return EvalRepository(AppEnv.DEV, session_factory)


@pytest.fixture
def tool_registry() -> ToolRegistry:
    return ToolRegistry()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def ledger(config) -> ModelLedger:
    return ModelLedger(config)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def executor(tool_registry, ledger, provider, retry_policy) -> StepExecutor:
    return StepExecutor(
        tool_adapter=ToolAdapter(tool_registry),
        ledger=ledger,
        providers={"openai": provider},
        transforms=DEFAULT_TRANSFORMS,
        retry_policy=retry_policy,
        env=AppEnv.DEV,
    )


@pytest.fixture
def orchestrator(workflow_repository, executor) -> RunOrchestrator:
    return RunOrchestrator(workflow_repository, executor)
