"""Executes a single workflow step by type."""

from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..config import AppEnv
from ..models.core import (
    GateStep, LLMStep, StepDefinition, StepError, StepResult, ToolResult, ToolStep, TransformStep
)
from .conditions import evaluate_condition
from .cost_ledger import ModelLedger, UNKNOWN_PROVIDER, extract_usage, get_default_model
from .exceptions import (
    ConfigurationError, ErrorType, GateFailedError, InvalidInputError, MissingAPIKeyError,
    ToolCallError, classify_error, get_retry_after
)
from .llm_client import LLMProvider
from .logging import get_logger
from .prompts import build_template_variables, create_messages, parse_json_output, render_template
from .retry import RetryPolicy, is_retriable_error, retry_with_backoff
from .tool_adapter import ToolAdapter

logger = get_logger(__name__)

RETRIABLE_TOOL_ERRORS = frozenset({ErrorType.RATE_LIMIT, ErrorType.NETWORK})

TransformFunction = Callable[[Any], Any]


def _is_retriable_tool_failure(error: BaseException) -> bool:
    return isinstance(error, ToolCallError) and error.error_type in RETRIABLE_TOOL_ERRORS


class StepExecutor:
    """Runs llm, tool, transform and gate steps.

    ``execute`` never raises for step failures: every exception is classified
    and returned on the result's ``error``. Task cancellation still propagates.

    Transport calls retry on transient failures as classified by
    ``is_retriable_error`` unless ``retry_policy`` carries its own predicate.
    """

    def __init__(
        self,
        tool_adapter: ToolAdapter,
        ledger: ModelLedger,
        providers: Mapping[str, LLMProvider],
        transforms: Optional[Mapping[str, TransformFunction]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        env: Union[AppEnv, str, None] = None
    ):
        self.tool_adapter = tool_adapter
        self.ledger = ledger
        self.providers = dict(providers)
        self.transforms = dict(transforms or {})
        self.retry_policy = retry_policy or RetryPolicy()
        self.env = AppEnv.from_value(getattr(env, "value", env)) if env is not None else ledger.env

    async def execute(self, step: StepDefinition, resolved_input: Any, context: Dict[str, Any]) -> StepResult:
        """
        Execute one step against its resolved input.

        Args:
            step: Step definition
            resolved_input: Input produced by the step's input mapping
            context: Run context, ``{"input": ..., "steps": {...}}``

        Returns:
            StepResult with output, trace, token usage and cost, or an error
        """
        result = StepResult()
        try:
            if isinstance(step, LLMStep):
                await self._execute_llm(step, resolved_input, context, result)
            elif isinstance(step, ToolStep):
                await self._execute_tool(step, resolved_input, result)
            elif isinstance(step, TransformStep):
                self._execute_transform(step, resolved_input, result)
            elif isinstance(step, GateStep):
                self._execute_gate(step, resolved_input, result)
            else:
                raise ConfigurationError(f"Unknown step type: {getattr(step, 'type', step)}")
        except Exception as e:
            error_type = classify_error(e)
            logger.warning(f"Step {step.id} failed ({error_type.value}): {str(e)}")
            result.output = None
            result.error = StepError(
                type=error_type,
                message=str(e) or e.__class__.__name__,
                retry_after=get_retry_after(e),
            )
        return result

    async def _execute_llm(self, step: LLMStep, resolved_input: Any, context: Dict[str, Any], result: StepResult):
        model = step.model or get_default_model(self.env)
        result.model = model

        provider_name = self.ledger.get_model_provider(model)
        if provider_name == UNKNOWN_PROVIDER:
            raise ConfigurationError(f"Unknown provider for model: {model}", config_key="model")
        provider = self.providers.get(provider_name)
        if provider is None:
            raise ConfigurationError(f"No client configured for provider: {provider_name}", config_key="model")

        api_key = self.ledger.get_provider_api_key(provider_name)
        if not api_key:
            raise MissingAPIKeyError(model, provider=provider_name)

        variables = build_template_variables(context, resolved_input)
        result.prompt_system = render_template(step.prompt_system, variables)
        result.prompt_user = render_template(step.prompt_user, variables)
        if not result.prompt_system.strip() and not result.prompt_user.strip():
            raise ConfigurationError(
                f"LLM step {step.id} must render at least one of prompt_system or prompt_user"
            )

        json_output = step.output_schema is not None
        messages = create_messages(result.prompt_system, result.prompt_user, json_output=json_output)

        async def call():
            return await provider.complete(
                model=model,
                messages=messages,
                api_key=api_key,
                temperature=step.temperature,
                max_tokens=step.max_tokens,
                json_output=json_output,
            )

        response = await retry_with_backoff(
            call,
            self.retry_policy.with_default_predicate(is_retriable_error),
            operation=f"llm:{step.id}",
        )

        input_tokens, output_tokens = extract_usage(response.usage)
        result.output = parse_json_output(response.content) if json_output else response.content
        result.token_count = input_tokens + output_tokens
        result.cost = self.ledger.calculate_cost(model, input_tokens, output_tokens)
        result.trace = {
            "provider": provider_name,
            "model": response.model or model,
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
        }
        logger.info(f"LLM step {step.id} used {result.token_count} tokens (${result.cost:.6f})")

    async def _execute_tool(self, step: ToolStep, resolved_input: Any, result: StepResult):
        if resolved_input is None:
            resolved_input = {}
        if not isinstance(resolved_input, dict):
            raise InvalidInputError(
                f"Tool step {step.id} requires an object input, got {type(resolved_input).__name__}"
            )

        attempts = 0
        last: Optional[ToolResult] = None

        async def call():
            nonlocal attempts, last
            attempts += 1
            last = await self.tool_adapter.execute_tool(step.tool_name, resolved_input)
            if not last.success:
                raise ToolCallError(
                    last.error or "Tool execution failed",
                    tool_name=step.tool_name,
                    error_type=last.metadata.error_type or ErrorType.UNKNOWN,
                    retry_after=last.metadata.retry_after,
                )
            return last

        try:
            tool_result = await retry_with_backoff(
                call,
                self.retry_policy.with_default_predicate(_is_retriable_tool_failure),
                operation=f"tool:{step.tool_name}",
            )
            result.output = tool_result.data
        finally:
            if last is not None:
                result.trace = {
                    "tool": step.tool_name,
                    "args": resolved_input,
                    "success": last.success,
                    "duration_ms": last.metadata.duration,
                    "attempts": attempts,
                    "metadata": last.metadata.model_dump(mode="json", exclude_none=True),
                }

    def _execute_transform(self, step: TransformStep, resolved_input: Any, result: StepResult):
        if not step.transform:
            result.output = resolved_input
            return
        transform = self.transforms.get(step.transform)
        if transform is None:
            raise ConfigurationError(f"Unknown transform: {step.transform}", config_key="transform")
        result.output = transform(resolved_input)

    def _execute_gate(self, step: GateStep, resolved_input: Any, result: StepResult):
        passed, actual = evaluate_condition(step.condition, resolved_input)
        if not passed:
            raise GateFailedError(step.condition, actual)
        result.output = {"passed": True, "condition": step.condition, "actual": actual}
