"""Core Pydantic models for the workflow runner."""

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, JsonValue, ValidationError, field_validator, model_validator

from ..core.exceptions import ConfigurationError, ErrorType, InvalidTransitionError


# Any JSON-compatible value: step inputs, outputs and traces.
Value = JsonValue

_STEP_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


class RunStatus(str, Enum):
    """Lifecycle states of a workflow run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    """Lifecycle states of a single step record."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StepType(str, Enum):
    """Kinds of step a workflow definition may contain."""
    LLM = "llm"
    TOOL = "tool"
    TRANSFORM = "transform"
    GATE = "gate"


RUN_TRANSITIONS: Dict[RunStatus, FrozenSet[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.CANCELLED, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({
        RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIAL, RunStatus.CANCELLED
    }),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.PARTIAL: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}

STEP_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}

TERMINAL_RUN_STATUSES = frozenset(
    status for status, targets in RUN_TRANSITIONS.items() if not targets
)
CANCELLABLE_RUN_STATUSES = frozenset({RunStatus.PENDING, RunStatus.RUNNING})


def check_run_transition(current: Union[RunStatus, str], target: Union[RunStatus, str]) -> RunStatus:
    """Validate a run status change against the transition table."""
    current, target = RunStatus(current), RunStatus(target)
    if target not in RUN_TRANSITIONS[current]:
        raise InvalidTransitionError("run", current.value, target.value)
    return target


def check_step_transition(current: Union[StepStatus, str], target: Union[StepStatus, str]) -> StepStatus:
    """Validate a step status change against the transition table."""
    current, target = StepStatus(current), StepStatus(target)
    if target not in STEP_TRANSITIONS[current]:
        raise InvalidTransitionError("step", current.value, target.value)
    return target


class StepBase(BaseModel):
    """Fields shared by every step type."""
    id: str = Field(..., description="Identifier of the step, unique within its definition")
    name: str = Field(..., description="Human readable step name")
    input_mapping: Optional[Dict[str, str]] = Field(
        None, description="Input field name -> path expression evaluated against the run context"
    )
    output_schema: Optional[Dict[str, Any]] = Field(None, description="Expected output shape")

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure step ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Step ID cannot be empty")
        if not _STEP_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Step ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        if not name or not name.strip():
            raise ValueError("Step name cannot be empty")
        return name.strip()


class LLMStep(StepBase):
    """Renders prompt templates and calls a language model."""
    type: Literal["llm"] = "llm"
    model: Optional[str] = Field(None, description="Model name; defaults to the environment default")
    prompt_system: Optional[str] = Field(None, description="System prompt template")
    prompt_user: Optional[str] = Field(None, description="User prompt template")
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, gt=0)


class ToolStep(StepBase):
    """Calls a registered tool with the resolved input."""
    type: Literal["tool"] = "tool"
    tool_name: str = Field(..., description="Name of the registered tool")

    @field_validator('tool_name')
    @classmethod
    def validate_tool_name(cls, tool_name):
        if not tool_name or not tool_name.strip():
            raise ValueError("Tool step must have tool_name")
        return tool_name.strip()


class TransformStep(StepBase):
    """Pure mapping of input to output; passes input through when no transform is named."""
    type: Literal["transform"] = "transform"
    transform: Optional[str] = Field(None, description="Name of a registered transform function")


class GateStep(StepBase):
    """Halts the pipeline when its condition is not met."""
    type: Literal["gate"] = "gate"
    condition: str = Field(..., description="Condition expression, e.g. 'len(feeds) >= 3'")

    @field_validator('condition')
    @classmethod
    def validate_condition(cls, condition):
        if not condition or not condition.strip():
            raise ValueError("Gate step must have a condition")
        return condition.strip()


StepDefinition = Annotated[
    Union[LLMStep, ToolStep, TransformStep, GateStep],
    Field(discriminator="type")
]


class WorkflowDefinition(BaseModel):
    """An ordered, linear list of steps."""
    id: Optional[str] = Field(None, description="Definition identifier")
    name: str = Field(..., description="Name of the workflow")
    description: Optional[str] = Field(None, description="Description of the workflow")
    steps: List[StepDefinition] = Field(..., description="Steps in execution order")

    @field_validator('name')
    @classmethod
    def validate_name_not_empty(cls, name):
        """Ensure workflow name is not empty."""
        if not name.strip():
            raise ValueError("Workflow name cannot be empty")
        return name.strip()

    @model_validator(mode='after')
    def validate_steps(self):
        """Ensure there is at least one step and all step IDs are unique."""
        if not self.steps:
            raise ValueError("Workflow must contain at least one step")
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"Duplicate step ID: {step.id}")
            seen.add(step.id)
        return self

    def step_index(self, step_id: str) -> int:
        """Position of a step in the definition, or -1 if absent."""
        for index, step in enumerate(self.steps):
            if step.id == step_id:
                return index
        return -1

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        index = self.step_index(step_id)
        return self.steps[index] if index >= 0 else None


def parse_definition(data: Any) -> WorkflowDefinition:
    """Validate raw definition JSON.

    Raises:
        ConfigurationError: If the definition is malformed or names an unknown step type
    """
    if isinstance(data, WorkflowDefinition):
        return data
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or 'definition'}: {error['msg']}"
            for error in e.errors()
        ]
        raise ConfigurationError(
            "Invalid workflow definition",
            config_key="definition_json",
            validation_errors=errors
        )


class ToolMetadata(BaseModel):
    """Timing and classification attached to every tool result."""
    tool_name: str
    duration: float = Field(..., description="Wall-clock duration in milliseconds")
    timestamp: datetime
    error_type: Optional[ErrorType] = None
    retry_after: Optional[int] = None


class ToolResult(BaseModel):
    """Uniform result shape of a tool call."""
    success: bool
    data: Value = None
    error: Optional[str] = None
    metadata: ToolMetadata


class StepError(BaseModel):
    """Classified error returned by the step executor."""
    type: ErrorType = ErrorType.UNKNOWN
    message: str
    retry_after: Optional[int] = None


class StepResult(BaseModel):
    """Outcome of executing one step."""
    output: Value = None
    trace: Optional[Dict[str, Value]] = None
    token_count: Optional[int] = None
    cost: Optional[float] = None
    error: Optional[StepError] = None
    model: Optional[str] = None
    prompt_system: Optional[str] = None
    prompt_user: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class WorkflowRecord(BaseModel):
    """A stored workflow and its current definition."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    slug: str
    name: str
    env: str
    version: int
    definition_json: Dict[str, Value]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowRunStep(BaseModel):
    """One step's execution record."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    run_id: str
    position: int
    step_id: str
    step_name: str
    step_type: StepType
    status: StepStatus
    model: Optional[str] = None
    prompt_system: Optional[str] = None
    prompt_user: Optional[str] = None
    input_json: Value = None
    output_json: Value = None
    tool_trace_json: Value = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    token_count: Optional[int] = None
    cost: Optional[float] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class WorkflowRun(BaseModel):
    """One execution attempt of a workflow."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    workflow_version: int
    env: str
    status: RunStatus
    user_id: Optional[str] = None
    input_json: Value = None
    output_json: Value = None
    cost_estimate: Optional[float] = None
    actual_cost: Optional[float] = None
    error_message: Optional[str] = None
    resumed_from_run_id: Optional[str] = None
    from_step_id: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    steps: List[WorkflowRunStep] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class EvalConstraints(BaseModel):
    """Checks applied to a case's output."""
    model_config = ConfigDict(extra="allow")

    min_feeds: Optional[int] = Field(None, ge=0)
    max_feeds: Optional[int] = Field(None, ge=0)
    must_include_domains: List[str] = Field(default_factory=list)
    freshness_days: Optional[float] = Field(None, gt=0)
    min_score: Optional[float] = Field(None, ge=0, le=100)


class EvalCase(BaseModel):
    """A fixture input with its expected output and constraints."""
    id: str
    name: str
    input: Value = Field(default_factory=dict)
    expected_output: Value = None
    constraints: Optional[EvalConstraints] = None


class WorkflowEvalRecord(BaseModel):
    """A named set of eval cases tied to one workflow."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    workflow_id: str
    name: str
    env: str
    version: int = 1
    cases_json: List[EvalCase] = Field(default_factory=list)
    created_at: Optional[datetime] = None


class CaseResult(BaseModel):
    """Score of one eval case."""
    case_id: str
    passed: bool
    score: float = Field(..., ge=0, le=100)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    actual_output: Value = None
    run_id: Optional[str] = None


class EvalResults(BaseModel):
    """Aggregated results of one eval pass."""
    case_results: List[CaseResult] = Field(default_factory=list)
    overall_score: float = 0.0
    passed: bool = False
    errors: List[str] = Field(default_factory=list)


class WorkflowEvalRun(BaseModel):
    """An immutable record of one eval pass."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    eval_id: str
    env: str
    results_json: EvalResults
    score: float
    passed: bool
    created_at: Optional[datetime] = None
