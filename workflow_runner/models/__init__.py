"""Data models for the workflow runner."""

from .core import (
    Value,
    RunStatus,
    StepStatus,
    StepType,
    RUN_TRANSITIONS,
    STEP_TRANSITIONS,
    check_run_transition,
    check_step_transition,
    LLMStep,
    ToolStep,
    TransformStep,
    GateStep,
    StepDefinition,
    WorkflowDefinition,
    parse_definition,
    ToolResult,
    ToolMetadata,
    StepResult,
    StepError,
    WorkflowRecord,
    WorkflowRun,
    WorkflowRunStep,
    EvalCase,
    EvalConstraints,
    WorkflowEvalRecord,
    CaseResult,
    EvalResults,
    WorkflowEvalRun,
)

__all__ = [
    "Value",
    "RunStatus",
    "StepStatus",
    "StepType",
    "RUN_TRANSITIONS",
    "STEP_TRANSITIONS",
    "check_run_transition",
    "check_step_transition",
    "LLMStep",
    "ToolStep",
    "TransformStep",
    "GateStep",
    "StepDefinition",
    "WorkflowDefinition",
    "parse_definition",
    "ToolResult",
    "ToolMetadata",
    "StepResult",
    "StepError",
    "WorkflowRecord",
    "WorkflowRun",
    "WorkflowRunStep",
    "EvalCase",
    "EvalConstraints",
    "WorkflowEvalRecord",
    "CaseResult",
    "EvalResults",
    "WorkflowEvalRun",
]
