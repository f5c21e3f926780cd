"""Dependency providers for the API routers."""

from typing import Optional
from fastapi import HTTPException, status

from ..core.eval_runner import EvalRunner
from ..core.orchestrator import RunOrchestrator
from ..core.tool_registry import ToolRegistry
from ..storage.repository import EvalRepository, WorkflowRepository

# Global instances (initialized by the application lifespan)
_workflow_repository: Optional[WorkflowRepository] = None
_eval_repository: Optional[EvalRepository] = None
_orchestrator: Optional[RunOrchestrator] = None
_eval_runner: Optional[EvalRunner] = None
_tool_registry: Optional[ToolRegistry] = None


def init_dependencies(
    workflow_repository: WorkflowRepository,
    eval_repository: EvalRepository,
    orchestrator: RunOrchestrator,
    eval_runner: EvalRunner,
    tool_registry: ToolRegistry
):
    """Initialize the global dependencies."""
    global _workflow_repository, _eval_repository, _orchestrator, _eval_runner, _tool_registry
    _workflow_repository = workflow_repository
    _eval_repository = eval_repository
    _orchestrator = orchestrator
    _eval_runner = eval_runner
    _tool_registry = tool_registry


def _not_initialized(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"{component} not initialized"
    )


def get_workflow_repository() -> WorkflowRepository:
    """Dependency to get the workflow repository."""
    if _workflow_repository is None:
        raise _not_initialized("Workflow repository")
    return _workflow_repository


def get_eval_repository() -> EvalRepository:
    """Dependency to get the eval repository."""
    if _eval_repository is None:
        raise _not_initialized("Eval repository")
    return _eval_repository


def get_orchestrator() -> RunOrchestrator:
    """Dependency to get the run orchestrator."""
    if _orchestrator is None:
        raise _not_initialized("Run orchestrator")
    return _orchestrator


def get_eval_runner() -> EvalRunner:
    """Dependency to get the eval runner."""
    if _eval_runner is None:
        raise _not_initialized("Eval runner")
    return _eval_runner


def get_tool_registry() -> ToolRegistry:
    """Dependency to get the tool registry."""
    if _tool_registry is None:
        raise _not_initialized("Tool registry")
    return _tool_registry
