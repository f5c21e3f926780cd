"""Eval endpoints."""

from typing import List
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.eval_runner import EvalRunner
from ..core.exceptions import NotFoundError
from ..core.logging import get_logger
from ..models.core import EvalCase, WorkflowEvalRecord, WorkflowEvalRun
from ..storage.repository import EvalRepository
from .dependencies import get_eval_repository, get_eval_runner

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/evals", tags=["evals"])


class CreateEvalRequest(BaseModel):
    """Request model for creating an eval."""
    workflow_id: str = Field(..., description="Workflow the cases run against")
    name: str = Field(..., min_length=1, description="Eval name")
    cases: List[EvalCase] = Field(default_factory=list, description="Eval cases")


@router.post(
    "",
    response_model=WorkflowEvalRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create an eval"
)
async def create_eval(
    request: CreateEvalRequest,
    repository: EvalRepository = Depends(get_eval_repository)
) -> WorkflowEvalRecord:
    logger.info(f"Creating eval '{request.name}' for workflow {request.workflow_id}")
    return repository.create_workflow_eval(request.workflow_id, request.name, request.cases)


@router.get("/runs/{eval_run_id}", response_model=WorkflowEvalRun, summary="Get an eval run")
async def get_eval_run(
    eval_run_id: str,
    repository: EvalRepository = Depends(get_eval_repository)
) -> WorkflowEvalRun:
    eval_run = repository.get_workflow_eval_run(eval_run_id)
    if eval_run is None:
        raise NotFoundError("Eval run", eval_run_id)
    return eval_run


@router.get(
    "/workflow/{workflow_id}",
    response_model=List[WorkflowEvalRecord],
    summary="List the evals of a workflow"
)
async def list_workflow_evals(
    workflow_id: str,
    repository: EvalRepository = Depends(get_eval_repository)
) -> List[WorkflowEvalRecord]:
    return repository.get_workflow_evals(workflow_id)


@router.get("/{eval_id}", response_model=WorkflowEvalRecord, summary="Get an eval")
async def get_eval(
    eval_id: str,
    repository: EvalRepository = Depends(get_eval_repository)
) -> WorkflowEvalRecord:
    workflow_eval = repository.get_workflow_eval(eval_id)
    if workflow_eval is None:
        raise NotFoundError("Eval", eval_id)
    return workflow_eval


@router.post(
    "/{eval_id}/run",
    response_model=WorkflowEvalRun,
    summary="Run an eval",
    description="Run every case through the workflow, score the outputs and store the results"
)
async def run_eval(
    eval_id: str,
    eval_runner: EvalRunner = Depends(get_eval_runner)
) -> WorkflowEvalRun:
    logger.info(f"Running eval: {eval_id}")
    return await eval_runner.run_eval(eval_id)


@router.get("/{eval_id}/runs", response_model=List[WorkflowEvalRun], summary="List recent eval runs")
async def list_eval_runs(
    eval_id: str,
    limit: int = Query(20, ge=1, le=200, description="Maximum number of eval runs to return"),
    repository: EvalRepository = Depends(get_eval_repository)
) -> List[WorkflowEvalRun]:
    if repository.get_workflow_eval(eval_id) is None:
        raise NotFoundError("Eval", eval_id)
    return repository.get_workflow_eval_runs(eval_id, limit=limit)
