"""Workflow and run endpoints."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from ..core.exceptions import NotFoundError
from ..core.logging import get_logger
from ..core.orchestrator import RunOrchestrator
from ..models.core import WorkflowRecord, WorkflowRun
from ..seed import seed_all
from ..storage.repository import EvalRepository, WorkflowRepository
from .dependencies import get_eval_repository, get_orchestrator, get_workflow_repository

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/workflows", tags=["workflows"])


class CreateWorkflowRequest(BaseModel):
    """Request model for creating a workflow."""
    slug: str = Field(..., min_length=1, description="Slug, unique within the environment")
    name: str = Field(..., min_length=1, description="Display name")
    definition_json: Dict[str, Any] = Field(..., description="Workflow definition")


class UpdateWorkflowRequest(BaseModel):
    """Request model for storing a new workflow definition version."""
    definition_json: Dict[str, Any] = Field(..., description="New workflow definition")
    name: Optional[str] = Field(None, description="New display name")


class RunWorkflowRequest(BaseModel):
    """Request model for starting a run."""
    input: Optional[Any] = Field(None, description="Run input; reused from original_run_id when omitted")
    user_id: Optional[str] = Field(None, description="Caller identifier")
    from_step_id: Optional[str] = Field(None, description="Step to resume from")
    original_run_id: Optional[str] = Field(None, description="Run whose earlier step outputs are reused")


class SeedResponse(BaseModel):
    """Response model for seeding."""
    message: str
    workflows: List[WorkflowRecord]
    eval_ids: List[str]


def _require_workflow(repository: WorkflowRepository, slug: str) -> WorkflowRecord:
    workflow = repository.get_workflow_by_slug(slug)
    if workflow is None:
        raise NotFoundError("Workflow", slug)
    return workflow


# Run routes are declared before the slug routes so "runs" is never taken for a slug.

@router.get(
    "/runs/{run_id}",
    response_model=WorkflowRun,
    summary="Get a workflow run",
    description="Return a run together with its step records in execution order"
)
async def get_run(
    run_id: str,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> WorkflowRun:
    run = repository.get_workflow_run(run_id)
    if run is None:
        raise NotFoundError("Workflow run", run_id)
    return run


@router.post(
    "/runs/{run_id}/cancel",
    response_model=WorkflowRun,
    summary="Cancel a workflow run",
    description="Cancel a pending or running run; remaining steps are skipped"
)
async def cancel_run(
    run_id: str,
    orchestrator: RunOrchestrator = Depends(get_orchestrator)
) -> WorkflowRun:
    logger.info(f"Cancelling run: {run_id}")
    return await orchestrator.cancel(run_id)


@router.get("", response_model=List[WorkflowRecord], summary="List workflows")
async def list_workflows(
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> List[WorkflowRecord]:
    return repository.list_workflows()


@router.post(
    "",
    response_model=WorkflowRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Validate a definition and store it as version 1 of a new workflow"
)
async def create_workflow(
    request: CreateWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> WorkflowRecord:
    """
    Create a new workflow.

    Raises:
        ConfigurationError: If the definition is invalid or the slug is taken (400)
    """
    logger.info(f"Creating workflow: {request.slug}")
    return repository.create_workflow(request.slug, request.name, request.definition_json)


@router.post("/seed", response_model=SeedResponse, summary="Seed the built-in workflows and evals")
async def seed_workflows(
    repository: WorkflowRepository = Depends(get_workflow_repository),
    eval_repository: EvalRepository = Depends(get_eval_repository)
) -> SeedResponse:
    seeded = seed_all(repository, eval_repository)
    return SeedResponse(
        message="Seed data loaded",
        workflows=seeded["workflows"],
        eval_ids=[workflow_eval.id for workflow_eval in seeded["evals"]],
    )


@router.get("/{slug}", response_model=WorkflowRecord, summary="Get a workflow by slug")
async def get_workflow(
    slug: str,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> WorkflowRecord:
    return _require_workflow(repository, slug)


@router.put(
    "/{slug}",
    response_model=WorkflowRecord,
    summary="Update a workflow definition",
    description="Store a new definition version; earlier versions stay available to their runs"
)
async def update_workflow(
    slug: str,
    request: UpdateWorkflowRequest,
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> WorkflowRecord:
    workflow = _require_workflow(repository, slug)
    logger.info(f"Updating workflow {slug} from version {workflow.version}")
    return repository.update_workflow(workflow.id, request.definition_json, name=request.name)


@router.get("/{slug}/runs", response_model=List[WorkflowRun], summary="List recent runs of a workflow")
async def list_runs(
    slug: str,
    limit: int = Query(50, ge=1, le=500, description="Maximum number of runs to return"),
    repository: WorkflowRepository = Depends(get_workflow_repository)
) -> List[WorkflowRun]:
    workflow = _require_workflow(repository, slug)
    return repository.get_workflow_runs(workflow.id, limit=limit)


@router.post(
    "/{slug}/run",
    response_model=WorkflowRun,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a workflow",
    description=(
        "Start a run and return it pending (202), or wait for it to finish with ?wait=true (200). "
        "Pass from_step_id and original_run_id to resume from a step."
    )
)
async def run_workflow(
    slug: str,
    request: RunWorkflowRequest,
    response: Response,
    wait: bool = Query(False, description="Wait for the run to reach a terminal state"),
    repository: WorkflowRepository = Depends(get_workflow_repository),
    orchestrator: RunOrchestrator = Depends(get_orchestrator)
) -> WorkflowRun:
    """
    Start a workflow run.

    Raises:
        NotFoundError: If the workflow does not exist (404)
        InvalidInputError: If no input is given and there is no original run (400)
        ConfigurationError: If the resume request cannot be satisfied (400)
    """
    workflow = _require_workflow(repository, slug)
    run = await orchestrator.start(
        workflow,
        input_json=request.input,
        from_step_id=request.from_step_id,
        original_run_id=request.original_run_id,
        user_id=request.user_id,
    )
    if not wait:
        return run

    response.status_code = status.HTTP_200_OK
    return await orchestrator.wait(run.id)
