"""Run orchestration: sequencing, resume, cancellation and finalization."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from ..models.core import (
    CANCELLABLE_RUN_STATUSES, RunStatus, StepError, StepResult, StepStatus, StepType,
    WorkflowDefinition, WorkflowRecord, WorkflowRun, WorkflowRunStep, parse_definition
)
from ..storage.repository import WorkflowRepository
from .cost_ledger import aggregate_costs
from .exceptions import (
    ConfigurationError, InvalidInputError, InvalidTransitionError, NotFoundError,
    WorkflowEngineError, classify_error
)
from .logging import get_logger, set_logging_context, clear_logging_context
from .paths import resolve_mapping
from .step_executor import StepExecutor

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def has_output(value: Any) -> bool:
    """True for any output other than None or an empty string, list or object."""
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return len(value) > 0
    return True


def is_partial_outcome(definition: WorkflowDefinition, failed_index: int, completed_outputs: List[Any]) -> bool:
    """
    Decide whether a failed run ends ``partial`` rather than ``failed``.

    Partial requires the failing step to be the final, non-gate step and at
    least one earlier step in this run to have completed with output.
    """
    step = definition.steps[failed_index]
    return (
        failed_index == len(definition.steps) - 1
        and step.type != StepType.GATE.value
        and any(has_output(output) for output in completed_outputs)
    )


def _is_reusable(step: Optional[WorkflowRunStep]) -> bool:
    if step is None:
        return False
    if step.status == StepStatus.COMPLETED:
        return True
    return step.status == StepStatus.SKIPPED and step.output_json is not None


class _ResumePlan:
    """Validated resume request: where to start and what to reuse."""

    def __init__(self, start_index: int, original: WorkflowRun, reused: List[WorkflowRunStep]):
        self.start_index = start_index
        self.original = original
        self.reused = reused


class RunOrchestrator:
    """Walks a workflow definition step by step and persists every transition.

    Runs execute as asyncio tasks owned by this orchestrator. Cancellation
    is cooperative and checked between steps.
    """

    def __init__(self, repository: WorkflowRepository, executor: StepExecutor):
        self.repository = repository
        self.executor = executor
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_requested: Set[str] = set()

    @property
    def active_run_ids(self) -> List[str]:
        return list(self._tasks)

    async def start(
        self,
        workflow: WorkflowRecord,
        input_json: Any = None,
        from_step_id: Optional[str] = None,
        original_run_id: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> WorkflowRun:
        """
        Create a pending run and schedule its execution.

        Args:
            workflow: Workflow to run, at its current version
            input_json: Run input; defaults to the original run's input when resuming
            from_step_id: Step to resume from; earlier steps are reused from ``original_run_id``
            original_run_id: Run whose outputs and input are reused
            user_id: Optional caller identifier

        Returns:
            The pending run with its step records

        Raises:
            ConfigurationError: If the definition is invalid or the resume request cannot be satisfied
            InvalidInputError: If no input is given and there is no original run to take it from
        """
        definition = parse_definition(workflow.definition_json)

        original = None
        if original_run_id:
            original = self._load_original_run(workflow, original_run_id)
        plan = self._plan_resume(definition, from_step_id, original) if from_step_id else None

        if input_json is None:
            if original is None:
                raise InvalidInputError("Run input is required unless original_run_id is given")
            input_json = original.input_json

        run = self.repository.create_workflow_run(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            input_json=input_json,
            user_id=user_id,
            resumed_from_run_id=original.id if plan else None,
            from_step_id=from_step_id if plan else None,
        )

        try:
            records = self._create_step_records(run.id, definition, plan)
        except Exception as e:
            logger.error(f"Failed to create step records for run {run.id}: {str(e)}")
            self._force_finalize(run.id, f"Failed to prepare run: {str(e)}")
            raise

        start_index = plan.start_index if plan else 0
        task = asyncio.create_task(
            self._execute(run.id, workflow, definition, records, start_index, input_json),
            name=f"workflow-run-{run.id}"
        )
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))

        logger.info(
            f"Started run {run.id} for workflow {workflow.slug} v{workflow.version}"
            + (f" from step {from_step_id}" if plan else "")
        )
        return self.repository.get_workflow_run(run.id)

    async def run(self, workflow: WorkflowRecord, input_json: Any = None, **kwargs) -> WorkflowRun:
        """Start a run and wait for its terminal state."""
        run = await self.start(workflow, input_json, **kwargs)
        return await self.wait(run.id)

    async def wait(self, run_id: str) -> WorkflowRun:
        """
        Wait for an in-process run to finish and return its final record.

        Cancelling the waiter does not cancel the run.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        run = self.repository.get_workflow_run(run_id)
        if run is None:
            raise NotFoundError("Workflow run", run_id)
        return run

    async def cancel(self, run_id: str) -> WorkflowRun:
        """
        Request cancellation of a pending or running run.

        The run is marked cancelled immediately; an in-flight step finishes
        and the remaining steps are skipped.

        Raises:
            NotFoundError: If the run does not exist
            InvalidTransitionError: If the run is not pending or running
        """
        run = self.repository.get_workflow_run(run_id, include_steps=False)
        if run is None:
            raise NotFoundError("Workflow run", run_id)
        if run.status not in CANCELLABLE_RUN_STATUSES:
            raise InvalidTransitionError("run", run.status.value, RunStatus.CANCELLED.value)

        self.repository.update_workflow_run(run_id, {
            "status": RunStatus.CANCELLED,
            "finished_at": _now(),
        })

        if run_id in self._tasks:
            self._cancel_requested.add(run_id)
        else:
            self._skip_pending_steps(run_id)

        logger.info(f"Cancellation requested for run {run_id}")
        return self.repository.get_workflow_run(run_id)

    async def shutdown(self):
        """Cancel in-flight runs and wait for them to be finalized."""
        tasks = list(self._tasks.values())
        if not tasks:
            return
        logger.info(f"Stopping {len(tasks)} in-flight run(s)")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Preparation

    def _load_original_run(self, workflow: WorkflowRecord, original_run_id: str) -> WorkflowRun:
        original = self.repository.get_workflow_run(original_run_id)
        if original is None:
            raise ConfigurationError(
                f"Original run not found: {original_run_id}", config_key="original_run_id"
            )
        if original.workflow_id != workflow.id:
            raise ConfigurationError(
                f"Run {original_run_id} does not belong to workflow {workflow.slug}",
                config_key="original_run_id"
            )
        return original

    def _plan_resume(
        self,
        definition: WorkflowDefinition,
        from_step_id: str,
        original: Optional[WorkflowRun]
    ) -> _ResumePlan:
        start_index = definition.step_index(from_step_id)
        if start_index < 0:
            raise ConfigurationError(f"Step not found: {from_step_id}", config_key="from_step_id")
        if original is None:
            raise ConfigurationError(
                "original_run_id is required to resume from a step", config_key="original_run_id"
            )

        original_steps = {step.step_id: step for step in original.steps}
        reused = []
        missing = []
        for step in definition.steps[:start_index]:
            record = original_steps.get(step.id)
            if _is_reusable(record):
                reused.append(record)
            else:
                missing.append(step.id)

        if missing:
            raise ConfigurationError(
                f"Original run {original.id} has no reusable output for steps: {', '.join(missing)}",
                config_key="from_step_id",
                validation_errors=[f"{step_id}: no reusable output" for step_id in missing]
            )
        return _ResumePlan(start_index, original, reused)

    def _create_step_records(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        plan: Optional[_ResumePlan]
    ) -> List[WorkflowRunStep]:
        records = []
        for position, step in enumerate(definition.steps):
            records.append(self.repository.create_workflow_run_step(
                run_id=run_id,
                position=position,
                step_id=step.id,
                step_name=step.name,
                step_type=step.type,
                model=getattr(step, "model", None),
            ))

        if plan:
            for position, original_step in enumerate(plan.reused):
                records[position] = self.repository.update_workflow_run_step(records[position].id, {
                    "status": StepStatus.SKIPPED,
                    "input_json": original_step.input_json,
                    "output_json": original_step.output_json,
                })
        return records

    # Execution

    async def _execute(
        self,
        run_id: str,
        workflow: WorkflowRecord,
        definition: WorkflowDefinition,
        records: List[WorkflowRunStep],
        start_index: int,
        input_json: Any
    ):
        set_logging_context(run_id=run_id, workflow_id=workflow.id, workflow_slug=workflow.slug)
        try:
            await self._execute_steps(run_id, definition, records, start_index, input_json)
        except asyncio.CancelledError:
            logger.warning(f"Run {run_id} interrupted")
            self._force_finalize(run_id, "Run interrupted by shutdown")
            raise
        except Exception as e:
            logger.error(f"Run {run_id} crashed: {str(e)}", exc_info=True)
            self._force_finalize(run_id, f"Unexpected error: {str(e)}")
        finally:
            self._cancel_requested.discard(run_id)
            clear_logging_context()

    async def _execute_steps(
        self,
        run_id: str,
        definition: WorkflowDefinition,
        records: List[WorkflowRunStep],
        start_index: int,
        input_json: Any
    ):
        context: Dict[str, Any] = {"input": input_json, "steps": {}}
        for record in records[:start_index]:
            context["steps"][record.step_id] = {
                "input": record.input_json,
                "output": record.output_json,
                "status": record.status.value,
            }

        if self._is_cancelled(run_id):
            self._skip_from(records, start_index)
            self._finalize_cancelled(run_id, [])
            return

        self.repository.update_workflow_run(run_id, {"status": RunStatus.RUNNING, "started_at": _now()})

        previous_output = records[start_index - 1].output_json if start_index > 0 else input_json
        costs: List[Optional[float]] = []
        completed_outputs: List[Any] = []

        for index in range(start_index, len(definition.steps)):
            if self._is_cancelled(run_id):
                logger.info(f"Run {run_id} cancelled before step {definition.steps[index].id}")
                self._skip_from(records, index)
                self._finalize_cancelled(run_id, costs)
                return

            step = definition.steps[index]
            record = records[index]
            set_logging_context(step_id=step.id)
            logger.info(f"Executing step {index + 1}/{len(definition.steps)}: {step.name} ({step.type})")

            resolved_input: Any = None
            try:
                resolved_input = (
                    resolve_mapping(step.input_mapping, context) if step.input_mapping else previous_output
                )
            except WorkflowEngineError as e:
                self.repository.update_workflow_run_step(record.id, {
                    "status": StepStatus.RUNNING, "started_at": _now()
                })
                result = StepResult(error=StepError(type=classify_error(e), message=str(e)))
            else:
                self.repository.update_workflow_run_step(record.id, {
                    "status": StepStatus.RUNNING,
                    "input_json": resolved_input,
                    "started_at": _now(),
                })
                result = await self.executor.execute(step, resolved_input, context)

            self._persist_step_result(record, result)
            costs.append(result.cost)
            context["steps"][step.id] = {
                "input": resolved_input,
                "output": result.output,
                "status": (StepStatus.COMPLETED if result.succeeded else StepStatus.FAILED).value,
            }

            if not result.succeeded:
                self._skip_from(records, index + 1)
                partial = is_partial_outcome(definition, index, completed_outputs)
                self._finalize(
                    run_id,
                    RunStatus.PARTIAL if partial else RunStatus.FAILED,
                    output=completed_outputs[-1] if partial else None,
                    costs=costs,
                    error_message=f"Step {step.name} failed: {result.error.message}",
                )
                return

            completed_outputs.append(result.output)
            previous_output = result.output

        self._finalize(run_id, RunStatus.COMPLETED, output=previous_output, costs=costs)

    def _persist_step_result(self, record: WorkflowRunStep, result: StepResult):
        updates: Dict[str, Any] = {
            "output_json": result.output,
            "tool_trace_json": result.trace,
            "token_count": result.token_count,
            "cost": result.cost,
            "finished_at": _now(),
        }
        if result.model:
            updates["model"] = result.model
        if result.prompt_system is not None:
            updates["prompt_system"] = result.prompt_system
        if result.prompt_user is not None:
            updates["prompt_user"] = result.prompt_user

        if result.succeeded:
            updates["status"] = StepStatus.COMPLETED
        else:
            updates["status"] = StepStatus.FAILED
            updates["error_message"] = result.error.message
            updates["error_type"] = result.error.type
        self.repository.update_workflow_run_step(record.id, updates)

    def _skip_from(self, records: List[WorkflowRunStep], index: int):
        for record in records[index:]:
            self.repository.update_workflow_run_step(record.id, {"status": StepStatus.SKIPPED})

    def _skip_pending_steps(self, run_id: str):
        for record in self.repository.get_workflow_run_steps(run_id):
            if record.status == StepStatus.PENDING:
                self.repository.update_workflow_run_step(record.id, {"status": StepStatus.SKIPPED})

    def _is_cancelled(self, run_id: str) -> bool:
        if run_id in self._cancel_requested:
            return True
        run = self.repository.get_workflow_run(run_id, include_steps=False)
        return run is not None and run.status == RunStatus.CANCELLED

    # Finalization

    def _finalize(
        self,
        run_id: str,
        status: RunStatus,
        output: Any,
        costs: List[Optional[float]],
        error_message: Optional[str] = None
    ):
        if self._is_cancelled(run_id):
            self._finalize_cancelled(run_id, costs)
            return

        updates: Dict[str, Any] = {
            "status": status,
            "output_json": output,
            "actual_cost": aggregate_costs(costs),
            "finished_at": _now(),
        }
        if error_message:
            updates["error_message"] = error_message
        self.repository.update_workflow_run(run_id, updates)
        log = logger.info if status == RunStatus.COMPLETED else logger.warning
        log(f"Run {run_id} finished {status.value}" + (f": {error_message}" if error_message else ""))

    def _finalize_cancelled(self, run_id: str, costs: List[Optional[float]]):
        """The run is already marked cancelled; record what was spent."""
        self.repository.update_workflow_run(run_id, {"actual_cost": aggregate_costs(costs)})
        logger.info(f"Run {run_id} cancelled")

    def _force_finalize(self, run_id: str, error_message: str):
        """Leave no run or step in a non-terminal state after an unexpected failure."""
        try:
            run = self.repository.get_workflow_run(run_id)
            if run is None:
                return
            for step in run.steps:
                if step.status == StepStatus.RUNNING:
                    self.repository.update_workflow_run_step(step.id, {
                        "status": StepStatus.FAILED,
                        "error_message": error_message,
                        "finished_at": _now(),
                    })
                elif step.status == StepStatus.PENDING:
                    self.repository.update_workflow_run_step(step.id, {"status": StepStatus.SKIPPED})
            if not run.is_terminal:
                self.repository.update_workflow_run(run_id, {
                    "status": RunStatus.FAILED,
                    "error_message": error_message,
                    "finished_at": _now(),
                })
        except WorkflowEngineError as e:
            logger.error(f"Could not finalize run {run_id}: {str(e)}")
