"""Env-scoped persistence for workflows, runs, run steps and evals."""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Type, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import AppEnv
from ..core.exceptions import (
    ConfigurationError, EnvironmentScopeError, NotFoundError, StorageError
)
from ..core.logging import get_logger
from ..models.core import (
    EvalCase, EvalResults, RunStatus, StepStatus, WorkflowEvalRecord, WorkflowEvalRun,
    WorkflowRecord, WorkflowRun, WorkflowRunStep, check_run_transition, check_step_transition,
    parse_definition
)
from .database import Base, SessionFactory
from .models import (
    WorkflowDefinitionModel, WorkflowEvalModel, WorkflowEvalRunModel, WorkflowModel,
    WorkflowRunModel, WorkflowRunStepModel
)

logger = get_logger(__name__)

RUN_UPDATABLE_FIELDS = frozenset({
    "status", "output_json", "cost_estimate", "actual_cost", "error_message",
    "started_at", "finished_at",
})

STEP_UPDATABLE_FIELDS = frozenset({
    "status", "model", "prompt_system", "prompt_user", "input_json", "output_json",
    "tool_trace_json", "error_message", "error_type", "token_count", "cost",
    "started_at", "finished_at",
})


def _plain(value: Any) -> Any:
    """Unwrap enums so they can be stored in string columns."""
    return getattr(value, "value", value)


class _ScopedRepository:
    """Shared session handling and env checks."""

    def __init__(self, env: Union[AppEnv, str], session_factory: SessionFactory):
        self.env = AppEnv.from_value(_plain(env)).value
        self._session_factory = session_factory

    @contextmanager
    def _session_scope(self, operation: str, table: Optional[str] = None) -> Iterator[Session]:
        """Open a session, commit on success and roll back on failure."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage error during {operation}: {str(e)}")
            raise StorageError(
                f"Failed to {operation.replace('_', ' ')}: {str(e)}",
                operation=operation,
                table=table
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _load(self, session: Session, model: Type[Base], record_id: str, resource: str):
        """Load a record by id, or None. Raises if it belongs to another env."""
        instance = session.get(model, record_id)
        if instance is None:
            return None
        if instance.env != self.env:
            raise EnvironmentScopeError(resource, record_id, self.env)
        return instance

    def _require(self, session: Session, model: Type[Base], record_id: str, resource: str):
        instance = self._load(session, model, record_id, resource)
        if instance is None:
            raise NotFoundError(resource, record_id)
        return instance


class WorkflowRepository(_ScopedRepository):
    """Workflows, their definition snapshots, runs and run steps."""

    # Workflows

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        with self._session_scope("get_workflow", "workflows") as session:
            workflow = self._load(session, WorkflowModel, workflow_id, "Workflow")
            return WorkflowRecord.model_validate(workflow) if workflow else None

    def get_workflow_by_slug(self, slug: str) -> Optional[WorkflowRecord]:
        with self._session_scope("get_workflow_by_slug", "workflows") as session:
            workflow = session.scalars(
                select(WorkflowModel).where(WorkflowModel.slug == slug, WorkflowModel.env == self.env)
            ).first()
            return WorkflowRecord.model_validate(workflow) if workflow else None

    def list_workflows(self) -> List[WorkflowRecord]:
        with self._session_scope("list_workflows", "workflows") as session:
            workflows = session.scalars(
                select(WorkflowModel).where(WorkflowModel.env == self.env).order_by(WorkflowModel.slug)
            ).all()
            return [WorkflowRecord.model_validate(w) for w in workflows]

    def create_workflow(self, slug: str, name: str, definition_json: Dict[str, Any]) -> WorkflowRecord:
        """
        Create a workflow at version 1 together with its first definition snapshot.

        Raises:
            ConfigurationError: If the definition is invalid or the slug is taken in this env
        """
        definition = parse_definition(definition_json).model_dump(mode="json", exclude_none=True)
        try:
            with self._session_scope("create_workflow", "workflows") as session:
                workflow = WorkflowModel(
                    env=self.env, slug=slug, name=name, version=1, definition_json=definition
                )
                session.add(workflow)
                session.flush()
                session.add(WorkflowDefinitionModel(
                    workflow_id=workflow.id, env=self.env, version=1, definition_json=definition
                ))
                session.flush()
                record = WorkflowRecord.model_validate(workflow)
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConfigurationError(
                    f"Workflow slug '{slug}' already exists", config_key="slug"
                ) from e
            raise
        logger.info(f"Created workflow {slug} ({record.id}) in env {self.env}")
        return record

    def update_workflow(
        self,
        workflow_id: str,
        definition_json: Dict[str, Any],
        name: Optional[str] = None
    ) -> WorkflowRecord:
        """Store a new definition version. Earlier snapshots are left untouched."""
        definition = parse_definition(definition_json).model_dump(mode="json", exclude_none=True)
        with self._session_scope("update_workflow", "workflows") as session:
            workflow = self._require(session, WorkflowModel, workflow_id, "Workflow")
            workflow.version = workflow.version + 1
            workflow.definition_json = definition
            if name:
                workflow.name = name
            session.add(WorkflowDefinitionModel(
                workflow_id=workflow.id, env=self.env, version=workflow.version,
                definition_json=definition
            ))
            session.flush()
            record = WorkflowRecord.model_validate(workflow)
        logger.info(f"Updated workflow {record.slug} to version {record.version}")
        return record

    def get_workflow_definition(self, workflow_id: str, version: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """Definition JSON at a version, or the current one."""
        with self._session_scope("get_workflow_definition", "workflow_definitions") as session:
            workflow = self._load(session, WorkflowModel, workflow_id, "Workflow")
            if workflow is None:
                return None
            if version is None or version == workflow.version:
                return workflow.definition_json
            snapshot = session.scalars(
                select(WorkflowDefinitionModel).where(
                    WorkflowDefinitionModel.workflow_id == workflow_id,
                    WorkflowDefinitionModel.version == version,
                    WorkflowDefinitionModel.env == self.env
                )
            ).first()
            return snapshot.definition_json if snapshot else None

    # Runs

    def create_workflow_run(
        self,
        workflow_id: str,
        workflow_version: int,
        input_json: Any,
        user_id: Optional[str] = None,
        cost_estimate: Optional[float] = None,
        resumed_from_run_id: Optional[str] = None,
        from_step_id: Optional[str] = None
    ) -> WorkflowRun:
        with self._session_scope("create_workflow_run", "workflow_runs") as session:
            self._require(session, WorkflowModel, workflow_id, "Workflow")
            run = WorkflowRunModel(
                workflow_id=workflow_id,
                workflow_version=workflow_version,
                env=self.env,
                user_id=user_id,
                status=RunStatus.PENDING.value,
                input_json=input_json,
                cost_estimate=cost_estimate,
                resumed_from_run_id=resumed_from_run_id,
                from_step_id=from_step_id,
            )
            session.add(run)
            session.flush()
            return WorkflowRun.model_validate(run)

    def get_workflow_run(self, run_id: str, include_steps: bool = True) -> Optional[WorkflowRun]:
        with self._session_scope("get_workflow_run", "workflow_runs") as session:
            run = self._load(session, WorkflowRunModel, run_id, "Workflow run")
            if run is None:
                return None
            record = WorkflowRun.model_validate(run)
            if not include_steps:
                record.steps = []
            return record

    def get_workflow_runs(self, workflow_id: str, limit: int = 50) -> List[WorkflowRun]:
        """Most recent runs first, without their steps."""
        with self._session_scope("get_workflow_runs", "workflow_runs") as session:
            runs = session.scalars(
                select(WorkflowRunModel)
                .where(WorkflowRunModel.workflow_id == workflow_id, WorkflowRunModel.env == self.env)
                .order_by(WorkflowRunModel.created_at.desc())
                .limit(limit)
            ).all()
            return [WorkflowRun.model_validate(run).model_copy(update={"steps": []}) for run in runs]

    def update_workflow_run(self, run_id: str, updates: Dict[str, Any]) -> WorkflowRun:
        """
        Apply field updates to a run.

        Raises:
            InvalidTransitionError: If a status change is not in the run transition table
            ConfigurationError: If a field is not updatable
        """
        self._check_fields(updates, RUN_UPDATABLE_FIELDS, "run")
        with self._session_scope("update_workflow_run", "workflow_runs") as session:
            run = self._require(session, WorkflowRunModel, run_id, "Workflow run")
            for field, value in updates.items():
                if field == "status":
                    value = _plain(value)
                    if value == run.status:
                        continue
                    value = check_run_transition(run.status, value).value
                setattr(run, field, value)
            session.flush()
            return WorkflowRun.model_validate(run)

    # Run steps

    def create_workflow_run_step(
        self,
        run_id: str,
        position: int,
        step_id: str,
        step_name: str,
        step_type: str,
        model: Optional[str] = None
    ) -> WorkflowRunStep:
        with self._session_scope("create_workflow_run_step", "workflow_run_steps") as session:
            self._require(session, WorkflowRunModel, run_id, "Workflow run")
            step = WorkflowRunStepModel(
                run_id=run_id,
                env=self.env,
                position=position,
                step_id=step_id,
                step_name=step_name,
                step_type=_plain(step_type),
                status=StepStatus.PENDING.value,
                model=model,
            )
            session.add(step)
            session.flush()
            return WorkflowRunStep.model_validate(step)

    def get_workflow_run_steps(self, run_id: str) -> List[WorkflowRunStep]:
        with self._session_scope("get_workflow_run_steps", "workflow_run_steps") as session:
            self._require(session, WorkflowRunModel, run_id, "Workflow run")
            steps = session.scalars(
                select(WorkflowRunStepModel)
                .where(WorkflowRunStepModel.run_id == run_id, WorkflowRunStepModel.env == self.env)
                .order_by(WorkflowRunStepModel.position)
            ).all()
            return [WorkflowRunStep.model_validate(step) for step in steps]

    def update_workflow_run_step(self, step_record_id: str, updates: Dict[str, Any]) -> WorkflowRunStep:
        """
        Apply field updates to a run step.

        Raises:
            InvalidTransitionError: If a status change is not in the step transition table
        """
        self._check_fields(updates, STEP_UPDATABLE_FIELDS, "step")
        with self._session_scope("update_workflow_run_step", "workflow_run_steps") as session:
            step = self._require(session, WorkflowRunStepModel, step_record_id, "Workflow run step")
            for field, value in updates.items():
                if field == "status":
                    value = _plain(value)
                    if value == step.status:
                        continue
                    value = check_step_transition(step.status, value).value
                elif field == "error_type":
                    value = _plain(value)
                setattr(step, field, value)
            session.flush()
            return WorkflowRunStep.model_validate(step)

    @staticmethod
    def _check_fields(updates: Dict[str, Any], allowed: frozenset, entity: str):
        unknown = sorted(set(updates) - allowed)
        if unknown:
            raise ConfigurationError(
                f"Fields not updatable on {entity}: {', '.join(unknown)}",
                validation_errors=unknown
            )


class EvalRepository(_ScopedRepository):
    """Eval definitions and their immutable result records."""

    def create_workflow_eval(self, workflow_id: str, name: str, cases: List[Any]) -> WorkflowEvalRecord:
        validated = [EvalCase.model_validate(case) for case in cases]
        with self._session_scope("create_workflow_eval", "workflow_evals") as session:
            self._require(session, WorkflowModel, workflow_id, "Workflow")
            eval_model = WorkflowEvalModel(
                workflow_id=workflow_id,
                env=self.env,
                name=name,
                version=1,
                cases_json=[case.model_dump(mode="json", exclude_none=True) for case in validated],
            )
            session.add(eval_model)
            session.flush()
            record = WorkflowEvalRecord.model_validate(eval_model)
        logger.info(f"Created eval '{name}' ({record.id}) with {len(validated)} cases")
        return record

    def get_workflow_eval(self, eval_id: str) -> Optional[WorkflowEvalRecord]:
        with self._session_scope("get_workflow_eval", "workflow_evals") as session:
            eval_model = self._load(session, WorkflowEvalModel, eval_id, "Eval")
            return WorkflowEvalRecord.model_validate(eval_model) if eval_model else None

    def get_workflow_evals(self, workflow_id: str) -> List[WorkflowEvalRecord]:
        with self._session_scope("get_workflow_evals", "workflow_evals") as session:
            evals = session.scalars(
                select(WorkflowEvalModel)
                .where(WorkflowEvalModel.workflow_id == workflow_id, WorkflowEvalModel.env == self.env)
                .order_by(WorkflowEvalModel.created_at)
            ).all()
            return [WorkflowEvalRecord.model_validate(e) for e in evals]

    def create_workflow_eval_run(self, eval_id: str, results: EvalResults) -> WorkflowEvalRun:
        with self._session_scope("create_workflow_eval_run", "workflow_eval_runs") as session:
            self._require(session, WorkflowEvalModel, eval_id, "Eval")
            eval_run = WorkflowEvalRunModel(
                eval_id=eval_id,
                env=self.env,
                results_json=results.model_dump(mode="json"),
                score=results.overall_score,
                passed=results.passed,
                created_at=datetime.now(timezone.utc),
            )
            session.add(eval_run)
            session.flush()
            return WorkflowEvalRun.model_validate(eval_run)

    def get_workflow_eval_run(self, eval_run_id: str) -> Optional[WorkflowEvalRun]:
        with self._session_scope("get_workflow_eval_run", "workflow_eval_runs") as session:
            eval_run = self._load(session, WorkflowEvalRunModel, eval_run_id, "Eval run")
            return WorkflowEvalRun.model_validate(eval_run) if eval_run else None

    def get_workflow_eval_runs(self, eval_id: str, limit: int = 20) -> List[WorkflowEvalRun]:
        """Most recent eval runs first."""
        with self._session_scope("get_workflow_eval_runs", "workflow_eval_runs") as session:
            runs = session.scalars(
                select(WorkflowEvalRunModel)
                .where(WorkflowEvalRunModel.eval_id == eval_id, WorkflowEvalRunModel.env == self.env)
                .order_by(WorkflowEvalRunModel.created_at.desc())
                .limit(limit)
            ).all()
            return [WorkflowEvalRun.model_validate(run) for run in runs]
