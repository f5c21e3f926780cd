"""Tests for env-scoped persistence."""

import pytest

from workflow_runner.config import AppEnv
from workflow_runner.core.exceptions import (
    ConfigurationError, EnvironmentScopeError, InvalidTransitionError, NotFoundError
)
from workflow_runner.models.core import EvalResults, RunStatus, StepStatus
from workflow_runner.storage.repository import EvalRepository, WorkflowRepository


DEFINITION = {
    "name": "Pass through",
    "steps": [{"id": "copy", "name": "Copy", "type": "transform"}],
}


@pytest.fixture
def prod_repository(session_factory) -> WorkflowRepository:
    return WorkflowRepository(AppEnv.PROD, session_factory)


@pytest.fixture
def workflow(workflow_repository):
    return workflow_repository.create_workflow("copy", "Copy", DEFINITION)


class TestWorkflows:
    """Test cases for workflow records and versioning."""

    def test_create_and_get(self, workflow_repository, workflow):
        assert workflow.version == 1
        assert workflow.env == "dev"
        assert workflow_repository.get_workflow(workflow.id).slug == "copy"
        assert workflow_repository.get_workflow_by_slug("copy").id == workflow.id
        assert workflow.definition_json["steps"][0]["type"] == "transform"

    def test_invalid_definition_is_rejected(self, workflow_repository):
        with pytest.raises(ConfigurationError) as exc_info:
            workflow_repository.create_workflow("bad", "Bad", {"name": "Bad", "steps": [{"id": "x", "name": "X", "type": "shell"}]})
        assert exc_info.value.details["validation_errors"]
        assert workflow_repository.get_workflow_by_slug("bad") is None

    def test_duplicate_slug_in_same_env(self, workflow_repository, workflow):
        with pytest.raises(ConfigurationError):
            workflow_repository.create_workflow("copy", "Copy again", DEFINITION)

    def test_same_slug_in_other_env(self, prod_repository, workflow):
        other = prod_repository.create_workflow("copy", "Copy", DEFINITION)
        assert other.env == "prod"
        assert other.id != workflow.id

    def test_update_creates_new_version(self, workflow_repository, workflow):
        changed = {**DEFINITION, "steps": [{"id": "copy2", "name": "Copy 2", "type": "transform"}]}

        updated = workflow_repository.update_workflow(workflow.id, changed, name="Copy v2")

        assert updated.version == 2
        assert updated.name == "Copy v2"
        assert workflow_repository.get_workflow_definition(workflow.id, 1)["steps"][0]["id"] == "copy"
        assert workflow_repository.get_workflow_definition(workflow.id)["steps"][0]["id"] == "copy2"
        assert workflow_repository.get_workflow_definition(workflow.id, 7) is None

    def test_update_missing_workflow(self, workflow_repository):
        with pytest.raises(NotFoundError):
            workflow_repository.update_workflow("missing", DEFINITION)

    def test_list_is_env_scoped(self, workflow_repository, prod_repository, workflow):
        prod_repository.create_workflow("other", "Other", DEFINITION)
        assert [w.slug for w in workflow_repository.list_workflows()] == ["copy"]
        assert [w.slug for w in prod_repository.list_workflows()] == ["other"]


class TestEnvironmentScope:
    """Test cases for cross-env access."""

    def test_reading_other_env_record_raises(self, prod_repository, workflow):
        with pytest.raises(EnvironmentScopeError):
            prod_repository.get_workflow(workflow.id)

    def test_slug_lookup_does_not_cross_envs(self, prod_repository, workflow):
        assert prod_repository.get_workflow_by_slug("copy") is None

    def test_runs_are_scoped(self, workflow_repository, prod_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {"a": 1})
        with pytest.raises(EnvironmentScopeError):
            prod_repository.get_workflow_run(run.id)
        with pytest.raises(EnvironmentScopeError):
            prod_repository.update_workflow_run(run.id, {"status": RunStatus.RUNNING})

    def test_cannot_run_other_env_workflow(self, prod_repository, workflow):
        with pytest.raises(EnvironmentScopeError):
            prod_repository.create_workflow_run(workflow.id, 1, {})

    def test_unknown_env_values_map_to_prod(self, session_factory):
        assert WorkflowRepository("staging", session_factory).env == "prod"


class TestRunTransitions:
    """Test cases for run and step status transitions."""

    def test_run_walks_forward(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {"a": 1}, user_id="u")
        assert run.status == RunStatus.PENDING

        run = workflow_repository.update_workflow_run(run.id, {"status": RunStatus.RUNNING})
        run = workflow_repository.update_workflow_run(run.id, {"status": "completed", "output_json": {"a": 1}})

        assert run.status == RunStatus.COMPLETED
        assert run.output_json == {"a": 1}

    def test_terminal_run_cannot_change_status(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        workflow_repository.update_workflow_run(run.id, {"status": RunStatus.CANCELLED})

        with pytest.raises(InvalidTransitionError):
            workflow_repository.update_workflow_run(run.id, {"status": RunStatus.RUNNING})
        assert workflow_repository.get_workflow_run(run.id).status == RunStatus.CANCELLED

    def test_pending_run_cannot_complete_directly(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        with pytest.raises(InvalidTransitionError):
            workflow_repository.update_workflow_run(run.id, {"status": RunStatus.COMPLETED})

    def test_same_status_update_is_a_no_op(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        workflow_repository.update_workflow_run(run.id, {"status": RunStatus.CANCELLED})
        run = workflow_repository.update_workflow_run(run.id, {"status": RunStatus.CANCELLED, "actual_cost": 0.5})
        assert run.actual_cost == 0.5

    def test_only_whitelisted_fields_update(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        with pytest.raises(ConfigurationError):
            workflow_repository.update_workflow_run(run.id, {"workflow_id": "other"})
        with pytest.raises(ConfigurationError):
            workflow_repository.update_workflow_run(run.id, {"input_json": {"x": 1}})

    def test_step_transitions(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        step = workflow_repository.create_workflow_run_step(run.id, 0, "copy", "Copy", "transform")

        with pytest.raises(InvalidTransitionError):
            workflow_repository.update_workflow_run_step(step.id, {"status": StepStatus.COMPLETED})

        workflow_repository.update_workflow_run_step(step.id, {"status": StepStatus.RUNNING})
        step = workflow_repository.update_workflow_run_step(step.id, {
            "status": StepStatus.FAILED, "error_type": "network", "error_message": "reset"
        })
        assert step.status == StepStatus.FAILED
        assert step.error_type == "network"

        with pytest.raises(InvalidTransitionError):
            workflow_repository.update_workflow_run_step(step.id, {"status": StepStatus.SKIPPED})

    def test_steps_are_ordered_by_position(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        workflow_repository.create_workflow_run_step(run.id, 1, "second", "Second", "transform")
        workflow_repository.create_workflow_run_step(run.id, 0, "first", "First", "transform")

        assert [s.step_id for s in workflow_repository.get_workflow_run_steps(run.id)] == ["first", "second"]
        assert [s.step_id for s in workflow_repository.get_workflow_run(run.id).steps] == ["first", "second"]

    def test_run_listing_excludes_steps(self, workflow_repository, workflow):
        run = workflow_repository.create_workflow_run(workflow.id, 1, {})
        workflow_repository.create_workflow_run_step(run.id, 0, "copy", "Copy", "transform")

        runs = workflow_repository.get_workflow_runs(workflow.id)

        assert [r.id for r in runs] == [run.id]
        assert runs[0].steps == []

    def test_missing_run(self, workflow_repository):
        assert workflow_repository.get_workflow_run("missing") is None
        with pytest.raises(NotFoundError):
            workflow_repository.update_workflow_run("missing", {"status": RunStatus.RUNNING})


class TestEvals:
    """Test cases for eval records."""

    def test_create_and_list_evals(self, eval_repository, workflow):
        cases = [{"id": "c1", "name": "Case", "input": {"q": 1}, "constraints": {"min_feeds": 1}}]

        record = eval_repository.create_workflow_eval(workflow.id, "Smoke", cases)

        assert record.cases_json[0].constraints.min_feeds == 1
        assert eval_repository.get_workflow_eval(record.id).cases_json == record.cases_json
        assert [e.id for e in eval_repository.get_workflow_evals(workflow.id)] == [record.id]

    def test_eval_for_missing_workflow(self, eval_repository):
        with pytest.raises(NotFoundError):
            eval_repository.create_workflow_eval("missing", "Smoke", [])

    def test_eval_runs_are_recorded(self, eval_repository, workflow):
        record = eval_repository.create_workflow_eval(workflow.id, "Smoke", [])
        results = EvalResults(overall_score=87.5, passed=True)

        eval_run = eval_repository.create_workflow_eval_run(record.id, results)

        assert eval_run.score == 87.5
        assert eval_run.passed is True
        assert eval_repository.get_workflow_eval_run(eval_run.id).results_json == results
        assert [r.id for r in eval_repository.get_workflow_eval_runs(record.id)] == [eval_run.id]

    def test_eval_scope(self, session_factory, eval_repository, workflow):
        record = eval_repository.create_workflow_eval(workflow.id, "Smoke", [])
        with pytest.raises(EnvironmentScopeError):
            EvalRepository(AppEnv.PROD, session_factory).get_workflow_eval(record.id)
