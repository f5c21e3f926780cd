"""SQLAlchemy database models for the workflow runner."""

import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, Column, String, DateTime, Text, JSON, Integer, Float, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from .database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowModel(Base):
    """A workflow and its current definition."""
    __tablename__ = "workflows"
    __table_args__ = (UniqueConstraint("slug", "env", name="uq_workflows_slug_env"),)

    id = Column(String, primary_key=True, default=_new_id)
    env = Column(String, nullable=False, index=True)
    slug = Column(String, nullable=False)
    name = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    definition_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    definitions = relationship(
        "WorkflowDefinitionModel", back_populates="workflow",
        order_by="WorkflowDefinitionModel.version"
    )
    runs = relationship("WorkflowRunModel", back_populates="workflow")
    evals = relationship("WorkflowEvalModel", back_populates="workflow")


class WorkflowDefinitionModel(Base):
    """Immutable snapshot of a workflow definition at one version."""
    __tablename__ = "workflow_definitions"
    __table_args__ = (UniqueConstraint("workflow_id", "version", name="uq_definitions_workflow_version"),)

    id = Column(String, primary_key=True, default=_new_id)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    env = Column(String, nullable=False)
    version = Column(Integer, nullable=False)
    definition_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    workflow = relationship("WorkflowModel", back_populates="definitions")


class WorkflowRunModel(Base):
    """One execution attempt of a workflow."""
    __tablename__ = "workflow_runs"
    __table_args__ = (Index("ix_workflow_runs_workflow_created", "workflow_id", "created_at"),)

    id = Column(String, primary_key=True, default=_new_id)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False)
    workflow_version = Column(Integer, nullable=False)
    env = Column(String, nullable=False, index=True)
    user_id = Column(String)
    status = Column(String, nullable=False)  # pending, running, completed, failed, partial, cancelled
    input_json = Column(JSON)
    output_json = Column(JSON)
    cost_estimate = Column(Float)
    actual_cost = Column(Float)
    error_message = Column(Text)
    resumed_from_run_id = Column(String, ForeignKey("workflow_runs.id"))
    from_step_id = Column(String)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    workflow = relationship("WorkflowModel", back_populates="runs")
    steps = relationship(
        "WorkflowRunStepModel", back_populates="run",
        order_by="WorkflowRunStepModel.position"
    )


class WorkflowRunStepModel(Base):
    """Execution record of one step within a run."""
    __tablename__ = "workflow_run_steps"
    __table_args__ = (UniqueConstraint("run_id", "position", name="uq_run_steps_run_position"),)

    id = Column(String, primary_key=True, default=_new_id)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False, index=True)
    env = Column(String, nullable=False)
    position = Column(Integer, nullable=False)
    step_id = Column(String, nullable=False)
    step_name = Column(String, nullable=False)
    step_type = Column(String, nullable=False)  # llm, tool, transform, gate
    status = Column(String, nullable=False)  # pending, running, completed, failed, skipped
    model = Column(String)
    prompt_system = Column(Text)
    prompt_user = Column(Text)
    input_json = Column(JSON)
    output_json = Column(JSON)
    tool_trace_json = Column(JSON)
    error_message = Column(Text)
    error_type = Column(String)
    token_count = Column(Integer)
    cost = Column(Float)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))

    run = relationship("WorkflowRunModel", back_populates="steps")


class WorkflowEvalModel(Base):
    """A named set of eval cases for one workflow."""
    __tablename__ = "workflow_evals"

    id = Column(String, primary_key=True, default=_new_id)
    workflow_id = Column(String, ForeignKey("workflows.id"), nullable=False, index=True)
    env = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    cases_json = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    workflow = relationship("WorkflowModel", back_populates="evals")
    runs = relationship("WorkflowEvalRunModel", back_populates="eval")


class WorkflowEvalRunModel(Base):
    """Immutable result of one eval pass."""
    __tablename__ = "workflow_eval_runs"

    id = Column(String, primary_key=True, default=_new_id)
    eval_id = Column(String, ForeignKey("workflow_evals.id"), nullable=False, index=True)
    env = Column(String, nullable=False)
    results_json = Column(JSON, nullable=False)
    score = Column(Float, nullable=False)
    passed = Column(Boolean, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    eval = relationship("WorkflowEvalModel", back_populates="runs")
