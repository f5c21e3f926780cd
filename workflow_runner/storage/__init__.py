"""Database models and storage layer."""

from .database import Base, create_tables, drop_tables, init_database, reset_database_engine
from .models import (
    WorkflowModel,
    WorkflowDefinitionModel,
    WorkflowRunModel,
    WorkflowRunStepModel,
    WorkflowEvalModel,
    WorkflowEvalRunModel,
)
from .repository import WorkflowRepository, EvalRepository

__all__ = [
    "Base",
    "reset_database_engine",
    "create_tables",
    "drop_tables",
    "init_database",
    "WorkflowModel",
    "WorkflowDefinitionModel",
    "WorkflowRunModel",
    "WorkflowRunStepModel",
    "WorkflowEvalModel",
    "WorkflowEvalRunModel",
    "WorkflowRepository",
    "EvalRepository",
]
