"""Core workflow runner components."""

from .exceptions import (
    WorkflowEngineError,
    ConfigurationError,
    InvalidInputError,
    MissingAPIKeyError,
    RateLimitError,
    NetworkError,
    ToolRegistryError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    EnvironmentScopeError,
    ErrorType,
    classify_error,
)
from .logging import setup_logging, get_logger

__all__ = [
    "WorkflowEngineError",
    "ConfigurationError",
    "InvalidInputError",
    "MissingAPIKeyError",
    "RateLimitError",
    "NetworkError",
    "ToolRegistryError",
    "InvalidTransitionError",
    "NotFoundError",
    "StorageError",
    "EnvironmentScopeError",
    "ErrorType",
    "classify_error",
    "setup_logging",
    "get_logger",
]
