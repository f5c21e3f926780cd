"""HTTP API for the workflow runner."""

from .dependencies import init_dependencies
from .evals import router as evals_router
from .tools import router as tools_router
from .workflows import router as workflows_router

__all__ = ["init_dependencies", "evals_router", "tools_router", "workflows_router"]
