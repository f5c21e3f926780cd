"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from .config import AppConfig, get_config, validate_config
from .core.cost_ledger import ModelLedger
from .core.eval_runner import EvalRunner
from .core.exceptions import WorkflowEngineError
from .core.health import HealthChecker, register_default_checks
from .core.llm_client import LLMProvider, create_providers
from .core.logging import setup_logging, get_logger
from .core.middleware import workflow_engine_error_handler
from .core.orchestrator import RunOrchestrator
from .core.retry import RetryPolicy
from .core.step_executor import StepExecutor
from .core.tool_adapter import ToolAdapter
from .core.tool_registry import ToolRegistry
from .storage.database import SessionFactory, init_database
from .storage.repository import EvalRepository, WorkflowRepository
from .tools import DEFAULT_TRANSFORMS, register_default_tools
from .api import evals_router, init_dependencies, tools_router, workflows_router

READINESS_CHECKS = ("database", "tool_registry")


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ApplicationState:
    """Container for application components."""

    def __init__(
        self,
        config: AppConfig,
        session_factory: SessionFactory,
        tool_registry: ToolRegistry,
        ledger: ModelLedger,
        providers: Dict[str, LLMProvider],
        workflow_repository: WorkflowRepository,
        eval_repository: EvalRepository,
        orchestrator: RunOrchestrator,
        eval_runner: EvalRunner,
        health_checker: HealthChecker
    ):
        self.config = config
        self.session_factory = session_factory
        self.tool_registry = tool_registry
        self.ledger = ledger
        self.providers = providers
        self.workflow_repository = workflow_repository
        self.eval_repository = eval_repository
        self.orchestrator = orchestrator
        self.eval_runner = eval_runner
        self.health_checker = health_checker


def initialize_components(
    config: AppConfig,
    tool_registry: Optional[ToolRegistry] = None,
    llm_providers: Optional[Mapping[str, LLMProvider]] = None
) -> ApplicationState:
    """Initialize the database and wire every component for the configured env.

    Injected registries and providers replace the defaults.
    """
    logger = get_logger(__name__)

    session_factory = init_database(config.database_url, echo=config.database_echo)
    logger.info("Database initialized")

    registry = tool_registry
    if registry is None:
        registry = ToolRegistry()
        register_default_tools(registry)

    ledger = ModelLedger(config)
    providers = dict(llm_providers) if llm_providers is not None else create_providers(config.llm_timeout)
    retry_policy = RetryPolicy(
        max_retries=config.retry_max_retries,
        initial_delay=config.retry_initial_delay,
        max_delay=config.retry_max_delay
    )
    executor = StepExecutor(
        tool_adapter=ToolAdapter(registry),
        ledger=ledger,
        providers=providers,
        transforms=DEFAULT_TRANSFORMS,
        retry_policy=retry_policy,
        env=config.app_env
    )

    workflow_repository = WorkflowRepository(config.app_env, session_factory)
    eval_repository = EvalRepository(config.app_env, session_factory)
    orchestrator = RunOrchestrator(workflow_repository, executor)
    eval_runner = EvalRunner(
        eval_repository, workflow_repository, orchestrator, concurrency=config.eval_concurrency
    )
    health_checker = register_default_checks(HealthChecker(), session_factory, registry, ledger)

    if not ledger.has_any_provider_key():
        logger.warning("No LLM provider API keys configured; llm steps will fail")
    logger.info("Core components initialized")

    return ApplicationState(
        config=config,
        session_factory=session_factory,
        tool_registry=registry,
        ledger=ledger,
        providers=providers,
        workflow_repository=workflow_repository,
        eval_repository=eval_repository,
        orchestrator=orchestrator,
        eval_runner=eval_runner,
        health_checker=health_checker
    )


async def graceful_shutdown(state: ApplicationState) -> None:
    """Stop in-flight runs and close provider clients."""
    logger = get_logger(__name__)

    try:
        await state.orchestrator.shutdown()
        logger.info("Run orchestrator stopped")
    except Exception as e:
        logger.error(f"Error stopping run orchestrator: {str(e)}")

    for name, provider in state.providers.items():
        try:
            await provider.close()
        except Exception as e:
            logger.error(f"Error closing {name} provider: {str(e)}")


def create_lifespan_handler(
    config: AppConfig,
    tool_registry: Optional[ToolRegistry] = None,
    llm_providers: Optional[Mapping[str, LLMProvider]] = None
):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger = setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger.info(f"Starting {config.app_name} v{config.app_version} (env: {config.app_env.value})")

        state = initialize_components(config, tool_registry, llm_providers)
        app.state.components = state

        init_dependencies(
            workflow_repository=state.workflow_repository,
            eval_repository=state.eval_repository,
            orchestrator=state.orchestrator,
            eval_runner=state.eval_runner,
            tool_registry=state.tool_registry
        )
        logger.info("Application startup completed successfully")

        yield

        # Shutdown
        logger.info(f"Shutting down {config.app_name}")
        await graceful_shutdown(state)

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    tool_registry: Optional[ToolRegistry] = None,
    llm_providers: Optional[Mapping[str, LLMProvider]] = None
) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Runs multi-step LLM and tool workflows with resume, cancellation, cost tracking and evals",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, tool_registry, llm_providers)
    )

    # Add CORS middleware
    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    # Add custom middleware
    if config.enable_performance_monitoring:
        from .core.middleware import (
            ErrorHandlingMiddleware,
            RequestLoggingMiddleware,
            PerformanceMonitoringMiddleware
        )

        app.add_middleware(ErrorHandlingMiddleware)
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
        app.add_middleware(RequestLoggingMiddleware)

    app.add_exception_handler(WorkflowEngineError, workflow_engine_error_handler)

    app.include_router(workflows_router)
    app.include_router(evals_router)
    app.include_router(tools_router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": service,
            "version": config.app_version,
            "env": config.app_env.value
        }

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Detailed health check endpoint with component status."""
        health_checker: HealthChecker = app.state.components.health_checker
        results = await health_checker.run_all_checks()
        status_code = 503 if results["overall_status"] == "unhealthy" else 200
        return JSONResponse(
            status_code=status_code,
            content={
                "service": service,
                "version": config.app_version,
                "active_runs": len(app.state.components.orchestrator.active_run_ids),
                **results
            }
        )

    @app.get("/health/ready")
    async def readiness_check():
        """Readiness check endpoint for container orchestration."""
        health_checker: HealthChecker = app.state.components.health_checker
        results = {}
        for check_name in READINESS_CHECKS:
            if check_name in health_checker.checks:
                results[check_name] = await health_checker.run_check(check_name)

        ready = all(result.get("status") == "healthy" for result in results.values())
        if not ready:
            get_logger(__name__).warning(f"Readiness check failed: {results}")
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "checks": results,
                "timestamp": _timestamp()
            }
        )

    @app.get("/health/live")
    async def liveness_check():
        """Liveness check endpoint for container orchestration."""
        return {"alive": True, "timestamp": _timestamp()}
