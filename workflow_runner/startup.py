"""Application startup script and CLI interface."""

import argparse
import asyncio
import json
import sys

from .config import (
    AppConfig,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import setup_logging, get_logger


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="Workflow Runner - runs LLM and tool workflows with resume, cancellation and evals"
    )

    # Server configuration
    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")

    # Environment configuration
    parser.add_argument(
        "--preset",
        choices=["development", "production", "testing"],
        help="Configuration preset"
    )
    parser.add_argument("--app-env", choices=["dev", "prod"], help="Storage environment to operate on")
    parser.add_argument("--config", help="Path to a .env configuration file")

    # Database configuration
    parser.add_argument("--database-url", help="Database connection URL")

    # Logging configuration
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    # Commands
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the workflow runner server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Initialize database tables")
    db_subparsers.add_parser("reset", help="Reset database (drop and recreate tables)")

    subparsers.add_parser("seed", help="Load the feed discovery workflow and its eval")

    eval_parser = subparsers.add_parser("eval", help="Eval commands")
    eval_subparsers = eval_parser.add_subparsers(dest="eval_command", help="Eval commands")
    eval_run_parser = eval_subparsers.add_parser("run", help="Run an eval and print its results")
    eval_run_parser.add_argument("eval_id", help="ID of the eval to run")

    health_parser = subparsers.add_parser("health", help="Run health checks")
    health_parser.add_argument("--detailed", action="store_true", help="Run detailed health checks")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.preset == "development":
        config = get_development_config()
    elif args.preset == "production":
        config = get_production_config()
    elif args.preset == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.app_env:
        overrides["app_env"] = args.app_env
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True

    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def run_server(config: AppConfig, workers: int = 1):
    """Run the workflow runner server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        # Worker processes build their own app from the environment
        uvicorn.run(
            "workflow_runner.factory:create_app",
            factory=True,
            workers=workers,
            **uvicorn_config
        )
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig):
    """Run database management commands."""
    from .storage.database import create_tables, drop_tables, init_database

    logger = get_logger(__name__)

    if command == "init":
        logger.info("Initializing database tables...")
        init_database(config.database_url, echo=config.database_echo)
        logger.info("Database tables created successfully")

    elif command == "reset":
        logger.info("Resetting database...")
        init_database(config.database_url, echo=config.database_echo)
        drop_tables()
        create_tables()
        logger.info("Database reset completed successfully")


async def run_seed(config: AppConfig):
    """Seed the feed discovery workflow and eval into the configured env."""
    from .factory import graceful_shutdown, initialize_components
    from .seed import seed_all

    state = initialize_components(config)
    try:
        seeded = seed_all(state.workflow_repository, state.eval_repository)
    finally:
        await graceful_shutdown(state)

    for workflow in seeded["workflows"]:
        print(f"Workflow: {workflow.slug} v{workflow.version} ({workflow.id})")
    for workflow_eval in seeded["evals"]:
        print(f"Eval: {workflow_eval.name} ({workflow_eval.id}) - {len(workflow_eval.cases_json)} cases")


async def run_eval_command(config: AppConfig, eval_id: str):
    """Run an eval and print its results."""
    from .factory import graceful_shutdown, initialize_components

    state = initialize_components(config)
    try:
        eval_run = await state.eval_runner.run_eval(eval_id)
    finally:
        await graceful_shutdown(state)

    results = eval_run.results_json
    print(f"Eval run: {eval_run.id}")
    print(f"Overall score: {results.overall_score}")
    print(f"Passed: {results.passed}")
    for case_result in results.case_results:
        marker = "PASS" if case_result.passed else "FAIL"
        print(f"  [{marker}] {case_result.case_id}: {case_result.score:g}")
        for error in case_result.errors:
            print(f"      error: {error}")
        for warning in case_result.warnings:
            print(f"      warning: {warning}")

    if not results.passed:
        sys.exit(1)


async def run_health_check(config: AppConfig, detailed: bool = False):
    """Run health checks."""
    logger = get_logger(__name__)

    if detailed:
        from .factory import graceful_shutdown, initialize_components

        logger.info("Running detailed health checks...")
        state = initialize_components(config)
        try:
            results = await state.health_checker.run_all_checks()
        finally:
            await graceful_shutdown(state)

        print(f"Overall Status: {results['overall_status']}")
        print(f"Timestamp: {results['timestamp']}")

        for check_name, result in results.get('checks', {}).items():
            status = result.get('status', 'unknown')
            message = result.get('message', 'No message')
            print(f"  {check_name}: {status} - {message}")

        if results['overall_status'] == 'unhealthy':
            sys.exit(1)
    else:
        logger.info("Running basic health check...")
        print(f"Service: {config.app_name}")
        print("Status: Running")
        print(f"Version: {config.app_version}")
        print(f"Environment: {config.app_env.value}")


def show_configuration(config: AppConfig):
    """Show current configuration with secrets masked."""
    data = config.model_dump(mode="json")
    for key in ("openai_api_key", "anthropic_api_key"):
        if data.get(key):
            data[key] = "***"
    print("Current Configuration:")
    print(json.dumps(data, indent=2))


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
        print("All configuration settings are valid.")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main():
    """Main entry point for the application."""
    parser = create_argument_parser()
    args = parser.parse_args()

    try:
        config = load_configuration(args)
        validate_config(config)
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.structured_logging
        )

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, 'workers', 1))

        elif args.command == "db":
            if args.db_command:
                run_database_command(args.db_command, config)
            else:
                print("Database command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "seed":
            asyncio.run(run_seed(config))

        elif args.command == "eval":
            if args.eval_command == "run":
                asyncio.run(run_eval_command(config, args.eval_id))
            else:
                print("Eval command required. Use --help for options.")
                sys.exit(1)

        elif args.command == "health":
            asyncio.run(run_health_check(config, args.detailed))

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
