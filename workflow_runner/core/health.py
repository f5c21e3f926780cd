"""Health checks for the database, tool registry and model providers."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from sqlalchemy import text

from ..storage.database import SessionFactory
from .cost_ledger import ModelLedger
from .logging import get_logger
from .tool_registry import ToolRegistry


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthChecker:
    """Health checker for system components."""

    def __init__(self):
        self.checks: Dict[str, Dict[str, Any]] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}
        self.logger = get_logger("health_checker")

    def register_check(self, name: str, check_func: Callable, timeout: float = 5.0):
        """Register a sync or async health check function."""
        self.checks[name] = {
            "func": check_func,
            "timeout": timeout
        }
        self.logger.info(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        """Run a specific health check."""
        if name not in self.checks:
            return {
                "status": "error",
                "message": f"Health check '{name}' not found",
                "timestamp": _timestamp()
            }

        check_info = self.checks[name]
        start_time = time.perf_counter()

        try:
            if asyncio.iscoroutinefunction(check_info["func"]):
                result = await asyncio.wait_for(check_info["func"](), timeout=check_info["timeout"])
            else:
                result = check_info["func"]()

            check_result = {
                "status": "healthy",
                "message": result if isinstance(result, str) else "Check passed",
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                "timestamp": _timestamp()
            }
            if isinstance(result, dict):
                check_result.update(result)

        except asyncio.TimeoutError:
            check_result = {
                "status": "timeout",
                "message": f"Health check timed out after {check_info['timeout']}s",
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                "timestamp": _timestamp()
            }

        except Exception as e:
            self.logger.warning(f"Health check {name} failed: {str(e)}")
            check_result = {
                "status": "unhealthy",
                "message": str(e),
                "error_type": type(e).__name__,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
                "timestamp": _timestamp()
            }

        self.last_results[name] = check_result
        return check_result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run all registered health checks.

        Overall status is ``unhealthy`` if any check is not healthy or degraded,
        ``degraded`` if any check is degraded, and ``healthy`` otherwise.
        """
        results = {}
        statuses = set()

        for name in self.checks:
            result = await self.run_check(name)
            results[name] = result
            statuses.add(result["status"])

        if statuses - {"healthy", "degraded"}:
            overall_status = "unhealthy"
        elif "degraded" in statuses:
            overall_status = "degraded"
        else:
            overall_status = "healthy"

        return {
            "overall_status": overall_status,
            "checks": results,
            "timestamp": _timestamp()
        }


def database_check(session_factory: SessionFactory) -> Callable[[], Dict[str, Any]]:
    def check():
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
        finally:
            session.close()
        return {"message": "Database connection successful"}
    return check


def tool_registry_check(registry: ToolRegistry) -> Callable[[], Dict[str, Any]]:
    def check():
        tools = registry.list_tools()
        return {"message": f"{len(tools)} tools registered", "tools": sorted(tools)}
    return check


def provider_keys_check(ledger: ModelLedger) -> Callable[[], Dict[str, Any]]:
    """Degraded when no provider key is configured; llm steps would fail with missing_api_key."""
    def check():
        configured = sorted(
            provider for provider in ("openai", "anthropic") if ledger.get_provider_api_key(provider)
        )
        if not configured:
            return {"status": "degraded", "message": "No LLM provider API keys configured", "providers": []}
        return {"message": f"API keys configured for: {', '.join(configured)}", "providers": configured}
    return check


def register_default_checks(
    checker: HealthChecker,
    session_factory: SessionFactory,
    registry: ToolRegistry,
    ledger: ModelLedger
) -> HealthChecker:
    checker.register_check("database", database_check(session_factory))
    checker.register_check("tool_registry", tool_registry_check(registry))
    checker.register_check("llm_providers", provider_keys_check(ledger))
    return checker
