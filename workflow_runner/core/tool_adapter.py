"""Uniform call interface over registered tools."""

import asyncio
import inspect
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..models.core import ToolMetadata, ToolResult
from .exceptions import ErrorType, classify_error, get_retry_after
from .logging import get_logger
from .tool_registry import ToolRegistry, is_async_tool

logger = get_logger(__name__)


class ToolAdapter:
    """Calls tools by name and normalizes every outcome into a ToolResult."""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute_tool(self, name: str, params: Optional[Dict[str, Any]] = None) -> ToolResult:
        """
        Call a tool and wrap its return value or error.

        Never raises for tool failures; a missing tool is reported as a failed result.
        """
        started = time.perf_counter()
        timestamp = datetime.now(timezone.utc)
        params = params if params is not None else {}

        tool = self.registry.get_tool(name)
        if tool is None:
            logger.warning(f"Tool not found: {name}")
            return self._failure(name, f"Tool not found: {name}", started, timestamp)

        try:
            if is_async_tool(tool):
                result = await tool(params)
            else:
                # Sync tools run in a worker thread
                result = await asyncio.to_thread(tool, params)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            error_type = classify_error(e)
            duration = self._elapsed_ms(started)
            logger.warning(f"Tool '{name}' failed after {duration:.1f}ms ({error_type.value}): {str(e)}")
            return self._failure(name, str(e) or e.__class__.__name__, started, timestamp, error_type, get_retry_after(e))

        try:
            data = to_jsonable_python(result)
        except PydanticSerializationError as e:
            logger.warning(f"Tool '{name}' returned a value that is not JSON serializable: {str(e)}")
            return self._failure(
                name, f"Tool output is not JSON serializable: {str(e)}", started, timestamp, ErrorType.INVALID_INPUT
            )

        duration = self._elapsed_ms(started)
        logger.debug(f"Tool '{name}' completed in {duration:.1f}ms")
        return ToolResult(
            success=True,
            data=data,
            metadata=ToolMetadata(tool_name=name, duration=duration, timestamp=timestamp),
        )

    def _failure(
        self,
        name: str,
        error: str,
        started: float,
        timestamp: datetime,
        error_type: Optional[ErrorType] = None,
        retry_after: Optional[int] = None
    ) -> ToolResult:
        return ToolResult(
            success=False,
            error=error,
            metadata=ToolMetadata(
                tool_name=name,
                duration=self._elapsed_ms(started),
                timestamp=timestamp,
                error_type=error_type,
                retry_after=retry_after,
            ),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000
