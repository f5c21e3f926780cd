"""Tool registry endpoints."""

from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Body, Depends

from ..core.exceptions import NotFoundError
from ..core.tool_adapter import ToolAdapter
from ..core.tool_registry import ToolRegistry
from ..models.core import ToolResult
from .dependencies import get_tool_registry

router = APIRouter(prefix="/api/v1/tools", tags=["tools"])


@router.get("", summary="List registered tools")
async def list_tools(registry: ToolRegistry = Depends(get_tool_registry)) -> List[Dict[str, Any]]:
    return [registry.get_tool_info(name) for name in registry.list_tools()]


@router.get("/{tool_name}", summary="Get tool details")
async def get_tool(tool_name: str, registry: ToolRegistry = Depends(get_tool_registry)) -> Dict[str, Any]:
    if not registry.has_tool(tool_name):
        raise NotFoundError("Tool", tool_name)
    return registry.get_tool_info(tool_name)


@router.post("/{tool_name}", response_model=ToolResult, summary="Call a tool directly")
async def call_tool(
    tool_name: str,
    params: Optional[Dict[str, Any]] = Body(None),
    registry: ToolRegistry = Depends(get_tool_registry)
) -> ToolResult:
    """
    Call a registered tool with the request body as its input.

    Tool failures are returned as a result with ``success=false``; only an
    unknown tool is an error response.
    """
    if not registry.has_tool(tool_name):
        raise NotFoundError("Tool", tool_name)
    return await ToolAdapter(registry).execute_tool(tool_name, params)
