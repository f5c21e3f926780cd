"""Default tools and transforms for the workflow runner."""

from functools import partial
from typing import Optional

import httpx

from ..core.logging import get_logger
from ..core.tool_registry import ToolRegistry
from .feed_tools import discover_feeds, validate_feeds
from .transforms import DEFAULT_TRANSFORMS, flatten_feeds, select_valid_feeds

logger = get_logger(__name__)


def register_default_tools(
    tool_registry: ToolRegistry,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> None:
    """Register the feed tools, skipping names that are already taken.

    Args:
        tool_registry: Registry to populate
        transport: Optional httpx transport the tools send requests through
    """
    tools_to_register = [
        ("discover_feeds", discover_feeds, "Discover RSS/Atom feed URLs for candidate websites"),
        ("validate_feeds", validate_feeds, "Fetch and validate discovered feed URLs"),
    ]

    for tool_name, tool_func, tool_desc in tools_to_register:
        if tool_registry.has_tool(tool_name):
            logger.info(f"Tool already exists: {tool_name}")
            continue
        if transport is not None:
            tool_func = partial(tool_func, transport=transport)
        tool_registry.register_tool(tool_name, tool_func, tool_desc)

    logger.info("Default tools registration completed")


__all__ = [
    "register_default_tools",
    "discover_feeds",
    "validate_feeds",
    "select_valid_feeds",
    "flatten_feeds",
    "DEFAULT_TRANSFORMS",
]
