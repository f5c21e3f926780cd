"""Tool Registry component for managing tools callable from workflow steps."""

import inspect
from typing import Callable, Dict, Optional, Any

from .exceptions import ToolRegistryError
from .logging import get_logger

logger = get_logger(__name__)


def is_async_tool(function: Callable) -> bool:
    """Check whether calling a tool returns a coroutine, including objects with an async ``__call__``."""
    return inspect.iscoroutinefunction(function) or inspect.iscoroutinefunction(getattr(function, "__call__", None))


class ToolRegistry:
    """Name -> callable map for tools that tool steps can invoke.

    Instances are constructed explicitly and passed to the components that
    need them; there is no module-level registry.
    """

    def __init__(self):
        self._tools: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}

    def register_tool(self, name: str, function: Callable, description: str = "") -> None:
        """Register a sync or async function as a tool.

        Args:
            name: Unique identifier for the tool
            function: Callable taking the step's resolved input as a single dict
            description: Optional description of the tool's purpose

        Raises:
            ToolRegistryError: If the name is empty or taken, or the function is not callable
        """
        if not name or not name.strip():
            raise ToolRegistryError("Tool name cannot be empty", operation="register")

        name = name.strip()

        if not callable(function):
            raise ToolRegistryError(
                f"Tool '{name}' must be a callable function", tool_name=name, operation="register"
            )

        if name in self._tools:
            raise ToolRegistryError(
                f"Tool '{name}' is already registered", tool_name=name, operation="register"
            )

        try:
            sig = inspect.signature(function)
            if len(sig.parameters) == 0:
                logger.warning(f"Tool '{name}' has no parameters - it won't receive step input")
        except (ValueError, TypeError):
            logger.debug(f"Cannot inspect signature of tool '{name}'")

        self._tools[name] = function
        self._descriptions[name] = description.strip() if description else ""
        logger.info(f"Registered tool '{name}'")

    def get_tool(self, name: str) -> Optional[Callable]:
        """Return the tool registered under ``name``, or None."""
        if not name:
            return None
        return self._tools.get(name.strip())

    def has_tool(self, name: str) -> bool:
        return self.get_tool(name) is not None

    def list_tools(self) -> Dict[str, str]:
        """List all registered tools with their descriptions."""
        return dict(sorted(self._descriptions.items()))

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool from the registry.

        Returns:
            True if the tool was removed, False if it was not registered
        """
        name = (name or "").strip()
        if name not in self._tools:
            return False
        del self._tools[name]
        del self._descriptions[name]
        logger.info(f"Unregistered tool '{name}'")
        return True

    def get_tool_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Describe a registered tool, or return None if it is unknown."""
        function = self.get_tool(name)
        if function is None:
            return None
        name = name.strip()
        return {
            "name": name,
            "description": self._descriptions.get(name, ""),
            "function_module": getattr(function, "__module__", None),
            "function_name": getattr(function, "__name__", type(function).__name__),
            "is_async": is_async_tool(function),
        }

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.has_tool(name)
