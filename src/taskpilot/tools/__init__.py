"""Primitive toolset and external tool execution."""

from taskpilot.tools.catalog import (
    PLATFORM_SEND_TOOLS,
    ToolDispatcher,
    ToolGateway,
    build_tool_catalog,
    is_side_effecting,
    primitive_tool_definitions,
)
from taskpilot.tools.primitives import PrimitiveContext, execute_primitive, is_primitive

__all__ = [
    "PLATFORM_SEND_TOOLS",
    "PrimitiveContext",
    "ToolDispatcher",
    "ToolGateway",
    "build_tool_catalog",
    "execute_primitive",
    "is_primitive",
    "is_side_effecting",
    "primitive_tool_definitions",
]
