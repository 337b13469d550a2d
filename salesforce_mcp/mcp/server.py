"""MCP Server definition and tool registration"""
import inspect
import logging
from typing import Any, Dict, Optional

import pydantic
from mcp.server.fastmcp import FastMCP

from salesforce_mcp.errors import ConfigurationError

logger = logging.getLogger(__name__)

SERVER_NAME = "salesforce-mcp-server"


def parse_docstring(func):
    """A simple parser for a Google-style docstring: summary line plus ``Args:``."""
    docstring = inspect.getdoc(func)
    if not docstring:
        return "No description available.", {}

    lines = docstring.strip().split("\n")
    description = lines[0].strip()
    arg_descriptions = {}
    args_section = False

    for line in lines[1:]:
        line = line.strip()
        if line.lower() in ("args:", "parameters:"):
            args_section = True
            continue
        if args_section and line.lower() in ("returns:", "raises:", "examples:"):
            break
        if args_section and ":" in line:
            arg_name, arg_desc = line.split(":", 1)
            arg_name = arg_name.split("(")[0].strip()
            arg_descriptions[arg_name] = arg_desc.strip()

    return description, arg_descriptions


def create_model_from_func(func, arg_descriptions):
    """Creates a Pydantic model from a function's signature and descriptions."""
    fields = {}
    for param in inspect.signature(func).parameters.values():
        field_info = {"description": arg_descriptions.get(param.name, "")}
        if param.default is not inspect.Parameter.empty:
            field_info["default"] = param.default
        annotation = Any if param.annotation is inspect.Parameter.empty else param.annotation
        fields[param.name] = (annotation, pydantic.Field(**field_info))

    return pydantic.create_model(f"{func.__name__}Schema", **fields)


mcp_server = FastMCP(name=SERVER_NAME)

tool_registry: Dict[str, Dict[str, Any]] = {}


def add_tool_to_registry(func):
    """
    Parses a function, generates its schema, and adds it to the global tool_registry.
    """
    tool_name = func.__name__
    description, arg_descriptions = parse_docstring(func)
    schema = create_model_from_func(func, arg_descriptions)

    tool_registry[tool_name] = {
        "name": tool_name,
        "description": description,
        "schema": schema,
        "function": func,
    }

    mcp_server.tool(name=tool_name)(func)
    logger.debug("Registered tool: '%s'", tool_name)


def register_tool(func):
    """A decorator that registers a function as a tool."""
    add_tool_to_registry(func)
    return func


# The router is built in main once settings are known; tools look it up per call.
_router = None


def set_router(router) -> None:
    global _router
    _router = router


def get_router():
    if _router is None:
        raise ConfigurationError("Salesforce operation router is not configured")
    return _router


def reset_router() -> Optional[Any]:
    """Detach the current router (used on shutdown and in tests)."""
    global _router
    previous, _router = _router, None
    return previous


__all__ = ["mcp_server", "register_tool", "tool_registry", "set_router", "get_router"]
