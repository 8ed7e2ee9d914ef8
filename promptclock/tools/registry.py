"""Registry for named, schema-validated tool dispatch."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

import pydantic
from pydantic import BaseModel

from promptclock.db import Database
from promptclock.errors import NotFoundError, ValidationError
from promptclock.tools.base import FunctionTool, Handler, Tool, ToolContext

LOGGER = logging.getLogger(__name__)


class FunctionRegistry:
    """Explicit registry of the tools an agent may call.

    Registering a name twice replaces the earlier tool. ``dispatch`` raises
    for unknown names and invalid arguments, but converts failures inside the
    tool itself (exceptions, timeouts) into an ``{"error": ...}`` payload.
    """

    def __init__(self, db: Database, handler_timeout_seconds: float = 30.0) -> None:
        self._db = db
        self._handler_timeout_seconds = handler_timeout_seconds
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            LOGGER.info("Replacing tool registration: %s", tool.name)
        else:
            LOGGER.info("Registering tool: %s", tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        description: str,
        parameters: type[BaseModel],
        handler: Handler,
    ) -> None:
        self.register(FunctionTool(name, description, parameters, handler))

    def names(self) -> list[str]:
        return list(self._tools)

    def list_tool_specs(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": _parameters_schema(tool.parameters),
                },
            }
            for tool in self._tools.values()
        ]

    async def dispatch(self, name: str, arguments: Mapping[str, Any], context: ToolContext) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: {name}")

        try:
            args = tool.parameters.model_validate(dict(arguments))
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid input for tool {name}: {exc}") from exc

        tool_input = args.model_dump(mode="json")
        try:
            result = await asyncio.wait_for(
                tool.run(args, context), timeout=self._handler_timeout_seconds
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out after %ss", name, self._handler_timeout_seconds)
            error = {"error": f"Tool {name} timed out after {self._handler_timeout_seconds} seconds"}
            self._db.log_tool_execution(context.tenant_id, name, tool_input, error, succeeded=False)
            return error
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Tool %s failed", name)
            error = {"error": f"{type(exc).__name__}: {exc}"}
            self._db.log_tool_execution(context.tenant_id, name, tool_input, error, succeeded=False)
            return error

        self._db.log_tool_execution(context.tenant_id, name, tool_input, result, succeeded=True)
        return result


def _parameters_schema(model: type[BaseModel]) -> dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    schema.setdefault("properties", {})
    return schema
