"""Tool contracts."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from pydantic import BaseModel


@dataclass(frozen=True, slots=True)
class ToolContext:
    """Caller information passed to every tool invocation."""

    tenant_id: str
    thread_id: str | None = None


class NoArguments(BaseModel):
    """Parameter model for tools that take no input."""


class Tool(ABC):
    """Base class for all agent tools."""

    name: str
    description: str
    parameters: type[BaseModel] = NoArguments

    @abstractmethod
    async def run(self, args: BaseModel, context: ToolContext) -> Any:
        """Execute tool with validated arguments."""


Handler = Callable[[Any, ToolContext], Union[Any, Awaitable[Any]]]


class FunctionTool(Tool):
    """Adapts a plain (sync or async) handler function to the Tool contract."""

    def __init__(
        self,
        name: str,
        description: str,
        parameters: type[BaseModel],
        handler: Handler,
    ) -> None:
        self.name = name
        self.description = description
        self.parameters = parameters
        self._handler = handler

    async def run(self, args: BaseModel, context: ToolContext) -> Any:
        result = self._handler(args, context)
        if inspect.isawaitable(result):
            result = await result
        return result
