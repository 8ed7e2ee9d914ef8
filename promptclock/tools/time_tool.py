"""Time and self-description tools."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from promptclock.tools.base import Tool, ToolContext

APP_NAME = "promptclock"
APP_VERSION = "0.1.0"


class TimestampTool(Tool):
    """Returns current UTC time."""

    name = "timestamp"
    description = "Retrieves the current timestamp (UTC, ISO-8601)."

    async def run(self, args: BaseModel, context: ToolContext) -> str:
        return datetime.now(timezone.utc).isoformat()


class ModelInfoTool(Tool):
    name = "model_infos"
    description = "Retrieves general information about this assistant, like its name, version and model."

    def __init__(self, model: str) -> None:
        self._model = model

    async def run(self, args: BaseModel, context: ToolContext) -> dict[str, Any]:
        return {"application": APP_NAME, "version": APP_VERSION, "model": self._model}
