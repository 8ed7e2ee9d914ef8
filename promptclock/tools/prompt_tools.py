"""Tools that let a tenant manage its scheduled prompts."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from pydantic import BaseModel, Field

from promptclock.db import Database
from promptclock.errors import NotFoundError
from promptclock.scheduler import ScheduleRegistry
from promptclock.tools.base import Tool, ToolContext

LOGGER = logging.getLogger(__name__)


class CreatePromptArgs(BaseModel):
    prompt: str = Field(description="the prompt to save")
    hour: int = Field(ge=0, le=23, description="the hour at which the prompt should be triggered")
    minute: int = Field(default=0, ge=0, le=59, description="the minute at which the prompt should be triggered")


class EditPromptArgs(BaseModel):
    id: int = Field(description="the id of the prompt to edit")
    prompt: str | None = Field(default=None, description="the new prompt to save")
    hour: int | None = Field(default=None, ge=0, le=23, description="the new hour at which the prompt should be triggered")
    minute: int | None = Field(
        default=None, ge=0, le=59, description="the new minute at which the prompt should be triggered"
    )


class DeletePromptArgs(BaseModel):
    id: int = Field(description="the id of the prompt to delete")


class RetrievePromptsTool(Tool):
    name = "retrieve_prompts"
    description = (
        "Retrieve all saved prompts of the user that are scheduled to be sent at a specific time. "
        "This is useful for when the user wants to see or manage their saved prompts."
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, args: BaseModel, context: ToolContext) -> list[dict[str, Any]]:
        return [
            {"id": job.id, "prompt": job.prompt, "hour": job.hour, "minute": job.minute}
            for job in self._db.list_jobs(context.tenant_id)
        ]


class CreatePromptTool(Tool):
    """Stores a prompt and starts its daily timer."""

    name = "create_prompt"
    description = (
        "Creates a new prompt for the user. "
        "This is useful for when the user wants to save a new prompt for a specific time."
    )
    parameters = CreatePromptArgs

    def __init__(self, db: Database, schedules: ScheduleRegistry) -> None:
        self._db = db
        self._schedules = schedules

    async def run(self, args: CreatePromptArgs, context: ToolContext) -> dict[str, Any]:
        self._schedules.tenant_zone(context.tenant_id)
        job = self._db.create_job(context.tenant_id, args.hour, args.minute, args.prompt)
        next_at = self._schedules.register_or_replace(job)
        return {**asdict(job), "next_run": next_at.isoformat()}


class EditPromptTool(Tool):
    """Applies a partial edit and re-registers the timer.

    The tenant zone is resolved before the row is written, so a failed
    registration never leaves the old timer firing an edited prompt.
    """

    name = "edit_prompt"
    description = (
        "Edits the user's saved prompt. "
        "This is useful for when the user wants to change their prompt or the time it is triggered."
    )
    parameters = EditPromptArgs

    def __init__(self, db: Database, schedules: ScheduleRegistry) -> None:
        self._db = db
        self._schedules = schedules

    async def run(self, args: EditPromptArgs, context: ToolContext) -> dict[str, Any]:
        self._schedules.tenant_zone(context.tenant_id)
        job = self._db.update_job(context.tenant_id, args.id, hour=args.hour, minute=args.minute, prompt=args.prompt)
        if job is None:
            raise NotFoundError(f"Prompt {args.id} not found")
        next_at = self._schedules.register_or_replace(job)
        return {**asdict(job), "next_run": next_at.isoformat()}


class DeletePromptTool(Tool):
    """Deletes the prompt and stops its timer before returning."""

    name = "delete_prompt"
    description = (
        "Deletes the user's saved prompt. "
        "This is useful for when the user wants to remove a prompt for a specific time."
    )
    parameters = DeletePromptArgs

    def __init__(self, db: Database, schedules: ScheduleRegistry) -> None:
        self._db = db
        self._schedules = schedules

    async def run(self, args: DeletePromptArgs, context: ToolContext) -> dict[str, Any]:
        deleted = self._db.delete_job(context.tenant_id, args.id)
        if deleted:
            self._schedules.cancel(args.id)
        return {"id": args.id, "deleted": deleted}
