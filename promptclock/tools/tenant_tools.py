"""Tools that expose and edit the calling tenant's settings."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from pydantic import BaseModel, Field, field_validator

from promptclock.db import Database
from promptclock.errors import NotFoundError
from promptclock.scheduler import resolve_zone
from promptclock.sessions import SessionManager
from promptclock.tools.base import Tool, ToolContext


class EditTenantArgs(BaseModel):
    system: str | None = Field(default=None, description="the new system prompt to save")
    timezone: str | None = Field(
        default=None, description="the new timezone to save in the IANA timezone database format"
    )

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                resolve_zone(value)
            except NotFoundError as exc:
                raise ValueError(str(exc)) from exc
        return value


class RetrieveTenantTool(Tool):
    name = "retrieve_tenant"
    description = (
        "Retrieve the tenant information of the user. "
        "This is useful for when the user wants to see or manage their tenant information."
    )

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, args: BaseModel, context: ToolContext) -> dict[str, Any]:
        tenant = self._db.get_tenant(context.tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {context.tenant_id}")
        return asdict(tenant)


class EditTenantTool(Tool):
    """Updates system instructions and/or timezone.

    New instructions are pushed to the live agent. Timers already scheduled
    keep the timezone they were registered with until they are edited.
    """

    name = "edit_tenant"
    description = (
        "Edits the user's tenant information. "
        "This is useful for when the user wants to change their system prompt or timezone."
    )
    parameters = EditTenantArgs

    def __init__(self, db: Database, sessions: SessionManager) -> None:
        self._db = db
        self._sessions = sessions

    async def run(self, args: EditTenantArgs, context: ToolContext) -> dict[str, Any]:
        tenant = self._db.update_tenant(context.tenant_id, system_instructions=args.system, timezone_name=args.timezone)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {context.tenant_id}")
        if args.system is not None:
            await self._sessions.update_instructions(context.tenant_id, tenant.system_instructions)
        return asdict(tenant)
