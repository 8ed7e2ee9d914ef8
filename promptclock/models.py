"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

RUN_REQUIRES_ACTION = "thread.run.requires_action"
RUN_COMPLETED = "thread.run.completed"
RUN_FAILED = "thread.run.failed"
RUN_CANCELLED = "thread.run.cancelled"
RUN_EXPIRED = "thread.run.expired"
RUN_INCOMPLETE = "thread.run.incomplete"
STREAM_ERROR = "error"


@dataclass(slots=True)
class Message:
    """Message normalized by adapters for runtime usage."""

    tenant_id: str
    sender_id: str
    text: str
    timestamp: datetime
    message_id: str | None = None


@dataclass(slots=True)
class Tenant:
    """A chat identity with its own agent configuration."""

    id: str
    system_instructions: str
    timezone: str


@dataclass(slots=True)
class Job:
    """A stored prompt replayed daily at a tenant-local time."""

    id: int
    tenant_id: str
    hour: int
    minute: int
    prompt: str


@dataclass(slots=True)
class ToolCall:
    """Function invocation requested by a run."""

    call_id: str
    name: str
    arguments: str


@dataclass(slots=True)
class ToolOutput:
    """Result paired with a tool call by id."""

    call_id: str
    output: str


@dataclass(slots=True)
class RunEvent:
    """One lifecycle event of a streamed run."""

    type: str
    run_id: str | None = None
    thread_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: str | None = None
    raw: dict[str, Any] | None = None
