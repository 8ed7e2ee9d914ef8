"""Drives one streamed run to a single textual answer."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator

from promptclock.errors import NotFoundError, UpstreamError, ValidationError
from promptclock.llm.base import AgentBackend
from promptclock.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_EXPIRED,
    RUN_FAILED,
    RUN_INCOMPLETE,
    RUN_REQUIRES_ACTION,
    STREAM_ERROR,
    RunEvent,
    ToolCall,
    ToolOutput,
)
from promptclock.tools.base import ToolContext
from promptclock.tools.registry import FunctionRegistry

LOGGER = logging.getLogger(__name__)

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

NO_ANSWER_TEXT = "I don't have an answer for that."

_FAILURE_EVENTS = {RUN_FAILED, RUN_EXPIRED, RUN_INCOMPLETE, STREAM_ERROR}
_ACTIONABLE_EVENTS = _FAILURE_EVENTS | {RUN_REQUIRES_ACTION, RUN_COMPLETED, RUN_CANCELLED}


@dataclass(slots=True)
class RunResult:
    """Terminal outcome of a run."""

    status: str
    text: str = ""
    error: str | None = None
    rounds: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_COMPLETED

    @property
    def reply(self) -> str:
        """User-facing text, never empty."""

        if self.status == STATUS_CANCELLED:
            return "Sorry, the run was cancelled." + (f" ({self.error})" if self.error else "")
        if self.status == STATUS_FAILED:
            return f"Sorry, the run failed: {self.error or 'unknown error'}"
        return self.text or NO_ANSWER_TEXT


class RunEventProcessor:
    """Consumes run events, dispatches tool calls and resolves the answer.

    States: streaming -> (requires action -> streaming)* -> completed |
    failed | cancelled. Each requires-action batch is dispatched concurrently
    and submitted as one unit; rounds are strictly sequential and bounded by
    ``max_tool_rounds``.
    """

    def __init__(self, backend: AgentBackend, registry: FunctionRegistry, max_tool_rounds: int = 8) -> None:
        self._backend = backend
        self._registry = registry
        self._max_tool_rounds = max_tool_rounds

    async def process(self, events: AsyncIterator[RunEvent], *, tenant_id: str, thread_id: str) -> RunResult:
        context = ToolContext(tenant_id=tenant_id, thread_id=thread_id)
        rounds = 0
        while True:
            try:
                event = await _next_actionable(events)
            except UpstreamError as exc:
                LOGGER.warning("Run stream on thread %s broke: %s", thread_id, exc)
                return RunResult(STATUS_FAILED, error=str(exc), rounds=rounds)

            if event is None:
                LOGGER.warning("Run stream on thread %s ended without a terminal event", thread_id)
                return RunResult(STATUS_FAILED, error="the run ended unexpectedly", rounds=rounds)

            if event.type == RUN_COMPLETED:
                return await self._completed(thread_id, rounds)
            if event.type == RUN_CANCELLED:
                LOGGER.warning("Run %s on thread %s was cancelled", event.run_id, thread_id)
                return RunResult(STATUS_CANCELLED, error=event.error, rounds=rounds)
            if event.type in _FAILURE_EVENTS:
                LOGGER.warning("Run %s on thread %s ended with %s: %s", event.run_id, thread_id, event.type, event.error)
                return RunResult(STATUS_FAILED, error=event.error, rounds=rounds)

            rounds += 1
            if rounds > self._max_tool_rounds:
                LOGGER.warning(
                    "Run %s on thread %s exceeded %d tool rounds", event.run_id, thread_id, self._max_tool_rounds
                )
                await self._cancel(thread_id, event.run_id)
                return RunResult(
                    STATUS_FAILED,
                    error=f"the assistant requested tools more than {self._max_tool_rounds} times",
                    rounds=rounds - 1,
                )

            if event.run_id is None:
                return RunResult(STATUS_FAILED, error="tool request without a run id", rounds=rounds)
            outputs = await self._dispatch_batch(event.tool_calls, context)
            events = self._backend.submit_tool_outputs(thread_id, event.run_id, outputs)

    async def _completed(self, thread_id: str, rounds: int) -> RunResult:
        try:
            text = await self._backend.latest_assistant_message(thread_id)
        except UpstreamError as exc:
            return RunResult(STATUS_FAILED, error=str(exc), rounds=rounds)
        if text is None:
            LOGGER.info("Run on thread %s completed without an assistant text message", thread_id)
        return RunResult(STATUS_COMPLETED, text=text or "", rounds=rounds)

    async def _dispatch_batch(self, calls: list[ToolCall], context: ToolContext) -> list[ToolOutput]:
        return list(await asyncio.gather(*(self._dispatch_one(call, context) for call in calls)))

    async def _dispatch_one(self, call: ToolCall, context: ToolContext) -> ToolOutput:
        LOGGER.info("Processing tool call %s: %s", call.call_id, call.name)
        try:
            result = await self._registry.dispatch(call.name, _parse_arguments(call), context)
        except (NotFoundError, ValidationError) as exc:
            LOGGER.warning("Tool call %s (%s) rejected: %s", call.call_id, call.name, exc)
            result = {"error": str(exc)}
        return ToolOutput(call_id=call.call_id, output=json.dumps(result, default=str))

    async def _cancel(self, thread_id: str, run_id: str | None) -> None:
        if run_id is None:
            return
        try:
            await self._backend.cancel_run(thread_id, run_id)
        except UpstreamError:
            LOGGER.exception("Could not cancel run %s on thread %s", run_id, thread_id)


async def _next_actionable(events: AsyncIterator[RunEvent]) -> RunEvent | None:
    """Return the first event that changes run state, closing the stream."""

    async with aclosing(events) as stream:
        async for event in stream:
            if event.type in _ACTIONABLE_EVENTS:
                return event
    return None


def _parse_arguments(call: ToolCall) -> dict[str, Any]:
    try:
        parsed = json.loads(call.arguments or "{}")
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Arguments for {call.name} are not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError(f"Arguments for {call.name} must be a JSON object")
    return parsed
