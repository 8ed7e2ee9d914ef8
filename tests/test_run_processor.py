import asyncio
import json

import pytest
from pydantic import BaseModel

from fakes import completed, failed, requires_action
from promptclock.errors import UpstreamError
from promptclock.models import RUN_CANCELLED, RunEvent
from promptclock.run_processor import (
    NO_ANSWER_TEXT,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_FAILED,
    RunEventProcessor,
)
from promptclock.tools.base import NoArguments
from promptclock.tools.registry import FunctionRegistry


class CityArgs(BaseModel):
    city: str


def _registry(db) -> FunctionRegistry:
    registry = FunctionRegistry(db)
    registry.register_function("weather", "weather", CityArgs, lambda args, ctx: {"city": args.city, "temp": 21})
    registry.register_function("whoami", "tenant", NoArguments, lambda args, ctx: ctx.tenant_id)

    def explode(args, ctx):
        raise RuntimeError("upstream 500")

    registry.register_function("explode", "fails", NoArguments, explode)
    return registry


async def _process(processor, backend, thread_id="thread-1"):
    return await processor.process(backend.stream_run(thread_id, "agent-1"), tenant_id="t1", thread_id=thread_id)


@pytest.mark.asyncio
async def test_completed_run_resolves_latest_assistant_text(db, backend):
    backend.answer = "Hello there"
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_COMPLETED
    assert result.reply == "Hello there"
    assert result.succeeded


@pytest.mark.asyncio
async def test_completed_without_assistant_message_resolves_placeholder(db, backend):
    backend.answer = None
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_COMPLETED
    assert result.text == ""
    assert result.reply == NO_ANSWER_TEXT


@pytest.mark.asyncio
async def test_failed_run_resolves_with_reason(db, backend):
    backend.scripts = [[failed("rate limit exceeded")]]
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_FAILED
    assert "rate limit exceeded" in result.reply
    assert not result.succeeded


@pytest.mark.asyncio
async def test_cancelled_run_resolves_with_message(db, backend):
    backend.scripts = [[RunEvent(type=RUN_CANCELLED, run_id="run-1")]]
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_CANCELLED
    assert "cancelled" in result.reply


@pytest.mark.asyncio
async def test_non_state_events_are_skipped(db, backend):
    backend.scripts = [[RunEvent(type="thread.message.delta"), RunEvent(type="thread.run.step.created"), completed()]]
    backend.answer = "done"
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.reply == "done"


@pytest.mark.asyncio
async def test_tool_batch_submits_one_output_per_call_even_when_one_fails(db, backend):
    backend.scripts = [
        [
            requires_action(
                ("call-a", "weather", '{"city": "Berlin"}'),
                ("call-b", "explode", "{}"),
                ("call-c", "whoami", "{}"),
            )
        ],
        [completed()],
    ]
    backend.answer = "It is 21 degrees."
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.reply == "It is 21 degrees."
    assert len(backend.submissions) == 1
    thread_id, run_id, outputs = backend.submissions[0]
    assert (thread_id, run_id) == ("thread-1", "run-1")
    by_id = {o.call_id: json.loads(o.output) for o in outputs}
    assert set(by_id) == {"call-a", "call-b", "call-c"}
    assert by_id["call-a"] == {"city": "Berlin", "temp": 21}
    assert "upstream 500" in by_id["call-b"]["error"]
    assert by_id["call-c"] == "t1"


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_become_error_outputs(db, backend):
    backend.scripts = [
        [
            requires_action(
                ("call-a", "nope", "{}"),
                ("call-b", "weather", "{}"),
                ("call-c", "weather", "not json"),
            )
        ],
        [completed()],
    ]
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_COMPLETED
    outputs = {o.call_id: json.loads(o.output) for o in backend.submissions[0][2]}
    assert "Unknown tool" in outputs["call-a"]["error"]
    assert "Invalid input" in outputs["call-b"]["error"]
    assert "not valid JSON" in outputs["call-c"]["error"]


@pytest.mark.asyncio
async def test_tool_calls_in_a_batch_run_concurrently(db, backend):
    first_started = asyncio.Event()
    second_started = asyncio.Event()
    registry = FunctionRegistry(db, handler_timeout_seconds=1.0)

    async def first(args, ctx):
        first_started.set()
        await second_started.wait()
        return "first"

    async def second(args, ctx):
        second_started.set()
        await first_started.wait()
        return "second"

    registry.register_function("first", "", NoArguments, first)
    registry.register_function("second", "", NoArguments, second)
    backend.scripts = [[requires_action(("c1", "first", "{}"), ("c2", "second", "{}"))], [completed()]]

    await _process(RunEventProcessor(backend, registry), backend)

    outputs = {o.call_id: json.loads(o.output) for o in backend.submissions[0][2]}
    assert outputs == {"c1": "first", "c2": "second"}


@pytest.mark.asyncio
async def test_multiple_tool_rounds_are_sequential(db, backend):
    backend.scripts = [
        [requires_action(("call-1", "whoami", "{}"), run_id="run-9")],
        [requires_action(("call-2", "weather", '{"city": "Oslo"}'), run_id="run-9")],
        [completed("run-9")],
    ]
    backend.answer = "final"
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.reply == "final"
    assert result.rounds == 2
    assert [s[2][0].call_id for s in backend.submissions] == ["call-1", "call-2"]
    assert all(s[1] == "run-9" for s in backend.submissions)


@pytest.mark.asyncio
async def test_round_limit_fails_and_cancels_run(db, backend):
    backend.scripts = [[requires_action((f"call-{i}", "whoami", "{}"))] for i in range(5)]
    processor = RunEventProcessor(backend, _registry(db), max_tool_rounds=2)

    result = await _process(processor, backend)

    assert result.status == STATUS_FAILED
    assert "more than 2 times" in result.reply
    assert len(backend.submissions) == 2
    assert backend.cancelled == [("thread-1", "run-1")]


@pytest.mark.asyncio
async def test_stream_error_resolves_as_failure(db, backend):
    async def broken_stream():
        yield RunEvent(type="thread.run.created", run_id="run-1")
        raise UpstreamError("connection reset")

    processor = RunEventProcessor(backend, _registry(db))

    result = await processor.process(broken_stream(), tenant_id="t1", thread_id="thread-1")

    assert result.status == STATUS_FAILED
    assert "connection reset" in result.reply


@pytest.mark.asyncio
async def test_stream_without_terminal_event_resolves_as_failure(db, backend):
    backend.scripts = [[RunEvent(type="thread.run.created", run_id="run-1")]]
    processor = RunEventProcessor(backend, _registry(db))

    result = await _process(processor, backend)

    assert result.status == STATUS_FAILED
    assert "ended unexpectedly" in result.reply
