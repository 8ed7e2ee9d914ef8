"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from promptclock.config import Settings, allowed_senders, load_settings
from promptclock.db import Database
from promptclock.errors import TransportError
from promptclock.llm.openai_assistants import OpenAIAssistantsBackend
from promptclock.models import Message
from promptclock.orchestrator import Orchestrator, Transport
from promptclock.run_processor import RunEventProcessor
from promptclock.scheduler import ScheduleRegistry
from promptclock.sessions import SessionManager
from promptclock.signal_adapter import SignalAdapter
from promptclock.tools.ddg_search_tool import WebSearchTool
from promptclock.tools.prompt_tools import (
    CreatePromptTool,
    DeletePromptTool,
    EditPromptTool,
    RetrievePromptsTool,
)
from promptclock.tools.registry import FunctionRegistry
from promptclock.tools.tenant_tools import EditTenantTool, RetrieveTenantTool
from promptclock.tools.time_tool import ModelInfoTool, TimestampTool
from promptclock.tools.weather_tool import CurrentWeatherTool

LOGGER = logging.getLogger(__name__)


def register_builtin_tools(
    registry: FunctionRegistry,
    settings: Settings,
    db: Database,
    sessions: SessionManager,
    schedules: ScheduleRegistry,
) -> None:
    registry.register(ModelInfoTool(settings.openai_model))
    registry.register(TimestampTool())
    registry.register(RetrieveTenantTool(db))
    registry.register(EditTenantTool(db, sessions))
    registry.register(RetrievePromptsTool(db))
    registry.register(CreatePromptTool(db, schedules))
    registry.register(EditPromptTool(db, schedules))
    registry.register(DeletePromptTool(db, schedules))
    registry.register(WebSearchTool())
    if settings.weather_api_key:
        registry.register(CurrentWeatherTool(settings.weather_api_key))


async def reply_to(orchestrator: Orchestrator, transport: Transport, message: Message) -> None:
    """Answer one inbound message. Failures are logged, never raised."""

    try:
        reply = await orchestrator.handle_message(message)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Could not handle message from %s", message.tenant_id)
        return
    try:
        await transport.send_message(message.tenant_id, reply)
    except TransportError:
        LOGGER.exception("Delivery to %s failed", message.tenant_id)


async def shutdown(schedules: ScheduleRegistry, pending: set[asyncio.Task[None]]) -> None:
    """Stop timers and cancel message tasks, waiting for both to unwind."""

    schedules.stop()
    tasks = list(pending)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await schedules.drain()


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()
    logging.basicConfig(level=settings.log_level.upper())

    db = Database(settings.database_path)
    db.initialize()

    backend = OpenAIAssistantsBackend(settings)
    registry = FunctionRegistry(db, handler_timeout_seconds=settings.tool_timeout_seconds)
    sessions = SessionManager(db, backend, registry)
    processor = RunEventProcessor(backend, registry, max_tool_rounds=settings.max_tool_rounds)

    signal_adapter = SignalAdapter(
        signal_cli_path=settings.signal_cli_path,
        account=settings.signal_account,
        poll_interval_seconds=settings.signal_poll_interval_seconds,
        allowed_senders=allowed_senders(settings),
    )

    orchestrator = Orchestrator(
        db=db,
        backend=backend,
        sessions=sessions,
        processor=processor,
        transport=signal_adapter,
        default_system_instructions=settings.default_system_instructions,
        default_timezone=settings.default_timezone,
        presence_interval_seconds=settings.presence_interval_seconds,
    )

    schedules = ScheduleRegistry(db=db, handler=orchestrator.handle_schedule_trigger)
    register_builtin_tools(registry, settings, db, sessions, schedules)
    schedules.load_all()

    pending: set[asyncio.Task[None]] = set()
    try:
        async for message in signal_adapter.poll_messages():
            task = asyncio.create_task(
                reply_to(orchestrator, signal_adapter, message), name=f"message-{message.tenant_id}"
            )
            pending.add(task)
            task.add_done_callback(pending.discard)
    finally:
        await shutdown(schedules, pending)
        LOGGER.info("promptclock shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
