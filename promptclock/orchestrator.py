"""Routes chat messages and schedule fires into agent runs."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Protocol

from promptclock.db import Database
from promptclock.errors import TransportError, UpstreamError
from promptclock.llm.base import AgentBackend
from promptclock.models import Job, Message
from promptclock.run_processor import STATUS_FAILED, RunEventProcessor, RunResult
from promptclock.sessions import SessionManager

LOGGER = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_message(self, recipient: str, text: str, markdown: bool = True) -> None: ...

    async def send_typing(self, recipient: str, stop: bool = False) -> None: ...


class Orchestrator:
    """Tenant-isolated facade over sessions, runs and delivery.

    Interactive runs for one tenant share a thread upstream, so they are
    serialized with a per-tenant lock. Scheduled runs use fresh threads and
    run without it.
    """

    def __init__(
        self,
        db: Database,
        backend: AgentBackend,
        sessions: SessionManager,
        processor: RunEventProcessor,
        transport: Transport,
        default_system_instructions: str,
        default_timezone: str,
        presence_interval_seconds: float = 5.0,
    ) -> None:
        self._db = db
        self._backend = backend
        self._sessions = sessions
        self._processor = processor
        self._transport = transport
        self._default_system_instructions = default_system_instructions
        self._default_timezone = default_timezone
        self._presence_interval_seconds = presence_interval_seconds
        self._run_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def handle_message(self, message: Message) -> str:
        """Handle one inbound user message and return the assistant reply."""

        tenant_id = message.tenant_id
        if self._db.ensure_tenant(tenant_id, self._default_system_instructions, self._default_timezone):
            LOGGER.info("Created tenant %s", tenant_id)

        presence = asyncio.create_task(self._presence_loop(tenant_id), name=f"presence-{tenant_id}")
        try:
            async with self._run_locks[tenant_id]:
                result = await self._run_interactive(tenant_id, message.text)
        finally:
            presence.cancel()
            await self._clear_presence(tenant_id)

        LOGGER.info("Run for tenant %s finished with status %s", tenant_id, result.status)
        return result.reply

    async def handle_schedule_trigger(self, job: Job) -> None:
        """Run a stored prompt on a fresh thread and push the answer to the tenant."""

        result = await self._run_ephemeral(job.tenant_id, job.prompt)
        LOGGER.info("Scheduled job %s finished with status %s", job.id, result.status)
        try:
            await self._transport.send_message(job.tenant_id, result.reply)
        except TransportError:
            LOGGER.exception("Delivery of job %s to tenant %s failed, not retrying", job.id, job.tenant_id)

    async def _run_interactive(self, tenant_id: str, text: str) -> RunResult:
        try:
            agent_id = await self._sessions.get_or_create_agent(tenant_id)
            thread_id = await self._sessions.get_or_create_interactive_thread(tenant_id)
        except UpstreamError as exc:
            LOGGER.warning("Could not open session for tenant %s: %s", tenant_id, exc)
            return RunResult(STATUS_FAILED, error=str(exc))
        return await self._run(tenant_id, agent_id, thread_id, text)

    async def _run_ephemeral(self, tenant_id: str, text: str) -> RunResult:
        try:
            agent_id = await self._sessions.get_or_create_agent(tenant_id)
            thread_id = await self._sessions.create_ephemeral_thread(tenant_id)
        except UpstreamError as exc:
            LOGGER.warning("Could not open ephemeral session for tenant %s: %s", tenant_id, exc)
            return RunResult(STATUS_FAILED, error=str(exc))
        return await self._run(tenant_id, agent_id, thread_id, text)

    async def _run(self, tenant_id: str, agent_id: str, thread_id: str, text: str) -> RunResult:
        try:
            await self._backend.add_message(thread_id, text)
        except UpstreamError as exc:
            LOGGER.warning("Could not add message to thread %s: %s", thread_id, exc)
            return RunResult(STATUS_FAILED, error=str(exc))
        events = self._backend.stream_run(thread_id, agent_id)
        return await self._processor.process(events, tenant_id=tenant_id, thread_id=thread_id)

    async def _presence_loop(self, tenant_id: str) -> None:
        """Repeatedly send a typing indicator until cancelled."""
        while True:
            try:
                await self._transport.send_typing(tenant_id)
            except TransportError as exc:
                LOGGER.debug("Typing indicator for %s failed: %s", tenant_id, exc)
            await asyncio.sleep(self._presence_interval_seconds)

    async def _clear_presence(self, tenant_id: str) -> None:
        try:
            await self._transport.send_typing(tenant_id, stop=True)
        except TransportError as exc:
            LOGGER.debug("Clearing typing indicator for %s failed: %s", tenant_id, exc)
