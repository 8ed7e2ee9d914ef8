"""Per-tenant agent and thread bindings."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from promptclock.db import Database
from promptclock.errors import NotFoundError
from promptclock.llm.base import AgentBackend
from promptclock.tools.registry import FunctionRegistry

LOGGER = logging.getLogger(__name__)


class SessionManager:
    """Lazily creates and caches one agent and one interactive thread per tenant.

    Cache fills are guarded by a per-tenant lock so concurrent callers for the
    same tenant share one upstream agent and one interactive thread. Both
    caches live for the whole process; scheduled runs use ephemeral threads
    that are never cached.
    """

    def __init__(self, db: Database, backend: AgentBackend, registry: FunctionRegistry) -> None:
        self._db = db
        self._backend = backend
        self._registry = registry
        self._agents: dict[str, str] = {}
        self._threads: dict[str, str] = {}
        self._agent_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._thread_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def get_or_create_agent(self, tenant_id: str) -> str:
        tenant = self._db.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}")

        async with self._agent_locks[tenant_id]:
            agent_id = self._agents.get(tenant_id)
            if agent_id is None:
                agent_id = await self._backend.create_agent(
                    tenant.system_instructions, self._registry.list_tool_specs()
                )
                self._agents[tenant_id] = agent_id
                LOGGER.info("Created agent %s for tenant %s", agent_id, tenant_id)
            return agent_id

    async def get_or_create_interactive_thread(self, tenant_id: str) -> str:
        async with self._thread_locks[tenant_id]:
            thread_id = self._threads.get(tenant_id)
            if thread_id is None:
                thread_id = await self._backend.create_thread({"tenant": tenant_id})
                self._threads[tenant_id] = thread_id
                LOGGER.info("Created interactive thread %s for tenant %s", thread_id, tenant_id)
            return thread_id

    async def create_ephemeral_thread(self, tenant_id: str) -> str:
        thread_id = await self._backend.create_thread({"tenant": tenant_id})
        LOGGER.info("Created ephemeral thread %s for tenant %s", thread_id, tenant_id)
        return thread_id

    async def update_instructions(self, tenant_id: str, instructions: str) -> None:
        """Push new system instructions to the tenant's cached agent, if any.

        Tenants without a cached agent pick up the stored instructions when
        their agent is first created.
        """
        async with self._agent_locks[tenant_id]:
            agent_id = self._agents.get(tenant_id)
            if agent_id is None:
                return
            await self._backend.update_agent(agent_id, instructions)
            LOGGER.info("Updated instructions of agent %s for tenant %s", agent_id, tenant_id)
