"""Agent backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from promptclock.models import RunEvent, ToolOutput


class AgentBackend(ABC):
    """Abstract assistants-style model API used by sessions and runs."""

    @abstractmethod
    async def create_agent(self, instructions: str, tools: list[dict[str, Any]]) -> str:
        """Create an agent and return its id."""

    @abstractmethod
    async def update_agent(self, agent_id: str, instructions: str) -> None:
        """Replace the instructions of an existing agent."""

    @abstractmethod
    async def create_thread(self, metadata: dict[str, str]) -> str:
        """Create a conversation thread and return its id."""

    @abstractmethod
    async def add_message(self, thread_id: str, content: str, role: str = "user") -> None:
        """Append a message to a thread."""

    @abstractmethod
    def stream_run(self, thread_id: str, agent_id: str) -> AsyncIterator[RunEvent]:
        """Start a run and yield its events."""

    @abstractmethod
    def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: list[ToolOutput]
    ) -> AsyncIterator[RunEvent]:
        """Submit a complete batch of tool outputs and yield the resumed run's events."""

    @abstractmethod
    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        """Cancel a run that is still active."""

    @abstractmethod
    async def latest_assistant_message(self, thread_id: str) -> str | None:
        """Return the text of the newest assistant message, if there is one."""
