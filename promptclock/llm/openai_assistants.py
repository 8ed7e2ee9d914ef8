"""OpenAI assistants (v2) implementation of AgentBackend."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

import httpx

from promptclock.config import Settings
from promptclock.errors import UpstreamError
from promptclock.llm.base import AgentBackend
from promptclock.models import STREAM_ERROR, RunEvent, ToolCall, ToolOutput

_LOGGER = logging.getLogger(__name__)

_MAX_RETRIES = 3
_RETRY_BACKOFF_SECONDS = [5, 15, 45]
_DONE = "[DONE]"


class OpenAIAssistantsBackend(AgentBackend):
    """Agent backend using the assistants REST API with streamed runs."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    async def create_agent(self, instructions: str, tools: list[dict[str, Any]]) -> str:
        _LOGGER.info("Creating assistant with model: %s", self._settings.openai_model)
        data = await self._request(
            "POST",
            "/assistants",
            {"model": self._settings.openai_model, "instructions": instructions, "tools": tools},
        )
        return _object_id(data, "/assistants")

    async def update_agent(self, agent_id: str, instructions: str) -> None:
        await self._request("POST", f"/assistants/{agent_id}", {"instructions": instructions})

    async def create_thread(self, metadata: dict[str, str]) -> str:
        data = await self._request("POST", "/threads", {"metadata": metadata})
        return _object_id(data, "/threads")

    async def add_message(self, thread_id: str, content: str, role: str = "user") -> None:
        await self._request("POST", f"/threads/{thread_id}/messages", {"role": role, "content": content})

    def stream_run(self, thread_id: str, agent_id: str) -> AsyncIterator[RunEvent]:
        return self._stream(f"/threads/{thread_id}/runs", {"assistant_id": agent_id, "stream": True})

    def submit_tool_outputs(
        self, thread_id: str, run_id: str, outputs: list[ToolOutput]
    ) -> AsyncIterator[RunEvent]:
        _LOGGER.info("Submitting %d tool outputs for run %s", len(outputs), run_id)
        return self._stream(
            f"/threads/{thread_id}/runs/{run_id}/submit_tool_outputs",
            {
                "tool_outputs": [{"tool_call_id": o.call_id, "output": o.output} for o in outputs],
                "stream": True,
            },
        )

    async def cancel_run(self, thread_id: str, run_id: str) -> None:
        await self._request("POST", f"/threads/{thread_id}/runs/{run_id}/cancel")

    async def latest_assistant_message(self, thread_id: str) -> str | None:
        data = await self._request("GET", f"/threads/{thread_id}/messages", params={"order": "desc", "limit": 20})
        for message in data.get("data", []):
            if message.get("role") != "assistant":
                continue
            parts = [
                str(part["text"].get("value", ""))
                for part in message.get("content", [])
                if part.get("type") == "text" and isinstance(part.get("text"), dict)
            ]
            _LOGGER.info("Latest assistant message has %d text part(s)", len(parts))
            return "\n".join(parts) if parts else None
        return None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.openai_base_url,
            timeout=httpx.Timeout(self._settings.request_timeout_seconds),
            headers={
                "Authorization": f"Bearer {self._settings.openai_api_key}",
                "Content-Type": "application/json",
                "OpenAI-Beta": "assistants=v2",
            },
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            async with self._client() as client:
                for attempt in range(_MAX_RETRIES + 1):
                    response = await client.request(method, path, json=payload, params=params)
                    if response.status_code == 429 and attempt < _MAX_RETRIES:
                        wait = _RETRY_BACKOFF_SECONDS[attempt]
                        _LOGGER.warning(
                            "Assistants API rate limited (429), retrying in %ds (attempt %d/%d)",
                            wait,
                            attempt + 1,
                            _MAX_RETRIES,
                        )
                        await asyncio.sleep(wait)
                        continue
                    break
                if response.is_error:
                    raise UpstreamError(
                        f"{method} {path} failed with HTTP {response.status_code}: {response.text[:500]}"
                    )
                try:
                    data = response.json()
                except ValueError as exc:
                    raise UpstreamError(f"{method} {path} returned invalid JSON: {response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"{method} {path} failed: {exc}") from exc
        if not isinstance(data, dict):
            raise UpstreamError(f"{method} {path} returned unexpected data: {response.text[:200]}")
        return data

    async def _stream(self, path: str, payload: dict[str, Any]) -> AsyncIterator[RunEvent]:
        try:
            async with self._client() as client:
                async with client.stream("POST", path, json=payload) as response:
                    if response.is_error:
                        body = (await response.aread()).decode(errors="replace")
                        raise UpstreamError(
                            f"POST {path} failed with HTTP {response.status_code}: {body[:500]}"
                        )
                    event_name: str | None = None
                    data_lines: list[str] = []
                    async for line in response.aiter_lines():
                        if line.startswith("event:"):
                            event_name = line[len("event:"):].strip()
                            continue
                        if line.startswith("data:"):
                            data_lines.append(line[len("data:"):].strip())
                            continue
                        if line or event_name is None:
                            continue
                        data = "\n".join(data_lines)
                        name, event_name, data_lines = event_name, None, []
                        if name == "done" or data == _DONE:
                            return
                        _LOGGER.debug("Received event: %s", name)
                        yield parse_event(name, data)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"POST {path} stream failed: {exc}") from exc


def _object_id(data: dict[str, Any], path: str) -> str:
    object_id = data.get("id")
    if not object_id:
        raise UpstreamError(f"POST {path} returned no id")
    return str(object_id)


def parse_event(name: str, data: str) -> RunEvent:
    """Convert one server-sent event into a RunEvent."""

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise UpstreamError(f"Malformed data for event {name}: {data[:200]}") from exc
    if not isinstance(payload, dict):
        raise UpstreamError(f"Unexpected data for event {name}: {data[:200]}")

    if name == STREAM_ERROR:
        error = payload.get("error", payload)
        message = error.get("message") if isinstance(error, dict) else str(error)
        return RunEvent(type=name, error=message or "unknown error", raw=payload)

    if not name.startswith("thread.run.") or name.startswith("thread.run.step."):
        return RunEvent(type=name, raw=payload)

    last_error = payload.get("last_error") or {}
    incomplete = payload.get("incomplete_details") or {}
    action = payload.get("required_action") or {}
    calls = (action.get("submit_tool_outputs") or {}).get("tool_calls") or []
    return RunEvent(
        type=name,
        run_id=payload.get("id"),
        thread_id=payload.get("thread_id"),
        tool_calls=[
            ToolCall(
                call_id=str(call.get("id", "")),
                name=str((call.get("function") or {}).get("name", "")),
                arguments=str((call.get("function") or {}).get("arguments") or "{}"),
            )
            for call in calls
        ],
        error=last_error.get("message") or incomplete.get("reason"),
        raw=payload,
    )
