"""DuckDuckGo search tool."""

from __future__ import annotations

import asyncio
from typing import Any

from ddgs import DDGS
from pydantic import BaseModel, Field

from promptclock.tools.base import Tool, ToolContext


class SearchArgs(BaseModel):
    query: str = Field(description="search query")
    limit: int = Field(default=5, ge=1, le=20, description="max results to return (default 5, max 20)")


class WebSearchTool(Tool):
    """Search the web using DuckDuckGo (no API key required)."""

    name = "web_search"
    description = (
        "Searches the web to return the most relevant web pages for a given query. "
        "Can also be used to find up-to-date news and information about many topics."
    )
    parameters = SearchArgs

    async def run(self, args: SearchArgs, context: ToolContext) -> list[dict[str, Any]]:
        query = args.query.strip()
        results = await asyncio.to_thread(
            lambda: DDGS().text(query, max_results=args.limit, backend="duckduckgo")
        )
        return [
            {"title": r.get("title", ""), "url": r.get("href", ""), "snippet": r.get("body", "")}
            for r in results or []
        ]
