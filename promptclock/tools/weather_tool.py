"""weatherapi.com current conditions tool."""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, Field

from promptclock.tools.base import Tool, ToolContext

WEATHER_API_URL = "https://api.weatherapi.com/v1/current.json"


class WeatherArgs(BaseModel):
    q: str = Field(
        description=(
            "Location to get the weather for. Can be a city name, zipcode, IP address, "
            "or lat/lng coordinates. Example: 'London'"
        )
    )


class CurrentWeatherTool(Tool):
    name = "get_current_weather"
    description = "Gets info about the current weather at a given location."
    parameters = WeatherArgs

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def run(self, args: WeatherArgs, context: ToolContext) -> dict[str, Any]:
        async with httpx.AsyncClient() as client:
            resp = await client.get(
                WEATHER_API_URL,
                params={"key": self._api_key, "q": args.q.strip()},
                timeout=15.0,
            )
            if resp.status_code != 200:
                return {"error": f"Weather lookup failed (HTTP {resp.status_code}) for {args.q!r}"}
            data = resp.json()

        location = data.get("location", {})
        current = data.get("current", {})
        return {
            "location": ", ".join(p for p in (location.get("name"), location.get("region"), location.get("country")) if p),
            "localtime": location.get("localtime"),
            "condition": (current.get("condition") or {}).get("text"),
            "temp_c": current.get("temp_c"),
            "feelslike_c": current.get("feelslike_c"),
            "humidity": current.get("humidity"),
            "wind_kph": current.get("wind_kph"),
            "wind_dir": current.get("wind_dir"),
            "precip_mm": current.get("precip_mm"),
            "uv": current.get("uv"),
        }
