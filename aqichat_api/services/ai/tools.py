"""
Tool Registry for the AQI Assistant

Declares the functions advertised to the LLM and executes tool calls
against the live data source, through the shared result caches.
Tool results are fed back verbatim into the next completion, so invoke()
always returns a JSON-serializable value and never raises.
"""

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aqichat_core.logger import logger
from .cache import ToolCaches
from .feature_service import PlaceDataSource, clamp_limit
from .place_resolver import PlaceResolver


TOP_CITIES_TOOL = "getTopCities"
CITY_PM25_TOOL = "getCityPM25"


class TopCitiesArgs(BaseModel):
    """Arguments for getTopCities; limit is clamped rather than rejected"""
    model_config = ConfigDict(extra="ignore")

    limit: Optional[Any] = None


class CityPM25Args(BaseModel):
    """Arguments for getCityPM25"""
    model_config = ConfigDict(extra="ignore")

    query: str = Field(..., description="City/station text")


@dataclass(frozen=True)
class ToolDefinition:
    """A callable tool as advertised to the language model"""
    name: str
    description: str
    parameters: Dict[str, Any]
    args_model: Type[BaseModel]

    @property
    def required(self) -> List[str]:
        return list(self.parameters.get("required", []))

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


TOOL_DEFINITIONS: List[ToolDefinition] = [
    ToolDefinition(
        name=TOP_CITIES_TOOL,
        description=(
            "Return top N polluted cities worldwide using latest PM2.5 "
            "(avg across stations; only cities with ≥3 stations). Values in µg/m³."
        ),
        parameters={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "description": "How many to return (1–20). Default 5.",
                },
            },
        },
        args_model=TopCitiesArgs,
    ),
    ToolDefinition(
        name=CITY_PM25_TOOL,
        description=(
            "Return a live summary for a city or station name (best match): avg PM2.5 "
            "and station count. Accepts city names, station names, or addresses (tolerant)."
        ),
        parameters={
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "City/station text e.g., 'Hanoi', 'Số 46, phố Lưu Quang Vũ (Vietnam)'",
                },
            },
            "required": ["query"],
        },
        args_model=CityPM25Args,
    ),
]


class ToolArgumentsError(ValueError):
    """Tool arguments are not valid JSON or do not fit the tool's schema"""


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "arguments"
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def parse_arguments(definition: ToolDefinition, arguments_json: Optional[str]) -> BaseModel:
    """
    Decode and validate tool arguments

    Raises:
        ToolArgumentsError: on invalid JSON, a non-object payload or schema mismatch
    """
    try:
        payload = json.loads(arguments_json or "{}")
    except (TypeError, ValueError) as e:
        raise ToolArgumentsError(f"invalid JSON arguments ({e})")

    if not isinstance(payload, dict):
        raise ToolArgumentsError("arguments must be a JSON object")

    try:
        return definition.args_model.model_validate(payload)
    except ValidationError as e:
        raise ToolArgumentsError(_describe_validation_error(e))


class AQIToolRegistry:
    """
    Maps tool names to place resolution and data source calls

    Caches are injected so their lifetime follows the hosting process,
    not an individual request.
    """

    def __init__(
        self,
        source: PlaceDataSource,
        caches: ToolCaches,
        resolver: Optional[PlaceResolver] = None
    ):
        self.source = source
        self.caches = caches
        self.resolver = resolver or PlaceResolver()
        self._definitions = {d.name: d for d in TOOL_DEFINITIONS}
        self._handlers: Dict[str, Callable[[BaseModel], Awaitable[Any]]] = {
            TOP_CITIES_TOOL: self.get_top_cities,
            CITY_PM25_TOOL: self.get_city_pm25,
        }

    def declarations(self) -> List[ToolDefinition]:
        return list(TOOL_DEFINITIONS)

    def openai_tools(self) -> List[Dict[str, Any]]:
        """Declarations in chat-completions `tools` format"""
        return [d.to_openai() for d in self.declarations()]

    async def invoke(self, name: str, arguments_json: Optional[str]) -> Any:
        """
        Execute one tool call

        Args:
            name: Tool name chosen by the model
            arguments_json: Raw JSON arguments string from the model

        Returns:
            JSON-serializable tool result, or {"error": ...}
        """
        definition = self._definitions.get(name)
        if definition is None:
            logger.warning(f"Model requested unknown tool: {name}")
            return {"error": f"Unknown tool: {name}"}

        try:
            args = parse_arguments(definition, arguments_json)
            logger.bind(context="chat").info(f"Tool {name} args={args.model_dump()}")
            return await self._handlers[name](args)
        except Exception as e:
            logger.error(f"Tool {name} failed: {e}")
            return {"error": f"Tool exec error: {e}"}

    async def get_top_cities(self, args: TopCitiesArgs) -> List[Dict[str, Any]]:
        k = clamp_limit(args.limit)
        key = f"k={k}"

        cached = self.caches.top_cities.get(key)
        if cached is not None:
            return cached

        items = [row.to_dict() for row in await self.source.rank_top(k)]
        self.caches.top_cities.put(key, items)
        return items

    async def get_city_pm25(self, args: CityPM25Args) -> Dict[str, Any]:
        query = self.resolver.resolve(args.query)
        if query.is_empty:
            return {"ok": False, "message": "Empty query."}

        cached = self.caches.city.get(query.cache_key)
        if cached is not None:
            return cached

        result = (await self.source.lookup_best(query)).to_dict()
        self.caches.city.put(query.cache_key, result)
        return result
