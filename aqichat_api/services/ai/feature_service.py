"""
Live PM2.5 Data Sources for AI Tools

Wraps the Esri Living Atlas feature service (OpenAQ PM2.5, latest hour).
Every query is an aggregate over stations grouped by city and country,
restricted to physically plausible readings.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from aqichat_core.config import settings
from aqichat_core.logger import logger
from .place_resolver import PlaceQuery


# Keep numbers sane; ensure city exists; units µg/m³
SANE_WHERE = "value BETWEEN 0 AND 500 AND city IS NOT NULL AND unit IN ('µg/m³','ug/m3')"

STATISTICS = json.dumps([
    {"statisticType": "avg", "onStatisticField": "value", "outStatisticFieldName": "avg_pm25"},
    {"statisticType": "count", "onStatisticField": "value", "outStatisticFieldName": "n_stations"},
])

GROUP_BY = "city,country_name"
MIN_STATIONS = 3
MIN_LIMIT = 1
MAX_LIMIT = 20
DEFAULT_LIMIT = 5


class UpstreamError(Exception):
    """Transport, status or payload failure from an upstream data service"""

    def __init__(self, status: Optional[int], message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.status} {self.message}"


def escape_literal(value: Any) -> str:
    """Lowercase text and double single quotes for a SQL string literal"""
    return str(value).lower().replace("'", "''")


def clamp_limit(value: Any, default: int = DEFAULT_LIMIT) -> int:
    """
    Clamp a requested ranking size into [MIN_LIMIT, MAX_LIMIT]

    Missing, non-numeric and non-finite values fall back to the default.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = float(default)

    if not math.isfinite(number) or isinstance(value, bool):
        number = float(default)

    return int(max(MIN_LIMIT, min(MAX_LIMIT, number)))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class MapAction:
    """Presentation hint: center the map on a place"""
    place: str
    country: Optional[str] = None
    kind: str = "centerOn"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "place": self.place, "country": self.country}


@dataclass(frozen=True)
class RankedPlace:
    """One row of a top-N ranking"""
    rank: int
    place: str
    country: Optional[str]
    metric_value: int
    sample_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "city": self.place,
            "country": self.country,
            "avg_pm25": self.metric_value,
            "stations": self.sample_count,
        }


@dataclass(frozen=True)
class PlaceResult:
    """Best match for a place query; ok=False carries only a message"""
    ok: bool
    place: Optional[str] = None
    country: Optional[str] = None
    metric_value: Optional[int] = None
    sample_count: Optional[int] = None
    map_action: Optional[MapAction] = None
    message: Optional[str] = None

    @classmethod
    def not_found(cls, message: str) -> "PlaceResult":
        return cls(ok=False, message=message)

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "message": self.message}

        result = {
            "ok": True,
            "city": self.place,
            "country": self.country,
            "avg_pm25": self.metric_value,
            "stations": self.sample_count,
        }
        if self.map_action is not None:
            result["action"] = self.map_action.to_dict()
        return result


class PlaceDataSource(ABC):
    """
    Capability interface over an upstream air-quality data provider

    Implementations must be side-effect free against the upstream and
    raise UpstreamError on any transport or parse failure.
    """

    name: str = "source"
    source_label: str = ""

    @abstractmethod
    async def rank_top(self, limit: Any) -> List[RankedPlace]:
        """Places ranked by mean PM2.5, highest first"""

    @abstractmethod
    async def lookup_best(self, query: PlaceQuery) -> PlaceResult:
        """Single best match for a resolved place query"""

    async def close(self):
        """Release any held connections"""


class FeatureServiceSource(PlaceDataSource):
    """
    ArcGIS FeatureServer query client for the OpenAQ PM2.5 layer

    Uses the statistics query form: outStatistics, groupByFieldsForStatistics,
    having, orderByFields and resultRecordCount.
    """

    name = "living_atlas"
    source_label = "OpenAQ via Esri Living Atlas (latest hour)"

    def __init__(
        self,
        url: str = None,
        timeout: float = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize feature service client

        Args:
            url: FeatureServer layer query URL
            timeout: Request timeout in seconds
            client: Optional preconfigured httpx client (used by tests)
        """
        self.url = url or settings.feature_service_url
        self.timeout = timeout or settings.feature_service_timeout
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    async def _post(self, params: Dict[str, str]) -> Dict[str, Any]:
        """POST a form-encoded query and return the decoded payload"""
        try:
            response = await self.client.post(
                self.url,
                data=params,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException:
            logger.error(f"Feature service timeout after {self.timeout}s")
            raise UpstreamError(None, f"ArcGIS FS timeout after {self.timeout}s")
        except httpx.HTTPError as e:
            logger.error(f"Feature service transport error: {e}")
            raise UpstreamError(None, f"ArcGIS FS transport error: {e}")

        if response.status_code >= 400:
            logger.error(f"Feature service HTTP error: {response.status_code}")
            raise UpstreamError(
                response.status_code,
                f"ArcGIS FS {response.status_code} {response.reason_phrase}",
            )

        try:
            payload = response.json()
        except ValueError:
            raise UpstreamError(response.status_code, "ArcGIS FS returned invalid JSON")

        # ArcGIS reports query errors in a 200 body
        if isinstance(payload, dict) and payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else None
            code = error.get("code") if isinstance(error, dict) else None
            raise UpstreamError(code, message or "ArcGIS FS error")

        if not isinstance(payload, dict):
            raise UpstreamError(response.status_code, "ArcGIS FS returned an unexpected payload")

        return payload

    @staticmethod
    def build_place_where(candidates: List[str]) -> str:
        """Match any candidate as a substring of the city or station text"""
        parts = []
        for candidate in candidates:
            s = escape_literal(candidate)
            parts.append(f"LOWER(city) LIKE '%{s}%'")
            parts.append(f"LOWER(location) LIKE '%{s}%'")
        return "(" + " OR ".join(parts) + ")"

    @staticmethod
    def _with_filters(where: str, country_hint: str) -> str:
        if country_hint:
            where += f" AND LOWER(country_name) LIKE '%{escape_literal(country_hint)}%'"
        return f"{where} AND {SANE_WHERE}"

    async def rank_top(self, limit: Any) -> List[RankedPlace]:
        """
        Top polluted cities by average PM2.5

        Args:
            limit: Requested count; clamped into [1, 20]

        Returns:
            At most `limit` places with >= 3 stations, highest average first
        """
        k = clamp_limit(limit)
        payload = await self._post({
            "where": SANE_WHERE,
            "outStatistics": STATISTICS,
            "groupByFieldsForStatistics": GROUP_BY,
            "having": f"COUNT(value) >= {MIN_STATIONS}",
            "orderByFields": "avg_pm25 DESC",
            "resultRecordCount": str(k),
            "returnGeometry": "false",
            "f": "json",
        })

        rows = []
        for feature in payload.get("features") or []:
            attrs = feature.get("attributes") or {}
            avg = attrs.get("avg_pm25")
            count = attrs.get("n_stations") or 0
            if avg is None or count < MIN_STATIONS:
                continue
            rows.append((float(avg), attrs, int(count)))

        rows.sort(key=lambda row: row[0], reverse=True)

        ranked = [
            RankedPlace(
                rank=i + 1,
                place=attrs.get("city") or attrs.get("location"),
                country=attrs.get("country_name"),
                metric_value=round_half_up(avg),
                sample_count=count,
            )
            for i, (avg, attrs, count) in enumerate(rows[:k])
        ]
        logger.info(f"Ranked top {len(ranked)} cities (limit={k})")
        return ranked

    async def _best_match(self, where: str) -> Optional[PlaceResult]:
        payload = await self._post({
            "where": where,
            "outFields": "city,country_name,location",
            "outStatistics": STATISTICS,
            "groupByFieldsForStatistics": GROUP_BY,
            "orderByFields": "avg_pm25 DESC",
            "resultRecordCount": "1",
            "returnGeometry": "true",
            "f": "json",
        })

        features = payload.get("features") or []
        if not features:
            return None

        attrs = features[0].get("attributes") or {}
        place = attrs.get("city") or attrs.get("location")
        country = attrs.get("country_name")
        avg = attrs.get("avg_pm25")
        return PlaceResult(
            ok=True,
            place=place,
            country=country,
            metric_value=round_half_up(avg) if avg is not None else None,
            sample_count=attrs.get("n_stations"),
            map_action=MapAction(place=place, country=country),
        )

    async def lookup_best(self, query: PlaceQuery) -> PlaceResult:
        """
        Live PM2.5 summary for the best matching city or station

        Pass 1 matches alias candidates against city and station text.
        Pass 2 matches the loose pattern against station text only.

        Args:
            query: Resolved place query

        Returns:
            PlaceResult; ok=False when neither pass matches
        """
        if query.is_empty:
            return PlaceResult.not_found("Empty query.")

        where = self._with_filters(self.build_place_where(query.candidate_strings), query.country_hint)
        result = await self._best_match(where)
        if result is not None:
            logger.info(f"Matched '{query.raw_text}' to {result.place}, {result.country}")
            return result

        if len(query.loose_pattern) >= 3:
            where = self._with_filters(
                f"(LOWER(location) LIKE '%{escape_literal(query.loose_pattern)}%')",
                query.country_hint,
            )
            result = await self._best_match(where)
            if result is not None:
                logger.info(f"Loose-matched '{query.raw_text}' to {result.place}, {result.country}")
                return result

        logger.info(f"No PM2.5 match for '{query.raw_text}'")
        return PlaceResult.not_found(f'No recent PM2.5 for "{query.raw_text}".')

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()
