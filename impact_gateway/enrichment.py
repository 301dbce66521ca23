"""Context enrichment.

Given a capture location and time, fan out to place, weather and news
collaborators concurrently and assemble a ContextRecord. A lookup failure is
logged and becomes ``absent``; it never cancels its siblings and never
propagates. Without a location every lookup is ``skipped``.

Weather tries the historical reading first. When the provider refuses access
to history (AccessDenied, not a transient failure) the current reading is used
and the record is flagged as a fallback.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Tuple, TypeVar

import httpx

from .errors import AccessDenied
from .models import ContextRecord, GeoPoint, LookupStatus, NewsHeadline, PlaceInfo, WeatherReading
from .retry import RetryPolicy, call_with_retry, request_json

logger = logging.getLogger("impact_gateway.enrichment")

T = TypeVar("T")

NOMINATIM_URL = "https://nominatim.openstreetmap.org"
OPENWEATHER_URL = "https://api.openweathermap.org"
OPENWEATHER_HISTORY_URL = "https://history.openweathermap.org"
NEWSAPI_URL = "https://newsapi.org"
USER_AGENT = "impact-gateway/0.3"


class PlaceLookup(Protocol):
    async def lookup(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        ...


class WeatherLookup(Protocol):
    async def historical(self, lat: float, lng: float, at: datetime) -> Optional[WeatherReading]:
        ...

    async def current(self, lat: float, lng: float) -> Optional[WeatherReading]:
        ...


class NewsLookup(Protocol):
    async def search(self, lat: float, lng: float, at: datetime, limit: int) -> List[NewsHeadline]:
        ...


# ---------------------------------------------------------------------------
# HTTP adapters
# ---------------------------------------------------------------------------

class NominatimPlaceLookup:
    """Reverse geocoding against a Nominatim-compatible endpoint."""

    def __init__(self, base_url: str = NOMINATIM_URL, *, client: Optional[httpx.AsyncClient] = None, timeout_s: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s, headers={"User-Agent": USER_AGENT})

    async def aclose(self) -> None:
        await self._client.aclose()

    async def lookup(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        data = await request_json(
            self._client,
            "GET",
            f"{self.base_url}/reverse",
            op="place.lookup",
            params={"lat": lat, "lon": lng, "format": "json", "addressdetails": 1},
        )
        addr = data.get("address") or {}
        if not addr:
            return None
        street = addr.get("road") or addr.get("suburb")
        return PlaceInfo(
            address=street or data.get("display_name"),
            city=addr.get("city") or addr.get("town") or addr.get("village"),
            state=addr.get("state"),
            country=addr.get("country"),
        )


def _reading_from_openweather(item: Any, *, source: str) -> Optional[WeatherReading]:
    if not isinstance(item, dict):
        return None
    main = item.get("main") or {}
    temp = main.get("temp")
    weather = item.get("weather") or []
    if temp is None or not weather:
        return None
    desc = weather[0].get("description") or weather[0].get("main") or ""
    return WeatherReading(conditions=str(desc), temperature_c=float(temp), source=source)


class OpenWeatherLookup:
    """OpenWeather-style current and hourly-history endpoints (metric units)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = OPENWEATHER_URL,
        history_url: str = OPENWEATHER_HISTORY_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.history_url = history_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def historical(self, lat: float, lng: float, at: datetime) -> Optional[WeatherReading]:
        data = await request_json(
            self._client,
            "GET",
            f"{self.history_url}/data/2.5/history/city",
            op="weather.historical",
            params={
                "lat": lat,
                "lon": lng,
                "type": "hour",
                "start": int(at.timestamp()),
                "cnt": 1,
                "appid": self.api_key,
                "units": "metric",
            },
        )
        items = data.get("list") or []
        return _reading_from_openweather(items[0] if items else data, source="historical")

    async def current(self, lat: float, lng: float) -> Optional[WeatherReading]:
        data = await request_json(
            self._client,
            "GET",
            f"{self.base_url}/data/2.5/weather",
            op="weather.current",
            params={"lat": lat, "lon": lng, "appid": self.api_key, "units": "metric"},
        )
        return _reading_from_openweather(data, source="current")


class NewsApiLookup:
    """NewsAPI-style article search around the capture day.

    The query is the place name near the coordinates, resolved through the
    given PlaceLookup; without a place name there is nothing to search for.
    """

    def __init__(
        self,
        api_key: str,
        places: PlaceLookup,
        *,
        base_url: str = NEWSAPI_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        self.api_key = api_key
        self.places = places
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def search(self, lat: float, lng: float, at: datetime, limit: int) -> List[NewsHeadline]:
        place = await self.places.lookup(lat, lng)
        query = (place.city or place.state or place.country) if place else None
        if not query or limit <= 0:
            return []
        start, end = news_window(at)
        data = await request_json(
            self._client,
            "GET",
            f"{self.base_url}/v2/everything",
            op="news.search",
            params={
                "q": query,
                "from": start.date().isoformat(),
                "to": end.date().isoformat(),
                "sortBy": "relevancy",
                "pageSize": limit,
                "apiKey": self.api_key,
            },
        )
        out: List[NewsHeadline] = []
        for art in data.get("articles") or []:
            title = (art or {}).get("title")
            url = (art or {}).get("url")
            if title and url:
                out.append(NewsHeadline(title=str(title), url=str(url), published_at=art.get("publishedAt")))
        return out[:limit]


def news_window(at: datetime) -> Tuple[datetime, datetime]:
    """Capture day plus or minus one day."""
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return at - timedelta(days=1), at + timedelta(days=1)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ContextEnricher:
    def __init__(
        self,
        *,
        places: Optional[PlaceLookup] = None,
        weather: Optional[WeatherLookup] = None,
        news: Optional[NewsLookup] = None,
        policy: Optional[RetryPolicy] = None,
        news_limit: int = 5,
        on_lookup: Optional[Callable[[str, LookupStatus], None]] = None,
    ):
        self.places = places
        self.weather = weather
        self.news = news
        self.policy = policy or RetryPolicy()
        self.news_limit = max(0, int(news_limit))
        self._on_lookup = on_lookup

    def _record(self, name: str, status: LookupStatus) -> None:
        if self._on_lookup is not None:
            self._on_lookup(name, status)

    async def _guarded(self, name: str, fn: Callable[[], Awaitable[T]]) -> Tuple[Optional[T], LookupStatus]:
        try:
            value = await call_with_retry(fn, policy=self.policy, op=name)
        except Exception as e:
            logger.warning("%s lookup failed: %s", name, e)
            return None, LookupStatus.ABSENT
        if value is None or value == []:
            return None, LookupStatus.ABSENT
        return value, LookupStatus.OK

    async def _place(self, point: GeoPoint) -> Tuple[Optional[PlaceInfo], LookupStatus]:
        if self.places is None:
            return None, LookupStatus.SKIPPED
        places = self.places
        return await self._guarded("place", lambda: places.lookup(point.lat, point.lng))

    async def _weather(self, point: GeoPoint, at: datetime) -> Tuple[Optional[WeatherReading], LookupStatus, bool]:
        if self.weather is None:
            return None, LookupStatus.SKIPPED, False
        weather = self.weather
        try:
            reading = await call_with_retry(
                lambda: weather.historical(point.lat, point.lng, at), policy=self.policy, op="weather.historical"
            )
        except AccessDenied as e:
            logger.info("historical weather refused (%s); falling back to current conditions", e)
            reading, status = await self._guarded("weather.current", lambda: weather.current(point.lat, point.lng))
            return reading, status, reading is not None
        except Exception as e:
            logger.warning("weather lookup failed: %s", e)
            return None, LookupStatus.ABSENT, False
        if reading is None:
            return None, LookupStatus.ABSENT, False
        return reading, LookupStatus.OK, False

    async def _news(self, point: GeoPoint, at: datetime) -> Tuple[Optional[List[NewsHeadline]], LookupStatus]:
        if self.news is None:
            return None, LookupStatus.SKIPPED
        news = self.news
        limit = self.news_limit
        return await self._guarded("news", lambda: news.search(point.lat, point.lng, at, limit))

    async def enrich(self, location: Optional[GeoPoint], at: datetime) -> ContextRecord:
        if location is None:
            for name in ("place", "weather", "news"):
                self._record(name, LookupStatus.SKIPPED)
            return ContextRecord()

        (place, place_status), (reading, weather_status, fallback), (headlines, news_status) = await asyncio.gather(
            self._place(location),
            self._weather(location, at),
            self._news(location, at),
        )
        self._record("place", place_status)
        self._record("weather", weather_status)
        self._record("news", news_status)
        return ContextRecord(
            place=place,
            place_status=place_status,
            weather=reading,
            weather_status=weather_status,
            weather_fallback=fallback,
            news=list(headlines or [])[: self.news_limit],
            news_status=news_status,
        )
