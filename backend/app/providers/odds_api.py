"""
backend/app/providers/odds_api.py

Purpose:
    TheOddsAPI client for the allow-listed sports: per-sport odds and scores
    endpoints, a hard per-day call budget, a TTL cache for the aggregated
    odds payload, and single-flight de-duplication so concurrent refreshes
    share one round of external calls.

Dependencies:
    - httpx (via app.providers.http_client)
    - app.config
    - app.services.single_flight
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

import app.database as _db
from app.config import settings
from app.providers.http_client import CircuitBreaker, ResilientClient, safe_url
from app.services.errors import BudgetExhausted, ProviderError
from app.services.single_flight import SingleFlight
from app.utils import utcnow
from app.utils.odds_utils import normalize_price

logger = logging.getLogger("sportsbook.odds_api")

_ODDS_CACHE_KEY = "odds:all"


class DailyCallBudget:
    """Counts external calls per UTC day. ``max_calls`` of 0 means unlimited."""

    def __init__(self, max_calls: int):
        self.max_calls = max(0, int(max_calls))
        self._day = self._today()
        self.count = 0

    @staticmethod
    def _today() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d")

    def _roll(self) -> None:
        today = self._today()
        if today != self._day:
            self._day = today
            self.count = 0

    def exhausted(self) -> bool:
        self._roll()
        return self.max_calls > 0 and self.count >= self.max_calls

    def consume(self) -> None:
        """Reserve one call or raise BudgetExhausted."""
        if self.exhausted():
            logger.error(
                "SPORTS_API_MAX_CALLS_PER_DAY reached (%d). Blocking further external calls.",
                self.max_calls,
            )
            raise BudgetExhausted(f"daily call budget of {self.max_calls} exhausted")
        self.count += 1

    def snapshot(self) -> dict[str, Any]:
        self._roll()
        return {"day": self._day, "used": self.count, "max": self.max_calls}


class OddsCache:
    """TTL cache that keeps stale data around to serve when the provider is unavailable."""

    def __init__(self, ttl: int):
        self.ttl = ttl
        self._data: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        return entry["data"] if entry else None

    def fetched_at(self, key: str) -> Optional[datetime]:
        entry = self._data.get(key)
        return entry["fetched_at"] if entry else None

    def is_fresh(self, key: str) -> bool:
        entry = self._data.get(key)
        if not entry:
            return False
        return (time.monotonic() - entry["timestamp"]) < self.ttl

    def set(self, key: str, data: Any) -> None:
        self._data[key] = {"data": data, "timestamp": time.monotonic(), "fetched_at": utcnow()}

    def clear(self) -> None:
        self._data.clear()


def _convert_prices(event: dict, odds_format: str) -> dict:
    """Rewrite bookmaker prices to decimal odds in place."""
    if str(odds_format).lower() != "american":
        return event
    for bookmaker in event.get("bookmakers") or []:
        for market in bookmaker.get("markets") or []:
            for outcome in market.get("outcomes") or []:
                outcome["price"] = normalize_price(outcome.get("price"), odds_format)
    return event


class TheOddsAPIProvider:
    """TheOddsAPI implementation with call budget, circuit breaker and stale-serving cache."""

    def __init__(
        self,
        client: Optional[ResilientClient] = None,
        budget: Optional[DailyCallBudget] = None,
    ):
        self._client = client or ResilientClient(
            "odds_api",
            timeout=settings.ODDS_API_TIMEOUT_SECONDS,
            max_retries=settings.ODDS_API_MAX_RETRIES,
            circuit=CircuitBreaker(
                failure_threshold=settings.ODDS_API_CIRCUIT_FAILURES,
                recovery_timeout=settings.ODDS_API_CIRCUIT_RECOVERY_SECONDS,
            ),
        )
        self.budget = budget or DailyCallBudget(settings.SPORTS_API_MAX_CALLS_PER_DAY)
        self._cache = OddsCache(ttl=settings.ODDS_CACHE_TTL_SECONDS)
        self._flight = SingleFlight("odds_fetch")
        self._api_usage: dict[str, Any] = {"requests_used": 0, "requests_remaining": None}

    # ---------- Low level ----------

    def _track_usage_headers(self, resp: httpx.Response) -> None:
        used = resp.headers.get("x-requests-used")
        remaining = resp.headers.get("x-requests-remaining")
        try:
            if used is not None:
                self._api_usage["requests_used"] = int(float(used))
            if remaining is not None:
                self._api_usage["requests_remaining"] = int(float(remaining))
        except ValueError:
            logger.debug("Unparseable usage headers used=%r remaining=%r", used, remaining)

    async def _persist_usage(self) -> None:
        """Persist API usage to DB so it survives restarts."""
        if _db.db is None:
            return
        try:
            await _db.db.meta.update_one(
                {"_id": "odds_api_usage"},
                {"$set": {
                    **self._api_usage,
                    "budget": self.budget.snapshot(),
                    "updated_at": utcnow(),
                }},
                upsert=True,
            )
        except Exception:
            logger.warning("Failed to persist API usage to DB", exc_info=True)

    async def _call(self, path: str, params: dict[str, Any], *, sport: str, market: str) -> list[dict]:
        if not settings.ODDS_API_KEY:
            raise ProviderError("ODDS_API_KEY is not configured")
        if not self._client.circuit.can_attempt():
            raise ProviderError("circuit open, skipping call")
        # Raises BudgetExhausted before the call is logged.
        if self.budget.exhausted():
            self.budget.consume()

        url = f"{settings.THEODDSAPI_BASE_URL.rstrip('/')}{path}"
        logger.info(
            "External call endpoint=%s sport=%s market=%s bookmaker=%s",
            safe_url(url), sport, market, settings.ODDS_API_BOOKMAKERS or "all",
        )
        # Every HTTP attempt, retries included, is charged to the daily budget.
        try:
            resp = await self._client.get(
                url,
                before_attempt=self.budget.consume,
                params={"apiKey": settings.ODDS_API_KEY, **params},
            )
            resp.raise_for_status()
            payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"{sport} {market}: HTTP {exc.response.status_code} from {safe_url(str(exc.request.url))}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            # Exception text can carry the request URL and its apiKey.
            raise ProviderError(f"{sport} {market}: {type(exc).__name__}") from exc

        self._track_usage_headers(resp)
        await self._persist_usage()
        return payload if isinstance(payload, list) else []

    async def fetch_sport_odds(self, sport_key: str) -> list[dict]:
        params = {
            "regions": settings.ODDS_API_REGIONS,
            "markets": settings.ODDS_API_MARKETS,
            "oddsFormat": settings.ODDS_API_ODDS_FORMAT,
            "dateFormat": "iso",
        }
        if settings.ODDS_API_BOOKMAKERS:
            params["bookmakers"] = settings.ODDS_API_BOOKMAKERS
        events = await self._call(
            f"/sports/{sport_key}/odds", params, sport=sport_key, market=settings.ODDS_API_MARKETS,
        )
        result = []
        for event in events:
            event_id = event.get("id") or (
                f"{sport_key}:{event.get('commence_time')}:{event.get('home_team')}:{event.get('away_team')}"
            )
            result.append(_convert_prices({
                **event,
                "id": event_id,
                "sport": event.get("sport_key") or sport_key,
                "sport_title": event.get("sport_title") or sport_key,
            }, settings.ODDS_API_ODDS_FORMAT))
        return result

    async def fetch_sport_scores(self, sport_key: str) -> list[dict]:
        params: dict[str, Any] = {"dateFormat": "iso"}
        if settings.ODDS_SCORES_DAYS_FROM > 0:
            params["daysFrom"] = settings.ODDS_SCORES_DAYS_FROM
        return await self._call(f"/sports/{sport_key}/scores", params, sport=sport_key, market="scores")

    # ---------- Batch ----------

    async def fetch_all_odds(self) -> dict[str, Any]:
        """One pass over the allow-listed sports. A failing sport does not stop the others."""
        events: dict[str, dict] = {}
        calls_before = self.budget.count
        blocked = False
        for sport_key in settings.allowed_sports:
            try:
                sport_events = await self.fetch_sport_odds(sport_key)
            except BudgetExhausted:
                blocked = True
                break
            except ProviderError as exc:
                logger.error("Odds fetch failed for %s: %s", sport_key, exc)
                continue
            for event in sport_events:
                events[event["id"]] = event
            logger.info("%s: fetched %d events", sport_key, len(sport_events))
        api_calls = max(0, self.budget.count - calls_before)
        return {"events": list(events.values()), "api_calls": api_calls, "blocked": blocked}

    async def fetch_scores(self, sport_keys: Optional[list[str]] = None) -> dict[str, Any]:
        scores_by_id: dict[str, dict] = {}
        calls_before = self.budget.count
        if not settings.ODDS_SCORES_ENABLED or not settings.SPORTS_API_ENABLED:
            return {"scores_by_id": scores_by_id, "api_calls": 0, "blocked": True}
        for sport_key in sport_keys or settings.allowed_sports:
            try:
                rows = await self.fetch_sport_scores(sport_key)
            except BudgetExhausted:
                return {"scores_by_id": scores_by_id, "api_calls": self.budget.count - calls_before, "blocked": True}
            except ProviderError as exc:
                logger.error("Scores fetch failed for %s: %s", sport_key, exc)
                continue
            for row in rows:
                if row.get("id"):
                    scores_by_id[row["id"]] = row
        return {"scores_by_id": scores_by_id, "api_calls": self.budget.count - calls_before, "blocked": False}

    async def get_cached_odds(self, force: bool = False) -> dict[str, Any]:
        """Aggregated odds events, served from the TTL cache when fresh."""
        cached = self._cache.get(_ODDS_CACHE_KEY)
        if not settings.SPORTS_API_ENABLED:
            logger.warning("SPORTS_API_ENABLED=false. Serving cached data only.")
            return self._result(cached or [], "disabled", 0)
        if not force and cached is not None and self._cache.is_fresh(_ODDS_CACHE_KEY):
            logger.debug("Odds cache hit")
            return self._result(cached, "hit", 0)
        if self._flight.in_flight(_ODDS_CACHE_KEY):
            logger.debug("Odds cache wait (in-flight)")
        else:
            logger.debug("Odds cache miss, fetching")
        return await self._flight.do(_ODDS_CACHE_KEY, self._refresh_cache)

    async def _refresh_cache(self) -> dict[str, Any]:
        data = await self.fetch_all_odds()
        stale = self._cache.get(_ODDS_CACHE_KEY)
        if data["blocked"] and not data["events"]:
            return self._result(stale or [], "stale" if stale is not None else "blocked", data["api_calls"])
        events = data["events"]
        if not events and stale is not None:
            # Every sport failed or returned nothing; keep serving the last good payload.
            return self._result(stale, "stale", data["api_calls"])
        self._cache.set(_ODDS_CACHE_KEY, events)
        return self._result(events, "miss", data["api_calls"])

    def _result(self, events: list[dict], cache: str, api_calls: int) -> dict[str, Any]:
        return {
            "events": events,
            "cache": cache,
            "fetched_at": self._cache.fetched_at(_ODDS_CACHE_KEY),
            "api_calls": api_calls,
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Odds cache cleared")

    def status(self) -> dict[str, Any]:
        return {
            "client": self._client.snapshot(),
            "budget": self.budget.snapshot(),
            "usage": dict(self._api_usage),
        }

    async def aclose(self) -> None:
        await self._client.aclose()


# Singleton provider instance
odds_provider = TheOddsAPIProvider()
