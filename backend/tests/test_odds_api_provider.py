"""
backend/tests/test_odds_api_provider.py

Purpose:
    TheOddsAPI client against httpx.MockTransport: sport fan-out, call
    budget, TTL cache, stale serving and american price conversion.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import pytest

from app.config import settings
from app.providers.http_client import ResilientClient, safe_url
from app.providers.odds_api import DailyCallBudget, TheOddsAPIProvider


def _event(event_id: str, sport: str, price_home=1.9, price_away=2.0) -> dict:
    return {
        "id": event_id,
        "sport_key": sport,
        "commence_time": "2026-11-01T19:00:00Z",
        "home_team": f"{event_id} Home",
        "away_team": f"{event_id} Away",
        "bookmakers": [{
            "key": "fanduel",
            "title": "FanDuel",
            "markets": [{"key": "h2h", "outcomes": [
                {"name": f"{event_id} Home", "price": price_home},
                {"name": f"{event_id} Away", "price": price_away},
            ]}],
        }],
    }


def _reply(status: int, payload, headers: dict | None = None) -> tuple:
    return status, payload, headers or {}


class _Recorder:
    """MockTransport handler keyed by "<sport>/<odds|scores>"; unknown paths get an empty list."""

    def __init__(self, responses: dict[str, tuple]):
        self.responses = responses
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        sport = request.url.path.split("/")[-2]
        kind = request.url.path.split("/")[-1]
        status, payload, headers = self.responses.get(f"{sport}/{kind}") or _reply(200, [])
        return httpx.Response(status, json=payload, headers=headers)


def _provider(recorder: _Recorder, max_calls: int = 0) -> TheOddsAPIProvider:
    client = ResilientClient("test", max_retries=0, base_delay=0, transport=httpx.MockTransport(recorder))
    return TheOddsAPIProvider(client=client, budget=DailyCallBudget(max_calls))


@pytest.fixture(autouse=True)
def _provider_settings(monkeypatch, fake_db):
    monkeypatch.setattr(settings, "ODDS_API_KEY", "secret-key")
    monkeypatch.setattr(settings, "THEODDSAPI_BASE_URL", "https://odds.test/v4")
    monkeypatch.setattr(settings, "ODDS_ALLOWED_SPORTS", "basketball_nba,soccer_epl")
    monkeypatch.setattr(settings, "ODDS_API_ODDS_FORMAT", "decimal")
    monkeypatch.setattr(settings, "SPORTS_API_ENABLED", True)


@pytest.mark.asyncio
async def test_fetch_all_odds_covers_each_allowed_sport(fake_db) -> None:
    recorder = _Recorder({
        "basketball_nba/odds": _reply(
            200, [_event("nba1", "basketball_nba")],
            {"x-requests-used": "12", "x-requests-remaining": "488"},
        ),
        "soccer_epl/odds": _reply(200, [_event("epl1", "soccer_epl")]),
    })
    provider = _provider(recorder)

    data = await provider.fetch_all_odds()

    assert sorted(e["id"] for e in data["events"]) == ["epl1", "nba1"]
    assert data["api_calls"] == 2
    assert not data["blocked"]
    assert {e["sport"] for e in data["events"]} == {"basketball_nba", "soccer_epl"}
    first = recorder.requests[0]
    assert first.url.params["apiKey"] == "secret-key"
    assert first.url.params["markets"] == settings.ODDS_API_MARKETS
    assert provider.status()["usage"]["requests_remaining"] == 488
    usage = fake_db.meta.docs[0]
    assert usage["_id"] == "odds_api_usage"


@pytest.mark.asyncio
async def test_budget_blocks_calls_past_the_daily_limit(caplog) -> None:
    recorder = _Recorder({"basketball_nba/odds": _reply(200, [_event("nba1", "basketball_nba")])})
    provider = _provider(recorder, max_calls=1)

    with caplog.at_level(logging.ERROR, logger="sportsbook.odds_api"):
        data = await provider.fetch_all_odds()

    assert data["blocked"]
    assert data["api_calls"] == 1
    assert len(recorder.requests) == 1
    assert "SPORTS_API_MAX_CALLS_PER_DAY reached" in caplog.text

    again = await provider.fetch_all_odds()
    assert again == {"events": [], "api_calls": 0, "blocked": True}
    assert len(recorder.requests) == 1


@pytest.mark.asyncio
async def test_cache_hit_until_forced() -> None:
    recorder = _Recorder({"basketball_nba/odds": _reply(200, [_event("nba1", "basketball_nba")])})
    provider = _provider(recorder)

    first = await provider.get_cached_odds()
    second = await provider.get_cached_odds()
    forced = await provider.get_cached_odds(force=True)

    assert (first["cache"], second["cache"], forced["cache"]) == ("miss", "hit", "miss")
    assert second["api_calls"] == 0
    assert len(recorder.requests) == 4
    assert second["fetched_at"] is not None


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_round_of_calls() -> None:
    recorder = _Recorder({"basketball_nba/odds": _reply(200, [_event("nba1", "basketball_nba")])})
    provider = _provider(recorder)

    results = await asyncio.gather(*(provider.get_cached_odds(force=True) for _ in range(3)))

    assert len(recorder.requests) == 2
    assert all(len(r["events"]) == 1 for r in results)


@pytest.mark.asyncio
async def test_failing_sport_is_skipped_and_stale_payload_served() -> None:
    recorder = _Recorder({
        "basketball_nba/odds": _reply(200, [_event("nba1", "basketball_nba")]),
        "soccer_epl/odds": _reply(503, {"message": "unavailable"}),
    })
    provider = _provider(recorder)

    first = await provider.get_cached_odds()
    assert [e["id"] for e in first["events"]] == ["nba1"]

    recorder.responses["basketball_nba/odds"] = _reply(500, {"message": "boom"})
    stale = await provider.get_cached_odds(force=True)
    assert stale["cache"] == "stale"
    assert [e["id"] for e in stale["events"]] == ["nba1"]


@pytest.mark.asyncio
async def test_missing_api_key_fetches_nothing(monkeypatch) -> None:
    monkeypatch.setattr(settings, "ODDS_API_KEY", "")
    recorder = _Recorder({})
    provider = _provider(recorder)

    data = await provider.fetch_all_odds()

    assert data["events"] == []
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_disabled_api_serves_cache_only(monkeypatch) -> None:
    monkeypatch.setattr(settings, "SPORTS_API_ENABLED", False)
    recorder = _Recorder({})
    provider = _provider(recorder)

    data = await provider.get_cached_odds(force=True)

    assert data["cache"] == "disabled"
    assert recorder.requests == []


@pytest.mark.asyncio
async def test_american_prices_are_converted(monkeypatch) -> None:
    monkeypatch.setattr(settings, "ODDS_API_ODDS_FORMAT", "american")
    monkeypatch.setattr(settings, "ODDS_ALLOWED_SPORTS", "americanfootball_nfl")
    recorder = _Recorder({
        "americanfootball_nfl/odds": _reply(
            200, [_event("nfl1", "americanfootball_nfl", price_home=-150, price_away=130)],
        ),
    })
    provider = _provider(recorder)

    [event] = await provider.fetch_sport_odds("americanfootball_nfl")

    outcomes = event["bookmakers"][0]["markets"][0]["outcomes"]
    assert [o["price"] for o in outcomes] == [1.6667, 2.3]


@pytest.mark.asyncio
async def test_scores_are_indexed_by_event_id() -> None:
    recorder = _Recorder({
        "basketball_nba/scores": _reply(200, [
            {"id": "nba1", "completed": True, "scores": [{"name": "nba1 Home", "score": "101"}]},
        ]),
    })
    provider = _provider(recorder)

    data = await provider.fetch_scores(["basketball_nba"])

    assert list(data["scores_by_id"]) == ["nba1"]
    assert data["api_calls"] == 1


def test_safe_url_drops_the_query_string() -> None:
    assert safe_url("https://odds.test/v4/sports/nba/odds?apiKey=secret") == "https://odds.test/v4/sports/nba/odds"


@pytest.mark.asyncio
async def test_open_circuit_stops_calls_without_spending_budget(monkeypatch) -> None:
    monkeypatch.setattr(settings, "ODDS_ALLOWED_SPORTS", "basketball_nba")
    recorder = _Recorder({"basketball_nba/odds": _reply(502, {"message": "bad gateway"})})
    provider = _provider(recorder)

    for _ in range(3):
        await provider.fetch_all_odds()
    assert provider.status()["client"]["circuit"]["state"] == "open"

    data = await provider.fetch_all_odds()

    assert len(recorder.requests) == 3
    assert data["api_calls"] == 0
    assert provider.budget.count == 3


def test_circuit_half_opens_after_recovery(monkeypatch) -> None:
    from app.providers import http_client

    clock = [1000.0]
    monkeypatch.setattr(http_client.time, "monotonic", lambda: clock[0])
    breaker = http_client.CircuitBreaker(failure_threshold=2, recovery_timeout=60)

    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == "open" and not breaker.can_attempt()

    clock[0] += 61
    assert breaker.state == "half_open" and breaker.can_attempt()

    breaker.record_failure()
    assert breaker.state == "open"

    clock[0] += 61
    breaker.record_success()
    assert breaker.state == "closed"
    assert breaker.snapshot() == {"state": "closed", "failures": 0, "retry_in_seconds": None}


@pytest.mark.asyncio
async def test_every_retry_is_charged_to_the_daily_budget(monkeypatch) -> None:
    monkeypatch.setattr(settings, "ODDS_ALLOWED_SPORTS", "basketball_nba")
    recorder = _Recorder({"basketball_nba/odds": _reply(503, {"message": "unavailable"})})
    client = ResilientClient("test", max_retries=3, base_delay=0, transport=httpx.MockTransport(recorder))
    provider = TheOddsAPIProvider(client=client, budget=DailyCallBudget(2))

    data = await provider.get_cached_odds(force=True)

    assert len(recorder.requests) == 2
    assert provider.budget.count == 2
    assert data["api_calls"] == 2
    assert data["cache"] == "blocked"


@pytest.mark.asyncio
async def test_retries_within_budget_count_each_attempt(monkeypatch) -> None:
    monkeypatch.setattr(settings, "ODDS_ALLOWED_SPORTS", "basketball_nba")
    recorder = _Recorder({"basketball_nba/odds": _reply(503, {"message": "unavailable"})})
    client = ResilientClient("test", max_retries=2, base_delay=0, transport=httpx.MockTransport(recorder))
    provider = TheOddsAPIProvider(client=client, budget=DailyCallBudget(0))

    data = await provider.fetch_all_odds()

    assert len(recorder.requests) == 3
    assert data["api_calls"] == 3
    assert client.snapshot()["retries_total"] == 2


@pytest.mark.asyncio
async def test_provider_errors_never_log_the_api_key(caplog) -> None:
    recorder = _Recorder({
        "basketball_nba/odds": _reply(503, {"message": "unavailable"}),
        "soccer_epl/odds": _reply(401, {"message": "bad key"}),
    })
    provider = _provider(recorder)

    with caplog.at_level(logging.DEBUG, logger="sportsbook"):
        await provider.fetch_all_odds()

    assert "Odds fetch failed for basketball_nba" in caplog.text
    assert "HTTP 401 from https://odds.test/v4/sports/soccer_epl/odds" in caplog.text
    assert "secret-key" not in caplog.text
    assert "apiKey" not in caplog.text
