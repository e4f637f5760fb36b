"""Match models and the normalized market view used by bet validation.

Stored odds come in two shapes:

    structured: {"bookmaker": "...", "markets": [{"key": "h2h", "outcomes": [...]}]}
    legacy:     {"home_win": 1.9, "away_win": 2.1, "draw": 3.4}

``market_shape_from_odds`` resolves either one into a ``StructuredShape`` or
``LegacyShape`` once, and both expose ``markets()`` as normalized ``Market``
values so callers never branch on the raw document layout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel


class MatchStatus(str, Enum):
    scheduled = "scheduled"
    live = "live"
    finished = "finished"
    cancelled = "cancelled"


OPEN_STATUSES = frozenset({MatchStatus.scheduled.value, MatchStatus.live.value})

MARKET_H2H = "h2h"
MARKET_SPREADS = "spreads"
MARKET_TOTALS = "totals"


@dataclass(frozen=True)
class Outcome:
    name: str
    price: float
    point: Optional[float] = None


@dataclass(frozen=True)
class Market:
    key: str
    outcomes: tuple[Outcome, ...] = ()


@dataclass(frozen=True)
class StructuredShape:
    markets_raw: tuple[dict, ...] = ()
    bookmaker: Optional[str] = None

    def markets(self) -> list[Market]:
        result: list[Market] = []
        for raw in self.markets_raw:
            key = str(raw.get("key") or "").strip().lower()
            if not key:
                continue
            outcomes = []
            for item in raw.get("outcomes") or []:
                name = item.get("name")
                price = _as_float(item.get("price"))
                if not name or price is None:
                    continue
                outcomes.append(Outcome(name=str(name), price=price, point=_as_float(item.get("point"))))
            result.append(Market(key=key, outcomes=tuple(outcomes)))
        return result


@dataclass(frozen=True)
class LegacyShape:
    home_team: str
    away_team: str
    home_win: Optional[float] = None
    away_win: Optional[float] = None
    draw: Optional[float] = None

    def markets(self) -> list[Market]:
        outcomes = []
        if self.home_win is not None:
            outcomes.append(Outcome(name=self.home_team, price=self.home_win))
        if self.away_win is not None:
            outcomes.append(Outcome(name=self.away_team, price=self.away_win))
        if self.draw is not None:
            outcomes.append(Outcome(name="Draw", price=self.draw))
        if not outcomes:
            return []
        return [Market(key=MARKET_H2H, outcomes=tuple(outcomes))]


MarketShape = Union[StructuredShape, LegacyShape]


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if hasattr(value, "to_decimal"):
        value = value.to_decimal()
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def market_shape_from_odds(match: dict) -> MarketShape:
    """Pick the shape of ``match["odds"]``. Missing odds yield an empty structured shape."""
    odds = match.get("odds") or {}
    markets = odds.get("markets")
    if isinstance(markets, list) and markets:
        return StructuredShape(
            markets_raw=tuple(m for m in markets if isinstance(m, dict)),
            bookmaker=odds.get("bookmaker"),
        )
    if any(k in odds for k in ("home_win", "away_win", "draw")):
        return LegacyShape(
            home_team=str(match.get("home_team") or ""),
            away_team=str(match.get("away_team") or ""),
            home_win=_as_float(odds.get("home_win")),
            away_win=_as_float(odds.get("away_win")),
            draw=_as_float(odds.get("draw")),
        )
    return StructuredShape()


@dataclass(frozen=True)
class MatchScore:
    home: Optional[int] = None
    away: Optional[int] = None
    period: Optional[str] = None
    event_status: Optional[str] = None

    def is_complete(self) -> bool:
        return self.home is not None and self.away is not None


def score_from_doc(match: dict) -> MatchScore:
    raw = match.get("score") or {}

    def _int(value: Any) -> Optional[int]:
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    return MatchScore(
        home=_int(raw.get("home")),
        away=_int(raw.get("away")),
        period=raw.get("period"),
        event_status=raw.get("event_status"),
    )


# ---------- API ----------

class OutcomeResponse(BaseModel):
    name: str
    price: float
    point: Optional[float] = None


class MarketResponse(BaseModel):
    key: str
    outcomes: list[OutcomeResponse] = []


class MatchResponse(BaseModel):
    """Match data returned to the client."""
    id: str
    external_id: Optional[str] = None
    sport: Optional[str] = None
    sport_title: Optional[str] = None
    home_team: str
    away_team: str
    start_time: Optional[datetime] = None
    status: str
    score: dict[str, Any] = {}
    bookmaker: Optional[str] = None
    markets: list[MarketResponse] = []
    last_updated: Optional[datetime] = None


@dataclass
class IngestionResult:
    created: int = 0
    updated: int = 0
    settled: int = 0
    api_calls: int = 0
    cache: str = "miss"
    fetched_at: Optional[datetime] = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "settled": self.settled,
            "api_calls": self.api_calls,
            "cache": self.cache,
            "fetched_at": self.fetched_at,
            "errors": list(self.errors),
        }
