"""Match reads for the HTTP surface: list/lookup and the client-facing shape."""

import logging
from typing import Any, Optional

from bson import ObjectId

import app.database as _db
from app.models.match import LegacyShape, MatchStatus, market_shape_from_odds
from app.utils import as_utc

logger = logging.getLogger("sportsbook.match_service")

_STATUS_ALIASES = {"active": MatchStatus.live.value}


def normalize_status_filter(status: Optional[str], active: Optional[bool] = None) -> Optional[str]:
    if status:
        normalized = status.strip().lower()
        return _STATUS_ALIASES.get(normalized, normalized)
    if active:
        return MatchStatus.live.value
    return None


async def get_match_by_id(match_id: str) -> Optional[dict]:
    """Get a single match by its MongoDB _id. Malformed ids behave like unknown ones."""
    if not ObjectId.is_valid(str(match_id)):
        return None
    return await _db.db.matches.find_one({"_id": ObjectId(str(match_id))})


async def get_matches(
    status: Optional[str] = None,
    active: Optional[bool] = None,
    sport: Optional[str] = None,
    limit: int = 100,
) -> list[dict]:
    """Matches ordered by start time, optionally filtered by status and sport."""
    query: dict[str, Any] = {}
    status_filter = normalize_status_filter(status, active)
    if status_filter:
        query["status"] = status_filter
    if sport:
        query["sport"] = sport

    cursor = _db.db.matches.find(query).sort("start_time", 1).limit(limit)
    return await cursor.to_list(length=limit)


def match_to_response(match: dict) -> dict:
    shape = market_shape_from_odds(match)
    markets = [
        {
            "key": market.key,
            "outcomes": [
                {"name": o.name, "price": float(o.price), "point": o.point}
                for o in market.outcomes
            ],
        }
        for market in shape.markets()
    ]
    odds = match.get("odds") or {}
    return {
        "id": str(match["_id"]),
        "external_id": match.get("external_id"),
        "sport": match.get("sport"),
        "sport_title": match.get("sport_title"),
        "home_team": match.get("home_team") or "",
        "away_team": match.get("away_team") or "",
        "start_time": as_utc(match.get("start_time")),
        "status": match.get("status") or MatchStatus.scheduled.value,
        "score": match.get("score") or {},
        "bookmaker": None if isinstance(shape, LegacyShape) else odds.get("bookmaker"),
        "markets": markets,
        "last_updated": as_utc(match.get("last_updated")),
    }
