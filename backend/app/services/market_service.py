"""
backend/app/services/market_service.py

Purpose:
    Resolves a client-submitted leg (match, selection, claimed price, market
    hint) against the stored match into a ResolvedLeg carrying the
    authoritative price and an immutable snapshot of the match. Pure read;
    nothing is written here.

Dependencies:
    - app.database
    - app.models.match
    - app.config (drift policy)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId

import app.database as _db
from app.config import settings
from app.models.match import (
    MARKET_H2H,
    MARKET_SPREADS,
    MARKET_TOTALS,
    OPEN_STATUSES,
    Market,
    MatchStatus,
    Outcome,
    market_shape_from_odds,
)
from app.services.errors import (
    MarketClosed,
    MatchNotFound,
    OddsChanged,
    SelectionUnavailable,
    ValidationError,
)
from app.utils import ensure_utc, utcnow
from app.utils.money import price128, to_decimal

logger = logging.getLogger("sportsbook.market_service")

MARKET_ALIASES = {
    "": MARKET_H2H,
    "straight": MARKET_H2H,
    "moneyline": MARKET_H2H,
    "ml": MARKET_H2H,
    "h2h": MARKET_H2H,
    "spread": MARKET_SPREADS,
    "spreads": MARKET_SPREADS,
    "total": MARKET_TOTALS,
    "totals": MARKET_TOTALS,
}


@dataclass(frozen=True)
class ResolvedLeg:
    match_id: str
    selection: str
    price: Decimal
    market_type: str
    point: Optional[float] = None
    match_snapshot: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_doc(self) -> dict[str, Any]:
        return {
            "match_id": self.match_id,
            "selection": self.selection,
            "odds": price128(self.price),
            "market_type": self.market_type,
            "point": self.point,
            "status": "pending",
            "match_snapshot": copy.deepcopy(self.match_snapshot),
        }


def normalize_market_key(hint: Optional[str]) -> str:
    key = str(hint or "").strip().lower().replace("-", "_")
    return MARKET_ALIASES.get(key, key)


def _find_market(markets: list[Market], key: str) -> Optional[Market]:
    for market in markets:
        if normalize_market_key(market.key) == key:
            return market
    return None


def _find_outcome(market: Market, selection: str) -> Optional[Outcome]:
    for outcome in market.outcomes:
        if outcome.name == selection:
            return outcome
    if normalize_market_key(market.key) == MARKET_TOTALS:
        needle = selection.strip().lower()
        for outcome in market.outcomes:
            if needle and needle in outcome.name.lower():
                return outcome
    return None


def _check_drift(match: dict, selection: str, official: Decimal, claimed: Any) -> None:
    if claimed is None:
        return
    try:
        claimed_price = to_decimal(claimed)
    except ArithmeticError:
        return
    if claimed_price <= 0:
        return
    drift = abs(official - claimed_price)
    if drift <= Decimal(str(settings.ODDS_DRIFT_TOLERANCE)):
        return

    label = f"{match.get('home_team')} vs {match.get('away_team')}"
    if settings.ODDS_DRIFT_POLICY == "reject":
        raise OddsChanged(f"Odds changed for {label}. Current: {official}")
    logger.warning(
        "Odds drift tolerated: match=%s selection=%s claimed=%s official=%s",
        match.get("_id"), selection, claimed_price, official,
    )


async def load_match(match_id: str) -> dict:
    try:
        oid = ObjectId(match_id)
    except (InvalidId, TypeError):
        raise MatchNotFound(f"Match not found: {match_id}")
    match = await _db.db.matches.find_one({"_id": oid})
    if not match:
        raise MatchNotFound(f"Match not found: {match_id}")
    return match


def resolve_leg_from_match(
    match: dict,
    selection: str,
    claimed_odds: Any = None,
    market_hint: Optional[str] = None,
) -> ResolvedLeg:
    """Validate one leg against an already loaded match document."""
    label = f"{match.get('home_team')} vs {match.get('away_team')}"
    if not selection:
        raise ValidationError("Each selection needs a match and a selection name.")

    status = match.get("status")
    if status not in OPEN_STATUSES:
        raise MarketClosed(f"Match {label} is not open for betting")
    start_time = match.get("start_time")
    if status == MatchStatus.scheduled.value and start_time and ensure_utc(start_time) <= utcnow():
        raise MarketClosed(f"Betting is closed for {label}")

    key = normalize_market_key(market_hint)
    market = _find_market(market_shape_from_odds(match).markets(), key)
    if market is None or not market.outcomes:
        raise SelectionUnavailable(f"Market {market_hint or key} not available for {label}")

    outcome = _find_outcome(market, selection)
    if outcome is None:
        raise SelectionUnavailable(f"Selection {selection} not available for {label}")

    official = to_decimal(outcome.price)
    _check_drift(match, selection, official, claimed_odds)

    return ResolvedLeg(
        match_id=str(match["_id"]),
        selection=outcome.name,
        price=official,
        market_type=key,
        point=outcome.point,
        match_snapshot=copy.deepcopy(match),
    )


async def resolve_leg(
    match_id: str,
    selection: str,
    claimed_odds: Any = None,
    market_hint: Optional[str] = None,
) -> ResolvedLeg:
    match = await load_match(match_id)
    return resolve_leg_from_match(match, selection, claimed_odds, market_hint)
