"""Bet models: wagers, their legs, and the placement/settlement request bodies."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BetType(str, Enum):
    straight = "straight"
    parlay = "parlay"
    teaser = "teaser"
    if_bet = "if_bet"
    reverse = "reverse"


class BetStatus(str, Enum):
    pending = "pending"
    won = "won"
    lost = "lost"
    void = "void"
    cashed_out = "cashed_out"


class LegStatus(str, Enum):
    pending = "pending"
    won = "won"
    lost = "lost"
    void = "void"


TERMINAL_LEG_STATUSES = frozenset({LegStatus.won.value, LegStatus.lost.value, LegStatus.void.value})


# ---------- Requests ----------

class LegRequest(BaseModel):
    """One leg as submitted by the client."""
    match_id: str = Field(..., alias="matchId")
    selection: str
    odds: Optional[Decimal] = None          # client-claimed price, checked against the stored one
    type: Optional[str] = None              # market hint: h2h | moneyline | spreads | totals ...

    model_config = {"populate_by_name": True}


class PlaceBetRequest(BaseModel):
    """Request body for placing a wager.

    A straight bet may be given inline (``match_id``/``selection``/``odds``)
    instead of a one-element ``selections`` list.
    """
    type: str = BetType.straight.value
    amount: Decimal
    selections: list[LegRequest] = []
    match_id: Optional[str] = Field(default=None, alias="matchId")
    selection: Optional[str] = None
    odds: Optional[Decimal] = None
    market_type: Optional[str] = Field(default=None, alias="marketType")
    teaser_points: Optional[float] = Field(default=None, alias="teaserPoints")

    model_config = {"populate_by_name": True}

    def leg_specs(self) -> list[LegRequest]:
        if self.selections:
            return list(self.selections)
        if self.match_id and self.selection:
            return [LegRequest(match_id=self.match_id, selection=self.selection, odds=self.odds, type=self.market_type)]
        return []


class SettleMatchRequest(BaseModel):
    """Operator request to settle a match, optionally naming the winner."""
    match_id: str = Field(..., alias="matchId")
    winner: Optional[str] = None

    model_config = {"populate_by_name": True}


# ---------- Responses ----------

class LegResponse(BaseModel):
    match_id: str
    selection: str
    odds: str
    market_type: str
    point: Optional[float] = None
    status: str
    home_team: Optional[str] = None
    away_team: Optional[str] = None
    start_time: Optional[datetime] = None
    match_status: Optional[str] = None
    score: Optional[dict[str, Any]] = None


class BetResponse(BaseModel):
    """Bet data returned to the client. Money is serialized as fixed-point strings."""
    id: str
    type: str
    amount: str
    potential_payout: str
    status: str
    result: Optional[str] = None
    selections: list[LegResponse] = []
    teaser_points: Optional[float] = None
    reverse_group_id: Optional[str] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class PlaceBetResponse(BaseModel):
    bets: list[BetResponse]
    balance: str
    pending_balance: str


class SettlementResult(BaseModel):
    total: int = 0
    won: int = 0
    lost: int = 0
    voided: int = 0
    failed: int = 0
