"""
backend/app/services/event_models.py

Purpose:
    Domain event contracts published by ingestion and settlement. Payloads
    are ID-first so subscribers re-read current state instead of trusting
    a copy.

Dependencies:
    - pydantic
    - app.utils
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from app.utils import ensure_utc, utcnow

EventType = Literal[
    "match.created",
    "match.updated",
    "match.finalized",
    "bet.settled",
]


def make_event_id() -> str:
    return str(uuid.uuid4())


def make_correlation_id() -> str:
    return str(uuid.uuid4())


class BaseEvent(BaseModel):
    event_id: str = Field(default_factory=make_event_id)
    event_type: EventType
    occurred_at: datetime = Field(default_factory=utcnow)
    correlation_id: str = Field(default_factory=make_correlation_id)
    source: str


class MatchCreatedEvent(BaseEvent):
    event_type: Literal["match.created"] = "match.created"
    match_id: str
    external_id: str | None = None
    sport: str | None = None
    status: str


class MatchUpdatedEvent(BaseEvent):
    event_type: Literal["match.updated"] = "match.updated"
    match_id: str
    external_id: str | None = None
    previous_status: str | None = None
    new_status: str
    changed_fields: list[str] = Field(default_factory=list)


class MatchFinalizedEvent(BaseEvent):
    event_type: Literal["match.finalized"] = "match.finalized"
    match_id: str
    external_id: str | None = None
    final_score: dict[str, int | None] = Field(default_factory=dict)


class BetSettledEvent(BaseEvent):
    event_type: Literal["bet.settled"] = "bet.settled"
    bet_id: str
    account_id: str
    match_id: str
    status: str
    payout: str


def normalize_event_time(event: BaseEvent) -> BaseEvent:
    event.occurred_at = ensure_utc(event.occurred_at)
    return event
