"""
backend/app/services/bet_rules.py

Purpose:
    Bet-mode rules: leg-count bounds, teaser point options and payout profile
    per mode. Defaults are seeded into ``bet_mode_rules`` (insert-only, so
    operator edits survive restarts) and read back for placement.

Dependencies:
    - app.database
    - app.config
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import app.database as _db
from app.config import settings
from app.models.bet import BetType
from app.services.errors import ValidationError
from app.utils import utcnow

logger = logging.getLogger("sportsbook.bet_rules")

PAYOUT_ODDS_PRODUCT = "odds_product"
PAYOUT_TABLE_MULTIPLIER = "table_multiplier"

DEFAULT_TEASER_MULTIPLIERS: dict[int, Decimal] = {
    2: Decimal("1.8"),
    3: Decimal("2.6"),
    4: Decimal("4.0"),
    5: Decimal("6.5"),
    6: Decimal("9.5"),
}

DEFAULT_BET_MODE_RULES: list[dict[str, Any]] = [
    {"mode": "straight", "min_legs": 1, "max_legs": 1, "teaser_point_options": [],
     "payout_profile": {"type": PAYOUT_ODDS_PRODUCT}, "is_active": True},
    {"mode": "parlay", "min_legs": 2, "max_legs": 12, "teaser_point_options": [],
     "payout_profile": {"type": PAYOUT_ODDS_PRODUCT}, "is_active": True},
    {"mode": "teaser", "min_legs": 2, "max_legs": 6, "teaser_point_options": [6, 6.5, 7],
     "payout_profile": {
         "type": PAYOUT_TABLE_MULTIPLIER,
         "multipliers": {str(k): float(v) for k, v in DEFAULT_TEASER_MULTIPLIERS.items()},
     }, "is_active": True},
    {"mode": "if_bet", "min_legs": 2, "max_legs": 2, "teaser_point_options": [],
     "payout_profile": {"type": PAYOUT_ODDS_PRODUCT}, "is_active": True},
    {"mode": "reverse", "min_legs": 2, "max_legs": 2, "teaser_point_options": [],
     "payout_profile": {"type": PAYOUT_ODDS_PRODUCT}, "is_active": True},
]


@dataclass(frozen=True)
class BetModeRule:
    mode: str
    min_legs: int
    max_legs: int
    teaser_point_options: tuple[float, ...] = ()
    payout_type: str = PAYOUT_ODDS_PRODUCT
    multipliers: dict[int, Decimal] = field(default_factory=dict)
    is_active: bool = True

    def multiplier_for(self, legs: int) -> Decimal:
        """Table multiplier for ``legs`` winning legs. One surviving leg pays even money."""
        if legs <= 1:
            return Decimal("1.0")
        if legs in self.multipliers:
            return self.multipliers[legs]
        raise ValidationError(f"No {self.mode} payout configured for {legs} legs.")

    def to_public(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "min_legs": self.min_legs,
            "max_legs": self.max_legs,
            "teaser_point_options": list(self.teaser_point_options),
            "payout_profile": {
                "type": self.payout_type,
                **({"multipliers": {str(k): float(v) for k, v in self.multipliers.items()}}
                   if self.multipliers else {}),
            },
        }


def normalize_bet_mode(raw: Any) -> str:
    """'Straight', 'if-bet' and ' IF_BET ' all normalize to a mode key."""
    return str(raw or BetType.straight.value).strip().lower().replace("-", "_")


def _rule_from_doc(doc: dict) -> BetModeRule:
    profile = doc.get("payout_profile") or {}
    multipliers: dict[int, Decimal] = {}
    for key, value in (profile.get("multipliers") or {}).items():
        try:
            multipliers[int(key)] = Decimal(str(value))
        except (ValueError, ArithmeticError):
            logger.warning("Ignoring bad multiplier %r=%r for mode %s", key, value, doc.get("mode"))

    max_legs = int(doc.get("max_legs", 1))
    if doc.get("mode") == BetType.teaser.value:
        max_legs = min(max_legs, settings.TEASER_MAX_LEGS)

    return BetModeRule(
        mode=str(doc["mode"]),
        min_legs=int(doc.get("min_legs", 1)),
        max_legs=max_legs,
        teaser_point_options=tuple(float(p) for p in doc.get("teaser_point_options") or []),
        payout_type=str(profile.get("type") or PAYOUT_ODDS_PRODUCT),
        multipliers=multipliers,
        is_active=bool(doc.get("is_active", True)),
    )


async def seed_bet_mode_rules() -> int:
    """Insert missing default rules. Existing documents are left untouched."""
    now = utcnow()
    inserted = 0
    for rule in DEFAULT_BET_MODE_RULES:
        result = await _db.db.bet_mode_rules.update_one(
            {"mode": rule["mode"]},
            {"$setOnInsert": {**rule, "created_at": now, "updated_at": now}},
            upsert=True,
        )
        if getattr(result, "upserted_id", None) is not None:
            inserted += 1
    if inserted:
        logger.info("Seeded %d bet mode rule(s)", inserted)
    return inserted


async def load_rules(active_only: bool = True) -> dict[str, BetModeRule]:
    """Stored rules overlaid on the defaults, keyed by mode."""
    rules = {r["mode"]: _rule_from_doc(r) for r in DEFAULT_BET_MODE_RULES}
    docs = await _db.db.bet_mode_rules.find({}).to_list(length=None)
    for doc in docs:
        if doc.get("mode") in rules:
            rules[doc["mode"]] = _rule_from_doc(doc)
    if active_only:
        rules = {mode: rule for mode, rule in rules.items() if rule.is_active}
    return rules


async def get_rule(mode: str) -> BetModeRule:
    normalized = normalize_bet_mode(mode)
    if normalized not in {t.value for t in BetType}:
        raise ValidationError(f"Unsupported bet type: {mode}.")
    rules = await load_rules()
    rule = rules.get(normalized)
    if rule is None:
        raise ValidationError(f"Bet type {normalized} is not available.")
    return rule


def check_leg_count(rule: BetModeRule, legs: int) -> None:
    if legs < rule.min_legs or legs > rule.max_legs:
        if rule.min_legs == rule.max_legs:
            expected = f"exactly {rule.min_legs}"
        else:
            expected = f"{rule.min_legs} to {rule.max_legs}"
        raise ValidationError(f"{rule.mode} bets require {expected} selections.")


def check_teaser_points(rule: BetModeRule, points: Optional[float]) -> Optional[float]:
    if rule.mode != BetType.teaser.value:
        return None
    if points is None:
        return None
    if rule.teaser_point_options and float(points) not in rule.teaser_point_options:
        options = ", ".join(f"{p:g}" for p in rule.teaser_point_options)
        raise ValidationError(f"Invalid teaser points {points:g}; allowed: {options}.")
    return float(points)
