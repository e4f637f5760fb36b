"""
backend/app/services/bet_service.py

Purpose:
    Wager placement for every bet mode (straight, parlay, teaser, if_bet,
    reverse) and the account's bet history. Validation is a pure read; the
    writes (bets, stake reservation, bet_placed ledger entry) run in one
    atomic scope.

Dependencies:
    - app.database
    - app.services.market_service
    - app.services.ledger_service
    - app.services.atomic_scope
    - app.services.bet_rules
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal, InvalidOperation
from functools import reduce
from operator import mul
from typing import Any, Iterable, Optional

from bson import ObjectId

import app.database as _db
from app.models.account import BLOCKED_STATUSES, normalize_account_status
from app.models.bet import BetStatus, BetType, LegStatus, PlaceBetRequest, PlaceBetResponse
from app.models.ledger import ReferenceType, TransactionType
from app.services import bet_rules
from app.services.atomic_scope import AtomicScope, run_in_scope
from app.services.errors import AccountError, AccountNotFound, InsufficientFunds, ValidationError
from app.services.ledger_service import available_balance, mutate_balance, record_entry
from app.services.market_service import ResolvedLeg, resolve_leg
from app.utils import as_utc, utcnow
from app.utils.money import money_str, quantize_money, to_decimal, to_decimal128, to_money

logger = logging.getLogger("sportsbook.bet_service")


# ---------- Payout math ----------

def odds_product(prices: Iterable[Decimal]) -> Decimal:
    return reduce(mul, (to_decimal(p) for p in prices), Decimal(1))


def potential_payout(
    bet_type: str,
    amount: Decimal,
    prices: list[Decimal],
    rule: bet_rules.BetModeRule,
) -> Decimal:
    """Payout owed to ONE bet record if every leg wins.

    Reverse bets are stored as two if_bet siblings, so each sibling is owed
    ``amount * p1 * p2`` and the pair together returns the combined payout.
    """
    if bet_type == BetType.teaser.value:
        return quantize_money(amount * rule.multiplier_for(len(prices)))
    if bet_type in (BetType.if_bet.value, BetType.reverse.value):
        return quantize_money(amount * odds_product(prices[:2]))
    return quantize_money(amount * odds_product(prices))


def total_risk(bet_type: str, amount: Decimal) -> Decimal:
    if bet_type == BetType.reverse.value:
        return amount * 2
    return amount


# ---------- Placement ----------

def _parse_amount(raw: Any) -> Decimal:
    try:
        amount = to_decimal(raw)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Bet amount must be positive")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Bet amount must be positive")
    amount = quantize_money(amount)
    if amount <= 0:
        raise ValidationError("Bet amount must be positive")
    return amount


def _check_limits(account: dict, amount: Decimal) -> None:
    """Per-account stake limits. An unset limit is not enforced."""
    if account.get("min_bet") is not None:
        min_bet = to_money(account["min_bet"])
        if min_bet > 0 and amount < min_bet:
            raise ValidationError(f"Minimum bet for your account is {money_str(min_bet)}")
    if account.get("max_bet") is not None:
        max_bet = to_money(account["max_bet"])
        if max_bet > 0 and amount > max_bet:
            raise ValidationError(f"Maximum bet for your account is {money_str(max_bet)}")


async def _load_wagering_account(account_id: str) -> dict:
    account = await _db.db.accounts.find_one({"_id": ObjectId(account_id)})
    if not account:
        raise AccountNotFound("Account not found.")
    if normalize_account_status(account.get("status")) in BLOCKED_STATUSES:
        raise AccountError("Account is suspended, disabled, or read-only")
    return account


def _build_bet_docs(
    account_id: str,
    bet_type: str,
    amount: Decimal,
    legs: list[ResolvedLeg],
    rule: bet_rules.BetModeRule,
    teaser_points: Optional[float],
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> list[dict]:
    now = utcnow()
    base = {
        "account_id": account_id,
        "amount": to_decimal128(amount),
        "status": BetStatus.pending.value,
        "result": None,
        "teaser_points": teaser_points,
        "reverse_group_id": None,
        "ip_address": ip_address,
        "user_agent": user_agent,
        "settled_at": None,
        "settled_by": None,
        "created_at": now,
        "updated_at": now,
    }

    if bet_type == BetType.reverse.value:
        group_id = str(uuid.uuid4())
        docs = []
        for ordered in ([legs[0], legs[1]], [legs[1], legs[0]]):
            payout = potential_payout(BetType.if_bet.value, amount, [leg.price for leg in ordered], rule)
            docs.append({
                **base,
                "type": BetType.if_bet.value,
                "potential_payout": to_decimal128(payout),
                "selections": [leg.to_doc() for leg in ordered],
                "reverse_group_id": group_id,
            })
        return docs

    payout = potential_payout(bet_type, amount, [leg.price for leg in legs], rule)
    return [{
        **base,
        "type": bet_type,
        "potential_payout": to_decimal128(payout),
        "selections": [leg.to_doc() for leg in legs],
    }]


async def place_bet(
    account_id: str,
    request: PlaceBetRequest,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> PlaceBetResponse:
    """Validate and place a wager, reserving its total risk against the account.

    Every check up to the funds check is a pure read, so a rejected wager
    leaves no bet, ledger entry or balance change behind.
    """
    amount = _parse_amount(request.amount)
    account = await _load_wagering_account(account_id)
    _check_limits(account, amount)

    rule = await bet_rules.get_rule(request.type)
    bet_type = rule.mode
    specs = request.leg_specs()
    bet_rules.check_leg_count(rule, len(specs))
    teaser_points = bet_rules.check_teaser_points(rule, request.teaser_points)

    legs: list[ResolvedLeg] = []
    for spec in specs:
        legs.append(await resolve_leg(spec.match_id, spec.selection, spec.odds, spec.type))

    risk = total_risk(bet_type, amount)
    if available_balance(account) < risk:
        raise InsufficientFunds("Insufficient available balance")

    docs = _build_bet_docs(
        str(account["_id"]), bet_type, amount, legs, rule, teaser_points, ip_address, user_agent,
    )

    async def _work(scope: AtomicScope) -> dict[str, Any]:
        # Bets first, money last: a sequential run that dies before the debit
        # only leaves pending bets behind, which the compensation removes.
        for doc in docs:
            doc.pop("_id", None)
        result = await _db.db.bets.insert_many(docs, session=scope.session)
        bet_ids = list(result.inserted_ids)
        for doc, bet_id in zip(docs, bet_ids):
            doc["_id"] = bet_id
        scope.on_rollback(
            "bets",
            lambda: _db.db.bets.delete_many({"_id": {"$in": bet_ids}}),
        )

        change = await mutate_balance(
            account["_id"],
            scope=scope,
            balance_delta=-risk,
            pending_delta=risk,
            require_available=risk,
            wagered_delta=risk,
            bet_count_delta=len(docs),
        )
        await record_entry(
            change,
            TransactionType.bet_placed,
            -risk,
            scope=scope,
            reference_type=ReferenceType.bet,
            reference_id=str(bet_ids[0]),
            reason="BET_PLACED",
            description=f"{bet_type.upper()} bet placed",
        )
        return {"change": change, "bets": docs}

    placed = await run_in_scope(_work, label=f"place_bet:{account_id}")
    change = placed["change"]

    logger.info(
        "Bet placed: account=%s type=%s amount=%s risk=%s legs=%d bets=%s",
        account_id, bet_type, money_str(amount), money_str(risk), len(legs),
        [str(d["_id"]) for d in placed["bets"]],
    )

    return PlaceBetResponse(
        bets=[bet_to_response(d) for d in placed["bets"]],
        balance=money_str(change.balance_after),
        pending_balance=money_str(change.pending_after),
    )


# ---------- Reads ----------

def bet_to_response(bet: dict, matches: Optional[dict[str, dict]] = None) -> dict:
    """Serialize a bet document, joining current match fields where available."""
    matches = matches or {}
    legs = []
    for leg in bet.get("selections") or []:
        match = matches.get(str(leg.get("match_id"))) or leg.get("match_snapshot") or {}
        legs.append({
            "match_id": str(leg.get("match_id")),
            "selection": leg.get("selection"),
            "odds": str(to_decimal(leg.get("odds"))),
            "market_type": leg.get("market_type"),
            "point": leg.get("point"),
            "status": leg.get("status", LegStatus.pending.value),
            "home_team": match.get("home_team"),
            "away_team": match.get("away_team"),
            "start_time": as_utc(match.get("start_time")),
            "match_status": match.get("status"),
            "score": match.get("score"),
        })
    return {
        "id": str(bet["_id"]),
        "type": bet.get("type"),
        "amount": money_str(bet.get("amount")),
        "potential_payout": money_str(bet.get("potential_payout")),
        "status": bet.get("status"),
        "result": bet.get("result"),
        "selections": legs,
        "teaser_points": bet.get("teaser_points"),
        "reverse_group_id": bet.get("reverse_group_id"),
        "created_at": as_utc(bet.get("created_at")),
        "settled_at": as_utc(bet.get("settled_at")),
    }


async def get_my_bets(account_id: str, status: Optional[str] = None, limit: int = 50) -> list[dict]:
    query: dict[str, Any] = {"account_id": str(account_id)}
    if status and status != "all":
        query["status"] = status
    limit = max(1, min(int(limit), 200))

    bets = await _db.db.bets.find(query).sort("created_at", -1).limit(limit).to_list(length=limit)

    match_ids: set[ObjectId] = set()
    for bet in bets:
        for leg in bet.get("selections") or []:
            if ObjectId.is_valid(str(leg.get("match_id"))):
                match_ids.add(ObjectId(str(leg["match_id"])))

    matches: dict[str, dict] = {}
    if match_ids:
        docs = await _db.db.matches.find(
            {"_id": {"$in": list(match_ids)}},
            {"home_team": 1, "away_team": 1, "start_time": 1, "sport": 1, "status": 1, "score": 1},
        ).to_list(length=len(match_ids))
        matches = {str(d["_id"]): d for d in docs}

    return [bet_to_response(b, matches) for b in bets]
