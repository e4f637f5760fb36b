"""
backend/app/services/settlement_service.py

Purpose:
    Resolves every pending bet that references a match: leg outcomes from the
    final score (or an operator-named winner), composite bet status per bet
    mode, and the money effects (payout, refund, stake release) with their
    ledger entries.

    No locks are taken. Each bet is settled in its own atomic scope and the
    bet update is conditional on ``status == "pending"``, so duplicate or
    concurrent runs for the same match settle every bet at most once.
    Concurrent runs inside one process share a single in-flight task per match.

Dependencies:
    - app.database
    - app.services.atomic_scope
    - app.services.ledger_service
    - app.services.event_bus
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from bson import ObjectId

import app.database as _db
from app.models.bet import TERMINAL_LEG_STATUSES, BetStatus, BetType, LegStatus, SettlementResult
from app.models.ledger import ReferenceType, TransactionType
from app.models.match import MARKET_SPREADS, MARKET_TOTALS, MatchScore, MatchStatus, score_from_doc
from app.services import bet_rules
from app.services.atomic_scope import AtomicScope, run_in_scope
from app.services.bet_service import odds_product
from app.services.errors import MatchNotFound, SettlementPartialFailure
from app.services.event_bus import event_bus
from app.services.event_models import BetSettledEvent
from app.services.ledger_service import mutate_balance, record_entry
from app.services.market_service import normalize_market_key
from app.services.single_flight import SingleFlight
from app.utils import utcnow
from app.utils.money import ZERO, money_str, quantize_money, to_decimal, to_decimal128, to_money

logger = logging.getLogger("sportsbook.settlement_service")

_settle_flight = SingleFlight("settlement")


# ---------- Leg resolution ----------

def _snapshot_point(leg: dict) -> Optional[float]:
    """Point captured at placement, falling back to the outcome in the leg's match snapshot."""
    if leg.get("point") is not None:
        return float(leg["point"])
    snapshot = leg.get("match_snapshot") or {}
    market_key = normalize_market_key(leg.get("market_type"))
    for market in (snapshot.get("odds") or {}).get("markets") or []:
        if normalize_market_key(market.get("key")) != market_key:
            continue
        for outcome in market.get("outcomes") or []:
            if outcome.get("name") == leg.get("selection") and outcome.get("point") is not None:
                return float(outcome["point"])
    return None


def resolve_leg_status(
    leg: dict,
    match: dict,
    score: MatchScore,
    manual_winner: Optional[str] = None,
) -> str:
    """Terminal status for one leg, or ``pending`` when it cannot be decided yet."""
    selection = leg.get("selection")
    if manual_winner:
        return LegStatus.won.value if selection == manual_winner else LegStatus.lost.value

    if match.get("status") != MatchStatus.finished.value or not score.is_complete():
        return LegStatus.pending.value

    home, away = score.home, score.away
    snapshot = leg.get("match_snapshot") or {}
    home_team = snapshot.get("home_team") or match.get("home_team")
    away_team = snapshot.get("away_team") or match.get("away_team")
    market = normalize_market_key(leg.get("market_type"))

    if market == MARKET_SPREADS:
        point = _snapshot_point(leg)
        if point is None:
            return LegStatus.pending.value
        if selection == home_team:
            adjusted, other = home + point, away
        elif selection == away_team:
            adjusted, other = away + point, home
        else:
            return LegStatus.pending.value
        if adjusted > other:
            return LegStatus.won.value
        if adjusted == other:
            return LegStatus.void.value
        return LegStatus.lost.value

    if market == MARKET_TOTALS:
        point = _snapshot_point(leg)
        if point is None:
            return LegStatus.pending.value
        total = home + away
        if total == point:
            return LegStatus.void.value
        is_over = "over" in str(selection).lower()
        if is_over:
            return LegStatus.won.value if total > point else LegStatus.lost.value
        return LegStatus.won.value if total < point else LegStatus.lost.value

    # head-to-head
    if home > away:
        return LegStatus.won.value if selection == home_team else LegStatus.lost.value
    if away > home:
        return LegStatus.won.value if selection == away_team else LegStatus.lost.value
    return LegStatus.won.value if selection == "Draw" else LegStatus.lost.value


# ---------- Composite status ----------

def composite_status(bet_type: str, leg_statuses: list[str]) -> str:
    if not leg_statuses:
        return BetStatus.pending.value

    if bet_type == BetType.straight.value:
        return leg_statuses[0]

    if bet_type == BetType.if_bet.value:
        # Sequential chain. A void leg is skipped like a push; all void voids the bet.
        for status in leg_statuses:
            if status == LegStatus.lost.value:
                return BetStatus.lost.value
            if status == LegStatus.pending.value:
                return BetStatus.pending.value
        if all(s == LegStatus.void.value for s in leg_statuses):
            return BetStatus.void.value
        return BetStatus.won.value

    # parlay / teaser
    if LegStatus.lost.value in leg_statuses:
        return BetStatus.lost.value
    if LegStatus.pending.value in leg_statuses:
        return BetStatus.pending.value
    if all(s == LegStatus.void.value for s in leg_statuses):
        return BetStatus.void.value
    return BetStatus.won.value


def settled_payout(bet: dict, legs: list[dict], rule: Optional[bet_rules.BetModeRule]) -> Decimal:
    """Payout for a won bet. Void legs drop out of the price product / teaser table."""
    stake = to_money(bet.get("amount"))
    payout = to_money(bet.get("potential_payout"))
    voids = [leg for leg in legs if leg.get("status") == LegStatus.void.value]
    if not voids:
        return payout

    bet_type = bet.get("type")
    winners = [leg for leg in legs if leg.get("status") == LegStatus.won.value]
    if bet_type == BetType.teaser.value and rule is not None:
        return quantize_money(stake * rule.multiplier_for(len(winners)))
    if bet_type in (BetType.parlay.value, BetType.if_bet.value):
        return quantize_money(stake * odds_product(to_decimal(leg.get("odds")) for leg in winners))
    return payout


# ---------- Per-bet settlement ----------

async def _settle_bet(
    bet: dict,
    match: dict,
    score: MatchScore,
    manual_winner: Optional[str],
    settled_by: str,
    rules: dict[str, bet_rules.BetModeRule],
) -> Optional[str]:
    """Settle one bet. Returns its new terminal status, or None if it stays pending.

    Leg results are written one array slot at a time, then the bet is re-read
    so the composite status sees legs settled by concurrent runs for other
    matches. A bet whose legs are all terminal but which is still pending
    (an earlier pass failed mid-scope) is settled here as well.
    """
    match_id = str(match["_id"])
    resolved: dict[int, str] = {}
    for index, leg in enumerate(bet.get("selections") or []):
        if str(leg.get("match_id")) != match_id or leg.get("status") in TERMINAL_LEG_STATUSES:
            continue
        status = resolve_leg_status(leg, match, score, manual_winner)
        if status != LegStatus.pending.value:
            resolved[index] = status

    if resolved:
        now = utcnow()
        for index, status in resolved.items():
            await _db.db.bets.update_one(
                {
                    "_id": bet["_id"],
                    "status": BetStatus.pending.value,
                    f"selections.{index}.status": {"$nin": list(TERMINAL_LEG_STATUSES)},
                },
                {"$set": {f"selections.{index}.status": status, "updated_at": now}},
            )
        bet = await _db.db.bets.find_one({"_id": bet["_id"]})
        if not bet or bet.get("status") != BetStatus.pending.value:
            return None

    legs = bet.get("selections") or []
    bet_type = bet.get("type") or BetType.straight.value
    final = composite_status(bet_type, [leg.get("status", LegStatus.pending.value) for leg in legs])
    if final == BetStatus.pending.value:
        return None

    now = utcnow()
    stake = to_money(bet.get("amount"))
    payout = settled_payout(bet, legs, rules.get(bet_type)) if final == BetStatus.won.value else ZERO
    account_id = bet.get("account_id")

    async def _work(scope: AtomicScope) -> bool:
        result = await _db.db.bets.update_one(
            {"_id": bet["_id"], "status": BetStatus.pending.value},
            {"$set": {
                "status": final,
                "result": final,
                "potential_payout": to_decimal128(payout if final == BetStatus.won.value
                                                  else bet.get("potential_payout")),
                "settled_at": now,
                "settled_by": settled_by,
                "updated_at": now,
            }},
            session=scope.session,
        )
        if result.matched_count != 1:
            return False
        scope.on_rollback(
            f"bet:{bet['_id']}",
            lambda: _db.db.bets.update_one(
                {"_id": bet["_id"]},
                {"$set": {"status": BetStatus.pending.value, "result": None,
                          "potential_payout": bet.get("potential_payout"),
                          "settled_at": None, "settled_by": None}},
            ),
        )

        if final == BetStatus.void.value:
            change = await mutate_balance(account_id, scope=scope, balance_delta=stake, pending_delta=-stake)
            await record_entry(
                change, TransactionType.bet_refund, stake, scope=scope,
                reference_type=ReferenceType.bet, reference_id=str(bet["_id"]),
                reason="BET_VOID", description=f"{bet_type.upper()} bet void, stake refunded",
            )
        elif final == BetStatus.won.value:
            change = await mutate_balance(
                account_id, scope=scope, balance_delta=payout, pending_delta=-stake,
                winnings_delta=payout - stake,
            )
            await record_entry(
                change, TransactionType.bet_won, payout, scope=scope,
                reference_type=ReferenceType.bet, reference_id=str(bet["_id"]),
                reason="BET_WON", description=f"{bet_type.upper()} bet won",
            )
        else:
            await mutate_balance(account_id, scope=scope, pending_delta=-stake)
        return True

    applied = await run_in_scope(_work, label=f"settle_bet:{bet['_id']}")
    if not applied:
        logger.debug("Bet %s already settled by a concurrent run", bet["_id"])
        return None

    logger.info(
        "Bet settled: bet=%s account=%s type=%s status=%s payout=%s",
        bet["_id"], account_id, bet_type, final, money_str(payout),
    )
    await event_bus.publish(BetSettledEvent(
        source="settlement_service",
        bet_id=str(bet["_id"]),
        account_id=str(account_id),
        status=final,
        payout=money_str(payout),
        match_id=match_id,
    ))
    return final


# ---------- Match settlement ----------

async def _settle_match(match_id: str, manual_winner: Optional[str], settled_by: str) -> SettlementResult:
    match = await _db.db.matches.find_one({"_id": ObjectId(match_id)})
    if not match:
        raise MatchNotFound("Match not found")

    score = score_from_doc(match)
    pending_bets = await _db.db.bets.find({
        "status": BetStatus.pending.value,
        "selections.match_id": str(match["_id"]),
    }).to_list(length=None)

    results = SettlementResult()
    if not pending_bets:
        return results

    rules = await bet_rules.load_rules(active_only=False)
    failures: dict[str, str] = {}
    for bet in pending_bets:
        try:
            final = await _settle_bet(bet, match, score, manual_winner, settled_by, rules)
        except Exception as exc:
            logger.error("Settlement failed for bet %s (match %s)", bet.get("_id"), match_id, exc_info=True)
            failures[str(bet.get("_id"))] = str(exc)
            continue
        if final == BetStatus.won.value:
            results.won += 1
        elif final == BetStatus.lost.value:
            results.lost += 1
        elif final == BetStatus.void.value:
            results.voided += 1

    results.total = results.won + results.lost + results.voided
    results.failed = len(failures)
    if failures:
        partial = SettlementPartialFailure(match_id, failures)
        logger.error("%s; left pending for the next pass", partial)

    logger.info(
        "Match %s settled by %s: total=%d won=%d lost=%d voided=%d failed=%d",
        match_id, settled_by, results.total, results.won, results.lost, results.voided, results.failed,
    )
    return results


async def settle_match(
    match_id: str,
    manual_winner: Optional[str] = None,
    settled_by: str = "system",
) -> SettlementResult:
    """Settle every pending bet referencing ``match_id``. Safe to repeat."""
    key = (str(match_id), manual_winner or "")
    return await _settle_flight.do(key, lambda: _settle_match(str(match_id), manual_winner, settled_by))


async def sweep_finished_matches(limit: int = 200) -> dict[str, Any]:
    """Re-run settlement for finished matches that still have pending bets."""
    match_ids = await _db.db.bets.distinct(
        "selections.match_id", {"status": BetStatus.pending.value},
    )
    object_ids = [ObjectId(m) for m in match_ids if ObjectId.is_valid(str(m))]
    if not object_ids:
        return {"matches": 0, "settled": 0}

    finished = await _db.db.matches.find(
        {"_id": {"$in": object_ids}, "status": MatchStatus.finished.value},
        {"_id": 1},
    ).to_list(length=limit)

    settled = 0
    for match in finished:
        try:
            result = await settle_match(str(match["_id"]), settled_by="sweep")
        except Exception:
            logger.error("Settlement sweep failed for match %s", match["_id"], exc_info=True)
            continue
        settled += result.total
    if settled:
        logger.info("Settlement sweep: %d match(es), %d bet(s) settled", len(finished), settled)
    return {"matches": len(finished), "settled": settled}
