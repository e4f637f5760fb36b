"""
backend/app/services/ledger_service.py

Purpose:
    Account balance primitives and the append-only transaction ledger.
    Every change to ``balance``/``pending_balance`` goes through
    ``mutate_balance`` (optimistic compare-and-set on the account ``version``)
    and is paired with a ``record_entry`` call carrying before/after
    snapshots inside the same atomic scope.

Dependencies:
    - app.database
    - app.services.atomic_scope
    - app.utils.money
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from bson import ObjectId

import app.database as _db
from app.models.account import BalanceSummary
from app.models.ledger import (
    LedgerVerification,
    ReferenceType,
    TransactionStatus,
    TransactionType,
)
from app.services.atomic_scope import AtomicScope, run_in_scope
from app.services.errors import AccountNotFound, BalanceConflict, InsufficientFunds, ValidationError
from app.utils import utcnow
from app.utils.money import ZERO, money_str, to_decimal128, to_money

logger = logging.getLogger("sportsbook.ledger_service")

MAX_CAS_RETRIES = 5


@dataclass(frozen=True)
class BalanceChange:
    account_id: str
    balance_before: Decimal
    balance_after: Decimal
    pending_before: Decimal
    pending_after: Decimal

    @property
    def balance_delta(self) -> Decimal:
        return self.balance_after - self.balance_before

    @property
    def pending_delta(self) -> Decimal:
        return self.pending_after - self.pending_before


def available_balance(account: dict) -> Decimal:
    balance = to_money(account.get("balance"))
    pending = to_money(account.get("pending_balance"))
    return max(ZERO, balance - pending)


def _oid(account_id: str | ObjectId) -> ObjectId:
    return account_id if isinstance(account_id, ObjectId) else ObjectId(account_id)


def _version_filter(account: dict) -> dict[str, Any]:
    if "version" not in account:
        return {"version": {"$exists": False}}
    return {"version": int(account["version"])}


async def mutate_balance(
    account_id: str | ObjectId,
    *,
    scope: Optional[AtomicScope] = None,
    balance_delta: Decimal = ZERO,
    pending_delta: Decimal = ZERO,
    target_balance: Optional[Decimal] = None,
    require_available: Optional[Decimal] = None,
    wagered_delta: Decimal = ZERO,
    winnings_delta: Decimal = ZERO,
    bet_count_delta: int = 0,
) -> BalanceChange:
    """Apply balance/pending deltas with a version CAS, retrying on conflicts.

    ``require_available`` re-checks available funds against the freshly read
    account so a concurrent placement cannot overdraw it. ``pending_balance``
    is clamped at zero. ``target_balance`` replaces ``balance_delta`` with
    "set balance to this value" (clamped at zero) for manual adjustments.
    """
    oid = _oid(account_id)
    session = scope.session if scope else None

    for attempt in range(MAX_CAS_RETRIES):
        account = await _db.db.accounts.find_one({"_id": oid}, session=session)
        if not account:
            raise AccountNotFound("Account not found.")

        balance = to_money(account.get("balance"))
        pending = to_money(account.get("pending_balance"))

        if require_available is not None and available_balance(account) < require_available:
            raise InsufficientFunds(
                f"Insufficient balance: available {money_str(available_balance(account))}, "
                f"required {money_str(require_available)}."
            )

        if target_balance is not None:
            new_balance = max(ZERO, to_money(target_balance))
        else:
            new_balance = balance + to_money(balance_delta)
        if new_balance < ZERO:
            raise InsufficientFunds("Balance cannot go negative.")
        new_pending = max(ZERO, pending + to_money(pending_delta))

        update_set: dict[str, Any] = {
            "balance": to_decimal128(new_balance),
            "pending_balance": to_decimal128(new_pending),
            "updated_at": utcnow(),
        }
        if wagered_delta:
            update_set["total_wagered"] = to_decimal128(to_money(account.get("total_wagered")) + wagered_delta)
        if winnings_delta:
            update_set["total_winnings"] = to_decimal128(to_money(account.get("total_winnings")) + winnings_delta)
        if bet_count_delta:
            update_set["bet_count"] = int(account.get("bet_count", 0) or 0) + bet_count_delta

        result = await _db.db.accounts.update_one(
            {"_id": oid, **_version_filter(account)},
            {"$set": update_set, "$inc": {"version": 1}},
            session=session,
        )
        if result.matched_count == 1:
            change = BalanceChange(
                account_id=str(oid),
                balance_before=balance,
                balance_after=new_balance,
                pending_before=pending,
                pending_after=new_pending,
            )
            if scope is not None:
                scope.on_rollback(
                    f"balance:{oid}",
                    lambda: mutate_balance(
                        oid,
                        balance_delta=-change.balance_delta,
                        pending_delta=-change.pending_delta,
                        wagered_delta=-wagered_delta,
                        winnings_delta=-winnings_delta,
                        bet_count_delta=-bet_count_delta,
                    ),
                )
            return change

        logger.debug("Balance CAS conflict account=%s attempt=%d", oid, attempt + 1)

    logger.warning("Balance CAS retries exhausted for account=%s", oid)
    raise BalanceConflict("Account is busy, please retry.")


async def record_entry(
    change: BalanceChange,
    tx_type: TransactionType,
    amount: Decimal,
    *,
    scope: Optional[AtomicScope] = None,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Optional[str] = None,
    reason: Optional[str] = None,
    description: str = "",
    actor_id: Optional[str] = None,
    status: TransactionStatus = TransactionStatus.completed,
) -> str:
    """Append an immutable ledger entry. ``amount`` is signed: credit > 0, debit < 0."""
    doc = {
        "account_id": change.account_id,
        "type": tx_type.value,
        "status": status.value,
        "amount": to_decimal128(amount),
        "balance_before": to_decimal128(change.balance_before),
        "balance_after": to_decimal128(change.balance_after),
        "reference_type": reference_type.value if reference_type else None,
        "reference_id": reference_id,
        "reason": reason,
        "description": description,
        "actor_id": actor_id,
        "created_at": utcnow(),
    }
    session = scope.session if scope else None
    result = await _db.db.transactions.insert_one(doc, session=session)
    entry_id = result.inserted_id
    if scope is not None:
        scope.on_rollback(
            f"ledger:{entry_id}",
            lambda: _db.db.transactions.delete_one({"_id": entry_id}),
        )
    return str(entry_id)


# ---------- Manual adjustment ----------

async def apply_adjustment(
    account_id: str,
    new_balance: Decimal,
    actor_id: Optional[str],
    reason: Optional[str] = None,
) -> BalanceSummary:
    """Set an account's balance to an absolute value and log an adjustment entry."""
    try:
        target = to_money(new_balance)
    except ArithmeticError:
        raise ValidationError("new_balance must be a number.")

    async def _work(scope: AtomicScope) -> BalanceChange:
        change = await mutate_balance(account_id, scope=scope, target_balance=target)
        await record_entry(
            change,
            TransactionType.adjustment,
            change.balance_delta,
            scope=scope,
            reference_type=ReferenceType.adjustment,
            reason=reason or "ADMIN_BALANCE_ADJUSTMENT",
            description=f"Balance set to {money_str(change.balance_after)}",
            actor_id=actor_id,
        )
        return change

    change = await run_in_scope(_work, label=f"adjustment:{account_id}")
    logger.info(
        "Balance adjusted: account=%s %s -> %s by=%s",
        account_id, money_str(change.balance_before), money_str(change.balance_after), actor_id,
    )
    return await get_balance_summary(account_id)


# ---------- Reads ----------

def _entry_to_response(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "type": doc.get("type"),
        "status": doc.get("status"),
        "amount": money_str(doc.get("amount")),
        "balance_before": money_str(doc.get("balance_before")),
        "balance_after": money_str(doc.get("balance_after")),
        "reference_type": doc.get("reference_type"),
        "reference_id": doc.get("reference_id"),
        "reason": doc.get("reason"),
        "description": doc.get("description"),
        "created_at": doc.get("created_at"),
    }


async def get_account_ledger(account_id: str, limit: int = 50, skip: int = 0) -> list[dict]:
    limit = max(1, min(int(limit), 200))
    skip = max(0, int(skip))
    docs = await _db.db.transactions.find(
        {"account_id": str(account_id)}
    ).sort("created_at", -1).skip(skip).limit(limit).to_list(length=limit)
    return [_entry_to_response(d) for d in docs]


async def get_balance_summary(account_id: str) -> BalanceSummary:
    account = await _db.db.accounts.find_one({"_id": _oid(account_id)})
    if not account:
        raise AccountNotFound("Account not found.")
    return BalanceSummary(
        account_id=str(account["_id"]),
        balance=money_str(account.get("balance")),
        pending_balance=money_str(account.get("pending_balance")),
        available_balance=money_str(available_balance(account)),
        total_wagered=money_str(account.get("total_wagered")),
        total_winnings=money_str(account.get("total_winnings")),
        bet_count=int(account.get("bet_count", 0) or 0),
    )


async def verify_ledger(account_id: str) -> LedgerVerification:
    """Check that completed ledger deltas add up to current minus initial balance."""
    account = await _db.db.accounts.find_one({"_id": _oid(account_id)})
    if not account:
        raise AccountNotFound("Account not found.")

    entries = await _db.db.transactions.find(
        {"account_id": str(account["_id"]), "status": TransactionStatus.completed.value}
    ).to_list(length=None)

    ledger_delta = ZERO
    for entry in entries:
        ledger_delta += to_money(entry.get("balance_after")) - to_money(entry.get("balance_before"))

    initial = to_money(account.get("initial_balance"))
    current = to_money(account.get("balance"))
    drift = (current - initial) - ledger_delta
    if drift != ZERO:
        logger.error("Ledger drift account=%s drift=%s", account["_id"], money_str(drift))

    return LedgerVerification(
        account_id=str(account["_id"]),
        ok=drift == ZERO,
        entries=len(entries),
        ledger_delta=money_str(ledger_delta),
        initial_balance=money_str(initial),
        current_balance=money_str(current),
        drift=money_str(drift),
    )


async def verify_all_ledgers() -> list[LedgerVerification]:
    results = []
    async for account in _db.db.accounts.find({}, {"_id": 1}):
        results.append(await verify_ledger(str(account["_id"])))
    return results
