"""
backend/tests/test_ledger_service.py

Purpose:
    Balance compare-and-set, manual adjustments, ledger reads and the
    ledger-vs-balance consistency check.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest

from app.models.ledger import TransactionType
from app.services import ledger_service
from app.services.errors import AccountNotFound, BalanceConflict, InsufficientFunds
from app.utils import utcnow
from app.utils.money import to_decimal128, to_money


def test_available_balance_never_negative() -> None:
    account = {"balance": to_decimal128("50.00"), "pending_balance": to_decimal128("80.00")}
    assert ledger_service.available_balance(account) == Decimal("0.00")
    account["pending_balance"] = to_decimal128("20.00")
    assert ledger_service.available_balance(account) == Decimal("30.00")


@pytest.mark.asyncio
async def test_mutate_balance_bumps_version(fake_db, make_account) -> None:
    account = make_account(balance="100.00")

    change = await ledger_service.mutate_balance(
        str(account["_id"]), balance_delta=Decimal("-40"), pending_delta=Decimal("40"),
    )

    assert change.balance_delta == Decimal("-40.00")
    assert change.pending_delta == Decimal("40.00")
    stored = fake_db.accounts.docs[0]
    assert stored["version"] == 1
    assert to_money(stored["balance"]) == Decimal("60.00")


@pytest.mark.asyncio
async def test_mutate_balance_retries_after_a_lost_race(fake_db, make_account, monkeypatch) -> None:
    account = make_account(balance="100.00")
    collection = fake_db.accounts
    real_update = collection.update_one
    attempts = []

    async def _racy_update(query, update, upsert=False, session=None):
        attempts.append(query)
        if len(attempts) == 1:
            # another writer got there first
            collection.docs[0]["version"] = 7
            collection.docs[0]["balance"] = to_decimal128("90.00")
        return await real_update(query, update, upsert=upsert, session=session)

    monkeypatch.setattr(collection, "update_one", _racy_update)

    change = await ledger_service.mutate_balance(str(account["_id"]), balance_delta=Decimal("-10"))

    assert len(attempts) == 2
    assert change.balance_before == Decimal("90.00")
    assert to_money(collection.docs[0]["balance"]) == Decimal("80.00")
    assert collection.docs[0]["version"] == 8


@pytest.mark.asyncio
async def test_mutate_balance_gives_up_after_max_retries(fake_db, make_account, monkeypatch) -> None:
    account = make_account()
    calls = []

    async def _always_stale(query, update, upsert=False, session=None):
        calls.append(query)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    monkeypatch.setattr(fake_db.accounts, "update_one", _always_stale)

    with pytest.raises(BalanceConflict):
        await ledger_service.mutate_balance(str(account["_id"]), balance_delta=Decimal("5"))
    assert len(calls) == ledger_service.MAX_CAS_RETRIES


@pytest.mark.asyncio
async def test_mutate_balance_checks_funds(fake_db, make_account) -> None:
    account = make_account(balance="30.00", pending="10.00")

    with pytest.raises(InsufficientFunds):
        await ledger_service.mutate_balance(
            str(account["_id"]), balance_delta=Decimal("-25"), require_available=Decimal("25"),
        )
    with pytest.raises(InsufficientFunds):
        await ledger_service.mutate_balance(str(account["_id"]), balance_delta=Decimal("-31"))
    assert to_money(fake_db.accounts.docs[0]["balance"]) == Decimal("30.00")


@pytest.mark.asyncio
async def test_adjustment_sets_balance_and_logs_entry(fake_db, make_account) -> None:
    account = make_account(balance="200.00", pending="25.00")

    summary = await ledger_service.apply_adjustment(str(account["_id"]), Decimal("350.5"), actor_id="admin-1")

    assert summary.balance == "350.50"
    assert summary.pending_balance == "25.00"
    assert summary.available_balance == "325.50"
    [entry] = fake_db.transactions.docs
    assert entry["type"] == TransactionType.adjustment.value
    assert to_money(entry["amount"]) == Decimal("150.50")
    assert entry["actor_id"] == "admin-1"
    assert entry["reason"] == "ADMIN_BALANCE_ADJUSTMENT"


@pytest.mark.asyncio
async def test_adjustment_clamps_at_zero(fake_db, make_account) -> None:
    account = make_account(balance="40.00")

    summary = await ledger_service.apply_adjustment(
        str(account["_id"]), Decimal("-15"), actor_id="admin-1", reason="chargeback",
    )

    assert summary.balance == "0.00"
    [entry] = fake_db.transactions.docs
    assert to_money(entry["amount"]) == Decimal("-40.00")
    assert entry["reason"] == "chargeback"


@pytest.mark.asyncio
async def test_adjustment_for_unknown_account(fake_db) -> None:
    from bson import ObjectId

    with pytest.raises(AccountNotFound):
        await ledger_service.apply_adjustment(str(ObjectId()), Decimal("10"), actor_id=None)
    assert fake_db.transactions.docs == []


@pytest.mark.asyncio
async def test_ledger_is_newest_first_and_paginated(fake_db, make_account) -> None:
    account = make_account()
    account_id = str(account["_id"])
    base = utcnow()
    for i in range(5):
        fake_db.transactions.docs.append({
            "_id": f"tx-{i}",
            "account_id": account_id,
            "type": "bet_placed",
            "status": "completed",
            "amount": to_decimal128(-(i + 1)),
            "balance_before": to_decimal128("0"),
            "balance_after": to_decimal128("0"),
            "created_at": base + timedelta(seconds=i),
        })

    page = await ledger_service.get_account_ledger(account_id, limit=2, skip=1)

    assert [e["id"] for e in page] == ["tx-3", "tx-2"]
    assert page[0]["amount"] == "-4.00"


@pytest.mark.asyncio
async def test_verify_ledger_reports_drift(fake_db, make_account) -> None:
    account = make_account(balance="100.00")
    account_id = str(account["_id"])

    await ledger_service.apply_adjustment(account_id, Decimal("120"), actor_id="admin-1")
    clean = await ledger_service.verify_ledger(account_id)
    assert clean.ok
    assert clean.entries == 1
    assert clean.ledger_delta == "20.00"

    fake_db.accounts.docs[0]["balance"] = to_decimal128("125.00")
    drifted = await ledger_service.verify_ledger(account_id)
    assert not drifted.ok
    assert drifted.drift == "5.00"

    everything = await ledger_service.verify_all_ledgers()
    assert [v.ok for v in everything] == [False]
