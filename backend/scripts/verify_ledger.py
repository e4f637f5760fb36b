"""
backend/scripts/verify_ledger.py

Purpose:
    Checks that each account's completed ledger entries add up to its
    balance movement since creation. Exits non-zero when any account drifts.

Usage:
    cd backend && python -m scripts.verify_ledger
    cd backend && python -m scripts.verify_ledger --account-id 65f0c2a1e4b0a1b2c3d4e5f6
"""

from __future__ import annotations

import argparse
import asyncio

import app.database as _db
from app.middleware.logging import setup_logging
from app.services.ledger_service import verify_all_ledgers, verify_ledger


async def _run(account_id: str | None) -> int:
    await _db.connect_db()
    try:
        if account_id:
            results = [await verify_ledger(account_id)]
        else:
            results = await verify_all_ledgers()
    finally:
        await _db.close_db()

    drifted = [r for r in results if not r.ok]
    for result in drifted:
        print(result.model_dump())
    print({"ok": not drifted, "accounts": len(results), "drifted": len(drifted)})
    return 0 if not drifted else 1


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Verify account ledgers against balances.")
    parser.add_argument("--account-id", default=None, help="Only check this account")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    setup_logging()
    return asyncio.run(_run(account_id=args.account_id))


if __name__ == "__main__":
    raise SystemExit(main())
