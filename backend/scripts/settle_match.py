"""
backend/scripts/settle_match.py

Purpose:
    Operator tool that settles every pending bet on one match. With
    --winner the outcome is decided by name instead of by score, e.g. for a
    match the feed never finalized.

Usage:
    cd backend && python -m scripts.settle_match 65f0c2a1e4b0a1b2c3d4e5f6
    cd backend && python -m scripts.settle_match 65f0c2a1e4b0a1b2c3d4e5f6 --winner "Boston Celtics"
"""

from __future__ import annotations

import argparse
import asyncio

import app.database as _db
from app.middleware.logging import setup_logging
from app.services import atomic_scope
from app.services.settlement_service import settle_match


async def _run(match_id: str, winner: str | None) -> int:
    await _db.connect_db()
    try:
        atomic_scope.configure()
        result = await settle_match(match_id, manual_winner=winner, settled_by="cli")
        print({"ok": result.failed == 0, "match_id": match_id, **result.model_dump()})
        return 0 if result.failed == 0 else 1
    finally:
        await _db.close_db()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Settle pending bets for a match.")
    parser.add_argument("match_id", help="Match _id")
    parser.add_argument("--winner", default=None, help="Winning selection name (manual override)")
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    setup_logging()
    return asyncio.run(_run(match_id=args.match_id, winner=args.winner))


if __name__ == "__main__":
    raise SystemExit(main())
