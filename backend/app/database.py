"""
backend/app/database.py

Purpose:
    MongoDB connection bootstrap and index management for the wagering
    engine collections (accounts, matches, bets, transactions, rules).

Dependencies:
    - motor.motor_asyncio
    - pymongo
    - app.config
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, OperationFailure

from app.config import settings

client: AsyncIOMotorClient = None
db: AsyncIOMotorDatabase = None

logger = logging.getLogger("sportsbook.database")


async def connect_db() -> None:
    global client, db
    client = AsyncIOMotorClient(
        settings.MONGO_URI,
        maxPoolSize=25,
        minPoolSize=5,
    )
    db = client[settings.MONGO_DB]
    await _ensure_indexes()


async def close_db() -> None:
    global client
    if client:
        client.close()


async def get_db() -> AsyncIOMotorDatabase:
    return db


async def _ensure_indexes() -> None:
    """Create indexes on startup. Idempotent, safe to run repeatedly."""

    # ---- Accounts (users + agents holding balances) ----

    await db.accounts.create_index("username", unique=True, sparse=True)
    await db.accounts.create_index("status")
    await db.accounts.create_index("agent_id", sparse=True)

    # ---- Matches ----

    try:
        await db.matches.create_index("external_id", unique=True, sparse=True)
    except (DuplicateKeyError, OperationFailure) as exc:
        logger.warning("Skipped unique external_id index due to duplicate data: %s", exc)
        await db.matches.create_index("external_id", name="external_id_lookup")
    await db.matches.create_index([("status", 1), ("start_time", 1)])
    await db.matches.create_index([("sport", 1), ("start_time", 1)])
    await db.matches.create_index("start_time")

    # ---- Bets ----

    await db.bets.create_index([("account_id", 1), ("created_at", -1)])
    await db.bets.create_index([("account_id", 1), ("status", 1)])
    # Settlement: pending bets referencing a match
    await db.bets.create_index([("selections.match_id", 1), ("status", 1)])
    await db.bets.create_index("reverse_group_id", sparse=True)
    await db.bets.create_index("settled_at", sparse=True)

    # ---- Ledger (append-only) ----

    await db.transactions.create_index([("account_id", 1), ("created_at", -1)])
    await db.transactions.create_index([("reference_type", 1), ("reference_id", 1)])
    await db.transactions.create_index([("type", 1), ("status", 1)])
    await db.transactions.create_index("created_at")

    # ---- Bet mode rules ----

    await db.bet_mode_rules.create_index("mode", unique=True)
