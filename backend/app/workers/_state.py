"""Persistent worker state: last run time and metrics per worker, kept in `worker_state`."""

from datetime import datetime
from typing import Any, Optional

import app.database as _db
from app.utils import utcnow


async def get_synced_at(worker_id: str) -> datetime | None:
    """Get the last synced_at timestamp for a worker."""
    doc = await _db.db.worker_state.find_one({"_id": worker_id})
    return doc["synced_at"] if doc else None


async def set_synced(worker_id: str, metrics: Optional[dict[str, Any]] = None) -> None:
    """Mark a worker as just synced."""
    update: dict[str, Any] = {"synced_at": utcnow()}
    if metrics is not None:
        update["metrics"] = metrics
    await _db.db.worker_state.update_one(
        {"_id": worker_id},
        {"$set": update},
        upsert=True,
    )
