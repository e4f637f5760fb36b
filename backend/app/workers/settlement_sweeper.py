import logging

from app.services.settlement_service import sweep_finished_matches
from app.workers._state import set_synced

logger = logging.getLogger("sportsbook.settlement_sweeper")


async def sweep_settlements() -> None:
    """Finish bets a previous settlement pass left pending (partial failures, late scores)."""
    try:
        result = await sweep_finished_matches()
    except Exception:
        logger.error("Settlement sweep failed", exc_info=True)
        return
    await set_synced("settlement_sweeper", metrics=result)
