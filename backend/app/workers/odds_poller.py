import logging

from app.config import settings
from app.providers.odds_api import odds_provider
from app.services.odds_ingestion_service import refresh
from app.workers._state import set_synced

logger = logging.getLogger("sportsbook.odds_poller")


async def poll_odds() -> None:
    """Scheduled odds refresh. Cache TTL and the daily budget decide whether anything is fetched."""
    if not settings.SPORTS_API_ENABLED:
        logger.debug("SPORTS_API_ENABLED=false, skipping scheduled poll")
        return
    try:
        result = await refresh(force=False, source="cron")
    except Exception:
        logger.error("Odds poll failed", exc_info=True)
        return

    await set_synced("odds_poller", metrics={
        "created": result["created"],
        "updated": result["updated"],
        "settled": result["settled"],
        "api_calls": result["api_calls"],
    })
    if result["api_calls"]:
        status = odds_provider.status()
        logger.info(
            "API usage: %s used today (limit %s), provider remaining %s",
            status["budget"]["used"], status["budget"]["max"] or "none",
            status["usage"].get("requests_remaining", "?"),
        )
