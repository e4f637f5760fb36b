"""
backend/app/routers/matches.py

Purpose:
    Match read API and the on-demand odds refresh trigger.

Dependencies:
    - app.services.match_service
    - app.services.odds_ingestion_service
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from app.config import settings
from app.models.match import MatchResponse
from app.services import odds_ingestion_service
from app.services.match_service import get_match_by_id, get_matches, match_to_response

logger = logging.getLogger("sportsbook.matches")

router = APIRouter(prefix="/api/matches", tags=["matches"])


@router.get("", response_model=list[MatchResponse])
async def list_matches(
    status_filter: Optional[str] = Query(None, alias="status", description="Match status, 'active' = live"),
    active: Optional[bool] = Query(None, description="Only live matches"),
    sport: Optional[str] = Query(None, description="Filter by sport key"),
    limit: int = Query(100, ge=1, le=500),
):
    """Matches ordered by start time."""
    matches = await get_matches(status=status_filter, active=active, sport=sport, limit=limit)
    return [match_to_response(m) for m in matches]


@router.post("/fetch-odds")
async def fetch_odds():
    """Force an odds refresh. Disabled unless PUBLIC_ODDS_REFRESH_ENABLED is set."""
    if not settings.PUBLIC_ODDS_REFRESH_ENABLED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Public odds refresh is disabled.",
        )
    result = await odds_ingestion_service.refresh(force=True, source="manual")
    logger.info("Manual odds refresh: %s", {k: result[k] for k in ("created", "updated", "settled", "cache")})
    return result


@router.get("/{match_id}", response_model=MatchResponse)
async def get_match(match_id: str):
    match = await get_match_by_id(match_id)
    if not match:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Match not found.")
    return match_to_response(match)
