"""
backend/app/routers/bets.py

Purpose:
    Wager placement, operator settlement and the caller's bet history.

Dependencies:
    - app.services.bet_service
    - app.services.settlement_service
    - app.services.auth_service
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from app.models.bet import PlaceBetRequest, PlaceBetResponse, SettleMatchRequest, SettlementResult
from app.services import bet_service, settlement_service
from app.services.auth_service import get_admin_user, get_current_user
from app.services.errors import EngineError

router = APIRouter(prefix="/api/bets", tags=["bets"])


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


@router.post("/place", response_model=PlaceBetResponse, status_code=status.HTTP_201_CREATED)
async def place_bet(
    body: PlaceBetRequest,
    request: Request,
    user=Depends(get_current_user),
):
    """Place a straight, parlay, teaser, if-bet or reverse wager.

    Every rejected placement answers 400 with the reason, whatever status the
    error carries elsewhere.
    """
    try:
        return await bet_service.place_bet(
            str(user["_id"]),
            body,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except EngineError as exc:
        raise EngineError(exc.message, status_code=status.HTTP_400_BAD_REQUEST) from exc


@router.post("/settle", response_model=SettlementResult)
async def settle_match(body: SettleMatchRequest, admin=Depends(get_admin_user)):
    """Settle all pending bets on a match. With ``winner`` the outcome is decided manually."""
    return await settlement_service.settle_match(
        body.match_id, manual_winner=body.winner, settled_by="admin",
    )


@router.get("/my-bets")
async def my_bets(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    user=Depends(get_current_user),
):
    return await bet_service.get_my_bets(str(user["_id"]), status=status_filter, limit=limit)
