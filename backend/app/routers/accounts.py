"""Account balance, ledger history and admin balance tools."""

from fastapi import APIRouter, Depends, Query

from app.models.account import BalanceAdjustmentRequest, BalanceSummary
from app.models.ledger import LedgerVerification
from app.services import ledger_service
from app.services.auth_service import get_admin_user, get_current_user

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


# ---------- Self ----------

@router.get("/me/balance", response_model=BalanceSummary)
async def my_balance(user=Depends(get_current_user)):
    return await ledger_service.get_balance_summary(str(user["_id"]))


@router.get("/me/transactions")
async def my_transactions(
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    user=Depends(get_current_user),
):
    """Ledger entries for the caller, newest first."""
    return await ledger_service.get_account_ledger(str(user["_id"]), limit=limit, skip=skip)


# ---------- Admin ----------

@router.get("/{account_id}/transactions")
async def account_transactions(
    account_id: str,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
    admin=Depends(get_admin_user),
):
    return await ledger_service.get_account_ledger(account_id, limit=limit, skip=skip)


@router.post("/{account_id}/adjust-balance", response_model=BalanceSummary)
async def adjust_balance(
    account_id: str,
    body: BalanceAdjustmentRequest,
    admin=Depends(get_admin_user),
):
    """Set the account's balance; the difference is recorded as an adjustment entry."""
    return await ledger_service.apply_adjustment(
        account_id, body.new_balance, actor_id=str(admin["_id"]), reason=body.reason,
    )


@router.get("/{account_id}/verify-ledger", response_model=LedgerVerification)
async def verify_ledger(account_id: str, admin=Depends(get_admin_user)):
    return await ledger_service.verify_ledger(account_id)
