"""Account models: balance holders (users and agents) and their limits."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class AccountStatus(str, Enum):
    active = "active"
    suspended = "suspended"
    disabled = "disabled"
    read_only = "read_only"


# Statuses that forbid placing a wager.
BLOCKED_STATUSES = frozenset({
    AccountStatus.suspended.value,
    AccountStatus.disabled.value,
    AccountStatus.read_only.value,
})


def normalize_account_status(raw: object) -> str:
    """'Read Only', 'read-only' and 'read_only' are the same status."""
    text = str(raw or AccountStatus.active.value).strip().lower()
    return text.replace("-", "_").replace(" ", "_")


class AccountInDB(BaseModel):
    """Money-bearing fields of an account document."""
    username: str
    role: str = "user"
    status: AccountStatus = AccountStatus.active
    balance: Decimal = Decimal("0.00")
    initial_balance: Decimal = Decimal("0.00")
    pending_balance: Decimal = Decimal("0.00")
    total_wagered: Decimal = Decimal("0.00")
    total_winnings: Decimal = Decimal("0.00")
    bet_count: int = 0
    min_bet: Optional[Decimal] = None
    max_bet: Optional[Decimal] = None
    version: int = 0
    is_admin: bool = False
    created_at: datetime
    updated_at: datetime


class BalanceSummary(BaseModel):
    """Balance view returned to the client. Amounts are fixed-point strings."""
    account_id: str
    balance: str
    pending_balance: str
    available_balance: str
    total_wagered: str
    total_winnings: str
    bet_count: int = 0


class BalanceAdjustmentRequest(BaseModel):
    """Admin request setting an account's balance to an absolute value."""
    new_balance: Decimal = Field(..., description="Target balance; clamped at zero")
    reason: Optional[str] = Field(default=None, max_length=500)
