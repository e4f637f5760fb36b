"""Ledger models: append-only transactions behind every balance change."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TransactionType(str, Enum):
    deposit = "deposit"
    withdrawal = "withdrawal"
    bet_placed = "bet_placed"
    bet_won = "bet_won"
    bet_refund = "bet_refund"
    adjustment = "adjustment"
    payment = "payment"


class TransactionStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class ReferenceType(str, Enum):
    bet = "bet"
    adjustment = "adjustment"


class TransactionResponse(BaseModel):
    """Ledger entry returned to the client."""
    id: str
    type: str
    status: str
    amount: str
    balance_before: str
    balance_after: str
    reference_type: Optional[str] = None
    reference_id: Optional[str] = None
    reason: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime


class LedgerVerification(BaseModel):
    """Outcome of the ledger-sum check for one account."""
    account_id: str
    ok: bool
    entries: int
    ledger_delta: str
    initial_balance: str
    current_balance: str
    drift: str
