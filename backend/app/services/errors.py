"""
backend/app/services/errors.py

Purpose:
    Domain error taxonomy for placement, settlement and ingestion. Errors
    carry the HTTP status they map to; main.py turns them into responses.
"""

from __future__ import annotations

from fastapi import status


class EngineError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(EngineError):
    """Bad amount, leg count, limits, or missing fields. Raised before any write."""


class AccountError(EngineError):
    status_code = status.HTTP_403_FORBIDDEN


class AccountNotFound(AccountError):
    status_code = status.HTTP_404_NOT_FOUND


class MarketError(EngineError):
    """Match or market cannot take the wager."""


class MatchNotFound(MarketError):
    status_code = status.HTTP_404_NOT_FOUND


class MarketClosed(MarketError):
    pass


class SelectionUnavailable(MarketError):
    pass


class OddsChanged(MarketError):
    status_code = status.HTTP_409_CONFLICT


class InsufficientFunds(EngineError):
    pass


class BalanceConflict(EngineError):
    """Optimistic balance update lost every retry to concurrent writers."""

    status_code = status.HTTP_409_CONFLICT


class AtomicityUnavailable(Exception):
    """The store refused a multi-document transaction. Never leaves the atomic scope."""


class ProviderError(Exception):
    """External odds/scores provider failed (timeout, non-2xx, open circuit)."""


class BudgetExhausted(ProviderError):
    pass


class SettlementPartialFailure(Exception):
    """Some bets of a settlement batch failed; they stay pending for the next pass."""

    def __init__(self, match_id: str, failures: dict[str, str]) -> None:
        super().__init__(f"{len(failures)} bet(s) failed to settle for match {match_id}")
        self.match_id = match_id
        self.failures = failures
