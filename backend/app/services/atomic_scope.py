"""
backend/app/services/atomic_scope.py

Purpose:
    Runs a multi-document mutation sequence (account + bet + ledger) as one
    unit. The executor is chosen once at startup from
    MONGO_TRANSACTIONS_ENABLED:

      AtomicExecutor      motor session + with_transaction
      SequentialExecutor  plain writes; registered compensations are replayed
                          in reverse order when the sequence fails

    If the server refuses transactions (standalone mongod), the atomic
    executor raises AtomicityUnavailable, the sequence is re-run on the
    sequential executor and the process stays in degraded mode. This trades
    atomicity for availability: a crash between two sequential writes can
    leave a half-applied sequence that only the compensation log and
    scripts.verify_ledger will surface.

Dependencies:
    - motor (client sessions)
    - pymongo.errors
    - app.database
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from pymongo.errors import ConfigurationError, OperationFailure

import app.database as _db
from app.config import settings
from app.services.errors import AtomicityUnavailable

logger = logging.getLogger("sportsbook.atomic_scope")

T = TypeVar("T")

# Server error codes meaning "this deployment cannot run multi-document transactions".
_TRANSACTIONS_UNAVAILABLE_CODES = frozenset({
    20,   # IllegalOperation: "Transaction numbers are only allowed on a replica set member or mongos"
    263,  # OperationNotSupportedInTransaction
})

Compensation = Callable[[], Awaitable[Any]]


@dataclass
class AtomicScope:
    """Handle passed to a unit of work. Writes must forward ``session``."""
    session: Any = None
    atomic: bool = False
    compensations: list[tuple[str, Compensation]] = field(default_factory=list)

    def on_rollback(self, label: str, compensation: Compensation) -> None:
        """Register an undo step. Only replayed by the sequential executor."""
        if not self.atomic:
            self.compensations.append((label, compensation))


def _transactions_unavailable(exc: Exception) -> bool:
    if isinstance(exc, ConfigurationError):
        return True
    if isinstance(exc, OperationFailure):
        return exc.code in _TRANSACTIONS_UNAVAILABLE_CODES
    return False


class SequentialExecutor:
    mode = "sequential"

    async def run(self, work: Callable[[AtomicScope], Awaitable[T]], *, label: str) -> T:
        scope = AtomicScope(session=None, atomic=False)
        try:
            return await work(scope)
        except Exception:
            await _compensate(scope, label)
            raise


class AtomicExecutor:
    mode = "atomic"

    async def run(self, work: Callable[[AtomicScope], Awaitable[T]], *, label: str) -> T:
        try:
            async with await _db.client.start_session() as session:
                scope = AtomicScope(session=session, atomic=True)

                async def _callback(_session) -> T:
                    return await work(scope)

                return await session.with_transaction(_callback)
        except (OperationFailure, ConfigurationError) as exc:
            if _transactions_unavailable(exc):
                raise AtomicityUnavailable(str(exc)) from exc
            raise


async def _compensate(scope: AtomicScope, label: str) -> None:
    for step, compensation in reversed(scope.compensations):
        try:
            await compensation()
        except Exception:
            # Money may be out of step with the ledger; verify_ledger will flag it.
            logger.critical("RECONCILE %s: compensation %r failed", label, step, exc_info=True)


class ScopeRunner:
    """Executor selected at startup, with a one-way fallback to sequential."""

    def __init__(self, transactions_enabled: bool) -> None:
        self._atomic = AtomicExecutor() if transactions_enabled else None
        self._sequential = SequentialExecutor()
        self.degraded = False

    @property
    def mode(self) -> str:
        if self._atomic is None:
            return SequentialExecutor.mode
        return "degraded" if self.degraded else AtomicExecutor.mode

    async def run(self, work: Callable[[AtomicScope], Awaitable[T]], *, label: str = "scope") -> T:
        if self._atomic is not None and not self.degraded:
            try:
                return await self._atomic.run(work, label=label)
            except AtomicityUnavailable as exc:
                self.degraded = True
                logger.warning(
                    "Transactions unavailable (%s); %s re-run without atomicity, degraded mode latched",
                    exc, label,
                )
        return await self._sequential.run(work, label=label)


_runner: ScopeRunner | None = None


def configure(transactions_enabled: bool | None = None) -> ScopeRunner:
    global _runner
    if transactions_enabled is None:
        transactions_enabled = settings.MONGO_TRANSACTIONS_ENABLED
    _runner = ScopeRunner(transactions_enabled)
    logger.info("Atomic scope executor: %s", _runner.mode)
    return _runner


def get_runner() -> ScopeRunner:
    if _runner is None:
        return configure()
    return _runner


async def run_in_scope(work: Callable[[AtomicScope], Awaitable[T]], *, label: str = "scope") -> T:
    return await get_runner().run(work, label=label)
