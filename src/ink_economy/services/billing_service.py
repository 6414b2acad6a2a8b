from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..errors import ConflictError, InsufficientCreditsError, PersistenceError, ValidationError
from ..ledger.store import LedgerStore
from ..models.base import utcnow
from ..models.ledger import (
    LedgerEntry,
    LedgerMetadata,
    LedgerReason,
    SessionSettlementMetadata,
    UsageChargeMetadata,
)
from ..models.results import BalanceChange, SessionSettlement, UsageCharge
from ..models.session import GradingSession
from ..models.usage import UsageReport
from .balance_cache import BalanceCache
from .cost_calculator import DEFAULT_RATES, PricingRates, price_usage


logger = logging.getLogger(__name__)

MetadataFactory = Callable[[int, int], LedgerMetadata]


class BillingService:
    """
    Billing primitives shared by usage charging, session settlement, order
    crediting and admin corrections.

    Every balance change is a balance write followed by a ledger append of
    the realized delta. The two writes are not atomic: when the append fails
    the balance write stands and the result says `applied=False`.
    """

    def __init__(
        self,
        db: BaseDBManager,
        ledger: LedgerStore,
        balances: BalanceCache,
        rates: PricingRates = DEFAULT_RATES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._balances = balances
        self._rates = rates
        self._clock = clock

    @property
    def balances(self) -> BalanceCache:
        return self._balances

    @property
    def ledger(self) -> LedgerStore:
        return self._ledger

    async def record_balance_change(
        self,
        account_id: str,
        compute_balance: Callable[[int], int],
        reason: LedgerReason,
        build_metadata: MetadataFactory,
        idempotency_key: Optional[str] = None,
    ) -> BalanceChange:
        """
        Write `compute_balance(current)` and append one ledger row carrying
        `after - before` as observed by the write. A realized delta of zero
        appends nothing.
        """
        current = await self._balances.read(account_id)
        target = compute_balance(current)

        async with self._db.transaction():
            write = await self._balances.write(account_id, target)
            if write.delta == 0:
                return BalanceChange(
                    account_id=account_id,
                    balance_before=write.before,
                    balance_after=write.after,
                )

            try:
                entry = await self._ledger.append(
                    account_id=account_id,
                    delta=write.delta,
                    reason=reason,
                    metadata=build_metadata(write.before, write.after),
                    idempotency_key=idempotency_key,
                    created_at=self._clock(),
                )
            except PersistenceError as exc:
                logger.error(
                    "Ledger append failed after balance write; cached balance now drifts from ledger",
                    extra={
                        "account_id": account_id,
                        "reason": reason.value,
                        "delta": write.delta,
                        "error": exc.message,
                    },
                )
                return BalanceChange(
                    account_id=account_id,
                    balance_before=write.before,
                    balance_after=write.after,
                    applied=False,
                )

        return BalanceChange(
            account_id=account_id,
            balance_before=write.before,
            balance_after=write.after,
            entry=entry,
        )

    async def find_replay(
        self, account_id: str, idempotency_key: Optional[str], reasons: tuple[LedgerReason, ...]
    ) -> Optional[LedgerEntry]:
        """
        Ledger row previously written under `idempotency_key`, if any. A key
        reused for a different kind of operation is a conflict.
        """
        if not idempotency_key:
            return None
        entry = await self._ledger.find_by_idempotency_key(account_id, idempotency_key)
        if entry is not None and entry.reason not in reasons:
            raise ConflictError(
                "idempotency key already used for a different operation",
                details={"idempotency_key": idempotency_key, "reason": entry.reason.value},
            )
        return entry

    async def ensure_can_use(self, account_id: str) -> int:
        """Gate for new usage: refuse when the balance is already at or below zero."""
        balance = await self._balances.read(account_id)
        if balance <= 0:
            raise InsufficientCreditsError(
                "insufficient ink for new usage", details={"balance": balance}
            )
        return balance

    async def charge_for_usage(
        self,
        account_id: str,
        usage: UsageReport,
        session_id: Optional[str] = None,
        model: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> UsageCharge:
        """
        Meter a completed inference call. The charge is applied even if it
        overdraws the balance.
        """
        breakdown = price_usage(usage, self._rates)

        previous = await self.find_replay(
            account_id, idempotency_key, (LedgerReason.AI_USAGE_CHARGE,)
        )
        if previous is not None:
            return UsageCharge(
                charged_credits=-previous.delta,
                balance_before=previous.metadata.before,
                balance_after=previous.metadata.after,
                applied=True,
                breakdown=breakdown,
                replayed=True,
                entry_id=previous.id,
            )

        if session_id is not None:
            session = await self._db.get_session(session_id)
            if session is None or session.account_id != account_id:
                # Charge the account, but never attribute usage to a session it does not own.
                logger.warning(
                    "Usage names a session the account does not own",
                    extra={"account_id": account_id, "session_id": session_id},
                )
                session_id = None
            else:
                await self._db.touch_session(session_id, self._clock())

        if breakdown.charge == 0:
            balance = await self._balances.read(account_id)
            return UsageCharge(
                charged_credits=0,
                balance_before=balance,
                balance_after=balance,
                applied=True,
                breakdown=breakdown,
            )

        def metadata(before: int, after: int) -> UsageChargeMetadata:
            return UsageChargeMetadata(
                before=before,
                after=after,
                session_id=session_id,
                model=model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                total_tokens=usage.effective_total,
                usd=str(breakdown.usd),
                local=str(breakdown.local),
                rounded=breakdown.rounded,
                fee=breakdown.fee,
            )

        change = await self.record_balance_change(
            account_id,
            lambda balance: balance - breakdown.charge,
            LedgerReason.AI_USAGE_CHARGE,
            metadata,
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Usage charged",
            extra={
                "account_id": account_id,
                "charge": breakdown.charge,
                "balance_after": change.balance_after,
                "applied": change.applied,
            },
        )
        return UsageCharge(
            charged_credits=breakdown.charge,
            balance_before=change.balance_before,
            balance_after=change.balance_after,
            applied=change.applied,
            breakdown=breakdown,
            entry_id=change.entry.id if change.entry else None,
        )

    async def charge_session_residual(
        self, session: GradingSession, residual: int
    ) -> SessionSettlement:
        """
        Apply a session-scoped residual charge at most once per session: an
        existing settlement row for the session is reported instead of
        charging again.
        """
        if session.id is None:
            raise ValidationError("session has no id")
        previous = await self._ledger.query(
            session.account_id,
            LedgerReason.SESSION_SETTLEMENT,
            {"sessionId": session.id},
        )
        if previous:
            entry = previous[0]
            return SessionSettlement(
                charged_credits=-entry.delta,
                balance_before=entry.metadata.before,
                balance_after=entry.metadata.after,
                applied=True,
            )

        if residual <= 0:
            balance = await self._balances.read(session.account_id)
            return SessionSettlement(
                charged_credits=0, balance_before=balance, balance_after=balance, applied=True
            )

        change = await self.record_balance_change(
            session.account_id,
            lambda balance: balance - residual,
            LedgerReason.SESSION_SETTLEMENT,
            lambda before, after: SessionSettlementMetadata(
                before=before,
                after=after,
                session_id=session.id,
                started_at=session.started_at,
                expires_at=session.expires_at,
            ),
        )
        return SessionSettlement(
            charged_credits=residual,
            balance_before=change.balance_before,
            balance_after=change.balance_after,
            applied=change.applied,
        )
