from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from ..db.base import BaseDBManager
from ..errors import NotFoundError, PersistenceError, ValidationError
from ..models.account import Account, AccountRole, PermissionTier
from ..models.base import utcnow
from ..models.ledger import (
    AdminAdjustmentMetadata,
    AdminSetBalanceMetadata,
    LedgerEntry,
    LedgerReason,
)
from ..models.results import AccountPatch, BalanceChange, ReconciliationReport
from .billing_service import BillingService


logger = logging.getLogger(__name__)

Number = Union[int, float]


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"invalid {field}", details={field: value}) from exc


def _finite(value: Number, field: str) -> Number:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(f"{field} must be a finite number", details={field: value})
    return value


def _requested_balance(value: Number) -> int:
    return math.floor(_finite(value, "balance"))


def _requested_delta(value: Number) -> int:
    value = _finite(value, "balance_delta")
    if value != int(value):
        raise ValidationError(
            "balance_delta must be a whole number", details={"balance_delta": value}
        )
    return int(value)


class AdminService:
    """
    Manual account corrections. Balance edits always go through the ledger;
    role, tier and note edits never do.
    """

    def __init__(
        self,
        db: BaseDBManager,
        billing: BillingService,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._billing = billing
        self._clock = clock

    async def list_accounts(self) -> list[Account]:
        return list(await self._db.list_accounts())

    async def get_account(self, account_id: str) -> Account:
        account = await self._db.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return account

    async def set_balance(
        self,
        account_id: str,
        value: Number,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> BalanceChange:
        requested = _requested_balance(value)
        return await self._billing.record_balance_change(
            account_id,
            lambda current: max(0, requested),
            LedgerReason.ADMIN_SET_BALANCE,
            lambda before, after: AdminSetBalanceMetadata(
                before=before,
                after=after,
                actor_id=actor_id,
                requested_balance=requested,
                note=note,
            ),
            idempotency_key=idempotency_key,
        )

    async def adjust_balance(
        self,
        account_id: str,
        delta: Number,
        actor_id: Optional[str] = None,
        note: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> BalanceChange:
        requested = _requested_delta(delta)
        return await self._billing.record_balance_change(
            account_id,
            lambda current: max(0, current + requested),
            LedgerReason.ADMIN_ADJUSTMENT,
            lambda before, after: AdminAdjustmentMetadata(
                before=before,
                after=after,
                actor_id=actor_id,
                requested_delta=requested,
                note=note,
            ),
            idempotency_key=idempotency_key,
        )

    async def patch_account(
        self,
        account_id: str,
        role: Optional[str] = None,
        permission_tier: Optional[str] = None,
        admin_note: Optional[str] = None,
        balance: Optional[Number] = None,
        balance_delta: Optional[Number] = None,
        actor_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> AccountPatch:
        """
        Apply an admin patch. When both `balance` and `balance_delta` are
        given the delta wins. The resulting balance is clamped at zero, and
        a ledger row is written only if the balance actually moved.

        Every input is validated, and the idempotency key checked, before
        anything is written.
        """
        next_role = _parse_enum(AccountRole, role, "role")
        next_tier = _parse_enum(PermissionTier, permission_tier, "permission_tier")
        requested_delta: Optional[int] = None
        requested_balance: Optional[int] = None
        if balance_delta is not None:
            requested_delta = _requested_delta(balance_delta)
        elif balance is not None:
            requested_balance = _requested_balance(balance)
        await self.get_account(account_id)

        replay = None
        if requested_delta is not None or requested_balance is not None:
            replay = await self._billing.find_replay(
                account_id,
                idempotency_key,
                (LedgerReason.ADMIN_ADJUSTMENT, LedgerReason.ADMIN_SET_BALANCE),
            )

        account = await self._db.update_account_profile(
            account_id,
            role=next_role,
            permission_tier=next_tier,
            admin_note=admin_note,
            updated_at=self._clock(),
        )

        if requested_delta is None and requested_balance is None:
            return AccountPatch(account=account)

        if replay is not None:
            return AccountPatch(
                account=await self.get_account(account_id),
                balance_change=BalanceChange(
                    account_id=account_id,
                    balance_before=replay.metadata.before,
                    balance_after=replay.metadata.after,
                    entry=replay,
                ),
                replayed=True,
            )

        if requested_delta is not None:
            change = await self.adjust_balance(
                account_id, requested_delta, actor_id, admin_note, idempotency_key
            )
        else:
            change = await self.set_balance(
                account_id, requested_balance, actor_id, admin_note, idempotency_key
            )

        if not change.applied:
            raise PersistenceError(
                "balance updated but ledger append failed",
                details={"account_id": account_id, "balance_after": change.balance_after},
            )
        logger.info(
            "Admin balance correction",
            extra={
                "account_id": account_id,
                "actor_id": actor_id,
                "delta": change.delta,
            },
        )
        return AccountPatch(account=await self.get_account(account_id), balance_change=change)

    async def ledger_history(self, account_id: str) -> Iterable[LedgerEntry]:
        await self.get_account(account_id)
        return await self._billing.ledger.history(account_id)

    async def reconcile(self, account_id: str) -> ReconciliationReport:
        """Compare the cached balance with the sum of ledger deltas."""
        cached = await self._billing.balances.read(account_id)
        total = await self._billing.ledger.total(account_id)
        report = ReconciliationReport(
            account_id=account_id, cached_balance=cached, ledger_total=total
        )
        if report.drift:
            logger.warning(
                "Balance drift detected",
                extra={"account_id": account_id, "drift": report.drift},
            )
        return report
