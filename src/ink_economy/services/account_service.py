from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..errors import ConflictError, NotFoundError
from ..models.account import Account, AccountRole
from ..models.base import utcnow
from ..models.ledger import LedgerReason, SignupGrantMetadata
from .billing_service import BillingService


logger = logging.getLogger(__name__)


class AccountService:
    """
    Provisions ink accounts for identities vouched for by the authentication
    collaborator. The opening grant goes through the ledger like any other
    balance change, so a fresh account's ledger sums to its balance.
    """

    def __init__(
        self,
        db: BaseDBManager,
        billing: BillingService,
        welcome_credits: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._billing = billing
        self._welcome_credits = welcome_credits
        self._clock = clock

    async def get_account(self, account_id: str) -> Account:
        account = await self._db.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return account

    async def ensure_account(
        self, account_id: str, role: Optional[AccountRole] = None
    ) -> Account:
        existing = await self._db.get_account(account_id)
        if existing is not None:
            return existing

        now = self._clock()
        account = Account(
            id=account_id,
            role=role or AccountRole.USER,
            balance=0,
            created_at=now,
            updated_at=now,
        )
        try:
            await self._db.add_account(account)
        except ConflictError:
            # Another request provisioned the account first; it owns the grant.
            return await self.get_account(account_id)

        if self._welcome_credits > 0:
            await self._billing.record_balance_change(
                account_id,
                lambda balance: balance + self._welcome_credits,
                LedgerReason.SIGNUP_GRANT,
                lambda before, after: SignupGrantMetadata(before=before, after=after),
            )
        logger.info("Account provisioned", extra={"account_id": account_id})
        return await self.get_account(account_id)
