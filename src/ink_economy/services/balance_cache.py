from __future__ import annotations

from datetime import datetime
from typing import Callable

from ..db.base import BaseDBManager
from ..errors import NotFoundError
from ..models.base import utcnow
from ..models.results import BalanceWrite


class BalanceCache:
    """
    The denormalized running total kept on the account record.

    `write` reports the balance it actually replaced, so the caller can pass
    the realized delta to the ledger even when another writer slipped in
    between its read and its write.
    """

    def __init__(self, db: BaseDBManager, clock: Callable[[], datetime] = utcnow) -> None:
        self._db = db
        self._clock = clock

    async def read(self, account_id: str) -> int:
        account = await self._db.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return account.balance

    async def write(self, account_id: str, new_balance: int) -> BalanceWrite:
        before = await self._db.swap_account_balance(account_id, new_balance, self._clock())
        return BalanceWrite(account_id=account_id, before=before, after=new_balance)
