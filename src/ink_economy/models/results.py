from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, computed_field

from .account import Account
from .ledger import LedgerEntry
from .order import Order
from .usage import CostBreakdown


class BalanceWrite(BaseModel):
    """Outcome of a balance cache write; `before` is the value replaced."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    before: int
    after: int

    @property
    def delta(self) -> int:
        return self.after - self.before


class BalanceChange(BaseModel):
    """
    A balance write paired with its ledger append.

    `applied` is False when the balance was written but the ledger append
    failed; the cached balance and the ledger then disagree by `delta`.
    """

    account_id: str
    balance_before: int
    balance_after: int
    applied: bool = True
    entry: Optional[LedgerEntry] = None

    @property
    def delta(self) -> int:
        return self.balance_after - self.balance_before


class UsageCharge(BaseModel):
    charged_credits: int
    balance_before: int
    balance_after: int
    applied: bool
    breakdown: CostBreakdown
    replayed: bool = False
    entry_id: Optional[str] = None


class SessionSettlement(BaseModel):
    charged_credits: int
    balance_before: int
    balance_after: int
    applied: bool


class OrderSettlement(BaseModel):
    order: Order
    credited: bool
    balance_after: Optional[int] = None


class ReconciliationReport(BaseModel):
    account_id: str
    cached_balance: int
    ledger_total: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_total


class SessionClose(BaseModel):
    session_id: str
    already_closed: bool
    settlement: Optional[SessionSettlement] = None


class AccountPatch(BaseModel):
    account: Account
    balance_change: Optional[BalanceChange] = None
    replayed: bool = False
