from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Iterable, Mapping, Optional

from ..models.account import Account, AccountRole, PermissionTier
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.order import Order, OrderStatus
from ..models.package import InkPackage
from ..models.session import GradingSession, SessionStatus


class BaseDBManager(ABC):
    """
    Backend-agnostic async store for the ink economy.

    The ledger side is append-only: there is deliberately no method that
    updates or deletes a `LedgerEntry`. Balance writes go through
    `swap_account_balance`, which reports the value it replaced so callers
    can record the exact realized delta.
    """

    @abstractmethod
    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Atomic scope if the backend supports it. The bundled backends do not,
        so a balance write and its ledger append stay two separate writes.
        """
        yield

    async def ensure_indexes(self) -> None:
        """Create backend indexes and constraints; nothing to do by default."""

    # Accounts
    @abstractmethod
    async def add_account(self, account: Account) -> Account: ...

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]: ...

    @abstractmethod
    async def list_accounts(self) -> Iterable[Account]: ...

    @abstractmethod
    async def update_account_profile(
        self,
        account_id: str,
        *,
        role: Optional[AccountRole] = None,
        permission_tier: Optional[PermissionTier] = None,
        admin_note: Optional[str] = None,
        updated_at: datetime,
    ) -> Account:
        """Update non-balance fields only; `None` leaves a field unchanged."""
        ...

    @abstractmethod
    async def swap_account_balance(
        self, account_id: str, new_balance: int, updated_at: datetime
    ) -> int:
        """
        Atomically set the cached balance and return the balance it replaced.
        Raises NotFoundError for an unknown account.
        """
        ...

    # Ledger
    @abstractmethod
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry: ...

    @abstractmethod
    async def find_ledger_entries(
        self,
        account_id: str,
        reason: LedgerReason,
        metadata_match: Optional[Mapping[str, Any]] = None,
    ) -> Iterable[LedgerEntry]:
        """
        Entries for `account_id` with `reason` whose persisted metadata
        document has every key/value of `metadata_match`.
        """
        ...

    @abstractmethod
    async def find_ledger_entry_by_idempotency_key(
        self, account_id: str, idempotency_key: str
    ) -> Optional[LedgerEntry]: ...

    @abstractmethod
    async def get_ledger_entries(self, account_id: str) -> Iterable[LedgerEntry]: ...

    @abstractmethod
    async def sum_ledger_deltas(self, account_id: str) -> int: ...

    # Orders
    @abstractmethod
    async def add_order(self, order: Order) -> Order: ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]: ...

    @abstractmethod
    async def find_order_by_provider_txn(
        self, provider: str, provider_txn_id: str
    ) -> Optional[Order]: ...

    @abstractmethod
    async def list_orders(self, account_id: Optional[str] = None) -> Iterable[Order]:
        """Orders newest first, optionally restricted to one account."""
        ...

    @abstractmethod
    async def set_order_status(
        self, order_id: str, status: OrderStatus, updated_at: datetime
    ) -> Order: ...

    @abstractmethod
    async def list_pending_orders_before(self, cutoff: datetime) -> Iterable[Order]:
        """Pending orders created before `cutoff`."""
        ...

    @abstractmethod
    async def cancel_pending_orders_before(
        self,
        cutoff: datetime,
        updated_at: datetime,
        exclude_ids: Collection[str] = (),
    ) -> int:
        """
        Cancel every pending order created before `cutoff` whose id is not in
        `exclude_ids`; return the count.
        """
        ...

    # Sessions
    @abstractmethod
    async def add_session(self, session: GradingSession) -> GradingSession:
        """
        Insert an active session. Raises DuplicateActiveSessionError when the
        account already holds one.
        """
        ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[GradingSession]: ...

    @abstractmethod
    async def get_latest_active_session(
        self, account_id: str
    ) -> Optional[GradingSession]: ...

    @abstractmethod
    async def touch_session(self, session_id: str, at: datetime) -> None: ...

    @abstractmethod
    async def transition_session(
        self,
        session_id: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        at: datetime,
    ) -> bool:
        """
        Conditionally move a session between statuses. Returns False when the
        session was no longer in `from_status`.
        """
        ...

    # Packages
    @abstractmethod
    async def add_package(self, package: InkPackage) -> InkPackage: ...

    @abstractmethod
    async def update_package(self, package: InkPackage) -> InkPackage: ...

    @abstractmethod
    async def delete_package(self, package_id: str) -> None: ...

    @abstractmethod
    async def get_package(self, package_id: str) -> Optional[InkPackage]: ...

    @abstractmethod
    async def list_packages(self) -> Iterable[InkPackage]: ...
