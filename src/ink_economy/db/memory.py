from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Dict, Iterable, List, Mapping, Optional

from .base import BaseDBManager
from ..errors import ConflictError, DuplicateActiveSessionError, NotFoundError
from ..models.account import Account, AccountRole, PermissionTier
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.order import Order, OrderStatus
from ..models.package import InkPackage
from ..models.session import GradingSession, SessionStatus


class InMemoryDBManager(BaseDBManager):
    """
    Simple in-memory implementation used for tests and local development.
    NOT suitable for production, but exercises the abstraction and services.

    Records are copied on the way in and out so callers never share state
    with the store, mirroring what a real backend does.
    """

    def __init__(self) -> None:
        self._accounts: Dict[str, Account] = {}
        self._ledger: List[LedgerEntry] = []
        self._orders: Dict[str, Order] = {}
        self._sessions: Dict[str, GradingSession] = {}
        self._packages: Dict[str, InkPackage] = {}
        self._id_counter: int = 0

    def _next_id(self) -> str:
        self._id_counter += 1
        return str(self._id_counter)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # In-memory backend cannot provide real rollback; this is a no-op.
        yield

    # Accounts
    async def add_account(self, account: Account) -> Account:
        if account.id in self._accounts:
            raise ConflictError("account already exists", details={"account_id": account.id})
        self._accounts[account.id] = account.model_copy(deep=True)
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def list_accounts(self) -> Iterable[Account]:
        accounts = sorted(self._accounts.values(), key=lambda a: a.created_at, reverse=True)
        return [a.model_copy(deep=True) for a in accounts]

    async def update_account_profile(
        self,
        account_id: str,
        *,
        role: Optional[AccountRole] = None,
        permission_tier: Optional[PermissionTier] = None,
        admin_note: Optional[str] = None,
        updated_at: datetime,
    ) -> Account:
        account = self._require_account(account_id)
        if role is not None:
            account.role = role
        if permission_tier is not None:
            account.permission_tier = permission_tier
        if admin_note is not None:
            account.admin_note = admin_note
        account.updated_at = updated_at
        return account.model_copy(deep=True)

    async def swap_account_balance(
        self, account_id: str, new_balance: int, updated_at: datetime
    ) -> int:
        account = self._require_account(account_id)
        previous = account.balance
        account.balance = new_balance
        account.updated_at = updated_at
        return previous

    def _require_account(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return account

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        if entry.id is None:
            entry = entry.model_copy(update={"id": self._next_id()})
        self._ledger.append(entry)
        return entry

    async def find_ledger_entries(
        self,
        account_id: str,
        reason: LedgerReason,
        metadata_match: Optional[Mapping[str, Any]] = None,
    ) -> Iterable[LedgerEntry]:
        match = dict(metadata_match or {})
        found = []
        for entry in self._ledger:
            if entry.account_id != account_id or entry.reason != reason:
                continue
            document = entry.metadata_document()
            if all(document.get(key) == value for key, value in match.items()):
                found.append(entry)
        return found

    async def find_ledger_entry_by_idempotency_key(
        self, account_id: str, idempotency_key: str
    ) -> Optional[LedgerEntry]:
        for entry in self._ledger:
            if entry.account_id == account_id and entry.idempotency_key == idempotency_key:
                return entry
        return None

    async def get_ledger_entries(self, account_id: str) -> Iterable[LedgerEntry]:
        return [e for e in self._ledger if e.account_id == account_id]

    async def sum_ledger_deltas(self, account_id: str) -> int:
        return sum(e.delta for e in self._ledger if e.account_id == account_id)

    # Orders
    async def add_order(self, order: Order) -> Order:
        if order.id is None:
            order.id = self._next_id()
        self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def find_order_by_provider_txn(
        self, provider: str, provider_txn_id: str
    ) -> Optional[Order]:
        for order in self._orders.values():
            if order.provider == provider and order.provider_txn_id == provider_txn_id:
                return order.model_copy(deep=True)
        return None

    async def list_orders(self, account_id: Optional[str] = None) -> Iterable[Order]:
        orders = [
            o for o in self._orders.values() if account_id is None or o.account_id == account_id
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in orders]

    async def set_order_status(
        self, order_id: str, status: OrderStatus, updated_at: datetime
    ) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError("order not found", details={"order_id": order_id})
        order.status = status
        order.updated_at = updated_at
        return order.model_copy(deep=True)

    async def list_pending_orders_before(self, cutoff: datetime) -> Iterable[Order]:
        return [
            o.model_copy(deep=True)
            for o in self._orders.values()
            if o.status == OrderStatus.PENDING and o.created_at < cutoff
        ]

    async def cancel_pending_orders_before(
        self,
        cutoff: datetime,
        updated_at: datetime,
        exclude_ids: Collection[str] = (),
    ) -> int:
        cancelled = 0
        for order in self._orders.values():
            if order.id in exclude_ids:
                continue
            if order.status == OrderStatus.PENDING and order.created_at < cutoff:
                order.status = OrderStatus.CANCELLED
                order.updated_at = updated_at
                cancelled += 1
        return cancelled

    # Sessions
    async def add_session(self, session: GradingSession) -> GradingSession:
        for existing in self._sessions.values():
            if (
                existing.account_id == session.account_id
                and existing.status == SessionStatus.ACTIVE
            ):
                raise DuplicateActiveSessionError(
                    "account already holds an active session",
                    details={"account_id": session.account_id, "session_id": existing.id},
                )
        if session.id is None:
            session.id = self._next_id()
        self._sessions[session.id] = session.model_copy(deep=True)
        return session

    async def get_session(self, session_id: str) -> Optional[GradingSession]:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def get_latest_active_session(
        self, account_id: str
    ) -> Optional[GradingSession]:
        active = [
            s
            for s in self._sessions.values()
            if s.account_id == account_id and s.status == SessionStatus.ACTIVE
        ]
        if not active:
            return None
        latest = max(active, key=lambda s: s.started_at)
        return latest.model_copy(deep=True)

    async def touch_session(self, session_id: str, at: datetime) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity_at = at

    async def transition_session(
        self,
        session_id: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        at: datetime,
    ) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status != from_status:
            return False
        session.status = to_status
        session.closed_at = at
        return True

    # Packages
    async def add_package(self, package: InkPackage) -> InkPackage:
        if package.id is None:
            package.id = self._next_id()
        self._packages[package.id] = package.model_copy(deep=True)
        return package

    async def update_package(self, package: InkPackage) -> InkPackage:
        if package.id is None or package.id not in self._packages:
            raise NotFoundError("package not found", details={"package_id": package.id})
        self._packages[package.id] = package.model_copy(deep=True)
        return package

    async def delete_package(self, package_id: str) -> None:
        self._packages.pop(package_id, None)

    async def get_package(self, package_id: str) -> Optional[InkPackage]:
        package = self._packages.get(package_id)
        return package.model_copy(deep=True) if package else None

    async def list_packages(self) -> Iterable[InkPackage]:
        return [p.model_copy(deep=True) for p in self._packages.values()]
