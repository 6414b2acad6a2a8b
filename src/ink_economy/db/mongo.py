from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Collection, Dict, Iterable, Iterator, Mapping, Optional, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import BaseDBManager
from ..errors import ConflictError, DuplicateActiveSessionError, NotFoundError, PersistenceError
from ..models.account import Account, AccountRole, PermissionTier
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.order import Order, OrderStatus
from ..models.package import InkPackage
from ..models.session import GradingSession, SessionStatus


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_ACTIVE_SESSION_INDEX = "one_active_session_per_account"


@contextmanager
def _driver_errors(operation: str) -> Iterator[None]:
    """Translate driver failures into PersistenceError at the adapter boundary."""
    try:
        yield
    except PersistenceError:
        raise
    except PyMongoError as exc:
        logger.error("MongoDB %s failed: %s", operation, exc)
        raise PersistenceError(f"{operation} failed", details={"driver_error": str(exc)}) from exc


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the services agnostic of
    MongoDB specifics.

    "At most one active session per account" is enforced by a partial unique
    index, so two racing `start()` calls cannot both insert. The
    `transaction()` context manager is a no-op: balance writes and ledger
    appends remain two single-document writes.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    async def ensure_indexes(self) -> None:
        with _driver_errors("index creation"):
            for model in (Account, LedgerEntry, Order, GradingSession, InkPackage):
                col = self._db[model.collection_name]
                for fields in model.indexes:
                    await col.create_index([(name, ASCENDING) for name in fields])
            await self._db[GradingSession.collection_name].create_index(
                [("account_id", ASCENDING)],
                name=_ACTIVE_SESSION_INDEX,
                unique=True,
                partialFilterExpression={"status": SessionStatus.ACTIVE.value},
            )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        # Single-document writes are atomic in MongoDB; no multi-document
        # transaction is opened here.
        yield

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = data.get("id") or uuid4().hex
        data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    def _decode_all(self, model_cls: Type[TModel], docs: Iterable[Mapping[str, Any]]) -> list[TModel]:
        return [m for m in (self._decode(model_cls, d) for d in docs) if m is not None]

    # Accounts
    async def add_account(self, account: Account) -> Account:
        col = self._db[Account.collection_name]
        try:
            with _driver_errors("account insert"):
                await col.insert_one(self._prepare_insert(account))
        except PersistenceError as exc:
            if isinstance(exc.__cause__, DuplicateKeyError):
                raise ConflictError(
                    "account already exists", details={"account_id": account.id}
                ) from exc.__cause__
            raise
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        col = self._db[Account.collection_name]
        with _driver_errors("account read"):
            doc = await col.find_one({"_id": account_id})
        return self._decode(Account, doc)

    async def list_accounts(self) -> Iterable[Account]:
        col = self._db[Account.collection_name]
        with _driver_errors("account list"):
            docs = await col.find({}).sort("created_at", DESCENDING).to_list(length=None)
        return self._decode_all(Account, docs)

    async def update_account_profile(
        self,
        account_id: str,
        *,
        role: Optional[AccountRole] = None,
        permission_tier: Optional[PermissionTier] = None,
        admin_note: Optional[str] = None,
        updated_at: datetime,
    ) -> Account:
        updates: Dict[str, Any] = {"updated_at": updated_at}
        if role is not None:
            updates["role"] = role.value
        if permission_tier is not None:
            updates["permission_tier"] = permission_tier.value
        if admin_note is not None:
            updates["admin_note"] = admin_note

        col = self._db[Account.collection_name]
        with _driver_errors("account update"):
            doc = await col.find_one_and_update(
                {"_id": account_id},
                {"$set": updates},
                return_document=ReturnDocument.AFTER,
            )
        account = self._decode(Account, doc)
        if account is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return account

    async def swap_account_balance(
        self, account_id: str, new_balance: int, updated_at: datetime
    ) -> int:
        col = self._db[Account.collection_name]
        with _driver_errors("balance write"):
            doc = await col.find_one_and_update(
                {"_id": account_id},
                {"$set": {"balance": new_balance, "updated_at": updated_at}},
                projection={"balance": True},
                return_document=ReturnDocument.BEFORE,
            )
        if doc is None:
            raise NotFoundError("account not found", details={"account_id": account_id})
        return int(doc.get("balance", 0))

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        data = self._prepare_insert(entry)
        with _driver_errors("ledger append"):
            await col.insert_one(data)
        return entry.model_copy(update={"id": data["id"]})

    async def find_ledger_entries(
        self,
        account_id: str,
        reason: LedgerReason,
        metadata_match: Optional[Mapping[str, Any]] = None,
    ) -> Iterable[LedgerEntry]:
        query: Dict[str, Any] = {"account_id": account_id, "reason": reason.value}
        for key, value in (metadata_match or {}).items():
            query[f"metadata.{key}"] = value
        col = self._db[LedgerEntry.collection_name]
        with _driver_errors("ledger query"):
            docs = await col.find(query).sort("created_at", ASCENDING).to_list(length=None)
        return self._decode_all(LedgerEntry, docs)

    async def find_ledger_entry_by_idempotency_key(
        self, account_id: str, idempotency_key: str
    ) -> Optional[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        with _driver_errors("ledger query"):
            doc = await col.find_one(
                {"account_id": account_id, "idempotency_key": idempotency_key}
            )
        return self._decode(LedgerEntry, doc)

    async def get_ledger_entries(self, account_id: str) -> Iterable[LedgerEntry]:
        col = self._db[LedgerEntry.collection_name]
        with _driver_errors("ledger read"):
            docs = (
                await col.find({"account_id": account_id})
                .sort("created_at", ASCENDING)
                .to_list(length=None)
            )
        return self._decode_all(LedgerEntry, docs)

    async def sum_ledger_deltas(self, account_id: str) -> int:
        col = self._db[LedgerEntry.collection_name]
        pipeline = [
            {"$match": {"account_id": account_id}},
            {"$group": {"_id": None, "total": {"$sum": "$delta"}}},
        ]
        with _driver_errors("ledger sum"):
            rows = await col.aggregate(pipeline).to_list(length=1)
        return int(rows[0]["total"]) if rows else 0

    # Orders
    async def add_order(self, order: Order) -> Order:
        col = self._db[Order.collection_name]
        data = self._prepare_insert(order)
        with _driver_errors("order insert"):
            await col.insert_one(data)
        order.id = data["id"]
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        col = self._db[Order.collection_name]
        with _driver_errors("order read"):
            doc = await col.find_one({"_id": order_id})
        return self._decode(Order, doc)

    async def find_order_by_provider_txn(
        self, provider: str, provider_txn_id: str
    ) -> Optional[Order]:
        col = self._db[Order.collection_name]
        with _driver_errors("order read"):
            doc = await col.find_one(
                {"provider": provider, "provider_txn_id": provider_txn_id}
            )
        return self._decode(Order, doc)

    async def list_orders(self, account_id: Optional[str] = None) -> Iterable[Order]:
        query: Dict[str, Any] = {} if account_id is None else {"account_id": account_id}
        col = self._db[Order.collection_name]
        with _driver_errors("order list"):
            docs = await col.find(query).sort("created_at", DESCENDING).to_list(length=None)
        return self._decode_all(Order, docs)

    async def set_order_status(
        self, order_id: str, status: OrderStatus, updated_at: datetime
    ) -> Order:
        col = self._db[Order.collection_name]
        with _driver_errors("order status update"):
            doc = await col.find_one_and_update(
                {"_id": order_id},
                {"$set": {"status": status.value, "updated_at": updated_at}},
                return_document=ReturnDocument.AFTER,
            )
        order = self._decode(Order, doc)
        if order is None:
            raise NotFoundError("order not found", details={"order_id": order_id})
        return order

    async def list_pending_orders_before(self, cutoff: datetime) -> Iterable[Order]:
        col = self._db[Order.collection_name]
        with _driver_errors("pending order read"):
            docs = await col.find(
                {"status": OrderStatus.PENDING.value, "created_at": {"$lt": cutoff}}
            ).to_list(length=None)
        return self._decode_all(Order, docs)

    async def cancel_pending_orders_before(
        self,
        cutoff: datetime,
        updated_at: datetime,
        exclude_ids: Collection[str] = (),
    ) -> int:
        query: Dict[str, Any] = {
            "status": OrderStatus.PENDING.value,
            "created_at": {"$lt": cutoff},
        }
        if exclude_ids:
            query["_id"] = {"$nin": list(exclude_ids)}
        col = self._db[Order.collection_name]
        with _driver_errors("pending order expiry"):
            result = await col.update_many(
                query,
                {"$set": {"status": OrderStatus.CANCELLED.value, "updated_at": updated_at}},
            )
        return result.modified_count

    # Sessions
    async def add_session(self, session: GradingSession) -> GradingSession:
        col = self._db[GradingSession.collection_name]
        data = self._prepare_insert(session)
        try:
            with _driver_errors("session insert"):
                await col.insert_one(data)
        except PersistenceError as exc:
            if isinstance(exc.__cause__, DuplicateKeyError):
                raise DuplicateActiveSessionError(
                    "account already holds an active session",
                    details={"account_id": session.account_id},
                ) from exc.__cause__
            raise
        session.id = data["id"]
        return session

    async def get_session(self, session_id: str) -> Optional[GradingSession]:
        col = self._db[GradingSession.collection_name]
        with _driver_errors("session read"):
            doc = await col.find_one({"_id": session_id})
        return self._decode(GradingSession, doc)

    async def get_latest_active_session(
        self, account_id: str
    ) -> Optional[GradingSession]:
        col = self._db[GradingSession.collection_name]
        with _driver_errors("session read"):
            docs = (
                await col.find(
                    {"account_id": account_id, "status": SessionStatus.ACTIVE.value}
                )
                .sort("started_at", DESCENDING)
                .limit(1)
                .to_list(length=1)
            )
        return self._decode(GradingSession, docs[0]) if docs else None

    async def touch_session(self, session_id: str, at: datetime) -> None:
        col = self._db[GradingSession.collection_name]
        with _driver_errors("session touch"):
            await col.update_one({"_id": session_id}, {"$set": {"last_activity_at": at}})

    async def transition_session(
        self,
        session_id: str,
        from_status: SessionStatus,
        to_status: SessionStatus,
        at: datetime,
    ) -> bool:
        col = self._db[GradingSession.collection_name]
        with _driver_errors("session transition"):
            result = await col.update_one(
                {"_id": session_id, "status": from_status.value},
                {"$set": {"status": to_status.value, "closed_at": at}},
            )
        return result.modified_count == 1

    # Packages
    async def add_package(self, package: InkPackage) -> InkPackage:
        col = self._db[InkPackage.collection_name]
        data = self._prepare_insert(package)
        with _driver_errors("package insert"):
            await col.insert_one(data)
        package.id = data["id"]
        return package

    async def update_package(self, package: InkPackage) -> InkPackage:
        if not package.id:
            raise NotFoundError("package not found", details={"package_id": None})
        col = self._db[InkPackage.collection_name]
        data = self._prepare_insert(package)
        with _driver_errors("package update"):
            result = await col.replace_one({"_id": package.id}, data, upsert=False)
        if result.matched_count == 0:
            raise NotFoundError("package not found", details={"package_id": package.id})
        return package

    async def delete_package(self, package_id: str) -> None:
        col = self._db[InkPackage.collection_name]
        with _driver_errors("package delete"):
            await col.delete_one({"_id": package_id})

    async def get_package(self, package_id: str) -> Optional[InkPackage]:
        col = self._db[InkPackage.collection_name]
        with _driver_errors("package read"):
            doc = await col.find_one({"_id": package_id})
        return self._decode(InkPackage, doc)

    async def list_packages(self) -> Iterable[InkPackage]:
        col = self._db[InkPackage.collection_name]
        with _driver_errors("package list"):
            docs = await col.find({}).to_list(length=None)
        return self._decode_all(InkPackage, docs)
