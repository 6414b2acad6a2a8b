from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from ..models.base import utcnow
from ..models.ledger import LedgerReason, OrderPaidMetadata
from ..models.order import Order, OrderStatus
from ..models.results import OrderSettlement
from .billing_service import BillingService
from .package_catalog import PackageCatalog


logger = logging.getLogger(__name__)


class OrderReconciler:
    """
    Turns purchase orders into credited balance changes exactly once.

    The guard is the ledger itself: an `order_paid` row whose metadata
    carries the order id means the order was credited, whatever the order's
    status field says. Crediting is therefore safe to retry, and a credited
    order can never be cancelled.
    """

    def __init__(
        self,
        db: BaseDBManager,
        billing: BillingService,
        catalog: PackageCatalog,
        pending_ttl_minutes: int = 30,
        price_per_credit: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._billing = billing
        self._catalog = catalog
        self._pending_ttl = timedelta(minutes=pending_ttl_minutes)
        self._price_per_credit = price_per_credit
        self._clock = clock

    async def create_order(
        self,
        account_id: str,
        package_id: str,
        provider: str = "manual",
        provider_txn_id: Optional[str] = None,
    ) -> Order:
        package = await self._catalog.get_package(package_id)
        now = self._clock()
        if not package.is_purchasable(now):
            raise ValidationError(
                "package is not currently on sale", details={"package_id": package_id}
            )
        provider = (provider or "").strip() or "manual"

        order = Order(
            account_id=account_id,
            base_credits=package.base_credits,
            bonus_credits=package.bonus_credits,
            amount_due=package.base_credits * self._price_per_credit,
            status=OrderStatus.PENDING,
            provider=provider,
            provider_txn_id=provider_txn_id,
            package_id=package.id,
            package_label=package.label,
            package_description=package.description,
            created_at=now,
            updated_at=now,
        )
        return await self._db.add_order(order)

    async def get_order(self, order_id: str) -> Order:
        order = await self._db.get_order(order_id)
        if order is None:
            raise NotFoundError("order not found", details={"order_id": order_id})
        return order

    async def list_orders(self, account_id: Optional[str] = None) -> list[Order]:
        """Lazily expire stale pending orders, then list newest first."""
        await self.expire_pending()
        return list(await self._db.list_orders(account_id))

    async def expire_pending(self, now: Optional[datetime] = None) -> int:
        """
        Cancel pending orders older than the TTL. A stale order that the
        ledger already credited is repaired to `paid` instead.
        """
        now = now or self._clock()
        cutoff = now - self._pending_ttl
        try:
            credited: list[str] = []
            for order in await self._db.list_pending_orders_before(cutoff):
                if await self.is_credited(order):
                    await self._db.set_order_status(order.id, OrderStatus.PAID, now)
                    credited.append(order.id)
                    logger.warning(
                        "Repaired credited order left pending", extra={"order_id": order.id}
                    )
            cancelled = await self._db.cancel_pending_orders_before(
                cutoff, now, exclude_ids=credited
            )
        except PersistenceError as exc:
            # Listing must still work; the next read retries the expiry.
            logger.warning("Expiring pending orders failed: %s", exc.message)
            return 0
        if cancelled:
            logger.info("Expired stale pending orders", extra={"count": cancelled})
        return cancelled

    async def is_credited(self, order: Order) -> bool:
        return await self._billing.ledger.exists(
            order.account_id, LedgerReason.ORDER_PAID, {"orderId": order.id}
        )

    async def mark_paid(
        self,
        order_id: str,
        actor_id: Optional[str] = None,
        trade_no: Optional[str] = None,
    ) -> OrderSettlement:
        order = await self.get_order(order_id)
        credited = False
        balance_after: Optional[int] = None

        if not await self.is_credited(order):
            total = order.total_credits

            def metadata(before: int, after: int) -> OrderPaidMetadata:
                return OrderPaidMetadata(
                    before=before,
                    after=after,
                    actor_id=actor_id,
                    order_id=order.id,
                    provider=order.provider,
                    provider_txn_id=order.provider_txn_id,
                    trade_no=trade_no,
                    amount_due=order.amount_due,
                    base_credits=order.base_credits,
                    bonus_credits=order.bonus_credits,
                    total_credits=total,
                    package_id=order.package_id,
                    package_label=order.package_label,
                    package_description=order.package_description,
                )

            change = await self._billing.record_balance_change(
                order.account_id,
                lambda balance: balance + total,
                LedgerReason.ORDER_PAID,
                metadata,
            )
            if not change.applied:
                raise PersistenceError(
                    "order credited but ledger append failed",
                    details={"order_id": order.id, "balance_after": change.balance_after},
                )
            credited = True
            balance_after = change.balance_after
            logger.info(
                "Order credited",
                extra={"order_id": order.id, "account_id": order.account_id, "credits": total},
            )

        # A crash before this point is repaired by a retry: the ledger guard
        # skips crediting and only the status is flipped.
        if order.status != OrderStatus.PAID:
            order = await self._db.set_order_status(order.id, OrderStatus.PAID, self._clock())

        return OrderSettlement(order=order, credited=credited, balance_after=balance_after)

    async def mark_cancelled(self, order_id: str) -> Order:
        order = await self.get_order(order_id)
        if await self.is_credited(order):
            raise ConflictError(
                "order has already been credited and cannot be cancelled",
                details={"order_id": order_id},
            )
        if order.status != OrderStatus.CANCELLED:
            order = await self._db.set_order_status(
                order.id, OrderStatus.CANCELLED, self._clock()
            )
            logger.info("Order cancelled", extra={"order_id": order.id})
        return order

    async def update_status(
        self, order_id: str, status: str, actor_id: Optional[str] = None
    ) -> OrderSettlement:
        """Admin status patch; only `paid` and `cancelled` are accepted."""
        if status == OrderStatus.PAID.value:
            return await self.mark_paid(order_id, actor_id=actor_id)
        if status == OrderStatus.CANCELLED.value:
            order = await self.mark_cancelled(order_id)
            return OrderSettlement(order=order, credited=False)
        raise ValidationError("invalid status", details={"status": status})

    async def confirm_provider_payment(
        self,
        provider: str,
        provider_txn_id: str,
        paid_amount: Optional[int] = None,
        trade_no: Optional[str] = None,
    ) -> OrderSettlement:
        """
        Payment-provider callback: locate the order by the provider's
        transaction id, check the paid amount, then credit it.
        """
        if not provider_txn_id:
            raise ValidationError("provider_txn_id is required")
        order = await self._db.find_order_by_provider_txn(provider, provider_txn_id)
        if order is None:
            raise NotFoundError(
                "order not found",
                details={"provider": provider, "provider_txn_id": provider_txn_id},
            )
        if paid_amount is not None and paid_amount != order.amount_due:
            raise ValidationError(
                "paid amount does not match order",
                details={"expected": order.amount_due, "received": paid_amount},
            )
        if order.status == OrderStatus.PAID:
            return OrderSettlement(order=order, credited=False)
        return await self.mark_paid(order.id, trade_no=trade_no)
