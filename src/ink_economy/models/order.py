from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class Order(DBSerializableModel):
    """
    A purchase of a credit pack. Package fields are snapshotted at creation
    so history stays accurate after the catalog changes.
    """

    collection_name: ClassVar[str] = "ink_orders"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "created_at"),
        ("provider", "provider_txn_id"),
        ("status", "created_at"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    base_credits: int
    bonus_credits: int = 0
    amount_due: int
    status: OrderStatus = OrderStatus.PENDING
    provider: str = "manual"
    provider_txn_id: Optional[str] = None
    package_id: Optional[str] = None
    package_label: Optional[str] = None
    package_description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_credits(self) -> int:
        return self.base_credits + max(self.bonus_credits, 0)
