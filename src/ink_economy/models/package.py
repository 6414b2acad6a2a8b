from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class InkPackage(DBSerializableModel):
    """
    Purchasable credit pack definition shared across accounts.
    """

    collection_name: ClassVar[str] = "ink_packages"

    id: Optional[str] = Field(default=None)
    base_credits: int = Field(description="Credits granted by the pack before any bonus.")
    bonus_credits: int = 0
    label: str
    description: Optional[str] = None
    starts_at: Optional[datetime] = Field(
        default=None, description="Start of the sale window; open when unset."
    )
    ends_at: Optional[datetime] = Field(
        default=None, description="End of the sale window; open when unset."
    )
    sort_order: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_purchasable(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.starts_at is not None and now < self.starts_at:
            return False
        if self.ends_at is not None and now >= self.ends_at:
            return False
        return True
