from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class AccountRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


class PermissionTier(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"


class Account(DBSerializableModel):
    """
    An educator account as seen by the ink economy.

    `balance` is a materialized projection of the ledger; it may go negative
    because a single usage charge is allowed to overdraw.
    """

    collection_name: ClassVar[str] = "ink_accounts"

    id: str
    role: AccountRole = AccountRole.USER
    permission_tier: PermissionTier = PermissionTier.BASIC
    balance: int = 0
    admin_note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN
