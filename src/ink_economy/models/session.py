from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CLOSED = "closed"


class GradingSession(DBSerializableModel):
    """
    Time-boxed window that bounds and attributes metered grading usage.
    """

    collection_name: ClassVar[str] = "ink_sessions"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (("account_id", "status"),)

    id: Optional[str] = Field(default=None)
    account_id: str
    status: SessionStatus = SessionStatus.ACTIVE
    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    closed_at: Optional[datetime] = None

    def is_live(self, now: datetime) -> bool:
        return self.status == SessionStatus.ACTIVE and now < self.expires_at
