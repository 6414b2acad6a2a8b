from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .base import DBSerializableModel, utcnow


class LedgerReason(str, Enum):
    ORDER_PAID = "order_paid"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    ADMIN_SET_BALANCE = "admin_set_balance"
    AI_USAGE_CHARGE = "ai_usage_charge"
    SESSION_SETTLEMENT = "session_settlement"
    SIGNUP_GRANT = "signup_grant"


class _AuditMetadata(BaseModel):
    """
    Fields shared by every audit payload. Persisted keys are camelCase;
    `before`, `after` and `orderId` are matched by idempotency lookups.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    before: int
    after: int
    actor_id: Optional[str] = None


class OrderPaidMetadata(_AuditMetadata):
    reason: Literal["order_paid"] = "order_paid"
    order_id: str
    provider: str
    provider_txn_id: Optional[str] = None
    trade_no: Optional[str] = None
    amount_due: int
    base_credits: int
    bonus_credits: int
    total_credits: int
    package_id: Optional[str] = None
    package_label: Optional[str] = None
    package_description: Optional[str] = None


class AdminAdjustmentMetadata(_AuditMetadata):
    reason: Literal["admin_adjustment"] = "admin_adjustment"
    requested_delta: int
    note: Optional[str] = None


class AdminSetBalanceMetadata(_AuditMetadata):
    reason: Literal["admin_set_balance"] = "admin_set_balance"
    requested_balance: int
    note: Optional[str] = None


class UsageChargeMetadata(_AuditMetadata):
    reason: Literal["ai_usage_charge"] = "ai_usage_charge"
    session_id: Optional[str] = None
    model: Optional[str] = None
    input_tokens: int
    output_tokens: int
    total_tokens: int
    usd: str
    local: str
    rounded: int
    fee: int


class SessionSettlementMetadata(_AuditMetadata):
    reason: Literal["session_settlement"] = "session_settlement"
    session_id: str
    started_at: datetime
    expires_at: datetime


class SignupGrantMetadata(_AuditMetadata):
    reason: Literal["signup_grant"] = "signup_grant"


LedgerMetadata = Annotated[
    Union[
        OrderPaidMetadata,
        AdminAdjustmentMetadata,
        AdminSetBalanceMetadata,
        UsageChargeMetadata,
        SessionSettlementMetadata,
        SignupGrantMetadata,
    ],
    Field(discriminator="reason"),
]


class LedgerEntry(DBSerializableModel):
    """
    One immutable, signed balance change. Rows are only ever appended.
    """

    model_config = ConfigDict(frozen=True)

    collection_name: ClassVar[str] = "ink_ledger"
    indexes: ClassVar[tuple[tuple[str, ...], ...]] = (
        ("account_id", "reason"),
        ("account_id", "idempotency_key"),
    )

    id: Optional[str] = Field(default=None)
    account_id: str
    delta: int
    reason: LedgerReason
    metadata: LedgerMetadata
    idempotency_key: Optional[str] = Field(
        default=None,
        description="Caller-supplied key; a second operation with the same key is a replay.",
    )
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _metadata_matches_reason(self) -> "LedgerEntry":
        if self.metadata.reason != self.reason.value:
            raise ValueError(
                f"metadata tagged {self.metadata.reason!r} cannot describe a {self.reason.value!r} entry"
            )
        if self.metadata.after - self.metadata.before != self.delta:
            raise ValueError("delta must equal metadata.after - metadata.before")
        return self

    def metadata_document(self) -> dict[str, Any]:
        return self.metadata.model_dump(mode="python", by_alias=True)
