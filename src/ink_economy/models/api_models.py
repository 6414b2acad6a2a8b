from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt
from pydantic.alias_generators import to_camel

from .account import Account
from .ledger import LedgerEntry
from .order import Order
from .package import InkPackage
from .results import SessionSettlement, UsageCharge


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Requests


class SessionRequest(CamelModel):
    session_id: str = Field(min_length=1)


class UsageChargeRequest(CamelModel):
    input_tokens: NonNegativeInt
    output_tokens: NonNegativeInt
    total_tokens: Optional[NonNegativeInt] = None
    session_id: Optional[str] = None
    model: Optional[str] = None


class CreateOrderRequest(CamelModel):
    package_id: str = Field(min_length=1)
    provider: str = "manual"
    provider_txn_id: Optional[str] = None


class OrderStatusPatchRequest(CamelModel):
    order_id: str = Field(min_length=1)
    status: str


class ProviderConfirmationRequest(CamelModel):
    provider: str = Field(min_length=1)
    provider_txn_id: str = Field(min_length=1)
    paid_amount: Optional[int] = None
    trade_no: Optional[str] = None


class PackageCreateRequest(CamelModel):
    base_credits: PositiveInt
    label: str
    bonus_credits: NonNegativeInt = 0
    description: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    sort_order: int = 0
    is_active: bool = True


class PackagePatchRequest(CamelModel):
    id: str = Field(min_length=1)
    base_credits: Optional[PositiveInt] = None
    label: Optional[str] = None
    bonus_credits: Optional[NonNegativeInt] = None
    description: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    sort_order: Optional[int] = None
    is_active: Optional[bool] = None


class AccountPatchRequest(CamelModel):
    account_id: str = Field(min_length=1)
    role: Optional[str] = None
    permission_tier: Optional[str] = None
    admin_note: Optional[str] = None
    balance: Optional[Union[int, float]] = None
    balance_delta: Optional[Union[int, float]] = None


# Responses


class SessionStartResponse(CamelModel):
    session_id: str
    expires_at: datetime


class SessionSettlementResponse(CamelModel):
    charged_credits: int
    balance_before: int
    balance_after: int
    applied: bool

    @classmethod
    def from_settlement(cls, settlement: SessionSettlement) -> "SessionSettlementResponse":
        return cls(**settlement.model_dump())


class SessionCloseResponse(CamelModel):
    ok: bool = True
    already_closed: bool = False
    ink: Optional[SessionSettlementResponse] = None


class UsageChargeResponse(CamelModel):
    charged_credits: int
    balance_before: int
    balance_after: int
    applied: bool
    replayed: bool
    breakdown: dict[str, Any]

    @classmethod
    def from_charge(cls, charge: UsageCharge) -> "UsageChargeResponse":
        return cls(
            charged_credits=charge.charged_credits,
            balance_before=charge.balance_before,
            balance_after=charge.balance_after,
            applied=charge.applied,
            replayed=charge.replayed,
            breakdown=charge.breakdown.model_dump(mode="json"),
        )


class AccountResponse(CamelModel):
    id: str
    role: str
    permission_tier: str
    balance: int
    admin_note: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            role=account.role.value,
            permission_tier=account.permission_tier.value,
            balance=account.balance,
            admin_note=account.admin_note,
            created_at=account.created_at,
            updated_at=account.updated_at,
        )


class OrderResponse(CamelModel):
    id: str
    account_id: str
    base_credits: int
    bonus_credits: int
    amount_due: int
    status: str
    provider: str
    provider_txn_id: Optional[str] = None
    package_id: Optional[str] = None
    package_label: Optional[str] = None
    package_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        data = order.model_dump()
        data["status"] = order.status.value
        return cls(**data)


class OrderPatchResponse(CamelModel):
    success: bool = True
    order: OrderResponse
    credited: bool
    balance_after: Optional[int] = None


class PackageResponse(CamelModel):
    id: str
    base_credits: int
    bonus_credits: int
    label: str
    description: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    sort_order: int
    is_active: bool

    @classmethod
    def from_package(cls, package: InkPackage) -> "PackageResponse":
        return cls(**package.model_dump(exclude={"created_at", "updated_at"}))


class LedgerEntryResponse(CamelModel):
    id: Optional[str] = None
    account_id: str
    delta: int
    reason: str
    metadata: dict[str, Any]
    idempotency_key: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "LedgerEntryResponse":
        return cls(
            id=entry.id,
            account_id=entry.account_id,
            delta=entry.delta,
            reason=entry.reason.value,
            metadata=entry.metadata.model_dump(mode="json", by_alias=True),
            idempotency_key=entry.idempotency_key,
            created_at=entry.created_at,
        )


class AccountPatchResponse(CamelModel):
    success: bool = True
    account: AccountResponse
    balance_before: Optional[int] = None
    balance_after: Optional[int] = None
    replayed: bool = False


class ReconciliationResponse(CamelModel):
    account_id: str
    cached_balance: int
    ledger_total: int
    drift: int
