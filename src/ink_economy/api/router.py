from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from ..models.api_models import (
    AccountPatchRequest,
    AccountPatchResponse,
    AccountResponse,
    CreateOrderRequest,
    LedgerEntryResponse,
    OrderPatchResponse,
    OrderResponse,
    OrderStatusPatchRequest,
    PackageCreateRequest,
    PackagePatchRequest,
    PackageResponse,
    ProviderConfirmationRequest,
    ReconciliationResponse,
    SessionCloseResponse,
    SessionRequest,
    SessionSettlementResponse,
    SessionStartResponse,
    UsageChargeRequest,
    UsageChargeResponse,
)
from ..models.results import OrderSettlement
from ..models.usage import UsageReport
from ..services.container import InkServices
from .deps import Identity, get_identity, get_services, require_admin


router = APIRouter(prefix="/ink", tags=["ink"])
admin_router = APIRouter(prefix="/ink/admin", tags=["ink-admin"])


def _order_patch_response(settlement: OrderSettlement) -> OrderPatchResponse:
    return OrderPatchResponse(
        order=OrderResponse.from_order(settlement.order),
        credited=settlement.credited,
        balance_after=settlement.balance_after,
    )


# Account


@router.get("/me", response_model=AccountResponse)
async def get_me(
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> AccountResponse:
    account = await services.accounts.get_account(identity.account_id)
    return AccountResponse.from_account(account)


# Sessions


@router.post("/sessions/start", response_model=SessionStartResponse)
async def start_session(
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> SessionStartResponse:
    session = await services.sessions.start(identity.account_id)
    return SessionStartResponse(session_id=session.id, expires_at=session.expires_at)


@router.post("/sessions/settle", response_model=SessionSettlementResponse)
async def settle_session(
    payload: SessionRequest,
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> SessionSettlementResponse:
    settlement = await services.sessions.settle_session(
        payload.session_id.strip(), account_id=identity.account_id
    )
    return SessionSettlementResponse.from_settlement(settlement)


@router.post("/sessions/close", response_model=SessionCloseResponse)
async def close_session(
    payload: SessionRequest,
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> SessionCloseResponse:
    closed = await services.sessions.close_session(
        payload.session_id.strip(), identity.account_id
    )
    ink = (
        SessionSettlementResponse.from_settlement(closed.settlement)
        if closed.settlement is not None
        else None
    )
    return SessionCloseResponse(already_closed=closed.already_closed, ink=ink)


# Usage


@router.post("/usage", response_model=UsageChargeResponse)
async def charge_for_usage(
    payload: UsageChargeRequest,
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(default=None),
) -> UsageChargeResponse:
    usage = UsageReport(
        input_tokens=payload.input_tokens,
        output_tokens=payload.output_tokens,
        total_tokens=payload.total_tokens,
    )
    charge = await services.billing.charge_for_usage(
        identity.account_id,
        usage,
        session_id=payload.session_id,
        model=payload.model,
        idempotency_key=idempotency_key,
    )
    return UsageChargeResponse.from_charge(charge)


# Catalog and orders


@router.get("/packages", response_model=list[PackageResponse])
async def list_purchasable_packages(
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> list[PackageResponse]:
    return [PackageResponse.from_package(p) for p in await services.catalog.list_purchasable()]


@router.get("/orders", response_model=list[OrderResponse])
async def list_my_orders(
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> list[OrderResponse]:
    orders = await services.orders.list_orders(account_id=identity.account_id)
    return [OrderResponse.from_order(o) for o in orders]


@router.post("/orders", response_model=OrderResponse)
async def create_order(
    payload: CreateOrderRequest,
    identity: Identity = Depends(get_identity),
    services: InkServices = Depends(get_services),
) -> OrderResponse:
    order = await services.orders.create_order(
        identity.account_id,
        payload.package_id,
        provider=payload.provider,
        provider_txn_id=payload.provider_txn_id,
    )
    return OrderResponse.from_order(order)


# Admin: orders


@admin_router.get("/orders", response_model=list[OrderResponse])
async def admin_list_orders(
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> list[OrderResponse]:
    return [OrderResponse.from_order(o) for o in await services.orders.list_orders()]


@admin_router.patch("/orders", response_model=OrderPatchResponse)
async def admin_patch_order(
    payload: OrderStatusPatchRequest,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> OrderPatchResponse:
    settlement = await services.orders.update_status(
        payload.order_id, payload.status, actor_id=admin.account_id
    )
    return _order_patch_response(settlement)


@admin_router.post("/orders/confirm", response_model=OrderPatchResponse)
async def admin_confirm_payment(
    payload: ProviderConfirmationRequest,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> OrderPatchResponse:
    settlement = await services.orders.confirm_provider_payment(
        payload.provider,
        payload.provider_txn_id,
        paid_amount=payload.paid_amount,
        trade_no=payload.trade_no,
    )
    return _order_patch_response(settlement)


# Admin: packages


@admin_router.get("/packages", response_model=list[PackageResponse])
async def admin_list_packages(
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> list[PackageResponse]:
    return [PackageResponse.from_package(p) for p in await services.catalog.list_packages()]


@admin_router.post("/packages", response_model=PackageResponse)
async def admin_create_package(
    payload: PackageCreateRequest,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> PackageResponse:
    package = await services.catalog.create_package(**payload.model_dump())
    return PackageResponse.from_package(package)


@admin_router.patch("/packages", response_model=PackageResponse)
async def admin_patch_package(
    payload: PackagePatchRequest,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> PackageResponse:
    updates = payload.model_dump(exclude={"id"}, exclude_unset=True)
    package = await services.catalog.update_package(payload.id, **updates)
    return PackageResponse.from_package(package)


@admin_router.delete("/packages/{package_id}")
async def admin_delete_package(
    package_id: str,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> dict:
    await services.catalog.delete_package(package_id)
    return {"success": True}


# Admin: accounts


@admin_router.get("/accounts", response_model=list[AccountResponse])
async def admin_list_accounts(
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> list[AccountResponse]:
    return [AccountResponse.from_account(a) for a in await services.admin.list_accounts()]


@admin_router.patch("/accounts", response_model=AccountPatchResponse)
async def admin_patch_account(
    payload: AccountPatchRequest,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
    idempotency_key: Optional[str] = Header(default=None),
) -> AccountPatchResponse:
    result = await services.admin.patch_account(
        payload.account_id,
        role=payload.role,
        permission_tier=payload.permission_tier,
        admin_note=payload.admin_note,
        balance=payload.balance,
        balance_delta=payload.balance_delta,
        actor_id=admin.account_id,
        idempotency_key=idempotency_key,
    )
    change = result.balance_change
    return AccountPatchResponse(
        account=AccountResponse.from_account(result.account),
        balance_before=change.balance_before if change else None,
        balance_after=change.balance_after if change else None,
        replayed=result.replayed,
    )


@admin_router.get("/accounts/{account_id}/ledger", response_model=list[LedgerEntryResponse])
async def admin_account_ledger(
    account_id: str,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> list[LedgerEntryResponse]:
    entries = await services.admin.ledger_history(account_id)
    return [LedgerEntryResponse.from_entry(e) for e in entries]


@admin_router.get("/accounts/{account_id}/reconcile", response_model=ReconciliationResponse)
async def admin_reconcile_account(
    account_id: str,
    admin: Identity = Depends(require_admin),
    services: InkServices = Depends(get_services),
) -> ReconciliationResponse:
    report = await services.admin.reconcile(account_id)
    return ReconciliationResponse(**report.model_dump())
