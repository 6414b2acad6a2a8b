from __future__ import annotations

import pytest

from ink_economy.errors import ConflictError, NotFoundError, ValidationError
from ink_economy.models.account import AccountRole, PermissionTier
from ink_economy.models.ledger import LedgerReason
from ink_economy.models.usage import UsageReport


@pytest.mark.asyncio
async def test_set_balance_clamps_at_zero(services):
    await services.accounts.ensure_account("t1")
    await services.admin.set_balance("t1", 40)

    change = await services.admin.set_balance("t1", -5, actor_id="admin-1")

    assert change.balance_after == 0
    assert change.entry.delta == -40
    assert change.entry.metadata.requested_balance == -5


@pytest.mark.asyncio
async def test_set_balance_floors_fractions(services):
    await services.accounts.ensure_account("t1")
    change = await services.admin.set_balance("t1", 12.9)
    assert change.balance_after == 12


@pytest.mark.asyncio
async def test_adjust_balance_clamps_and_records_realized_delta(services):
    await services.accounts.ensure_account("t1")
    await services.admin.set_balance("t1", 10)

    change = await services.admin.adjust_balance("t1", -1000, note="refund reversal")

    assert change.balance_after == 0
    assert change.entry.delta == -10
    assert change.entry.metadata.requested_delta == -1000
    assert change.entry.metadata.note == "refund reversal"


@pytest.mark.asyncio
async def test_noop_adjustment_writes_no_row(services):
    await services.accounts.ensure_account("t1")

    change = await services.admin.adjust_balance("t1", -5)

    assert change.entry is None
    assert change.delta == 0
    assert await services.ledger.query("t1", LedgerReason.ADMIN_ADJUSTMENT) == []


@pytest.mark.asyncio
async def test_fractional_delta_rejected(services):
    await services.accounts.ensure_account("t1")
    with pytest.raises(ValidationError):
        await services.admin.adjust_balance("t1", 1.5)


@pytest.mark.asyncio
async def test_patch_updates_profile_without_ledger_row(services):
    await services.accounts.ensure_account("t1")

    patch = await services.admin.patch_account(
        "t1", role="admin", permission_tier="advanced", admin_note="pilot school"
    )

    assert patch.account.role == AccountRole.ADMIN
    assert patch.account.permission_tier == PermissionTier.ADVANCED
    assert patch.account.admin_note == "pilot school"
    assert patch.balance_change is None
    assert list(await services.admin.ledger_history("t1")) == []


@pytest.mark.asyncio
async def test_patch_rejects_unknown_role(services):
    await services.accounts.ensure_account("t1")
    with pytest.raises(ValidationError):
        await services.admin.patch_account("t1", role="superuser")


@pytest.mark.asyncio
async def test_patch_delta_wins_over_absolute_balance(services):
    await services.accounts.ensure_account("t1")

    patch = await services.admin.patch_account("t1", balance=999, balance_delta=25)

    assert patch.account.balance == 25
    assert patch.balance_change.entry.reason == LedgerReason.ADMIN_ADJUSTMENT


@pytest.mark.asyncio
async def test_patch_with_idempotency_key_applies_once(services):
    await services.accounts.ensure_account("t1")

    first = await services.admin.patch_account("t1", balance_delta=30, idempotency_key="fix-1")
    second = await services.admin.patch_account("t1", balance_delta=30, idempotency_key="fix-1")

    assert not first.replayed
    assert second.replayed
    assert second.account.balance == 30
    assert second.balance_change.balance_after == 30
    assert len(await services.ledger.query("t1", LedgerReason.ADMIN_ADJUSTMENT)) == 1


@pytest.mark.asyncio
async def test_patch_unknown_account(services):
    with pytest.raises(NotFoundError):
        await services.admin.patch_account("ghost", balance_delta=5)


@pytest.mark.asyncio
async def test_history_is_chronological_and_reconciles(services, clock):
    await services.accounts.ensure_account("t1")
    await services.admin.adjust_balance("t1", 50)
    clock.advance(minutes=1)
    await services.admin.adjust_balance("t1", -20)

    history = list(await services.admin.ledger_history("t1"))
    report = await services.admin.reconcile("t1")

    assert [e.delta for e in history] == [50, -20]
    assert report.cached_balance == 30
    assert report.ledger_total == 30
    assert report.drift == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "balance_fields",
    [{"balance_delta": 1.5}, {"balance": float("inf")}, {"balance_delta": float("nan")}],
)
async def test_rejected_patch_leaves_profile_untouched(services, balance_fields):
    await services.accounts.ensure_account("t1")

    with pytest.raises(ValidationError):
        await services.admin.patch_account(
            "t1", role="admin", admin_note="pilot school", **balance_fields
        )

    account = await services.accounts.get_account("t1")
    assert account.role == AccountRole.USER
    assert account.admin_note is None
    assert list(await services.admin.ledger_history("t1")) == []


@pytest.mark.asyncio
async def test_conflicting_idempotency_key_leaves_profile_untouched(services):
    await _usage_charge_with_key(services, "t1", "key-1")

    with pytest.raises(ConflictError):
        await services.admin.patch_account(
            "t1", permission_tier="advanced", balance_delta=5, idempotency_key="key-1"
        )

    account = await services.accounts.get_account("t1")
    assert account.permission_tier != PermissionTier.ADVANCED
    assert len(list(await services.admin.ledger_history("t1"))) == 2


async def _usage_charge_with_key(services, account_id: str, key: str) -> None:
    await services.accounts.ensure_account(account_id)
    await services.admin.set_balance(account_id, 100)
    await services.billing.charge_for_usage(
        account_id, UsageReport(input_tokens=1_000, output_tokens=1_000), idempotency_key=key
    )
