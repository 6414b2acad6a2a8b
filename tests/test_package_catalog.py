from __future__ import annotations

from datetime import timedelta

import pytest

from ink_economy.errors import NotFoundError, ValidationError


@pytest.mark.asyncio
async def test_create_and_list_sorted(services):
    await services.catalog.create_package(base_credits=1000, label="Large", sort_order=2)
    await services.catalog.create_package(base_credits=100, label="Small", sort_order=1)
    await services.catalog.create_package(base_credits=500, label="Hidden", is_active=False)

    labels = [p.label for p in await services.catalog.list_purchasable()]
    all_labels = [p.label for p in await services.catalog.list_packages()]

    assert labels == ["Small", "Large"]
    assert set(all_labels) == {"Small", "Large", "Hidden"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "fields",
    [
        {"base_credits": 0, "label": "Zero"},
        {"base_credits": 10, "label": "Negative bonus", "bonus_credits": -1},
        {"base_credits": 10, "label": "   "},
    ],
)
async def test_invalid_packages_rejected(services, fields):
    with pytest.raises(ValidationError):
        await services.catalog.create_package(**fields)


@pytest.mark.asyncio
async def test_sale_window_must_be_ordered(services, clock):
    with pytest.raises(ValidationError):
        await services.catalog.create_package(
            base_credits=10,
            label="Backwards",
            starts_at=clock.now,
            ends_at=clock.now - timedelta(hours=1),
        )


@pytest.mark.asyncio
async def test_sale_window_checked_at_read_time(services, clock):
    await services.catalog.create_package(
        base_credits=100,
        label="Weekend",
        starts_at=clock.now + timedelta(hours=1),
        ends_at=clock.now + timedelta(days=2),
    )

    assert await services.catalog.list_purchasable() == []
    clock.advance(hours=2)
    assert [p.label for p in await services.catalog.list_purchasable()] == ["Weekend"]
    clock.advance(days=3)
    assert await services.catalog.list_purchasable() == []


@pytest.mark.asyncio
async def test_updates_invalidate_cached_listing(services):
    package = await services.catalog.create_package(base_credits=100, label="Small")
    assert len(await services.catalog.list_purchasable()) == 1

    await services.catalog.update_package(package.id, is_active=False)
    assert await services.catalog.list_purchasable() == []

    await services.catalog.update_package(package.id, is_active=True, label="  Small+ ")
    assert [p.label for p in await services.catalog.list_purchasable()] == ["Small+"]

    await services.catalog.delete_package(package.id)
    assert await services.catalog.list_purchasable() == []
    with pytest.raises(NotFoundError):
        await services.catalog.get_package(package.id)


@pytest.mark.asyncio
async def test_update_rejects_unknown_and_invalid_fields(services):
    package = await services.catalog.create_package(base_credits=100, label="Small")

    with pytest.raises(ValidationError):
        await services.catalog.update_package(package.id, price=3)
    with pytest.raises(ValidationError):
        await services.catalog.update_package(package.id, base_credits="lots")
    with pytest.raises(ValidationError):
        await services.catalog.update_package(package.id)
