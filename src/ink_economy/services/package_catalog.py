from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from ..cache.base import AsyncCacheBackend
from ..db.base import BaseDBManager
from ..errors import NotFoundError, ValidationError
from ..models.base import utcnow
from ..models.package import InkPackage


_ACTIVE_CACHE_KEY = "ink:packages:active"

_UPDATABLE_FIELDS = (
    "base_credits",
    "bonus_credits",
    "label",
    "description",
    "starts_at",
    "ends_at",
    "sort_order",
    "is_active",
)


def _sort_key(package: InkPackage) -> tuple[int, int]:
    return (package.sort_order, package.base_credits)


class PackageCatalog:
    """
    Purchasable credit packs: admin CRUD plus the list shown to buyers.
    """

    def __init__(
        self,
        db: BaseDBManager,
        cache: Optional[AsyncCacheBackend] = None,
        cache_ttl_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock

    async def list_packages(self, include_inactive: bool = True) -> list[InkPackage]:
        packages: Iterable[InkPackage] = await self._db.list_packages()
        if not include_inactive:
            packages = [p for p in packages if p.is_active]
        return sorted(packages, key=_sort_key)

    async def list_purchasable(self) -> list[InkPackage]:
        """Active packages whose sale window contains now."""
        now = self._clock()
        return [p for p in await self._active_packages() if p.is_purchasable(now)]

    async def _active_packages(self) -> list[InkPackage]:
        # Cached without the window filter; windows are checked at read time.
        if self._cache:
            cached = await self._cache.get(_ACTIVE_CACHE_KEY)
            if isinstance(cached, list):
                return [InkPackage.model_validate(p) for p in cached]

        packages = await self.list_packages(include_inactive=False)
        if self._cache:
            await self._cache.set(
                _ACTIVE_CACHE_KEY,
                [p.model_dump() for p in packages],
                ttl_seconds=self._cache_ttl_seconds,
            )
        return packages

    async def get_package(self, package_id: str) -> InkPackage:
        package = await self._db.get_package(package_id)
        if package is None:
            raise NotFoundError("package not found", details={"package_id": package_id})
        return package

    async def create_package(
        self,
        base_credits: int,
        label: str,
        bonus_credits: int = 0,
        description: Optional[str] = None,
        starts_at: Optional[datetime] = None,
        ends_at: Optional[datetime] = None,
        sort_order: int = 0,
        is_active: bool = True,
    ) -> InkPackage:
        now = self._clock()
        package = InkPackage(
            base_credits=base_credits,
            bonus_credits=bonus_credits,
            label=(label or "").strip(),
            description=description.strip() if description else None,
            starts_at=starts_at,
            ends_at=ends_at,
            sort_order=sort_order,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        self._validate(package)
        package = await self._db.add_package(package)
        await self._invalidate_cache()
        return package

    async def update_package(self, package_id: str, **updates: Any) -> InkPackage:
        unknown = set(updates) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "unknown package fields", details={"fields": sorted(unknown)}
            )
        if not updates:
            raise ValidationError("no fields to update")

        current = await self.get_package(package_id)
        if "label" in updates:
            updates["label"] = (updates["label"] or "").strip()
        if "description" in updates and updates["description"] is not None:
            updates["description"] = updates["description"].strip()
        updates["updated_at"] = self._clock()

        try:
            package = InkPackage.model_validate({**current.model_dump(), **updates})
        except PydanticValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            raise ValidationError("invalid package fields", details={"errors": errors}) from exc
        self._validate(package)
        package = await self._db.update_package(package)
        await self._invalidate_cache()
        return package

    async def delete_package(self, package_id: str) -> None:
        await self._db.delete_package(package_id)
        await self._invalidate_cache()

    @staticmethod
    def _validate(package: InkPackage) -> None:
        if package.base_credits <= 0:
            raise ValidationError("base_credits must be positive")
        if package.bonus_credits < 0:
            raise ValidationError("bonus_credits must not be negative")
        if not package.label:
            raise ValidationError("label is required")
        if (
            package.starts_at is not None
            and package.ends_at is not None
            and package.starts_at >= package.ends_at
        ):
            raise ValidationError("starts_at must be earlier than ends_at")

    async def _invalidate_cache(self) -> None:
        if self._cache:
            await self._cache.delete(_ACTIVE_CACHE_KEY)
