from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from ink_economy.config import Settings
from ink_economy.db.base import BaseDBManager
from ink_economy.db.memory import InMemoryDBManager
from ink_economy.services.container import InkServices


class FakeClock:
    """Settable clock; services read time only through it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_services(tmp_path, clock):
    def _make(db: Optional[BaseDBManager] = None, **overrides) -> InkServices:
        overrides.setdefault("WELCOME_CREDITS", 0)
        settings = Settings(_env_file=None, **overrides)
        return InkServices(
            settings,
            db=db if db is not None else InMemoryDBManager(),
            clock=clock,
            ledger_path=tmp_path / "ink_ledger.log",
        )

    return _make


@pytest.fixture
def services(make_services) -> InkServices:
    return make_services()
