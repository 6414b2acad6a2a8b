from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ..cache.base import AsyncCacheBackend
from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..ledger.store import LedgerStore
from ..models.base import utcnow
from .account_service import AccountService
from .admin_service import AdminService
from .balance_cache import BalanceCache
from .billing_service import BillingService
from .cost_calculator import PricingRates
from .order_reconciler import OrderReconciler
from .package_catalog import PackageCatalog
from .session_manager import FlatOccupancyCharge, NoResidualCharge, SessionManager


logger = logging.getLogger(__name__)


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        from ..db.mongo import MongoDBManager

        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("INK_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


class InkServices:
    """Wires every ink service over one store, cache and clock."""

    def __init__(
        self,
        settings: Settings,
        db: Optional[BaseDBManager] = None,
        cache: Optional[AsyncCacheBackend] = None,
        clock: Callable[[], datetime] = utcnow,
        ledger_path: Optional[Path] = None,
    ) -> None:
        self.settings = settings
        self.db = db if db is not None else create_db_manager(settings)
        self.cache = cache if cache is not None else InMemoryAsyncCache()
        self.clock = clock

        self.ledger = LedgerStore(
            db=self.db,
            file_path=ledger_path if ledger_path is not None else Path(settings.LEDGER_LOG_PATH),
        )
        self.balances = BalanceCache(self.db, clock=clock)
        self.billing = BillingService(
            db=self.db,
            ledger=self.ledger,
            balances=self.balances,
            rates=PricingRates.of(
                settings.INPUT_RATE_USD_PER_MTOK,
                settings.OUTPUT_RATE_USD_PER_MTOK,
                settings.EXCHANGE_RATE,
            ),
            clock=clock,
        )
        self.accounts = AccountService(
            db=self.db,
            billing=self.billing,
            welcome_credits=settings.WELCOME_CREDITS,
            clock=clock,
        )
        self.catalog = PackageCatalog(
            db=self.db,
            cache=self.cache,
            cache_ttl_seconds=settings.PACKAGE_CACHE_TTL_SECONDS,
            clock=clock,
        )
        self.orders = OrderReconciler(
            db=self.db,
            billing=self.billing,
            catalog=self.catalog,
            pending_ttl_minutes=settings.PENDING_ORDER_TTL_MINUTES,
            price_per_credit=settings.PRICE_PER_CREDIT,
            clock=clock,
        )
        policy = (
            FlatOccupancyCharge(settings.SESSION_OCCUPANCY_CREDITS)
            if settings.SESSION_OCCUPANCY_CREDITS > 0
            else NoResidualCharge()
        )
        self.sessions = SessionManager(
            db=self.db,
            billing=self.billing,
            policy=policy,
            ttl_minutes=settings.SESSION_TTL_MINUTES,
            clock=clock,
        )
        self.admin = AdminService(db=self.db, billing=self.billing, clock=clock)
