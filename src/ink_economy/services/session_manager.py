from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..errors import (
    ConflictError,
    DuplicateActiveSessionError,
    InsufficientCreditsError,
    NotFoundError,
)
from ..models.base import utcnow
from ..models.results import SessionClose, SessionSettlement
from ..models.session import GradingSession, SessionStatus
from .billing_service import BillingService


logger = logging.getLogger(__name__)


class SettlementPolicy(ABC):
    """
    Decides the session-scoped residual charge applied when a session ends.
    Per-call usage is metered separately and is never included here.
    """

    @abstractmethod
    async def residual_charge(self, session: GradingSession, now: datetime) -> int:
        ...


class NoResidualCharge(SettlementPolicy):
    async def residual_charge(self, session: GradingSession, now: datetime) -> int:
        return 0


class FlatOccupancyCharge(SettlementPolicy):
    """A fixed number of credits for occupying a session, whatever its length."""

    def __init__(self, credits: int) -> None:
        if credits < 0:
            raise ValueError("credits must not be negative")
        self._credits = credits

    async def residual_charge(self, session: GradingSession, now: datetime) -> int:
        return self._credits


class SessionManager:
    """
    Lifecycle of grading sessions: at most one active session per account,
    a fixed TTL from creation, settlement when a session ends.

    There is no sweeper. A session left open past its TTL stays nominally
    active until the same account's next `start()` discovers and settles it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        billing: BillingService,
        policy: Optional[SettlementPolicy] = None,
        ttl_minutes: int = 120,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._billing = billing
        self._policy = policy or NoResidualCharge()
        self._ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    async def start(self, account_id: str) -> GradingSession:
        balance = await self._billing.balances.read(account_id)
        if balance < 0:
            raise InsufficientCreditsError(
                "insufficient ink, please top up first", details={"balance": balance}
            )

        now = self._clock()
        existing = await self._db.get_latest_active_session(account_id)
        if existing is not None:
            if now < existing.expires_at:
                return await self._reuse(existing, now)
            await self._end(existing, SessionStatus.EXPIRED, now)

        return await self._open(account_id, now)

    async def get_active_session(self, account_id: str) -> Optional[GradingSession]:
        session = await self._db.get_latest_active_session(account_id)
        if session is not None and session.is_live(self._clock()):
            return session
        return None

    async def settle_session(
        self, session_id: str, account_id: Optional[str] = None
    ) -> SessionSettlement:
        """Settle an active session and mark it expired. Settling twice is a conflict."""
        session = await self._get_owned(session_id, account_id)
        if session.status != SessionStatus.ACTIVE:
            raise ConflictError(
                "session has already been settled",
                details={"session_id": session_id, "status": session.status.value},
            )
        return await self._end(session, SessionStatus.EXPIRED, self._clock())

    async def close_session(self, session_id: str, account_id: str) -> SessionClose:
        """Explicit close by the owner; closing a finished session is a no-op."""
        session = await self._get_owned(session_id, account_id)
        if session.status != SessionStatus.ACTIVE:
            return SessionClose(session_id=session_id, already_closed=True)
        settlement = await self._end(session, SessionStatus.CLOSED, self._clock())
        return SessionClose(session_id=session_id, already_closed=False, settlement=settlement)

    async def _get_owned(
        self, session_id: str, account_id: Optional[str]
    ) -> GradingSession:
        session = await self._db.get_session(session_id)
        if session is None or (account_id is not None and session.account_id != account_id):
            raise NotFoundError("session not found", details={"session_id": session_id})
        return session

    async def _reuse(self, session: GradingSession, now: datetime) -> GradingSession:
        await self._db.touch_session(session.id, now)
        session.last_activity_at = now
        return session

    async def _open(self, account_id: str, now: datetime) -> GradingSession:
        session = GradingSession(
            account_id=account_id,
            status=SessionStatus.ACTIVE,
            started_at=now,
            last_activity_at=now,
            expires_at=now + self._ttl,
        )
        try:
            session = await self._db.add_session(session)
        except DuplicateActiveSessionError:
            # A concurrent start() won the insert; hand back its session.
            winner = await self._db.get_latest_active_session(account_id)
            if winner is None or now >= winner.expires_at:
                raise
            return await self._reuse(winner, now)

        logger.info(
            "Session started",
            extra={"account_id": account_id, "session_id": session.id},
        )
        return session

    async def _end(
        self, session: GradingSession, status: SessionStatus, now: datetime
    ) -> SessionSettlement:
        """
        Settle, then flip the status. Settlement is guarded by the ledger, so
        a retry after a failed flip does not charge again.
        """
        residual = await self._policy.residual_charge(session, now)
        settlement = await self._billing.charge_session_residual(session, residual)

        if await self._db.transition_session(session.id, SessionStatus.ACTIVE, status, now):
            logger.info(
                "Session ended",
                extra={
                    "account_id": session.account_id,
                    "session_id": session.id,
                    "status": status.value,
                    "charged": settlement.charged_credits,
                },
            )
        return settlement
