from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from ..db.base import BaseDBManager
from ..models.base import utcnow
from ..models.ledger import LedgerEntry, LedgerMetadata, LedgerReason


logger = logging.getLogger(__name__)


class LedgerStore:
    """
    Append-only ledger of signed credit deltas; the source of truth for
    every balance.

    Rows go to the database through the configured `BaseDBManager` and are
    mirrored as line-delimited JSON to an audit file for log aggregators.
    The mirror is best effort: a failed file write is logged and never
    fails the append.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def append(
        self,
        account_id: str,
        delta: int,
        reason: LedgerReason,
        metadata: LedgerMetadata,
        idempotency_key: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            account_id=account_id,
            delta=delta,
            reason=reason,
            metadata=metadata,
            idempotency_key=idempotency_key,
            created_at=created_at or utcnow(),
        )
        entry = await self._db.add_ledger_entry(entry)
        self._mirror(entry)
        return entry

    async def query(
        self,
        account_id: str,
        reason: LedgerReason,
        metadata_match: Optional[Mapping[str, Any]] = None,
    ) -> list[LedgerEntry]:
        """Entries matching `reason` and persisted metadata keys, e.g. {"orderId": "42"}."""
        return list(await self._db.find_ledger_entries(account_id, reason, metadata_match))

    async def exists(
        self,
        account_id: str,
        reason: LedgerReason,
        metadata_match: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        return bool(await self.query(account_id, reason, metadata_match))

    async def find_by_idempotency_key(
        self, account_id: str, idempotency_key: str
    ) -> Optional[LedgerEntry]:
        return await self._db.find_ledger_entry_by_idempotency_key(account_id, idempotency_key)

    async def history(self, account_id: str) -> Iterable[LedgerEntry]:
        entries = list(await self._db.get_ledger_entries(account_id))
        entries.sort(key=lambda e: e.created_at)
        return entries

    async def total(self, account_id: str) -> int:
        return await self._db.sum_ledger_deltas(account_id)

    def _mirror(self, entry: LedgerEntry) -> None:
        if self._file_path is None:
            return
        try:
            line = json.dumps(entry.model_dump(mode="json", by_alias=True), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning(
                "Ledger mirror write failed: %s",
                exc,
                extra={"account_id": entry.account_id, "entry_id": entry.id},
            )
