from __future__ import annotations

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from ink_economy.db.memory import InMemoryDBManager
from ink_economy.ledger.store import LedgerStore
from ink_economy.models.ledger import (
    LedgerEntry,
    LedgerReason,
    OrderPaidMetadata,
    SignupGrantMetadata,
)


def _order_paid(order_id: str, before: int, after: int) -> OrderPaidMetadata:
    return OrderPaidMetadata(
        before=before,
        after=after,
        order_id=order_id,
        provider="manual",
        amount_due=500,
        base_credits=500,
        bonus_credits=50,
        total_credits=550,
    )


@pytest.mark.asyncio
async def test_append_persists_and_mirrors(tmp_path):
    db = InMemoryDBManager()
    path = tmp_path / "ledger.log"
    ledger = LedgerStore(db=db, file_path=path)

    entry = await ledger.append(
        "t1", 550, LedgerReason.ORDER_PAID, _order_paid("42", 0, 550)
    )

    assert entry.id is not None
    assert await ledger.total("t1") == 550
    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    record = json.loads(lines[0])
    assert record["metadata"]["orderId"] == "42"
    assert record["metadata"]["before"] == 0
    assert record["metadata"]["after"] == 550


@pytest.mark.asyncio
async def test_query_matches_camel_case_metadata_keys(tmp_path):
    ledger = LedgerStore(db=InMemoryDBManager(), file_path=tmp_path / "ledger.log")
    await ledger.append("t1", 550, LedgerReason.ORDER_PAID, _order_paid("42", 0, 550))
    await ledger.append("t1", 550, LedgerReason.ORDER_PAID, _order_paid("43", 550, 1100))

    assert await ledger.exists("t1", LedgerReason.ORDER_PAID, {"orderId": "43"})
    assert not await ledger.exists("t1", LedgerReason.ORDER_PAID, {"orderId": "44"})
    assert not await ledger.exists("t2", LedgerReason.ORDER_PAID, {"orderId": "42"})
    assert len(await ledger.query("t1", LedgerReason.ORDER_PAID)) == 2


@pytest.mark.asyncio
async def test_mirror_failure_does_not_fail_append(tmp_path, caplog):
    target = tmp_path / "mirror"
    target.mkdir()
    ledger = LedgerStore(db=InMemoryDBManager(), file_path=target)

    entry = await ledger.append(
        "t1", 10, LedgerReason.SIGNUP_GRANT, SignupGrantMetadata(before=0, after=10)
    )

    assert entry.id is not None
    assert await ledger.total("t1") == 10
    assert "Ledger mirror write failed" in caplog.text


def test_entry_delta_must_match_metadata():
    with pytest.raises(PydanticValidationError):
        LedgerEntry(
            account_id="t1",
            delta=5,
            reason=LedgerReason.SIGNUP_GRANT,
            metadata=SignupGrantMetadata(before=0, after=10),
        )


def test_entry_metadata_tag_must_match_reason():
    with pytest.raises(PydanticValidationError):
        LedgerEntry(
            account_id="t1",
            delta=10,
            reason=LedgerReason.ADMIN_ADJUSTMENT,
            metadata=SignupGrantMetadata(before=0, after=10),
        )


def test_metadata_parses_from_persisted_document():
    entry = LedgerEntry.model_validate(
        {
            "account_id": "t1",
            "delta": -15,
            "reason": "ai_usage_charge",
            "metadata": {
                "reason": "ai_usage_charge",
                "before": 100,
                "after": 85,
                "sessionId": "s1",
                "inputTokens": 200000,
                "outputTokens": 100000,
                "totalTokens": 300000,
                "usd": "0.4",
                "local": "13.2",
                "rounded": 14,
                "fee": 1,
            },
        }
    )
    assert entry.metadata.session_id == "s1"
    assert entry.metadata_document()["sessionId"] == "s1"
