from __future__ import annotations

import httpx
import pytest
from fastapi.responses import JSONResponse

from ink_economy.app import create_app
from ink_economy.models.ledger import LedgerReason


USER = {"X-Account-Id": "t1"}
ADMIN = {"X-Account-Id": "boss", "X-Account-Role": "admin"}

GEMINI_BODY = {
    "candidates": [{"content": {"parts": [{"text": "B+"}]}}],
    "usageMetadata": {
        "promptTokenCount": 200_000,
        "candidatesTokenCount": 100_000,
        "totalTokenCount": 300_000,
    },
}
NEGATIVE_TOTAL_BODY = {
    "candidates": [{"content": {"parts": [{"text": "A"}]}}],
    "usageMetadata": {"promptTokenCount": 10, "candidatesTokenCount": 5, "totalTokenCount": -1},
}


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.fixture
def ink(make_services):
    return make_services(WELCOME_CREDITS=10)


@pytest.fixture
def app(ink):
    app = create_app(services=ink, metered_prefix="/ai")

    @app.post("/ai/grade")
    async def grade():
        return GEMINI_BODY

    @app.post("/ai/broken")
    async def broken():
        return JSONResponse(status_code=502, content=GEMINI_BODY)

    @app.post("/ai/silent")
    async def silent():
        return {"text": "no usage here"}

    @app.post("/ai/negative")
    async def negative():
        return NEGATIVE_TOTAL_BODY

    return app


@pytest.mark.asyncio
async def test_identity_required(app):
    async with _client(app) as client:
        resp = await client.get("/ink/me")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_me_provisions_account_with_signup_grant(app):
    async with _client(app) as client:
        resp = await client.get("/ink/me", headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["id"] == "t1"
    assert body["balance"] == 10
    assert body["permissionTier"] == "basic"


@pytest.mark.asyncio
async def test_usage_route_charges_and_replays(app, ink):
    payload = {"inputTokens": 200_000, "outputTokens": 100_000}
    headers = {**USER, "Idempotency-Key": "call-1"}
    async with _client(app) as client:
        first = await client.post("/ink/usage", json=payload, headers=headers)
        second = await client.post("/ink/usage", json=payload, headers=headers)

    assert first.status_code == 200
    assert first.json()["chargedCredits"] == 15
    assert first.json()["balanceAfter"] == -5
    assert second.json()["replayed"] is True
    assert (await ink.accounts.get_account("t1")).balance == -5


@pytest.mark.asyncio
async def test_usage_route_validates_counts(app):
    async with _client(app) as client:
        resp = await client.post(
            "/ink/usage", json={"inputTokens": -1, "outputTokens": 0}, headers=USER
        )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_session_lifecycle(app):
    async with _client(app) as client:
        started = await client.post("/ink/sessions/start", headers=USER)
        again = await client.post("/ink/sessions/start", headers=USER)
        session_id = started.json()["sessionId"]
        closed = await client.post(
            "/ink/sessions/close", json={"sessionId": session_id}, headers=USER
        )
        settle = await client.post(
            "/ink/sessions/settle", json={"sessionId": session_id}, headers=USER
        )

    assert started.status_code == 200
    assert again.json()["sessionId"] == session_id
    assert closed.json() == {
        "ok": True,
        "alreadyClosed": False,
        "ink": {"chargedCredits": 0, "balanceBefore": 10, "balanceAfter": 10, "applied": True},
    }
    assert settle.status_code == 409
    assert settle.json()["code"] == "CONFLICT"


@pytest.mark.asyncio
async def test_admin_routes_require_admin(app):
    async with _client(app) as client:
        resp = await client.get("/ink/admin/accounts", headers=USER)
    assert resp.status_code == 403
    assert resp.json()["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_purchase_flow(app, ink):
    async with _client(app) as client:
        created = await client.post(
            "/ink/admin/packages",
            json={"baseCredits": 500, "bonusCredits": 50, "label": "Starter"},
            headers=ADMIN,
        )
        package_id = created.json()["id"]
        listed = await client.get("/ink/packages", headers=USER)
        order = await client.post("/ink/orders", json={"packageId": package_id}, headers=USER)
        order_id = order.json()["id"]
        paid = await client.patch(
            "/ink/admin/orders", json={"orderId": order_id, "status": "paid"}, headers=ADMIN
        )
        repaid = await client.patch(
            "/ink/admin/orders", json={"orderId": order_id, "status": "paid"}, headers=ADMIN
        )
        cancel = await client.patch(
            "/ink/admin/orders", json={"orderId": order_id, "status": "cancelled"}, headers=ADMIN
        )
        mine = await client.get("/ink/orders", headers=USER)

    assert created.status_code == 200
    assert [p["label"] for p in listed.json()] == ["Starter"]
    assert order.json()["status"] == "pending"
    assert paid.json()["credited"] is True
    assert paid.json()["balanceAfter"] == 560
    assert repaid.json()["credited"] is False
    assert cancel.status_code == 409
    assert [o["status"] for o in mine.json()] == ["paid"]
    rows = await ink.ledger.query("t1", LedgerReason.ORDER_PAID)
    assert len(rows) == 1
    assert rows[0].metadata.actor_id == "boss"


@pytest.mark.asyncio
async def test_admin_account_patch_ledger_and_reconcile(app):
    async with _client(app) as client:
        await client.get("/ink/me", headers=USER)
        patched = await client.patch(
            "/ink/admin/accounts",
            json={"accountId": "t1", "balanceDelta": -100, "adminNote": "reset"},
            headers={**ADMIN, "Idempotency-Key": "fix-1"},
        )
        bad = await client.patch(
            "/ink/admin/accounts",
            json={"accountId": "t1", "role": "owner"},
            headers=ADMIN,
        )
        ledger = await client.get("/ink/admin/accounts/t1/ledger", headers=ADMIN)
        reconcile = await client.get("/ink/admin/accounts/t1/reconcile", headers=ADMIN)

    assert patched.status_code == 200
    assert patched.json()["balanceBefore"] == 10
    assert patched.json()["balanceAfter"] == 0
    assert bad.status_code == 400
    assert [e["reason"] for e in ledger.json()] == ["signup_grant", "admin_adjustment"]
    assert ledger.json()[1]["metadata"]["requestedDelta"] == -100
    assert reconcile.json()["drift"] == 0


@pytest.mark.asyncio
async def test_metering_middleware_charges_successful_calls(app, ink):
    async with _client(app) as client:
        first = await client.post("/ai/grade", headers=USER)
        refused = await client.post("/ai/grade", headers=USER)

    assert first.status_code == 200
    assert first.json() == GEMINI_BODY
    assert first.headers["X-Ink-Charged"] == "15"
    assert refused.status_code == 402
    assert refused.json()["code"] == "INSUFFICIENT_CREDITS"
    assert (await ink.accounts.get_account("t1")).balance == -5


@pytest.mark.asyncio
async def test_metering_middleware_skips_failures_and_missing_usage(app, ink):
    async with _client(app) as client:
        broken = await client.post("/ai/broken", headers=USER)
        silent = await client.post("/ai/silent", headers=USER)
        anonymous = await client.post("/ai/grade")

    assert broken.status_code == 502
    assert "X-Ink-Charged" not in broken.headers
    assert silent.status_code == 200
    assert "X-Ink-Charged" not in silent.headers
    assert anonymous.status_code == 401
    assert (await ink.accounts.get_account("t1")).balance == 10


@pytest.mark.asyncio
async def test_metering_middleware_skips_invalid_usage_report(app, ink):
    async with _client(app) as client:
        resp = await client.post("/ai/negative", headers=USER)

    assert resp.status_code == 200
    assert resp.json() == NEGATIVE_TOTAL_BODY
    assert "X-Ink-Charged" not in resp.headers
    assert (await ink.accounts.get_account("t1")).balance == 10
    assert await ink.ledger.query("t1", LedgerReason.AI_USAGE_CHARGE) == []
