from __future__ import annotations

from ink_economy.schema_generator import generate_logical_schema, render_nosql_schema, render_sql_ddl


def test_logical_schema_covers_every_collection():
    schema = generate_logical_schema()

    assert set(schema) == {"ink_accounts", "ink_ledger", "ink_orders", "ink_sessions", "ink_packages"}
    ledger = schema["ink_ledger"]
    assert ledger["properties"]["delta"]["type"] == "integer"
    assert ledger["properties"]["metadata"]["type"] == "object"
    assert ledger["properties"]["reason"]["type"] == "string"
    assert "account_id" in ledger["required"]
    assert ["account_id", "idempotency_key"] in ledger["indexes"]


def test_sql_rendering():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "ink_accounts"' in ddl
    assert '"created_at" TIMESTAMPTZ NULL' in ddl
    assert '"metadata" JSONB NOT NULL' in ddl
    assert 'CREATE INDEX IF NOT EXISTS "ix_ink_sessions_account_id_status"' in ddl


def test_nosql_rendering_is_json():
    assert '"ink_orders"' in render_nosql_schema(generate_logical_schema())
