from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Type

from .models.account import Account
from .models.base import DBSerializableModel
from .models.ledger import LedgerEntry
from .models.order import Order
from .models.package import InkPackage
from .models.session import GradingSession


MODEL_REGISTRY: List[Type[DBSerializableModel]] = [
    Account,
    LedgerEntry,
    Order,
    GradingSession,
    InkPackage,
]


def generate_logical_schema() -> Dict[str, Any]:
    """Backend-agnostic schema for every persisted ink record, keyed by collection."""
    return {model.collection_name: model.db_schema() for model in MODEL_REGISTRY}


def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    """
    Render CREATE TABLE/INDEX statements. Nested metadata lands in a JSON
    column, so index paths into it are left to the migration tool.
    """
    lines: List[str] = []
    for table_name, table in schema.items():
        props = table["properties"]
        pk = table.get("primary_key") or "id"
        columns: List[str] = []
        for field_name, meta in props.items():
            sql_type = _map_logical_to_sql(meta["type"], dialect=dialect)
            nullable = "NOT NULL" if field_name in table.get("required", []) else "NULL"
            columns.append(f'    "{field_name}" {sql_type} {nullable}')
        columns.append(f'    PRIMARY KEY ("{pk}")')
        lines.append(
            f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n' + ",\n".join(columns) + "\n);\n"
        )
        for index in table.get("indexes", []):
            if any("." in column for column in index):
                continue
            index_name = f"ix_{table_name}_" + "_".join(index)
            cols = ", ".join(f'"{column}"' for column in index)
            lines.append(f'CREATE INDEX IF NOT EXISTS "{index_name}" ON "{table_name}" ({cols});\n')
    return "\n".join(lines)


def render_nosql_schema(schema: Dict[str, Any]) -> str:
    """JSON form usable as a document-database validator."""
    return json.dumps(schema, indent=2, default=str)


def _map_logical_to_sql(logical_type: str, dialect: str) -> str:
    logical_type = logical_type.lower()
    if logical_type == "integer":
        return "BIGINT"
    if logical_type == "number":
        return "DOUBLE PRECISION"
    if logical_type == "boolean":
        return "BOOLEAN"
    if logical_type == "string":
        return "TEXT"
    if logical_type in {"datetime", "date"}:
        return "TIMESTAMPTZ" if dialect == "postgres" else "TIMESTAMP"
    if logical_type == "object":
        return "JSONB" if dialect == "postgres" else "JSON"
    return "TEXT"


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate DB schemas for the ink economy.")
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", default="postgres", help="SQL dialect hint (e.g. postgres, mysql).")
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.backend == "sql":
        print(render_sql_ddl(schema, dialect=args.dialect))
    else:
        print(render_nosql_schema(schema))


if __name__ == "__main__":
    main()
