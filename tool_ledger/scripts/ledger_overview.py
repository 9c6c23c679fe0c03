#!/usr/bin/env python3
"""Database overview and integrity checks for the tool ledger."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "Categories",
    "Tools",
    "ToolUnits",
    "Materials",
    "BorrowingTransactions",
    "BorrowingItems",
    "BorrowedUnits",
    "ConsumptionTransactions",
    "ConsumptionItems",
    "ActivityLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "Tools": ["ToolID", "ToolNumber", "ToolName", "CategoryID", "TotalQuantity", "AvailableQuantity"],
    "ToolUnits": ["ToolUnitID", "ToolID", "UnitNumber", "Condition", "IsAvailable", "IsRetired"],
    "BorrowingTransactions": ["BorrowingID", "BorrowingNumber", "BorrowerName", "DueDate", "ReturnDate", "Status"],
    "BorrowingItems": ["BorrowingItemID", "BorrowingID", "ToolID", "Quantity", "OriginalCondition", "ReturnCondition"],
    "BorrowedUnits": ["BorrowedUnitID", "BorrowingItemID", "ToolUnitID", "OriginalCondition", "ReturnCondition"],
    "Materials": ["MaterialID", "MaterialNumber", "CurrentQuantity", "ThresholdQuantity", "Unit"],
    "ActivityLogs": ["ActivityID", "EntityType", "EntityID", "Action", "ActorName", "Metadata", "CreatedAt"],
}

# Each query counts offending rows; zero means the check passes.
INTEGRITY_QUERIES: list[tuple[str, list[str], str]] = [
    (
        "tools:available_out_of_range",
        ["Tools"],
        "SELECT COUNT(*) FROM Tools WHERE AvailableQuantity < 0 OR AvailableQuantity > TotalQuantity",
    ),
    (
        "tools:total_vs_active_units",
        ["Tools", "ToolUnits"],
        """
        SELECT COUNT(*)
        FROM Tools t
        WHERE t.TotalQuantity <> (
            SELECT COUNT(*) FROM ToolUnits u WHERE u.ToolID = t.ToolID AND u.IsRetired = 0
        )
        """,
    ),
    (
        "tools:available_vs_free_units",
        ["Tools", "ToolUnits"],
        """
        SELECT COUNT(*)
        FROM Tools t
        WHERE t.AvailableQuantity <> (
            SELECT COUNT(*) FROM ToolUnits u
            WHERE u.ToolID = t.ToolID AND u.IsRetired = 0 AND u.IsAvailable = 1
        )
        """,
    ),
    (
        "toolunits:duplicate_unit_number",
        ["ToolUnits"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT ToolID, UnitNumber
            FROM ToolUnits
            GROUP BY ToolID, UnitNumber
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    (
        "borrowingitems:quantity_vs_borrowed_units",
        ["BorrowingItems", "BorrowedUnits"],
        """
        SELECT COUNT(*)
        FROM BorrowingItems bi
        WHERE bi.Quantity <> (
            SELECT COUNT(*) FROM BorrowedUnits bu WHERE bu.BorrowingItemID = bi.BorrowingItemID
        )
        """,
    ),
    (
        "borrowedunits:lent_unit_marked_available",
        ["BorrowingTransactions", "BorrowingItems", "BorrowedUnits", "ToolUnits"],
        """
        SELECT COUNT(*)
        FROM BorrowedUnits bu
        JOIN BorrowingItems bi ON bi.BorrowingItemID = bu.BorrowingItemID
        JOIN BorrowingTransactions bt ON bt.BorrowingID = bi.BorrowingID
        JOIN ToolUnits u ON u.ToolUnitID = bu.ToolUnitID
        WHERE bt.Status IN ('ACTIVE', 'OVERDUE') AND u.IsAvailable = 1
        """,
    ),
    (
        "materials:negative_stock",
        ["Materials"],
        "SELECT COUNT(*) FROM Materials WHERE CurrentQuantity < 0 OR ThresholdQuantity < 0",
    ),
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def run_existence_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    return [
        CheckResult(f"table:{table}", table in present, "present" if table in present else "missing")
        for table in EXPECTED_TABLES
    ]


def run_column_checks(engine: Engine) -> list[CheckResult]:
    inspector = inspect(engine)
    present = set(inspector.get_table_names())
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in present:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def run_integrity_checks(engine: Engine) -> list[CheckResult]:
    present = set(inspect(engine).get_table_names())
    checks: list[CheckResult] = []
    for name, tables, sql in INTEGRITY_QUERIES:
        if not all(table in present for table in tables):
            checks.append(CheckResult(name, False, "table missing"))
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine) -> None:
    _print_section("Row Counts")
    present = set(inspect(engine).get_table_names())
    for table in EXPECTED_TABLES:
        if table not in present:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, sample_size: int) -> None:
    _print_section("Sample Values")
    present = set(inspect(engine).get_table_names())
    sample_size = max(1, sample_size)

    if "BorrowingTransactions" in present:
        rows = _rows(
            engine,
            """
            SELECT BorrowingID, BorrowingNumber, BorrowerName, Status, DueDate
            FROM BorrowingTransactions
            ORDER BY BorrowingID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("BorrowingTransactions (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "ActivityLogs" in present:
        rows = _rows(
            engine,
            """
            SELECT ActivityID, EntityType, EntityID, Action, ActorName, CreatedAt
            FROM ActivityLogs
            ORDER BY ActivityID DESC
            LIMIT :n
            """,
            {"n": sample_size},
        )
        print("ActivityLogs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Tool ledger DB overview")
    parser.add_argument("--db-url", default=os.environ.get("TOOL_LEDGER_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("TOOL_LEDGER_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    integrity = run_integrity_checks(engine)
    _print_results("Table Existence", run_existence_checks(engine))
    _print_results("Column Checks", run_column_checks(engine))
    _print_results("Integrity Checks", integrity)
    _print_row_counts(engine)
    _print_samples(engine, args.samples)
    return 0 if all(check.ok for check in integrity) else 1


if __name__ == "__main__":
    sys.exit(main())
