"""
Pytest configuration and shared fixtures for pgshift tests.

Workflows run against the in-memory catalog from ``tests.fakes``; the
two sample tables are ``public.orders`` (a plain heap with 25 rows) and
``public.sales`` (range partitioned by ``sold_on`` with 30 rows).
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List

import pytest
import yaml

from pgshift.config import WorkflowConfig
from pgshift.database.introspection import (
    PartitionBound,
    PartitionChild,
    PartitionInfo,
)
from pgshift.descriptors.model import (
    BoundSentinel,
    ColumnDescriptor,
    ConstraintDescriptor,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    TableDefinition,
    TableKind,
)
from pgshift.ledger import InMemoryLedgerStore, OperationLedger
from pgshift.orchestrator import EvolutionOrchestrator
from pgshift.synthesis.engine import SynthesisEngine
from tests.fakes import FakeClock, FakeDatabase, FakeIntrospector, FakeOperations, FakeTable


# ============================================================================
# Descriptor Fixtures
# ============================================================================

@pytest.fixture
def orders_definition() -> TableDefinition:
    """Plain heap table with a primary key and a check constraint."""
    return TableDefinition(
        name="orders",
        schema="public",
        columns=[
            ColumnDescriptor(name="id", type="bigint", nullable=False),
            ColumnDescriptor(name="customer_id", type="bigint"),
            ColumnDescriptor(name="status", type="text"),
            ColumnDescriptor(name="note", type="text"),
        ],
        constraints=[
            ConstraintDescriptor(name="orders_pkey", kind="primary", columns=["id"]),
            ConstraintDescriptor(
                name="orders_note_check", kind="check", check_expression="length(note) < 200"
            ),
        ],
    )


@pytest.fixture
def sales_definition() -> TableDefinition:
    """Range-partitioned table with one partition per year."""
    return TableDefinition(
        name="sales",
        schema="public",
        kind=TableKind.PARTITIONED,
        columns=[
            ColumnDescriptor(name="id", type="bigint", nullable=False),
            ColumnDescriptor(name="sold_on", type="date", nullable=False),
            ColumnDescriptor(name="amount", type="numeric", precision=12, scale=2),
        ],
        constraints=[
            ConstraintDescriptor(name="sales_pkey", kind="primary", columns=["id", "sold_on"]),
        ],
        partitioning=PartitionScheme(strategy=PartitionStrategy.RANGE, key=["sold_on"]),
        partitions=[
            PartitionDescriptor(name="p2024", values=[date(2025, 1, 1)]),
            PartitionDescriptor(name="p2025", values=[date(2026, 1, 1)]),
        ],
    )


@pytest.fixture
def engine() -> SynthesisEngine:
    return SynthesisEngine()


# ============================================================================
# In-memory Database Fixtures
# ============================================================================

def order_rows(count: int = 25) -> List[Dict[str, Any]]:
    return [
        {"id": i, "customer_id": 100 + i % 7, "status": "new", "note": f"order {i}"}
        for i in range(1, count + 1)
    ]


def sale_rows(count: int = 30) -> List[Dict[str, Any]]:
    start = date(2024, 1, 1)
    return [
        {"id": i, "sold_on": start + timedelta(days=i * 20), "amount": Decimal("9.99")}
        for i in range(1, count + 1)
    ]


def sales_partition_info() -> PartitionInfo:
    return PartitionInfo(
        strategy=PartitionStrategy.RANGE,
        key=["sold_on"],
        key_definition="RANGE (sold_on)",
        children=[
            PartitionChild(
                schema="public",
                name="sales_p2024",
                bound=PartitionBound(lower=(BoundSentinel.MINVALUE,), upper=("2025-01-01",)),
                raw_bound="FOR VALUES FROM (MINVALUE) TO ('2025-01-01')",
            ),
            PartitionChild(
                schema="public",
                name="sales_p2025",
                bound=PartitionBound(lower=("2025-01-01",), upper=("2026-01-01",)),
                raw_bound="FOR VALUES FROM ('2025-01-01') TO ('2026-01-01')",
            ),
        ],
    )


@pytest.fixture
def database(orders_definition, sales_definition) -> FakeDatabase:
    """Catalog holding ``orders`` and ``sales`` with its two partitions."""
    db = FakeDatabase()
    db.tablespaces.add("fast_ts")
    db.add(FakeTable.from_definition(orders_definition, order_rows()))

    sales = db.add(FakeTable.from_definition(sales_definition, sale_rows()))
    sales.partition_info = sales_partition_info()
    for child in sales.partition_info.children:
        db.add(FakeTable(schema="public", name=child.name, columns=list(sales.columns)))
    return db


@pytest.fixture
def introspector(database) -> FakeIntrospector:
    return FakeIntrospector(database)


@pytest.fixture
def operations(database) -> FakeOperations:
    return FakeOperations(database)


# ============================================================================
# Ledger and Orchestrator Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def ledger(ledger_store, clock) -> OperationLedger:
    return OperationLedger(ledger_store, clock=clock)


@pytest.fixture
def settings() -> WorkflowConfig:
    """Small batches so copies and rewrites take several rounds."""
    return WorkflowConfig(batch_size=10, parallel_degree=2)


@pytest.fixture
def orchestrator(ledger, operations, introspector, engine, settings) -> EvolutionOrchestrator:
    return EvolutionOrchestrator(
        ledger,
        operations,
        introspector,
        engine=engine,
        settings=settings,
    )


# ============================================================================
# File Fixtures
# ============================================================================

@pytest.fixture
def descriptor_file(tmp_path):
    """YAML descriptor file with two valid tables."""
    path = tmp_path / "tables.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "tables": [
                    {
                        "name": "customers",
                        "schema": "public",
                        "columns": [
                            {"name": "id", "type": "bigint", "nullable": False},
                            {"name": "email", "type": "varchar2", "length": 320},
                        ],
                        "constraints": [
                            {"name": "customers_pkey", "kind": "primary", "columns": ["id"]},
                        ],
                    },
                    {
                        "name": "invoices",
                        "schema": "public",
                        "columns": [
                            {"name": "id", "type": "bigint", "nullable": False},
                            {"name": "customer_id", "type": "bigint", "nullable": False},
                            {"name": "total", "type": "number", "precision": 12, "scale": 2},
                        ],
                        "constraints": [
                            {"name": "invoices_pkey", "kind": "primary", "columns": ["id"]},
                            {
                                "name": "invoices_customer_fk",
                                "kind": "foreign",
                                "columns": ["customer_id"],
                                "references_table": "customers",
                                "references_columns": ["id"],
                                "on_delete": "cascade",
                            },
                        ],
                    },
                ]
            },
            sort_keys=False,
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config_file(tmp_path):
    """Configuration file with a database section and small batches."""
    path = tmp_path / "pgshift.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "database": {
                    "host": "localhost",
                    "database": "app",
                    "user": "app",
                    "password": "${PGSHIFT_TEST_PASSWORD}",
                },
                "workflows": {"batch_size": 500, "parallel_degree": 2},
                "ledger": {"schema_name": "evolution", "retention_days": 14},
            }
        ),
        encoding="utf-8",
    )
    return path
