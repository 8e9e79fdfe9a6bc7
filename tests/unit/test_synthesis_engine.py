"""
Unit tests for the DDL synthesis engine and its clause renderers.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from pgshift.descriptors.loader import definition_to_dict, load_definitions
from pgshift.descriptors.model import (
    ColumnDescriptor,
    Compression,
    ConstraintDescriptor,
    IdentityMode,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    SqlExpression,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    TableProperties,
    TemporaryScope,
)
from pgshift.exceptions import SynthesisError, UnsafeExpressionError, ValidationError
from pgshift.synthesis.clauses import render_type
from pgshift.synthesis.engine import ConversionMode, SynthesisEngine, join_statements
from pgshift.synthesis.literals import qualify, quote_ident, render_literal


def items(**kwargs):
    kwargs.setdefault("name", "items")
    kwargs.setdefault("schema", "public")
    kwargs.setdefault("columns", [ColumnDescriptor(name="id", type="bigint", nullable=False)])
    return TableDefinition(**kwargs)


@pytest.fixture
def sale_lines():
    """Reference-partitioned child of ``sales``."""
    return TableDefinition(
        name="sale_lines",
        schema="public",
        kind=TableKind.PARTITIONED,
        columns=[
            ColumnDescriptor(name="id", type="bigint", nullable=False),
            ColumnDescriptor(name="sale_id", type="bigint", nullable=False),
            ColumnDescriptor(name="sale_day", type="date", nullable=False),
        ],
        constraints=[
            ConstraintDescriptor(
                name="lines_sale_fk",
                kind="foreign",
                columns=["sale_id", "sale_day"],
                references_table="sales",
                references_columns=["id", "sold_on"],
            )
        ],
        partitioning=PartitionScheme(
            strategy=PartitionStrategy.REFERENCE, reference_constraint="lines_sale_fk"
        ),
    )


# ============================================================================
# Single tables
# ============================================================================

class TestHeapSynthesis:
    """Plain tables, columns and constraints."""

    def test_orders(self, engine, orders_definition):
        result = engine.synthesize(orders_definition)

        assert result.text == (
            "CREATE TABLE public.orders (\n"
            "    id bigint NOT NULL,\n"
            "    customer_id bigint,\n"
            "    status text,\n"
            "    note text,\n"
            "    CONSTRAINT orders_pkey PRIMARY KEY (id),\n"
            "    CONSTRAINT orders_note_check CHECK (length(note) < 200)\n"
            ");\n"
        )
        assert result.target == "public.orders"
        assert result.kind == "heap"
        assert len(result.statements) == 1

    def test_rendering_is_deterministic(self, orders_definition):
        first = SynthesisEngine().synthesize(orders_definition)
        second = SynthesisEngine().synthesize(orders_definition)
        assert first == second

    def test_defaults_identity_and_quoting(self, engine):
        definition = items(
            columns=[
                ColumnDescriptor(name="id", type="bigint", identity=IdentityMode.ALWAYS, nullable=False),
                ColumnDescriptor(name="OrderRef", type="varchar", length=40),
                ColumnDescriptor(name="state", type="text", default="new"),
                ColumnDescriptor(name="active", type="boolean", default=True),
                ColumnDescriptor(name="created", type="timestamptz", default=SqlExpression(expression="now()")),
                ColumnDescriptor(name="valid_from", type="date", default=date(2025, 1, 1)),
            ]
        )

        text = engine.synthesize(definition).text

        assert "    id bigint GENERATED ALWAYS AS IDENTITY NOT NULL,\n" in text
        assert '    "OrderRef" varchar(40),\n' in text
        assert "    state text DEFAULT 'new',\n" in text
        assert "    active boolean DEFAULT TRUE,\n" in text
        assert "    created timestamp with time zone DEFAULT now(),\n" in text
        assert "    valid_from date DEFAULT DATE '2025-01-01'\n" in text

    def test_storage_options(self, engine):
        definition = items(
            columns=[
                ColumnDescriptor(name="id", type="bigint", nullable=False),
                ColumnDescriptor(name="body", type="text"),
            ],
            properties=TableProperties(
                tablespace="fast_ts",
                fill_factor=80,
                parallel_degree=4,
                compression=Compression.LZ4,
                logging="unlogged",
            ),
        )

        statement = engine.synthesize(definition).statements[0]

        assert statement.startswith("CREATE UNLOGGED TABLE public.items (")
        assert "    id bigint NOT NULL,\n" in statement
        assert "    body text COMPRESSION lz4\n" in statement
        assert statement.endswith(")\nWITH (fillfactor=80, parallel_workers=4)\nTABLESPACE fast_ts")

    def test_comments(self, engine):
        definition = items(
            columns=[ColumnDescriptor(name="id", type="bigint", comment="Primary key")],
            properties=TableProperties(comment="It's a table"),
        )

        statements = engine.synthesize(definition).statements

        assert statements[1:] == (
            "COMMENT ON TABLE public.items IS 'It''s a table'",
            "COMMENT ON COLUMN public.items.id IS 'Primary key'",
        )

    def test_foreign_key_clause(self, engine, descriptor_file):
        invoices = load_definitions(descriptor_file)[1]

        text = engine.synthesize(invoices).text

        assert "    total numeric(12,2),\n" in text
        assert (
            "    CONSTRAINT invoices_customer_fk FOREIGN KEY (customer_id) "
            "REFERENCES public.customers (id) ON DELETE CASCADE\n"
        ) in text

    def test_deferrable_unique(self, engine):
        definition = items(
            constraints=[
                ConstraintDescriptor(
                    name="items_id_key", kind="unique", columns=["id"], deferrable=True, initially_deferred=True
                )
            ]
        )
        assert "CONSTRAINT items_id_key UNIQUE (id) DEFERRABLE INITIALLY DEFERRED" in engine.synthesize(definition).text

    def test_invalid_definition_produces_no_text(self, engine):
        definition = items(columns=[ColumnDescriptor(name="select", type="text")])
        with pytest.raises(ValidationError) as exc_info:
            engine.synthesize(definition)
        assert exc_info.value.violations[0].code == "identifier.reserved"

    def test_unsafe_check_rejected(self, engine):
        definition = items(
            constraints=[
                ConstraintDescriptor(name="items_check", kind="check", check_expression="id > 0); drop table x; --")
            ]
        )
        with pytest.raises(ValidationError) as exc_info:
            engine.synthesize(definition)
        assert [v.code for v in exc_info.value.violations] == ["expression.unsafe"]

    def test_custom_sanitizer(self, orders_definition):
        engine = SynthesisEngine(sanitizer=lambda expression: expression.upper())
        assert "CHECK (LENGTH(NOTE) < 200)" in engine.synthesize(orders_definition).text


class TestTableKinds:
    """One renderer per table kind."""

    def test_index_organized(self, engine, orders_definition):
        definition = orders_definition.model_copy(update={"kind": TableKind.INDEX_ORGANIZED})

        statements = engine.synthesize_index_organized_ddl(definition).statements

        assert statements[0].endswith(")\nWITH (fillfactor=100)")
        assert statements[1] == "ALTER TABLE public.orders CLUSTER ON orders_pkey"

    @pytest.mark.parametrize(
        "scope,clause",
        [
            (TemporaryScope.TRANSACTION, "ON COMMIT DELETE ROWS"),
            (TemporaryScope.SESSION, "ON COMMIT PRESERVE ROWS"),
        ],
    )
    def test_temporary(self, engine, scope, clause):
        definition = items(
            name="scratch",
            kind=TableKind.TEMPORARY,
            properties=TableProperties(temporary_scope=scope),
        )

        statement = engine.synthesize_temporary_ddl(definition).statements[0]

        assert statement == f"CREATE TEMPORARY TABLE scratch (\n    id bigint NOT NULL\n)\n{clause}"

    def test_append_only(self, engine):
        statements = engine.synthesize_append_only_ddl(items(kind=TableKind.APPEND_ONLY)).statements

        assert len(statements) == 4
        assert statements[1].startswith("CREATE FUNCTION public.items_append_only_guard() RETURNS trigger")
        assert statements[2] == (
            "CREATE TRIGGER items_append_only\n"
            "BEFORE UPDATE OR DELETE ON public.items\n"
            "FOR EACH ROW EXECUTE FUNCTION public.items_append_only_guard()"
        )
        assert statements[3] == (
            "CREATE TRIGGER items_no_truncate\n"
            "BEFORE TRUNCATE ON public.items\n"
            "FOR EACH STATEMENT EXECUTE FUNCTION public.items_append_only_guard()"
        )

    def test_columnar(self, engine):
        statement = engine.synthesize_columnar_ddl(items(kind=TableKind.COLUMNAR)).statements[0]
        assert statement.endswith(")\nUSING columnar")

    def test_semi_structured(self, engine):
        definition = items(
            kind=TableKind.SEMI_STRUCTURED,
            columns=[
                ColumnDescriptor(name="id", type="bigint", nullable=False),
                ColumnDescriptor(name="payload", type="json"),
            ],
        )

        statements = engine.synthesize_semi_structured_ddl(definition).statements

        assert "    payload jsonb,\n" in statements[0]
        assert (
            "    CONSTRAINT items_payload_json CHECK (jsonb_typeof(payload) IN ('object', 'array'))\n"
        ) in statements[0]
        assert statements[1] == "CREATE INDEX items_payload_gin ON public.items USING gin (payload jsonb_path_ops)"

    def test_spatial(self, engine):
        definition = items(
            kind=TableKind.SPATIAL,
            columns=[
                ColumnDescriptor(name="id", type="bigint", nullable=False),
                ColumnDescriptor(name="geom", type="sdo_geometry"),
            ],
            properties=TableProperties(srid=3857),
        )

        statements = engine.synthesize_spatial_ddl(definition).statements

        assert "    geom geometry(Geometry,3857)\n" in statements[0]
        assert statements[1] == "CREATE INDEX items_geom_gist ON public.items USING gist (geom)"

    def test_kind_mismatch(self, engine, orders_definition):
        with pytest.raises(SynthesisError, match="is a heap table, not spatial"):
            engine.synthesize_spatial_ddl(orders_definition)

    def test_heap_entry_point(self, engine, orders_definition, sales_definition):
        assert engine.synthesize_heap_ddl(orders_definition).text == engine.synthesize(orders_definition).text
        with pytest.raises(SynthesisError, match="not heap"):
            engine.synthesize_heap_ddl(sales_definition)


# ============================================================================
# Partitioning
# ============================================================================

class TestPartitionedSynthesis:
    """Range, list, hash, composite and reference partitioning."""

    def test_range(self, engine, sales_definition):
        statements = engine.synthesize_partitioned_ddl(sales_definition).statements

        assert statements == (
            "CREATE TABLE public.sales (\n"
            "    id bigint NOT NULL,\n"
            "    sold_on date NOT NULL,\n"
            "    amount numeric(12,2),\n"
            "    CONSTRAINT sales_pkey PRIMARY KEY (id, sold_on)\n"
            ")\n"
            "PARTITION BY RANGE (sold_on)",
            "CREATE TABLE public.sales_p2024 PARTITION OF public.sales\n"
            "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')",
            "CREATE TABLE public.sales_p2025 PARTITION OF public.sales\n"
            "FOR VALUES FROM (DATE '2025-01-01') TO (DATE '2026-01-01')",
        )

    def test_list_with_default(self, engine):
        definition = items(
            kind=TableKind.PARTITIONED,
            columns=[ColumnDescriptor(name="region", type="text")],
            partitioning=PartitionScheme(strategy=PartitionStrategy.LIST, key=["region"]),
            partitions=[
                PartitionDescriptor(name="east", values=["ny", "ma"], tablespace="fast_ts"),
                PartitionDescriptor(name="other", is_default=True),
            ],
        )

        statements = engine.synthesize(definition).statements

        assert statements[1] == (
            "CREATE TABLE public.items_east PARTITION OF public.items\n"
            "FOR VALUES IN ('ny', 'ma')\n"
            "TABLESPACE fast_ts"
        )
        assert statements[2] == "CREATE TABLE public.items_other PARTITION OF public.items\nDEFAULT"

    def test_counted_hash(self, engine):
        definition = items(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(
                strategy=PartitionStrategy.HASH, key=["id"], count=2, tablespaces=["ts_a", "ts_b"]
            ),
        )

        statements = engine.synthesize(definition).statements

        assert statements[0].endswith(")\nPARTITION BY HASH (id)")
        assert statements[1:] == (
            "CREATE TABLE public.items_p0 PARTITION OF public.items\n"
            "FOR VALUES WITH (MODULUS 2, REMAINDER 0)\n"
            "TABLESPACE ts_a",
            "CREATE TABLE public.items_p1 PARTITION OF public.items\n"
            "FOR VALUES WITH (MODULUS 2, REMAINDER 1)\n"
            "TABLESPACE ts_b",
        )

    def test_composite(self, engine, sales_definition):
        spec = SubpartitionSpec(strategy=PartitionStrategy.HASH, key=["id"], count=2)
        composite = engine.composite_definition(sales_definition, spec)

        statements = engine.synthesize(composite).statements

        assert len(statements) == 7
        assert statements[1] == (
            "CREATE TABLE public.sales_p2024 PARTITION OF public.sales\n"
            "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')\n"
            "PARTITION BY HASH (id)"
        )
        assert statements[3] == (
            "CREATE TABLE public.sales_p2024_sp1 PARTITION OF public.sales_p2024\n"
            "FOR VALUES WITH (MODULUS 2, REMAINDER 1)"
        )

    def test_partition_bounds(self, engine, sales_definition, orders_definition):
        bounds = engine.partition_bounds(sales_definition)

        assert [(p.name, b) for p, b in bounds] == [
            ("p2024", "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')"),
            ("p2025", "FOR VALUES FROM (DATE '2025-01-01') TO (DATE '2026-01-01')"),
        ]
        assert engine.partition_bounds(orders_definition) == []

    def test_bounds_stay_typed_after_json_round_trip(self, engine, sales_definition):
        """Stored definitions carry dates as strings; bounds still render as DATE literals."""
        stored = TableDefinition.model_validate(definition_to_dict(sales_definition))

        assert stored.partitions[0].values == ("2025-01-01",)
        assert [b for _, b in engine.partition_bounds(stored)] == [
            "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')",
            "FOR VALUES FROM (DATE '2025-01-01') TO (DATE '2026-01-01')",
        ]

    def test_unparseable_bound_string_is_kept(self, engine, sales_definition):
        odd = sales_definition.model_copy(
            update={"partitions": (PartitionDescriptor(name="p", values=["infinity"]),)}
        )
        assert engine.partition_bounds(odd)[0][1] == "FOR VALUES FROM (MINVALUE) TO ('infinity')"

    def test_new_range_partition_follows_last(self, engine, sales_definition):
        """String bounds from JSON are typed like the reflected ones."""
        added = PartitionDescriptor(name="p2026", values=["2027-01-01"])

        assert engine.partition_bound(sales_definition, added) == (
            "FOR VALUES FROM (DATE '2026-01-01') TO (DATE '2027-01-01')"
        )
        text = engine.generate_partition_ddl(sales_definition, added)
        assert text.target == "public.sales_p2026"
        assert text.kind == "partition"
        assert text.statements == (
            "CREATE TABLE public.sales_p2026 PARTITION OF public.sales\n"
            "FOR VALUES FROM (DATE '2026-01-01') TO (DATE '2027-01-01')",
        )

    def test_new_list_partition_goes_before_default(self, engine):
        definition = items(
            kind=TableKind.PARTITIONED,
            columns=[ColumnDescriptor(name="region", type="text")],
            partitioning=PartitionScheme(strategy=PartitionStrategy.LIST, key=["region"]),
            partitions=[
                PartitionDescriptor(name="east", values=["ny"]),
                PartitionDescriptor(name="other", is_default=True),
            ],
        )

        extended = engine.with_partition(definition, PartitionDescriptor(name="west", values=["ca", "or"]))

        assert [p.name for p in extended.partitions] == ["east", "west", "other"]
        assert engine.partition_bound(definition, PartitionDescriptor(name="west", values=["ca"])) == (
            "FOR VALUES IN ('ca')"
        )

    def test_overlapping_list_value_rejected(self, engine):
        definition = items(
            kind=TableKind.PARTITIONED,
            columns=[ColumnDescriptor(name="region", type="text")],
            partitioning=PartitionScheme(strategy=PartitionStrategy.LIST, key=["region"]),
            partitions=[PartitionDescriptor(name="east", values=["ny"])],
        )

        with pytest.raises(ValidationError):
            engine.partition_bound(definition, PartitionDescriptor(name="again", values=["ny"]))

    def test_partitions_cannot_be_added_to(self, engine, orders_definition):
        with pytest.raises(SynthesisError, match="is not partitioned"):
            engine.with_partition(orders_definition, PartitionDescriptor(name="p", values=[1]))

        hashed = items(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(strategy=PartitionStrategy.HASH, key=["id"], count=2),
        )
        with pytest.raises(SynthesisError, match="cannot be added one at a time"):
            engine.with_partition(hashed, PartitionDescriptor(name="p2"))

    def test_partitioned_definition_rejects_non_heap(self, engine, orders_definition):
        temporary = orders_definition.model_copy(update={"kind": TableKind.TEMPORARY})
        scheme = PartitionScheme(strategy=PartitionStrategy.HASH, key=["id"], count=2)

        with pytest.raises(SynthesisError, match="only heap tables can be partitioned"):
            engine.partitioned_definition(temporary, scheme)

    def test_convert_to_partitioned_script(self, engine, orders_definition):
        scheme = PartitionScheme(strategy=PartitionStrategy.HASH, key=["id"], count=2)

        script = engine.generate_convert_to_partitioned_ddl(orders_definition, scheme, drop_retired=True)

        assert script.title == "Convert public.orders to hash partitioning"
        assert [step.name for step in script][-2:] == ["swap_names", "drop_retired"]
        assert "ALTER TABLE public.orders_new RENAME TO orders" in script.steps[3].statements

    def test_reference_partitioning(self, engine, sales_definition, sale_lines):
        statements = engine.synthesize(sale_lines, [sales_definition]).statements

        assert "REFERENCES public.sales (id, sold_on)" in statements[0]
        assert statements[0].endswith(")\nPARTITION BY RANGE (sale_day)")
        assert statements[1] == (
            "CREATE TABLE public.sale_lines_p2024 PARTITION OF public.sale_lines\n"
            "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')"
        )
        assert len(statements) == 3

    def test_reference_needs_parent(self, engine, sale_lines):
        with pytest.raises(SynthesisError, match="needs the definition of parent table sales"):
            engine.synthesize(sale_lines)

    def test_reference_key_must_be_referenced(self, engine, sales_definition, sale_lines):
        fk = sale_lines.constraints[0].model_copy(
            update={"columns": ("sale_id",), "references_columns": ("id",)}
        )
        child = sale_lines.model_copy(update={"constraints": (fk,)})

        with pytest.raises(SynthesisError, match="sold_on is not referenced by foreign key lines_sale_fk"):
            engine.synthesize(child, {"sales": sales_definition})


# ============================================================================
# Bulk, clone and conversion
# ============================================================================

class TestBulkAndClone:
    """Several tables at once, and structural copies."""

    def test_bulk(self, engine, descriptor_file):
        definitions = load_definitions(descriptor_file)

        result = engine.generate_bulk_ddl(definitions)

        assert result.kind == "bulk"
        assert result.target == "public.customers, public.invoices"
        assert len(result.statements) == 2
        assert result.text.startswith(
            "-- Generated DDL: 2 table(s)\n"
            "-- Tables: public.customers, public.invoices\n"
            "\n"
            "-- Table: public.customers (heap)\n"
            "CREATE TABLE public.customers (\n"
            "    id bigint NOT NULL,\n"
            "    email varchar(320),\n"
        )
        assert "\n-- Table: public.invoices (heap)\nCREATE TABLE public.invoices (" in result.text

    def test_bulk_empty(self, engine):
        with pytest.raises(SynthesisError, match="No definitions"):
            engine.generate_bulk_ddl([])

    def test_bulk_collects_violations(self, engine, orders_definition):
        broken = items(columns=[ColumnDescriptor(name="c", type="integer", length=3)])

        with pytest.raises(ValidationError) as exc_info:
            engine.generate_bulk_ddl([orders_definition, broken, orders_definition])

        found = [(v.path, v.code) for v in exc_info.value.violations]
        assert ("items.columns[0]", "type.length") in found
        assert ("orders", "table.duplicate") in found

    def test_bulk_resolves_earlier_parents(self, engine, sales_definition, sale_lines):
        result = engine.generate_bulk_ddl([sales_definition, sale_lines])
        assert "CREATE TABLE public.sale_lines_p2025 PARTITION OF public.sale_lines" in result.text

    def test_clone_with_data(self, engine, orders_definition):
        result = engine.generate_clone_ddl(orders_definition, "orders_copy", include_data=True)

        assert result.target == "public.orders_copy"
        assert "CONSTRAINT orders_copy_pkey PRIMARY KEY (id)" in result.statements[0]
        assert "CONSTRAINT orders_copy_note_check CHECK" in result.statements[0]
        assert result.statements[-1] == (
            "INSERT INTO public.orders_copy (id, customer_id, status, note)\n"
            "SELECT id, customer_id, status, note FROM public.orders"
        )

    def test_clone_renames_self_reference(self, engine, orders_definition):
        definition = orders_definition.model_copy(
            update={
                "columns": orders_definition.columns
                + (ColumnDescriptor(name="parent_id", type="bigint"),),
                "constraints": orders_definition.constraints
                + (
                    ConstraintDescriptor(
                        name="fk_parent",
                        kind="foreign",
                        columns=["parent_id"],
                        references_table="orders",
                        references_columns=["id"],
                    ),
                ),
            }
        )

        clone = engine.clone_definition(definition, "orders_new", new_schema="staging")

        fk = clone.constraint("orders_new_fk_parent")
        assert fk is not None
        assert fk.references_table == "orders_new"
        assert clone.schema_name == "staging"
        assert definition.constraint("fk_parent").references_table == "orders"

    def test_copy_overrides_identity(self, engine, orders_definition):
        target = orders_definition.model_copy(
            update={
                "name": "orders_new",
                "columns": (ColumnDescriptor(name="id", type="bigint", identity=IdentityMode.ALWAYS),)
                + orders_definition.columns[1:],
            }
        )
        assert "OVERRIDING SYSTEM VALUE" in engine.copy_data_statement(orders_definition, target)


class TestSubpartitionScripts:
    """Conversion of an existing partitioned table."""

    @pytest.fixture
    def spec(self):
        return SubpartitionSpec(strategy=PartitionStrategy.HASH, key=["id"], count=2)

    def test_rebuild(self, engine, sales_definition, spec):
        script = engine.generate_subpartition_script(
            sales_definition, spec, ConversionMode.REBUILD, drop_retired=True, parallel_degree=4
        )

        assert [s.name for s in script] == [
            "create_target",
            "copy_data",
            "analyze_target",
            "swap_names",
            "drop_retired",
        ]
        create = script.steps[0].statements
        assert create[0].startswith("CREATE TABLE public.sales_new (")
        assert "CONSTRAINT sales_new_pkey PRIMARY KEY (id, sold_on)" in create[0]
        assert len(create) == 7
        assert script.steps[1].is_parallel
        assert script.steps[3].statements == (
            "LOCK TABLE public.sales IN ACCESS EXCLUSIVE MODE",
            "ALTER TABLE public.sales RENAME TO sales_old",
            "ALTER TABLE public.sales_new RENAME TO sales",
        )
        assert script.steps[4].statements == ("DROP TABLE public.sales_old",)

    def test_online(self, engine, sales_definition, spec):
        script = engine.generate_subpartition_script(sales_definition, spec, "online")

        swap = script.steps[1]
        assert swap.name == "swap_p2024"
        assert swap.statements == (
            "LOCK TABLE public.sales_p2024 IN EXCLUSIVE MODE",
            "INSERT INTO public.sales_p2024_new (id, sold_on, amount)\n"
            "SELECT id, sold_on, amount FROM public.sales_p2024",
            "ALTER TABLE public.sales DETACH PARTITION public.sales_p2024",
            "ALTER TABLE public.sales_p2024 RENAME TO sales_p2024_old",
            "ALTER TABLE public.sales_p2024_new RENAME TO sales_p2024",
            "ALTER TABLE public.sales ATTACH PARTITION public.sales_p2024 "
            "FOR VALUES FROM (MINVALUE) TO (DATE '2025-01-01')",
        )
        assert script.steps[-1].statements == ("ANALYZE public.sales",)
        assert script.steps[-1].transactional is False

    def test_not_partitioned(self, engine, orders_definition, spec):
        with pytest.raises(SynthesisError, match="is not partitioned"):
            engine.generate_subpartition_script(orders_definition, spec, ConversionMode.ONLINE)

    def test_already_subpartitioned(self, engine, sales_definition, spec):
        composite = engine.composite_definition(sales_definition, spec)
        with pytest.raises(SynthesisError, match="already subpartitioned"):
            engine.composite_definition(composite, spec)

    def test_reference_scheme(self, engine, sale_lines, spec):
        with pytest.raises(SynthesisError, match="inherits its partitioning"):
            engine.composite_definition(sale_lines, spec)

    def test_invalid_subpartition_key(self, engine, sales_definition):
        spec = SubpartitionSpec(strategy=PartitionStrategy.HASH, key=["region"], count=2)
        with pytest.raises(ValidationError):
            engine.generate_subpartition_script(sales_definition, spec, ConversionMode.REBUILD)

    def test_derived_name_limit(self, engine, sales_definition, spec):
        with pytest.raises(SynthesisError, match="exceeds 63 bytes"):
            engine.generate_subpartition_script(
                sales_definition, spec, ConversionMode.REBUILD, target_suffix="_" + "x" * 60
            )

    def test_mode_must_be_known(self, engine, sales_definition, spec):
        with pytest.raises(ValueError):
            engine.generate_subpartition_script(sales_definition, spec, "sideways")


# ============================================================================
# Literals and types
# ============================================================================

class TestLiterals:
    """Identifier quoting and literal rendering."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "NULL"),
            (True, "TRUE"),
            (False, "FALSE"),
            (42, "42"),
            (Decimal("1E+2"), "100"),
            (Decimal("9.990"), "9.990"),
            (1.5, "1.5"),
            ("it's", "'it''s'"),
            (date(2025, 3, 1), "DATE '2025-03-01'"),
            (datetime(2025, 3, 1, 12, 0), "TIMESTAMP '2025-03-01 12:00:00'"),
            (datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc), "TIMESTAMPTZ '2025-03-01 12:00:00+00:00'"),
            (SqlExpression(expression=" now() "), "now()"),
        ],
    )
    def test_render_literal(self, value, expected):
        assert render_literal(value) == expected

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), Decimal("NaN"), object()])
    def test_unrenderable(self, value):
        with pytest.raises(SynthesisError):
            render_literal(value)

    def test_unsafe_expression(self):
        with pytest.raises(UnsafeExpressionError):
            render_literal(SqlExpression(expression="1; select 2"))

    def test_quote_ident(self):
        assert quote_ident("orders") == "orders"
        assert quote_ident("Orders") == '"Orders"'
        assert quote_ident('we"ird') == '"we""ird"'
        assert qualify("user", "public") == 'public."user"'
        with pytest.raises(SynthesisError):
            quote_ident("")

    @pytest.mark.parametrize(
        "column,expected",
        [
            (ColumnDescriptor(name="c", type="varchar"), "varchar"),
            (ColumnDescriptor(name="c", type="char"), "char(1)"),
            (ColumnDescriptor(name="c", type="numeric", precision=10), "numeric(10)"),
            (ColumnDescriptor(name="c", type="timestamptz", precision=3), "timestamp(3) with time zone"),
            (ColumnDescriptor(name="c", type="float"), "double precision"),
            (ColumnDescriptor(name="c", type="geometry"), "geometry(Geometry,4326)"),
        ],
    )
    def test_render_type(self, column, expected):
        assert render_type(column) == expected

    def test_join_statements(self):
        assert join_statements([]) == ""
        assert join_statements(["SELECT 1", "SELECT 2"]) == "SELECT 1;\n\nSELECT 2;\n"
