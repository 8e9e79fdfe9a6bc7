"""
Unit tests for table descriptors: model, validator, sanitizer and YAML loader.
"""

from datetime import date

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from pgshift.descriptors.loader import dump_definitions, load_definitions, parse_definitions
from pgshift.descriptors.model import (
    BaseType,
    BoundSentinel,
    ColumnDescriptor,
    ConstraintDescriptor,
    IdentityMode,
    PartitionDescriptor,
    PartitionScheme,
    PartitionStrategy,
    Placement,
    ReferentialAction,
    SqlExpression,
    SubpartitionSpec,
    TableDefinition,
    TableKind,
    TableProperties,
    effective_subpartitions,
)
from pgshift.descriptors.sanitize import default_sanitizer, needs_quoting
from pgshift.descriptors.validator import DescriptorValidator, validate_definition
from pgshift.exceptions import ConfigurationError, UnsafeExpressionError, ValidationError


def codes(definition, known=None):
    return {v.code for v in DescriptorValidator().validate(definition, known)}


def table(**kwargs):
    kwargs.setdefault("name", "items")
    kwargs.setdefault("columns", [ColumnDescriptor(name="id", type="bigint", nullable=False)])
    return TableDefinition(**kwargs)


# ============================================================================
# Model
# ============================================================================

class TestColumnDescriptor:
    """Column construction and type normalization."""

    @pytest.mark.parametrize(
        "spelling,expected",
        [
            ("varchar2", BaseType.VARCHAR),
            ("NUMBER", BaseType.NUMERIC),
            ("double precision", BaseType.DOUBLE),
            ("timestamp with time zone", BaseType.TIMESTAMPTZ),
            ("jsonb", BaseType.JSONB),
        ],
    )
    def test_type_aliases(self, spelling, expected):
        column = ColumnDescriptor(name="c", type=spelling)
        assert column.data_type == expected

    def test_unknown_type(self):
        with pytest.raises(PydanticValidationError):
            ColumnDescriptor(name="c", type="money")

    def test_descriptors_are_frozen(self):
        column = ColumnDescriptor(name="c", type="text")
        with pytest.raises(PydanticValidationError):
            column.name = "d"

    def test_unknown_fields_rejected(self):
        with pytest.raises(PydanticValidationError):
            ColumnDescriptor(name="c", type="text", colour="red")


class TestTableDefinition:
    """Derived names and partition expansion."""

    def test_qualified_name(self, orders_definition):
        assert orders_definition.qualified_name == "public.orders"
        temp = table(schema="public", kind=TableKind.TEMPORARY)
        assert temp.qualified_name == "items"

    def test_lookups_ignore_case(self, orders_definition):
        assert orders_definition.column("NOTE").name == "note"
        assert orders_definition.constraint("ORDERS_PKEY").kind.value == "primary"
        assert orders_definition.primary_key.columns == ("id",)
        assert orders_definition.column("missing") is None

    def test_bound_sentinels_coerced(self):
        partition = PartitionDescriptor(name="pmax", values=["maxvalue"])
        assert partition.values == (BoundSentinel.MAXVALUE,)

    def test_counted_hash_partitions(self):
        definition = table(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(
                strategy=PartitionStrategy.HASH,
                key=["id"],
                count=4,
                tablespaces=["ts_a", "ts_b"],
            ),
        )

        partitions = definition.effective_partitions()

        assert [p.name for p in partitions] == ["p0", "p1", "p2", "p3"]
        assert [p.tablespace for p in partitions] == ["ts_a", "ts_b", "ts_a", "ts_b"]

    def test_subpartition_placement(self):
        explicit = SubpartitionSpec(
            strategy=PartitionStrategy.HASH,
            key=["id"],
            count=3,
            tablespaces=["a", "b"],
            placement=Placement.EXPLICIT,
        )
        assert [s.tablespace for s in effective_subpartitions(explicit)] == ["a", "b", None]

        spread = explicit.model_copy(update={"placement": Placement.ROUND_ROBIN})
        assert [s.tablespace for s in effective_subpartitions(spread)] == ["a", "b", "a"]

    def test_auxiliary_names(self):
        append_only = table(kind=TableKind.APPEND_ONLY)
        assert append_only.auxiliary_names() == [
            "items_append_only_guard",
            "items_append_only",
            "items_no_truncate",
        ]

        documents = table(
            kind=TableKind.SEMI_STRUCTURED,
            columns=[
                ColumnDescriptor(name="id", type="bigint"),
                ColumnDescriptor(name="payload", type="jsonb"),
            ],
        )
        assert documents.auxiliary_names() == ["items_payload_json", "items_payload_gin"]


# ============================================================================
# Validator
# ============================================================================

class TestValidatorNames:
    """Identifier rules."""

    def test_fixtures_are_valid(self, orders_definition, sales_definition):
        assert validate_definition(orders_definition) == []
        assert validate_definition(sales_definition) == []

    def test_reserved_word(self):
        definition = table(columns=[ColumnDescriptor(name="select", type="text")])
        assert "identifier.reserved" in codes(definition)

    def test_invalid_characters(self):
        assert "identifier.charset" in codes(table(name="bad-name"))

    def test_length_limit(self):
        definition = table(name="t" * 64)
        violations = DescriptorValidator().validate(definition)

        assert [v.code for v in violations] == ["identifier.length"]
        assert violations[0].path == "name"
        assert DescriptorValidator(max_identifier_length=64).is_valid(definition)

    def test_duplicate_columns_ignore_case(self):
        definition = table(
            columns=[
                ColumnDescriptor(name="id", type="bigint"),
                ColumnDescriptor(name="ID", type="bigint"),
            ]
        )
        assert "column.duplicate" in codes(definition)

    def test_derived_partition_name_too_long(self):
        definition = table(
            name="t" * 61,
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(strategy=PartitionStrategy.HASH, key=["id"], count=2),
        )
        violations = DescriptorValidator().validate(definition)
        assert {v.path for v in violations if v.code == "identifier.length"} == {
            "partitions[0].name",
            "partitions[1].name",
        }


class TestValidatorColumns:
    """Type modifiers, identity and defaults."""

    def test_no_columns(self):
        assert codes(table(columns=[])) == {"columns.empty"}

    @pytest.mark.parametrize(
        "column,code",
        [
            (ColumnDescriptor(name="c", type="integer", length=10), "type.length"),
            (ColumnDescriptor(name="c", type="numeric", precision=4, scale=6), "type.scale"),
            (ColumnDescriptor(name="c", type="numeric", scale=2), "type.scale"),
            (ColumnDescriptor(name="c", type="text", precision=3), "type.precision"),
            (ColumnDescriptor(name="c", type="text", identity=IdentityMode.ALWAYS), "identity.type"),
            (
                ColumnDescriptor(name="c", type="bigint", identity=IdentityMode.BY_DEFAULT, default=1),
                "identity.default",
            ),
            (ColumnDescriptor(name="c", type="double", default=float("nan")), "literal.non_finite"),
            (ColumnDescriptor(name="c", type="text", default="a\x00b"), "literal.nul"),
            (
                ColumnDescriptor(name="c", type="text", default=SqlExpression(expression="1; drop table x")),
                "expression.unsafe",
            ),
        ],
    )
    def test_column_violations(self, column, code):
        assert code in codes(table(columns=[column]))

    def test_valid_modifiers(self):
        definition = table(
            columns=[
                ColumnDescriptor(name="amount", type="numeric", precision=12, scale=2),
                ColumnDescriptor(name="code", type="char", length=3),
                ColumnDescriptor(name="at", type="timestamptz", precision=3),
                ColumnDescriptor(name="n", type="bigint", identity=IdentityMode.ALWAYS, nullable=False),
                ColumnDescriptor(name="created", type="timestamptz", default=SqlExpression(expression="now()")),
            ]
        )
        assert codes(definition) == set()


class TestValidatorConstraints:
    """Keys, checks and foreign keys."""

    def test_two_primary_keys(self):
        definition = table(
            constraints=[
                ConstraintDescriptor(name="a_pkey", kind="primary", columns=["id"]),
                ConstraintDescriptor(name="b_pkey", kind="primary", columns=["id"]),
            ]
        )
        assert "constraint.primary_key" in codes(definition)

    def test_unknown_constraint_column(self):
        definition = table(constraints=[ConstraintDescriptor(name="u", kind="unique", columns=["nope"])])
        assert "constraint.unknown_column" in codes(definition)

    def test_check_needs_expression(self):
        definition = table(constraints=[ConstraintDescriptor(name="c", kind="check")])
        assert "constraint.check" in codes(definition)

    def test_foreign_key_arity(self):
        definition = table(
            constraints=[
                ConstraintDescriptor(
                    name="fk",
                    kind="foreign",
                    columns=["id"],
                    references_table="parents",
                    references_columns=["a", "b"],
                )
            ]
        )
        assert "foreign_key.arity" in codes(definition)

    def test_foreign_key_resolved_against_known(self):
        parent = table(name="parents")
        child = table(
            constraints=[
                ConstraintDescriptor(
                    name="fk",
                    kind="foreign",
                    columns=["id"],
                    references_table="parents",
                    references_columns=["parent_id"],
                    on_delete=ReferentialAction.CASCADE,
                )
            ]
        )

        assert codes(child) == set()
        assert codes(child, {"parents": parent}) == {"foreign_key.unknown_column"}

    def test_check_raises_with_every_violation(self):
        definition = table(
            name="select",
            columns=[ColumnDescriptor(name="c", type="integer", length=2)],
        )

        with pytest.raises(ValidationError) as exc_info:
            DescriptorValidator().check(definition)

        assert len(exc_info.value.violations) == 2
        assert exc_info.value.message.startswith("2 descriptor violations: ")
        assert "name: 'select' is a reserved word" in exc_info.value.message


class TestValidatorPartitioning:
    """Schemes, bounds and composite partitioning."""

    def test_range_bounds_must_increase(self, sales_definition):
        reordered = sales_definition.model_copy(
            update={"partitions": tuple(reversed(sales_definition.partitions))}
        )
        assert "partition.order" in codes(reordered)

    def test_range_bound_arity(self, sales_definition):
        partitions = (PartitionDescriptor(name="p1", values=[date(2025, 1, 1), 5]),)
        assert "partition.bound" in codes(sales_definition.model_copy(update={"partitions": partitions}))

    def test_maxvalue_closes_the_range(self, sales_definition):
        partitions = sales_definition.partitions + (PartitionDescriptor(name="pmax", values=["MAXVALUE"]),)
        assert codes(sales_definition.model_copy(update={"partitions": partitions})) == set()

    def test_list_values_overlap(self):
        definition = table(
            kind=TableKind.PARTITIONED,
            columns=[ColumnDescriptor(name="region", type="text")],
            partitioning=PartitionScheme(strategy=PartitionStrategy.LIST, key=["region"]),
            partitions=[
                PartitionDescriptor(name="east", values=["ny", "ma"]),
                PartitionDescriptor(name="west", values=["ca", "ny"]),
                PartitionDescriptor(name="other", is_default=True),
            ],
        )
        violations = DescriptorValidator().validate(definition)

        assert [v.code for v in violations] == ["partition.overlap"]
        assert "already belongs to east" in violations[0].message

    def test_hash_partitions_take_no_bounds(self):
        definition = table(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(strategy=PartitionStrategy.HASH, key=["id"]),
            partitions=[PartitionDescriptor(name="p0", values=[1])],
        )
        assert "partition.bound" in codes(definition)

    def test_unique_keys_include_partition_key(self, sales_definition):
        constraints = (ConstraintDescriptor(name="sales_pkey", kind="primary", columns=["id"]),)
        assert "partition.unique_key" in codes(sales_definition.model_copy(update={"constraints": constraints}))

    def test_partitions_need_a_scheme(self):
        assert "partition.scheme" in codes(table(partitions=[PartitionDescriptor(name="p0")]))

    def test_kind_and_scheme_agree(self):
        assert "kind.partitioning" in codes(table(kind=TableKind.PARTITIONED))

    @pytest.mark.parametrize(
        "count, tablespaces",
        [(3, ["a", "b"]), (8, ["a", "b", "c", "d"]), (2, ["a", "b", "c", "d"])],
    )
    def test_round_robin_count_must_match_tablespaces(self, count, tablespaces):
        definition = table(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(
                strategy=PartitionStrategy.HASH, key=["id"], count=count, tablespaces=tablespaces
            ),
        )
        assert "placement.round_robin" in codes(definition)

    def test_round_robin_one_tablespace_per_partition(self):
        definition = table(
            kind=TableKind.PARTITIONED,
            partitioning=PartitionScheme(
                strategy=PartitionStrategy.HASH, key=["id"], count=4, tablespaces=["a", "b", "c", "d"]
            ),
        )
        assert "placement.round_robin" not in codes(definition)

    def test_subpartition_key_must_exist(self, sales_definition):
        scheme = sales_definition.partitioning.model_copy(
            update={
                "subpartition": SubpartitionSpec(strategy=PartitionStrategy.HASH, key=["region"], count=2)
            }
        )
        result = codes(sales_definition.model_copy(update={"partitioning": scheme}))
        assert "partition.unknown_column" in result

    def test_list_subpartitions_need_entries(self, sales_definition):
        scheme = sales_definition.partitioning.model_copy(
            update={"subpartition": SubpartitionSpec(strategy=PartitionStrategy.LIST, key=["id"])}
        )
        assert "subpartition.empty" in codes(sales_definition.model_copy(update={"partitioning": scheme}))

    def test_reference_partitioning(self):
        orders = table(name="orders")
        child = table(
            name="sale_lines",
            kind=TableKind.PARTITIONED,
            columns=[
                ColumnDescriptor(name="id", type="bigint", nullable=False),
                ColumnDescriptor(name="sale_id", type="bigint"),
            ],
            constraints=[
                ConstraintDescriptor(
                    name="lines_sale_fk",
                    kind="foreign",
                    columns=["sale_id"],
                    references_table="orders",
                    references_columns=["id"],
                )
            ],
            partitioning=PartitionScheme(
                strategy=PartitionStrategy.REFERENCE, reference_constraint="lines_sale_fk"
            ),
        )

        assert codes(child, {"orders": orders}) == {"reference.nullable", "reference.parent"}


class TestValidatorKinds:
    """Property legality per table kind."""

    def test_index_organized_needs_primary_key(self):
        assert "kind.primary_key" in codes(table(kind=TableKind.INDEX_ORGANIZED))

    def test_temporary_cannot_reference(self):
        definition = table(
            kind=TableKind.TEMPORARY,
            constraints=[
                ConstraintDescriptor(
                    name="fk", kind="foreign", columns=["id"], references_table="other", references_columns=["id"]
                )
            ],
        )
        assert "kind.foreign_key" in codes(definition)

    def test_partitioned_cannot_be_unlogged(self, sales_definition):
        props = TableProperties(logging="unlogged")
        assert "kind.logging" in codes(sales_definition.model_copy(update={"properties": props}))

    def test_columnar_has_no_fill_factor(self):
        definition = table(kind=TableKind.COLUMNAR, properties=TableProperties(fill_factor=70))
        assert "kind.storage" in codes(definition)

    def test_spatial_needs_geometry(self):
        assert "kind.columns" in codes(table(kind=TableKind.SPATIAL))

    def test_listed_feature_column_type(self):
        definition = table(
            kind=TableKind.SEMI_STRUCTURED,
            properties=TableProperties(semi_structured_columns=["id"]),
        )
        assert "kind.column_type" in codes(definition)


# ============================================================================
# Sanitizer
# ============================================================================

class TestSanitizer:
    """Expression screening."""

    @pytest.mark.parametrize(
        "expression",
        [
            "length(note) < 200",
            "now()",
            "status IN ('new', 'paid')",
            "'a;b -- c'",
            "'it''s'",
            "\"Mixed Case\" > 0",
            "'drop table'",
            "amount::numeric(12, 2)",
        ],
    )
    def test_accepts(self, expression):
        assert default_sanitizer(f"  {expression} ") == expression

    @pytest.mark.parametrize(
        "expression,reason",
        [
            ("1; drop table x", "statement separator"),
            ("1 -- comment", "line comment"),
            ("1 /* comment */", "block comment"),
            ("$$evil$$", "dollar quoting"),
            ("E'\\n'", "escape string literal"),
            ("'it\\'s'", "backslash-escaped quote"),
            ("(select 1)", "keyword 'select' not allowed"),
            ("lower(x", "unbalanced parentheses"),
            ("x)", "unbalanced parentheses"),
            ("'open", "unterminated quote"),
            ("   ", "empty expression"),
        ],
    )
    def test_rejects(self, expression, reason):
        with pytest.raises(UnsafeExpressionError) as exc_info:
            default_sanitizer(expression)
        assert exc_info.value.reason == reason

    @pytest.mark.parametrize(
        "name,quoted",
        [("orders", False), ("Orders", True), ("user", True), ("my-col", True), ("_x1", False)],
    )
    def test_needs_quoting(self, name, quoted):
        assert needs_quoting(name) is quoted


# ============================================================================
# Loader
# ============================================================================

class TestLoader:
    """YAML documents of table definitions."""

    def test_load_file(self, descriptor_file):
        definitions = load_definitions(descriptor_file)

        assert [d.name for d in definitions] == ["customers", "invoices"]
        assert definitions[0].column("email").data_type == BaseType.VARCHAR
        assert definitions[1].column("total").data_type == BaseType.NUMERIC
        assert definitions[1].foreign_keys[0].on_delete == ReferentialAction.CASCADE

    def test_document_shapes(self):
        single = {"name": "a", "columns": [{"name": "id", "type": "int"}]}

        assert parse_definitions(None) == []
        assert [d.name for d in parse_definitions(single)] == ["a"]
        assert [d.name for d in parse_definitions([single, dict(single, name="b")])] == ["a", "b"]

    def test_bad_shape(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_definitions("tables")
        assert exc_info.value.violations[0].code == "document.shape"

    def test_schema_errors_collected_per_table(self):
        data = {
            "tables": [
                {"name": "ok", "columns": [{"name": "id", "type": "int"}]},
                {"name": "bad", "columns": [{"name": "id", "type": "money"}]},
                {"columns": []},
            ]
        }

        with pytest.raises(ValidationError) as exc_info:
            parse_definitions(data)

        paths = [v.path for v in exc_info.value.violations]
        assert any(p.startswith("tables[1].columns.0") for p in paths)
        assert "tables[2].name" in paths

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_definitions(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("tables: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_definitions(path)

    def test_dump_uses_aliases(self, orders_definition, tmp_path):
        path = tmp_path / "out.yaml"

        dump_definitions([orders_definition], path)

        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        table_data = raw["tables"][0]
        assert table_data["schema"] == "public"
        assert table_data["columns"][0] == {"name": "id", "type": "bigint", "nullable": False}
        assert load_definitions(path) == [orders_definition]
