"""Tests for entity validation and target table derivation."""

import pytest

from sqlsync.errors import DiscoveryError, ExitCode
from sqlsync.schema.models import (
    DiscoveredEntity,
    DiscoveredIndex,
    DiscoveredProperty,
    DiscoveredRelationship,
)
from sqlsync.schema.target import (
    TargetOptions,
    build_target_table,
    index_entities,
    normalize_default,
    resolve_column_type,
    validate_entities,
)


def _entity(name: str = "Item", *props: DiscoveredProperty, **kwargs) -> DiscoveredEntity:
    properties = list(props) or [DiscoveredProperty(name="Id", type="int", is_primary_key=True)]
    return DiscoveredEntity(name=name, properties=properties, **kwargs)


class TestValidateEntities:
    """Test rejection of malformed entity models."""

    def test_valid_model_passes(self, location_entity, photo_entity):
        validate_entities([location_entity, photo_entity], "postgresql")

    def test_no_properties(self):
        entity = DiscoveredEntity(name="Empty")
        with pytest.raises(DiscoveryError, match="no properties") as exc_info:
            validate_entities([entity], "postgresql")
        assert exc_info.value.exit_code == ExitCode.ENTITY_DISCOVERY_FAILURE

    def test_duplicate_column_case_insensitive(self):
        entity = _entity(
            "Item",
            DiscoveredProperty(name="Id", type="int", is_primary_key=True),
            DiscoveredProperty(name="name", type="string"),
            DiscoveredProperty(name="Name", type="string"),
        )
        with pytest.raises(DiscoveryError, match="duplicate column"):
            validate_entities([entity], "postgresql")

    def test_column_name_attribute_counts_for_duplicates(self):
        entity = _entity(
            "Item",
            DiscoveredProperty(name="Id", type="int", is_primary_key=True),
            DiscoveredProperty(name="Title", type="string", attributes={"column_name": "Id"}),
        )
        with pytest.raises(DiscoveryError, match="duplicate column 'Id'"):
            validate_entities([entity], "postgresql")

    def test_missing_primary_key(self):
        entity = _entity("Item", DiscoveredProperty(name="Name", type="string"))
        with pytest.raises(DiscoveryError, match="no primary key"):
            validate_entities([entity], "postgresql")

    def test_two_entities_same_table(self):
        first = _entity("Item", table_name="Items")
        second = _entity("ItemCopy", table_name="items")
        with pytest.raises(DiscoveryError, match="same table"):
            validate_entities([first, second], "postgresql")

    def test_default_schema_counts_as_same_table(self):
        first = _entity("Item", table_name="Items")
        second = _entity("ItemCopy", table_name="Items", schema_name="Public")
        with pytest.raises(DiscoveryError, match="same table"):
            validate_entities([first, second], "postgresql")

    def test_configured_default_schema(self):
        first = _entity("Item", table_name="Items")
        second = _entity("ItemCopy", table_name="Items", schema_name="public")
        validate_entities([first, second], "postgresql", default_schema="app")
        with pytest.raises(DiscoveryError, match="same table"):
            validate_entities([first, _entity("Copy", table_name="Items", schema_name="app")],
                              "postgresql", default_schema="app")

    def test_index_on_unknown_column(self):
        entity = _entity(indexes=[DiscoveredIndex(name="IX_Item_Missing", columns=["Missing"])])
        with pytest.raises(DiscoveryError, match="Missing"):
            validate_entities([entity], "postgresql")

    def test_relationship_on_unknown_column(self):
        entity = _entity(
            relationships=[DiscoveredRelationship(referenced_entity="Other", foreign_key_columns=["OtherId"])]
        )
        with pytest.raises(DiscoveryError, match="OtherId"):
            validate_entities([entity], "postgresql")


class TestResolveColumnType:
    """Test semantic type mapping per provider."""

    @pytest.mark.parametrize(
        "provider, expected",
        [
            ("sqlserver", ("NVARCHAR", 200)),
            ("postgresql", ("VARCHAR", 200)),
            ("oracle", ("NVARCHAR2", 200)),
        ],
    )
    def test_bounded_string(self, provider, expected):
        prop = DiscoveredProperty(name="Title", type="string", max_length=200)
        assert resolve_column_type(prop, provider) == expected

    def test_unbounded_string(self):
        prop = DiscoveredProperty(name="Body", type="string")
        assert resolve_column_type(prop, "postgresql") == ("TEXT", None)
        assert resolve_column_type(prop, "sqlserver") == ("NVARCHAR", None)

    def test_nullable_suffix_and_alias(self):
        prop = DiscoveredProperty(name="Count", type="Int32?")
        assert resolve_column_type(prop, "postgresql") == ("INTEGER", None)

    def test_explicit_sql_type_wins(self):
        prop = DiscoveredProperty(name="Tags", type="string", sql_type="jsonb")
        assert resolve_column_type(prop, "postgresql") == ("JSONB", None)

    def test_unknown_type(self):
        prop = DiscoveredProperty(name="Shape", type="Polygon")
        with pytest.raises(DiscoveryError, match="unknown type"):
            resolve_column_type(prop, "postgresql")


class TestNormalizeDefault:
    def test_timestamp_translation(self):
        assert normalize_default("NOW()", "sqlserver") == "GETUTCDATE()"
        assert normalize_default("getdate()", "postgresql") == "CURRENT_TIMESTAMP"

    def test_bool_literals(self):
        assert normalize_default("true", "sqlserver", "bool") == "1"
        assert normalize_default("false", "postgresql", "bool") == "FALSE"

    def test_passthrough(self):
        assert normalize_default(" 'x' ", "mysql") == "'x'"
        assert normalize_default(None, "mysql") is None


class TestBuildTargetTable:
    """Test the derived table shape."""

    def test_location(self, location_entity):
        table = build_target_table(location_entity, "postgresql", "public")

        assert table.name == "Location"
        assert table.schema_name == "public"
        assert [(c.name, c.data_type, c.max_length) for c in table.columns] == [
            ("Id", "INTEGER", None),
            ("Title", "VARCHAR", 200),
            ("Latitude", "DOUBLE PRECISION", None),
        ]
        assert table.columns[0].is_identity is True
        assert table.columns[0].is_nullable is False
        assert [c.name for c in table.constraints] == ["PK_Location"]
        assert table.indexes == []

    def test_composite_key_has_no_identity(self):
        entity = _entity(
            "Link",
            DiscoveredProperty(name="LeftId", type="int", is_primary_key=True),
            DiscoveredProperty(name="RightId", type="int", is_primary_key=True),
        )
        table = build_target_table(entity, "sqlserver", "dbo")
        assert not any(c.is_identity for c in table.columns)
        assert table.constraints[0].columns == ["LeftId", "RightId"]

    def test_unique_check_and_index(self):
        entity = _entity(
            "Item",
            DiscoveredProperty(name="Id", type="int", is_primary_key=True),
            DiscoveredProperty(name="Code", type="string", max_length=20, is_unique=True),
            DiscoveredProperty(name="Price", type="decimal", precision=10, scale=2,
                               attributes={"check_constraint": "Price >= 0"}),
            DiscoveredProperty(name="Sku", type="string", max_length=40, is_indexed=True),
        )
        table = build_target_table(entity, "postgresql", "public")
        names = {c.name: c for c in table.constraints}
        assert set(names) == {"PK_Item", "UQ_Item_Code", "CK_Item_Price"}
        assert names["CK_Item_Price"].check_expression == "Price >= 0"
        assert [ix.name for ix in table.indexes] == ["IX_Item_Sku"]

    def test_generate_indexes_disabled(self):
        entity = _entity(
            "Item",
            DiscoveredProperty(name="Id", type="int", is_primary_key=True),
            DiscoveredProperty(name="Sku", type="string", is_indexed=True),
        )
        table = build_target_table(entity, "postgresql", "public", TargetOptions(generate_indexes=False))
        assert table.indexes == []

    def test_cross_schema_reference_skipped(self):
        entity = _entity(
            "Order",
            DiscoveredProperty(name="Id", type="int", is_primary_key=True),
            DiscoveredProperty(name="CustomerId", type="int"),
            relationships=[
                DiscoveredRelationship(
                    referenced_table="Customer", referenced_schema="crm",
                    foreign_key_columns=["CustomerId"],
                )
            ],
        )
        table = build_target_table(
            entity, "postgresql", "public", TargetOptions(enable_cross_schema_refs=False)
        )
        assert not [c for c in table.constraints if c.constraint_type == "FK"]

    def test_foreign_key_references_target_primary_key(self, location_entity, photo_entity):
        lookup = index_entities([location_entity, photo_entity])
        table = build_target_table(photo_entity, "postgresql", "public", entities_by_name=lookup)
        fk = next(c for c in table.constraints if c.constraint_type == "FK")
        assert fk.referenced_table == "Location"
        assert fk.referenced_schema == "public"
        assert fk.referenced_columns == ["Id"]
