"""Shared fixtures: a small discovered entity model and matching live schemas."""

import pytest

from sqlsync.schema.models import (
    DatabaseSchema,
    DiscoveredEntity,
    DiscoveredProperty,
    DiscoveredRelationship,
    SchemaColumn,
    SchemaConstraint,
    SchemaTable,
)


@pytest.fixture
def location_entity() -> DiscoveredEntity:
    """Location { Id int PK, Title string(200), Latitude double }."""
    return DiscoveredEntity(
        name="Location",
        properties=[
            DiscoveredProperty(name="Id", type="int", is_primary_key=True, is_nullable=False),
            DiscoveredProperty(name="Title", type="string", max_length=200),
            DiscoveredProperty(name="Latitude", type="double"),
        ],
    )


@pytest.fixture
def photo_entity() -> DiscoveredEntity:
    """Photo { Id int PK, LocationId int -> Location }."""
    return DiscoveredEntity(
        name="Photo",
        properties=[
            DiscoveredProperty(name="Id", type="int", is_primary_key=True, is_nullable=False),
            DiscoveredProperty(name="LocationId", type="int", is_nullable=False, is_foreign_key=True),
        ],
        relationships=[
            DiscoveredRelationship(referenced_entity="Location", foreign_key_columns=["LocationId"]),
        ],
    )


@pytest.fixture
def live_photo_table() -> SchemaTable:
    """Live Photo table that still has a PhotoPath column."""
    return SchemaTable(
        name="Photo",
        schema_name="public",
        columns=[
            SchemaColumn(name="Id", data_type="integer", is_nullable=False,
                         is_primary_key=True, is_identity=True),
            SchemaColumn(name="PhotoPath", data_type="character varying", max_length=500),
        ],
        constraints=[
            SchemaConstraint(name="PK_Photo", constraint_type="PK", table_name="Photo",
                             schema_name="public", columns=["Id"]),
        ],
    )


@pytest.fixture
def empty_schema() -> DatabaseSchema:
    return DatabaseSchema(database_name="app", provider="postgresql")
