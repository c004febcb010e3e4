"""Pydantic models for discovered entities, live schemas and schema changes.

This module contains schema-domain models:
- Discovery models (immutable input): DiscoveredProperty, DiscoveredIndex,
  DiscoveredRelationship, DiscoveredEntity, EntityDiscoveryResult
- Live schema models: SchemaColumn, SchemaIndex, SchemaConstraint,
  SchemaTable, SchemaView, SchemaProcedure, SchemaFunction, DatabaseSchema
- Change models: ChangeType, ObjectType, RiskLevel, SchemaChange,
  RiskFactor, RiskAssessment

Plan and result models live in sqlsync.deploy.models.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================


class ChangeType(str, Enum):
    CREATE = "CREATE"
    ALTER = "ALTER"
    DROP = "DROP"


class ObjectType(str, Enum):
    TABLE = "TABLE"
    COLUMN = "COLUMN"
    INDEX = "INDEX"
    CONSTRAINT = "CONSTRAINT"
    VIEW = "VIEW"
    PROCEDURE = "PROCEDURE"
    FUNCTION = "FUNCTION"


class RiskLevel(IntEnum):
    """Ordered risk classification; ``max()`` yields the overall level."""

    SAFE = 0
    WARNING = 1
    RISKY = 2

    @property
    def label(self) -> str:
        return self.name.capitalize()


# ============================================================================
# Discovery Models
# ============================================================================


class DiscoveredProperty(BaseModel):
    """A property of a discovered entity, mapped to one column.

    ``attributes`` may carry ``column_name`` (overrides ``name``) and
    ``check_constraint`` (a CHECK expression).
    """

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = ""
    sql_type: str = ""
    is_nullable: bool = True
    is_primary_key: bool = False
    is_foreign_key: bool = False
    is_unique: bool = False
    is_indexed: bool = False
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    default_value: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def column_name(self) -> str:
        return self.attributes.get("column_name") or self.name


class DiscoveredIndex(BaseModel):
    """An index declared on a discovered entity."""

    model_config = ConfigDict(frozen=True)

    name: str
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    is_clustered: bool = False
    filter_expression: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)


class DiscoveredRelationship(BaseModel):
    """A foreign-key relationship from a discovered entity to another table."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    type: str = "ManyToOne"
    referenced_entity: str = ""
    referenced_table: str = ""
    referenced_schema: str = ""
    foreign_key_columns: list[str] = Field(default_factory=list)
    referenced_columns: list[str] = Field(default_factory=list)
    on_delete_action: str = "NO_ACTION"
    on_update_action: str = "NO_ACTION"


class DiscoveredEntity(BaseModel):
    """An entity found in application code that maps to one table."""

    model_config = ConfigDict(frozen=True)

    name: str
    full_name: str = ""
    namespace: str = ""
    table_name: str = ""
    schema_name: str = ""
    source_file: str = ""
    source_line: int = 0
    properties: list[DiscoveredProperty] = Field(default_factory=list)
    indexes: list[DiscoveredIndex] = Field(default_factory=list)
    relationships: list[DiscoveredRelationship] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @property
    def table(self) -> str:
        """Target table name (``table_name`` or the entity name)."""
        return self.table_name or self.name

    @property
    def primary_key(self) -> list[DiscoveredProperty]:
        return [p for p in self.properties if p.is_primary_key]


class EntityDiscoveryResult(BaseModel):
    """Output of the discovery collaborator.

    Example:
        >>> result = EntityDiscoveryResult.model_validate_json(path.read_text())
        >>> [e.table for e in result.entities]
        ['Location', 'Photo']
    """

    model_config = ConfigDict(frozen=True)

    entities: list[DiscoveredEntity] = Field(default_factory=list)
    language: str = ""
    track_attribute: str = ""
    discovery_time: datetime = Field(default_factory=_utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Live Schema Models
# ============================================================================


class SchemaColumn(BaseModel):
    """A column of a live (or target) table."""

    name: str
    data_type: str
    is_nullable: bool = True
    is_primary_key: bool = False
    is_identity: bool = False
    max_length: int | None = None
    precision: int | None = None
    scale: int | None = None
    default_value: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SchemaIndex(BaseModel):
    """An index; ``columns`` order is significant."""

    name: str
    table_name: str = ""
    schema_name: str = ""
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    is_clustered: bool = False
    filter_expression: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SchemaConstraint(BaseModel):
    """A table constraint.

    ``constraint_type`` is one of ``PK``, ``FK``, ``UQ``, ``CK``.
    """

    name: str
    constraint_type: str
    table_name: str = ""
    schema_name: str = ""
    columns: list[str] = Field(default_factory=list)
    referenced_table: str | None = None
    referenced_schema: str | None = None
    referenced_columns: list[str] = Field(default_factory=list)
    on_delete_action: str = "NO_ACTION"
    on_update_action: str = "NO_ACTION"
    check_expression: str | None = None


class SchemaTable(BaseModel):
    """A table with its columns, indexes and constraints."""

    name: str
    schema_name: str = ""
    columns: list[SchemaColumn] = Field(default_factory=list)
    indexes: list[SchemaIndex] = Field(default_factory=list)
    constraints: list[SchemaConstraint] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def get_column(self, name: str) -> SchemaColumn | None:
        """Find a column by name, case-insensitively."""
        wanted = name.lower()
        for column in self.columns:
            if column.name.lower() == wanted:
                return column
        return None

    @property
    def primary_key_columns(self) -> list[str]:
        """PK columns from the PK constraint, else from column flags."""
        for constraint in self.constraints:
            if constraint.constraint_type.upper() == "PK":
                return list(constraint.columns)
        return [c.name for c in self.columns if c.is_primary_key]


class SchemaView(BaseModel):
    name: str
    schema_name: str = ""
    definition: str = ""


class SchemaProcedure(BaseModel):
    name: str
    schema_name: str = ""
    definition: str = ""


class SchemaFunction(BaseModel):
    name: str
    schema_name: str = ""
    definition: str = ""
    return_type: str = ""


class DatabaseSchema(BaseModel):
    """Snapshot of a live database, read-only input to the diff.

    Example:
        >>> schema = DatabaseSchema(database_name="app", provider="postgresql")
        >>> schema.find_table("Location", "public") is None
        True
    """

    database_name: str = ""
    provider: str = ""
    analysis_time: datetime = Field(default_factory=_utc_now)
    tables: list[SchemaTable] = Field(default_factory=list)
    views: list[SchemaView] = Field(default_factory=list)
    procedures: list[SchemaProcedure] = Field(default_factory=list)
    functions: list[SchemaFunction] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def find_table(self, name: str, schema_name: str = "") -> SchemaTable | None:
        """Find a table by name and schema, case-insensitively.

        An empty ``schema_name`` on either side matches any schema.
        """
        wanted_name = name.lower()
        wanted_schema = schema_name.lower()
        for table in self.tables:
            if table.name.lower() != wanted_name:
                continue
            if not wanted_schema or not table.schema_name:
                return table
            if table.schema_name.lower() == wanted_schema:
                return table
        return None


# ============================================================================
# Change Models
# ============================================================================


def change_key(
    change_type: ChangeType,
    object_type: ObjectType,
    schema_name: str,
    table_name: str,
    object_name: str,
    qualifier: str = "",
) -> str:
    """Build the identity key of a change.

    Example:
        >>> change_key(ChangeType.CREATE, ObjectType.TABLE, "dbo", "", "Location")
        'CREATE:TABLE:dbo.Location'
    """
    path = ".".join(p for p in (schema_name, table_name, object_name) if p)
    key = f"{change_type.value}:{object_type.value}:{path}"
    return f"{key}:{qualifier}" if qualifier else key


class SchemaChange(BaseModel):
    """One atomic difference between the discovered model and the live schema.

    Created by the diff; ``risk_level`` and ``can_rollback`` are annotated in
    place by the risk classifier.  ``dependencies`` holds keys of changes
    that must run first; a key with no change in the plan means the
    prerequisite already exists.
    """

    change_type: ChangeType
    object_type: ObjectType
    object_name: str
    schema_name: str = ""
    table_name: str = ""
    description: str = ""
    risk_level: RiskLevel = RiskLevel.SAFE
    can_rollback: bool = True
    dependencies: list[str] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        table = "" if self.object_type == ObjectType.TABLE else self.table_name
        return change_key(
            self.change_type,
            self.object_type,
            self.schema_name,
            table,
            self.object_name,
            self.properties.get("alter_kind", ""),
        )

    def add_dependency(self, key: str) -> None:
        if key != self.key and key not in self.dependencies:
            self.dependencies.append(key)


class RiskFactor(BaseModel):
    """A rule that raised the risk of one or more changes."""

    name: str
    description: str
    risk_level: RiskLevel
    category: str = ""
    affected_objects: list[str] = Field(default_factory=list)


class RiskAssessment(BaseModel):
    """Aggregate risk over a change list.

    Example:
        >>> assessment = assess_risk(changes)
        >>> assessment.requires_dual_approval
        True
    """

    overall_risk_level: RiskLevel = RiskLevel.SAFE
    safe_operations: int = 0
    warning_operations: int = 0
    risky_operations: int = 0
    requires_approval: bool = False
    requires_dual_approval: bool = False
    risk_factors: list[RiskFactor] = Field(default_factory=list)
    assessment_time: datetime = Field(default_factory=_utc_now)

    @property
    def total_operations(self) -> int:
        return self.safe_operations + self.warning_operations + self.risky_operations

    def format_report(self) -> str:
        """Format the assessment as a human-readable report."""
        lines = [
            f"Overall risk: {self.overall_risk_level.label}",
            f"  Safe: {self.safe_operations}  Warning: {self.warning_operations}  "
            f"Risky: {self.risky_operations}",
        ]
        if self.requires_dual_approval:
            lines.append("  Approval: two independent approvals required")
        elif self.requires_approval:
            lines.append("  Approval: one approval required")
        for factor in self.risk_factors:
            lines.append(f"  - [{factor.risk_level.label}] {factor.description}")
            for obj in factor.affected_objects:
                lines.append(f"      {obj}")
        return "\n".join(lines)
