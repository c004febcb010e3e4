"""Discovery validation and target table derivation.

Turns discovered entities into the ``SchemaTable`` shape the database is
expected to have, so the diff can compare two tables structurally.

Naming conventions for derived objects:

- Primary key: ``PK_<table>``
- Unique property: ``UQ_<table>_<column>``
- Check attribute: ``CK_<table>_<column>``
- Foreign key: ``FK_<table>_<referenced>_<columns>``
- Index for an indexed property or a foreign key: ``IX_<table>_<columns>``

Usage:
    from sqlsync.schema.target import validate_entities, build_target_table

    validate_entities(entities, "postgresql")
    table = build_target_table(entity, "postgresql", "public")
"""

import logging
from dataclasses import dataclass

from sqlsync.config.models import DEFAULT_SCHEMAS
from sqlsync.errors import DiscoveryError
from sqlsync.schema.models import (
    DiscoveredEntity,
    DiscoveredProperty,
    SchemaColumn,
    SchemaConstraint,
    SchemaIndex,
    SchemaTable,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Provider Tables
# ============================================================================

MAX_IDENTIFIER_LENGTH: dict[str, int] = {
    "sqlserver": 128,
    "postgresql": 63,
    "mysql": 64,
    "oracle": 30,
    "sqlite": 1000,
}

RESERVED_WORDS: frozenset[str] = frozenset({
    "ALTER", "CHECK", "COLUMN", "CONSTRAINT", "CREATE", "DATE", "DEFAULT",
    "DELETE", "DROP", "FOREIGN", "FROM", "GRANT", "GROUP", "INDEX", "INSERT",
    "JOIN", "KEY", "LEVEL", "ORDER", "PRIMARY", "REFERENCES", "SELECT", "SIZE",
    "TABLE", "TIME", "UNION", "UPDATE", "USER", "VIEW", "WHERE",
})

_TYPE_ALIASES: dict[str, str] = {
    "integer": "int", "int32": "int", "int16": "short", "smallint": "short",
    "int64": "long", "bigint": "long", "str": "string", "text": "string",
    "boolean": "bool", "uuid": "guid", "float64": "double", "float32": "float",
    "timestamp": "datetime", "datetimeoffset": "datetime", "byte[]": "bytes",
    "binary": "bytes",
}

# semantic type -> provider -> SQL type
SEMANTIC_TYPES: dict[str, dict[str, str]] = {
    "int": {"sqlserver": "INT", "postgresql": "INTEGER", "mysql": "INT",
            "oracle": "NUMBER", "sqlite": "INTEGER"},
    "short": {"sqlserver": "SMALLINT", "postgresql": "SMALLINT", "mysql": "SMALLINT",
              "oracle": "NUMBER", "sqlite": "INTEGER"},
    "long": {"sqlserver": "BIGINT", "postgresql": "BIGINT", "mysql": "BIGINT",
             "oracle": "NUMBER", "sqlite": "INTEGER"},
    "string": {"sqlserver": "NVARCHAR", "postgresql": "VARCHAR", "mysql": "VARCHAR",
               "oracle": "NVARCHAR2", "sqlite": "VARCHAR"},
    "double": {"sqlserver": "FLOAT", "postgresql": "DOUBLE PRECISION", "mysql": "DOUBLE",
               "oracle": "BINARY_DOUBLE", "sqlite": "REAL"},
    "float": {"sqlserver": "REAL", "postgresql": "REAL", "mysql": "FLOAT",
              "oracle": "BINARY_FLOAT", "sqlite": "REAL"},
    "decimal": {"sqlserver": "DECIMAL", "postgresql": "NUMERIC", "mysql": "DECIMAL",
                "oracle": "NUMBER", "sqlite": "NUMERIC"},
    "bool": {"sqlserver": "BIT", "postgresql": "BOOLEAN", "mysql": "BOOLEAN",
             "oracle": "NUMBER", "sqlite": "INTEGER"},
    "datetime": {"sqlserver": "DATETIME2", "postgresql": "TIMESTAMP", "mysql": "DATETIME",
                 "oracle": "TIMESTAMP", "sqlite": "TEXT"},
    "date": {"sqlserver": "DATE", "postgresql": "DATE", "mysql": "DATE",
             "oracle": "DATE", "sqlite": "TEXT"},
    "guid": {"sqlserver": "UNIQUEIDENTIFIER", "postgresql": "UUID", "mysql": "CHAR",
             "oracle": "RAW", "sqlite": "TEXT"},
    "bytes": {"sqlserver": "VARBINARY", "postgresql": "BYTEA", "mysql": "BLOB",
              "oracle": "BLOB", "sqlite": "BLOB"},
}

# Unbounded strings for providers whose VARCHAR needs a length
_UNBOUNDED_STRING: dict[str, str] = {
    "postgresql": "TEXT",
    "mysql": "TEXT",
    "oracle": "NCLOB",
    "sqlite": "TEXT",
}

_FIXED_LENGTHS: dict[tuple[str, str], int] = {
    ("guid", "mysql"): 36,
    ("guid", "oracle"): 16,
}

_INTEGER_SEMANTICS = frozenset({"int", "short", "long"})

_CURRENT_TIMESTAMP: dict[str, str] = {
    "sqlserver": "GETUTCDATE()",
    "postgresql": "CURRENT_TIMESTAMP",
    "mysql": "CURRENT_TIMESTAMP",
    "oracle": "SYSTIMESTAMP",
    "sqlite": "CURRENT_TIMESTAMP",
}

_NEW_UUID: dict[str, str] = {
    "sqlserver": "NEWID()",
    "postgresql": "gen_random_uuid()",
    "mysql": "(UUID())",
    "oracle": "SYS_GUID()",
    "sqlite": "(lower(hex(randomblob(16))))",
}


@dataclass
class TargetOptions:
    """Switches for target table derivation."""

    generate_indexes: bool = True
    generate_fk_indexes: bool = True
    enable_cross_schema_refs: bool = True


# ============================================================================
# Validation
# ============================================================================


def _warn_identifier(name: str, provider: str, context: str) -> None:
    if name.upper() in RESERVED_WORDS:
        logger.warning(f"{context} '{name}' is a reserved word and will be quoted")
    limit = MAX_IDENTIFIER_LENGTH.get(provider)
    if limit and len(name) > limit:
        logger.warning(
            f"{context} '{name}' exceeds the {provider} identifier limit of {limit} characters"
        )


def validate_entities(
    entities: list[DiscoveredEntity], provider: str, default_schema: str = ""
) -> None:
    """Reject a malformed entity model before any diffing happens.

    Args:
        entities: Discovered entities.
        provider: Target provider name, used for identifier warnings.
        default_schema: Schema of entities that name none (default: the
            provider's default schema).

    Raises:
        DiscoveryError: If an entity has no properties, duplicate column
            names (case-insensitive), no primary key, or shares its table
            with another entity, or if an index or relationship names a
            column the entity does not have.
    """
    seen_tables: dict[tuple[str, str], str] = {}
    fallback_schema = (default_schema or DEFAULT_SCHEMAS.get(provider, "")).lower()

    for entity in entities:
        table = entity.table
        schema = entity.schema_name
        context = {"object_name": table, "schema_name": schema or None}

        table_key = (schema.lower() or fallback_schema, table.lower())
        if table_key in seen_tables:
            raise DiscoveryError(
                f"Entities '{seen_tables[table_key]}' and '{entity.name}' map to the same table",
                **context,
            )
        seen_tables[table_key] = entity.name

        if not entity.properties:
            raise DiscoveryError(f"Entity '{entity.name}' has no properties", **context)

        columns: set[str] = set()
        for prop in entity.properties:
            column = prop.column_name.lower()
            if column in columns:
                raise DiscoveryError(
                    f"Entity '{entity.name}' has duplicate column '{prop.column_name}'",
                    **context,
                )
            columns.add(column)
            _warn_identifier(prop.column_name, provider, "Column")

        if not entity.primary_key:
            raise DiscoveryError(f"Entity '{entity.name}' has no primary key", **context)

        for index in entity.indexes:
            missing = [c for c in index.columns if c.lower() not in columns]
            if not index.columns or missing:
                raise DiscoveryError(
                    f"Index '{index.name}' references unknown columns: {', '.join(missing) or '(none)'}",
                    **context,
                )

        for rel in entity.relationships:
            missing = [c for c in rel.foreign_key_columns if c.lower() not in columns]
            if missing:
                raise DiscoveryError(
                    f"Relationship '{rel.name or rel.referenced_entity}' references unknown "
                    f"columns: {', '.join(missing)}",
                    **context,
                )

        _warn_identifier(table, provider, "Table")


# ============================================================================
# Type and Default Resolution
# ============================================================================


def semantic_type(prop: DiscoveredProperty) -> str:
    """Normalized semantic type of a property (``int``, ``string``, ...)."""
    raw = prop.type.strip().lower().rstrip("?")
    return _TYPE_ALIASES.get(raw, raw)


def resolve_column_type(prop: DiscoveredProperty, provider: str) -> tuple[str, int | None]:
    """Resolve the SQL type and length of a property for a provider.

    An explicit ``sql_type`` wins; otherwise the semantic type is mapped.

    Returns:
        Tuple of (SQL type, max length).

    Raises:
        DiscoveryError: If neither an explicit nor a known semantic type is
            available.
    """
    if prop.sql_type:
        return prop.sql_type.upper(), prop.max_length

    semantic = semantic_type(prop)
    mapping = SEMANTIC_TYPES.get(semantic)
    if mapping is None:
        raise DiscoveryError(
            f"Property '{prop.name}' has unknown type '{prop.type}' and no sql_type",
            object_name=prop.column_name,
        )

    if semantic == "string" and prop.max_length is None and provider in _UNBOUNDED_STRING:
        return _UNBOUNDED_STRING[provider], None

    length = _FIXED_LENGTHS.get((semantic, provider), prop.max_length)
    return mapping[provider], length


def normalize_default(value: str | None, provider: str, semantic: str = "") -> str | None:
    """Translate common default expressions into the provider's dialect.

    Example:
        >>> normalize_default("NOW()", "sqlserver")
        'GETUTCDATE()'
        >>> normalize_default("true", "sqlserver", "bool")
        '1'
    """
    if value is None:
        return None

    stripped = value.strip()
    upper = stripped.upper()

    if upper in ("NOW()", "CURRENT_TIMESTAMP", "GETDATE()", "GETUTCDATE()", "SYSDATE", "SYSTIMESTAMP"):
        return _CURRENT_TIMESTAMP.get(provider, stripped)
    if upper in ("UUID()", "NEWID()", "GEN_RANDOM_UUID()", "SYS_GUID()"):
        return _NEW_UUID.get(provider, stripped)
    if semantic == "bool" and upper in ("TRUE", "FALSE"):
        if provider in ("postgresql", "mysql"):
            return upper
        return "1" if upper == "TRUE" else "0"
    return stripped


# ============================================================================
# Target Table Derivation
# ============================================================================


def _build_column(prop: DiscoveredProperty, provider: str, identity_pk: bool) -> SchemaColumn:
    data_type, max_length = resolve_column_type(prop, provider)
    semantic = semantic_type(prop)
    return SchemaColumn(
        name=prop.column_name,
        data_type=data_type,
        is_nullable=False if prop.is_primary_key else prop.is_nullable,
        is_primary_key=prop.is_primary_key,
        is_identity=identity_pk and prop.is_primary_key and semantic in _INTEGER_SEMANTICS,
        max_length=max_length,
        precision=prop.precision,
        scale=prop.scale,
        default_value=normalize_default(prop.default_value, provider, semantic),
    )


def build_target_table(
    entity: DiscoveredEntity,
    provider: str,
    default_schema: str,
    options: TargetOptions | None = None,
    entities_by_name: dict[str, DiscoveredEntity] | None = None,
) -> SchemaTable:
    """Derive the table an entity is expected to map to.

    Args:
        entity: Validated discovered entity.
        provider: Target provider name.
        default_schema: Schema used when the entity does not name one.
        options: Derivation switches (defaults: everything enabled).
        entities_by_name: Discovered entities keyed by lower-cased entity
            name and table name, used to resolve relationship targets.

    Returns:
        The expected ``SchemaTable`` with columns, indexes and constraints.
    """
    options = options or TargetOptions()
    entities_by_name = entities_by_name or {}
    table_name = entity.table
    schema = entity.schema_name or default_schema

    pk_props = entity.primary_key
    identity_pk = len(pk_props) == 1 and not pk_props[0].attributes.get("no_identity", False)
    columns = [_build_column(p, provider, identity_pk) for p in entity.properties]

    constraints: list[SchemaConstraint] = [
        SchemaConstraint(
            name=f"PK_{table_name}",
            constraint_type="PK",
            table_name=table_name,
            schema_name=schema,
            columns=[p.column_name for p in pk_props],
        )
    ]

    for prop in entity.properties:
        if prop.is_unique and not prop.is_primary_key:
            constraints.append(
                SchemaConstraint(
                    name=f"UQ_{table_name}_{prop.column_name}",
                    constraint_type="UQ",
                    table_name=table_name,
                    schema_name=schema,
                    columns=[prop.column_name],
                )
            )
        check = prop.attributes.get("check_constraint")
        if check:
            constraints.append(
                SchemaConstraint(
                    name=f"CK_{table_name}_{prop.column_name}",
                    constraint_type="CK",
                    table_name=table_name,
                    schema_name=schema,
                    columns=[prop.column_name],
                    check_expression=check,
                )
            )

    foreign_keys: list[SchemaConstraint] = []
    for rel in entity.relationships:
        if not rel.foreign_key_columns:
            # Inverse side of a relationship, the FK lives on the other table
            continue

        target = entities_by_name.get((rel.referenced_entity or rel.referenced_table).lower())
        ref_table = rel.referenced_table or (target.table if target else rel.referenced_entity)
        ref_schema = rel.referenced_schema or (target.schema_name if target else "") or default_schema
        ref_columns = list(rel.referenced_columns)
        if not ref_columns and target is not None:
            ref_columns = [p.column_name for p in target.primary_key]
        if not ref_columns:
            ref_columns = ["Id"]

        if not options.enable_cross_schema_refs and ref_schema.lower() != schema.lower():
            logger.warning(
                f"Skipping cross-schema foreign key {table_name} -> {ref_schema}.{ref_table}"
            )
            continue

        fk_name = rel.name or f"FK_{table_name}_{ref_table}_{'_'.join(rel.foreign_key_columns)}"
        foreign_keys.append(
            SchemaConstraint(
                name=fk_name,
                constraint_type="FK",
                table_name=table_name,
                schema_name=schema,
                columns=list(rel.foreign_key_columns),
                referenced_table=ref_table,
                referenced_schema=ref_schema,
                referenced_columns=ref_columns,
                on_delete_action=rel.on_delete_action.upper(),
                on_update_action=rel.on_update_action.upper(),
            )
        )
    constraints.extend(foreign_keys)

    indexes: list[SchemaIndex] = []
    if options.generate_indexes:
        for index in entity.indexes:
            indexes.append(
                SchemaIndex(
                    name=index.name or f"IX_{table_name}_{'_'.join(index.columns)}",
                    table_name=table_name,
                    schema_name=schema,
                    columns=list(index.columns),
                    is_unique=index.is_unique,
                    is_clustered=index.is_clustered,
                    filter_expression=index.filter_expression,
                )
            )
        for prop in entity.properties:
            if prop.is_indexed and not prop.is_primary_key and not prop.is_unique:
                indexes.append(
                    SchemaIndex(
                        name=f"IX_{table_name}_{prop.column_name}",
                        table_name=table_name,
                        schema_name=schema,
                        columns=[prop.column_name],
                    )
                )

    if options.generate_fk_indexes:
        for fk in foreign_keys:
            leading = [c.lower() for c in fk.columns]
            covered = any(
                [c.lower() for c in ix.columns[: len(leading)]] == leading for ix in indexes
            )
            if not covered:
                indexes.append(
                    SchemaIndex(
                        name=f"IX_{table_name}_{'_'.join(fk.columns)}",
                        table_name=table_name,
                        schema_name=schema,
                        columns=list(fk.columns),
                    )
                )

    return SchemaTable(
        name=table_name,
        schema_name=schema,
        columns=columns,
        indexes=indexes,
        constraints=constraints,
    )


def index_entities(entities: list[DiscoveredEntity]) -> dict[str, DiscoveredEntity]:
    """Key entities by lower-cased entity name and table name."""
    lookup: dict[str, DiscoveredEntity] = {}
    for entity in entities:
        lookup.setdefault(entity.name.lower(), entity)
        lookup.setdefault(entity.table.lower(), entity)
    return lookup
