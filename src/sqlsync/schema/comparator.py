"""Schema comparator -- diff discovered entities against a live schema.

Pure logic with no I/O.  Produces one ``SchemaChange`` per atomic
difference, ordered tables, columns, indexes, constraints and, within each
category, creations before alterations before drops.

Usage:
    from sqlsync.schema.comparator import DiffOptions, diff_schema

    changes = diff_schema(entities, live_schema, DiffOptions(provider="postgresql"))
    for change in changes:
        print(change.key, change.description)
"""

import re
from dataclasses import dataclass, field

from sqlsync.schema.models import (
    ChangeType,
    DatabaseSchema,
    DiscoveredEntity,
    ObjectType,
    SchemaChange,
    SchemaColumn,
    SchemaConstraint,
    SchemaIndex,
    SchemaTable,
    change_key,
)
from sqlsync.schema.target import (
    TargetOptions,
    build_target_table,
    index_entities,
    validate_entities,
)


@dataclass
class DiffOptions:
    """Diff settings.

    Attributes:
        provider: Target provider name.
        default_schema: Schema for entities that do not name one.
        target: Target table derivation switches.
        tracked_tables: Live tables managed by this tool (``table`` or
            ``schema.table``).  Only tracked tables are dropped when no
            entity maps to them.
        track_attribute: Marker stored in a live table's metadata under
            ``track_attribute`` that also makes it tracked.
    """

    provider: str = "postgresql"
    default_schema: str = ""
    target: TargetOptions = field(default_factory=TargetOptions)
    tracked_tables: list[str] = field(default_factory=list)
    track_attribute: str = ""


# ------------------------------------------------------------------
# Normalization
# ------------------------------------------------------------------

_TYPE_SYNONYMS: dict[str, str] = {
    "integer": "int",
    "int4": "int",
    "int8": "bigint",
    "int2": "smallint",
    "serial": "int",
    "bigserial": "bigint",
    "character varying": "varchar",
    "character": "char",
    "bpchar": "char",
    "bool": "boolean",
    "double precision": "double",
    "float8": "double",
    "float4": "real",
    "numeric": "decimal",
    "number": "decimal",
    "nvarchar2": "nvarchar",
    "varchar2": "varchar",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "datetime2": "datetime",
}

_LENGTH_TYPES = frozenset({"varchar", "nvarchar", "char", "nchar", "varbinary", "binary"})

# (from, to) pairs that never lose data
_WIDENING_PAIRS = frozenset({
    ("smallint", "int"),
    ("smallint", "bigint"),
    ("int", "bigint"),
    ("real", "double"),
    ("real", "float"),
    ("float", "double"),
    ("char", "varchar"),
    ("char", "nvarchar"),
    ("nchar", "nvarchar"),
    ("varchar", "nvarchar"),
    ("varchar", "text"),
    ("nvarchar", "text"),
    ("char", "text"),
    ("date", "timestamp"),
    ("date", "datetime"),
    ("timestamp", "timestamptz"),
})

_CATEGORY_ORDER = {
    ObjectType.TABLE: 0,
    ObjectType.COLUMN: 1,
    ObjectType.INDEX: 2,
    ObjectType.CONSTRAINT: 3,
    ObjectType.VIEW: 4,
    ObjectType.PROCEDURE: 5,
    ObjectType.FUNCTION: 6,
}

_TYPE_ORDER = {ChangeType.CREATE: 0, ChangeType.ALTER: 1, ChangeType.DROP: 2}


def normalize_type(data_type: str) -> str:
    """Normalize a SQL type name for comparison.

    Example:
        >>> normalize_type("character varying(200)")
        'varchar'
    """
    base = re.sub(r"\(.*\)", "", data_type).strip().lower()
    base = re.sub(r"\s+", " ", base)
    return _TYPE_SYNONYMS.get(base, base)


def _normalize_length(length: int | None) -> int | None:
    # -1 is how SQL Server reports (MAX)
    if length is None or length < 0:
        return None
    return length


def normalize_expression(expression: str | None) -> str | None:
    """Normalize a default or CHECK expression for comparison.

    Strips wrapping parentheses, PostgreSQL casts, whitespace and case.
    """
    if expression is None:
        return None
    value = expression.strip()
    while value.startswith("(") and value.endswith(")") and _balanced(value[1:-1]):
        value = value[1:-1].strip()
    value = re.sub(r"::[a-z ]+(\(\d+\))?", "", value, flags=re.IGNORECASE)
    return re.sub(r"[\s()]", "", value).lower()


def _balanced(value: str) -> bool:
    depth = 0
    for char in value:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


def _normalize_action(action: str | None) -> str:
    return (action or "NO_ACTION").upper().replace(" ", "_")


def _lower(names: list[str]) -> tuple[str, ...]:
    return tuple(n.lower() for n in names)


def index_signature(index: SchemaIndex) -> tuple:
    """Structural identity of an index: columns, uniqueness and filter."""
    return (
        _lower(index.columns),
        index.is_unique,
        normalize_expression(index.filter_expression),
    )


def constraint_signature(constraint: SchemaConstraint) -> tuple:
    """Structural identity of a constraint, independent of its name."""
    kind = constraint.constraint_type.upper()
    if kind == "CK":
        return (kind, normalize_expression(constraint.check_expression))
    if kind == "FK":
        return (
            kind,
            _lower(constraint.columns),
            (constraint.referenced_table or "").lower(),
            _lower(constraint.referenced_columns),
            _normalize_action(constraint.on_delete_action),
            _normalize_action(constraint.on_update_action),
        )
    return (kind, _lower(constraint.columns))


def describe_type(column: SchemaColumn) -> str:
    """Short type text for change descriptions, e.g. ``VARCHAR(200)``."""
    if column.max_length:
        return f"{column.data_type}({column.max_length})"
    if column.precision is not None:
        return f"{column.data_type}({column.precision},{column.scale or 0})"
    return column.data_type


# ------------------------------------------------------------------
# Column comparison
# ------------------------------------------------------------------


def classify_type_change(current: SchemaColumn, target: SchemaColumn) -> str | None:
    """Compare the type of two columns.

    Returns:
        ``None`` if the types match, ``"widening"`` if every existing value
        fits the new type, ``"narrowing"`` otherwise.
    """
    current_base = normalize_type(current.data_type)
    target_base = normalize_type(target.data_type)

    if current_base != target_base:
        if (current_base, target_base) in _WIDENING_PAIRS:
            return "widening"
        return "narrowing"

    if current_base in _LENGTH_TYPES:
        current_len = _normalize_length(current.max_length)
        target_len = _normalize_length(target.max_length)
        if current_len == target_len:
            return None
        if target_len is None or (current_len is not None and target_len > current_len):
            return "widening"
        return "narrowing"

    if current_base == "decimal" and target.precision is not None:
        current_precision = current.precision or 0
        current_scale = current.scale or 0
        target_scale = target.scale or 0
        if (target.precision, target_scale) == (current_precision, current_scale):
            return None
        integer_digits_kept = (target.precision - target_scale) >= (current_precision - current_scale)
        if integer_digits_kept and target_scale >= current_scale:
            return "widening"
        return "narrowing"

    return None


def _compare_defaults(current: SchemaColumn, target: SchemaColumn) -> bool:
    """True if the default values differ."""
    if target.is_identity or current.is_identity:
        return False
    if current.default_value and current.default_value.lower().startswith("nextval("):
        return False
    return normalize_expression(current.default_value) != normalize_expression(target.default_value)


# ------------------------------------------------------------------
# Change builders
# ------------------------------------------------------------------


def _qualified(schema: str, *names: str) -> str:
    return ".".join(p for p in (schema, *names) if p)


def _create_table_change(
    target: SchemaTable, inline: list[SchemaConstraint] | None = None
) -> SchemaChange:
    """CREATE TABLE with the key columns only, or with every column when
    constraints must be declared inline."""
    pk = next(c for c in target.constraints if c.constraint_type == "PK")
    pk_names = {c.lower() for c in pk.columns}
    columns = target.columns if inline else [c for c in target.columns if c.name.lower() in pk_names]
    properties: dict = {
        "columns": [c.model_dump() for c in columns],
        "primary_key": {"name": pk.name, "columns": list(pk.columns)},
    }
    if inline:
        properties["constraints"] = [c.model_dump() for c in inline]
    return SchemaChange(
        change_type=ChangeType.CREATE,
        object_type=ObjectType.TABLE,
        object_name=target.name,
        schema_name=target.schema_name,
        table_name=target.name,
        description=f"Create table {_qualified(target.schema_name, target.name)}",
        properties=properties,
    )


def _column_change(change_type: ChangeType, table: SchemaTable, column: SchemaColumn) -> SchemaChange:
    verb = "Add" if change_type == ChangeType.CREATE else "Drop"
    payload = "column" if change_type == ChangeType.CREATE else "current"
    return SchemaChange(
        change_type=change_type,
        object_type=ObjectType.COLUMN,
        object_name=column.name,
        schema_name=table.schema_name,
        table_name=table.name,
        description=(
            f"{verb} column {_qualified(table.schema_name, table.name, column.name)} "
            f"({describe_type(column)})"
        ),
        properties={payload: column.model_dump()},
    )


def _alter_column_changes(
    table: SchemaTable, current: SchemaColumn, target: SchemaColumn
) -> list[SchemaChange]:
    """One ALTER change per differing aspect of a column."""
    changes: list[SchemaChange] = []
    name = _qualified(table.schema_name, table.name, target.name)
    base = {
        "column": target.model_dump(),
        "current": current.model_dump(),
    }

    type_change = classify_type_change(current, target)
    if type_change is not None:
        changes.append(
            SchemaChange(
                change_type=ChangeType.ALTER,
                object_type=ObjectType.COLUMN,
                object_name=target.name,
                schema_name=table.schema_name,
                table_name=table.name,
                description=(
                    f"Change type of {name} from {describe_type(current)} "
                    f"to {describe_type(target)}"
                ),
                properties={
                    **base,
                    "alter_kind": "data_type",
                    "widening": type_change == "widening",
                    "potential_data_loss": type_change == "narrowing",
                },
            )
        )

    if current.is_nullable != target.is_nullable:
        direction = "relax" if target.is_nullable else "tighten"
        changes.append(
            SchemaChange(
                change_type=ChangeType.ALTER,
                object_type=ObjectType.COLUMN,
                object_name=target.name,
                schema_name=table.schema_name,
                table_name=table.name,
                description=(
                    f"Make {name} {'nullable' if target.is_nullable else 'NOT NULL'}"
                ),
                properties={**base, "alter_kind": "nullability", "direction": direction},
            )
        )

    if _compare_defaults(current, target):
        changes.append(
            SchemaChange(
                change_type=ChangeType.ALTER,
                object_type=ObjectType.COLUMN,
                object_name=target.name,
                schema_name=table.schema_name,
                table_name=table.name,
                description=(
                    f"Change default of {name} to {target.default_value}"
                    if target.default_value is not None
                    else f"Remove default of {name}"
                ),
                properties={**base, "alter_kind": "default"},
            )
        )

    return changes


def _index_change(change_type: ChangeType, table: SchemaTable, index: SchemaIndex) -> SchemaChange:
    verb = "Create" if change_type == ChangeType.CREATE else "Drop"
    kind = "unique index" if index.is_unique else "index"
    return SchemaChange(
        change_type=change_type,
        object_type=ObjectType.INDEX,
        object_name=index.name,
        schema_name=table.schema_name,
        table_name=table.name,
        description=(
            f"{verb} {kind} {index.name} on "
            f"{_qualified(table.schema_name, table.name)} ({', '.join(index.columns)})"
        ),
        properties={
            "index": index.model_dump(),
            "columns": list(index.columns),
            "is_unique": index.is_unique,
            "is_clustered": index.is_clustered,
        },
    )


def _constraint_change(
    change_type: ChangeType, table: SchemaTable, constraint: SchemaConstraint
) -> SchemaChange:
    verb = "Add" if change_type == ChangeType.CREATE else "Drop"
    labels = {"PK": "primary key", "FK": "foreign key", "UQ": "unique constraint", "CK": "check constraint"}
    label = labels.get(constraint.constraint_type.upper(), "constraint")
    return SchemaChange(
        change_type=change_type,
        object_type=ObjectType.CONSTRAINT,
        object_name=constraint.name,
        schema_name=table.schema_name,
        table_name=table.name,
        description=f"{verb} {label} {constraint.name} on {_qualified(table.schema_name, table.name)}",
        properties={
            "constraint": constraint.model_dump(),
            "constraint_type": constraint.constraint_type.upper(),
            "columns": list(constraint.columns),
        },
    )


# ------------------------------------------------------------------
# Table comparison
# ------------------------------------------------------------------


def _live_constraints(table: SchemaTable) -> list[SchemaConstraint]:
    """Live constraints, with a PK synthesized from column flags if needed."""
    constraints = list(table.constraints)
    if not any(c.constraint_type.upper() == "PK" for c in constraints):
        pk_columns = table.primary_key_columns
        if pk_columns:
            constraints.append(
                SchemaConstraint(
                    name=f"PK_{table.name}",
                    constraint_type="PK",
                    table_name=table.name,
                    schema_name=table.schema_name,
                    columns=pk_columns,
                )
            )
    return constraints


def _diff_new_table(target: SchemaTable, provider: str) -> list[SchemaChange]:
    # SQLite accepts foreign keys and checks only inside CREATE TABLE
    inline: list[SchemaConstraint] = []
    if provider == "sqlite":
        inline = [c for c in target.constraints if c.constraint_type.upper() in ("FK", "CK")]

    changes = [_create_table_change(target, inline)]
    if not inline:
        for column in target.columns:
            if not column.is_primary_key:
                changes.append(_column_change(ChangeType.CREATE, target, column))
    for index in target.indexes:
        changes.append(_index_change(ChangeType.CREATE, target, index))
    for constraint in target.constraints:
        if constraint.constraint_type != "PK" and constraint not in inline:
            changes.append(_constraint_change(ChangeType.CREATE, target, constraint))
    return changes


def _diff_existing_table(
    target: SchemaTable, live: SchemaTable, options: DiffOptions
) -> list[SchemaChange]:
    # Report changes under the live names so generated SQL hits the real objects
    target = target.model_copy(update={"name": live.name, "schema_name": live.schema_name or target.schema_name})
    changes: list[SchemaChange] = []

    # Columns: exact (case-insensitive) name match, no rename inference
    target_names = {c.name.lower() for c in target.columns}
    for column in target.columns:
        current = live.get_column(column.name)
        if current is None:
            changes.append(_column_change(ChangeType.CREATE, target, column))
        else:
            changes.extend(_alter_column_changes(target, current, column))
    for current in live.columns:
        if current.name.lower() not in target_names:
            changes.append(_column_change(ChangeType.DROP, target, current))

    # Indexes: structural equality, constraint-backed live indexes ignored
    live_constraint_names = {c.name.lower() for c in live.constraints}
    live_indexes = [
        ix for ix in live.indexes
        if ix.name.lower() not in live_constraint_names and not ix.metadata.get("is_primary_key")
    ]
    live_index_sigs = {index_signature(ix) for ix in live_indexes}
    target_index_sigs = {index_signature(ix) for ix in target.indexes}
    for index in target.indexes:
        if index_signature(index) not in live_index_sigs:
            changes.append(_index_change(ChangeType.CREATE, target, index))
    if options.target.generate_indexes:
        for index in live_indexes:
            if index_signature(index) not in target_index_sigs:
                changes.append(_index_change(ChangeType.DROP, target, index))

    # Constraints: structural equality
    live_constraints = _live_constraints(live)
    live_sigs = {constraint_signature(c) for c in live_constraints}
    target_sigs = {constraint_signature(c) for c in target.constraints}
    for constraint in target.constraints:
        if constraint_signature(constraint) not in live_sigs:
            changes.append(_constraint_change(ChangeType.CREATE, target, constraint))
    for constraint in live_constraints:
        if constraint_signature(constraint) not in target_sigs:
            changes.append(_constraint_change(ChangeType.DROP, target, constraint))

    return changes


def _is_tracked(table: SchemaTable, options: DiffOptions) -> bool:
    tracked = {t.lower() for t in options.tracked_tables}
    if table.name.lower() in tracked:
        return True
    if _qualified(table.schema_name, table.name).lower() in tracked:
        return True
    if options.track_attribute:
        return table.metadata.get("track_attribute") == options.track_attribute
    return False


def _drop_table_change(table: SchemaTable) -> SchemaChange:
    return SchemaChange(
        change_type=ChangeType.DROP,
        object_type=ObjectType.TABLE,
        object_name=table.name,
        schema_name=table.schema_name,
        table_name=table.name,
        description=f"Drop table {_qualified(table.schema_name, table.name)}",
        properties={"table": table.model_dump(mode="json")},
    )


# ------------------------------------------------------------------
# Dependencies
# ------------------------------------------------------------------


def _link_dependencies(changes: list[SchemaChange]) -> None:
    """Attach dependency keys between changes of the same run.

    Only keys of changes in the list are recorded; anything else already
    exists in the database.
    """
    present = {c.key.lower(): c.key for c in changes}

    def depend(change: SchemaChange, key: str) -> None:
        actual = present.get(key.lower())
        if actual is not None:
            change.add_dependency(actual)

    drops_by_table: dict[tuple[str, str], list[SchemaChange]] = {}
    fk_drops_by_referenced: dict[str, list[SchemaChange]] = {}
    for change in changes:
        if change.change_type != ChangeType.DROP:
            continue
        if change.object_type in (ObjectType.INDEX, ObjectType.CONSTRAINT):
            table_id = (change.schema_name.lower(), change.table_name.lower())
            drops_by_table.setdefault(table_id, []).append(change)
        if change.properties.get("constraint_type") == "FK":
            referenced = (change.properties["constraint"].get("referenced_table") or "").lower()
            fk_drops_by_referenced.setdefault(referenced, []).append(change)

    for change in changes:
        schema, table = change.schema_name, change.table_name

        if change.change_type == ChangeType.CREATE and change.object_type != ObjectType.TABLE:
            depend(change, change_key(ChangeType.CREATE, ObjectType.TABLE, schema, "", table))

        if change.change_type == ChangeType.CREATE and change.object_type in (
            ObjectType.INDEX, ObjectType.CONSTRAINT
        ):
            for column in change.properties.get("columns", []):
                depend(change, change_key(ChangeType.CREATE, ObjectType.COLUMN, schema, table, column))
                for kind in ("data_type", "nullability"):
                    depend(change, change_key(ChangeType.ALTER, ObjectType.COLUMN, schema, table, column, kind))
            depend(change, change_key(ChangeType.DROP, change.object_type, schema, table, change.object_name))

            if change.properties.get("constraint_type") == "FK":
                constraint = change.properties["constraint"]
                ref_schema = constraint.get("referenced_schema") or ""
                ref_table = constraint.get("referenced_table") or ""
                depend(change, change_key(ChangeType.CREATE, ObjectType.TABLE, ref_schema, "", ref_table))
                for ref_column in constraint.get("referenced_columns", []):
                    depend(change, change_key(ChangeType.CREATE, ObjectType.COLUMN, ref_schema, ref_table, ref_column))
                for other in changes:
                    if (
                        other.change_type == ChangeType.CREATE
                        and other.properties.get("constraint_type") in ("PK", "UQ")
                        and other.table_name.lower() == ref_table.lower()
                    ):
                        change.add_dependency(other.key)

        if change.change_type == ChangeType.CREATE and change.object_type == ObjectType.TABLE:
            for constraint in change.properties.get("constraints", []):
                if constraint.get("referenced_table"):
                    depend(change, change_key(
                        ChangeType.CREATE, ObjectType.TABLE,
                        constraint.get("referenced_schema") or "", "", constraint["referenced_table"],
                    ))

        table_drops = drops_by_table.get((schema.lower(), table.lower()), [])

        if change.change_type == ChangeType.DROP and change.object_type == ObjectType.COLUMN:
            column = change.object_name.lower()
            for other in table_drops:
                if column in [c.lower() for c in other.properties.get("columns", [])]:
                    change.add_dependency(other.key)
            for other in fk_drops_by_referenced.get(table.lower(), []):
                referenced_columns = other.properties["constraint"].get("referenced_columns", [])
                if column in [c.lower() for c in referenced_columns]:
                    change.add_dependency(other.key)

        if change.change_type == ChangeType.ALTER and change.properties.get("alter_kind") == "data_type":
            column = change.object_name.lower()
            for other in table_drops:
                if column in [c.lower() for c in other.properties.get("columns", [])]:
                    change.add_dependency(other.key)

        if change.change_type == ChangeType.DROP and (
            change.object_type == ObjectType.TABLE
            or change.properties.get("constraint_type") == "PK"
        ):
            for other in fk_drops_by_referenced.get(table.lower(), []):
                change.add_dependency(other.key)


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------


def diff_schema(
    entities: list[DiscoveredEntity],
    schema: DatabaseSchema,
    options: DiffOptions | None = None,
) -> list[SchemaChange]:
    """Compute the changes that bring ``schema`` in line with ``entities``.

    Validates the entity model first.  Live tables that no entity maps to
    are left alone unless tracked, in which case they are dropped.

    Args:
        entities: Discovered entities (validated here).
        schema: Live schema snapshot.
        options: Diff settings.

    Returns:
        Deterministically ordered list of changes.  Empty when the schema
        already matches.

    Raises:
        DiscoveryError: If the entity model is malformed.

    Example:
        >>> diff_schema([location], DatabaseSchema(provider="postgresql"))
        [SchemaChange(change_type=<ChangeType.CREATE: 'CREATE'>, ...), ...]
    """
    options = options or DiffOptions(provider=schema.provider or "postgresql")
    validate_entities(entities, options.provider, options.default_schema)

    lookup = index_entities(entities)
    changes: list[SchemaChange] = []
    matched: set[int] = set()

    for entity in entities:
        target = build_target_table(
            entity, options.provider, options.default_schema, options.target, lookup
        )
        live = schema.find_table(target.name, target.schema_name)
        if live is None:
            changes.extend(_diff_new_table(target, options.provider))
        else:
            matched.add(id(live))
            changes.extend(_diff_existing_table(target, live, options))

    for table in schema.tables:
        if id(table) not in matched and _is_tracked(table, options):
            changes.append(_drop_table_change(table))

    changes.sort(key=lambda c: (_CATEGORY_ORDER[c.object_type], _TYPE_ORDER[c.change_type]))
    _link_dependencies(changes)
    return changes
