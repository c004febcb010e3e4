"""Generic DDL generation for schema changes.

Produces a forward statement and, where one can be derived, a rollback
statement for every ``SchemaChange``.  Covers the common DDL of the five
supported providers; anything a provider cannot express raises
``SchemaValidationError`` at planning time rather than failing mid-deploy.

Usage:
    from sqlsync.deploy.sql import SqlGenerator

    generator = SqlGenerator("postgresql", default_schema="public")
    sql, rollback = generator.statements(change)
"""

from typing import Any

from sqlsync.errors import SchemaValidationError
from sqlsync.schema.models import ChangeType, ObjectType, SchemaChange

_NO_LENGTH_TYPES = frozenset({"TEXT", "NTEXT", "NCLOB", "CLOB", "BLOB", "BYTEA"})
_MAX_LENGTH_TYPES = frozenset({"NVARCHAR", "VARCHAR", "VARBINARY"})
_DECIMAL_TYPES = frozenset({"DECIMAL", "NUMERIC", "NUMBER"})

_IDENTITY_SUFFIX: dict[str, str] = {
    "sqlserver": " IDENTITY(1,1)",
    "postgresql": " GENERATED BY DEFAULT AS IDENTITY",
    "oracle": " GENERATED BY DEFAULT AS IDENTITY",
    "mysql": " AUTO_INCREMENT",
}

_ENVIRONMENT_CHECKS: dict[str, str] = {
    "sqlserver": "SELECT @@VERSION AS ServerVersion, DB_NAME() AS CurrentDatabase",
    "postgresql": "SELECT version() AS server_version, current_database() AS current_database",
    "mysql": "SELECT VERSION() AS server_version, DATABASE() AS current_database",
    "oracle": "SELECT * FROM v$version WHERE banner LIKE 'Oracle%'",
    "sqlite": "SELECT sqlite_version() AS sqlite_version",
}

_TABLE_COUNT_CHECKS: dict[str, str] = {
    "sqlserver": (
        "SELECT COUNT(*) AS table_count FROM INFORMATION_SCHEMA.TABLES "
        "WHERE TABLE_TYPE = 'BASE TABLE'"
    ),
    "postgresql": (
        "SELECT COUNT(*) AS table_count FROM information_schema.tables "
        "WHERE table_type = 'BASE TABLE'"
    ),
    "mysql": (
        "SELECT COUNT(*) AS table_count FROM INFORMATION_SCHEMA.TABLES "
        "WHERE TABLE_TYPE = 'BASE TABLE'"
    ),
    "oracle": "SELECT COUNT(*) AS table_count FROM user_tables",
    "sqlite": "SELECT COUNT(*) AS table_count FROM sqlite_master WHERE type = 'table'",
}

_DEPENDENT_KEYWORDS: dict[ObjectType, str] = {
    ObjectType.VIEW: "VIEW",
    ObjectType.PROCEDURE: "PROCEDURE",
    ObjectType.FUNCTION: "FUNCTION",
}


def _action(action: str | None) -> str:
    """Render an ON DELETE/UPDATE action; NO_ACTION renders as nothing."""
    normalized = (action or "NO_ACTION").upper().replace("_", " ")
    return "" if normalized == "NO ACTION" else normalized


class SqlGenerator:
    """Render DDL for one provider.

    Args:
        provider: One of ``sqlserver``, ``postgresql``, ``mysql``,
            ``oracle``, ``sqlite``.
        default_schema: Schema left unqualified in generated statements.

    Example:
        generator = SqlGenerator("sqlserver", default_schema="dbo")
        generator.quote("Order")   # '[Order]'
    """

    def __init__(self, provider: str, default_schema: str = "") -> None:
        self.provider = provider
        self.default_schema = default_schema

    # ------------------------------------------------------------------
    # Identifiers and types
    # ------------------------------------------------------------------

    def quote(self, identifier: str) -> str:
        if self.provider == "sqlserver":
            return f"[{identifier}]"
        if self.provider == "mysql":
            return f"`{identifier}`"
        return f'"{identifier}"'

    def qualify(self, schema: str, name: str) -> str:
        """Quote ``name``, prefixed by ``schema`` unless it is the default."""
        if schema and schema.lower() != self.default_schema.lower() and self.provider != "sqlite":
            return f"{self.quote(schema)}.{self.quote(name)}"
        return self.quote(name)

    def _columns(self, names: list[str]) -> str:
        return ", ".join(self.quote(n) for n in names)

    def render_type(self, column: dict[str, Any]) -> str:
        """Render a column type with its length or precision.

        Example:
            >>> SqlGenerator("sqlserver").render_type({"data_type": "NVARCHAR"})
            'NVARCHAR(MAX)'
        """
        data_type = column["data_type"].upper()
        max_length = column.get("max_length")
        precision = column.get("precision")

        if data_type in _NO_LENGTH_TYPES:
            return data_type
        if max_length is not None and max_length > 0:
            return f"{data_type}({max_length})"
        if self.provider == "sqlserver" and data_type in _MAX_LENGTH_TYPES:
            return f"{data_type}(MAX)"
        if precision is not None and data_type in _DECIMAL_TYPES:
            return f"{data_type}({precision},{column.get('scale') or 0})"
        return data_type

    def column_definition(self, column: dict[str, Any], include_identity: bool = True) -> str:
        parts = [self.quote(column["name"]), self.render_type(column)]
        if include_identity and column.get("is_identity"):
            parts.append(_IDENTITY_SUFFIX.get(self.provider, "").strip())
        if column.get("default_value") is not None:
            parts.append(f"DEFAULT {column['default_value']}")
        if not column.get("is_nullable", True):
            parts.append("NOT NULL")
        elif self.provider == "sqlserver":
            parts.append("NULL")
        return " ".join(p for p in parts if p)

    # ------------------------------------------------------------------
    # Validation queries
    # ------------------------------------------------------------------

    def environment_check(self) -> str:
        """Read-only query run before deployment: server version and current database."""
        return _ENVIRONMENT_CHECKS[self.provider]

    def post_deployment_check(self) -> str:
        """Read-only query run after deployment: count of base tables."""
        return _TABLE_COUNT_CHECKS[self.provider]

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def statements(self, change: SchemaChange) -> tuple[str, str | None]:
        """Forward and rollback statements for a change.

        Returns:
            Tuple of (forward SQL, rollback SQL or ``None``).

        Raises:
            SchemaValidationError: If the provider cannot express the change.
        """
        if change.object_type == ObjectType.TABLE:
            return self._table(change)
        if change.object_type == ObjectType.COLUMN:
            return self._column(change)
        if change.object_type == ObjectType.INDEX:
            return self._index(change)
        if change.object_type == ObjectType.CONSTRAINT:
            return self._constraint(change)
        if change.object_type in _DEPENDENT_KEYWORDS:
            return self._dependent_object(change)
        raise self._unsupported(change, f"unknown object type {change.object_type}")

    def _unsupported(self, change: SchemaChange, reason: str) -> SchemaValidationError:
        return SchemaValidationError(
            f"Cannot generate {change.change_type.value} {change.object_type.value} "
            f"for {self.provider}: {reason}",
            object_name=change.object_name,
            schema_name=change.schema_name or None,
        )

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def _table(self, change: SchemaChange) -> tuple[str, str | None]:
        table = self.qualify(change.schema_name, change.object_name)
        if change.change_type == ChangeType.DROP:
            return f"DROP TABLE {table}", None
        if change.change_type != ChangeType.CREATE:
            raise self._unsupported(change, "tables can only be created or dropped")

        columns: list[dict[str, Any]] = change.properties.get("columns", [])
        pk = change.properties.get("primary_key") or {}
        pk_columns: list[str] = pk.get("columns", [])
        # SQLite only auto-increments an inline INTEGER PRIMARY KEY
        identity_key = (
            self.provider == "sqlite"
            and len(pk_columns) == 1
            and any(c["name"] == pk_columns[0] and c.get("is_identity") for c in columns)
        )

        body: list[str] = []
        for column in columns:
            if identity_key and column["name"] == pk_columns[0]:
                body.append(f"{self.quote(column['name'])} INTEGER PRIMARY KEY AUTOINCREMENT")
            else:
                body.append(self.column_definition(column))
        if pk_columns and not identity_key:
            body.append(
                f"CONSTRAINT {self.quote(pk['name'])} PRIMARY KEY ({self._columns(pk_columns)})"
            )
        for constraint in change.properties.get("constraints", []):
            body.append(
                f"CONSTRAINT {self.quote(constraint['name'])} {self._constraint_body(constraint)}"
            )
        return f"CREATE TABLE {table} ({', '.join(body)})", f"DROP TABLE {table}"

    # ------------------------------------------------------------------
    # Columns
    # ------------------------------------------------------------------

    def _add_column(self, table: str, column: dict[str, Any]) -> str:
        definition = self.column_definition(column, include_identity=False)
        if self.provider == "sqlserver":
            return f"ALTER TABLE {table} ADD {definition}"
        if self.provider == "oracle":
            return f"ALTER TABLE {table} ADD ({definition})"
        return f"ALTER TABLE {table} ADD COLUMN {definition}"

    def _drop_column(self, table: str, name: str) -> str:
        return f"ALTER TABLE {table} DROP COLUMN {self.quote(name)}"

    def _column(self, change: SchemaChange) -> tuple[str, str | None]:
        table = self.qualify(change.schema_name, change.table_name)
        if change.change_type == ChangeType.CREATE:
            column = change.properties["column"]
            return self._add_column(table, column), self._drop_column(table, column["name"])
        if change.change_type == ChangeType.DROP:
            return self._drop_column(table, change.object_name), None

        if self.provider == "sqlite":
            raise self._unsupported(change, "SQLite cannot alter columns in place")

        target = change.properties["column"]
        current = change.properties["current"]
        kind = change.properties.get("alter_kind")
        forward = self._alter_column(table, kind, target, current)
        rollback = self._alter_column(table, kind, current, target)
        if kind == "data_type" and change.properties.get("potential_data_loss"):
            rollback = None
        return forward, rollback

    def _alter_column(
        self,
        table: str,
        kind: str | None,
        to: dict[str, Any],
        frm: dict[str, Any],
    ) -> str:
        """Statement changing one aspect of a column from ``frm`` to ``to``."""
        name = self.quote(to["name"])
        null_text = "NULL" if to.get("is_nullable", True) else "NOT NULL"

        if self.provider == "mysql":
            return f"ALTER TABLE {table} MODIFY COLUMN {self.column_definition(to)}"

        if kind == "data_type":
            if self.provider == "postgresql":
                return f"ALTER TABLE {table} ALTER COLUMN {name} TYPE {self.render_type(to)}"
            if self.provider == "sqlserver":
                return f"ALTER TABLE {table} ALTER COLUMN {name} {self.render_type(to)} {null_text}"
            return f"ALTER TABLE {table} MODIFY ({name} {self.render_type(to)})"

        if kind == "nullability":
            if self.provider == "postgresql":
                verb = "DROP NOT NULL" if to.get("is_nullable", True) else "SET NOT NULL"
                return f"ALTER TABLE {table} ALTER COLUMN {name} {verb}"
            if self.provider == "sqlserver":
                return f"ALTER TABLE {table} ALTER COLUMN {name} {self.render_type(frm)} {null_text}"
            return f"ALTER TABLE {table} MODIFY ({name} {null_text})"

        default = to.get("default_value")
        if self.provider == "postgresql":
            if default is None:
                return f"ALTER TABLE {table} ALTER COLUMN {name} DROP DEFAULT"
            return f"ALTER TABLE {table} ALTER COLUMN {name} SET DEFAULT {default}"
        if self.provider == "sqlserver":
            bare_table = table.split(".")[-1].strip("[]")
            constraint = self.quote(f"DF_{bare_table}_{to['name']}")
            if default is None:
                return f"ALTER TABLE {table} DROP CONSTRAINT {constraint}"
            return f"ALTER TABLE {table} ADD CONSTRAINT {constraint} DEFAULT {default} FOR {name}"
        return f"ALTER TABLE {table} MODIFY ({name} DEFAULT {default if default is not None else 'NULL'})"

    # ------------------------------------------------------------------
    # Indexes
    # ------------------------------------------------------------------

    def create_index(self, schema: str, table_name: str, index: dict[str, Any]) -> str:
        table = self.qualify(schema, table_name)
        unique = "UNIQUE " if index.get("is_unique") else ""
        clustered = ""
        if self.provider == "sqlserver":
            clustered = "CLUSTERED " if index.get("is_clustered") else "NONCLUSTERED "
        sql = (
            f"CREATE {unique}{clustered}INDEX {self.quote(index['name'])} "
            f"ON {table} ({self._columns(index['columns'])})"
        )
        if index.get("filter_expression") and self.provider in ("sqlserver", "postgresql", "sqlite"):
            sql += f" WHERE {index['filter_expression']}"
        return sql

    def drop_index(self, schema: str, table_name: str, name: str) -> str:
        if self.provider in ("sqlserver", "mysql"):
            return f"DROP INDEX {self.quote(name)} ON {self.qualify(schema, table_name)}"
        return f"DROP INDEX {self.qualify(schema, name)}"

    def _index(self, change: SchemaChange) -> tuple[str, str | None]:
        index = change.properties["index"]
        create = self.create_index(change.schema_name, change.table_name, index)
        drop = self.drop_index(change.schema_name, change.table_name, index["name"])
        if change.change_type == ChangeType.CREATE:
            return create, drop
        if change.change_type == ChangeType.DROP:
            return drop, create
        raise self._unsupported(change, "indexes are dropped and re-created, not altered")

    # ------------------------------------------------------------------
    # Constraints
    # ------------------------------------------------------------------

    def _constraint_body(self, constraint: dict[str, Any]) -> str:
        kind = constraint["constraint_type"].upper()
        columns = self._columns(constraint.get("columns", []))
        if kind == "PK":
            return f"PRIMARY KEY ({columns})"
        if kind == "UQ":
            return f"UNIQUE ({columns})"
        if kind == "CK":
            return f"CHECK ({constraint['check_expression']})"
        referenced = self.qualify(
            constraint.get("referenced_schema") or "", constraint["referenced_table"]
        )
        body = (
            f"FOREIGN KEY ({columns}) REFERENCES {referenced} "
            f"({self._columns(constraint.get('referenced_columns', []))})"
        )
        on_delete = _action(constraint.get("on_delete_action"))
        on_update = _action(constraint.get("on_update_action"))
        if on_delete:
            body += f" ON DELETE {on_delete}"
        if on_update and self.provider != "oracle":
            body += f" ON UPDATE {on_update}"
        return body

    def add_constraint(self, change: SchemaChange, constraint: dict[str, Any]) -> str:
        table = self.qualify(change.schema_name, change.table_name)
        if self.provider == "sqlite":
            if constraint["constraint_type"].upper() == "UQ":
                return (
                    f"CREATE UNIQUE INDEX {self.quote(constraint['name'])} "
                    f"ON {table} ({self._columns(constraint['columns'])})"
                )
            raise self._unsupported(change, "SQLite cannot add constraints to an existing table")
        return f"ALTER TABLE {table} ADD CONSTRAINT {self.quote(constraint['name'])} {self._constraint_body(constraint)}"

    def drop_constraint(self, change: SchemaChange, constraint: dict[str, Any]) -> str:
        table = self.qualify(change.schema_name, change.table_name)
        name = self.quote(constraint["name"])
        kind = constraint["constraint_type"].upper()
        if self.provider == "sqlite":
            if kind == "UQ":
                return f"DROP INDEX {name}"
            raise self._unsupported(change, "SQLite cannot drop constraints from an existing table")
        if self.provider == "mysql":
            if kind == "FK":
                return f"ALTER TABLE {table} DROP FOREIGN KEY {name}"
            if kind == "PK":
                return f"ALTER TABLE {table} DROP PRIMARY KEY"
            if kind == "UQ":
                return f"ALTER TABLE {table} DROP INDEX {name}"
            return f"ALTER TABLE {table} DROP CHECK {name}"
        return f"ALTER TABLE {table} DROP CONSTRAINT {name}"

    def _constraint(self, change: SchemaChange) -> tuple[str, str | None]:
        constraint = change.properties["constraint"]
        if change.change_type == ChangeType.CREATE:
            return self.add_constraint(change, constraint), self.drop_constraint(change, constraint)
        if change.change_type == ChangeType.DROP:
            return self.drop_constraint(change, constraint), self.add_constraint(change, constraint)
        raise self._unsupported(change, "constraints are dropped and re-created, not altered")

    # ------------------------------------------------------------------
    # Views, procedures, functions
    # ------------------------------------------------------------------

    def _dependent_object(self, change: SchemaChange) -> tuple[str, str | None]:
        keyword = _DEPENDENT_KEYWORDS[change.object_type]
        name = self.qualify(change.schema_name, change.object_name)
        definition: str | None = change.properties.get("definition")
        drop = f"DROP {keyword} {name}"
        if change.change_type == ChangeType.DROP:
            return drop, definition
        if not definition:
            raise self._unsupported(change, "no definition recorded")
        if change.change_type == ChangeType.CREATE:
            return definition, drop
        return definition, change.properties.get("previous_definition")
