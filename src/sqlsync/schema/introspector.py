"""Live schema introspection and JSON schema snapshots.

``SchemaIntrospector`` queries a PostgreSQL database through
information_schema and pg_catalog:
- Tables, columns, data types, lengths, nullability, defaults, identity
- Constraints (primary key, foreign key, unique, check)
- Indexes (name, ordered columns, uniqueness, partial filter)
- Views, functions and procedures (name and definition)

Other providers are diffed against a JSON snapshot of ``DatabaseSchema``
produced by their own tooling (``load_schema_snapshot``).

Uses psycopg (v3) for PostgreSQL connections.
"""

from pathlib import Path

import psycopg
from psycopg import Connection
from pydantic import ValidationError

from sqlsync.errors import DatabaseConnectionError
from sqlsync.schema.models import (
    DatabaseSchema,
    SchemaColumn,
    SchemaConstraint,
    SchemaFunction,
    SchemaIndex,
    SchemaProcedure,
    SchemaTable,
    SchemaView,
)

_CONSTRAINT_TYPES = {"p": "PK", "f": "FK", "u": "UQ", "c": "CK"}

_FK_ACTIONS = {
    "a": "NO_ACTION",
    "r": "RESTRICT",
    "c": "CASCADE",
    "n": "SET_NULL",
    "d": "SET_DEFAULT",
}


class SchemaIntrospector:
    """Introspects a PostgreSQL schema into a ``DatabaseSchema``.

    Usage:
        with SchemaIntrospector(database_url) as introspector:
            schema = introspector.introspect("public")
    """

    # Tables to exclude from introspection (system tables)
    EXCLUDED_TABLES = {
        "schema_migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(self, database_url: str, connect_timeout: int = 10):
        """Initialize with database connection URL.

        Args:
            database_url: PostgreSQL connection URL (libpq form, no driver
                suffix such as ``+asyncpg``).
            connect_timeout: Seconds to wait for the connection.
        """
        self._database_url = database_url
        self._connect_timeout = connect_timeout
        self._conn: Connection | None = None

    def __enter__(self) -> "SchemaIntrospector":
        """Context manager entry - opens connection."""
        try:
            self._conn = psycopg.connect(self._database_url, connect_timeout=self._connect_timeout)
        except psycopg.OperationalError as e:
            raise DatabaseConnectionError(f"Cannot connect for introspection: {e}") from e
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def introspect(self, schema_name: str = "public") -> DatabaseSchema:
        """Introspect tables, views and routines of one schema."""
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use with statement.")

        db_schema = DatabaseSchema(
            database_name=self._conn.info.dbname,
            provider="postgresql",
        )

        for table_name, comment in self._get_tables(schema_name):
            if table_name in self.EXCLUDED_TABLES:
                continue
            table = SchemaTable(name=table_name, schema_name=schema_name)
            table.columns = self._get_columns(schema_name, table_name)
            table.constraints = self._get_constraints(schema_name, table_name)
            table.indexes = self._get_indexes(schema_name, table_name)
            if comment:
                table.metadata["track_attribute"] = comment.strip()
            db_schema.tables.append(table)

        db_schema.views = self._get_views(schema_name)
        db_schema.functions, db_schema.procedures = self._get_routines(schema_name)
        return db_schema

    def _get_tables(self, schema_name: str) -> list[tuple[str, str | None]]:
        """Get table names and comments in schema."""
        query = """
            SELECT c.relname, obj_description(c.oid, 'pg_class')
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s
              AND c.relkind IN ('r', 'p')
            ORDER BY c.relname
        """
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name,))
            return [(row[0], row[1]) for row in cur.fetchall()]

    def _get_columns(self, schema_name: str, table_name: str) -> list[SchemaColumn]:
        """Get columns for a table in ordinal order."""
        query = """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default,
                character_maximum_length,
                numeric_precision,
                numeric_scale,
                is_identity
            FROM information_schema.columns
            WHERE table_schema = %s
              AND table_name = %s
            ORDER BY ordinal_position
        """
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name, table_name))
            columns = []
            for row in cur.fetchall():
                name, data_type, is_nullable, default, length, precision, scale, identity = row
                is_decimal = data_type.lower() in ("numeric", "decimal")
                columns.append(
                    SchemaColumn(
                        name=name,
                        data_type=data_type,
                        is_nullable=(is_nullable == "YES"),
                        is_identity=(identity == "YES"),
                        max_length=length,
                        precision=precision if is_decimal else None,
                        scale=scale if is_decimal else None,
                        default_value=default,
                    )
                )

        pk_columns = {c for con in self._get_constraints(schema_name, table_name)
                      if con.constraint_type == "PK" for c in con.columns}
        for column in columns:
            column.is_primary_key = column.name in pk_columns
        return columns

    def _get_constraints(self, schema_name: str, table_name: str) -> list[SchemaConstraint]:
        """Get PK, FK, unique and check constraints with ordered columns."""
        query = """
            SELECT
                con.conname,
                con.contype,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                ) AS columns,
                rt.relname AS referenced_table,
                rn.nspname AS referenced_schema,
                ARRAY(
                    SELECT a.attname
                    FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                ) AS referenced_columns,
                con.confdeltype,
                con.confupdtype,
                pg_get_constraintdef(con.oid) AS definition
            FROM pg_constraint con
            JOIN pg_class t ON t.oid = con.conrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            LEFT JOIN pg_class rt ON rt.oid = con.confrelid
            LEFT JOIN pg_namespace rn ON rn.oid = rt.relnamespace
            WHERE n.nspname = %s
              AND t.relname = %s
              AND con.contype IN ('p', 'f', 'u', 'c')
            ORDER BY con.conname
        """
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name, table_name))
            constraints = []
            for row in cur.fetchall():
                (name, contype, columns, ref_table, ref_schema,
                 ref_columns, on_delete, on_update, definition) = row
                kind = _CONSTRAINT_TYPES[contype]
                check = None
                if kind == "CK" and definition.upper().startswith("CHECK"):
                    check = definition[len("CHECK"):].strip()
                constraints.append(
                    SchemaConstraint(
                        name=name,
                        constraint_type=kind,
                        table_name=table_name,
                        schema_name=schema_name,
                        columns=list(columns),
                        referenced_table=ref_table if kind == "FK" else None,
                        referenced_schema=ref_schema if kind == "FK" else None,
                        referenced_columns=list(ref_columns) if kind == "FK" else [],
                        on_delete_action=_FK_ACTIONS.get(on_delete, "NO_ACTION"),
                        on_update_action=_FK_ACTIONS.get(on_update, "NO_ACTION"),
                        check_expression=check,
                    )
                )
            return constraints

    def _get_indexes(self, schema_name: str, table_name: str) -> list[SchemaIndex]:
        """Get indexes for a table (excluding the primary key)."""
        query = """
            SELECT
                i.relname AS index_name,
                array_agg(a.attname ORDER BY x.ordinality) AS columns,
                ix.indisunique AS is_unique,
                ix.indisclustered AS is_clustered,
                pg_get_expr(ix.indpred, ix.indrelid) AS filter_expression
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = x.attnum
            WHERE n.nspname = %s
              AND t.relname = %s
              AND NOT ix.indisprimary
            GROUP BY i.relname, ix.indisunique, ix.indisclustered, ix.indpred, ix.indrelid
            ORDER BY i.relname
        """
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name, table_name))
            return [
                SchemaIndex(
                    name=name,
                    table_name=table_name,
                    schema_name=schema_name,
                    columns=list(columns),
                    is_unique=is_unique,
                    is_clustered=is_clustered,
                    filter_expression=filter_expression,
                )
                for name, columns, is_unique, is_clustered, filter_expression in cur.fetchall()
            ]

    def _get_views(self, schema_name: str) -> list[SchemaView]:
        query = """
            SELECT table_name, view_definition
            FROM information_schema.views
            WHERE table_schema = %s
            ORDER BY table_name
        """
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name,))
            return [
                SchemaView(name=name, schema_name=schema_name, definition=definition or "")
                for name, definition in cur.fetchall()
            ]

    def _get_routines(self, schema_name: str) -> tuple[list[SchemaFunction], list[SchemaProcedure]]:
        """Get user-defined functions and procedures in schema.

        Note: Extension-owned routines are excluded via pg_depend.
        """
        query = """
            SELECT
                p.proname,
                p.prokind,
                pg_get_function_result(p.oid) AS return_type,
                pg_get_functiondef(p.oid) AS definition
            FROM pg_proc p
            JOIN pg_namespace n ON n.oid = p.pronamespace
            WHERE n.nspname = %s
              AND p.prokind IN ('f', 'p')
              AND NOT EXISTS (
                  SELECT 1 FROM pg_depend d
                  WHERE d.objid = p.oid AND d.deptype = 'e'
              )
            ORDER BY p.proname
        """
        functions: list[SchemaFunction] = []
        procedures: list[SchemaProcedure] = []
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name,))
            for name, kind, return_type, definition in cur.fetchall():
                if kind == "p":
                    procedures.append(
                        SchemaProcedure(name=name, schema_name=schema_name, definition=definition)
                    )
                else:
                    functions.append(
                        SchemaFunction(
                            name=name,
                            schema_name=schema_name,
                            definition=definition,
                            return_type=return_type or "",
                        )
                    )
        return functions, procedures


# ============================================================================
# Snapshots
# ============================================================================


def load_schema_snapshot(path: str | Path) -> DatabaseSchema:
    """Load a ``DatabaseSchema`` from a JSON snapshot file.

    Raises:
        DatabaseConnectionError: If the file is missing or not a valid
            snapshot, since the live schema is then unknown.
    """
    snapshot = Path(path)
    if not snapshot.exists():
        raise DatabaseConnectionError(f"Schema snapshot not found: {snapshot}")
    try:
        return DatabaseSchema.model_validate_json(snapshot.read_text())
    except ValidationError as e:
        raise DatabaseConnectionError(f"Invalid schema snapshot {snapshot}: {e}") from e


def save_schema_snapshot(schema: DatabaseSchema, path: str | Path) -> Path:
    """Write a ``DatabaseSchema`` as a JSON snapshot and return its path."""
    snapshot = Path(path)
    snapshot.parent.mkdir(parents=True, exist_ok=True)
    snapshot.write_text(schema.model_dump_json(indent=2))
    return snapshot
