"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol the deployment engine runs against.
All methods are ``async def``.

Usage:
    from sqlsync.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.select("Location", "Id, Name")
        await client.execute("CREATE INDEX IX_Location_Name ON Location (Name)")
        await client.close()
"""

from typing import Any, Protocol


class DatabaseClient(Protocol):
    """What the deployment engine needs from a database connection.

    The executor only needs ``execute``; ``select`` is used by backup
    checkpoints to snapshot affected tables, and ``test_connection`` by
    the runner before a deployment starts.
    """

    async def test_connection(self) -> bool:
        """Run a trivial query; raise the driver error if the database is unreachable."""
        ...

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Read rows with JSON-compatible values.

        Args:
            table: Quoted, schema-qualified table name.
            columns: Column list, or ``"*"`` for a full-row export.
            filters: Equality filters, combined with AND.
            order_by: Ordering expression.
        """
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute one statement (DDL or other non-query operation) and commit.

        Args:
            sql: Raw SQL statement to execute.
            params: Optional dict of named parameters.

        Raises:
            Exception: Driver error if the statement fails; nothing is
                committed in that case.
        """
        ...

    async def close(self) -> None:
        """Close connections and release resources."""
        ...
