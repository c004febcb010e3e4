"""Tests for database URL building and the async SQLAlchemy adapter."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

import pytest

from sqlsync.adapters.database import AsyncSqlAlchemyAdapter
from sqlsync.config.models import DatabaseConfiguration
from sqlsync.errors import ConfigurationError
from sqlsync.factory import build_database_url, get_adapter, introspection_url


# ------------------------------------------------------------------
# build_database_url
# ------------------------------------------------------------------


class TestBuildDatabaseUrl:
    """Test URL construction per provider."""

    def test_postgres_fields(self):
        database = DatabaseConfiguration(
            postgresql=True, server="db.internal", database_name="app",
            username="deploy", password="secret",
        )
        url = build_database_url(database)
        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "db.internal"
        assert url.port == 5432
        assert url.database == "app"
        assert url.username == "deploy"

    def test_sync_driver(self):
        database = DatabaseConfiguration(postgresql=True, server="h", database_name="app")
        assert build_database_url(database, async_driver=False).drivername == "postgresql+psycopg"

    def test_sqlserver_odbc_query(self):
        database = DatabaseConfiguration(sqlserver=True, server="sql01", database_name="Sales", port=1444)
        url = build_database_url(database)
        assert url.drivername == "mssql+aioodbc"
        assert url.port == 1444
        assert url.query["driver"] == "ODBC Driver 18 for SQL Server"

    def test_oracle_service_name(self):
        database = DatabaseConfiguration(
            oracle=True, server="ora", database_name="ignored", oracle_service_name="ORCLPDB1",
        )
        url = build_database_url(database)
        assert url.database is None
        assert url.query["service_name"] == "ORCLPDB1"

    def test_sqlite_file(self, tmp_path):
        path = str(tmp_path / "app.db")
        url = build_database_url(DatabaseConfiguration(sqlite=True, sqlite_file_path=path))
        assert url.drivername == "sqlite+aiosqlite"
        assert url.database == path

    def test_connection_string_wins(self):
        database = DatabaseConfiguration(
            postgresql=True, server="ignored", connection_string="postgres://u:p@real:6543/app",
        )
        url = build_database_url(database)
        assert url.drivername == "postgresql+asyncpg"
        assert url.host == "real"
        assert url.port == 6543

    def test_connection_string_driver_swapped(self):
        database = DatabaseConfiguration(
            mysql=True, connection_string="mysql+pymysql://u:p@my/app",
        )
        assert build_database_url(database).drivername == "mysql+aiomysql"
        assert build_database_url(database, async_driver=False).drivername == "mysql+pymysql"

    def test_invalid_connection_string(self):
        database = DatabaseConfiguration(postgresql=True, connection_string="not a url")
        with pytest.raises(ConfigurationError, match="Invalid connection string"):
            build_database_url(database)

    def test_no_provider(self):
        with pytest.raises(ConfigurationError, match="Exactly one"):
            build_database_url(DatabaseConfiguration())

    def test_introspection_url_is_libpq(self):
        database = DatabaseConfiguration(
            postgresql=True, server="h", database_name="app", username="u", password="p",
        )
        assert introspection_url(database) == "postgresql://u:p@h:5432/app"


# ------------------------------------------------------------------
# Adapter
# ------------------------------------------------------------------


class TestAdapter:
    """Test the adapter against a SQLite file database."""

    async def test_get_adapter_sqlite(self, tmp_path):
        adapter = get_adapter(
            DatabaseConfiguration(sqlite=True, sqlite_file_path=str(tmp_path / "a.db"))
        )
        try:
            assert isinstance(adapter, AsyncSqlAlchemyAdapter)
            assert adapter.dialect_name == "sqlite"
            assert await adapter.test_connection() is True
        finally:
            await adapter.close()

    async def test_execute_and_select(self, tmp_path):
        adapter = AsyncSqlAlchemyAdapter(f"sqlite+aiosqlite:///{tmp_path / 'b.db'}")
        try:
            await adapter.execute('CREATE TABLE "Location" ("Id" INTEGER PRIMARY KEY, "Title" TEXT)')
            await adapter.execute(
                'INSERT INTO "Location" ("Id", "Title") VALUES (:id, :title)',
                {"id": 1, "title": "Harbor"},
            )
            await adapter.execute('INSERT INTO "Location" ("Id", "Title") VALUES (2, \'Quay\')')

            rows = await adapter.select('"Location"', order_by='"Id"')
            assert rows == [{"Id": 1, "Title": "Harbor"}, {"Id": 2, "Title": "Quay"}]

            filtered = await adapter.select('"Location"', columns='"Title"', filters={'"Id"': 2})
            assert filtered == [{"Title": "Quay"}]
        finally:
            await adapter.close()

    async def test_failed_statement_raises(self, tmp_path):
        adapter = AsyncSqlAlchemyAdapter(f"sqlite+aiosqlite:///{tmp_path / 'c.db'}")
        try:
            with pytest.raises(Exception):
                await adapter.execute('ALTER TABLE "Missing" ADD COLUMN "X" TEXT')
        finally:
            await adapter.close()

    def test_serialize_value(self):
        adapter = AsyncSqlAlchemyAdapter("sqlite+aiosqlite://")
        uid = UUID("12345678-1234-5678-1234-567812345678")
        assert adapter._serialize_value(uid) == str(uid)
        assert adapter._serialize_value(datetime(2026, 10, 17, 9, 30)) == "2026-10-17T09:30:00"
        assert adapter._serialize_value(date(2026, 10, 17)) == "2026-10-17"
        assert adapter._serialize_value(Decimal("1.50")) == "1.50"
        assert adapter._serialize_value(b"\x01\xff") == "01ff"
        assert adapter._serialize_value(42) == 42
