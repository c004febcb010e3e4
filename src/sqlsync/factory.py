"""Database URL and adapter factory.

Builds SQLAlchemy URLs from ``DatabaseConfiguration`` for each provider and
creates the matching adapter.  A configured ``connection_string`` always
wins over the individual connection fields.

Usage:
    from sqlsync.factory import get_adapter, build_database_url

    adapter = get_adapter(config.database)
    url = build_database_url(config.database, async_driver=False)
"""

from typing import Any

from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError

from sqlsync.adapters.base import DatabaseClient
from sqlsync.adapters.database import AsyncSqlAlchemyAdapter
from sqlsync.config.models import DEFAULT_PORTS, DatabaseConfiguration
from sqlsync.errors import ConfigurationError

# (async driver, sync driver) per provider
DRIVERS: dict[str, tuple[str, str]] = {
    "sqlserver": ("mssql+aioodbc", "mssql+pyodbc"),
    "postgresql": ("postgresql+asyncpg", "postgresql+psycopg"),
    "mysql": ("mysql+aiomysql", "mysql+pymysql"),
    "oracle": ("oracle+oracledb_async", "oracle+oracledb"),
    "sqlite": ("sqlite+aiosqlite", "sqlite"),
}

_ASYNC_TO_SYNC = {async_name: sync_name for async_name, sync_name in DRIVERS.values()}
_SYNC_TO_ASYNC = {sync_name: async_name for async_name, sync_name in DRIVERS.values()}

# Bare URL scheme (no driver) -> provider
_BACKEND_PROVIDERS = {
    "mssql": "sqlserver",
    "postgresql": "postgresql",
    "mysql": "mysql",
    "oracle": "oracle",
    "sqlite": "sqlite",
}


def _from_connection_string(connection_string: str, async_driver: bool) -> URL:
    """Parse a configured connection string and swap in the wanted driver."""
    url_text = connection_string
    # postgres:// -> postgresql:// (Heroku, Railway alias)
    if url_text.startswith("postgres://"):
        url_text = "postgresql://" + url_text[len("postgres://"):]
    try:
        url = make_url(url_text)
    except ArgumentError as e:
        raise ConfigurationError(f"Invalid connection string: {e}") from e

    if "+" not in url.drivername and url.drivername in _BACKEND_PROVIDERS:
        async_name, sync_name = DRIVERS[_BACKEND_PROVIDERS[url.drivername]]
        return url.set(drivername=async_name if async_driver else sync_name)

    mapping = _SYNC_TO_ASYNC if async_driver else _ASYNC_TO_SYNC
    drivername = mapping.get(url.drivername, url.drivername)
    return url.set(drivername=drivername)


def build_database_url(database: DatabaseConfiguration, async_driver: bool = True) -> URL:
    """Build the SQLAlchemy URL for the selected provider.

    Args:
        database: Database section of the run configuration.
        async_driver: Async driver for the executor (default) or the sync
            driver (used by the psycopg introspector for PostgreSQL).

    Returns:
        SQLAlchemy ``URL``.

    Raises:
        ConfigurationError: If no single provider is selected or the
            connection string cannot be parsed.
    """
    try:
        provider = database.provider
    except ValueError as e:
        raise ConfigurationError(str(e)) from e

    if database.connection_string:
        return _from_connection_string(database.connection_string, async_driver)

    async_name, sync_name = DRIVERS[provider]
    drivername = async_name if async_driver else sync_name

    if provider == "sqlite":
        return URL.create(drivername, database=database.sqlite_file_path)

    query: dict[str, str] = {}
    database_name: str | None = database.database_name or None
    if provider == "sqlserver":
        query["driver"] = "ODBC Driver 18 for SQL Server"
        query["TrustServerCertificate"] = "yes"
    elif provider == "oracle" and database.oracle_service_name:
        query["service_name"] = database.oracle_service_name
        database_name = None

    return URL.create(
        drivername,
        username=database.username or None,
        password=database.password or None,
        host=database.server or None,
        port=database.port or DEFAULT_PORTS.get(provider),
        database=database_name,
        query=query,
    )


def introspection_url(database: DatabaseConfiguration) -> str:
    """libpq connection URL for ``SchemaIntrospector`` (PostgreSQL only)."""
    url = build_database_url(database, async_driver=False).set(drivername="postgresql")
    return url.render_as_string(hide_password=False)


def get_adapter(database: DatabaseConfiguration, **engine_kwargs: Any) -> DatabaseClient:
    """Create an async adapter for the configured database.

    The connection timeout is passed to the driver where it takes one.

    Example:
        adapter = get_adapter(config.database)
        await adapter.execute("SELECT 1")
        await adapter.close()
    """
    url = build_database_url(database)
    backend = url.get_backend_name()
    connect_args: dict[str, Any] = dict(engine_kwargs.pop("connect_args", {}))
    if backend == "postgresql":
        connect_args.setdefault("timeout", database.connection_timeout_seconds)
    elif backend == "mysql":
        connect_args.setdefault("connect_timeout", database.connection_timeout_seconds)
    elif backend == "sqlite":
        connect_args.setdefault("timeout", database.connection_timeout_seconds)
    return AsyncSqlAlchemyAdapter(url, connect_args=connect_args, **engine_kwargs)
