"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the SQLAlchemy-based async
adapter used by the deployment executor.

Usage:
    from sqlsync.adapters import DatabaseClient, AsyncSqlAlchemyAdapter
"""

from sqlsync.adapters.base import DatabaseClient
from sqlsync.adapters.database import AsyncSqlAlchemyAdapter

__all__ = [
    "DatabaseClient",
    "AsyncSqlAlchemyAdapter",
]
