"""SQLite persistence layer: schema, connection manager and repositories."""

from taskhero.persistence.database import Database, QueryResult

__all__ = ["Database", "QueryResult"]
