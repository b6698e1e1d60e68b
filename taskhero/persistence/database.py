"""Database connection management for TaskHero state."""

import asyncio
import logging
import re
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from taskhero.core.config import Settings, get_settings
from taskhero.core.errors import (
    ConstraintViolationError,
    DatabaseConnectionError,
    NotInitializedError,
    QueryError,
)
from taskhero.persistence.schema import (
    INITIALIZATION_ORDER,
    SCHEMA_VERSION,
    SchemaManager,
)

logger = logging.getLogger(__name__)

# "UNIQUE constraint failed: tasks.project_id, tasks.task_identifier"
_CONSTRAINT_MESSAGE = re.compile(r"^(?P<kind>[A-Z ]+?) constraint failed(?::\s*(?P<detail>.+))?$")

Operation = Tuple[str, Sequence[Any]]


@dataclass(frozen=True)
class QueryResult:
    """Outcome of a write statement."""

    last_row_id: Optional[int]
    row_count: int


def _constraint_name(error: sqlite3.IntegrityError) -> str:
    """Extract the violated constraint from an sqlite IntegrityError message.

    Returns e.g. ``UNIQUE(tasks.project_id, tasks.task_identifier)``,
    ``FOREIGN KEY`` or ``CHECK(complexity_score ...)``.
    """
    message = str(error)
    match = _CONSTRAINT_MESSAGE.match(message)
    if not match:
        return message
    kind = match.group("kind")
    detail = match.group("detail")
    return f"{kind}({detail})" if detail else kind


class Database:
    """Async SQLite manager for one TaskHero project store.

    Holds a single aiosqlite connection in autocommit mode; multi-statement
    work goes through ``atomic()`` or ``transaction()``. While one task has a
    transaction open, statements from other tasks wait for it to finish
    rather than joining it. Several Database
    instances (CLI, API server, MCP server) may point at the same file;
    SQLite locking plus ``busy_timeout`` arbitrates between them.

    Example:
        async with Database.for_project("/path/to/project") as db:
            row = await db.get("SELECT * FROM projects WHERE id = ?", (1,))
    """

    def __init__(self, db_path: Path | str, settings: Optional[Settings] = None):
        self.db_path = Path(db_path) if str(db_path) != ":memory:" else db_path
        self.settings = settings or get_settings()
        self._conn: Optional[aiosqlite.Connection] = None
        self._init_lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None
        self._tx_depth = 0

    @classmethod
    def for_project(cls, project_root: Path | str, settings: Optional[Settings] = None) -> "Database":
        """Build a Database at ``<project_root>/.taskmaster/taskhero.db``."""
        settings = settings or get_settings()
        return cls(settings.database_path(project_root), settings=settings)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # Lifecycle

    async def initialize(self) -> None:
        """Open the connection, apply pragmas and create the schema if missing.

        Idempotent: a second call on an open Database is a no-op.

        Raises:
            DatabaseConnectionError: If the file or its directory cannot be
                created or opened
        """
        async with self._init_lock:
            if self._conn is not None:
                return

            try:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                conn = await aiosqlite.connect(str(self.db_path), isolation_level=None)
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Failed to open database {self.db_path}: {e}")
                raise DatabaseConnectionError(str(self.db_path), str(e)) from e

            conn.row_factory = aiosqlite.Row
            try:
                await self._apply_pragmas(conn)
                await self._ensure_schema(conn)
            except sqlite3.Error as e:
                await conn.close()
                logger.error(f"Failed to initialize database {self.db_path}: {e}")
                raise DatabaseConnectionError(str(self.db_path), str(e)) from e

            self._conn = conn
            logger.info(f"Database initialized at {self.db_path}")

    async def _apply_pragmas(self, conn: aiosqlite.Connection) -> None:
        await conn.execute("PRAGMA foreign_keys = ON")
        await conn.execute(f"PRAGMA journal_mode = {self.settings.journal_mode}")
        await conn.execute(f"PRAGMA busy_timeout = {int(self.settings.busy_timeout_ms)}")

    async def _ensure_schema(self, conn: aiosqlite.Connection) -> None:
        schema = SchemaManager(conn)
        if await schema.is_initialized():
            logger.debug(f"Schema already present in {self.db_path}")
            return

        await conn.execute("BEGIN IMMEDIATE")
        try:
            await schema.create_schema()
        except BaseException:
            await conn.execute("ROLLBACK")
            raise
        await conn.execute("COMMIT")

    async def close(self) -> None:
        """Close the connection. Later calls raise NotInitializedError."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            self._tx_depth = 0
            self._tx_owner = None
            logger.debug(f"Database connection closed for {self.db_path}")

    async def __aenter__(self) -> "Database":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _require_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise NotInitializedError(str(self.db_path))
        return self._conn

    # Statement execution

    async def _execute(self, sql: str, params: Sequence[Any]) -> aiosqlite.Cursor:
        conn = self._require_conn()
        logger.debug(f"SQL: {' '.join(sql.split())} params={tuple(params)}")
        try:
            return await conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as e:
            raise ConstraintViolationError(
                _constraint_name(e), str(e), sql=sql, params=tuple(params)
            ) from e
        except sqlite3.Error as e:
            raise QueryError(str(e), sql=sql, params=tuple(params)) from e

    @asynccontextmanager
    async def _statement_slot(self) -> AsyncIterator[None]:
        """Wait until no other task has a transaction open on the connection.

        Statements issued by the task that owns the open transaction run
        inside it; everyone else runs after it commits or rolls back.
        """
        if self._tx_depth > 0 and self._tx_owner is asyncio.current_task():
            yield
            return
        async with self._tx_lock:
            yield

    async def run(self, sql: str, params: Sequence[Any] = ()) -> QueryResult:
        """Execute a write statement.

        Returns:
            QueryResult with the last inserted row id and affected row count

        Raises:
            ConstraintViolationError: On UNIQUE/FOREIGN KEY/CHECK/NOT NULL violations
            QueryError: On any other SQL failure
        """
        async with self._statement_slot():
            cursor = await self._execute(sql, params)
            result = QueryResult(last_row_id=cursor.lastrowid, row_count=cursor.rowcount)
            await cursor.close()
        return result

    async def get(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        """Fetch the first row as a dict, or None."""
        async with self._statement_slot():
            cursor = await self._execute(sql, params)
            row = await cursor.fetchone()
            await cursor.close()
        return dict(row) if row is not None else None

    async def get_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Fetch all rows as dicts."""
        async with self._statement_slot():
            cursor = await self._execute(sql, params)
            rows = await cursor.fetchall()
            await cursor.close()
        return [dict(row) for row in rows]

    # Transactions

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator["Database"]:
        """Run a block of statements in one transaction.

        The outermost block opens ``BEGIN IMMEDIATE`` and commits on success;
        nested blocks in the same task become SAVEPOINTs so an inner failure
        can be caught without losing the outer work. Any exception rolls back
        the block it escapes from and propagates.
        """
        conn = self._require_conn()
        task = asyncio.current_task()

        if self._tx_depth > 0 and self._tx_owner is task:
            self._tx_depth += 1
            savepoint = f"sp_{self._tx_depth}"
            await conn.execute(f"SAVEPOINT {savepoint}")
            try:
                yield self
            except BaseException:
                await conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                await conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            else:
                await conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            finally:
                self._tx_depth -= 1
            return

        async with self._tx_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise QueryError(f"Could not begin transaction: {e}") from e
            self._tx_owner = task
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                if self._conn is not None:
                    await conn.execute("ROLLBACK")
                    logger.debug("Transaction rolled back")
                raise
            else:
                try:
                    await conn.execute("COMMIT")
                except sqlite3.Error as e:
                    await conn.execute("ROLLBACK")
                    raise QueryError(f"Could not commit transaction: {e}") from e
            finally:
                self._tx_depth = 0
                self._tx_owner = None

    async def transaction(self, operations: Sequence[Operation]) -> List[QueryResult]:
        """Execute ``(sql, params)`` pairs atomically.

        Returns:
            One QueryResult per operation, in order

        Raises:
            QueryError: First failure, after the whole batch is rolled back
        """
        results = []
        async with self.atomic():
            for sql, params in operations:
                results.append(await self.run(sql, params))
        return results

    # Introspection

    async def health_check(self) -> bool:
        """Return True when the connection answers a trivial query."""
        try:
            row = await self.get("SELECT 1 AS test")
        except (NotInitializedError, QueryError) as e:
            logger.warning(f"Health check failed for {self.db_path}: {e}")
            return False
        return row is not None and row["test"] == 1

    async def get_stats(self) -> Dict[str, int]:
        """Row count per table plus ``database_size`` in bytes."""
        stats: Dict[str, int] = {}
        for table in INITIALIZATION_ORDER:
            row = await self.get(f"SELECT COUNT(*) AS count FROM {table}")
            stats[table] = row["count"] if row else 0
        size = await self.get(
            "SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()"
        )
        stats["database_size"] = size["size"] if size else 0
        return stats

    async def schema_version(self) -> str:
        """Schema version of the open store, or "0" for a store we did not create."""
        row = await self.get("PRAGMA user_version")
        version = row["user_version"] if row else 0
        if not version:
            return "0"
        return f"{version // 10000}.{version // 100 % 100}.{version % 100}"

    async def check_integrity(self) -> Dict[str, Any]:
        """Report foreign key violations and dangling references.

        Returns:
            Dictionary with ``ok``, ``foreign_key_violations`` (rows from
            ``PRAGMA foreign_key_check``) and per-relation orphan counts
        """
        violations = await self.get_all("PRAGMA foreign_key_check")
        orphans = {
            "tasks_without_project": await self._count(
                "SELECT COUNT(*) AS count FROM tasks t "
                "LEFT JOIN projects p ON p.id = t.project_id WHERE p.id IS NULL"
            ),
            "tasks_with_missing_prd": await self._count(
                "SELECT COUNT(*) AS count FROM tasks t "
                "LEFT JOIN prds r ON r.id = t.prd_id "
                "WHERE t.prd_id IS NOT NULL AND r.id IS NULL"
            ),
            "subtasks_with_missing_parent": await self._count(
                "SELECT COUNT(*) AS count FROM tasks t "
                "LEFT JOIN tasks parent ON parent.id = t.parent_task_id "
                "WHERE t.parent_task_id IS NOT NULL AND parent.id IS NULL"
            ),
            "dangling_dependencies": await self._count(
                "SELECT COUNT(*) AS count FROM task_dependencies d "
                "LEFT JOIN tasks a ON a.id = d.task_id "
                "LEFT JOIN tasks b ON b.id = d.depends_on_task_id "
                "WHERE a.id IS NULL OR b.id IS NULL"
            ),
        }
        ok = not violations and not any(orphans.values())
        if not ok:
            logger.warning(f"Integrity check found problems in {self.db_path}: {orphans}")
        return {
            "ok": ok,
            "foreign_key_violations": violations,
            **orphans,
            "schema_version": await self.schema_version(),
            "expected_schema_version": SCHEMA_VERSION,
        }

    async def _count(self, sql: str) -> int:
        row = await self.get(sql)
        return row["count"] if row else 0
