"""Exception hierarchy for the TaskHero data layer.

Every error raised by the persistence, migration and backup layers derives
from TaskHeroError so callers (REST API, CLI, MCP server) can map them to
responses in one place.
"""

from typing import List, Optional


class TaskHeroError(Exception):
    """Base class for all TaskHero data-layer errors."""


class DatabaseConnectionError(TaskHeroError):
    """Raised when the database file cannot be opened or created."""

    def __init__(self, db_path: str, reason: str):
        self.db_path = db_path
        self.reason = reason
        super().__init__(f"Cannot open database at {db_path}: {reason}")


class NotInitializedError(TaskHeroError):
    """Raised when a query is issued on a closed or never-opened Database."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        super().__init__(
            f"Database {db_path} is not initialized. Call initialize() first."
        )


class QueryError(TaskHeroError):
    """Raised when a statement fails at the SQL layer."""

    def __init__(self, message: str, sql: Optional[str] = None, params: tuple = ()):
        self.sql = sql
        self.params = params
        context = f" [sql: {' '.join(sql.split())}]" if sql else ""
        super().__init__(f"{message}{context}")


class ConstraintViolationError(QueryError):
    """Raised on UNIQUE, FOREIGN KEY, CHECK or NOT NULL violations.

    Attributes:
        constraint: Name of the violated constraint, e.g.
            ``UNIQUE(tasks.project_id, tasks.task_identifier)`` or
            ``FOREIGN KEY``.
    """

    def __init__(
        self,
        constraint: str,
        message: str,
        sql: Optional[str] = None,
        params: tuple = (),
    ):
        self.constraint = constraint
        super().__init__(message, sql=sql, params=params)


class NotFoundError(TaskHeroError):
    """Raised when a write targets a row that does not exist."""

    def __init__(self, entity: str, identifier: object):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found: {identifier}")


class ValidationError(TaskHeroError):
    """Raised when a payload fails validation before reaching SQL."""

    def __init__(self, entity: str, errors: List[str]):
        self.entity = entity
        self.errors = errors
        super().__init__(f"Invalid {entity}: {'; '.join(errors)}")


class DependencyCycleError(TaskHeroError):
    """Raised when a dependency edge would create a cycle or a self-loop.

    Attributes:
        cycle: Task ids along the offending path, starting and ending with
            the task the edge originates from.
    """

    def __init__(self, task_id: int, depends_on_task_id: int, cycle: List[int]):
        self.task_id = task_id
        self.depends_on_task_id = depends_on_task_id
        self.cycle = cycle
        path = " -> ".join(str(node) for node in cycle)
        super().__init__(
            f"Dependency {task_id} -> {depends_on_task_id} would create a cycle: {path}"
        )


class ArchiveBlockedError(TaskHeroError):
    """Raised when archiving a PRD whose linked tasks are not all done."""

    def __init__(self, prd_id: int, incomplete_task_ids: List[int]):
        self.prd_id = prd_id
        self.incomplete_task_ids = incomplete_task_ids
        super().__init__(
            f"Cannot archive PRD {prd_id}: {len(incomplete_task_ids)} linked task(s) "
            "are not done. Use force=True to archive anyway."
        )


class MigrationError(TaskHeroError):
    """Raised when the legacy JSON migration fails and has been rolled back."""


class LegacyDataError(MigrationError):
    """Raised when a legacy JSON record cannot be mapped to the schema."""

    def __init__(self, source: str, record_id: object, reason: str):
        self.source = source
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Malformed {source} record {record_id!r}: {reason}")


class BackupError(TaskHeroError):
    """Raised when a database snapshot cannot be written or read."""


class RestoreError(BackupError):
    """Raised when restoring a snapshot fails."""
