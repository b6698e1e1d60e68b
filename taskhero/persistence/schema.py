"""Database schema for TaskHero.

Single source of truth for the relational layout, used both for fresh
initialization and as the target of the legacy JSON migration. Every
statement is idempotent (IF NOT EXISTS) so it is safe to re-apply.
"""

import logging
from typing import Dict, Iterator, List

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"

# Integer form stored in PRAGMA user_version: 1.0.0 -> 10000
SCHEMA_USER_VERSION = 10000

# Creation order respects foreign keys: owners before dependents
INITIALIZATION_ORDER: List[str] = [
    "projects",
    "configurations",
    "prds",
    "tasks",
    "task_dependencies",
]

EXPECTED_TABLES = frozenset(INITIALIZATION_ORDER)

TABLES: Dict[str, str] = {
    "projects": """
        CREATE TABLE IF NOT EXISTS projects (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            description TEXT,
            root_path TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'active'
                CHECK(status IN ('active', 'archived', 'deleted')),
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "configurations": """
        CREATE TABLE IF NOT EXISTS configurations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER REFERENCES projects(id) ON DELETE CASCADE,
            config_type TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT,
            description TEXT,
            is_default BOOLEAN NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "prds": """
        CREATE TABLE IF NOT EXISTS prds (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            prd_identifier TEXT NOT NULL,
            title TEXT NOT NULL,
            file_name TEXT NOT NULL,
            file_path TEXT NOT NULL,
            file_hash TEXT,
            file_size INTEGER CHECK(file_size IS NULL OR file_size >= 0),
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'in-progress', 'done', 'archived')),
            complexity TEXT NOT NULL DEFAULT 'medium'
                CHECK(complexity IN ('low', 'medium', 'high')),
            priority TEXT NOT NULL DEFAULT 'medium'
                CHECK(priority IN ('low', 'medium', 'high')),
            description TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            estimated_effort TEXT,
            created_date TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            last_modified TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            parsed_date TIMESTAMP,
            metadata TEXT NOT NULL DEFAULT '{}',
            UNIQUE(project_id, prd_identifier)
        )
    """,
    "tasks": """
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            prd_id INTEGER REFERENCES prds(id) ON DELETE SET NULL,
            parent_task_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
            task_identifier TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            details TEXT,
            test_strategy TEXT,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK(status IN ('pending', 'in-progress', 'done', 'review',
                                 'blocked', 'deferred', 'cancelled')),
            priority TEXT NOT NULL DEFAULT 'medium'
                CHECK(priority IN ('low', 'medium', 'high')),
            complexity_score REAL
                CHECK(complexity_score IS NULL OR complexity_score BETWEEN 1 AND 10),
            complexity_level TEXT
                CHECK(complexity_level IS NULL OR complexity_level IN ('low', 'medium', 'high')),
            estimated_hours REAL CHECK(estimated_hours IS NULL OR estimated_hours >= 0),
            actual_hours REAL CHECK(actual_hours IS NULL OR actual_hours >= 0),
            assignee TEXT,
            due_date TIMESTAMP,
            start_date TIMESTAMP,
            completed_at TIMESTAMP,
            metadata TEXT NOT NULL DEFAULT '{}',
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(project_id, task_identifier)
        )
    """,
    "task_dependencies": """
        CREATE TABLE IF NOT EXISTS task_dependencies (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            depends_on_task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            dependency_type TEXT NOT NULL DEFAULT 'blocks'
                CHECK(dependency_type IN ('blocks', 'requires', 'related')),
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(task_id, depends_on_task_id),
            CHECK(task_id != depends_on_task_id)
        )
    """,
}

INDEXES: Dict[str, str] = {
    "idx_tasks_project_id": "CREATE INDEX IF NOT EXISTS idx_tasks_project_id ON tasks(project_id)",
    "idx_tasks_status": "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
    "idx_tasks_priority": "CREATE INDEX IF NOT EXISTS idx_tasks_priority ON tasks(priority)",
    "idx_tasks_prd_id": "CREATE INDEX IF NOT EXISTS idx_tasks_prd_id ON tasks(prd_id)",
    "idx_tasks_parent_id": "CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_task_id)",
    "idx_tasks_created_at": "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at)",
    "idx_tasks_updated_at": "CREATE INDEX IF NOT EXISTS idx_tasks_updated_at ON tasks(updated_at)",
    "idx_prds_project_id": "CREATE INDEX IF NOT EXISTS idx_prds_project_id ON prds(project_id)",
    "idx_prds_status": "CREATE INDEX IF NOT EXISTS idx_prds_status ON prds(status)",
    "idx_prds_priority": "CREATE INDEX IF NOT EXISTS idx_prds_priority ON prds(priority)",
    "idx_prds_created_date": "CREATE INDEX IF NOT EXISTS idx_prds_created_date ON prds(created_date)",
    "idx_deps_task_id": "CREATE INDEX IF NOT EXISTS idx_deps_task_id ON task_dependencies(task_id)",
    "idx_deps_depends_on": (
        "CREATE INDEX IF NOT EXISTS idx_deps_depends_on ON task_dependencies(depends_on_task_id)"
    ),
    "idx_config_project_type": (
        "CREATE INDEX IF NOT EXISTS idx_config_project_type "
        "ON configurations(project_id, config_type)"
    ),
    # NULL project_id is the global scope; IFNULL folds it so globals stay unique too
    "idx_config_scope_key": (
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_config_scope_key "
        "ON configurations(IFNULL(project_id, 0), config_type, key)"
    ),
}

TRIGGERS: Dict[str, str] = {
    "update_projects_timestamp": """
        CREATE TRIGGER IF NOT EXISTS update_projects_timestamp
        AFTER UPDATE ON projects
        WHEN NEW.updated_at = OLD.updated_at
        BEGIN
            UPDATE projects SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
        END
    """,
    "update_tasks_timestamp": """
        CREATE TRIGGER IF NOT EXISTS update_tasks_timestamp
        AFTER UPDATE ON tasks
        WHEN NEW.updated_at = OLD.updated_at
        BEGIN
            UPDATE tasks SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
        END
    """,
    "update_configurations_timestamp": """
        CREATE TRIGGER IF NOT EXISTS update_configurations_timestamp
        AFTER UPDATE ON configurations
        WHEN NEW.updated_at = OLD.updated_at
        BEGIN
            UPDATE configurations SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id;
        END
    """,
    "update_prds_last_modified": """
        CREATE TRIGGER IF NOT EXISTS update_prds_last_modified
        AFTER UPDATE ON prds
        WHEN NEW.last_modified = OLD.last_modified
        BEGIN
            UPDATE prds SET last_modified = CURRENT_TIMESTAMP WHERE id = NEW.id;
        END
    """,
}

CHECK_TABLES_SQL = """
    SELECT name FROM sqlite_master
    WHERE type = 'table' AND name IN ({placeholders})
""".format(placeholders=", ".join("?" for _ in INITIALIZATION_ORDER))


def iter_schema_statements() -> Iterator[str]:
    """Yield every DDL statement: tables in dependency order, then indexes, then triggers."""
    for table in INITIALIZATION_ORDER:
        yield TABLES[table]
    yield from INDEXES.values()
    yield from TRIGGERS.values()


class SchemaManager:
    """Creates and inspects the TaskHero schema on an open connection.

    The caller owns the transaction; this class only issues DDL.
    """

    def __init__(self, conn: aiosqlite.Connection):
        """Initialize schema manager with database connection.

        Args:
            conn: Active aiosqlite.Connection
        """
        self.conn = conn

    async def existing_tables(self) -> List[str]:
        """Return which of the expected tables already exist."""
        cursor = await self.conn.execute(CHECK_TABLES_SQL, tuple(INITIALIZATION_ORDER))
        rows = await cursor.fetchall()
        await cursor.close()
        return [row[0] for row in rows]

    async def is_initialized(self) -> bool:
        return len(await self.existing_tables()) == len(EXPECTED_TABLES)

    async def create_schema(self) -> None:
        """Create all tables, indexes and triggers.

        Idempotent - safe to call on a partially created schema.
        """
        for statement in iter_schema_statements():
            await self.conn.execute(statement)
        await self.conn.execute(f"PRAGMA user_version = {SCHEMA_USER_VERSION}")
        logger.info(
            f"Created schema v{SCHEMA_VERSION}: {len(TABLES)} tables, "
            f"{len(INDEXES)} indexes, {len(TRIGGERS)} triggers"
        )

    async def user_version(self) -> int:
        cursor = await self.conn.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        await cursor.close()
        return row[0] if row else 0
