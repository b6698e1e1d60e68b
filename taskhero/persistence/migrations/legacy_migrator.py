"""Migration from the legacy JSON file store to SQLite.

Runs once per project root. The legacy files (tasks.json, prds.json,
config.json) are copied aside, then every row is written inside one
transaction: either the whole store is migrated or nothing is. The legacy
files themselves are only ever read.
"""

import asyncio
import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskhero.core.config import Settings
from taskhero.core.errors import MigrationError, TaskHeroError
from taskhero.core.models import Project
from taskhero.lib.backup_manager import file_timestamp
from taskhero.persistence.database import Database
from taskhero.persistence.migrations.legacy_mapping import (
    LegacyPRD,
    LegacyTask,
    map_config,
    map_prd,
    map_task,
    unwrap_prds_document,
    unwrap_tasks_document,
)
from taskhero.persistence.repositories import (
    ConfigurationRepository,
    PRDRepository,
    ProjectRepository,
    TaskRepository,
)
from taskhero.persistence.schema import SCHEMA_VERSION

logger = logging.getLogger(__name__)

# Candidate locations relative to the project root, preferred first
TASKS_LOCATIONS = ("{data_dir}/tasks/tasks.json", "tasks/tasks.json")
PRDS_LOCATIONS = ("{data_dir}/prd/prds.json", "prd/prds.json")
CONFIG_LOCATIONS = ("{data_dir}/config.json",)


class MigrationState(str, Enum):
    """Where a project root stands relative to the SQLite store."""

    NOT_MIGRATED = "not_migrated"
    ALREADY_MIGRATED = "already_migrated"
    FRESH_INIT = "fresh_init"


@dataclass
class LegacySources:
    """Legacy JSON files found under a project root."""

    tasks_path: Optional[Path] = None
    prds_path: Optional[Path] = None
    config_path: Optional[Path] = None

    @property
    def paths(self) -> List[Path]:
        return [p for p in (self.tasks_path, self.prds_path, self.config_path) if p is not None]

    @property
    def found(self) -> bool:
        return bool(self.paths)


@dataclass
class MigrationResult:
    """Outcome of ``LegacyMigrator.migrate``."""

    status: MigrationState
    project: Project
    counts: Dict[str, int] = field(default_factory=dict)
    backup_dir: Optional[Path] = None
    skipped_references: List[str] = field(default_factory=list)


class LegacyMigrator:
    """Converts a project's legacy JSON store into rows, exactly once.

    Usage:
        >>> async with Database.for_project(root) as db:
        ...     result = await LegacyMigrator(db, root).migrate()
        ...     result.status
        <MigrationState.NOT_MIGRATED: 'not_migrated'>
    """

    def __init__(
        self,
        db: Database,
        project_root: Path | str,
        project_name: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize migrator.

        Args:
            db: Initialized Database for the project
            project_root: Project root directory
            project_name: Name for the project row (default: root directory name)
            settings: Settings override
        """
        self.db = db
        self.project_root = Path(project_root).resolve()
        self.project_name = project_name
        self.settings = settings or db.settings

        self.projects = ProjectRepository(db)
        self.tasks = TaskRepository(db)
        self.prds = PRDRepository(db)
        self.configurations = ConfigurationRepository(db)

    # Detection

    def locate_sources(self) -> LegacySources:
        """Find the legacy files, preferring ``.taskmaster/`` locations."""
        return LegacySources(
            tasks_path=self._first_existing(TASKS_LOCATIONS),
            prds_path=self._first_existing(PRDS_LOCATIONS),
            config_path=self._first_existing(CONFIG_LOCATIONS),
        )

    def _first_existing(self, candidates) -> Optional[Path]:
        for template in candidates:
            path = self.project_root / template.format(data_dir=self.settings.data_dir_name)
            if path.is_file():
                return path
        return None

    async def detect_state(self) -> MigrationState:
        """Classify the project root.

        ALREADY_MIGRATED when the store already holds a project, otherwise
        NOT_MIGRATED when legacy files exist and FRESH_INIT when none do.
        """
        if await self._existing_project() is not None:
            return MigrationState.ALREADY_MIGRATED
        if self.locate_sources().found:
            return MigrationState.NOT_MIGRATED
        return MigrationState.FRESH_INIT

    async def _existing_project(self) -> Optional[Project]:
        """The project already in this store, matched by root when possible.

        The store lives under the project root, so a project row whose
        ``root_path`` differs means the directory was moved or reached
        through another path, not that the root is new.
        """
        project = await self.projects.find_by_root_path(str(self.project_root))
        if project is not None:
            return project
        projects = await self.projects.list_projects()
        return projects[0] if projects else None

    async def _relocate(self, project: Project) -> Project:
        """Point the store's only project at the current root."""
        if len(await self.projects.list_projects()) > 1:
            logger.warning(
                f"Store at {self.db.db_path} holds several projects and none is rooted at "
                f"{self.project_root}; leaving root paths unchanged"
            )
            return project
        logger.info(
            f"Project {project.id} moved from {project.root_path} to {self.project_root}"
        )
        return await self.projects.update(project.id, {"root_path": str(self.project_root)})

    # Migration

    async def migrate(self) -> MigrationResult:
        """Bring the project root into the SQLite store.

        Returns:
            MigrationResult; for ALREADY_MIGRATED nothing was written

        Raises:
            MigrationError: If any legacy record cannot be migrated; the
                store is left exactly as it was
        """
        state = await self.detect_state()

        if state == MigrationState.ALREADY_MIGRATED:
            project = await self._existing_project()
            if project.root_path != str(self.project_root):
                project = await self._relocate(project)
            logger.info(f"Project at {self.project_root} already migrated (id={project.id})")
            return MigrationResult(status=state, project=project)

        if state == MigrationState.FRESH_INIT:
            async with self.db.atomic():
                project = await self.projects.create(self._project_payload("taskhero-init"))
                seeded = await self.configurations.seed_defaults()
            logger.info(f"Initialized new project at {self.project_root} (id={project.id})")
            return MigrationResult(
                status=state, project=project, counts={"projects": 1, "configurations": seeded}
            )

        return await self._migrate_legacy(self.locate_sources())

    async def _migrate_legacy(self, sources: LegacySources) -> MigrationResult:
        logger.info(
            f"Migrating legacy JSON store at {self.project_root}: "
            f"{', '.join(p.name for p in sources.paths)}"
        )

        # Map everything before touching the database so malformed records
        # fail fast with no writes at all
        documents = {path: self._read_json(path) for path in sources.paths}
        tasks: List[LegacyTask] = []
        prds: List[LegacyPRD] = []
        config: Dict[str, Dict[str, Any]] = {}
        if sources.tasks_path:
            tasks = [map_task(r) for r in unwrap_tasks_document(documents[sources.tasks_path])]
        if sources.prds_path:
            prds = [map_prd(r) for r in unwrap_prds_document(documents[sources.prds_path])]
        if sources.config_path:
            config = map_config(documents[sources.config_path])

        backup_dir = await self._backup_legacy_files(sources)
        writer = _LegacyWriter(self)

        try:
            async with self.db.atomic():
                project = await self.projects.create(
                    self._project_payload("taskhero-migration", legacy_backup=backup_dir)
                )
                await writer.write(project.id, config, prds, tasks)
        except MigrationError:
            logger.error(f"Legacy migration of {self.project_root} failed; rolled back")
            raise
        except TaskHeroError as e:
            logger.error(f"Legacy migration of {self.project_root} failed; rolled back: {e}")
            raise MigrationError(f"Legacy migration failed and was rolled back: {e}") from e

        logger.info(f"Legacy migration complete for {self.project_root}: {writer.counts}")
        return MigrationResult(
            status=MigrationState.NOT_MIGRATED,
            project=project,
            counts=writer.counts,
            backup_dir=backup_dir,
            skipped_references=writer.skipped,
        )

    def _project_payload(self, created_by: str, legacy_backup: Optional[Path] = None) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "schema_version": SCHEMA_VERSION,
            "created_by": created_by,
            "initialization_date": datetime.now(timezone.utc).isoformat(),
        }
        if legacy_backup is not None:
            metadata["legacy_backup_dir"] = str(legacy_backup)
        return {
            "name": self.project_name or self.project_root.name or "TaskHero",
            "description": f"TaskHero project at {self.project_root}",
            "root_path": str(self.project_root),
            "metadata": metadata,
        }

    def _read_json(self, path: Path) -> Any:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Cannot read legacy file {path}: {e}")
            raise MigrationError(f"Cannot read legacy file {path}: {e}") from e

    async def _backup_legacy_files(self, sources: LegacySources) -> Path:
        backup_dir = self.settings.backups_dir(self.project_root) / f"legacy-json-{file_timestamp()}"
        try:
            await asyncio.to_thread(self._copy_sources, sources, backup_dir)
        except OSError as e:
            logger.error(f"Failed to back up legacy files to {backup_dir}: {e}")
            raise MigrationError(f"Could not back up legacy files: {e}") from e
        logger.info(f"Backed up legacy JSON files to {backup_dir}")
        return backup_dir

    @staticmethod
    def _copy_sources(sources: LegacySources, backup_dir: Path) -> None:
        backup_dir.mkdir(parents=True, exist_ok=True)
        for path in sources.paths:
            shutil.copy2(path, backup_dir / path.name)


class _LegacyWriter:
    """Writes mapped legacy records inside the migrator's transaction."""

    def __init__(self, migrator: LegacyMigrator):
        self.m = migrator
        self.task_ids: Dict[str, int] = {}
        self.task_prd: Dict[str, Optional[int]] = {}
        self.prd_ids: Dict[str, int] = {}
        self.prd_ids_by_file: Dict[str, int] = {}
        self.skipped: List[str] = []
        self.counts: Dict[str, int] = {
            "projects": 1,
            "configurations": 0,
            "prds": 0,
            "tasks": 0,
            "subtasks": 0,
            "dependencies": 0,
            "skipped_references": 0,
        }

    async def write(
        self,
        project_id: int,
        config: Dict[str, Dict[str, Any]],
        prds: List[LegacyPRD],
        tasks: List[LegacyTask],
    ) -> None:
        self.counts["configurations"] += await self.m.configurations.seed_defaults()
        for config_type, values in config.items():
            await self.m.configurations.bulk_set(config_type, values)
            self.counts["configurations"] += len(values)

        for prd in prds:
            await self._write_prd(project_id, prd)
        for task in tasks:
            await self._write_task(project_id, task, parent_id=None, inherited_prd=None)

        for prd in prds:
            await self._link_prd_tasks(prd)
        for task in tasks:
            await self._write_dependencies(task)

        self.counts["skipped_references"] = len(self.skipped)

    async def _write_prd(self, project_id: int, prd: LegacyPRD) -> None:
        created = await self.m.prds.create(
            {"project_id": project_id, "prd_identifier": prd.prd_identifier, **prd.fields}
        )
        self.prd_ids[prd.prd_identifier] = created.id
        self.prd_ids_by_file.setdefault(created.file_name, created.id)
        self.counts["prds"] += 1

    def _resolve_prd(self, task: LegacyTask) -> Optional[int]:
        if task.prd_ref and task.prd_ref in self.prd_ids:
            return self.prd_ids[task.prd_ref]
        if task.prd_file_name and task.prd_file_name in self.prd_ids_by_file:
            return self.prd_ids_by_file[task.prd_file_name]
        if task.prd_ref or task.prd_file_name:
            self._skip(
                f"task {task.task_identifier}: PRD "
                f"{task.prd_ref or task.prd_file_name} not found"
            )
        return None

    async def _write_task(
        self,
        project_id: int,
        task: LegacyTask,
        parent_id: Optional[int],
        inherited_prd: Optional[int],
    ) -> None:
        prd_id = self._resolve_prd(task) if parent_id is None else inherited_prd
        created = await self.m.tasks.create(
            {
                "project_id": project_id,
                "task_identifier": task.task_identifier,
                "parent_task_id": parent_id,
                "prd_id": prd_id,
                **task.fields,
            }
        )
        self.task_ids[task.task_identifier] = created.id
        self.task_prd[task.task_identifier] = prd_id
        self.counts["subtasks" if parent_id is not None else "tasks"] += 1

        for subtask in task.subtasks:
            await self._write_task(project_id, subtask, parent_id=created.id, inherited_prd=prd_id)

    async def _link_prd_tasks(self, prd: LegacyPRD) -> None:
        """Apply prds.json ``linkedTaskIds`` to tasks not already linked via prdSource."""
        prd_id = self.prd_ids[prd.prd_identifier]
        to_link = []
        for identifier in prd.linked_task_identifiers:
            if identifier not in self.task_ids:
                self._skip(f"prd {prd.prd_identifier}: linked task {identifier} not found")
                continue
            if self.task_prd.get(identifier) is None:
                to_link.append(self.task_ids[identifier])
                self.task_prd[identifier] = prd_id
        await self.m.prds.link_tasks(prd_id, to_link)

    async def _write_dependencies(self, task: LegacyTask) -> None:
        task_id = self.task_ids[task.task_identifier]
        for identifier in dict.fromkeys(task.dependencies):
            depends_on = self.task_ids.get(identifier)
            if depends_on is None:
                self._skip(f"task {task.task_identifier}: dependency {identifier} not found")
                continue
            await self.m.tasks.add_dependency(task_id, depends_on)
            self.counts["dependencies"] += 1
        for subtask in task.subtasks:
            await self._write_dependencies(subtask)

    def _skip(self, reason: str) -> None:
        logger.warning(f"Skipping dangling legacy reference: {reason}")
        self.skipped.append(reason)
