"""Repository for Project operations."""

import logging
from typing import Any, Dict, List, Optional, Union

from taskhero.core.errors import NotFoundError
from taskhero.core.models import (
    Project,
    ProjectCreate,
    ProjectStatus,
    ProjectUpdate,
    PRDStatus,
    TaskStatus,
    TaskStatusCounts,
)
from taskhero.persistence.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Whitelist of allowed project fields for updates (prevents SQL injection)
ALLOWED_PROJECT_FIELDS = {
    "name",
    "root_path",
    "description",
    "status",
    "metadata",
}

# Task statuses left untouched when a project is archived
CLOSED_TASK_STATUSES = (TaskStatus.DONE.value, TaskStatus.CANCELLED.value)


class ProjectRepository(BaseRepository):
    """Repository for project operations."""

    async def create(self, payload: Union[ProjectCreate, Dict[str, Any]]) -> Project:
        """Create a new project.

        Raises:
            ValidationError: If the payload is invalid
            ConstraintViolationError: If a project already owns ``root_path``
        """
        data = self._validate(ProjectCreate, payload, "project")
        result = await self._execute(
            """
            INSERT INTO projects (name, description, root_path, status, metadata)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                data.name,
                data.description,
                data.root_path,
                data.status.value,
                self._dumps_json(data.metadata),
            ),
        )
        logger.info(f"Created project {result.last_row_id}: {data.name} ({data.root_path})")
        return await self.get_project(result.last_row_id)

    async def get_project(self, project_id: int) -> Optional[Project]:
        row = await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        return self._row_to_project(row) if row else None

    async def find_by_root_path(self, root_path: str) -> Optional[Project]:
        row = await self._fetchone("SELECT * FROM projects WHERE root_path = ?", (root_path,))
        return self._row_to_project(row) if row else None

    async def list_projects(self, status: Optional[ProjectStatus] = None) -> List[Project]:
        """List projects, optionally filtered by status, oldest first."""
        if status is not None:
            rows = await self._fetchall(
                "SELECT * FROM projects WHERE status = ? ORDER BY id",
                (ProjectStatus(status).value,),
            )
        else:
            rows = await self._fetchall("SELECT * FROM projects ORDER BY id")
        return [self._row_to_project(row) for row in rows]

    async def update(
        self, project_id: int, updates: Union[ProjectUpdate, Dict[str, Any]]
    ) -> Project:
        """Update project fields.

        Raises:
            NotFoundError: If the project does not exist
            ValidationError: If the update payload is invalid
        """
        data = self._validate(ProjectUpdate, updates, "project")
        await self._update_row(
            "projects",
            "Project",
            ALLOWED_PROJECT_FIELDS,
            data.model_dump(exclude_unset=True),
            project_id,
        )
        return await self.get_project(project_id)

    async def update_status(self, project_id: int, status: ProjectStatus) -> Project:
        return await self.update(project_id, {"status": status})

    async def archive(self, project_id: int) -> Project:
        """Archive a project with its open work.

        Open tasks (anything not done or cancelled) become cancelled and all
        PRDs become archived, in one transaction.

        Raises:
            NotFoundError: If the project does not exist
        """
        async with self.db.atomic():
            await self.update_status(project_id, ProjectStatus.ARCHIVED)
            placeholders = ", ".join("?" for _ in CLOSED_TASK_STATUSES)
            cancelled = await self._execute(
                f"UPDATE tasks SET status = ? WHERE project_id = ? AND status NOT IN ({placeholders})",
                (TaskStatus.CANCELLED.value, project_id, *CLOSED_TASK_STATUSES),
            )
            archived = await self._execute(
                "UPDATE prds SET status = ? WHERE project_id = ? AND status != ?",
                (PRDStatus.ARCHIVED.value, project_id, PRDStatus.ARCHIVED.value),
            )
        logger.info(
            f"Archived project {project_id}: cancelled {cancelled.row_count} task(s), "
            f"archived {archived.row_count} PRD(s)"
        )
        return await self.get_project(project_id)

    async def delete(self, project_id: int) -> None:
        """Hard-delete a project; tasks, PRDs and scoped configuration cascade.

        Raises:
            NotFoundError: If the project does not exist
        """
        result = await self._execute("DELETE FROM projects WHERE id = ?", (project_id,))
        if result.row_count == 0:
            raise NotFoundError("Project", project_id)
        logger.info(f"Deleted project {project_id}")

    async def get_stats(self, project_id: int) -> Dict[str, Any]:
        """Live task and PRD counts for a project.

        Returns:
            Dictionary with ``tasks`` (TaskStatusCounts), ``prds`` (count per
            PRD status plus ``total``) and ``dependencies``

        Raises:
            NotFoundError: If the project does not exist
        """
        if await self.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)

        task_rows = await self._fetchall(
            "SELECT status, COUNT(*) AS count FROM tasks WHERE project_id = ? GROUP BY status",
            (project_id,),
        )
        prd_rows = await self._fetchall(
            "SELECT status, COUNT(*) AS count FROM prds WHERE project_id = ? GROUP BY status",
            (project_id,),
        )
        dependency_row = await self._fetchone(
            """
            SELECT COUNT(*) AS count FROM task_dependencies d
            JOIN tasks t ON t.id = d.task_id
            WHERE t.project_id = ?
            """,
            (project_id,),
        )

        prd_counts = {status.value: 0 for status in PRDStatus}
        prd_counts.update({row["status"]: row["count"] for row in prd_rows})
        prd_counts["total"] = sum(row["count"] for row in prd_rows)

        return {
            "tasks": TaskStatusCounts.from_counts({row["status"]: row["count"] for row in task_rows}),
            "prds": prd_counts,
            "dependencies": dependency_row["count"] if dependency_row else 0,
        }

    def _row_to_project(self, row: Dict[str, Any]) -> Project:
        row = self._parse_row_datetimes(dict(row), ("created_at", "updated_at"))
        row["metadata"] = self._loads_json(row.get("metadata"), {}, "metadata")
        return Project.model_validate(row)
