"""Repository for PRD operations."""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Union

from taskhero.core.errors import ArchiveBlockedError, NotFoundError, ValidationError
from taskhero.core.models import (
    PRD,
    PRDCreate,
    PRDFilters,
    PRDPage,
    PRDStatus,
    PRDUpdate,
    Task,
    TaskStatus,
    TaskStatusCounts,
    identifier_sort_key,
)
from taskhero.persistence.database import Database
from taskhero.persistence.repositories.base import BaseRepository
from taskhero.persistence.repositories.task_repository import TaskRepository

logger = logging.getLogger(__name__)

# Whitelist of allowed PRD fields for updates (prevents SQL injection)
ALLOWED_PRD_FIELDS = {
    "title",
    "file_name",
    "file_path",
    "file_hash",
    "file_size",
    "status",
    "complexity",
    "priority",
    "description",
    "tags",
    "estimated_effort",
    "parsed_date",
    "metadata",
}

PRD_DATETIME_FIELDS = ("created_date", "last_modified", "parsed_date")

PRD_IDENTIFIER = re.compile(r"^prd_(\d+)$")

SORT_EXPRESSIONS = {
    "created_date": "created_date",
    "last_modified": "last_modified",
    "title": "title COLLATE NOCASE",
    "priority": "CASE priority WHEN 'high' THEN 3 WHEN 'medium' THEN 2 ELSE 1 END",
    "status": "status",
}


class PRDRepository(BaseRepository):
    """Repository for PRD operations.

    Task statistics are never stored on the PRD row; every read aggregates
    the linked task rows.
    """

    def __init__(self, db: Database):
        super().__init__(db)
        self.tasks = TaskRepository(db)

    async def create(self, payload: Union[PRDCreate, Dict[str, Any]]) -> PRD:
        """Register a PRD, assigning the next ``prd_NNN`` identifier when none is given.

        Raises:
            ValidationError: If the payload is invalid
            ConstraintViolationError: On a duplicate identifier or missing project
        """
        data = self._validate(PRDCreate, payload, "prd")

        async with self.db.atomic():
            identifier = data.prd_identifier or await self._next_identifier(data.project_id)
            columns = {
                "project_id": data.project_id,
                "prd_identifier": identifier,
                "title": data.title,
                "file_name": data.file_name,
                "file_path": data.file_path,
                "file_hash": data.file_hash,
                "file_size": data.file_size,
                "status": data.status.value,
                "complexity": data.complexity.value,
                "priority": data.priority.value,
                "description": data.description,
                "tags": self._dumps_json(data.tags),
                "estimated_effort": data.estimated_effort,
                "parsed_date": self._format_datetime(data.parsed_date),
                "metadata": self._dumps_json(data.metadata),
            }
            # Omitted dates fall back to the column default (CURRENT_TIMESTAMP)
            if data.created_date is not None:
                columns["created_date"] = self._format_datetime(data.created_date)
            if data.last_modified is not None:
                columns["last_modified"] = self._format_datetime(data.last_modified)

            result = await self._execute(
                f"INSERT INTO prds ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                tuple(columns.values()),
            )
        logger.info(f"Registered PRD {identifier} ({data.file_name}) in project {data.project_id}")
        return await self.get_prd(result.last_row_id)

    async def _next_identifier(self, project_id: int) -> str:
        rows = await self._fetchall(
            "SELECT prd_identifier FROM prds WHERE project_id = ?", (project_id,)
        )
        numbers = []
        for row in rows:
            match = PRD_IDENTIFIER.match(row["prd_identifier"])
            if match:
                numbers.append(int(match.group(1)))
        return f"prd_{max(numbers, default=0) + 1:03d}"

    async def get_prd(self, prd_id: int) -> Optional[PRD]:
        """Get PRD by ID, with live task statistics."""
        row = await self._fetchone("SELECT * FROM prds WHERE id = ?", (prd_id,))
        if row is None:
            return None
        prd = self._row_to_prd(row)
        prd.task_stats = await self.get_task_stats(prd_id)
        return prd

    async def get_prd_by_identifier(self, project_id: int, prd_identifier: str) -> Optional[PRD]:
        row = await self._fetchone(
            "SELECT id FROM prds WHERE project_id = ? AND prd_identifier = ?",
            (project_id, prd_identifier),
        )
        return await self.get_prd(row["id"]) if row else None

    async def find_by_file_name(self, project_id: int, file_name: str) -> Optional[PRD]:
        row = await self._fetchone(
            "SELECT id FROM prds WHERE project_id = ? AND file_name = ? ORDER BY id LIMIT 1",
            (project_id, file_name),
        )
        return await self.get_prd(row["id"]) if row else None

    async def get_prds(
        self, project_id: int, filters: Optional[Union[PRDFilters, Dict[str, Any]]] = None
    ) -> PRDPage:
        """List PRDs of a project with filtering, sorting and pagination."""
        f = self._validate(PRDFilters, filters or {}, "prd filters")

        where = ["project_id = ?"]
        params: List[Any] = [project_id]
        if f.status is not None:
            where.append("status = ?")
            params.append(f.status.value)
        if f.priority is not None:
            where.append("priority = ?")
            params.append(f.priority.value)
        if f.complexity is not None:
            where.append("complexity = ?")
            params.append(f.complexity.value)
        if f.tag:
            where.append("EXISTS (SELECT 1 FROM json_each(prds.tags) WHERE json_each.value = ?)")
            params.append(f.tag)
        if f.search:
            where.append("(title LIKE ? OR description LIKE ? OR file_name LIKE ?)")
            params.extend([f"%{f.search}%"] * 3)
        where_sql = " AND ".join(where)

        count_row = await self._fetchone(
            f"SELECT COUNT(*) AS count FROM prds WHERE {where_sql}", tuple(params)
        )
        total = count_row["count"] if count_row else 0

        direction = "ASC" if f.sort_order == "asc" else "DESC"
        rows = await self._fetchall(
            f"""
            SELECT * FROM prds WHERE {where_sql}
            ORDER BY {SORT_EXPRESSIONS[f.sort_by]} {direction}, id {direction}
            LIMIT ? OFFSET ?
            """,
            (*params, f.limit, (f.page - 1) * f.limit),
        )

        prds = [self._row_to_prd(row) for row in rows]
        stats = await self._task_stats_by_prd([prd.id for prd in prds])
        for prd in prds:
            prd.task_stats = stats.get(prd.id, TaskStatusCounts())

        return PRDPage(
            prds=prds,
            page=f.page,
            limit=f.limit,
            total=total,
            total_pages=self._total_pages(total, f.limit),
        )

    async def update(self, prd_id: int, updates: Union[PRDUpdate, Dict[str, Any]]) -> PRD:
        """Update PRD fields.

        Setting status to archived goes through the same rule as ``archive``.

        Raises:
            NotFoundError: If the PRD does not exist
            ArchiveBlockedError: If archiving while linked tasks are not done
        """
        data = self._validate(PRDUpdate, updates, "prd")
        changes = data.model_dump(exclude_unset=True)

        async with self.db.atomic():
            if changes.get("status") == PRDStatus.ARCHIVED:
                await self._ensure_archivable(prd_id)
            await self._update_row("prds", "PRD", ALLOWED_PRD_FIELDS, changes, prd_id)
        return await self.get_prd(prd_id)

    async def update_status(self, prd_id: int, status: Union[PRDStatus, str]) -> PRD:
        try:
            new_status = PRDStatus(status)
        except ValueError as e:
            raise ValidationError("prd", [f"status: invalid status {status!r}"]) from e
        return await self.update(prd_id, {"status": new_status})

    async def archive(self, prd_id: int, force: bool = False) -> PRD:
        """Archive a PRD.

        Linked tasks keep their link and their status.

        Args:
            prd_id: PRD to archive
            force: Archive even when linked tasks are not all done

        Raises:
            NotFoundError: If the PRD does not exist
            ArchiveBlockedError: If linked tasks are not all done and not forced
        """
        async with self.db.atomic():
            if force:
                if await self._fetchone("SELECT id FROM prds WHERE id = ?", (prd_id,)) is None:
                    raise NotFoundError("PRD", prd_id)
            else:
                await self._ensure_archivable(prd_id)
            await self._execute(
                "UPDATE prds SET status = ? WHERE id = ?", (PRDStatus.ARCHIVED.value, prd_id)
            )
        logger.info(f"Archived PRD {prd_id}{' (forced)' if force else ''}")
        return await self.get_prd(prd_id)

    async def _ensure_archivable(self, prd_id: int) -> None:
        if await self._fetchone("SELECT id FROM prds WHERE id = ?", (prd_id,)) is None:
            raise NotFoundError("PRD", prd_id)
        rows = await self._fetchall(
            "SELECT id FROM tasks WHERE prd_id = ? AND status != ? ORDER BY id",
            (prd_id, TaskStatus.DONE.value),
        )
        if rows:
            raise ArchiveBlockedError(prd_id, [row["id"] for row in rows])

    async def delete(self, prd_id: int) -> int:
        """Delete a PRD. Linked tasks survive with ``prd_id`` cleared.

        Returns:
            Number of tasks that were orphaned

        Raises:
            NotFoundError: If the PRD does not exist
        """
        async with self.db.atomic():
            linked = await self._fetchone(
                "SELECT COUNT(*) AS count FROM tasks WHERE prd_id = ?", (prd_id,)
            )
            result = await self._execute("DELETE FROM prds WHERE id = ?", (prd_id,))
            if result.row_count == 0:
                raise NotFoundError("PRD", prd_id)
        orphaned = linked["count"] if linked else 0
        logger.info(f"Deleted PRD {prd_id}; {orphaned} task(s) unlinked")
        return orphaned

    async def link_tasks(self, prd_id: int, task_ids: Sequence[int]) -> int:
        """Point the given tasks at a PRD.

        Returns:
            Number of tasks updated

        Raises:
            NotFoundError: If the PRD does not exist
        """
        if not task_ids:
            return 0
        async with self.db.atomic():
            prd = await self._fetchone("SELECT id, project_id FROM prds WHERE id = ?", (prd_id,))
            if prd is None:
                raise NotFoundError("PRD", prd_id)
            placeholders = ", ".join("?" for _ in task_ids)
            result = await self._execute(
                f"UPDATE tasks SET prd_id = ? WHERE project_id = ? AND id IN ({placeholders})",
                (prd_id, prd["project_id"], *task_ids),
            )
        return result.row_count

    async def get_linked_tasks(self, prd_id: int) -> List[Task]:
        """Tasks linked to a PRD, ordered by identifier."""
        rows = await self._fetchall("SELECT * FROM tasks WHERE prd_id = ?", (prd_id,))
        tasks = [self.tasks._row_to_task(row) for row in rows]
        tasks.sort(key=lambda t: identifier_sort_key(t.task_identifier))
        return tasks

    async def get_task_stats(self, prd_id: int) -> TaskStatusCounts:
        """Live per-status counts of the tasks linked to a PRD."""
        rows = await self._fetchall(
            "SELECT status, COUNT(*) AS count FROM tasks WHERE prd_id = ? GROUP BY status",
            (prd_id,),
        )
        return TaskStatusCounts.from_counts({row["status"]: row["count"] for row in rows})

    async def _task_stats_by_prd(self, prd_ids: List[int]) -> Dict[int, TaskStatusCounts]:
        if not prd_ids:
            return {}
        placeholders = ", ".join("?" for _ in prd_ids)
        rows = await self._fetchall(
            f"""
            SELECT prd_id, status, COUNT(*) AS count FROM tasks
            WHERE prd_id IN ({placeholders})
            GROUP BY prd_id, status
            """,
            tuple(prd_ids),
        )
        grouped: Dict[int, Dict[str, int]] = {}
        for row in rows:
            grouped.setdefault(row["prd_id"], {})[row["status"]] = row["count"]
        return {prd_id: TaskStatusCounts.from_counts(counts) for prd_id, counts in grouped.items()}

    def _row_to_prd(self, row: Dict[str, Any]) -> PRD:
        row = self._parse_row_datetimes(dict(row), PRD_DATETIME_FIELDS)
        row["tags"] = self._loads_json(row.get("tags"), [], "tags")
        row["metadata"] = self._loads_json(row.get("metadata"), {}, "metadata")
        return PRD.model_validate(row)
