"""Repository for Task operations: hierarchy, status workflow and dependencies."""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from taskhero.core.errors import (
    ConstraintViolationError,
    DependencyCycleError,
    NotFoundError,
    ValidationError,
)
from taskhero.core.models import (
    BLOCKING_DEPENDENCY_TYPES,
    PRIORITY_RANK,
    DependencyType,
    NextTaskCriteria,
    Task,
    TaskCreate,
    TaskDependency,
    TaskFilters,
    TaskPage,
    TaskStatus,
    TaskStatusCounts,
    TaskUpdate,
    identifier_sort_key,
)
from taskhero.persistence.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Whitelist of allowed task fields for updates (prevents SQL injection)
ALLOWED_TASK_FIELDS = {
    "prd_id",
    "parent_task_id",
    "task_identifier",
    "title",
    "description",
    "details",
    "test_strategy",
    "status",
    "priority",
    "complexity_score",
    "complexity_level",
    "estimated_hours",
    "actual_hours",
    "assignee",
    "due_date",
    "start_date",
    "completed_at",
    "metadata",
}

TASK_DATETIME_FIELDS = (
    "due_date",
    "start_date",
    "completed_at",
    "created_at",
    "updated_at",
)

SORT_EXPRESSIONS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "priority": "CASE priority WHEN 'high' THEN 3 WHEN 'medium' THEN 2 ELSE 1 END",
    "status": "status",
    "title": "title COLLATE NOCASE",
    "id": "id",
}

_BLOCKING_PLACEHOLDERS = ", ".join("?" for _ in BLOCKING_DEPENDENCY_TYPES)


class TaskRepository(BaseRepository):
    """Repository for task operations."""

    async def create(self, payload: Union[TaskCreate, Dict[str, Any]]) -> Task:
        """Create a task, assigning the next identifier when none is given.

        Top-level tasks get the next integer ("7"); subtasks get the next
        child of their parent ("7.3").

        Raises:
            ValidationError: If the payload is invalid
            NotFoundError: If ``parent_task_id`` does not exist
            ConstraintViolationError: On a duplicate identifier or missing project/PRD
        """
        data = self._validate(TaskCreate, payload, "task")

        async with self.db.atomic():
            parent = None
            if data.parent_task_id is not None:
                parent = await self.get_task(data.parent_task_id)
                if parent is None:
                    raise NotFoundError("Task", data.parent_task_id)
                if parent.project_id != data.project_id:
                    raise ValidationError(
                        "task", ["parent_task_id: parent belongs to a different project"]
                    )

            identifier = data.task_identifier or await self._next_identifier(
                data.project_id, parent
            )
            start_date = data.start_date
            completed_at = data.completed_at
            if data.status == TaskStatus.IN_PROGRESS and start_date is None:
                start_date = _now()
            if data.status == TaskStatus.DONE and completed_at is None:
                completed_at = _now()

            result = await self._execute(
                """
                INSERT INTO tasks (
                    project_id, prd_id, parent_task_id, task_identifier, title,
                    description, details, test_strategy, status, priority,
                    complexity_score, complexity_level, estimated_hours, actual_hours,
                    assignee, due_date, start_date, completed_at, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    data.project_id,
                    data.prd_id,
                    data.parent_task_id,
                    identifier,
                    data.title,
                    data.description,
                    data.details,
                    data.test_strategy,
                    data.status.value,
                    data.priority.value,
                    data.complexity_score,
                    self._to_db_value(data.complexity_level),
                    data.estimated_hours,
                    data.actual_hours,
                    data.assignee,
                    self._format_datetime(data.due_date),
                    self._format_datetime(start_date),
                    self._format_datetime(completed_at),
                    self._dumps_json(data.metadata),
                ),
            )
        logger.debug(f"Created task {result.last_row_id} ({identifier}) in project {data.project_id}")
        return await self.get_task(result.last_row_id)

    async def _next_identifier(self, project_id: int, parent: Optional[Task]) -> str:
        if parent is None:
            rows = await self._fetchall(
                "SELECT task_identifier FROM tasks WHERE project_id = ? AND parent_task_id IS NULL",
                (project_id,),
            )
            numbers = [int(r["task_identifier"]) for r in rows if r["task_identifier"].isdigit()]
            return str(max(numbers, default=0) + 1)

        prefix = f"{parent.task_identifier}."
        rows = await self._fetchall(
            """
            SELECT task_identifier FROM tasks
            WHERE project_id = ? AND substr(task_identifier, 1, ?) = ?
            """,
            (project_id, len(prefix), prefix),
        )
        numbers = []
        for row in rows:
            rest = row["task_identifier"][len(prefix):]
            if rest.isdigit():
                numbers.append(int(rest))
        return f"{prefix}{max(numbers, default=0) + 1}"

    async def get_task(self, task_id: int) -> Optional[Task]:
        """Get task by ID.

        Args:
            task_id: Task ID

        Returns:
            Task object or None if not found
        """
        row = await self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def get_task_by_identifier(self, project_id: int, task_identifier: str) -> Optional[Task]:
        row = await self._fetchone(
            "SELECT * FROM tasks WHERE project_id = ? AND task_identifier = ?",
            (project_id, task_identifier),
        )
        return self._row_to_task(row) if row else None

    async def get_tasks(
        self, project_id: int, filters: Optional[Union[TaskFilters, Dict[str, Any]]] = None
    ) -> TaskPage:
        """List tasks of a project with filtering, sorting and pagination.

        Sorting by ``task_identifier`` orders dotted identifiers numerically
        ("2" < "2.1" < "10").
        """
        f = self._validate(TaskFilters, filters or {}, "task filters")

        where = ["project_id = ?"]
        params: List[Any] = [project_id]
        if f.status is not None:
            where.append("status = ?")
            params.append(f.status.value)
        if f.priority is not None:
            where.append("priority = ?")
            params.append(f.priority.value)
        if f.prd_id is not None:
            where.append("prd_id = ?")
            params.append(f.prd_id)
        if f.parent_task_id is not None:
            where.append("parent_task_id = ?")
            params.append(f.parent_task_id)
        elif f.root_only:
            where.append("parent_task_id IS NULL")
        if f.assignee is not None:
            where.append("assignee = ?")
            params.append(f.assignee)
        if f.search:
            where.append("(title LIKE ? OR description LIKE ? OR task_identifier = ?)")
            params.extend([f"%{f.search}%", f"%{f.search}%", f.search])
        where_sql = " AND ".join(where)

        count_row = await self._fetchone(
            f"SELECT COUNT(*) AS count FROM tasks WHERE {where_sql}", tuple(params)
        )
        total = count_row["count"] if count_row else 0
        offset = (f.page - 1) * f.limit

        if f.sort_by == "task_identifier":
            rows = await self._fetchall(f"SELECT * FROM tasks WHERE {where_sql}", tuple(params))
            rows.sort(
                key=lambda r: identifier_sort_key(r["task_identifier"]),
                reverse=f.sort_order == "desc",
            )
            rows = rows[offset:offset + f.limit]
        else:
            direction = "ASC" if f.sort_order == "asc" else "DESC"
            rows = await self._fetchall(
                f"""
                SELECT * FROM tasks WHERE {where_sql}
                ORDER BY {SORT_EXPRESSIONS[f.sort_by]} {direction}, id {direction}
                LIMIT ? OFFSET ?
                """,
                (*params, f.limit, offset),
            )

        return TaskPage(
            tasks=[self._row_to_task(row) for row in rows],
            page=f.page,
            limit=f.limit,
            total=total,
            total_pages=self._total_pages(total, f.limit),
        )

    async def get_subtasks(self, parent_task_id: int) -> List[Task]:
        """Direct children of a task, ordered by identifier."""
        rows = await self._fetchall(
            "SELECT * FROM tasks WHERE parent_task_id = ?", (parent_task_id,)
        )
        tasks = [self._row_to_task(row) for row in rows]
        tasks.sort(key=lambda t: identifier_sort_key(t.task_identifier))
        return tasks

    async def update(self, task_id: int, updates: Union[TaskUpdate, Dict[str, Any]]) -> Task:
        """Update task fields.

        A status change stamps ``start_date``/``completed_at`` the same way
        ``update_status`` does unless those fields are part of the update.

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: If the update is invalid or re-parents the task
                under itself or one of its descendants
        """
        data = self._validate(TaskUpdate, updates, "task")
        changes = data.model_dump(exclude_unset=True)

        async with self.db.atomic():
            task = await self.get_task(task_id)
            if task is None:
                raise NotFoundError("Task", task_id)

            if changes.get("parent_task_id") is not None:
                await self._check_reparent(task, changes["parent_task_id"])
            if "status" in changes and changes["status"] is not None:
                for key, value in _status_stamps(task, TaskStatus(changes["status"])).items():
                    changes.setdefault(key, value)

            await self._update_row("tasks", "Task", ALLOWED_TASK_FIELDS, changes, task_id)
        return await self.get_task(task_id)

    async def _check_reparent(self, task: Task, new_parent_id: int) -> None:
        parent = await self.get_task(new_parent_id)
        if parent is None:
            raise NotFoundError("Task", new_parent_id)
        if parent.project_id != task.project_id:
            raise ValidationError("task", ["parent_task_id: parent belongs to a different project"])

        # Walk up from the new parent; reaching the task means a hierarchy loop
        current: Optional[Task] = parent
        while current is not None:
            if current.id == task.id:
                raise ValidationError(
                    "task", ["parent_task_id: a task cannot be nested under itself or its subtasks"]
                )
            current = (
                await self.get_task(current.parent_task_id)
                if current.parent_task_id is not None
                else None
            )

    async def update_status(self, task_id: int, status: Union[TaskStatus, str]) -> Task:
        """Move a task to ``status``.

        Entering in-progress stamps ``start_date`` once; entering done stamps
        ``completed_at``; leaving done clears it.

        Raises:
            NotFoundError: If the task does not exist
            ValidationError: If ``status`` is not a task status
        """
        try:
            new_status = TaskStatus(status)
        except ValueError as e:
            raise ValidationError("task", [f"status: invalid status {status!r}"]) from e
        return await self.update(task_id, {"status": new_status})

    async def delete(self, task_id: int) -> None:
        """Delete a task; its subtasks and dependency edges cascade.

        Raises:
            NotFoundError: If the task does not exist
        """
        result = await self._execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        if result.row_count == 0:
            raise NotFoundError("Task", task_id)
        logger.debug(f"Deleted task {task_id}")

    async def find_next_task(
        self,
        project_id: int,
        criteria: Optional[Union[NextTaskCriteria, Dict[str, Any]]] = None,
    ) -> Optional[Task]:
        """Pick the next task to work on.

        Candidates are pending tasks whose blocks/requires dependencies are all
        done. The highest priority wins; ties go to the lowest identifier,
        compared component-wise ("2.1" before "2.10" before "10").

        Returns:
            The selected Task, or None when nothing is ready
        """
        c = self._validate(NextTaskCriteria, criteria or {}, "next task criteria")

        where = ["t.project_id = ?", "t.status = ?"]
        params: List[Any] = [project_id, TaskStatus.PENDING.value]
        if c.prd_id is not None:
            where.append("t.prd_id = ?")
            params.append(c.prd_id)
        if c.assignee is not None:
            where.append("t.assignee = ?")
            params.append(c.assignee)
        if not c.include_subtasks:
            where.append("t.parent_task_id IS NULL")

        rows = await self._fetchall(
            f"""
            SELECT t.* FROM tasks t
            WHERE {' AND '.join(where)}
              AND NOT EXISTS (
                  SELECT 1 FROM task_dependencies d
                  JOIN tasks dep ON dep.id = d.depends_on_task_id
                  WHERE d.task_id = t.id
                    AND d.dependency_type IN ({_BLOCKING_PLACEHOLDERS})
                    AND dep.status != ?
              )
            """,
            (*params, *sorted(BLOCKING_DEPENDENCY_TYPES), TaskStatus.DONE.value),
        )
        if not rows:
            return None

        candidates = [self._row_to_task(row) for row in rows]
        candidates.sort(
            key=lambda t: (
                -PRIORITY_RANK[t.priority.value],
                identifier_sort_key(t.task_identifier),
                t.id,
            )
        )
        return candidates[0]

    # Dependencies

    async def add_dependency(
        self,
        task_id: int,
        depends_on_task_id: int,
        dependency_type: Union[DependencyType, str] = DependencyType.BLOCKS,
    ) -> TaskDependency:
        """Record that ``task_id`` depends on ``depends_on_task_id``.

        The cycle check and the insert run in one transaction, so a
        concurrent writer cannot slip a closing edge in between.

        Raises:
            DependencyCycleError: For a self-loop, or a blocks/requires edge
                that would close a cycle
            NotFoundError: If either task does not exist
            ConstraintViolationError: If the tasks belong to different
                projects or the edge already exists
            ValidationError: If ``dependency_type`` is unknown
        """
        try:
            dep_type = DependencyType(dependency_type)
        except ValueError as e:
            raise ValidationError(
                "task dependency", [f"dependency_type: invalid type {dependency_type!r}"]
            ) from e

        if task_id == depends_on_task_id:
            raise DependencyCycleError(task_id, depends_on_task_id, [task_id, task_id])

        async with self.db.atomic():
            task = await self.get_task(task_id)
            if task is None:
                raise NotFoundError("Task", task_id)
            target = await self.get_task(depends_on_task_id)
            if target is None:
                raise NotFoundError("Task", depends_on_task_id)
            if task.project_id != target.project_id:
                raise ConstraintViolationError(
                    "SAME PROJECT",
                    f"Task {task_id} (project {task.project_id}) cannot depend on task "
                    f"{depends_on_task_id} (project {target.project_id})",
                )

            if dep_type.value in BLOCKING_DEPENDENCY_TYPES:
                path = await self._find_blocking_path(
                    task.project_id, start=depends_on_task_id, goal=task_id
                )
                if path is not None:
                    raise DependencyCycleError(task_id, depends_on_task_id, [task_id, *path])

            await self._execute(
                """
                INSERT INTO task_dependencies (task_id, depends_on_task_id, dependency_type)
                VALUES (?, ?, ?)
                """,
                (task_id, depends_on_task_id, dep_type.value),
            )

        row = await self._fetchone(
            "SELECT * FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
            (task_id, depends_on_task_id),
        )
        return self._row_to_dependency(row)

    async def _find_blocking_path(
        self, project_id: int, start: int, goal: int
    ) -> Optional[List[int]]:
        """Depth-first search along blocks/requires edges from ``start`` to ``goal``.

        Returns:
            Node ids from ``start`` to ``goal`` inclusive, or None if unreachable
        """
        rows = await self._fetchall(
            f"""
            SELECT d.task_id, d.depends_on_task_id FROM task_dependencies d
            JOIN tasks t ON t.id = d.task_id
            WHERE t.project_id = ? AND d.dependency_type IN ({_BLOCKING_PLACEHOLDERS})
            """,
            (project_id, *sorted(BLOCKING_DEPENDENCY_TYPES)),
        )
        graph: Dict[int, List[int]] = {}
        for row in rows:
            graph.setdefault(row["task_id"], []).append(row["depends_on_task_id"])

        came_from: Dict[int, Optional[int]] = {start: None}
        stack = [start]
        while stack:
            node = stack.pop()
            if node == goal:
                path = []
                step: Optional[int] = node
                while step is not None:
                    path.append(step)
                    step = came_from[step]
                return list(reversed(path))
            for neighbor in graph.get(node, []):
                if neighbor not in came_from:
                    came_from[neighbor] = node
                    stack.append(neighbor)
        return None

    async def remove_dependency(self, task_id: int, depends_on_task_id: int) -> None:
        """Remove a dependency edge.

        Raises:
            NotFoundError: If the edge does not exist
        """
        result = await self._execute(
            "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
            (task_id, depends_on_task_id),
        )
        if result.row_count == 0:
            raise NotFoundError("TaskDependency", f"{task_id} -> {depends_on_task_id}")

    async def set_dependencies(
        self,
        task_id: int,
        depends_on_task_ids: Sequence[int],
        dependency_type: Union[DependencyType, str] = DependencyType.BLOCKS,
    ) -> List[TaskDependency]:
        """Replace all outgoing edges of a task atomically.

        If any new edge is rejected the previous edges are kept.
        """
        async with self.db.atomic():
            if await self.get_task(task_id) is None:
                raise NotFoundError("Task", task_id)
            await self._execute("DELETE FROM task_dependencies WHERE task_id = ?", (task_id,))
            edges = []
            for depends_on in dict.fromkeys(depends_on_task_ids):
                edges.append(await self.add_dependency(task_id, depends_on, dependency_type))
        return edges

    async def get_dependencies(self, task_id: int) -> List[TaskDependency]:
        """Edges from ``task_id`` to the tasks it depends on."""
        rows = await self._fetchall(
            "SELECT * FROM task_dependencies WHERE task_id = ? ORDER BY id", (task_id,)
        )
        return [self._row_to_dependency(row) for row in rows]

    async def get_dependents(self, task_id: int) -> List[TaskDependency]:
        """Edges from tasks that depend on ``task_id``."""
        rows = await self._fetchall(
            "SELECT * FROM task_dependencies WHERE depends_on_task_id = ? ORDER BY id", (task_id,)
        )
        return [self._row_to_dependency(row) for row in rows]

    async def get_stats(self, project_id: int, prd_id: Optional[int] = None) -> TaskStatusCounts:
        """Live task counts per status for a project, optionally one PRD."""
        query = "SELECT status, COUNT(*) AS count FROM tasks WHERE project_id = ?"
        params: List[Any] = [project_id]
        if prd_id is not None:
            query += " AND prd_id = ?"
            params.append(prd_id)
        rows = await self._fetchall(f"{query} GROUP BY status", tuple(params))
        return TaskStatusCounts.from_counts({row["status"]: row["count"] for row in rows})

    def _row_to_task(self, row: Dict[str, Any]) -> Task:
        row = self._parse_row_datetimes(dict(row), TASK_DATETIME_FIELDS)
        row["metadata"] = self._loads_json(row.get("metadata"), {}, "metadata")
        return Task.model_validate(row)

    def _row_to_dependency(self, row: Dict[str, Any]) -> TaskDependency:
        row = self._parse_row_datetimes(dict(row), ("created_at",))
        return TaskDependency.model_validate(row)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _status_stamps(task: Task, new_status: TaskStatus) -> Dict[str, Any]:
    stamps: Dict[str, Any] = {}
    if new_status == TaskStatus.IN_PROGRESS and task.start_date is None:
        stamps["start_date"] = _now()
    if new_status == TaskStatus.DONE:
        if task.status != TaskStatus.DONE or task.completed_at is None:
            stamps["completed_at"] = _now()
    elif task.completed_at is not None:
        stamps["completed_at"] = None
    return stamps
