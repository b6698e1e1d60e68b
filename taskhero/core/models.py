"""Core data models for TaskHero."""

import math
import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Project-scoped human identifiers: "12", "3.2.1", "prd_001"
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")


class ProjectStatus(str, Enum):
    """Project lifecycle status."""

    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class TaskStatus(str, Enum):
    """Task workflow status."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    REVIEW = "review"
    BLOCKED = "blocked"
    DEFERRED = "deferred"
    CANCELLED = "cancelled"


class PRDStatus(str, Enum):
    """PRD lifecycle status."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    ARCHIVED = "archived"


class Priority(str, Enum):
    """Priority shared by tasks and PRDs."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ComplexityLevel(str, Enum):
    """Coarse complexity bucket shared by tasks and PRDs."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DependencyType(str, Enum):
    """Kind of edge in the task dependency graph."""

    BLOCKS = "blocks"
    REQUIRES = "requires"
    RELATED = "related"


# Edge types that order work; the graph restricted to these must stay acyclic
BLOCKING_DEPENDENCY_TYPES: frozenset[str] = frozenset(
    {DependencyType.BLOCKS.value, DependencyType.REQUIRES.value}
)

PRIORITY_RANK: Dict[str, int] = {
    Priority.HIGH.value: 3,
    Priority.MEDIUM.value: 2,
    Priority.LOW.value: 1,
}

VALID_TASK_STATUSES: frozenset[str] = frozenset(s.value for s in TaskStatus)
VALID_PRD_STATUSES: frozenset[str] = frozenset(s.value for s in PRDStatus)


def _validate_identifier(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not IDENTIFIER_PATTERN.match(value):
        raise ValueError(f"Invalid identifier: {value!r}")
    return value


def _validate_not_blank(value: str) -> str:
    if not value.strip():
        raise ValueError("Value cannot be empty or whitespace-only")
    return value.strip()


def _reject_null(value: Any) -> Any:
    # Runs only for fields present in the payload; omitted fields stay unset
    if value is None:
        raise ValueError("Value cannot be null")
    return value


def identifier_sort_key(identifier: str) -> tuple:
    """Sort key ordering dotted identifiers numerically component-wise.

    "2" < "2.1" < "2.10" < "10"; non-numeric parts sort after numeric ones.
    """
    key = []
    for part in identifier.split("."):
        if part.isdigit():
            key.append((0, int(part), ""))
        else:
            key.append((1, math.inf, part))
    return tuple(key)


# Projects


class Project(BaseModel):
    """A managed workspace. Root owner of tasks, PRDs and scoped configuration."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    root_path: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProjectCreate(BaseModel):
    """Payload for creating a project."""

    name: str = Field(..., min_length=1, max_length=200)
    root_path: str = Field(..., min_length=1)
    description: Optional[str] = None
    status: ProjectStatus = ProjectStatus.ACTIVE
    metadata: Dict[str, Any] = Field(default_factory=dict)

    strip_name = field_validator("name", "root_path")(_validate_not_blank)


class ProjectUpdate(BaseModel):
    """Partial update for a project; unset fields are left untouched."""

    name: Optional[str] = Field(None, min_length=1, max_length=200)
    root_path: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    metadata: Optional[Dict[str, Any]] = None

    not_null = field_validator("name", "root_path", "status", "metadata")(_reject_null)


# Tasks


class Task(BaseModel):
    """A unit of work, optionally nested under a parent and linked to a PRD."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    prd_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    task_identifier: str
    title: str
    description: Optional[str] = None
    details: Optional[str] = None
    test_strategy: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    complexity_score: Optional[float] = None
    complexity_level: Optional[ComplexityLevel] = None
    estimated_hours: Optional[float] = None
    actual_hours: Optional[float] = None
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_subtask(self) -> bool:
        return self.parent_task_id is not None


class TaskCreate(BaseModel):
    """Payload for creating a task.

    ``task_identifier`` is assigned automatically when omitted: the next
    integer for top-level tasks, ``<parent>.<n>`` for subtasks.
    """

    project_id: int
    title: str = Field(..., min_length=1, max_length=500)
    task_identifier: Optional[str] = None
    prd_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    description: Optional[str] = None
    details: Optional[str] = None
    test_strategy: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    complexity_score: Optional[float] = Field(None, ge=1, le=10)
    complexity_level: Optional[ComplexityLevel] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    strip_title = field_validator("title")(_validate_not_blank)
    check_identifier = field_validator("task_identifier")(_validate_identifier)


class TaskUpdate(BaseModel):
    """Partial update for a task; unset fields are left untouched."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    task_identifier: Optional[str] = None
    prd_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    description: Optional[str] = None
    details: Optional[str] = None
    test_strategy: Optional[str] = None
    status: Optional[TaskStatus] = None
    priority: Optional[Priority] = None
    complexity_score: Optional[float] = Field(None, ge=1, le=10)
    complexity_level: Optional[ComplexityLevel] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    actual_hours: Optional[float] = Field(None, ge=0)
    assignee: Optional[str] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    check_identifier = field_validator("task_identifier")(_validate_identifier)
    not_null = field_validator("title", "task_identifier", "status", "priority", "metadata")(
        _reject_null
    )


class TaskDependency(BaseModel):
    """Directed edge: ``task_id`` depends on ``depends_on_task_id``."""

    model_config = ConfigDict(from_attributes=True)

    task_id: int
    depends_on_task_id: int
    dependency_type: DependencyType = DependencyType.BLOCKS
    created_at: Optional[datetime] = None


class TaskFilters(BaseModel):
    """Filters and pagination for listing tasks."""

    status: Optional[TaskStatus] = None
    priority: Optional[Priority] = None
    prd_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    root_only: bool = False
    assignee: Optional[str] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=500)
    sort_by: Literal[
        "created_at", "updated_at", "priority", "status", "title", "task_identifier", "id"
    ] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"


class TaskPage(BaseModel):
    """One page of tasks plus pagination totals."""

    tasks: List[Task]
    page: int
    limit: int
    total: int
    total_pages: int


class NextTaskCriteria(BaseModel):
    """Narrowing criteria for next-task selection."""

    prd_id: Optional[int] = None
    assignee: Optional[str] = None
    include_subtasks: bool = True


class TaskStatusCounts(BaseModel):
    """Task counts per status, computed live from task rows."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    done: int = 0
    review: int = 0
    blocked: int = 0
    deferred: int = 0
    cancelled: int = 0
    completion_percentage: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[str, int]) -> "TaskStatusCounts":
        """Build from a ``{status: count}`` mapping as returned by GROUP BY."""
        fields = {status.replace("-", "_"): count for status, count in counts.items()}
        total = sum(counts.values())
        done = counts.get(TaskStatus.DONE.value, 0)
        return cls(
            total=total,
            completion_percentage=round(done / total * 100) if total else 0,
            **{k: v for k, v in fields.items() if k in cls.model_fields},
        )


# PRDs


class PRD(BaseModel):
    """A product requirements document tracked by lifecycle, not content."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: int
    prd_identifier: str
    title: str
    file_name: str
    file_path: str
    file_hash: Optional[str] = None
    file_size: Optional[int] = None
    status: PRDStatus = PRDStatus.PENDING
    complexity: ComplexityLevel = ComplexityLevel.MEDIUM
    priority: Priority = Priority.MEDIUM
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    estimated_effort: Optional[str] = None
    created_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    parsed_date: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    task_stats: Optional[TaskStatusCounts] = None


class PRDCreate(BaseModel):
    """Payload for registering a PRD.

    ``prd_identifier`` defaults to the next ``prd_NNN`` in the project.
    """

    project_id: int
    title: str = Field(..., min_length=1, max_length=500)
    file_name: str = Field(..., min_length=1)
    file_path: str = Field(..., min_length=1)
    prd_identifier: Optional[str] = None
    file_hash: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    status: PRDStatus = PRDStatus.PENDING
    complexity: ComplexityLevel = ComplexityLevel.MEDIUM
    priority: Priority = Priority.MEDIUM
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    estimated_effort: Optional[str] = None
    created_date: Optional[datetime] = None
    last_modified: Optional[datetime] = None
    parsed_date: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    strip_title = field_validator("title")(_validate_not_blank)
    check_identifier = field_validator("prd_identifier")(_validate_identifier)


class PRDUpdate(BaseModel):
    """Partial update for a PRD; unset fields are left untouched."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    file_name: Optional[str] = Field(None, min_length=1)
    file_path: Optional[str] = Field(None, min_length=1)
    file_hash: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    status: Optional[PRDStatus] = None
    complexity: Optional[ComplexityLevel] = None
    priority: Optional[Priority] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None
    estimated_effort: Optional[str] = None
    parsed_date: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None

    not_null = field_validator(
        "title", "file_name", "file_path", "status", "complexity", "priority", "tags", "metadata"
    )(_reject_null)


class PRDFilters(BaseModel):
    """Filters and pagination for listing PRDs."""

    status: Optional[PRDStatus] = None
    priority: Optional[Priority] = None
    complexity: Optional[ComplexityLevel] = None
    tag: Optional[str] = None
    search: Optional[str] = None
    page: int = Field(1, ge=1)
    limit: int = Field(50, ge=1, le=500)
    sort_by: Literal["created_date", "last_modified", "title", "priority", "status"] = (
        "created_date"
    )
    sort_order: Literal["asc", "desc"] = "desc"


class PRDPage(BaseModel):
    """One page of PRDs (with live task stats) plus pagination totals."""

    prds: List[PRD]
    page: int
    limit: int
    total: int
    total_pages: int


# Configuration


class Configuration(BaseModel):
    """A key/value setting; ``project_id`` None means global."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    project_id: Optional[int] = None
    config_type: str
    key: str
    value: Any = None
    description: Optional[str] = None
    is_default: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Backups


class BackupInfo(BaseModel):
    """A database snapshot in the backups directory."""

    filename: str
    path: str
    size: int
    created_at: datetime
    backup_type: str
    project_root: Optional[str] = None
    database_stats: Dict[str, int] = Field(default_factory=dict)
