"""Pure mapping from legacy JSON records to relational rows.

No I/O happens here: every function takes decoded JSON and returns plain
values or dataclasses, so each field rule can be unit tested on its own.
Records that cannot be mapped raise LegacyDataError.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from taskhero.core.errors import LegacyDataError
from taskhero.core.models import (
    ComplexityLevel,
    Priority,
    VALID_PRD_STATUSES,
    VALID_TASK_STATUSES,
)

logger = logging.getLogger(__name__)

STATUS_ALIASES = {
    "completed": "done",
    "complete": "done",
    "finished": "done",
    "in_progress": "in-progress",
    "inprogress": "in-progress",
    "in progress": "in-progress",
    "todo": "pending",
    "to-do": "pending",
    "open": "pending",
    "canceled": "cancelled",
    "on-hold": "deferred",
}

PRIORITY_ALIASES = {
    "critical": "high",
    "urgent": "high",
    "normal": "medium",
    "minor": "low",
}

# Legacy config.json sections and the config_type they become
CONFIG_SECTIONS = {
    "models": "ai_models",
    "global": "global_settings",
}

DEFAULT_TAG = "master"


@dataclass
class LegacyTask:
    """A task (or subtask) mapped from tasks.json, not yet bound to row ids."""

    task_identifier: str
    fields: Dict[str, Any]
    dependencies: List[str] = field(default_factory=list)
    prd_ref: Optional[str] = None
    prd_file_name: Optional[str] = None
    subtasks: List["LegacyTask"] = field(default_factory=list)


@dataclass
class LegacyPRD:
    """A PRD mapped from prds.json plus the legacy ids of its linked tasks."""

    prd_identifier: str
    fields: Dict[str, Any]
    linked_task_identifiers: List[str] = field(default_factory=list)


# Field normalization


def normalize_task_status(value: Any, record_id: Any = None) -> str:
    """Map a legacy task status to a TaskStatus value.

    Missing status means pending. Unknown values are rejected rather than
    guessed.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return "pending"
    status = str(value).strip().lower()
    status = STATUS_ALIASES.get(status, status)
    if status not in VALID_TASK_STATUSES:
        raise LegacyDataError("task", record_id, f"unknown status {value!r}")
    return status


def normalize_prd_status(value: Any, record_id: Any = None) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        return "pending"
    status = str(value).strip().lower()
    status = STATUS_ALIASES.get(status, status)
    if status not in VALID_PRD_STATUSES:
        raise LegacyDataError("prd", record_id, f"unknown status {value!r}")
    return status


def normalize_priority(value: Any) -> str:
    """Map a legacy priority to low/medium/high; anything unrecognized is medium."""
    if value is None:
        return Priority.MEDIUM.value
    priority = str(value).strip().lower()
    priority = PRIORITY_ALIASES.get(priority, priority)
    if priority not in {p.value for p in Priority}:
        logger.warning(f"Unknown legacy priority {value!r}, using medium")
        return Priority.MEDIUM.value
    return priority


def normalize_complexity(value: Any) -> Optional[str]:
    """Map a legacy complexity to a ComplexityLevel value.

    Numeric scores (1-10) are bucketed: 1-3 low, 4-7 medium, 8-10 high.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        score = complexity_score(value)
        if score <= 3:
            return ComplexityLevel.LOW.value
        if score <= 7:
            return ComplexityLevel.MEDIUM.value
        return ComplexityLevel.HIGH.value
    level = str(value).strip().lower()
    if level not in {c.value for c in ComplexityLevel}:
        logger.warning(f"Unknown legacy complexity {value!r}, ignoring")
        return None
    return level


def complexity_score(value: Any) -> Optional[float]:
    """Clamp a numeric legacy complexity score into [1, 10]."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    return min(max(score, 1.0), 10.0)


def legacy_id_to_int(value: Any, source: str = "task") -> int:
    """Convert a legacy numeric id (``3`` or ``"3"``) to an integer."""
    if isinstance(value, bool):
        raise LegacyDataError(source, value, "id must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise LegacyDataError(source, value, "id must be an integer")


def parse_completed_flag(value: Any, record_id: Any = None) -> bool:
    """Read a legacy ``completed`` flag: a JSON boolean or the strings true/false."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise LegacyDataError("subtask", record_id, f"invalid completed flag {value!r}")


def subtask_status(record: Dict[str, Any], record_id: Any = None) -> str:
    """Status of a legacy subtask: explicit status wins over the ``completed`` flag."""
    if record.get("status") not in (None, ""):
        return normalize_task_status(record["status"], record_id)
    if "completed" in record:
        return "done" if parse_completed_flag(record["completed"], record_id) else "pending"
    return "pending"


def parse_legacy_date(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 legacy timestamp; unparseable values become None."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Ignoring unparseable legacy date {value!r}")
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _require_title(record: Dict[str, Any], source: str, record_id: Any) -> str:
    title = _text(record.get("title"))
    if title is None:
        raise LegacyDataError(source, record_id, "missing title")
    return title.strip()


def _dependency_identifier(dep: Any, sibling_prefix: Optional[str], record_id: Any) -> str:
    """Resolve a legacy dependency reference to a task identifier.

    Dotted strings are already full identifiers. Bare numbers refer to a
    top-level task, or to a sibling when ``sibling_prefix`` is set.
    """
    if isinstance(dep, str) and "." in dep:
        return dep.strip()
    number = legacy_id_to_int(dep, "task dependency")
    if sibling_prefix is not None:
        return f"{sibling_prefix}.{number}"
    return str(number)


# Documents


def unwrap_tasks_document(document: Any) -> List[Dict[str, Any]]:
    """Return the task list from any tasks.json layout.

    Accepts ``{"tasks": [...]}``, the tagged ``{"master": {"tasks": [...]}}``
    (the master tag wins, otherwise the first tag in file order) or a bare
    list.
    """
    if isinstance(document, list):
        return document
    if not isinstance(document, dict):
        raise LegacyDataError("tasks.json", None, "expected an object or a list")
    if isinstance(document.get("tasks"), list):
        return document["tasks"]

    tagged = {
        tag: body
        for tag, body in document.items()
        if isinstance(body, dict) and isinstance(body.get("tasks"), list)
    }
    if not tagged:
        raise LegacyDataError("tasks.json", None, "no task list found")
    tag = DEFAULT_TAG if DEFAULT_TAG in tagged else next(iter(tagged))
    if len(tagged) > 1:
        logger.warning(f"tasks.json has tags {sorted(tagged)}; migrating only '{tag}'")
    return tagged[tag]["tasks"]


def unwrap_prds_document(document: Any) -> List[Dict[str, Any]]:
    if isinstance(document, list):
        return document
    if isinstance(document, dict) and isinstance(document.get("prds"), list):
        return document["prds"]
    raise LegacyDataError("prds.json", None, "no prds list found")


# Records


def map_task(record: Dict[str, Any]) -> LegacyTask:
    """Map one top-level tasks.json record, including its subtasks."""
    if not isinstance(record, dict):
        raise LegacyDataError("task", None, "record is not an object")
    record_id = record.get("id")
    identifier = str(legacy_id_to_int(record_id, "task"))
    title = _require_title(record, "task", record_id)

    prd_source = record.get("prdSource") or {}
    if not isinstance(prd_source, dict):
        prd_source = {}

    metadata: Dict[str, Any] = {"legacy_id": record_id}
    if prd_source:
        metadata["prd_source"] = prd_source

    raw_complexity = record.get("complexityScore", record.get("complexity"))
    score = complexity_score(raw_complexity)
    fields_ = {
        "title": title,
        "description": _text(record.get("description")),
        "details": _text(record.get("details")),
        "test_strategy": _text(record.get("testStrategy")),
        "status": normalize_task_status(record.get("status"), record_id),
        "priority": normalize_priority(record.get("priority")),
        "complexity_score": score,
        "complexity_level": normalize_complexity(score if score is not None else raw_complexity),
        "metadata": metadata,
    }

    task = LegacyTask(
        task_identifier=identifier,
        fields=fields_,
        dependencies=[
            _dependency_identifier(dep, None, record_id)
            for dep in record.get("dependencies") or []
        ],
        prd_ref=_text(prd_source.get("prdId")),
        prd_file_name=_text(prd_source.get("fileName")),
    )
    task.subtasks = [map_subtask(identifier, sub) for sub in record.get("subtasks") or []]
    return task


def map_subtask(parent_identifier: str, record: Dict[str, Any]) -> LegacyTask:
    """Map a legacy subtask; its identifier becomes ``<parent>.<sub id>``."""
    if not isinstance(record, dict):
        raise LegacyDataError("subtask", None, "record is not an object")
    sub_id = legacy_id_to_int(record.get("id"), "subtask")
    identifier = f"{parent_identifier}.{sub_id}"
    title = _require_title(record, "subtask", identifier)

    return LegacyTask(
        task_identifier=identifier,
        fields={
            "title": title,
            "description": _text(record.get("description")),
            "details": _text(record.get("details")),
            "test_strategy": _text(record.get("testStrategy")),
            "status": subtask_status(record, identifier),
            "priority": normalize_priority(record.get("priority")),
            "metadata": {"legacy_id": record.get("id")},
        },
        dependencies=[
            _dependency_identifier(dep, parent_identifier, identifier)
            for dep in record.get("dependencies") or []
        ],
    )


def map_prd(record: Dict[str, Any]) -> LegacyPRD:
    """Map one prds.json record."""
    if not isinstance(record, dict):
        raise LegacyDataError("prd", None, "record is not an object")
    record_id = record.get("id")
    prd_identifier = _text(record_id)
    if prd_identifier is None:
        raise LegacyDataError("prd", record_id, "missing id")
    file_name = _text(record.get("fileName"))
    if file_name is None:
        raise LegacyDataError("prd", record_id, "missing fileName")

    tags = record.get("tags") or []
    if not isinstance(tags, list):
        tags = [tags]

    fields_ = {
        "title": _text(record.get("title")) or file_name,
        "file_name": file_name,
        "file_path": _text(record.get("filePath")) or file_name,
        "file_hash": _text(record.get("fileHash")),
        "file_size": record.get("fileSize") if isinstance(record.get("fileSize"), int) else None,
        "status": normalize_prd_status(record.get("status"), record_id),
        "complexity": normalize_complexity(record.get("complexity")) or ComplexityLevel.MEDIUM.value,
        "priority": normalize_priority(record.get("priority")),
        "description": _text(record.get("description")),
        "tags": [str(tag) for tag in tags],
        "estimated_effort": _text(record.get("estimatedEffort")),
        "created_date": parse_legacy_date(record.get("createdDate")),
        "last_modified": parse_legacy_date(record.get("lastModified")),
        "metadata": {"legacy_id": record_id},
    }

    return LegacyPRD(
        prd_identifier=prd_identifier.strip(),
        fields=fields_,
        linked_task_identifiers=[
            dep if isinstance(dep, str) and "." in dep else str(legacy_id_to_int(dep, "prd link"))
            for dep in record.get("linkedTaskIds") or []
        ],
    )


def map_config(document: Any) -> Dict[str, Dict[str, Any]]:
    """Map config.json into ``{config_type: {key: value}}``.

    ``models`` becomes ai_models and ``global`` becomes global_settings;
    other object-valued sections keep their own name.
    """
    if not isinstance(document, dict):
        raise LegacyDataError("config.json", None, "expected an object")
    mapped: Dict[str, Dict[str, Any]] = {}
    for section, values in document.items():
        if not isinstance(values, dict):
            logger.debug(f"Skipping non-object config.json section {section!r}")
            continue
        mapped[CONFIG_SECTIONS.get(section, section)] = dict(values)
    return mapped
