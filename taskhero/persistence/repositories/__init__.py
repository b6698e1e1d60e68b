"""Entity repository exports.

Each repository handles operations for a single entity and receives the
Database it works against explicitly.
"""

from taskhero.persistence.repositories.base import BaseRepository
from taskhero.persistence.repositories.project_repository import ProjectRepository
from taskhero.persistence.repositories.task_repository import TaskRepository
from taskhero.persistence.repositories.prd_repository import PRDRepository
from taskhero.persistence.repositories.configuration_repository import ConfigurationRepository

__all__ = [
    "BaseRepository",
    "ProjectRepository",
    "TaskRepository",
    "PRDRepository",
    "ConfigurationRepository",
]
