"""Core models, errors and settings for TaskHero."""

from taskhero.core.config import Settings, get_settings
from taskhero.core.models import Task, TaskStatus, PRD, PRDStatus, Project

__all__ = ["Settings", "get_settings", "Task", "TaskStatus", "PRD", "PRDStatus", "Project"]
