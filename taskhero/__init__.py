"""
TaskHero: project, PRD and task tracking on a local SQLite store

The data layer behind the TaskHero CLI, API server and MCP server: schema,
repositories, one-time migration from the legacy JSON files, and file-level
backups.
"""

__version__ = "0.1.0"

from taskhero.persistence.database import Database

__all__ = ["Database"]
