"""Shared pytest fixtures for TaskHero tests."""

import tempfile
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio

from taskhero.core.config import Settings
from taskhero.core.models import Project
from taskhero.persistence.database import Database
from taskhero.persistence.repositories import (
    ConfigurationRepository,
    PRDRepository,
    ProjectRepository,
    TaskRepository,
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for testing.

    Yields:
        Path to temporary directory that will be cleaned up after test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> Path:
    """Provide a temporary database path.

    Args:
        temp_dir: Temporary directory fixture

    Returns:
        Path to temporary database file
    """
    return temp_dir / "test.db"


@pytest.fixture
def settings() -> Settings:
    """Default settings, ignoring any .env file in the working directory."""
    return Settings(_env_file=None)


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest_asyncio.fixture
async def db(project_root: Path, settings: Settings) -> AsyncGenerator[Database, None]:
    """Initialized database at <project_root>/.taskmaster/taskhero.db."""
    database = Database.for_project(project_root, settings=settings)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
def project_repo(db: Database) -> ProjectRepository:
    return ProjectRepository(db)


@pytest.fixture
def task_repo(db: Database) -> TaskRepository:
    return TaskRepository(db)


@pytest.fixture
def prd_repo(db: Database) -> PRDRepository:
    return PRDRepository(db)


@pytest.fixture
def config_repo(db: Database) -> ConfigurationRepository:
    return ConfigurationRepository(db)


@pytest_asyncio.fixture
async def project(project_repo: ProjectRepository, project_root: Path) -> Project:
    return await project_repo.create({"name": "Demo", "root_path": str(project_root)})
