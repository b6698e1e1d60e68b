"""Tests for TaskRepository: identifiers, queries, status workflow and next-task selection."""

import pytest

from taskhero.core.errors import ConstraintViolationError, NotFoundError, ValidationError
from taskhero.core.models import Priority, TaskStatus


async def make_task(task_repo, project, title="Task", **fields):
    return await task_repo.create({"project_id": project.id, "title": title, **fields})


@pytest.mark.unit
class TestIdentifiers:
    @pytest.mark.asyncio
    async def test_top_level_identifiers_increment(self, task_repo, project):
        first = await make_task(task_repo, project)
        second = await make_task(task_repo, project)

        assert first.task_identifier == "1"
        assert second.task_identifier == "2"

    @pytest.mark.asyncio
    async def test_next_identifier_follows_highest(self, task_repo, project):
        await make_task(task_repo, project, task_identifier="7")

        assert (await make_task(task_repo, project)).task_identifier == "8"

    @pytest.mark.asyncio
    async def test_subtask_identifiers_are_dotted(self, task_repo, project):
        parent = await make_task(task_repo, project)
        a = await make_task(task_repo, project, parent_task_id=parent.id)
        b = await make_task(task_repo, project, parent_task_id=parent.id)
        nested = await make_task(task_repo, project, parent_task_id=b.id)

        assert (a.task_identifier, b.task_identifier) == ("1.1", "1.2")
        assert nested.task_identifier == "1.2.1"
        assert a.is_subtask

    @pytest.mark.asyncio
    async def test_subtask_numbering_ignores_other_parents(self, task_repo, project):
        one = await make_task(task_repo, project)
        await make_task(task_repo, project, task_identifier="10")
        await make_task(task_repo, project, task_identifier="10.4", parent_task_id=None)

        assert (await make_task(task_repo, project, parent_task_id=one.id)).task_identifier == "1.1"

    @pytest.mark.asyncio
    async def test_duplicate_identifier_rejected(self, task_repo, project):
        await make_task(task_repo, project, task_identifier="3")

        with pytest.raises(ConstraintViolationError) as exc_info:
            await make_task(task_repo, project, task_identifier="3")

        assert "task_identifier" in exc_info.value.constraint

    @pytest.mark.asyncio
    async def test_same_identifier_allowed_across_projects(self, task_repo, project_repo, project):
        other = await project_repo.create({"name": "Other", "root_path": "/other"})

        await make_task(task_repo, project, task_identifier="1")
        await make_task(task_repo, other, task_identifier="1")

    @pytest.mark.asyncio
    async def test_missing_parent_raises_not_found(self, task_repo, project):
        with pytest.raises(NotFoundError):
            await make_task(task_repo, project, parent_task_id=999)

    @pytest.mark.asyncio
    async def test_missing_project_violates_foreign_key(self, task_repo):
        with pytest.raises(ConstraintViolationError):
            await task_repo.create({"project_id": 999, "title": "Orphan"})


@pytest.mark.unit
class TestQueries:
    @pytest.mark.asyncio
    async def test_get_task_by_identifier(self, task_repo, project):
        task = await make_task(task_repo, project, title="Find me")

        found = await task_repo.get_task_by_identifier(project.id, task.task_identifier)
        assert found.id == task.id
        assert await task_repo.get_task_by_identifier(project.id, "404") is None
        assert await task_repo.get_task(404) is None

    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, task_repo, project):
        for i in range(5):
            await make_task(task_repo, project, title=f"Task {i}", priority="high" if i % 2 else "low")

        page = await task_repo.get_tasks(project.id, {"priority": "high", "limit": 1, "page": 2})

        assert page.total == 2
        assert page.total_pages == 2
        assert len(page.tasks) == 1
        assert page.tasks[0].priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_search_and_root_only(self, task_repo, project):
        parent = await make_task(task_repo, project, title="Build login form")
        await make_task(task_repo, project, title="Login validation", parent_task_id=parent.id)
        await make_task(task_repo, project, title="Unrelated")

        matches = await task_repo.get_tasks(project.id, {"search": "login"})
        roots = await task_repo.get_tasks(project.id, {"search": "login", "root_only": True})

        assert matches.total == 2
        assert [t.id for t in roots.tasks] == [parent.id]

    @pytest.mark.asyncio
    async def test_sort_by_identifier_is_numeric(self, task_repo, project):
        for identifier in ["10", "2", "1"]:
            await make_task(task_repo, project, task_identifier=identifier)

        page = await task_repo.get_tasks(
            project.id, {"sort_by": "task_identifier", "sort_order": "asc"}
        )

        assert [t.task_identifier for t in page.tasks] == ["1", "2", "10"]

    @pytest.mark.asyncio
    async def test_get_subtasks_ordered(self, task_repo, project):
        parent = await make_task(task_repo, project)
        for _ in range(11):
            await make_task(task_repo, project, parent_task_id=parent.id)

        subtasks = await task_repo.get_subtasks(parent.id)

        assert [t.task_identifier for t in subtasks][-3:] == ["1.9", "1.10", "1.11"]


@pytest.mark.unit
class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_fields(self, task_repo, project):
        task = await make_task(task_repo, project)

        updated = await task_repo.update(
            task.id, {"title": "Renamed", "metadata": {"labels": ["ui"]}, "estimated_hours": 2.5}
        )

        assert updated.title == "Renamed"
        assert updated.metadata == {"labels": ["ui"]}
        assert updated.estimated_hours == 2.5

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, task_repo):
        with pytest.raises(NotFoundError):
            await task_repo.update(404, {"title": "x"})

    @pytest.mark.asyncio
    async def test_complexity_out_of_range_rejected(self, task_repo, project):
        task = await make_task(task_repo, project)

        with pytest.raises(ValidationError):
            await task_repo.update(task.id, {"complexity_score": 11})

    @pytest.mark.asyncio
    async def test_null_title_rejected_and_row_unchanged(self, task_repo, project):
        task = await make_task(task_repo, project)

        with pytest.raises(ValidationError):
            await task_repo.update(task.id, {"title": None})

        assert (await task_repo.get_task(task.id)).title == task.title

    @pytest.mark.asyncio
    async def test_reparent_under_own_subtask_rejected(self, task_repo, project):
        parent = await make_task(task_repo, project)
        child = await make_task(task_repo, project, parent_task_id=parent.id)

        with pytest.raises(ValidationError):
            await task_repo.update(parent.id, {"parent_task_id": child.id})

    @pytest.mark.asyncio
    async def test_delete_cascades_to_subtasks(self, task_repo, project):
        parent = await make_task(task_repo, project)
        child = await make_task(task_repo, project, parent_task_id=parent.id)

        await task_repo.delete(parent.id)

        assert await task_repo.get_task(child.id) is None
        with pytest.raises(NotFoundError):
            await task_repo.delete(parent.id)


@pytest.mark.unit
class TestStatusWorkflow:
    @pytest.mark.asyncio
    async def test_in_progress_stamps_start_date_once(self, task_repo, project):
        task = await make_task(task_repo, project)

        started = await task_repo.update_status(task.id, TaskStatus.IN_PROGRESS)
        await task_repo.update_status(task.id, TaskStatus.REVIEW)
        restarted = await task_repo.update_status(task.id, TaskStatus.IN_PROGRESS)

        assert started.start_date is not None
        assert restarted.start_date == started.start_date

    @pytest.mark.asyncio
    async def test_done_stamps_and_reopen_clears_completed_at(self, task_repo, project):
        task = await make_task(task_repo, project)

        done = await task_repo.update_status(task.id, "done")
        reopened = await task_repo.update_status(task.id, "pending")

        assert done.completed_at is not None
        assert reopened.completed_at is None

    @pytest.mark.asyncio
    async def test_invalid_status_rejected(self, task_repo, project):
        task = await make_task(task_repo, project)

        with pytest.raises(ValidationError):
            await task_repo.update_status(task.id, "finished")

    @pytest.mark.asyncio
    async def test_get_stats(self, task_repo, project):
        a = await make_task(task_repo, project)
        await make_task(task_repo, project)
        await make_task(task_repo, project, status="blocked")
        await task_repo.update_status(a.id, "done")

        stats = await task_repo.get_stats(project.id)

        assert (stats.total, stats.done, stats.pending, stats.blocked) == (3, 1, 1, 1)


@pytest.mark.unit
class TestFindNextTask:
    @pytest.mark.asyncio
    async def test_highest_priority_wins(self, task_repo, project):
        await make_task(task_repo, project, title="low", priority="low")
        high = await make_task(task_repo, project, title="high", priority="high")
        await make_task(task_repo, project, title="medium")

        assert (await task_repo.find_next_task(project.id)).id == high.id

    @pytest.mark.asyncio
    async def test_ties_broken_by_lowest_identifier(self, task_repo, project):
        await make_task(task_repo, project, task_identifier="10")
        two = await make_task(task_repo, project, task_identifier="2")
        await make_task(task_repo, project, task_identifier="2.10", parent_task_id=two.id)

        assert (await task_repo.find_next_task(project.id)).task_identifier == "2"

    @pytest.mark.asyncio
    async def test_dotted_identifiers_compare_component_wise(self, task_repo, project):
        parent = await make_task(task_repo, project, status="in-progress")
        await make_task(task_repo, project, task_identifier="1.10", parent_task_id=parent.id)
        await make_task(task_repo, project, task_identifier="1.9", parent_task_id=parent.id)

        assert (await task_repo.find_next_task(project.id)).task_identifier == "1.9"

    @pytest.mark.asyncio
    async def test_unfinished_dependencies_block(self, task_repo, project):
        blocker = await make_task(task_repo, project, priority="low")
        blocked = await make_task(task_repo, project, priority="high")
        await task_repo.add_dependency(blocked.id, blocker.id)

        assert (await task_repo.find_next_task(project.id)).id == blocker.id

        await task_repo.update_status(blocker.id, "done")
        assert (await task_repo.find_next_task(project.id)).id == blocked.id

    @pytest.mark.asyncio
    async def test_related_edges_do_not_block(self, task_repo, project):
        other = await make_task(task_repo, project, priority="low")
        task = await make_task(task_repo, project, priority="high")
        await task_repo.add_dependency(task.id, other.id, "related")

        assert (await task_repo.find_next_task(project.id)).id == task.id

    @pytest.mark.asyncio
    async def test_only_pending_tasks_are_candidates(self, task_repo, project):
        await make_task(task_repo, project, status="in-progress")
        await make_task(task_repo, project, status="done")

        assert await task_repo.find_next_task(project.id) is None

    @pytest.mark.asyncio
    async def test_criteria_narrow_candidates(self, task_repo, project):
        parent = await make_task(task_repo, project, status="in-progress", assignee="sam")
        await make_task(task_repo, project, parent_task_id=parent.id, priority="high")
        mine = await make_task(task_repo, project, assignee="sam")

        by_assignee = await task_repo.find_next_task(project.id, {"assignee": "sam"})
        roots_only = await task_repo.find_next_task(project.id, {"include_subtasks": False})

        assert by_assignee.id == mine.id
        assert roots_only.id == mine.id
