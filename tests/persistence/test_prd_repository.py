"""Tests for PRDRepository."""

from datetime import datetime

import pytest

from taskhero.core.errors import ArchiveBlockedError, ConstraintViolationError, NotFoundError
from taskhero.core.models import PRDStatus


async def make_prd(prd_repo, project, file_name="auth.md", **fields):
    payload = {
        "project_id": project.id,
        "title": fields.pop("title", file_name),
        "file_name": file_name,
        "file_path": f".taskmaster/prd/{file_name}",
        **fields,
    }
    return await prd_repo.create(payload)


@pytest.mark.unit
class TestCreate:
    @pytest.mark.asyncio
    async def test_identifiers_are_sequential(self, prd_repo, project):
        first = await make_prd(prd_repo, project, "a.md")
        second = await make_prd(prd_repo, project, "b.md")

        assert first.prd_identifier == "prd_001"
        assert second.prd_identifier == "prd_002"

    @pytest.mark.asyncio
    async def test_identifier_follows_highest(self, prd_repo, project):
        await make_prd(prd_repo, project, "a.md", prd_identifier="prd_041")

        assert (await make_prd(prd_repo, project, "b.md")).prd_identifier == "prd_042"

    @pytest.mark.asyncio
    async def test_duplicate_identifier_rejected(self, prd_repo, project):
        await make_prd(prd_repo, project, "a.md", prd_identifier="prd_001")

        with pytest.raises(ConstraintViolationError):
            await make_prd(prd_repo, project, "b.md", prd_identifier="prd_001")

    @pytest.mark.asyncio
    async def test_fields_round_trip(self, prd_repo, project):
        created_date = datetime(2024, 5, 1, 9, 30)

        prd = await make_prd(
            prd_repo,
            project,
            tags=["auth", "backend"],
            priority="high",
            metadata={"source": "import"},
            created_date=created_date,
        )

        assert prd.tags == ["auth", "backend"]
        assert prd.metadata == {"source": "import"}
        assert prd.created_date == created_date
        assert prd.last_modified is not None
        assert prd.status == PRDStatus.PENDING
        assert prd.task_stats.total == 0

    @pytest.mark.asyncio
    async def test_lookups(self, prd_repo, project):
        prd = await make_prd(prd_repo, project, "auth.md")

        assert (await prd_repo.get_prd_by_identifier(project.id, "prd_001")).id == prd.id
        assert (await prd_repo.find_by_file_name(project.id, "auth.md")).id == prd.id
        assert await prd_repo.find_by_file_name(project.id, "missing.md") is None
        assert await prd_repo.get_prd(999) is None


@pytest.mark.unit
class TestListing:
    @pytest.mark.asyncio
    async def test_filter_by_tag_and_status(self, prd_repo, project):
        await make_prd(prd_repo, project, "a.md", tags=["auth"])
        b = await make_prd(prd_repo, project, "b.md", tags=["auth", "ui"], status="in-progress")
        await make_prd(prd_repo, project, "c.md", tags=["ui"])

        by_tag = await prd_repo.get_prds(project.id, {"tag": "auth"})
        by_both = await prd_repo.get_prds(project.id, {"tag": "ui", "status": "in-progress"})

        assert by_tag.total == 2
        assert [p.id for p in by_both.prds] == [b.id]

    @pytest.mark.asyncio
    async def test_listing_includes_live_stats(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        await make_prd(prd_repo, project, "empty.md")
        task = await task_repo.create({"project_id": project.id, "title": "T", "prd_id": prd.id})
        await task_repo.update_status(task.id, "done")

        page = await prd_repo.get_prds(project.id, {"sort_by": "title", "sort_order": "asc"})

        stats = {p.file_name: p.task_stats for p in page.prds}
        assert stats["auth.md"].done == 1
        assert stats["auth.md"].completion_percentage == 100
        assert stats["empty.md"].total == 0


@pytest.mark.unit
class TestLinking:
    @pytest.mark.asyncio
    async def test_link_tasks_only_within_project(self, prd_repo, task_repo, project_repo, project):
        prd = await make_prd(prd_repo, project)
        mine = await task_repo.create({"project_id": project.id, "title": "Mine"})
        other = await project_repo.create({"name": "Other", "root_path": "/other"})
        foreign = await task_repo.create({"project_id": other.id, "title": "Foreign"})

        linked = await prd_repo.link_tasks(prd.id, [mine.id, foreign.id])

        assert linked == 1
        assert [t.id for t in await prd_repo.get_linked_tasks(prd.id)] == [mine.id]

    @pytest.mark.asyncio
    async def test_link_to_missing_prd_raises(self, prd_repo):
        with pytest.raises(NotFoundError):
            await prd_repo.link_tasks(999, [1])


@pytest.mark.unit
class TestArchive:
    @pytest.mark.asyncio
    async def test_archive_blocked_by_unfinished_tasks(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        done = await task_repo.create(
            {"project_id": project.id, "title": "Done", "prd_id": prd.id, "status": "done"}
        )
        cancelled = await task_repo.create(
            {"project_id": project.id, "title": "Dropped", "prd_id": prd.id, "status": "cancelled"}
        )

        with pytest.raises(ArchiveBlockedError) as exc_info:
            await prd_repo.archive(prd.id)

        assert exc_info.value.incomplete_task_ids == [cancelled.id]
        assert done.id not in exc_info.value.incomplete_task_ids
        assert (await prd_repo.get_prd(prd.id)).status == PRDStatus.PENDING

    @pytest.mark.asyncio
    async def test_status_update_to_archived_is_guarded(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        await task_repo.create({"project_id": project.id, "title": "Open", "prd_id": prd.id})

        with pytest.raises(ArchiveBlockedError):
            await prd_repo.update_status(prd.id, "archived")

    @pytest.mark.asyncio
    async def test_forced_archive_keeps_task_links(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        task = await task_repo.create({"project_id": project.id, "title": "Open", "prd_id": prd.id})

        archived = await prd_repo.archive(prd.id, force=True)

        assert archived.status == PRDStatus.ARCHIVED
        assert (await task_repo.get_task(task.id)).prd_id == prd.id

    @pytest.mark.asyncio
    async def test_archive_with_all_tasks_done(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        await task_repo.create(
            {"project_id": project.id, "title": "Done", "prd_id": prd.id, "status": "done"}
        )

        assert (await prd_repo.archive(prd.id)).status == PRDStatus.ARCHIVED

    @pytest.mark.asyncio
    async def test_archive_missing_raises_not_found(self, prd_repo):
        with pytest.raises(NotFoundError):
            await prd_repo.archive(999)
        with pytest.raises(NotFoundError):
            await prd_repo.archive(999, force=True)


@pytest.mark.unit
class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_unlinks_tasks(self, prd_repo, task_repo, project):
        prd = await make_prd(prd_repo, project)
        task = await task_repo.create({"project_id": project.id, "title": "T", "prd_id": prd.id})

        orphaned = await prd_repo.delete(prd.id)

        assert orphaned == 1
        assert (await task_repo.get_task(task.id)).prd_id is None

    @pytest.mark.asyncio
    async def test_delete_missing_raises_not_found(self, prd_repo):
        with pytest.raises(NotFoundError):
            await prd_repo.delete(999)

    @pytest.mark.asyncio
    async def test_last_modified_refreshed_on_update(self, db, prd_repo, project):
        prd = await make_prd(prd_repo, project)
        await db.run(
            "UPDATE prds SET last_modified = '2000-01-01 00:00:00' WHERE id = ?", (prd.id,)
        )

        updated = await prd_repo.update(prd.id, {"description": "Changed"})

        assert updated.last_modified.year > 2000
