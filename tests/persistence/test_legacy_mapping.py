"""Unit tests for the legacy JSON field mapping."""

from datetime import datetime, timezone

import pytest

from taskhero.core.errors import LegacyDataError
from taskhero.persistence.migrations.legacy_mapping import (
    complexity_score,
    legacy_id_to_int,
    map_config,
    map_prd,
    map_subtask,
    map_task,
    normalize_complexity,
    normalize_priority,
    normalize_prd_status,
    normalize_task_status,
    parse_legacy_date,
    subtask_status,
    unwrap_prds_document,
    unwrap_tasks_document,
)


@pytest.mark.unit
class TestStatusNormalization:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("done", "done"),
            ("Completed", "done"),
            ("in_progress", "in-progress"),
            ("In Progress", "in-progress"),
            ("todo", "pending"),
            ("canceled", "cancelled"),
            (None, "pending"),
            ("", "pending"),
        ],
    )
    def test_task_status_aliases(self, raw, expected):
        assert normalize_task_status(raw) == expected

    def test_unknown_task_status_rejected(self):
        with pytest.raises(LegacyDataError) as exc_info:
            normalize_task_status("someday", record_id=4)

        assert exc_info.value.record_id == 4

    def test_prd_status_has_no_task_only_values(self):
        assert normalize_prd_status("complete") == "done"
        with pytest.raises(LegacyDataError):
            normalize_prd_status("blocked")

    @pytest.mark.parametrize(
        "record,expected",
        [
            ({"completed": True}, "done"),
            ({"completed": False}, "pending"),
            ({"completed": "false"}, "pending"),
            ({"completed": " TRUE "}, "done"),
            ({"completed": None}, "pending"),
            ({"status": "review", "completed": True}, "review"),
            ({}, "pending"),
        ],
    )
    def test_subtask_status(self, record, expected):
        assert subtask_status(record) == expected

    @pytest.mark.parametrize("flag", ["no", "0", "", 1, 0, [], {"done": True}])
    def test_subtask_completed_flag_must_be_boolean(self, flag):
        with pytest.raises(LegacyDataError) as exc_info:
            subtask_status({"completed": flag}, record_id="1.2")

        assert exc_info.value.record_id == "1.2"
        assert "completed" in exc_info.value.reason


@pytest.mark.unit
class TestFieldNormalization:
    def test_priority(self):
        assert normalize_priority("HIGH") == "high"
        assert normalize_priority("critical") == "high"
        assert normalize_priority(None) == "medium"
        assert normalize_priority("whenever") == "medium"

    @pytest.mark.parametrize(
        "raw,expected",
        [(1, "low"), (3, "low"), (4, "medium"), (7.5, "high"), (8, "high"), ("High", "high"), ("", None)],
    )
    def test_complexity_buckets(self, raw, expected):
        assert normalize_complexity(raw) == expected

    def test_complexity_score_is_clamped(self):
        assert complexity_score(0) == 1.0
        assert complexity_score(12) == 10.0
        assert complexity_score("6") == 6.0
        assert complexity_score("hard") is None
        assert complexity_score(True) is None

    def test_legacy_ids(self):
        assert legacy_id_to_int(3) == 3
        assert legacy_id_to_int(" 12 ") == 12
        for bad in ("1.2", None, True, "x"):
            with pytest.raises(LegacyDataError):
                legacy_id_to_int(bad)

    def test_dates(self):
        assert parse_legacy_date("2024-03-01T10:00:00.000Z") == datetime(
            2024, 3, 1, 10, 0, tzinfo=timezone.utc
        )
        assert parse_legacy_date("yesterday") is None
        assert parse_legacy_date(None) is None


@pytest.mark.unit
class TestDocuments:
    def test_plain_tasks_document(self):
        assert unwrap_tasks_document({"tasks": [{"id": 1}]}) == [{"id": 1}]
        assert unwrap_tasks_document([{"id": 1}]) == [{"id": 1}]

    def test_tagged_document_prefers_master(self):
        document = {
            "feature": {"tasks": [{"id": 9}]},
            "master": {"tasks": [{"id": 1}], "metadata": {}},
        }

        assert unwrap_tasks_document(document) == [{"id": 1}]

    def test_tagged_document_without_master_uses_first_tag(self):
        document = {"alpha": {"tasks": [{"id": 5}]}, "beta": {"tasks": []}}

        assert unwrap_tasks_document(document) == [{"id": 5}]

    def test_document_without_tasks_rejected(self):
        with pytest.raises(LegacyDataError):
            unwrap_tasks_document({"meta": {}})

    def test_prds_document(self):
        assert unwrap_prds_document({"prds": []}) == []
        with pytest.raises(LegacyDataError):
            unwrap_prds_document({"documents": []})


@pytest.mark.unit
class TestRecords:
    def test_map_task(self):
        task = map_task(
            {
                "id": 3,
                "title": " Build API ",
                "status": "in_progress",
                "priority": "high",
                "dependencies": [1, "2"],
                "complexityScore": 9,
                "testStrategy": "Integration tests",
                "prdSource": {"prdId": "prd_001", "fileName": "api.md"},
                "subtasks": [{"id": 1, "title": "Routes", "completed": True}],
            }
        )

        assert task.task_identifier == "3"
        assert task.fields["title"] == "Build API"
        assert task.fields["status"] == "in-progress"
        assert task.fields["complexity_score"] == 9.0
        assert task.fields["complexity_level"] == "high"
        assert task.fields["test_strategy"] == "Integration tests"
        assert task.fields["metadata"]["legacy_id"] == 3
        assert task.dependencies == ["1", "2"]
        assert (task.prd_ref, task.prd_file_name) == ("prd_001", "api.md")
        assert task.subtasks[0].task_identifier == "3.1"
        assert task.subtasks[0].fields["status"] == "done"

    def test_map_task_requires_title(self):
        with pytest.raises(LegacyDataError):
            map_task({"id": 1, "title": "  "})

    def test_subtask_dependencies_resolve_to_siblings(self):
        subtask = map_subtask("4", {"id": 2, "title": "Wire", "dependencies": [1, "3.1"]})

        assert subtask.task_identifier == "4.2"
        assert subtask.dependencies == ["4.1", "3.1"]

    def test_subtask_string_false_stays_pending(self):
        subtask = map_subtask("4", {"id": 1, "title": "Wire", "completed": "false"})

        assert subtask.fields["status"] == "pending"

    def test_map_prd(self):
        prd = map_prd(
            {
                "id": "prd_002",
                "fileName": "billing.md",
                "status": "in_progress",
                "complexity": "high",
                "tags": "payments",
                "linkedTaskIds": [1, "2.1"],
                "createdDate": "2024-01-02T03:04:05Z",
            }
        )

        assert prd.prd_identifier == "prd_002"
        assert prd.fields["title"] == "billing.md"
        assert prd.fields["file_path"] == "billing.md"
        assert prd.fields["status"] == "in-progress"
        assert prd.fields["tags"] == ["payments"]
        assert prd.fields["created_date"].year == 2024
        assert prd.linked_task_identifiers == ["1", "2.1"]

    def test_map_prd_requires_file_name(self):
        with pytest.raises(LegacyDataError):
            map_prd({"id": "prd_001", "title": "No file"})

    def test_map_config_renames_sections(self):
        mapped = map_config(
            {"models": {"main": {"provider": "anthropic"}}, "global": {"debug": True}, "version": 2}
        )

        assert mapped == {
            "ai_models": {"main": {"provider": "anthropic"}},
            "global_settings": {"debug": True},
        }
