"""Tests for ConfigurationRepository."""

import pytest

from taskhero.core.config import DEFAULT_CONFIGURATIONS
from taskhero.core.errors import NotFoundError, ValidationError


@pytest.mark.unit
class TestScopes:
    @pytest.mark.asyncio
    async def test_global_and_project_scopes_are_independent(self, config_repo, project):
        await config_repo.upsert("ui", "theme", "light")
        await config_repo.upsert("ui", "theme", "dark", project_id=project.id)

        assert await config_repo.get_value("ui", "theme") == "light"
        assert await config_repo.get_value("ui", "theme", project_id=project.id) == "dark"

    @pytest.mark.asyncio
    async def test_missing_key_returns_default(self, config_repo):
        assert await config_repo.get("ui", "absent") is None
        assert await config_repo.get_value("ui", "absent", "fallback") == "fallback"


@pytest.mark.unit
class TestUpsert:
    @pytest.mark.asyncio
    async def test_last_write_wins(self, config_repo):
        await config_repo.upsert("global_settings", "debug", False, description="Debug mode")
        config = await config_repo.upsert("global_settings", "debug", True)

        assert config.value is True
        assert config.description == "Debug mode"
        assert len(await config_repo.list_configurations()) == 1

    @pytest.mark.asyncio
    async def test_structured_values_survive(self, config_repo):
        model = {"provider": "anthropic", "maxTokens": 64000, "temperature": 0.2}

        await config_repo.upsert("ai_models", "main", model)

        assert await config_repo.get_value("ai_models", "main") == model

    @pytest.mark.asyncio
    async def test_blank_key_rejected(self, config_repo):
        with pytest.raises(ValidationError) as exc_info:
            await config_repo.upsert("ui", "  ", 1)

        assert exc_info.value.errors == ["key: cannot be empty"]

    @pytest.mark.asyncio
    async def test_bulk_set_and_grouped_reads(self, config_repo):
        await config_repo.bulk_set("ui", {"theme": "dark", "font_size": 14})
        await config_repo.upsert("editor", "tabs", 4)

        assert await config_repo.get_by_type("ui") == {"font_size": 14, "theme": "dark"}
        assert await config_repo.get_all() == {
            "editor": {"tabs": 4},
            "ui": {"font_size": 14, "theme": "dark"},
        }

    @pytest.mark.asyncio
    async def test_scalar_numbers_read_back_as_written(self, config_repo, db):
        await config_repo.upsert("ui", "font_size", 14)
        await config_repo.upsert("ui", "line_height", 1.5)
        await config_repo.upsert("ui", "zoom", "125")

        assert await config_repo.get_value("ui", "font_size") == 14
        assert await config_repo.get_value("ui", "line_height") == 1.5
        assert await config_repo.get_value("ui", "zoom") == "125"
        row = await db.get(
            "SELECT typeof(value) AS stored FROM configurations WHERE key = ?", ("font_size",)
        )
        assert row["stored"] == "text"

    @pytest.mark.asyncio
    async def test_delete(self, config_repo):
        await config_repo.upsert("ui", "theme", "dark")

        await config_repo.delete("ui", "theme")

        assert await config_repo.get("ui", "theme") is None
        with pytest.raises(NotFoundError):
            await config_repo.delete("ui", "theme")


@pytest.mark.unit
class TestSeedDefaults:
    @pytest.mark.asyncio
    async def test_seeds_every_default(self, config_repo):
        expected = sum(len(entries) for entries in DEFAULT_CONFIGURATIONS.values())

        inserted = await config_repo.seed_defaults()

        assert inserted == expected
        main = await config_repo.get("ai_models", "main")
        assert main.is_default is True
        assert main.description == "Default ai_models setting"
        assert main.value == DEFAULT_CONFIGURATIONS["ai_models"]["main"]

    @pytest.mark.asyncio
    async def test_numeric_defaults_survive_seeding(self, config_repo):
        await config_repo.seed_defaults()

        assert await config_repo.get_value("global_settings", "defaultSubtasks") == 5
        assert await config_repo.get_value("global_settings", "defaultSubtasks", 0) == 5

    @pytest.mark.asyncio
    async def test_reseeding_keeps_user_edits(self, config_repo):
        await config_repo.seed_defaults()
        await config_repo.upsert("global_settings", "logLevel", "debug")

        inserted = await config_repo.seed_defaults()

        edited = await config_repo.get("global_settings", "logLevel")
        assert inserted == 0
        assert edited.value == "debug"
        assert edited.is_default is False

    @pytest.mark.asyncio
    async def test_custom_defaults_for_project(self, config_repo, project):
        inserted = await config_repo.seed_defaults({"ui": {"theme": "dark"}}, project_id=project.id)

        assert inserted == 1
        assert await config_repo.get_all(project_id=project.id) == {"ui": {"theme": "dark"}}
        assert await config_repo.get_all() == {}
