"""Repository for Configuration key/value operations."""

import logging
from typing import Any, Dict, List, Mapping, Optional

from taskhero.core.config import DEFAULT_CONFIGURATIONS
from taskhero.core.errors import NotFoundError, ValidationError
from taskhero.core.models import Configuration
from taskhero.persistence.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Matches the expression in idx_config_scope_key so lookups use the index
SCOPE_CLAUSE = "IFNULL(project_id, 0) = ?"


class ConfigurationRepository(BaseRepository):
    """Key/value settings grouped by ``config_type``.

    Every method takes an optional ``project_id``; None addresses the
    global scope, which is where the application keeps its settings.
    Values are stored as JSON.
    """

    async def get(
        self, config_type: str, key: str, *, project_id: Optional[int] = None
    ) -> Optional[Configuration]:
        row = await self._fetchone(
            f"SELECT * FROM configurations WHERE {SCOPE_CLAUSE} AND config_type = ? AND key = ?",
            (project_id or 0, config_type, key),
        )
        return self._row_to_configuration(row) if row else None

    async def get_value(
        self,
        config_type: str,
        key: str,
        default: Any = None,
        *,
        project_id: Optional[int] = None,
    ) -> Any:
        config = await self.get(config_type, key, project_id=project_id)
        return config.value if config is not None else default

    async def get_by_type(
        self, config_type: str, *, project_id: Optional[int] = None
    ) -> Dict[str, Any]:
        """All ``key -> value`` pairs of one type."""
        rows = await self._fetchall(
            f"SELECT * FROM configurations WHERE {SCOPE_CLAUSE} AND config_type = ? ORDER BY key",
            (project_id or 0, config_type),
        )
        return {row["key"]: self._row_to_configuration(row).value for row in rows}

    async def get_all(self, *, project_id: Optional[int] = None) -> Dict[str, Dict[str, Any]]:
        """All settings of a scope as ``{config_type: {key: value}}``."""
        rows = await self._fetchall(
            f"SELECT * FROM configurations WHERE {SCOPE_CLAUSE} ORDER BY config_type, key",
            (project_id or 0,),
        )
        grouped: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            config = self._row_to_configuration(row)
            grouped.setdefault(config.config_type, {})[config.key] = config.value
        return grouped

    async def list_configurations(
        self, *, project_id: Optional[int] = None
    ) -> List[Configuration]:
        rows = await self._fetchall(
            f"SELECT * FROM configurations WHERE {SCOPE_CLAUSE} ORDER BY config_type, key",
            (project_id or 0,),
        )
        return [self._row_to_configuration(row) for row in rows]

    async def upsert(
        self,
        config_type: str,
        key: str,
        value: Any,
        *,
        description: Optional[str] = None,
        is_default: bool = False,
        project_id: Optional[int] = None,
    ) -> Configuration:
        """Insert or overwrite a setting (last write wins).

        Overwriting clears ``is_default`` unless it is passed again, and
        keeps the existing description when none is given.

        Raises:
            ValidationError: If ``config_type`` or ``key`` is blank
        """
        self._check_key(config_type, key)
        async with self.db.atomic():
            existing = await self.get(config_type, key, project_id=project_id)
            if existing is None:
                await self._execute(
                    """
                    INSERT INTO configurations
                        (project_id, config_type, key, value, description, is_default)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        project_id,
                        config_type,
                        key,
                        self._dumps_json(value),
                        description,
                        int(is_default),
                    ),
                )
            else:
                await self._execute(
                    """
                    UPDATE configurations
                    SET value = ?, description = ?, is_default = ?
                    WHERE id = ?
                    """,
                    (
                        self._dumps_json(value),
                        description if description is not None else existing.description,
                        int(is_default),
                        existing.id,
                    ),
                )
        logger.debug(f"Set configuration {config_type}.{key} (project {project_id})")
        return await self.get(config_type, key, project_id=project_id)

    async def bulk_set(
        self,
        config_type: str,
        values: Mapping[str, Any],
        *,
        project_id: Optional[int] = None,
    ) -> List[Configuration]:
        """Upsert several keys of one type in a single transaction."""
        results = []
        async with self.db.atomic():
            for key, value in values.items():
                results.append(
                    await self.upsert(config_type, key, value, project_id=project_id)
                )
        return results

    async def delete(
        self, config_type: str, key: str, *, project_id: Optional[int] = None
    ) -> None:
        """Delete a setting.

        Raises:
            NotFoundError: If the setting does not exist
        """
        result = await self._execute(
            f"DELETE FROM configurations WHERE {SCOPE_CLAUSE} AND config_type = ? AND key = ?",
            (project_id or 0, config_type, key),
        )
        if result.row_count == 0:
            raise NotFoundError("Configuration", f"{config_type}.{key}")

    async def seed_defaults(
        self,
        defaults: Optional[Mapping[str, Mapping[str, Any]]] = None,
        *,
        project_id: Optional[int] = None,
    ) -> int:
        """Insert default settings that are not present yet.

        Existing rows are never overwritten, so user edits survive re-seeding.

        Returns:
            Number of rows inserted
        """
        defaults = DEFAULT_CONFIGURATIONS if defaults is None else defaults
        inserted = 0
        async with self.db.atomic():
            for config_type, entries in defaults.items():
                for key, value in entries.items():
                    if await self.get(config_type, key, project_id=project_id) is not None:
                        continue
                    await self._execute(
                        """
                        INSERT INTO configurations
                            (project_id, config_type, key, value, description, is_default)
                        VALUES (?, ?, ?, ?, ?, 1)
                        """,
                        (
                            project_id,
                            config_type,
                            key,
                            self._dumps_json(value),
                            f"Default {config_type} setting",
                        ),
                    )
                    inserted += 1
        if inserted:
            logger.info(f"Seeded {inserted} default configuration value(s)")
        return inserted

    @staticmethod
    def _check_key(config_type: str, key: str) -> None:
        errors = []
        if not config_type or not config_type.strip():
            errors.append("config_type: cannot be empty")
        if not key or not key.strip():
            errors.append("key: cannot be empty")
        if errors:
            raise ValidationError("configuration", errors)

    def _row_to_configuration(self, row: Dict[str, Any]) -> Configuration:
        row = self._parse_row_datetimes(dict(row), ("created_at", "updated_at"))
        row["value"] = self._loads_json(row.get("value"), None, "value")
        row["is_default"] = bool(row.get("is_default"))
        return Configuration.model_validate(row)
