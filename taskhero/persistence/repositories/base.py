"""Base repository class for database operations."""

import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from taskhero.core.errors import NotFoundError, ValidationError
from taskhero.persistence.database import Database, QueryResult

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class BaseRepository:
    """Base class for all repositories.

    Provides common database utilities. Each repository handles a specific
    entity (projects, tasks, PRDs, configurations) and receives the
    Database it works against explicitly.
    """

    def __init__(self, db: Database):
        """Initialize repository with a database manager.

        Args:
            db: Initialized Database instance
        """
        self.db = db

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> QueryResult:
        return await self.db.run(query, params)

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        return await self.db.get(query, params)

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        return await self.db.get_all(query, params)

    def _validate(self, model_cls: Type[ModelT], payload: Any, entity: str) -> ModelT:
        """Coerce a dict or model into ``model_cls``.

        Raises:
            ValidationError: With one message per failing field
        """
        if isinstance(payload, model_cls):
            return payload
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(exclude_unset=True)
        try:
            return model_cls.model_validate(payload)
        except PydanticValidationError as e:
            errors = [
                f"{'.'.join(str(part) for part in err['loc']) or entity}: {err['msg']}"
                for err in e.errors()
            ]
            raise ValidationError(entity, errors) from e

    def _build_update(
        self,
        table: str,
        allowed_fields: Iterable[str],
        updates: Dict[str, Any],
        row_id: int,
    ) -> Tuple[str, Tuple[Any, ...]]:
        """Build an ``UPDATE <table> SET ... WHERE id = ?`` statement.

        Raises:
            ValueError: If any update key is not in the allowed fields whitelist
        """
        allowed = set(allowed_fields)
        # Validate all keys against whitelist to prevent SQL injection
        invalid_fields = set(updates.keys()) - allowed
        if invalid_fields:
            raise ValueError(
                f"Invalid {table} fields: {invalid_fields}. Allowed fields: {sorted(allowed)}"
            )

        fields = []
        values = []
        for key, value in updates.items():
            fields.append(f"{key} = ?")
            values.append(self._to_db_value(value))
        values.append(row_id)
        return f"UPDATE {table} SET {', '.join(fields)} WHERE id = ?", tuple(values)

    async def _update_row(
        self,
        table: str,
        entity: str,
        allowed_fields: Iterable[str],
        updates: Dict[str, Any],
        row_id: int,
    ) -> None:
        """Apply a whitelisted partial update, raising NotFoundError on a missing row."""
        if not updates:
            if await self._fetchone(f"SELECT id FROM {table} WHERE id = ?", (row_id,)) is None:
                raise NotFoundError(entity, row_id)
            return
        query, params = self._build_update(table, allowed_fields, updates, row_id)
        result = await self._execute(query, params)
        if result.row_count == 0:
            raise NotFoundError(entity, row_id)

    def _to_db_value(self, value: Any) -> Any:
        """Convert a Python value to its column representation."""
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, datetime):
            return self._format_datetime(value)
        if isinstance(value, (dict, list)):
            return self._dumps_json(value)
        if isinstance(value, bool):
            return int(value)
        return value

    def _dumps_json(self, value: Any) -> str:
        return json.dumps(value)

    def _loads_json(self, raw: Any, default: Any, field_name: str = "") -> Any:
        """Decode a JSON column, falling back to ``default`` for NULL or junk."""
        if raw is None or raw == "":
            return default
        # Rows written before JSON columns had TEXT affinity hold bare numbers
        if not isinstance(raw, (str, bytes)):
            return raw
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to decode JSON column {field_name}: {e}")
            return default

    def _parse_datetime(
        self,
        dt_str: Optional[str],
        field_name: str = "",
        row_id: Optional[int] = None
    ) -> Optional[datetime]:
        """Parse datetime string to datetime object.

        Args:
            dt_str: ISO format datetime string or None
            field_name: Field name for logging (optional)
            row_id: Row ID for logging (optional)

        Returns:
            datetime object or None if input is None

        Raises:
            ValueError: If datetime string is malformed
        """
        if dt_str is None:
            return None

        try:
            # Handle both 'T' and space separators
            dt_str_normalized = dt_str.replace("T", " ")
            if dt_str_normalized.endswith("Z"):
                dt_str_normalized = dt_str_normalized[:-1] + "+00:00"

            try:
                return datetime.fromisoformat(dt_str_normalized)
            except ValueError:
                return datetime.strptime(dt_str_normalized, "%Y-%m-%d %H:%M:%S")
        except (ValueError, AttributeError) as e:
            context = f" for {field_name}" if field_name else ""
            row_context = f" (row {row_id})" if row_id else ""
            logger.warning(
                f"Failed to parse datetime '{dt_str}'{context}{row_context}: {e}"
            )
            raise ValueError(f"Invalid datetime format: {dt_str}") from e

    def _format_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        """Format datetime for storage, matching SQLite's CURRENT_TIMESTAMP layout.

        Args:
            dt: datetime object or None

        Returns:
            ``YYYY-MM-DD HH:MM:SS[.ffffff][+HH:MM]`` string or None
        """
        if dt is None:
            return None
        return dt.isoformat(sep=" ")

    def _parse_row_datetimes(self, row: Dict[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
        for name in fields:
            if isinstance(row.get(name), str):
                row[name] = self._parse_datetime(row[name], name, row.get("id"))
        return row

    @staticmethod
    def _total_pages(total: int, limit: int) -> int:
        return (total + limit - 1) // limit if total else 0
