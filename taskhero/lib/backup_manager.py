"""Backup and restore of the TaskHero database file.

Snapshots are plain file copies of ``taskhero.db`` kept in
``.taskmaster/backups/`` as ``taskhero-<type>-<timestamp>.db``, each with a
``<file>.meta.json`` sidecar recording size, type, creation time, project
root and row counts at the time of the copy.
"""

import asyncio
import json
import logging
import re
import shutil
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from taskhero.core.config import Settings, get_settings
from taskhero.core.errors import BackupError, RestoreError, TaskHeroError
from taskhero.core.models import BackupInfo
from taskhero.persistence.database import Database

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "taskhero-"
BACKUP_SUFFIX = ".db"
META_SUFFIX = ".meta.json"

BACKUP_TYPE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]*$")
SQLITE_HEADER = b"SQLite format 3\x00"


def file_timestamp(moment: Optional[datetime] = None) -> str:
    """Filesystem-safe UTC timestamp, e.g. ``2025-01-31T09-15-02-123456Z``."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H-%M-%S-%fZ")


class BackupManager:
    """Creates, lists, prunes and restores database snapshots.

    Usage:
        >>> manager = BackupManager(db, project_root=Path("."))
        >>> info = await manager.create_backup("manual")
        >>> await manager.restore_backup(info.filename)
    """

    def __init__(
        self,
        db: Database,
        project_root: Path | str,
        max_backups: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize backup manager.

        Args:
            db: Database whose file is snapshotted
            project_root: Project root containing ``.taskmaster/``
            max_backups: Snapshots kept by automatic cleanup (default from settings)
            settings: Settings override
        """
        self.db = db
        self.project_root = Path(project_root)
        self.settings = settings or db.settings or get_settings()
        self.max_backups = max_backups if max_backups is not None else self.settings.max_backups
        self.backups_dir = self.settings.backups_dir(self.project_root)

    async def create_backup(self, backup_type: str = "manual", cleanup: bool = True) -> BackupInfo:
        """Copy the database file into the backups directory.

        Args:
            backup_type: Label in the filename (manual, automatic, pre-restore, ...)
            cleanup: Prune to ``max_backups`` afterwards

        Returns:
            BackupInfo for the new snapshot

        Raises:
            BackupError: If the type is invalid or the copy fails
        """
        if not BACKUP_TYPE_PATTERN.match(backup_type):
            raise BackupError(f"Invalid backup type: {backup_type!r}")

        db_path = Path(self.db.db_path)
        if not db_path.exists():
            raise BackupError(f"Database file not found: {db_path}")

        stats = await self.db.get_stats() if self.db.is_open else {}
        created_at = datetime.now(timezone.utc)
        filename = f"{BACKUP_PREFIX}{backup_type}-{file_timestamp(created_at)}{BACKUP_SUFFIX}"
        backup_path = self.backups_dir / filename

        try:
            await asyncio.to_thread(self._copy_file, db_path, backup_path)
            info = BackupInfo(
                filename=filename,
                path=str(backup_path),
                size=backup_path.stat().st_size,
                created_at=created_at,
                backup_type=backup_type,
                project_root=str(self.project_root),
                database_stats=stats,
            )
            await asyncio.to_thread(self._write_metadata, info)
        except OSError as e:
            logger.error(f"Failed to create {backup_type} backup: {e}")
            raise BackupError(f"Backup failed: {e}") from e

        logger.info(f"Created {backup_type} backup: {filename} ({info.size} bytes)")

        if cleanup:
            await self.cleanup_old_backups()
        return info

    async def restore_backup(self, filename: str) -> Dict[str, Any]:
        """Replace the live database with a snapshot.

        A ``pre-restore`` snapshot of the current state is taken first, then
        the connection is closed, the file swapped and the database
        reinitialized.

        Returns:
            Dictionary with ``restored_from`` and ``pre_restore_backup``

        Raises:
            RestoreError: If the snapshot is missing, not a database, or the
                swap fails
        """
        source = self._resolve_backup(filename, RestoreError)
        if not source.exists():
            raise RestoreError(f"Backup not found: {filename}")
        if not await asyncio.to_thread(self._is_sqlite_file, source):
            raise RestoreError(f"Backup is not a SQLite database: {filename}")

        logger.info(f"Restoring database from backup: {filename}")
        try:
            pre_restore = await self.create_backup("pre-restore", cleanup=False)
        except BackupError as e:
            raise RestoreError(f"Could not snapshot current state before restore: {e}") from e

        await self.db.close()
        copy_error: Optional[OSError] = None
        try:
            await asyncio.to_thread(shutil.copy2, source, self.db.db_path)
        except OSError as e:
            logger.error(f"Failed to copy backup {filename} over {self.db.db_path}: {e}")
            copy_error = e

        try:
            await self.db.initialize()
        except TaskHeroError as e:
            logger.error(f"Database did not reopen after restoring {filename}: {e}")
            raise RestoreError(
                f"Restore failed; previous state saved as {pre_restore.filename}: {e}"
            ) from e

        if copy_error is not None:
            raise RestoreError(f"Restore failed: {copy_error}") from copy_error

        logger.info(f"Database restored from {filename}")
        return {
            "success": True,
            "restored_from": filename,
            "pre_restore_backup": pre_restore.filename,
        }

    async def list_backups(self) -> List[BackupInfo]:
        """All snapshots, newest first."""
        return sorted(
            await asyncio.to_thread(self._scan_backups),
            key=lambda b: (b.created_at, b.filename),
            reverse=True,
        )

    async def delete_backup(self, filename: str) -> None:
        """Delete a snapshot and its metadata sidecar.

        Raises:
            BackupError: If the snapshot does not exist or cannot be removed
        """
        path = self._resolve_backup(filename)
        if not path.exists():
            raise BackupError(f"Backup not found: {filename}")
        try:
            await asyncio.to_thread(self._remove_backup_files, path)
        except OSError as e:
            logger.error(f"Failed to delete backup {filename}: {e}")
            raise BackupError(f"Could not delete backup {filename}: {e}") from e
        logger.info(f"Deleted backup: {filename}")

    async def cleanup_old_backups(self, max_kept: Optional[int] = None) -> int:
        """Delete the oldest snapshots beyond ``max_kept``.

        Returns:
            Number of snapshots deleted
        """
        keep = self.max_backups if max_kept is None else max_kept
        backups = await self.list_backups()
        stale = backups[keep:] if keep >= 0 else []
        for backup in stale:
            await self.delete_backup(backup.filename)
        if stale:
            logger.info(f"Cleaned up {len(stale)} old backup(s), kept {keep}")
        return len(stale)

    async def ensure_daily_backup(self) -> Optional[BackupInfo]:
        """Create an ``automatic`` snapshot unless one already exists for today (UTC).

        Returns:
            The new BackupInfo, or None if today's snapshot already exists
        """
        today = datetime.now(timezone.utc).date()
        for backup in await self.list_backups():
            if backup.backup_type == "automatic" and _as_utc(backup.created_at).date() == today:
                logger.debug(f"Daily backup already present: {backup.filename}")
                return None
        return await self.create_backup("automatic")

    async def get_backup_stats(self) -> Dict[str, Any]:
        """Summary of the backups directory."""
        backups = await self.list_backups()
        return {
            "count": len(backups),
            "total_size": sum(b.size for b in backups),
            "by_type": dict(Counter(b.backup_type for b in backups)),
            "newest": backups[0].filename if backups else None,
            "oldest": backups[-1].filename if backups else None,
            "max_backups": self.max_backups,
            "backups_dir": str(self.backups_dir),
        }

    # File helpers (run in worker threads)

    def _resolve_backup(self, filename: str, error_cls: type = BackupError) -> Path:
        """Map a bare backup filename into the backups directory.

        Raises:
            BackupError: If the name contains a path component or is not a
                TaskHero snapshot name (``error_cls`` when given)
        """
        if not filename or "/" in filename or "\\" in filename or filename in (".", ".."):
            raise error_cls(f"Invalid backup filename: {filename!r}")
        if not (filename.startswith(BACKUP_PREFIX) and filename.endswith(BACKUP_SUFFIX)):
            raise error_cls(f"Not a TaskHero backup: {filename!r}")
        return self.backups_dir / filename

    def _copy_file(self, source: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)

    def _write_metadata(self, info: BackupInfo) -> None:
        meta = {
            "filename": info.filename,
            "path": info.path,
            "size": info.size,
            "created_at": info.created_at.isoformat(),
            "type": info.backup_type,
            "project_root": info.project_root,
            "database_stats": info.database_stats,
        }
        meta_path = Path(info.path).with_name(info.filename + META_SUFFIX)
        with open(meta_path, "w", encoding="utf-8") as f:
            json.dump(meta, f, indent=2)

    def _read_metadata(self, backup_path: Path) -> Dict[str, Any]:
        meta_path = backup_path.with_name(backup_path.name + META_SUFFIX)
        if not meta_path.exists():
            return {}
        try:
            with open(meta_path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable backup metadata {meta_path.name}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _scan_backups(self) -> List[BackupInfo]:
        if not self.backups_dir.exists():
            return []
        backups = []
        for path in self.backups_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"):
            stat = path.stat()
            meta = self._read_metadata(path)
            created_at = _parse_created_at(meta.get("created_at")) or datetime.fromtimestamp(
                stat.st_mtime, tz=timezone.utc
            )
            backups.append(
                BackupInfo(
                    filename=path.name,
                    path=str(path),
                    size=stat.st_size,
                    created_at=created_at,
                    backup_type=meta.get("type") or _type_from_filename(path.name),
                    project_root=meta.get("project_root"),
                    database_stats=meta.get("database_stats") or {},
                )
            )
        return backups

    def _remove_backup_files(self, path: Path) -> None:
        path.unlink()
        meta_path = path.with_name(path.name + META_SUFFIX)
        if meta_path.exists():
            meta_path.unlink()

    @staticmethod
    def _is_sqlite_file(path: Path) -> bool:
        with open(path, "rb") as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER


def _type_from_filename(filename: str) -> str:
    # taskhero-<type>-<YYYY-MM-DDTHH-MM-SS-ffffffZ>.db
    stem = filename[len(BACKUP_PREFIX):-len(BACKUP_SUFFIX)]
    match = re.match(r"^(?P<type>.+)-\d{4}-\d{2}-\d{2}T", stem)
    return match.group("type") if match else "unknown"


def _parse_created_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def _as_utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)
