"""Backup utilities for the MyNotes store.

One SQLite file per backup, named with a sortable timestamp and kept in a
dedicated directory with count-based rotation.
"""
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Union

from mynotes.config import config
from mynotes.exceptions import ErrorCode, NotFoundError
from mynotes.observability import timed_operation
from mynotes.storage.persistence import PersistenceController
from mynotes.tasks import BackgroundTaskManager, TaskHandle

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "MyNotes-Backup-"
BACKUP_SUFFIX = ".sqlite"
TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S%f"


def _created_at(path: Path) -> float:
    """Creation time where the platform records it, else modification time."""
    stat = path.stat()
    return getattr(stat, "st_birthtime", stat.st_mtime)


class BackupManager:
    """Creates, lists, rotates and restores store backups.

    Args:
        controller: The open store to back up and restore into
        backup_dir: Directory for backups. Defaults to ``config.backup_dir``
        max_backups: Newest backups to keep (0 disables rotation).
            Defaults to ``config.max_backups``
    """

    def __init__(
        self,
        controller: PersistenceController,
        backup_dir: Optional[Union[str, Path]] = None,
        max_backups: Optional[int] = None,
    ):
        self.controller = controller
        self.backup_dir = Path(backup_dir) if backup_dir else config.get_backup_dir()
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        self.max_backups = config.max_backups if max_backups is None else max_backups
        self._lock = Lock()

    def _new_backup_path(self) -> Path:
        while True:
            timestamp = datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
            path = self.backup_dir / f"{BACKUP_PREFIX}{timestamp}{BACKUP_SUFFIX}"
            if not path.exists():
                return path

    def create_backup(self) -> Path:
        """Commit pending changes and write a new backup file.

        Returns:
            Path to the backup file.

        Raises:
            BackupError: If the copy failed.
        """
        with self._lock, timed_operation("backup.create") as op:
            backup_path = self.controller.create_backup(self._new_backup_path())
            size_kb = backup_path.stat().st_size / 1024
            op["size_kb"] = round(size_kb, 1)
            logger.info(f"Backup created: {backup_path.name} ({size_kb:.1f} KB)")
            self._rotate_backups()
            return backup_path

    def create_backup_in_background(self, tasks: BackgroundTaskManager) -> TaskHandle:
        """Submit ``create_backup`` to the task manager."""

        def work(handle: TaskHandle) -> Path:
            handle.update_progress(0.1)
            path = self.create_backup()
            handle.update_progress(1.0)
            return path

        return tasks.submit(
            "Backup", work, description="Back up the notes database", category="Backup"
        )

    def _rotate_backups(self) -> int:
        """Remove all but the newest ``max_backups`` backups.

        Returns:
            Number of backups removed.
        """
        if self.max_backups <= 0:
            return 0
        removed = 0
        for backup in self.list_backups()[self.max_backups:]:
            try:
                backup.unlink()
                removed += 1
                logger.debug(f"Removed old backup (count limit): {backup.name}")
            except OSError as e:
                logger.warning(f"Could not remove old backup {backup.name}: {e}")
        if removed > 0:
            logger.info(f"Rotated {removed} old backup(s)")
        return removed

    def list_backups(self) -> List[Path]:
        """Backup files, newest first (creation time, then name)."""
        backups = [
            path
            for path in self.backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}")
            if path.is_file()
        ]
        backups.sort(key=lambda path: (_created_at(path), path.name), reverse=True)
        return backups

    def backup_details(self) -> List[Dict[str, Any]]:
        """``list_backups`` with size and timestamp metadata."""
        details = []
        for path in self.list_backups():
            stat = path.stat()
            details.append({
                "path": str(path),
                "name": path.name,
                "size_bytes": stat.st_size,
                "size_mb": round(stat.st_size / (1024 * 1024), 2),
                "created_at": datetime.fromtimestamp(
                    _created_at(path), tz=timezone.utc
                ).isoformat(),
            })
        return details

    def _resolve(self, backup: Union[str, Path]) -> Path:
        path = Path(backup)
        if not path.is_absolute() and path.parent == Path("."):
            path = self.backup_dir / path
        return path

    def delete_backup(self, backup: Union[str, Path]) -> None:
        """Delete exactly one backup file (a path or a name in the backup dir).

        Raises:
            NotFoundError: If the file does not exist.
        """
        path = self._resolve(backup)
        with self._lock:
            if not path.is_file():
                raise NotFoundError(path.name, kind="backup", code=ErrorCode.BACKUP_NOT_FOUND)
            os.remove(path)
        logger.info(f"Backup deleted: {path.name}")

    def restore_from_backup(self, backup: Union[str, Path]) -> None:
        """Replace the live store with a backup.

        WARNING: everything written since the backup is lost.

        Raises:
            NotFoundError: If the backup does not exist.
            BackupError: If the copy failed (the previous store is reopened).
        """
        path = self._resolve(backup)
        with self._lock, timed_operation("backup.restore", backup=path.name):
            self.controller.restore_from_backup(path)
