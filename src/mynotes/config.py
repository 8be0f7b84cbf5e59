"""Configuration module for the MyNotes core."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default data directory
_USER_ENV = Path.home() / ".mynotes" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class MyNotesConfig(BaseModel):
    """Configuration for the MyNotes store."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MYNOTES_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("MYNOTES_DATABASE_PATH", "data/db/MyNotes.sqlite")
        )
    )
    # When True, the store lives in memory only (tests, previews)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("MYNOTES_IN_MEMORY_DB", "false")
    )
    # Debug mode: storage failures propagate unwrapped and are never retried
    debug: bool = Field(default_factory=lambda: _env_flag("MYNOTES_DEBUG", "false"))
    # Backup configuration
    backup_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("MYNOTES_BACKUP_DIR", "data/Backups"))
    )
    max_backups: int = Field(
        default_factory=lambda: int(os.getenv("MYNOTES_MAX_BACKUPS", "10"))
    )
    # Bulk imports commit every N records to avoid large transactions
    import_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("MYNOTES_IMPORT_BATCH_SIZE", "100"))
    )
    # Concurrent background tasks (imports, backups)
    background_workers: int = Field(
        default_factory=lambda: int(os.getenv("MYNOTES_BACKGROUND_WORKERS", "3"))
    )
    # Logging configuration
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("MYNOTES_LOG_DIR")) if os.getenv("MYNOTES_LOG_DIR") else None
        )
    )
    log_level: str = Field(default_factory=lambda: os.getenv("MYNOTES_LOG_LEVEL", "INFO"))

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _validate_limits(self) -> "MyNotesConfig":
        """Reject settings that would break batching or rotation."""
        if self.import_batch_size < 1:
            raise ValueError("import_batch_size must be >= 1")
        if self.background_workers < 1:
            raise ValueError("background_workers must be >= 1")
        if self.max_backups < 0:
            raise ValueError("max_backups must be >= 0")
        if self.max_backups == 0:
            logger.warning("max_backups is 0: backup rotation is disabled")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_database_path(self) -> Path:
        """Absolute path of the store file; its directory is created."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        return f"sqlite:///{self.get_database_path()}"

    def get_backup_dir(self) -> Path:
        """Get the absolute backup directory, creating it if needed."""
        backup_dir = self.get_absolute_path(self.backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        return backup_dir


# Create a global config instance
config = MyNotesConfig()
