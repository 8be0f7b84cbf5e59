"""Common test fixtures for the MyNotes core."""

import logging
import tempfile
from pathlib import Path

import pytest

from mynotes.config import config
from mynotes.observability import LoggingErrorReporter
from mynotes.storage.checklist_repository import ChecklistRepository
from mynotes.storage.folder_repository import FolderRepository
from mynotes.storage.note_repository import NoteRepository
from mynotes.storage.persistence import PersistenceController
from mynotes.storage.tag_repository import TagRepository


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the database and backups."""
    with tempfile.TemporaryDirectory() as db_dir:
        with tempfile.TemporaryDirectory() as backup_dir:
            yield Path(db_dir), Path(backup_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    db_dir, backup_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "MyNotes.sqlite")
    monkeypatch.setattr(config, "backup_dir", backup_dir)
    monkeypatch.setattr(config, "in_memory_db", False)
    monkeypatch.setattr(config, "debug", False)
    monkeypatch.setattr(config, "max_backups", 10)
    monkeypatch.setattr(config, "import_batch_size", 100)
    yield config


@pytest.fixture
def reporter():
    """An error reporter that remembers every report."""
    return LoggingErrorReporter()


@pytest.fixture
def controller(test_config, reporter):
    """An in-memory store that vanishes after the test."""
    controller = PersistenceController(in_memory=True, debug=False, reporter=reporter)
    yield controller
    controller.close()


@pytest.fixture
def file_controller(test_config, reporter):
    """A store backed by a file in a temporary directory."""
    controller = PersistenceController(
        database_path=test_config.database_path, in_memory=False, debug=False, reporter=reporter
    )
    yield controller
    controller.close()


@pytest.fixture
def note_repository(controller):
    repository = NoteRepository(controller)
    yield repository
    repository.close()


@pytest.fixture
def checklist_repository(controller):
    repository = ChecklistRepository(controller)
    yield repository
    repository.close()


@pytest.fixture
def folder_repository(controller):
    repository = FolderRepository(controller)
    yield repository
    repository.close()


@pytest.fixture
def tag_repository(controller):
    repository = TagRepository(controller)
    yield repository
    repository.close()


@pytest.fixture
def restore_mynotes_logger():
    """Undo handler and level changes made by configure_logging."""
    logger = logging.getLogger("mynotes")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)
