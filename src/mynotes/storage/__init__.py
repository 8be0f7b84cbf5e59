"""Storage layer for the MyNotes core."""

from mynotes.storage.base import Repository
from mynotes.storage.checklist_repository import ChecklistRepository
from mynotes.storage.folder_repository import FolderRepository
from mynotes.storage.note_repository import NoteRepository
from mynotes.storage.persistence import (CommitEvent, ManagedContext,
                                         PersistenceController)
from mynotes.storage.tag_repository import TagRepository

__all__ = [
    "Repository",
    "NoteRepository",
    "ChecklistRepository",
    "FolderRepository",
    "TagRepository",
    "PersistenceController",
    "ManagedContext",
    "CommitEvent",
]
