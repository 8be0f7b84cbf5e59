"""Global search across notes and checklists."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List
from uuid import UUID

from mynotes.models.schema import ChecklistNote, Note
from mynotes.storage.checklist_repository import ChecklistRepository
from mynotes.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

SUBTITLE_LENGTH = 50


class SearchResultType(str, Enum):
    NOTE = "note"
    CHECKLIST = "checklist"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


@dataclass(frozen=True)
class SearchResultItem:
    """One hit, identified by the id of the note or checklist it points to."""

    id: UUID
    title: str = field(compare=False)
    subtitle: str = field(compare=False)
    kind: SearchResultType = field(compare=False)
    date: datetime = field(compare=False)
    icon_name: str = field(compare=False)

    @classmethod
    def from_note(cls, note: Note) -> "SearchResultItem":
        return cls(
            id=note.id,
            title=note.title,
            subtitle=note.content[:SUBTITLE_LENGTH].strip(),
            kind=SearchResultType.NOTE,
            date=note.date,
            icon_name="doc.text",
        )

    @classmethod
    def from_checklist(cls, checklist: ChecklistNote) -> "SearchResultItem":
        return cls(
            id=checklist.id,
            title=checklist.title,
            subtitle=f"{checklist.completed_count}/{len(checklist.items)} completed",
            kind=SearchResultType.CHECKLIST,
            date=checklist.date,
            icon_name="checklist",
        )


class SearchService:
    """Searches notes and checklists through their repositories."""

    def __init__(self, notes: NoteRepository, checklists: ChecklistRepository):
        self.notes = notes
        self.checklists = checklists

    def search(self, text: str) -> List[SearchResultItem]:
        """Matching notes and checklists, newest first.

        Blank text returns no results rather than everything.
        """
        if not text or not text.strip():
            return []
        results = [SearchResultItem.from_note(note) for note in self.notes.search(text)]
        results.extend(
            SearchResultItem.from_checklist(checklist)
            for checklist in self.checklists.search(text)
        )
        results.sort(key=lambda item: item.date, reverse=True)
        logger.debug(f"Search '{text}' matched {len(results)} item(s)")
        return results
