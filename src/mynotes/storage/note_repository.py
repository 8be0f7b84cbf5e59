"""Repository for notes."""

import logging
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session, selectinload

from mynotes.config import config
from mynotes.models.db_models import DBNote
from mynotes.models.schema import Note, Priority
from mynotes.observability import traced
from mynotes.storage.base import Repository
from mynotes.storage.mapping import note_to_domain, upsert_note
from mynotes.storage.note_cache import NoteCache
from mynotes.storage.persistence import ManagedContext, PersistenceController
from mynotes.utils import chunked, escape_like_pattern

logger = logging.getLogger(__name__)


class NoteRepository(Repository[Note]):
    """Notes, newest first.

    An optional cache is refilled from every snapshot and consulted by
    ``get`` before the snapshot itself.
    """

    entity_name = "note"
    db_model = DBNote
    watched_tables = frozenset({"notes", "note_tags"})
    refreshes_date = True

    def __init__(self, controller: PersistenceController, cache: Optional[NoteCache] = None):
        self.cache = cache
        super().__init__(controller)

    def _to_domain(self, row: DBNote) -> Note:
        return note_to_domain(row)

    def _upsert(self, session: Session, record: Note) -> DBNote:
        return upsert_note(session, record)

    def _ordering(self) -> Sequence:
        return (DBNote.date.desc(), DBNote.id)

    def _query(self):
        return super()._query().options(selectinload(DBNote.tags))

    def _emit(self, snapshot: List[Note]) -> None:
        if self.cache is not None:
            self.cache.clear()
            for note in snapshot:
                self.cache.cache(note)
        super()._emit(snapshot)

    def get(self, record_id: UUID) -> Optional[Note]:
        if self.cache is not None:
            cached = self.cache.get(record_id)
            if cached is not None:
                return cached
        return super().get(record_id)

    @traced("create")
    def create(
        self,
        title: str,
        content: str = "",
        folder_id: Optional[UUID] = None,
        image_data: Optional[bytes] = None,
        attributed_content: Optional[bytes] = None,
        tag_ids: Iterable[UUID] = (),
        priority: Priority = Priority.NONE,
    ) -> Note:
        """Create and store a new note; every other field takes its default."""
        note = Note(
            title=title,
            content=content,
            folder_id=folder_id,
            image_data=image_data,
            attributed_content=attributed_content,
            tag_ids=list(tag_ids),
            priority=priority,
        )
        self._write(lambda session: upsert_note(session, note), "create")
        logger.info(f"Created note {note.id}")
        return note

    @traced("toggle_pin")
    def toggle_pin(self, note: Note) -> Optional[Note]:
        """Flip ``is_pinned``; the modification date is left alone."""
        return self._update(note, {"is_pinned": not note.is_pinned}, refresh_date=False)

    @traced("search")
    def search(self, text: str) -> List[Note]:
        """Notes whose title or content contains ``text`` (case-insensitive)."""
        if not text or not text.strip():
            return []
        pattern = f"%{escape_like_pattern(text.strip())}%"
        query = self._query().where(
            or_(
                DBNote.title.ilike(pattern, escape="\\"),
                DBNote.content.ilike(pattern, escape="\\"),
            )
        )
        return self.controller.perform_read(
            lambda session: [note_to_domain(row) for row in session.scalars(query)],
            operation="note.search",
        )

    def in_folder(self, folder_id: Optional[UUID]) -> List[Note]:
        """Snapshot notes filed in ``folder_id`` (None for unfiled notes)."""
        return [note for note in self.items if note.folder_id == folder_id]

    @traced("import")
    def import_notes(self, notes: Iterable[Note], handle=None, batch_size: Optional[int] = None) -> int:
        """Upsert many notes on a background context.

        Commits every ``batch_size`` notes and reports progress through
        ``handle`` (a TaskHandle) when given. The snapshot is reloaded once
        the final commit is merged.

        Returns:
            Number of notes imported.
        """
        notes = list(notes)
        batch_size = batch_size or config.import_batch_size
        total = len(notes)

        def work(context: ManagedContext) -> int:
            done = 0
            for batch in chunked(notes, batch_size):
                if handle is not None and handle.cancel_requested:
                    logger.info(f"Note import cancelled after {done} of {total}")
                    break
                context.perform_and_wait(
                    lambda session: [upsert_note(session, note) for note in batch]
                )
                self.controller.save(context)
                done += len(batch)
                if handle is not None:
                    handle.update_progress(done / total)
            return done

        imported = self.controller.perform_background_task(work, operation="note.import")
        logger.info(f"Imported {imported} note(s)")
        return imported
