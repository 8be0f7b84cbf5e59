"""Repository for checklists."""

import logging
from typing import Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from mynotes.config import config
from mynotes.models.db_models import DBChecklistItem, DBChecklistNote
from mynotes.models.schema import ChecklistItem, ChecklistNote, Priority
from mynotes.observability import traced
from mynotes.storage.base import Repository
from mynotes.storage.mapping import checklist_to_domain, upsert_checklist
from mynotes.storage.persistence import ManagedContext
from mynotes.utils import chunked, escape_like_pattern

logger = logging.getLogger(__name__)


class ChecklistRepository(Repository[ChecklistNote]):
    """Checklists with their embedded items, newest first."""

    entity_name = "checklist"
    db_model = DBChecklistNote
    watched_tables = frozenset({"checklists", "checklist_items", "checklist_tags"})
    refreshes_date = True

    def _to_domain(self, row: DBChecklistNote) -> ChecklistNote:
        return checklist_to_domain(row)

    def _upsert(self, session: Session, record: ChecklistNote) -> DBChecklistNote:
        return upsert_checklist(session, record)

    def _ordering(self) -> Sequence:
        return (DBChecklistNote.date.desc(), DBChecklistNote.id)

    def _query(self):
        return super()._query().options(
            selectinload(DBChecklistNote.items), selectinload(DBChecklistNote.tags)
        )

    @traced("create")
    def create(
        self,
        title: str,
        folder_id: Optional[UUID] = None,
        items: Iterable[ChecklistItem] = (),
        tag_ids: Iterable[UUID] = (),
        priority: Priority = Priority.NONE,
    ) -> ChecklistNote:
        """Create and store a new checklist."""
        checklist = ChecklistNote(
            title=title,
            folder_id=folder_id,
            items=list(items),
            tag_ids=list(tag_ids),
            priority=priority,
        )
        self._write(lambda session: upsert_checklist(session, checklist), "create")
        logger.info(f"Created checklist {checklist.id} with {len(checklist.items)} item(s)")
        return checklist

    @traced("toggle_pin")
    def toggle_pin(self, checklist: ChecklistNote) -> Optional[ChecklistNote]:
        """Flip ``is_pinned``; the modification date is left alone."""
        return self._update(
            checklist, {"is_pinned": not checklist.is_pinned}, refresh_date=False
        )

    def toggle_item(self, checklist: ChecklistNote, item_id: UUID) -> Optional[ChecklistNote]:
        """Flip ``is_done`` of one item; unknown items leave the checklist as is."""
        items = [
            item.replace(is_done=not item.is_done) if item.id == item_id else item
            for item in checklist.items
        ]
        return self.update(checklist, items=items)

    @traced("search")
    def search(self, text: str) -> List[ChecklistNote]:
        """Checklists whose title or any item text contains ``text``."""
        if not text or not text.strip():
            return []
        pattern = f"%{escape_like_pattern(text.strip())}%"
        matching_items = select(DBChecklistItem.checklist_id).where(
            DBChecklistItem.text.ilike(pattern, escape="\\")
        )
        query = self._query().where(
            or_(
                DBChecklistNote.title.ilike(pattern, escape="\\"),
                DBChecklistNote.id.in_(matching_items),
            )
        )
        return self.controller.perform_read(
            lambda session: [checklist_to_domain(row) for row in session.scalars(query)],
            operation="checklist.search",
        )

    def in_folder(self, folder_id: Optional[UUID]) -> List[ChecklistNote]:
        """Snapshot checklists filed in ``folder_id`` (None for unfiled)."""
        return [checklist for checklist in self.items if checklist.folder_id == folder_id]

    @traced("import")
    def import_checklists(
        self, checklists: Iterable[ChecklistNote], handle=None, batch_size: Optional[int] = None
    ) -> int:
        """Upsert many checklists on a background context, in batches.

        Returns:
            Number of checklists imported.
        """
        checklists = list(checklists)
        batch_size = batch_size or config.import_batch_size
        total = len(checklists)

        def work(context: ManagedContext) -> int:
            done = 0
            for batch in chunked(checklists, batch_size):
                if handle is not None and handle.cancel_requested:
                    logger.info(f"Checklist import cancelled after {done} of {total}")
                    break
                context.perform_and_wait(
                    lambda session: [upsert_checklist(session, checklist) for checklist in batch]
                )
                self.controller.save(context)
                done += len(batch)
                if handle is not None:
                    handle.update_progress(done / total)
            return done

        imported = self.controller.perform_background_task(work, operation="checklist.import")
        logger.info(f"Imported {imported} checklist(s)")
        return imported
