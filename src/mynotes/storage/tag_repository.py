"""Repository for tags and their associations."""
import logging
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from mynotes.models.db_models import (DBChecklistNote, DBNote, DBTag,
                                      checklist_tags, note_tags)
from mynotes.models.schema import Tag, TagColor
from mynotes.observability import traced
from mynotes.storage.base import Repository
from mynotes.storage.mapping import tag_to_domain, upsert_tag
from mynotes.utils import as_uuid

logger = logging.getLogger(__name__)


class TagRepository(Repository[Tag]):
    """Tags by name.

    Besides the usual CRUD it edits single note/checklist associations.
    Those edits do not touch the tagged record's modification date.
    Deleting a tag only removes its associations.
    """

    entity_name = "tag"
    db_model = DBTag
    watched_tables = frozenset({"tags"})

    def _to_domain(self, row: DBTag) -> Tag:
        return tag_to_domain(row)

    def _upsert(self, session: Session, record: Tag) -> DBTag:
        return upsert_tag(session, record)

    def _ordering(self) -> Sequence:
        return (DBTag.name, DBTag.id)

    @traced("create")
    def create(self, name: str, color: TagColor = TagColor.BLUE) -> Tag:
        tag = Tag(name=name, color=color)
        self._write(lambda session: upsert_tag(session, tag), "create")
        return tag

    def get_by_ids(self, tag_ids: Iterable[UUID]) -> List[Tag]:
        """Snapshot tags for ``tag_ids`` in the given order; unknown ids are skipped."""
        by_id = {tag.id: tag for tag in self.items}
        return [by_id[tag_id] for tag_id in tag_ids if tag_id in by_id]

    # -- associations --------------------------------------------------------

    def _add_association(self, table, owner_column: str, owner_model, tag_id: UUID, owner_id: UUID) -> bool:
        owner_key, tag_key = str(owner_id), str(tag_id)

        def work(session: Session) -> bool:
            if session.get(owner_model, owner_key) is None or session.get(DBTag, tag_key) is None:
                logger.debug(f"Cannot tag {owner_key} with {tag_key}: one side does not exist")
                return False
            exists = session.scalar(
                select(func.count())
                .select_from(table)
                .where(table.c[owner_column] == owner_key, table.c.tag_id == tag_key)
            )
            if exists:
                return False
            last = session.scalar(
                select(func.max(table.c.position)).where(table.c[owner_column] == owner_key)
            )
            session.execute(
                insert(table).values(
                    {owner_column: owner_key, "tag_id": tag_key, "position": (last + 1) if last is not None else 0}
                )
            )
            return True

        return self._write(work, f"tag_{owner_model.__tablename__}")

    def _remove_association(self, table, owner_column: str, tag_id: UUID, owner_id: UUID) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(
                delete(table).where(
                    table.c[owner_column] == str(owner_id), table.c.tag_id == str(tag_id)
                )
            )
            return bool(result.rowcount)

        return self._write(work, f"untag_{table.name}")

    def tag_note(self, tag_id: UUID, note_id: UUID) -> bool:
        """Append ``tag_id`` to a note's tags; returns False if nothing changed."""
        return self._add_association(note_tags, "note_id", DBNote, tag_id, note_id)

    def untag_note(self, tag_id: UUID, note_id: UUID) -> bool:
        return self._remove_association(note_tags, "note_id", tag_id, note_id)

    def tag_checklist(self, tag_id: UUID, checklist_id: UUID) -> bool:
        """Append ``tag_id`` to a checklist's tags; returns False if nothing changed."""
        return self._add_association(checklist_tags, "checklist_id", DBChecklistNote, tag_id, checklist_id)

    def untag_checklist(self, tag_id: UUID, checklist_id: UUID) -> bool:
        return self._remove_association(checklist_tags, "checklist_id", tag_id, checklist_id)

    def note_ids_with_tag(self, tag_id: UUID) -> List[UUID]:
        """Ids of the notes carrying ``tag_id``, newest first."""
        query = (
            select(DBNote.id)
            .join(note_tags, note_tags.c.note_id == DBNote.id)
            .where(note_tags.c.tag_id == str(tag_id))
            .order_by(DBNote.date.desc())
        )
        return self.controller.perform_read(
            lambda session: [as_uuid(key) for key in session.scalars(query)],
            operation="tag.note_ids_with_tag",
        )

    def checklist_ids_with_tag(self, tag_id: UUID) -> List[UUID]:
        """Ids of the checklists carrying ``tag_id``, newest first."""
        query = (
            select(DBChecklistNote.id)
            .join(checklist_tags, checklist_tags.c.checklist_id == DBChecklistNote.id)
            .where(checklist_tags.c.tag_id == str(tag_id))
            .order_by(DBChecklistNote.date.desc())
        )
        return self.controller.perform_read(
            lambda session: [as_uuid(key) for key in session.scalars(query)],
            operation="tag.checklist_ids_with_tag",
        )

    def usage_counts(self) -> Dict[UUID, int]:
        """Number of notes plus checklists using each tag (unused tags map to 0)."""

        def work(session: Session) -> Dict[UUID, int]:
            counts: Dict[UUID, int] = {as_uuid(key): 0 for key in session.scalars(select(DBTag.id))}
            for table in (note_tags, checklist_tags):
                rows = session.execute(
                    select(table.c.tag_id, func.count()).group_by(table.c.tag_id)
                )
                for tag_key, count in rows:
                    counts[as_uuid(tag_key)] = counts.get(as_uuid(tag_key), 0) + count
            return counts

        return self.controller.perform_read(work, operation="tag.usage_counts")

    def find_by_name(self, name: str) -> Optional[Tag]:
        """First snapshot tag whose name matches ``name`` case-insensitively."""
        wanted = name.strip().lower()
        for tag in self.items:
            if tag.name.lower() == wanted:
                return tag
        return None
