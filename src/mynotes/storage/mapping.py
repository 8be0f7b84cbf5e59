"""Translation between domain records and persisted rows.

``*_to_domain`` functions flatten relationships into identifiers;
``upsert_*`` functions are the single write path for each record type.
Upserts look the row up by identifier, create it bound to that identifier
when absent, and overwrite every field from the record. The caller owns the
session and the transaction boundary (commit).
"""

import datetime
import logging
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import delete, insert, select
from sqlalchemy.orm import Session

from mynotes.exceptions import ErrorCode, RelationshipError
from mynotes.models.db_models import (DBChecklistItem, DBChecklistNote,
                                      DBFolder, DBNote, DBTag, checklist_tags,
                                      note_tags)
from mynotes.models.schema import (ChecklistItem, ChecklistNote, Folder, Note,
                                   Priority, Tag, TagColor,
                                   ensure_timezone_aware)
from mynotes.utils import as_uuid

logger = logging.getLogger(__name__)


def _to_db_date(value: datetime.datetime) -> datetime.datetime:
    """SQLite has no offsets: persist as naive UTC."""
    return ensure_timezone_aware(value).replace(tzinfo=None)


def _priority(value: Optional[int]) -> Priority:
    try:
        return Priority(value or 0)
    except ValueError:
        return Priority.NONE


# -- rows -> records ---------------------------------------------------------


def tag_to_domain(db_tag: DBTag) -> Tag:
    return Tag(id=as_uuid(db_tag.id), name=db_tag.name, color=TagColor.from_key(db_tag.color))


def folder_to_domain(db_folder: DBFolder) -> Folder:
    return Folder(id=as_uuid(db_folder.id), name=db_folder.name)


def checklist_item_to_domain(db_item: DBChecklistItem) -> ChecklistItem:
    return ChecklistItem(id=as_uuid(db_item.id), text=db_item.text, is_done=db_item.is_done)


def note_to_domain(db_note: DBNote) -> Note:
    """Build a Note; the folder becomes ``folder_id`` and tags an ordered id list."""
    return Note(
        id=as_uuid(db_note.id),
        title=db_note.title,
        content=db_note.content,
        folder_id=as_uuid(db_note.folder_id) if db_note.folder_id else None,
        is_pinned=db_note.is_pinned,
        date=ensure_timezone_aware(db_note.date),
        image_data=db_note.image_data,
        attributed_content=db_note.attributed_content,
        tag_ids=[as_uuid(db_tag.id) for db_tag in db_note.tags],
        priority=_priority(db_note.priority),
    )


def checklist_to_domain(db_checklist: DBChecklistNote) -> ChecklistNote:
    """Build a ChecklistNote with its items embedded in stored order."""
    return ChecklistNote(
        id=as_uuid(db_checklist.id),
        title=db_checklist.title,
        folder_id=as_uuid(db_checklist.folder_id) if db_checklist.folder_id else None,
        items=[checklist_item_to_domain(item) for item in db_checklist.items],
        is_pinned=db_checklist.is_pinned,
        date=ensure_timezone_aware(db_checklist.date),
        tag_ids=[as_uuid(db_tag.id) for db_tag in db_checklist.tags],
        priority=_priority(db_checklist.priority),
    )


# -- records -> rows ---------------------------------------------------------


def _resolve_folder_id(
    session: Session, owner_id: UUID, folder_id: Optional[UUID], strict: bool = False
) -> Optional[str]:
    """Return the folder key if the folder exists; unresolved references are dropped."""
    if folder_id is None:
        return None
    if session.get(DBFolder, str(folder_id)) is None:
        if strict:
            raise RelationshipError(
                f"Folder {folder_id} does not exist",
                owner_id=owner_id,
                target_id=folder_id,
                code=ErrorCode.FOLDER_UNRESOLVED,
            )
        logger.debug(f"Dropping unresolved folder {folder_id} from {owner_id}")
        return None
    return str(folder_id)


def _resolve_tag_ids(
    session: Session, owner_id: UUID, tag_ids: Iterable[UUID], strict: bool = False
) -> List[str]:
    """Existing tag keys in the given order, first occurrence wins."""
    wanted: List[str] = []
    for tag_id in tag_ids:
        key = str(tag_id)
        if key not in wanted:
            wanted.append(key)
    if not wanted:
        return []
    existing = set(session.scalars(select(DBTag.id).where(DBTag.id.in_(wanted))))
    if len(existing) != len(wanted):
        dropped = [key for key in wanted if key not in existing]
        if strict:
            raise RelationshipError(
                f"Tag {dropped[0]} does not exist",
                owner_id=owner_id,
                target_id=dropped[0],
                code=ErrorCode.TAG_UNRESOLVED,
            )
        logger.debug(f"Dropping unresolved tags {dropped} from {owner_id}")
    return [key for key in wanted if key in existing]


def _rewrite_tag_rows(session: Session, table, owner_column: str, owner_key: str, tag_keys: List[str]) -> None:
    """Clear and rebuild an owner's tag association rows."""
    session.execute(delete(table).where(table.c[owner_column] == owner_key))
    if tag_keys:
        session.execute(
            insert(table),
            [
                {owner_column: owner_key, "tag_id": tag_key, "position": position}
                for position, tag_key in enumerate(tag_keys)
            ],
        )


def upsert_folder(session: Session, folder: Folder) -> DBFolder:
    db_folder = session.get(DBFolder, str(folder.id))
    if db_folder is None:
        db_folder = DBFolder(id=str(folder.id))
        session.add(db_folder)
    db_folder.name = folder.name
    return db_folder


def upsert_tag(session: Session, tag: Tag) -> DBTag:
    db_tag = session.get(DBTag, str(tag.id))
    if db_tag is None:
        db_tag = DBTag(id=str(tag.id))
        session.add(db_tag)
    db_tag.name = tag.name
    db_tag.color = tag.color.value
    return db_tag


def upsert_note(session: Session, note: Note, strict: bool = False) -> DBNote:
    """Create or overwrite the row for ``note``, then rebuild its tag rows.

    The record wins over the stored state for every field (no merge).
    Unknown folder or tag references are dropped unless ``strict`` is set,
    in which case a RelationshipError is raised before anything is written.
    """
    key = str(note.id)
    folder_key = _resolve_folder_id(session, note.id, note.folder_id, strict)
    tag_keys = _resolve_tag_ids(session, note.id, note.tag_ids, strict)

    db_note = session.get(DBNote, key)
    if db_note is None:
        db_note = DBNote(id=key)
        session.add(db_note)

    db_note.title = note.title
    db_note.content = note.content
    db_note.folder_id = folder_key
    db_note.is_pinned = note.is_pinned
    db_note.date = _to_db_date(note.date)
    db_note.image_data = note.image_data
    db_note.attributed_content = note.attributed_content
    db_note.priority = int(note.priority)
    session.flush()

    # --- Tags: clear + rebuild -----------------------------------------
    _rewrite_tag_rows(session, note_tags, "note_id", key, tag_keys)
    session.expire(db_note, ["tags", "folder"])
    return db_note


def _unique_items(checklist: ChecklistNote) -> List[ChecklistItem]:
    """Fold repeated item ids into one item at its first position, last values win."""
    folded = {}
    for item in checklist.items:
        if item.id in folded:
            logger.warning(f"Checklist {checklist.id} repeats item {item.id}; keeping the last values")
        folded[item.id] = item
    return list(folded.values())


def upsert_checklist(session: Session, checklist: ChecklistNote, strict: bool = False) -> DBChecklistNote:
    """Create or overwrite a checklist; its items are replaced wholesale.

    Every owned item row is deleted and the record's items are written in
    list order. Item ids given by the caller are kept, so an item that
    survives an edit keeps its identifier. An item id already owned by
    another checklist moves that row here rather than duplicating it.
    """
    key = str(checklist.id)
    folder_key = _resolve_folder_id(session, checklist.id, checklist.folder_id, strict)
    tag_keys = _resolve_tag_ids(session, checklist.id, checklist.tag_ids, strict)

    db_checklist = session.get(DBChecklistNote, key)
    if db_checklist is None:
        db_checklist = DBChecklistNote(id=key)
        session.add(db_checklist)

    db_checklist.title = checklist.title
    db_checklist.folder_id = folder_key
    db_checklist.is_pinned = checklist.is_pinned
    db_checklist.date = _to_db_date(checklist.date)
    db_checklist.priority = int(checklist.priority)
    session.flush()

    # --- Items: delete own + rewrite -----------------------------------
    items = _unique_items(checklist)
    session.execute(
        delete(DBChecklistItem)
        .where(DBChecklistItem.checklist_id == key)
        .execution_options(synchronize_session="fetch")
    )
    session.expire(db_checklist, ["items"])
    elsewhere = {}
    if items:
        elsewhere = {
            row.id: row
            for row in session.scalars(
                select(DBChecklistItem).where(
                    DBChecklistItem.id.in_([str(item.id) for item in items])
                )
            )
        }
    new_items = []
    for position, item in enumerate(items):
        item_key = str(item.id)
        db_item = elsewhere.get(item_key)
        if db_item is None:
            db_item = DBChecklistItem(id=item_key)
        else:
            logger.debug(f"Moving item {item_key} from checklist {db_item.checklist_id} to {key}")
        db_item.text = item.text
        db_item.is_done = item.is_done
        db_item.position = position
        new_items.append(db_item)
    # Owned items must be attached through the collection (delete-orphan)
    db_checklist.items = new_items

    # --- Tags: clear + rebuild -----------------------------------------
    _rewrite_tag_rows(session, checklist_tags, "checklist_id", key, tag_keys)
    session.flush()
    session.expire(db_checklist, ["tags", "folder"])
    return db_checklist
