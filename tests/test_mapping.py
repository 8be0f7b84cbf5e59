"""Tests for the record <-> row mapping layer."""
import datetime
import logging
import uuid

import pytest
from sqlalchemy import func, select

from mynotes.exceptions import ErrorCode, RelationshipError
from mynotes.models.db_models import (DBChecklistItem, DBChecklistNote,
                                      DBNote, DBTag, note_tags)
from mynotes.models.schema import (ChecklistItem, ChecklistNote, Folder, Note,
                                   Priority, Tag, TagColor)
from mynotes.storage.mapping import (checklist_to_domain, note_to_domain,
                                     tag_to_domain, upsert_checklist,
                                     upsert_folder, upsert_note, upsert_tag)


def _run(controller, work):
    """Run work on the main context and commit."""
    return controller.perform_write(work)


def _read(controller, work):
    return controller.perform_read(work)


@pytest.fixture
def folder(controller):
    folder = Folder(name="Work")
    _run(controller, lambda session: upsert_folder(session, folder))
    return folder


@pytest.fixture
def tags(controller):
    tags = [Tag(name="x", color=TagColor.RED), Tag(name="y", color=TagColor.GREEN)]

    def work(session):
        for tag in tags:
            upsert_tag(session, tag)

    _run(controller, work)
    return tags


class TestNoteMapping:
    """Round trip and idempotence for notes."""

    def test_round_trip_preserves_every_field(self, controller, folder, tags):
        """A well-formed note comes back field-for-field equal."""
        note = Note(
            title="Plan",
            content="Ship it",
            folder_id=folder.id,
            is_pinned=True,
            date=datetime.datetime(2024, 5, 1, 12, 30, 15, 123456, tzinfo=datetime.timezone.utc),
            image_data=b"\x89PNG",
            attributed_content=b"rtf",
            tag_ids=[tags[1].id, tags[0].id],
            priority=Priority.HIGH,
        )
        _run(controller, lambda session: upsert_note(session, note))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.same_values(note)

    def test_upsert_twice_is_idempotent(self, controller, folder, tags):
        """Upserting the same record twice leaves one row and the same tags."""
        note = Note(title="A", folder_id=folder.id, tag_ids=[tags[0].id, tags[1].id])
        _run(controller, lambda session: upsert_note(session, note))
        first = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))

        _run(controller, lambda session: upsert_note(session, note))
        second = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))

        assert first.same_values(second)
        assert _read(controller, lambda s: s.scalar(select(func.count()).select_from(DBNote))) == 1
        assert _read(controller, lambda s: s.scalar(select(func.count()).select_from(note_tags))) == 2

    def test_record_wins_over_stored_values(self, controller):
        """Every field is overwritten from the record, without merging."""
        note = Note(title="Old", content="old content", is_pinned=True)
        _run(controller, lambda session: upsert_note(session, note))
        _run(controller, lambda session: upsert_note(session, note.replace(title="New", is_pinned=False)))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.title == "New"
        assert loaded.is_pinned is False
        assert loaded.content == "old content"

    def test_unresolved_folder_is_dropped(self, controller):
        """A folder id that does not exist is stored as no folder."""
        note = Note(title="Orphan", folder_id=uuid.uuid4())
        _run(controller, lambda session: upsert_note(session, note))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.folder_id is None

    def test_unresolved_tags_are_dropped_and_order_kept(self, controller, tags):
        """Unknown tag ids disappear; duplicates keep the first occurrence."""
        note = Note(title="T", tag_ids=[tags[1].id, uuid.uuid4(), tags[0].id, tags[1].id])
        _run(controller, lambda session: upsert_note(session, note))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.tag_ids == [tags[1].id, tags[0].id]

    def test_dates_come_back_timezone_aware(self, controller):
        """SQLite drops offsets; mapped dates are UTC again."""
        local = datetime.timezone(datetime.timedelta(hours=2))
        note = Note(title="TZ", date=datetime.datetime(2024, 1, 1, 14, 0, tzinfo=local))
        _run(controller, lambda session: upsert_note(session, note))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.date.tzinfo is not None
        assert loaded.date == datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def test_unknown_priority_falls_back_to_none(self, controller):
        note = Note(title="P")
        _run(controller, lambda session: upsert_note(session, note))

        def corrupt(session):
            session.get(DBNote, str(note.id)).priority = 42

        _run(controller, corrupt)
        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.priority == Priority.NONE


class TestChecklistMapping:
    """Items are owned, ordered and replaced wholesale."""

    def test_items_round_trip_in_order(self, controller):
        checklist = ChecklistNote(
            title="Groceries",
            items=[
                ChecklistItem(text="Milk"),
                ChecklistItem(text="Eggs", is_done=True),
                ChecklistItem(text="Bread"),
            ],
        )
        _run(controller, lambda session: upsert_checklist(session, checklist))

        loaded = _read(
            controller, lambda s: checklist_to_domain(s.get(DBChecklistNote, str(checklist.id)))
        )
        assert loaded.same_values(checklist)
        assert [item.text for item in loaded.items] == ["Milk", "Eggs", "Bread"]

    def test_upsert_replaces_items(self, controller):
        """Three items replaced by two leaves exactly two rows."""
        original = ChecklistNote(title="L", items=[ChecklistItem(text=str(i)) for i in range(3)])
        _run(controller, lambda session: upsert_checklist(session, original))

        replacement = original.replace(items=[ChecklistItem(text="a"), ChecklistItem(text="b")])
        _run(controller, lambda session: upsert_checklist(session, replacement))

        item_ids = _read(controller, lambda s: set(s.scalars(select(DBChecklistItem.id))))
        assert item_ids == {str(item.id) for item in replacement.items}
        assert not item_ids & {str(item.id) for item in original.items}

    def test_reused_item_ids_survive_replacement(self, controller):
        """Items the caller keeps retain their identifier."""
        keep = ChecklistItem(text="keep")
        checklist = ChecklistNote(title="L", items=[keep, ChecklistItem(text="drop")])
        _run(controller, lambda session: upsert_checklist(session, checklist))

        edited = checklist.replace(items=[ChecklistItem(text="new"), keep.replace(is_done=True)])
        _run(controller, lambda session: upsert_checklist(session, edited))

        loaded = _read(
            controller, lambda s: checklist_to_domain(s.get(DBChecklistNote, str(checklist.id)))
        )
        assert [item.id for item in loaded.items] == [edited.items[0].id, keep.id]
        assert loaded.items[1].is_done is True

    def test_item_owned_by_another_checklist_moves(self, controller):
        """Reusing another checklist's item ids moves the rows instead of failing."""
        first = ChecklistNote(title="First", items=[ChecklistItem(text="a"), ChecklistItem(text="b")])
        _run(controller, lambda session: upsert_checklist(session, first))

        copy = ChecklistNote(title="Copy", items=first.items)
        _run(controller, lambda session: upsert_checklist(session, copy))

        loaded_copy = _read(
            controller, lambda s: checklist_to_domain(s.get(DBChecklistNote, str(copy.id)))
        )
        loaded_first = _read(
            controller, lambda s: checklist_to_domain(s.get(DBChecklistNote, str(first.id)))
        )
        count = _read(controller, lambda s: s.scalar(select(func.count()).select_from(DBChecklistItem)))
        assert [item.id for item in loaded_copy.items] == [item.id for item in first.items]
        assert [item.text for item in loaded_copy.items] == ["a", "b"]
        assert loaded_first.items == []
        assert count == 2

    def test_repeated_item_ids_fold_into_one(self, controller, caplog):
        """A repeated item keeps its first position and its last values."""
        item = ChecklistItem(text="first")
        other = ChecklistItem(text="other")
        checklist = ChecklistNote(title="L", items=[item, other, item.replace(text="last", is_done=True)])

        with caplog.at_level(logging.WARNING, logger="mynotes.storage.mapping"):
            _run(controller, lambda session: upsert_checklist(session, checklist))

        loaded = _read(
            controller, lambda s: checklist_to_domain(s.get(DBChecklistNote, str(checklist.id)))
        )
        assert [i.id for i in loaded.items] == [item.id, other.id]
        assert loaded.items[0].text == "last"
        assert loaded.items[0].is_done is True
        assert "repeats item" in caplog.text

    def test_upsert_twice_is_idempotent(self, controller):
        checklist = ChecklistNote(title="L", items=[ChecklistItem(text="one"), ChecklistItem(text="two")])
        _run(controller, lambda session: upsert_checklist(session, checklist))
        _run(controller, lambda session: upsert_checklist(session, checklist))

        count = _read(controller, lambda s: s.scalar(select(func.count()).select_from(DBChecklistItem)))
        assert count == 2


class TestStrictResolution:
    """Strict upserts refuse unknown references instead of dropping them."""

    def test_unknown_folder_raises(self, controller):
        note = Note(title="n", folder_id=uuid.uuid4())

        with pytest.raises(RelationshipError) as exc_info:
            _run(controller, lambda session: upsert_note(session, note, strict=True))

        assert exc_info.value.code == ErrorCode.FOLDER_UNRESOLVED
        assert exc_info.value.target_id == note.folder_id
        assert _read(controller, lambda s: s.get(DBNote, str(note.id))) is None

    def test_unknown_tag_raises(self, controller, tags):
        missing = uuid.uuid4()
        checklist = ChecklistNote(title="c", tag_ids=[tags[0].id, missing])

        with pytest.raises(RelationshipError) as exc_info:
            _run(controller, lambda session: upsert_checklist(session, checklist, strict=True))

        assert exc_info.value.code == ErrorCode.TAG_UNRESOLVED
        assert exc_info.value.details["target_id"] == str(missing)
        assert _read(controller, lambda s: s.get(DBChecklistNote, str(checklist.id))) is None

    def test_resolved_references_are_written(self, controller, folder, tags):
        note = Note(title="n", folder_id=folder.id, tag_ids=[tags[0].id])
        _run(controller, lambda session: upsert_note(session, note, strict=True))

        loaded = _read(controller, lambda s: note_to_domain(s.get(DBNote, str(note.id))))
        assert loaded.folder_id == folder.id
        assert loaded.tag_ids == [tags[0].id]


class TestTagMapping:
    def test_unknown_color_key_becomes_blue(self, controller):
        tag = Tag(name="odd")
        _run(controller, lambda session: upsert_tag(session, tag))

        def recolor(session):
            session.get(DBTag, str(tag.id)).color = "ultraviolet"

        _run(controller, recolor)
        loaded = _read(controller, lambda s: tag_to_domain(s.get(DBTag, str(tag.id))))
        assert loaded.color == TagColor.BLUE

    def test_color_round_trip(self, controller):
        tag = Tag(name="urgent", color=TagColor.PURPLE)
        _run(controller, lambda session: upsert_tag(session, tag))
        loaded = _read(controller, lambda s: tag_to_domain(s.get(DBTag, str(tag.id))))
        assert loaded.same_values(tag)
