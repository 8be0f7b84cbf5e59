"""Tests for the note, checklist, folder and tag repositories."""
import datetime
import threading
import uuid

import pytest
from sqlalchemy import event, func, select

from mynotes.models.db_models import DBChecklistItem
from mynotes.models.schema import (ChecklistItem, ChecklistNote, Note,
                                   Priority, TagColor)
from mynotes.storage.note_cache import InMemoryNoteCache, ThreadSafeNoteCache
from mynotes.storage.note_repository import NoteRepository


def _at(minutes: int) -> datetime.datetime:
    return datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc) + datetime.timedelta(
        minutes=minutes
    )


class TestNoteRepository:
    """CRUD and snapshot behavior for notes."""

    def test_create_then_load_returns_exactly_one(self, note_repository):
        """The created identifier appears exactly once after a reload."""
        note = note_repository.create("A", content="first")
        loaded = note_repository.load_all()

        assert [n.id for n in loaded].count(note.id) == 1
        assert note_repository.get(note.id).content == "first"

    def test_create_uses_defaults(self, note_repository):
        note = note_repository.create("Defaults")
        assert note.is_pinned is False
        assert note.priority == Priority.NONE
        assert note.tag_ids == []
        assert note.folder_id is None
        assert (datetime.datetime.now(datetime.timezone.utc) - note.date).total_seconds() < 60

    def test_load_all_sorts_newest_first(self, note_repository):
        for minutes, title in [(5, "middle"), (10, "newest"), (1, "oldest")]:
            note_repository.save(Note(title=title, date=_at(minutes)))

        assert [n.title for n in note_repository.load_all()] == ["newest", "middle", "oldest"]

    def test_update_replaces_fields_and_refreshes_date(self, note_repository):
        note = note_repository.save(Note(title="Old", content="body", date=_at(0)))

        updated = note_repository.update(note, title="New")

        assert updated.id == note.id
        assert updated.title == "New"
        assert updated.content == "body"
        assert updated.date > note.date
        assert note_repository.get(note.id).title == "New"

    def test_update_of_deleted_record_is_noop(self, note_repository):
        """A stale snapshot must not resurrect a deleted note."""
        note = note_repository.create("Gone")
        note_repository.delete(note.id)

        assert note_repository.update(note, title="Back?") is None
        assert note_repository.load_all() == []

    def test_update_rejects_id_change(self, note_repository):
        note = note_repository.create("A")
        with pytest.raises(ValueError):
            note_repository.update(note, id=uuid.uuid4())

    def test_delete_then_load_never_contains_id(self, note_repository):
        keep = note_repository.create("keep")
        gone = note_repository.create("gone")

        note_repository.delete(gone.id)

        ids = [n.id for n in note_repository.load_all()]
        assert gone.id not in ids
        assert keep.id in ids

    def test_delete_unknown_id_is_noop(self, note_repository):
        note_repository.create("A")
        before = note_repository.load_all()

        assert note_repository.delete(uuid.uuid4()) == 0
        assert [n.id for n in note_repository.load_all()] == [n.id for n in before]

    def test_delete_many_uses_one_statement(self, controller, note_repository):
        """Multi-id deletion is a single batch DELETE."""
        notes = [note_repository.create(f"n{i}") for i in range(5)]
        statements = []

        def capture(conn, cursor, statement, parameters, context, executemany):
            if statement.lstrip().upper().startswith("DELETE FROM NOTES"):
                statements.append(statement)

        event.listen(controller.engine, "before_cursor_execute", capture)
        try:
            removed = note_repository.delete([n.id for n in notes[:4]] + [uuid.uuid4()])
        finally:
            event.remove(controller.engine, "before_cursor_execute", capture)

        assert removed == 4
        assert len(statements) == 1
        assert [n.id for n in note_repository.items] == [notes[4].id]

    def test_toggle_pin_twice_restores_state(self, note_repository):
        note = note_repository.create("Pin me")

        pinned = note_repository.toggle_pin(note)
        assert pinned.is_pinned is True
        unpinned = note_repository.toggle_pin(pinned)

        assert unpinned.is_pinned is False
        assert note_repository.get(note.id).is_pinned is False

    def test_toggle_pin_keeps_date(self, note_repository):
        note = note_repository.save(Note(title="Dated", date=_at(3)))
        assert note_repository.toggle_pin(note).date == _at(3)

    def test_subscribers_receive_each_snapshot(self, note_repository):
        snapshots = []
        unsubscribe = note_repository.subscribe(snapshots.append)

        note_repository.create("one")
        note_repository.create("two")
        unsubscribe()
        note_repository.create("three")

        assert [len(s) for s in snapshots] == [1, 2]

    def test_fetch_page_and_count(self, note_repository):
        for minutes in range(7):
            note_repository.save(Note(title=f"n{minutes}", date=_at(minutes)))

        assert note_repository.count() == 7
        page = note_repository.fetch_page(limit=3, offset=2)
        assert [n.title for n in page] == ["n4", "n3", "n2"]

    def test_fetch_by_ids(self, note_repository):
        a = note_repository.create("a")
        note_repository.create("b")
        c = note_repository.create("c")

        fetched = note_repository.fetch_by_ids([a.id, c.id, uuid.uuid4()])
        assert {n.id for n in fetched} == {a.id, c.id}
        assert note_repository.fetch_by_ids([]) == []

    def test_search_matches_title_and_content(self, note_repository):
        note_repository.create("Shopping", content="milk and eggs")
        note_repository.create("Meeting", content="Discuss MILK budget")
        note_repository.create("Other", content="nothing here")

        assert {n.title for n in note_repository.search("milk")} == {"Shopping", "Meeting"}
        assert note_repository.search("   ") == []

    def test_search_treats_wildcards_literally(self, note_repository):
        note_repository.create("Progress", content="100% done")
        note_repository.create("Other", content="1000 done")

        assert [n.title for n in note_repository.search("100%")] == ["Progress"]
        assert note_repository.search("_") == []

    def test_in_folder(self, note_repository, folder_repository):
        work = folder_repository.create("Work")
        filed = note_repository.create("filed", folder_id=work.id)
        loose = note_repository.create("loose")

        assert note_repository.in_folder(work.id) == [filed]
        assert note_repository.in_folder(None) == [loose]

    def test_concurrent_creates_are_serialized(self, note_repository):
        """Writers on other threads are marshalled onto the main context."""
        errors = []

        def writer(prefix):
            try:
                for i in range(5):
                    note_repository.create(f"{prefix}-{i}")
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(t,)) for t in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert note_repository.count() == 20
        assert len(note_repository.load_all()) == 20


class TestNoteRepositoryCache:
    """The optional cache mirrors the snapshot."""

    def test_cache_is_filled_and_pruned(self, controller):
        cache = ThreadSafeNoteCache(InMemoryNoteCache())
        repository = NoteRepository(controller, cache=cache)
        try:
            note = repository.create("cached")
            assert cache.get(note.id).same_values(note)

            repository.delete(note.id)
            assert cache.get(note.id) is None
            assert repository.get(note.id) is None
        finally:
            repository.close()


class TestChecklistRepository:
    """Checklists own their items."""

    def test_create_with_items(self, checklist_repository):
        checklist = checklist_repository.create(
            "Groceries", items=[ChecklistItem(text="Milk"), ChecklistItem(text="Eggs", is_done=True)]
        )
        loaded = checklist_repository.get(checklist.id)

        assert [item.text for item in loaded.items] == ["Milk", "Eggs"]
        assert loaded.completed_count == 1

    def test_replacing_three_items_with_two(self, checklist_repository):
        original = checklist_repository.create(
            "L", items=[ChecklistItem(text=t) for t in ("a", "b", "c")]
        )
        checklist_repository.update(
            original, items=[ChecklistItem(text="x"), ChecklistItem(text="y")]
        )

        reloaded = checklist_repository.load_all()[0]
        assert [item.text for item in reloaded.items] == ["x", "y"]
        assert not {item.id for item in reloaded.items} & {item.id for item in original.items}

    def test_delete_cascades_to_items(self, controller, checklist_repository):
        checklist = checklist_repository.create(
            "L", items=[ChecklistItem(text=t) for t in ("a", "b", "c")]
        )
        checklist_repository.delete(checklist.id)

        remaining = controller.perform_read(
            lambda s: s.scalar(select(func.count()).select_from(DBChecklistItem))
        )
        assert remaining == 0
        assert checklist_repository.items == []

    def test_toggle_item(self, checklist_repository):
        item = ChecklistItem(text="task")
        checklist = checklist_repository.create("L", items=[item, ChecklistItem(text="other")])

        toggled = checklist_repository.toggle_item(checklist, item.id)

        assert toggled.items[0].is_done is True
        assert toggled.items[0].id == item.id
        assert toggled.items[1].is_done is False

    def test_sort_and_toggle_pin(self, checklist_repository):
        older = checklist_repository.save(ChecklistNote(title="older", date=_at(1)))
        checklist_repository.save(ChecklistNote(title="newer", date=_at(2)))

        assert [c.title for c in checklist_repository.items] == ["newer", "older"]
        pinned = checklist_repository.toggle_pin(older)
        assert checklist_repository.toggle_pin(pinned).is_pinned is False

    def test_search_matches_item_text(self, checklist_repository):
        checklist_repository.create("Groceries", items=[ChecklistItem(text="Oat milk")])
        checklist_repository.create("Milk run")
        checklist_repository.create("Chores", items=[ChecklistItem(text="Laundry")])

        assert {c.title for c in checklist_repository.search("milk")} == {"Groceries", "Milk run"}


class TestFolderRepository:
    """Folders sort by name and nullify references when deleted."""

    def test_sorted_by_name(self, folder_repository):
        for name in ("Work", "Archive", "Personal"):
            folder_repository.create(name)
        assert [f.name for f in folder_repository.items] == ["Archive", "Personal", "Work"]

    def test_deleting_folder_keeps_notes(self, folder_repository, note_repository, checklist_repository):
        """Notes filed in a deleted folder survive with no folder."""
        work = folder_repository.create("Work")
        note = note_repository.create("A", folder_id=work.id)
        checklist = checklist_repository.create("C", folder_id=work.id)

        folder_repository.delete(work.id)
        reloaded = note_repository.load_all()

        assert [n.id for n in reloaded] == [note.id]
        assert reloaded[0].folder_id is None
        assert checklist_repository.load_all()[0].folder_id is None
        assert checklist_repository.get(checklist.id) is not None

    def test_other_repositories_refresh_after_folder_delete(self, folder_repository, note_repository):
        """Commits that touch notes indirectly reload the note snapshot."""
        work = folder_repository.create("Work")
        note = note_repository.create("A", folder_id=work.id)

        folder_repository.delete(work.id)

        assert note_repository.get(note.id).folder_id is None

    def test_rename(self, folder_repository):
        folder = folder_repository.create("Wrok")
        renamed = folder_repository.rename(folder, "Work")
        assert renamed.id == folder.id
        assert [f.name for f in folder_repository.items] == ["Work"]

    def test_ensure_defaults_only_when_empty(self, folder_repository):
        assert folder_repository.ensure_defaults() is True
        assert [f.name for f in folder_repository.items] == ["Personal", "Work"]
        assert folder_repository.ensure_defaults() is False
        assert folder_repository.count() == 2


class TestTagRepository:
    """Tags and their associations."""

    def test_sorted_by_name(self, tag_repository):
        tag_repository.create("zeta")
        tag_repository.create("alpha", color=TagColor.RED)
        assert [t.name for t in tag_repository.items] == ["alpha", "zeta"]
        assert tag_repository.items[0].color == TagColor.RED

    def test_deleting_tag_nullifies_references(self, tag_repository, note_repository, checklist_repository):
        """update(tag_ids=[x, y]) then delete(x) leaves [y]."""
        x = tag_repository.create("x")
        y = tag_repository.create("y")
        note = note_repository.create("N")
        note_repository.update(note, tag_ids=[x.id, y.id])
        checklist = checklist_repository.create("C", tag_ids=[x.id])

        tag_repository.delete(x.id)

        assert note_repository.load_all()[0].tag_ids == [y.id]
        assert checklist_repository.load_all()[0].tag_ids == []
        assert checklist_repository.get(checklist.id) is not None

    def test_tag_and_untag_note(self, tag_repository, note_repository):
        x = tag_repository.create("x")
        y = tag_repository.create("y")
        note = note_repository.save(Note(title="N", date=_at(0)))

        assert tag_repository.tag_note(y.id, note.id) is True
        assert tag_repository.tag_note(x.id, note.id) is True
        assert tag_repository.tag_note(x.id, note.id) is False

        reloaded = note_repository.get(note.id)
        assert reloaded.tag_ids == [y.id, x.id]
        assert reloaded.date == _at(0)

        assert tag_repository.untag_note(y.id, note.id) is True
        assert tag_repository.untag_note(y.id, note.id) is False
        assert note_repository.get(note.id).tag_ids == [x.id]

    def test_tag_unknown_records_is_noop(self, tag_repository, checklist_repository):
        x = tag_repository.create("x")
        checklist = checklist_repository.create("C")

        assert tag_repository.tag_checklist(x.id, uuid.uuid4()) is False
        assert tag_repository.tag_checklist(uuid.uuid4(), checklist.id) is False
        assert tag_repository.tag_checklist(x.id, checklist.id) is True
        assert checklist_repository.get(checklist.id).tag_ids == [x.id]
        assert tag_repository.untag_checklist(x.id, checklist.id) is True

    def test_lookups_and_usage_counts(self, tag_repository, note_repository, checklist_repository):
        x = tag_repository.create("x")
        y = tag_repository.create("y")
        unused = tag_repository.create("unused")
        n1 = note_repository.create("n1", tag_ids=[x.id])
        n2 = note_repository.create("n2", tag_ids=[x.id, y.id])
        c1 = checklist_repository.create("c1", tag_ids=[x.id])

        assert set(tag_repository.note_ids_with_tag(x.id)) == {n1.id, n2.id}
        assert tag_repository.checklist_ids_with_tag(x.id) == [c1.id]
        assert tag_repository.usage_counts() == {x.id: 3, y.id: 1, unused.id: 0}
        assert tag_repository.get_by_ids([y.id, uuid.uuid4(), x.id]) == [y, x]
        assert tag_repository.find_by_name(" X ") == x
