"""Key/value caches of notes, keyed by note id."""

import logging
import threading
from typing import Dict, Optional, Protocol
from uuid import UUID

from pydantic import ValidationError

from mynotes.models.schema import Note

logger = logging.getLogger(__name__)


class NoteCache(Protocol):
    """What NoteRepository expects from a cache."""

    def cache(self, note: Note) -> None:
        ...

    def get(self, note_id: UUID) -> Optional[Note]:
        ...

    def remove(self, note_id: UUID) -> None:
        ...

    def clear(self) -> None:
        ...


class InMemoryNoteCache:
    """Stores notes as JSON documents, like a preferences store would.

    Entries that fail to decode are treated as missing.
    """

    def __init__(self):
        self._entries: Dict[str, str] = {}

    def cache(self, note: Note) -> None:
        self._entries[str(note.id)] = note.model_dump_json()

    def get(self, note_id: UUID) -> Optional[Note]:
        data = self._entries.get(str(note_id))
        if data is None:
            return None
        try:
            return Note.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"Discarding unreadable cache entry {note_id}: {e}")
            self._entries.pop(str(note_id), None)
            return None

    def remove(self, note_id: UUID) -> None:
        self._entries.pop(str(note_id), None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class ThreadSafeNoteCache:
    """Serializes every call to the wrapped cache through one lock."""

    def __init__(self, cache: NoteCache):
        self._cache = cache
        self._lock = threading.Lock()

    def cache(self, note: Note) -> None:
        with self._lock:
            self._cache.cache(note)

    def get(self, note_id: UUID) -> Optional[Note]:
        with self._lock:
            return self._cache.get(note_id)

    def remove(self, note_id: UUID) -> None:
        with self._lock:
            self._cache.remove(note_id)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
