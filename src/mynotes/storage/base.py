"""Repository base: snapshot, observers and the shared write path."""

import logging
import threading
from typing import (Any, Callable, FrozenSet, Generic, Iterable, List,
                    Optional, Sequence, TypeVar, Union)
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from mynotes.models.schema import Record, utc_now
from mynotes.observability import traced
from mynotes.storage.persistence import CommitEvent, PersistenceController

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)

Subscriber = Callable[[List[Any]], None]


class Repository(Generic[T]):
    """Store for one record family.

    The repository publishes ``items``, a full snapshot reloaded from the
    store after every mutation (and after commits by other writers that
    touched its tables). Observers registered with ``subscribe`` receive
    each new snapshot; they never touch storage themselves.

    Subclasses set ``db_model``, ``watched_tables`` and ``refreshes_date``
    and implement ``_to_domain``, ``_upsert`` and ``_ordering``.
    """

    entity_name = "record"
    db_model: Any = None
    watched_tables: FrozenSet[str] = frozenset()
    # Whether update() stamps the record with the current time
    refreshes_date = False

    def __init__(self, controller: PersistenceController):
        self.controller = controller
        self._items: List[T] = []
        self._items_lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._remove_listener = controller.add_commit_listener(self._on_commit)
        self.load_all()

    # -- hooks ---------------------------------------------------------------

    def _to_domain(self, row: Any) -> T:
        raise NotImplementedError

    def _upsert(self, session: Session, record: T) -> Any:
        raise NotImplementedError

    def _ordering(self) -> Sequence[Any]:
        raise NotImplementedError

    # -- snapshot and observers ---------------------------------------------

    @property
    def items(self) -> List[T]:
        """The current snapshot (a copy)."""
        with self._items_lock:
            return list(self._items)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback(snapshot)`` after every reload.

        Callbacks run on the thread that triggered the reload, which may be
        a background worker after an import.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, snapshot: List[T]) -> None:
        for callback in list(self._subscribers):
            callback(snapshot)

    def _on_commit(self, commit_event: CommitEvent) -> None:
        # Our own writes reload explicitly once they are committed
        if commit_event.origin is self:
            return
        if commit_event.tables & self.watched_tables:
            logger.debug(
                f"{self.entity_name}: reloading after commit on {commit_event.context}"
            )
            self.load_all()

    def close(self) -> None:
        """Stop listening to the controller and drop all observers."""
        self._remove_listener()
        self._subscribers.clear()

    # -- reads ---------------------------------------------------------------

    def _query(self):
        return select(self.db_model).order_by(*self._ordering())

    @traced("load_all")
    def load_all(self) -> List[T]:
        """Reload the full snapshot from the store and notify observers."""
        snapshot = self.controller.perform_read(
            lambda session: [self._to_domain(row) for row in session.scalars(self._query())],
            operation=f"{self.entity_name}.load_all",
        )
        with self._items_lock:
            self._items = snapshot
        self._emit(list(snapshot))
        return list(snapshot)

    def get(self, record_id: UUID) -> Optional[T]:
        """Look a record up in the current snapshot."""
        with self._items_lock:
            for record in self._items:
                if record.id == record_id:
                    return record
        return None

    def fetch_by_ids(self, record_ids: Iterable[UUID]) -> List[T]:
        """Fetch records straight from the store, in snapshot order."""
        keys = [str(record_id) for record_id in record_ids]
        if not keys:
            return []
        return self.controller.perform_read(
            lambda session: [
                self._to_domain(row)
                for row in session.scalars(self._query().where(self.db_model.id.in_(keys)))
            ],
            operation=f"{self.entity_name}.fetch_by_ids",
        )

    def fetch_page(self, limit: int, offset: int = 0) -> List[T]:
        """One page of records in snapshot order."""
        if limit < 0 or offset < 0:
            raise ValueError("limit and offset must be >= 0")
        return self.controller.perform_read(
            lambda session: [
                self._to_domain(row)
                for row in session.scalars(self._query().limit(limit).offset(offset))
            ],
            operation=f"{self.entity_name}.fetch_page",
        )

    def count(self) -> int:
        return self.controller.perform_read(
            lambda session: session.scalar(select(func.count()).select_from(self.db_model)),
            operation=f"{self.entity_name}.count",
        )

    # -- writes --------------------------------------------------------------

    def _write(self, work: Callable[[Session], Any], operation: str) -> Any:
        """Run ``work`` on the main context, commit, then reload."""
        result = self.controller.perform_write(
            work, operation=f"{self.entity_name}.{operation}", origin=self
        )
        self.load_all()
        return result

    @traced("save")
    def save(self, record: T) -> T:
        """Upsert ``record`` exactly as given."""
        self._write(lambda session: self._upsert(session, record), "save")
        return record

    def _update(self, existing: T, changes: dict, refresh_date: bool) -> Optional[T]:
        if refresh_date:
            changes = {**changes, "date": utc_now()}
        updated = existing.replace(**changes)

        def work(session: Session) -> Optional[T]:
            if session.get(self.db_model, str(existing.id)) is None:
                logger.debug(f"{self.entity_name} {existing.id} no longer exists; update skipped")
                return None
            self._upsert(session, updated)
            return updated

        return self._write(work, "update")

    @traced("update")
    def update(self, existing: T, **changes: Any) -> Optional[T]:
        """Apply ``changes`` to a copy of ``existing`` and store it.

        Returns:
            The stored record, or None if ``existing`` has been deleted.
        """
        if "id" in changes:
            raise ValueError("id cannot be changed")
        return self._update(existing, changes, refresh_date=self.refreshes_date)

    @traced("delete")
    def delete(self, id_or_ids: Union[UUID, Iterable[UUID]]) -> int:
        """Delete one record or many; unknown identifiers are ignored.

        Returns:
            Number of rows removed.
        """
        if isinstance(id_or_ids, (UUID, str)):
            return self.delete_many([id_or_ids])
        return self.delete_many(id_or_ids)

    def delete_many(self, record_ids: Iterable[UUID]) -> int:
        """Delete with a single batch statement."""
        keys = list({str(record_id) for record_id in record_ids})
        if not keys:
            return 0

        def work(session: Session) -> int:
            existing = list(session.scalars(select(self.db_model.id).where(self.db_model.id.in_(keys))))
            if not existing:
                return 0
            session.execute(
                delete(self.db_model)
                .where(self.db_model.id.in_(existing))
                .execution_options(synchronize_session="fetch")
            )
            return len(existing)

        removed = self._write(work, "delete")
        if removed < len(keys):
            logger.debug(f"{self.entity_name}: {len(keys) - removed} id(s) to delete were not found")
        return removed
