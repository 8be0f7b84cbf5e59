"""Persistence controller: owns the SQLite engine and its contexts.

A controller is constructed explicitly and handed to every repository.
It keeps one *main* context, whose session backs the published snapshots,
and hands out *background* contexts for bulk work. Background commits are
merged into the main context with a property-trumps policy: attributes the
main context has modified keep their pending value, everything else is
expired and reloads with the freshly committed data.
"""

import itertools
import logging
import os
import shutil
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, FrozenSet, List, Optional, Set, TypeVar, Union

from sqlalchemy import create_engine, event, func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import QueuePool

from mynotes.config import config
from mynotes.exceptions import (BackupError, DatabaseCorruptionError,
                                ErrorCode, InfrastructureError, NotFoundError)
from mynotes.models.db_models import (DBChecklistItem, DBChecklistNote,
                                      DBFolder, DBNote, DBTag,
                                      get_schema_version, init_db,
                                      install_sqlite_pragmas)
from mynotes.models.schema import utc_now
from mynotes.observability import ErrorReporter, LoggingErrorReporter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# session.info keys maintained by the session event listeners
_PENDING_WRITES = "pending_writes"
_TOUCHED_TABLES = "touched_tables"
_DELETED_KEYS = "deleted_keys"

# Tables whose rows change as a side effect of foreign-key rules
_FK_SIDE_EFFECTS = {
    "folders": {"notes", "checklists"},
    "tags": {"note_tags", "checklist_tags"},
    "notes": {"note_tags"},
    "checklists": {"checklist_items", "checklist_tags"},
}

ALL_TABLES: FrozenSet[str] = frozenset(
    {"folders", "tags", "notes", "checklists", "checklist_items", "note_tags", "checklist_tags"}
)

_CORRUPTION_MARKERS = ("malformed", "not a database", "corrupt", "file is encrypted")


def _is_corruption(error: BaseException) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


def _is_recoverable(error: BaseException) -> bool:
    """Failures worth one automatic retry of the whole unit of work."""
    if isinstance(error, StaleDataError):
        return True
    if isinstance(error, OperationalError):
        message = str(error).lower()
        return "database is locked" in message or "database table is locked" in message
    return False


def _with_side_effects(tables: Set[str]) -> FrozenSet[str]:
    expanded = set(tables)
    for table in tables:
        expanded |= _FK_SIDE_EFFECTS.get(table, set())
    return frozenset(expanded)


@dataclass(frozen=True)
class CommitEvent:
    """Published to commit listeners after changes are committed and merged.

    Attributes:
        context: Name of the context that committed ("main", "background-3")
        tables: Tables whose rows may have changed
        origin: Object that requested the write (a repository), if any
    """

    context: str
    tables: FrozenSet[str] = field(default_factory=frozenset)
    origin: Any = None


class ManagedContext:
    """A session plus the lock that serializes access to it.

    ``perform_and_wait`` is the only sanctioned way to touch the session:
    callers on any thread are marshalled onto the context one at a time.
    """

    def __init__(self, session: Session, name: str, lock: Optional[threading.RLock] = None):
        self.session = session
        self.name = name
        self._lock = lock or threading.RLock()

    @property
    def is_main(self) -> bool:
        return self.name == "main"

    @property
    def has_changes(self) -> bool:
        """Whether committing would write anything."""
        session = self.session
        return bool(
            session.new or session.dirty or session.deleted or session.info.get(_PENDING_WRITES)
        )

    def perform_and_wait(self, work: Callable[[Session], T]) -> T:
        """Run ``work(session)`` on this context and return its result."""
        with self._lock:
            return work(self.session)

    def close(self) -> None:
        with self._lock:
            self.session.close()

    def __repr__(self) -> str:
        return f"<ManagedContext(name='{self.name}')>"


def _track_orm_execute(orm_execute_state) -> None:
    """Record DML issued through Session.execute (bulk deletes, association rows)."""
    if orm_execute_state.is_select:
        return
    if orm_execute_state.is_insert or orm_execute_state.is_update or orm_execute_state.is_delete:
        info = orm_execute_state.session.info
        info[_PENDING_WRITES] = True
        table = getattr(orm_execute_state.statement, "table", None)
        if table is not None:
            info.setdefault(_TOUCHED_TABLES, set()).add(table.name)


def _track_flush(session: Session, flush_context, instances) -> None:
    """Record which tables the unit of work is about to write."""
    tables = session.info.setdefault(_TOUCHED_TABLES, set())
    deleted = session.info.setdefault(_DELETED_KEYS, set())
    if session.new or session.dirty or session.deleted:
        session.info[_PENDING_WRITES] = True
    for obj in list(session.new) + list(session.dirty):
        tables.add(obj.__table__.name)
    for obj in session.deleted:
        tables.add(obj.__table__.name)
        deleted.add(inspect(obj).identity_key)


def _clear_tracking(session: Session, *args) -> None:
    session.info.pop(_PENDING_WRITES, None)
    session.info.pop(_TOUCHED_TABLES, None)
    session.info.pop(_DELETED_KEYS, None)


class PersistenceController:
    """Owns the storage engine lifecycle.

    Args:
        database_path: Store file. Defaults to ``config.database_path``.
            Ignored in memory mode.
        in_memory: Keep the store in a private in-memory database that
            disappears on close. Defaults to ``config.in_memory_db``.
        debug: Fail fast: engine errors propagate unwrapped and are never
            retried. Defaults to ``config.debug``.
        reporter: Sink for infrastructure failures.
        open_store: Open immediately (default True).
    """

    def __init__(
        self,
        database_path: Optional[Union[str, Path]] = None,
        in_memory: Optional[bool] = None,
        debug: Optional[bool] = None,
        reporter: Optional[ErrorReporter] = None,
        open_store: bool = True,
    ):
        self.in_memory = config.in_memory_db if in_memory is None else in_memory
        self.debug = config.debug if debug is None else debug
        self.reporter: ErrorReporter = reporter or LoggingErrorReporter()
        self.database_path: Optional[Path] = None
        if not self.in_memory:
            self.database_path = (
                config.get_absolute_path(Path(database_path))
                if database_path
                else config.get_database_path()
            )

        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None
        self._main: Optional[ManagedContext] = None
        self._keeper: Optional[sqlite3.Connection] = None
        self._memory_name = f"mynotes-{uuid.uuid4().hex}"
        # Background writers are serialized; in memory mode they also share
        # the main lock because shared-cache SQLite has no busy timeout.
        self._main_lock = threading.RLock()
        self._background_lock = self._main_lock if self.in_memory else threading.RLock()
        self._background_ids = itertools.count(1)
        self._listeners: List[Callable[[CommitEvent], None]] = []
        self._listeners_lock = threading.Lock()
        self.recovered_from_corruption: Optional[str] = None

        if open_store:
            self.open()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    @property
    def main_context(self) -> ManagedContext:
        """The context whose state backs every published snapshot."""
        if self._main is None:
            raise InfrastructureError(
                "Store is not open", operation="access", code=ErrorCode.STORAGE_CLOSED
            )
        return self._main

    @property
    def location(self) -> str:
        """Human-readable store location."""
        return ":memory:" if self.in_memory else str(self.database_path)

    def open(self) -> None:
        """Open the store, creating it if absent.

        A store that turns out to be corrupted is moved aside and recreated
        empty; that destructive recovery is logged at CRITICAL and reported.
        """
        if self.is_open:
            return
        try:
            self._open_engine()
        except (SQLAlchemyDatabaseError, sqlite3.DatabaseError) as e:
            self._dispose_engine()
            if not self.in_memory and _is_corruption(e):
                self._recover_from_corruption(e)
                return
            error = InfrastructureError(
                f"Failed to open store at {self.location}: {e}",
                operation="open",
                code=ErrorCode.STORAGE_OPEN_FAILED,
                original_error=e,
            )
            self.reporter.report(error, "PersistenceController.open")
            if self.debug:
                raise
            raise error from e
        logger.info(
            f"Store opened: {self.location} (schema v{get_schema_version(self.engine)})"
        )

    def _open_engine(self, seed: Optional[sqlite3.Connection] = None) -> None:
        if self.in_memory:
            if self._keeper is None:
                # The keeper connection holds the shared in-memory database alive
                self._keeper = sqlite3.connect(
                    f"file:{self._memory_name}?mode=memory&cache=shared",
                    uri=True,
                    check_same_thread=False,
                )
                if seed is not None:
                    seed.backup(self._keeper)
            url = f"sqlite:///file:{self._memory_name}?mode=memory&cache=shared&uri=true"
        else:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{self.database_path}"

        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False},
        )
        install_sqlite_pragmas(engine, wal=not self.in_memory)
        self.engine = engine

        if not self.in_memory:
            with engine.connect() as conn:
                result = conn.execute(text("PRAGMA quick_check")).scalar()
            if result != "ok":
                raise sqlite3.DatabaseError(f"database disk image is malformed: {result}")

        init_db(engine)
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=True)
        event.listen(self.session_factory, "do_orm_execute", _track_orm_execute)
        event.listen(self.session_factory, "before_flush", _track_flush)
        event.listen(self.session_factory, "after_commit", _clear_tracking)
        event.listen(self.session_factory, "after_rollback", _clear_tracking)
        self._main = ManagedContext(self.session_factory(), "main", lock=self._main_lock)

    def _dispose_engine(self) -> None:
        if self._main is not None:
            self._main.close()
            self._main = None
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
        self.session_factory = None

    def close(self) -> None:
        """Close the store. In memory mode its content is discarded."""
        with self._main_lock:
            self._dispose_engine()
            if self._keeper is not None:
                self._keeper.close()
                self._keeper = None
        logger.info(f"Store closed: {self.location}")

    def _recover_from_corruption(self, cause: BaseException) -> None:
        """Last resort: move the unreadable file aside and start empty.

        This is destructive; every record in the old file is gone from the
        live store (the moved file is kept for forensics).
        """
        db_path = self.database_path
        timestamp = utc_now().strftime("%Y%m%dT%H%M%S")
        backup_path = db_path.with_name(f"{db_path.name}.corrupt.{timestamp}.bak")
        logger.critical(
            f"DESTRUCTIVE RECOVERY: store {db_path} is corrupted ({cause}); "
            f"moving it to {backup_path} and recreating an empty store"
        )
        try:
            if db_path.exists():
                shutil.move(str(db_path), str(backup_path))
            for suffix in ("-wal", "-shm"):
                sidecar = db_path.with_name(db_path.name + suffix)
                if sidecar.exists():
                    sidecar.unlink()
            self._open_engine()
        except (OSError, SQLAlchemyError, sqlite3.Error) as e:
            self._dispose_engine()
            error = DatabaseCorruptionError(
                f"Failed to rebuild corrupted store: {e}",
                recovered=False,
                backup_path=str(backup_path),
                code=ErrorCode.DATABASE_RECOVERY_FAILED,
                original_error=e,
            )
            self.reporter.report(error, "PersistenceController.recover")
            raise error from e

        self.recovered_from_corruption = str(backup_path)
        self.reporter.report(
            DatabaseCorruptionError(
                "Corrupted store was rebuilt empty",
                recovered=True,
                backup_path=str(backup_path),
                original_error=cause,
            ),
            "PersistenceController.recover",
        )

    # ------------------------------------------------------------------
    # Commit listeners
    # ------------------------------------------------------------------

    def add_commit_listener(self, listener: Callable[[CommitEvent], None]) -> Callable[[], None]:
        """Register a callback run after every commit; returns an unsubscribe function."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self, commit_event: CommitEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(commit_event)

    # ------------------------------------------------------------------
    # Main context
    # ------------------------------------------------------------------

    def _commit(self, context: ManagedContext) -> FrozenSet[str]:
        """Commit ``context`` if it has changes; returns the touched tables."""
        session = context.session
        if not context.has_changes:
            return frozenset()
        session.flush()
        tables = _with_side_effects(set(session.info.get(_TOUCHED_TABLES, set())))
        deleted_keys = set(session.info.get(_DELETED_KEYS, set()))
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            self._log_commit_failure(e, context)
            raise
        if not context.is_main:
            self._merge_into_main(deleted_keys)
        return tables

    def _log_commit_failure(self, error: SQLAlchemyError, context: ManagedContext) -> None:
        orig = getattr(error, "orig", None)
        logger.error(
            f"Commit failed on {context.name} context: type={type(error).__name__}, "
            f"code={getattr(error, 'code', None)}, "
            f"orig={type(orig).__name__ if orig else None}: {orig}, "
            f"statement={getattr(error, 'statement', None)!r}, "
            f"params={getattr(error, 'params', None)!r}",
            exc_info=True,
        )

    def perform_write(
        self,
        work: Callable[[Session], T],
        operation: str = "write",
        origin: Any = None,
    ) -> T:
        """Run ``work`` on the main context and commit.

        Known recoverable failures re-run the whole unit of work once.
        Other failures are logged, reported and raised as
        InfrastructureError (or unwrapped in debug mode).
        """
        result, _ = self._perform_write(work, operation, origin)
        return result

    def _perform_write(self, work, operation, origin):
        context = self.main_context

        def unit(session: Session):
            try:
                result = work(session)
                tables = self._commit(context)
            except BaseException:
                session.rollback()
                raise
            return result, tables

        attempts = 1 if self.debug else 2
        for attempt in range(1, attempts + 1):
            try:
                result, tables = context.perform_and_wait(unit)
                break
            except SQLAlchemyError as e:
                if self.debug:
                    raise
                recoverable = _is_recoverable(e)
                if recoverable and attempt < attempts:
                    logger.warning(f"{operation}: recoverable storage error, retrying once: {e}")
                    continue
                error = InfrastructureError(
                    f"{operation} failed: {e}",
                    operation=operation,
                    code=(
                        ErrorCode.STALE_OBJECT_CONFLICT
                        if isinstance(e, StaleDataError)
                        else ErrorCode.STORAGE_COMMIT_FAILED
                    ),
                    recoverable=recoverable,
                    original_error=e,
                )
                self.reporter.report(
                    error, operation, retry=lambda: self.perform_write(work, operation, origin)
                )
                raise error from e

        if tables:
            self._notify(CommitEvent(context=context.name, tables=tables, origin=origin))
        return result, tables

    def perform_read(self, work: Callable[[Session], T], operation: str = "fetch") -> T:
        """Run a read-only ``work`` on the main context."""
        try:
            return self.main_context.perform_and_wait(work)
        except SQLAlchemyError as e:
            if self.debug:
                raise
            error = InfrastructureError(
                f"{operation} failed: {e}",
                operation=operation,
                code=ErrorCode.STORAGE_FETCH_FAILED,
                original_error=e,
            )
            self.reporter.report(error, operation)
            raise error from e

    def save(self, context: Optional[ManagedContext] = None) -> bool:
        """Commit pending changes of a context (main by default).

        A no-op when nothing is pending. Safe to call from any thread: the
        commit is marshalled onto the context synchronously.

        Returns:
            True if something was committed.
        """
        if context is not None and not context.is_main:
            return self._save_background(context)
        _, tables = self._perform_write(lambda session: None, "save", None)
        return bool(tables)

    # ------------------------------------------------------------------
    # Background contexts
    # ------------------------------------------------------------------

    def new_background_context(self) -> ManagedContext:
        """A separate writable session on the same store.

        Its uncommitted changes are invisible to the main context; commit it
        with ``save(context)`` to merge them.
        """
        if self.session_factory is None:
            raise InfrastructureError(
                "Store is not open", operation="background", code=ErrorCode.STORAGE_CLOSED
            )
        name = f"background-{next(self._background_ids)}"
        return ManagedContext(self.session_factory(), name, lock=self._background_lock)

    def _save_background(self, context: ManagedContext) -> bool:
        with self._background_lock:
            try:
                tables = context.perform_and_wait(lambda session: self._commit(context))
            except SQLAlchemyError as e:
                if self.debug:
                    raise
                error = InfrastructureError(
                    f"Background commit failed: {e}",
                    operation="background_commit",
                    recoverable=_is_recoverable(e),
                    original_error=e,
                )
                self.reporter.report(error, f"PersistenceController.save({context.name})")
                raise error from e
        if tables:
            self._notify(CommitEvent(context=context.name, tables=tables))
        return bool(tables)

    def perform_background_task(
        self, work: Callable[[ManagedContext], T], operation: str = "background"
    ) -> T:
        """Run ``work`` on a fresh background context, commit and merge.

        Background tasks run one at a time.
        """
        context = self.new_background_context()
        try:
            with self._background_lock:
                try:
                    result = work(context)
                except BaseException:
                    context.session.rollback()
                    raise
                self._save_background(context)
            return result
        finally:
            context.close()

    def _merge_into_main(self, deleted_keys: Set[Any]) -> None:
        """Bring committed background changes into the main context.

        Objects deleted in the background are dropped. Unmodified objects
        are expired. Modified objects keep their pending attributes and only
        the untouched ones are expired (property trumps).
        """
        if self._main is None:
            return

        def merge(session: Session) -> None:
            for obj in list(session.identity_map.values()):
                state = inspect(obj)
                if state.identity_key in deleted_keys:
                    session.expunge(obj)
                elif not state.modified:
                    session.expire(obj)
                else:
                    stale = [attr.key for attr in state.attrs if not attr.history.has_changes()]
                    if stale:
                        session.expire(obj, stale)

        self._main.perform_and_wait(merge)

    # ------------------------------------------------------------------
    # Backup / restore file swap
    # ------------------------------------------------------------------

    def create_backup(self, destination: Union[str, Path]) -> Path:
        """Copy the store to ``destination`` after a fresh commit.

        Uses SQLite's online backup API into a temporary file that is then
        renamed into place, so a partially written backup never appears
        under the final name.
        """
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)
        temp_path = destination.with_name(destination.name + ".tmp")
        self.save()
        try:
            with self._background_lock:
                dest_conn = sqlite3.connect(str(temp_path))
                try:
                    if self.in_memory:
                        self._keeper.backup(dest_conn)
                    else:
                        source_conn = sqlite3.connect(str(self.database_path))
                        try:
                            source_conn.backup(dest_conn)
                        finally:
                            source_conn.close()
                finally:
                    dest_conn.close()
            os.replace(temp_path, destination)
        except (OSError, sqlite3.Error) as e:
            if temp_path.exists():
                temp_path.unlink()
            error = BackupError(
                f"Failed to create backup: {e}", path=str(destination), original_error=e
            )
            self.reporter.report(error, "PersistenceController.create_backup")
            raise error from e
        logger.info(f"Backup written: {destination}")
        return destination

    def restore_from_backup(self, source: Union[str, Path]) -> None:
        """Replace the store with ``source`` and reopen it.

        If copying fails the store is reopened as it was (file mode) and the
        failure raised, so the controller never stays closed.
        """
        source = Path(source)
        if not source.exists():
            raise NotFoundError(source.name, kind="backup", code=ErrorCode.BACKUP_NOT_FOUND)
        _verify_sqlite_file(source)

        with self._main_lock:
            # Memory stores vanish on close; keep a copy to fall back on
            fallback: Optional[sqlite3.Connection] = None
            if self.in_memory and self._keeper is not None:
                fallback = sqlite3.connect(":memory:")
                self._keeper.backup(fallback)
            self.close()
            try:
                if self.in_memory:
                    backup_conn = sqlite3.connect(str(source))
                    try:
                        self._open_engine(seed=backup_conn)
                    finally:
                        backup_conn.close()
                else:
                    for suffix in ("-wal", "-shm"):
                        sidecar = self.database_path.with_name(self.database_path.name + suffix)
                        if sidecar.exists():
                            sidecar.unlink()
                    temp_path = self.database_path.with_name(self.database_path.name + ".restore")
                    shutil.copy2(source, temp_path)
                    os.replace(temp_path, self.database_path)
                    self._open_engine()
            except (OSError, SQLAlchemyError, sqlite3.Error) as e:
                self._dispose_engine()
                if self._keeper is not None:
                    self._keeper.close()
                    self._keeper = None
                self._open_engine(seed=fallback)
                error = BackupError(
                    f"Failed to restore from backup: {e}",
                    path=str(source),
                    code=ErrorCode.RESTORE_FAILED,
                    original_error=e,
                )
                self.reporter.report(error, "PersistenceController.restore_from_backup")
                raise error from e
            finally:
                if fallback is not None:
                    fallback.close()

        logger.info(f"Store restored from {source}")
        self._notify(CommitEvent(context="main", tables=ALL_TABLES))

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def check_integrity(self) -> dict:
        """Run SQLite's integrity check and count rows per entity."""
        def work(session: Session) -> dict:
            result = session.execute(text("PRAGMA integrity_check")).scalar()
            counts = {
                model.__tablename__: session.scalar(select(func.count()).select_from(model))
                for model in (DBNote, DBChecklistNote, DBChecklistItem, DBFolder, DBTag)
            }
            return {
                "ok": result == "ok",
                "result": result,
                "schema_version": get_schema_version(self.engine),
                "location": self.location,
                "counts": counts,
            }

        return self.perform_read(work, operation="check_integrity")


def _verify_sqlite_file(path: Path) -> None:
    """Refuse to restore from something that is not a readable SQLite store."""
    try:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True)
        try:
            result = conn.execute("PRAGMA quick_check").fetchone()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise BackupError(
            f"Backup is not a readable store: {e}",
            path=str(path),
            code=ErrorCode.RESTORE_FAILED,
            original_error=e,
        ) from e
    if not result or result[0] != "ok":
        raise BackupError(
            f"Backup failed integrity check: {result}",
            path=str(path),
            code=ErrorCode.RESTORE_FAILED,
        )
