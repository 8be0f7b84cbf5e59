"""SQLAlchemy database models for the MyNotes store."""
import datetime
import logging
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer,
                        LargeBinary, String, Table, Text, event, inspect,
                        text)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship

logger = logging.getLogger(__name__)

# Bump when the schema gains columns or tables; see migrate_schema().
SCHEMA_VERSION = 3

# Create base class for SQLAlchemy models
Base = declarative_base()


def _utc_naive() -> datetime.datetime:
    """Current UTC time without tzinfo, as SQLite stores it."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# Ordered association tables for tags. Rows go away with either side
# (nullify from the point of view of the tagged record).
note_tags = Table(
    "note_tags",
    Base.metadata,
    Column("note_id", String(36), ForeignKey("notes.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("position", Integer, nullable=False, default=0, server_default="0"),
)

checklist_tags = Table(
    "checklist_tags",
    Base.metadata,
    Column(
        "checklist_id",
        String(36),
        ForeignKey("checklists.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", String(36), ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
    Column("position", Integer, nullable=False, default=0, server_default="0"),
)


class DBFolder(Base):
    """Database model for a folder."""
    __tablename__ = "folders"
    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False, default="", index=True)

    # Nullify: deleting a folder clears folder_id on its notes (ON DELETE SET NULL)
    notes = relationship("DBNote", back_populates="folder", passive_deletes=True)
    checklists = relationship("DBChecklistNote", back_populates="folder", passive_deletes=True)

    def __repr__(self) -> str:
        """Return string representation of folder."""
        return f"<Folder(id='{self.id}', name='{self.name}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False, default="", index=True)
    color = Column(String(20), nullable=True)

    # Association rows are owned by the foreign keys, not by these collections
    notes = relationship("DBNote", secondary=note_tags, viewonly=True)
    checklists = relationship("DBChecklistNote", secondary=checklist_tags, viewonly=True)

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id='{self.id}', name='{self.name}', color='{self.color}')>"


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String(36), primary_key=True)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    folder_id = Column(
        String(36), ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_pinned = Column(Boolean, nullable=False, default=False)
    date = Column(DateTime, nullable=False, default=_utc_naive, index=True)
    image_data = Column(LargeBinary, nullable=True)
    attributed_content = Column(LargeBinary, nullable=True)
    priority = Column(Integer, nullable=False, default=0, server_default="0")

    # Relationships
    folder = relationship("DBFolder", back_populates="notes")
    tags = relationship(
        "DBTag", secondary=note_tags, order_by=note_tags.c.position, viewonly=True
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBChecklistNote(Base):
    """Database model for a checklist."""
    __tablename__ = "checklists"
    id = Column(String(36), primary_key=True)
    title = Column(String(255), nullable=False, default="")
    folder_id = Column(
        String(36), ForeignKey("folders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_pinned = Column(Boolean, nullable=False, default=False)
    date = Column(DateTime, nullable=False, default=_utc_naive, index=True)
    priority = Column(Integer, nullable=False, default=0, server_default="0")

    # Relationships
    folder = relationship("DBFolder", back_populates="checklists")
    items = relationship(
        "DBChecklistItem",
        back_populates="checklist",
        order_by="DBChecklistItem.position",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tags = relationship(
        "DBTag", secondary=checklist_tags, order_by=checklist_tags.c.position, viewonly=True
    )

    def __repr__(self) -> str:
        """Return string representation of checklist."""
        return f"<ChecklistNote(id='{self.id}', title='{self.title}')>"


class DBChecklistItem(Base):
    """Database model for a checklist item."""
    __tablename__ = "checklist_items"
    id = Column(String(36), primary_key=True)
    checklist_id = Column(
        String(36),
        ForeignKey("checklists.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    text = Column(Text, nullable=False, default="")
    is_done = Column(Boolean, nullable=False, default=False)
    position = Column(Integer, nullable=False, default=0, server_default="0")

    checklist = relationship("DBChecklistNote", back_populates="items")

    def __repr__(self) -> str:
        """Return string representation of checklist item."""
        return f"<ChecklistItem(id='{self.id}', checklist='{self.checklist_id}')>"


def install_sqlite_pragmas(engine: Engine, wal: bool = True) -> None:
    """Apply per-connection PRAGMAs.

    Foreign keys must be switched on for every SQLite connection, otherwise
    the ON DELETE rules above are ignored.
    """

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if wal:
            # WAL mode: writes go to separate journal, preventing corruption on crash
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()


def init_db(engine: Engine) -> Engine:
    """Create missing tables and bring an older schema up to date."""
    Base.metadata.create_all(engine)
    migrate_schema(engine)
    return engine


def get_schema_version(engine: Engine) -> int:
    """Read the schema version stored in ``PRAGMA user_version``."""
    with engine.connect() as conn:
        return conn.execute(text("PRAGMA user_version")).scalar() or 0


def migrate_schema(engine: Engine) -> None:
    """Add columns introduced after the first release.

    SQLite doesn't support IF NOT EXISTS for ADD COLUMN, so we check the
    schema first. Existing rows get the column default. This is idempotent
    and safe to run multiple times.
    """
    inspector = inspect(engine)
    added = []

    def _add_column(table: str, column: str, ddl: str) -> None:
        columns = [col["name"] for col in inspector.get_columns(table)]
        if column not in columns:
            with engine.connect() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
                conn.commit()
            added.append(f"{table}.{column}")

    _add_column("notes", "priority", "INTEGER NOT NULL DEFAULT 0")
    _add_column("checklists", "priority", "INTEGER NOT NULL DEFAULT 0")
    _add_column("checklist_items", "position", "INTEGER NOT NULL DEFAULT 0")
    _add_column("note_tags", "position", "INTEGER NOT NULL DEFAULT 0")
    _add_column("checklist_tags", "position", "INTEGER NOT NULL DEFAULT 0")

    current: Optional[int] = get_schema_version(engine)
    if current != SCHEMA_VERSION:
        with engine.connect() as conn:
            # PRAGMA does not accept bound parameters
            conn.execute(text(f"PRAGMA user_version = {int(SCHEMA_VERSION)}"))
            conn.commit()
        logger.info(
            f"Schema upgraded from version {current} to {SCHEMA_VERSION}"
            + (f" (added {', '.join(added)})" if added else "")
        )
