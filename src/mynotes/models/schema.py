"""Domain records for the MyNotes core.

These are the plain values handed to and returned by the repositories.
They never hold references to persisted entities: relationships are
expressed as identifiers (``folder_id``, ``tag_ids``) and resolved by the
mapping layer at write time.
"""

import datetime
from datetime import timezone
from enum import Enum, IntEnum
from typing import Any, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite stores datetimes without an offset, so values coming back from
    the database are naive and are assumed to be UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same instant as an aware UTC datetime (``utc_now()`` for None).
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value.astimezone(timezone.utc)


class Priority(IntEnum):
    """Priority of a note or checklist."""

    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class TagColor(str, Enum):
    """Fixed palette of tag colors, stored by key."""

    RED = "red"
    ORANGE = "orange"
    YELLOW = "yellow"
    GREEN = "green"
    BLUE = "blue"
    PURPLE = "purple"
    PINK = "pink"
    GRAY = "gray"

    @classmethod
    def from_key(cls, key: Optional[str]) -> "TagColor":
        """Rehydrate a stored color key; unknown or missing keys become blue."""
        if key is None:
            return cls.BLUE
        try:
            return cls(key)
        except ValueError:
            return cls.BLUE


class Record(BaseModel):
    """Base for identified domain records.

    Records are frozen; edits produce copies through ``replace``.
    Equality and hashing go by identity only, so two snapshots of the same
    note compare equal even when their fields differ. Use
    ``same_values`` to compare field by field.
    """

    id: UUID = Field(default_factory=uuid4, description="Stable unique identifier")

    model_config = {"frozen": True, "extra": "forbid"}

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Record):
            return NotImplemented
        return type(self) is type(other) and self.id == other.id

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.id))

    def same_values(self, other: "Record") -> bool:
        """Compare every field, not just the identifier."""
        return type(self) is type(other) and self.model_dump() == other.model_dump()

    def replace(self, **changes: Any):
        """Return a validated copy with the given fields replaced."""
        data = self.model_dump()
        data.update(changes)
        return type(self).model_validate(data)


class _Dated(Record):
    """Shared validation for records carrying a modification date."""

    @field_validator("date", mode="after", check_fields=False)
    @classmethod
    def normalize_date(cls, v: datetime.datetime) -> datetime.datetime:
        """Store every date as aware UTC."""
        return ensure_timezone_aware(v)


class ChecklistItem(Record):
    """One line of a checklist."""

    text: str = Field(default="", description="Item text")
    is_done: bool = Field(default=False, description="Whether the item is checked")


class Note(_Dated):
    """A free-text note."""

    title: str = Field(default="", description="Title of the note")
    content: str = Field(default="", description="Plain text content")
    folder_id: Optional[UUID] = Field(default=None, description="Owning folder, if any")
    is_pinned: bool = Field(default=False)
    date: datetime.datetime = Field(
        default_factory=utc_now, description="Last modification time (UTC)"
    )
    image_data: Optional[bytes] = Field(default=None, description="Attached image")
    attributed_content: Optional[bytes] = Field(
        default=None, description="Encoded rich-text rendering of the content"
    )
    tag_ids: List[UUID] = Field(default_factory=list, description="Ordered tag references")
    priority: Priority = Field(default=Priority.NONE)

    # Image and rich-text payloads are binary
    model_config = {"ser_json_bytes": "base64", "val_json_bytes": "base64"}


class ChecklistNote(_Dated):
    """A checklist owning an ordered list of items."""

    title: str = Field(default="", description="Title of the checklist")
    folder_id: Optional[UUID] = Field(default=None)
    items: List[ChecklistItem] = Field(default_factory=list)
    is_pinned: bool = Field(default=False)
    date: datetime.datetime = Field(default_factory=utc_now)
    tag_ids: List[UUID] = Field(default_factory=list)
    priority: Priority = Field(default=Priority.NONE)

    @property
    def completed_count(self) -> int:
        """Number of checked items."""
        return sum(1 for item in self.items if item.is_done)


class Folder(Record):
    """A folder grouping notes and checklists."""

    name: str = Field(default="", description="Display name")


class Tag(Record):
    """A colored label attached to notes and checklists."""

    name: str = Field(default="", description="Tag name")
    color: TagColor = Field(default=TagColor.BLUE)

    @field_validator("color", mode="before")
    @classmethod
    def coerce_color(cls, v: Any) -> TagColor:
        """Accept stored keys and fall back to blue for unknown ones."""
        if isinstance(v, TagColor):
            return v
        return TagColor.from_key(v)

    def __str__(self) -> str:
        return self.name
