"""Utility functions for the MyNotes core."""
from typing import Iterable, Iterator, List, TypeVar, Union
from uuid import UUID

T = TypeVar("T")


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Search text is user input; a '%' or '_' in it must match itself and
    not act as a wildcard.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for use with ``escape="\\\\"``

    Example:
        >>> escape_like_pattern("100% done")
        '100\\% done'
        >>> escape_like_pattern("to_do")
        'to\\_do'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def chunked(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive lists of at most ``size`` items."""
    if size < 1:
        raise ValueError("size must be >= 1")
    batch: List[T] = []
    for item in items:
        batch.append(item)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def as_uuid(value: Union[str, UUID]) -> UUID:
    """Coerce a stored or user-supplied identifier to a UUID."""
    return value if isinstance(value, UUID) else UUID(str(value))
