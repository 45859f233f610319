"""RecordStore protocol — index + per-record persistence for one record family."""

import re
from typing import Any, Protocol, runtime_checkable

_SAFE_ID_RE = re.compile(r"[^a-zA-Z0-9._\-]")


class StorageError(ValueError):
    """Raised for invalid record ids. I/O failures are never raised."""


def validate_record_id(record_id: str) -> str:
    """Return *record_id* if it is safe to use as a file name.

    Raises ``StorageError`` for empty ids, ids with unsafe characters, or ids
    starting with a dot.
    """
    sanitized = _SAFE_ID_RE.sub("_", record_id).lstrip(".")
    if not sanitized or sanitized != record_id:
        msg = f"Invalid record id: {record_id!r}"
        raise StorageError(msg)
    return record_id


@runtime_checkable
class RecordStore(Protocol):
    """Protocol that every record family backend must satisfy.

    Reads return ``None`` when nothing is stored or the data is unreadable.
    Writes return True on success and False on failure.
    """

    async def load_index(self) -> list[dict[str, Any]] | None:
        """Load the metadata index for the family."""
        ...

    async def save_index(self, entries: list[dict[str, Any]]) -> bool:
        """Replace the whole index."""
        ...

    async def load_record(self, record_id: str) -> dict[str, Any] | None:
        """Load one full record payload."""
        ...

    async def save_record(self, record_id: str, payload: dict[str, Any]) -> bool:
        """Write one full record payload."""
        ...

    async def delete_record(self, record_id: str) -> bool:
        """Delete one record. Returns True if something was removed."""
        ...

    async def list_record_ids(self) -> list[str]:
        """List the ids of all stored records."""
        ...

    async def load_meta(self, key: str) -> Any | None:
        """Read a small metadata value (e.g. a migration marker)."""
        ...

    async def save_meta(self, key: str, value: Any) -> bool:
        """Write a small metadata value."""
        ...
