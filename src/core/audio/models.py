"""
Domain models for chunked session audio.

These models have no dependencies on storage, databases, or HTTP. The
naming helpers live here too because the object key layout is part of
the domain: the reconciliation fallback rebuilds keys from nothing but a
session id and a chunk index, so the layout must never drift.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


DEFAULT_EXTENSION = "webm"

# chunk_index reserved for the merged artifact
SENTINEL_CHUNK_INDEX = -1

# expected_chunk_count meaning "use every chunk record that exists"
USE_ALL_CHUNKS = -1

CONTENT_TYPES = {
    "webm": "audio/webm",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
}

_CHUNK_INDEX_PATTERN = re.compile(r"_chunk_(\d+)(?:\.[^.]*)?$")


class SessionStatus(Enum):
    """Lifecycle of a recorded session."""
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass
class Session:
    """
    A recording session.

    The audio pipeline only ever looks at the id. The remaining fields
    exist so the session lookup has something real to return.
    """
    id: int
    patient_name: str = ""
    status: SessionStatus = SessionStatus.SCHEDULED
    scheduled_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class Chunk:
    """
    One uploaded audio fragment, or the merged artifact.

    Frozen because fragments are never modified after they are stored.
    The sentinel (chunk_index == -1) is replaced wholesale on each
    successful reconciliation rather than mutated in place.
    """
    session_id: int
    chunk_index: int
    filename: str
    content_type: str
    remote_locator: Optional[str] = None
    is_terminal: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.chunk_index < SENTINEL_CHUNK_INDEX:
            raise ValueError(
                f"chunk_index must be >= {SENTINEL_CHUNK_INDEX}, got {self.chunk_index}"
            )

    @property
    def is_sentinel(self) -> bool:
        return self.chunk_index == SENTINEL_CHUNK_INDEX

    @classmethod
    def fragment(
        cls,
        session_id: int,
        chunk_index: int,
        remote_locator: str,
        content_type: Optional[str] = None,
        is_terminal: bool = False,
        extension: str = DEFAULT_EXTENSION,
    ) -> "Chunk":
        """Build the record for a stored fragment."""
        if chunk_index < 0:
            raise ValueError("Fragment chunk_index cannot be negative")
        filename = chunk_filename(session_id, chunk_index, extension)
        return cls(
            session_id=session_id,
            chunk_index=chunk_index,
            filename=filename,
            content_type=content_type or guess_content_type(filename),
            remote_locator=remote_locator,
            is_terminal=is_terminal,
        )

    @classmethod
    def sentinel(
        cls,
        session_id: int,
        remote_locator: str,
        extension: str = DEFAULT_EXTENSION,
    ) -> "Chunk":
        """Build the record for a merged artifact."""
        filename = merged_filename(session_id, extension)
        return cls(
            session_id=session_id,
            chunk_index=SENTINEL_CHUNK_INDEX,
            filename=filename,
            content_type=guess_content_type(filename),
            remote_locator=remote_locator,
            is_terminal=True,
        )


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def chunk_filename(session_id: int, chunk_index: int, extension: str = DEFAULT_EXTENSION) -> str:
    return f"{session_id}_chunk_{chunk_index}.{extension}"


def merged_filename(session_id: int, extension: str = DEFAULT_EXTENSION) -> str:
    return f"{session_id}_complete.{extension}"


def chunk_key(session_id: int, chunk_index: int, extension: str = DEFAULT_EXTENSION) -> str:
    """Object key for a fragment: audio/{sid}/chunks/{sid}_chunk_{i}.{ext}"""
    return f"audio/{session_id}/chunks/{chunk_filename(session_id, chunk_index, extension)}"


def merged_key(session_id: int, extension: str = DEFAULT_EXTENSION) -> str:
    """Object key for the merged artifact: audio/{sid}/{sid}_complete.{ext}"""
    return f"audio/{session_id}/{merged_filename(session_id, extension)}"


def chunk_index_from_filename(filename: str) -> int:
    """
    Recover the chunk index embedded in a fragment filename.

    Raises ValueError for names that don't follow the fragment pattern.
    """
    match = _CHUNK_INDEX_PATTERN.search(filename)
    if not match:
        raise ValueError(f"Not a chunk filename: {filename}")
    return int(match.group(1))


def guess_content_type(filename: Optional[str]) -> str:
    """Infer a MIME type from a filename's extension."""
    if not filename or "." not in filename:
        return "application/octet-stream"
    ext = filename.rsplit(".", 1)[-1].lower()
    return CONTENT_TYPES.get(ext, "application/octet-stream")
