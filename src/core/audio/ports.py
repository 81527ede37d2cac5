"""
Interfaces the audio pipeline depends on.

Using Protocols here means the ingestion service and reconciliation
engine don't know whether they're talking to S3 and Snowflake or to
in-memory stand-ins. They just need something that can store bytes and
something that can remember chunk records.
"""

from pathlib import Path
from typing import Optional, Protocol

from .models import Chunk, Session


class ObjectStore(Protocol):
    """Remote blob storage addressed by key, returning locators."""

    bucket_name: str

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        """Store data under key and return its locator. Raises StorageError."""
        ...

    async def get(self, locator: str, destination: Path) -> bool:
        """Fetch locator into destination. Returns False if unavailable."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove an object. Returns False on failure, never raises."""
        ...

    async def exists(self, key: str) -> bool:
        """Check whether an object is present, before downloading it or trusting a sentinel."""
        ...

    def extract_key(self, locator: str) -> str:
        """Recover the object key from a locator this store produced."""
        ...


class ChunkRepository(Protocol):
    """Durable (session, chunk index) -> Chunk mapping."""

    def save(self, chunk: Chunk) -> None:
        ...

    def find_ordered_by_session(self, session_id: int) -> list[Chunk]:
        """Fragments only (chunk_index >= 0), ascending by index."""
        ...

    def find_sentinel(self, session_id: int) -> Optional[Chunk]:
        ...

    def delete(self, chunk: Chunk) -> None:
        ...


class SessionLookup(Protocol):
    """The one thing the pipeline needs from session management."""

    def find_session_by_id(self, session_id: int) -> Optional[Session]:
        ...
