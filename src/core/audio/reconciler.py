"""
Reconciliation: turning a session's uploaded chunks into one audio file.

The engine runs when the terminal chunk arrives (or when an operator
asks for it) and walks through:

1. Idempotency check against the sentinel record (chunk_index == -1),
   discarding any fragment that arrived after that merge
2. Chunk discovery, from repository records or rebuilt object keys
3. Staging every chunk into a private temp directory
4. Sorting by the index embedded in each filename
5. Merging via the strategy pipeline (FFmpeg, then byte concatenation)
6. Publishing the artifact and writing the sentinel
7. Best-effort cleanup of fragment objects and records

Chunks that can't be downloaded are skipped, not fatal. A recording
missing a few seconds is more useful than no recording, but it means a
"successful" merge can be incomplete. The engine logs merged vs expected
counts so that case is at least visible in the logs.
"""

import asyncio
import logging
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from .errors import MergeError
from .locks import SessionLockRegistry
from .merge import MergePipeline
from .models import (
    DEFAULT_EXTENSION,
    USE_ALL_CHUNKS,
    Chunk,
    chunk_filename,
    chunk_index_from_filename,
    chunk_key,
    merged_filename,
    merged_key,
)
from .ports import ChunkRepository, ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class ChunkSource:
    """Where to fetch one chunk from, and the record to clean up after."""
    chunk_index: int
    locator: str
    key: str
    record: Optional[Chunk] = None


@dataclass
class StagedChunk:
    """A chunk that made it onto local disk."""
    source: ChunkSource
    path: Path

    @property
    def chunk_index(self) -> int:
        return chunk_index_from_filename(self.path.name)


class ReconciliationEngine:
    """
    Merges a session's chunks and publishes the result.

    Stateless apart from its collaborators, so a single instance can
    serve every session. Concurrency safety comes from the lock registry,
    which must be shared by every engine that can touch the same session.
    """

    def __init__(
        self,
        store: ObjectStore,
        chunks: ChunkRepository,
        merger: MergePipeline,
        locks: SessionLockRegistry,
        extension: str = DEFAULT_EXTENSION,
        staging_root: Optional[str] = None,
    ) -> None:
        self._store = store
        self._chunks = chunks
        self._merger = merger
        self._locks = locks
        self._extension = extension
        self._staging_root = staging_root

    async def reconcile(
        self,
        session_id: int,
        expected_chunk_count: int = USE_ALL_CHUNKS,
    ) -> str:
        """
        Merge all chunks for a session and return the artifact locator.

        Args:
            session_id: Session whose chunks to merge
            expected_chunk_count: Index of the terminal chunk + 1, or
                USE_ALL_CHUNKS to trust whatever records exist

        Raises:
            MergeError: Nothing could be staged, or every strategy failed
            StorageError: Publishing the merged artifact failed
        """
        async with self._locks.hold(session_id):
            existing = await self.published_sentinel(session_id)
            if existing is not None:
                logger.info(
                    "Merged audio already published",
                    extra={"session_id": session_id, "locator": existing.remote_locator}
                )
                await self._discard_late_fragments(session_id)
                return existing.remote_locator

            return await self._reconcile_locked(session_id, expected_chunk_count)

    async def published_sentinel(self, session_id: int) -> Optional[Chunk]:
        """The sentinel record, if its merged object still exists."""
        sentinel = self._chunks.find_sentinel(session_id)
        if sentinel is None or not sentinel.remote_locator:
            return None

        key = self._store.extract_key(sentinel.remote_locator)
        if await self._store.exists(key):
            return sentinel

        logger.warning(
            "Sentinel record points at a missing object, re-merging",
            extra={"session_id": session_id, "locator": sentinel.remote_locator}
        )
        return None

    async def _reconcile_locked(self, session_id: int, expected_chunk_count: int) -> str:
        sources = self._discover(session_id, expected_chunk_count)

        logger.info(
            "Reconciling session audio",
            extra={
                "session_id": session_id,
                "expected_chunks": expected_chunk_count,
                "sources": len(sources),
            }
        )

        with tempfile.TemporaryDirectory(
            prefix=f"chunks_{session_id}_",
            dir=self._staging_root,
            ignore_cleanup_errors=True,
        ) as staging:
            staging_dir = Path(staging)

            staged = await self._stage(session_id, sources, staging_dir)
            if not staged:
                raise MergeError(f"No chunks could be downloaded for session {session_id}")

            staged.sort(key=lambda s: s.chunk_index)

            if expected_chunk_count > 0 and len(staged) < expected_chunk_count:
                logger.warning(
                    "Merging an incomplete set of chunks",
                    extra={
                        "session_id": session_id,
                        "merged": [s.chunk_index for s in staged],
                        "expected_chunks": expected_chunk_count,
                    }
                )

            output_path = staging_dir / merged_filename(session_id, self._extension)
            outcome = await self._merger.run([s.path for s in staged], output_path)

            if not outcome.succeeded:
                logger.error(
                    "All merge strategies failed",
                    extra={"session_id": session_id, "error": outcome.describe_failures()}
                )
                raise MergeError(
                    f"Failed to merge audio chunks for session {session_id}: "
                    f"{outcome.describe_failures()}"
                )

            locator = await self._publish(session_id, output_path)

        await self._cleanup(session_id, staged)

        logger.info(
            "Session audio reconciled",
            extra={
                "session_id": session_id,
                "locator": locator,
                "chunk_count": len(staged),
                "strategy": outcome.winner.strategy,
            }
        )
        return locator

    # -----------------------------------------------------------------------
    # Discovery and staging
    # -----------------------------------------------------------------------

    def _discover(self, session_id: int, expected_chunk_count: int) -> list[ChunkSource]:
        """
        Decide which chunks to fetch.

        Repository records are preferred because they carry the exact
        locator each upload returned. If fewer records exist than the
        caller expects (a metadata write lost the race with the terminal
        signal), rebuild the deterministic keys and go straight to the
        store instead.
        """
        records = [
            c for c in self._chunks.find_ordered_by_session(session_id)
            if c.chunk_index >= 0 and c.remote_locator
        ]

        if records and len(records) >= expected_chunk_count:
            return [
                ChunkSource(
                    chunk_index=c.chunk_index,
                    locator=c.remote_locator,
                    key=self._store.extract_key(c.remote_locator),
                    record=c,
                )
                for c in records
            ]

        if expected_chunk_count <= 0:
            return []

        logger.info(
            "Falling back to key reconstruction",
            extra={
                "session_id": session_id,
                "records": len(records),
                "expected_chunks": expected_chunk_count,
            }
        )

        by_index = {c.chunk_index: c for c in records}
        sources = []
        for index in range(expected_chunk_count):
            key = chunk_key(session_id, index, self._extension)
            record = by_index.get(index)
            sources.append(ChunkSource(
                chunk_index=index,
                locator=record.remote_locator if record else key,
                key=key,
                record=record,
            ))
        return sources

    async def _stage(
        self,
        session_id: int,
        sources: list[ChunkSource],
        staging_dir: Path,
    ) -> list[StagedChunk]:
        """Fetch every source concurrently; keep whatever arrived."""
        results = await asyncio.gather(
            *(self._fetch(session_id, source, staging_dir) for source in sources)
        )
        return [staged for staged in results if staged is not None]

    async def _fetch(
        self,
        session_id: int,
        source: ChunkSource,
        staging_dir: Path,
    ) -> Optional[StagedChunk]:
        destination = staging_dir / chunk_filename(session_id, source.chunk_index, self._extension)

        try:
            # skip the transfer for objects that aren't there
            fetched = (
                await self._store.exists(source.key)
                and await self._store.get(source.locator, destination)
            )
        except Exception as e:
            logger.warning(
                "Failed to download chunk",
                extra={"session_id": session_id, "chunk_index": source.chunk_index, "error": str(e)}
            )
            return None

        if not fetched or not destination.exists():
            logger.warning(
                "Chunk unavailable, skipping",
                extra={"session_id": session_id, "chunk_index": source.chunk_index}
            )
            return None

        return StagedChunk(source=source, path=destination)

    # -----------------------------------------------------------------------
    # Publish and cleanup
    # -----------------------------------------------------------------------

    async def _publish(self, session_id: int, output_path: Path) -> str:
        """Upload the artifact, then create or replace the sentinel record."""
        key = merged_key(session_id, self._extension)
        data = await asyncio.to_thread(output_path.read_bytes)

        sentinel = Chunk.sentinel(session_id, remote_locator="", extension=self._extension)
        locator = await self._store.put(data, key, sentinel.content_type)

        existing = self._chunks.find_sentinel(session_id)
        if existing is not None:
            sentinel = replace(existing, remote_locator=locator, is_terminal=True)
        else:
            sentinel = replace(sentinel, remote_locator=locator)

        self._chunks.save(sentinel)
        return locator

    async def _cleanup(self, session_id: int, staged: list[StagedChunk]) -> None:
        """
        Remove merged fragments from the store and the repository.

        Only called after a successful publish. Records are re-read first:
        on the key-reconstruction path a record can land after discovery
        and would otherwise be left pointing at a deleted object. Failures
        are logged and skipped; a leftover fragment costs storage, not
        correctness.
        """
        current = {c.chunk_index: c for c in self._chunks.find_ordered_by_session(session_id)}

        deleted = 0
        for chunk in staged:
            index = chunk.source.chunk_index
            if index < 0:
                continue

            record = chunk.source.record
            late = current.get(index)
            if record is None and late is not None and self._same_object(late, chunk.source.key):
                record = late

            if await self._remove_fragment(session_id, chunk.source.key, record):
                deleted += 1

        logger.info(
            "Cleaned up merged chunks",
            extra={"session_id": session_id, "deleted_objects": deleted, "staged": len(staged)}
        )

    async def _discard_late_fragments(self, session_id: int) -> None:
        """
        Drop fragments stored after the session was already merged.

        They can never be part of the published recording, so leaving them
        would only keep them listed as pending forever.
        """
        late = self._chunks.find_ordered_by_session(session_id)
        if not late:
            return

        logger.warning(
            "Discarding chunks received after the merge",
            extra={"session_id": session_id, "chunk_indices": [c.chunk_index for c in late]}
        )
        for record in late:
            key = self._store.extract_key(record.remote_locator) if record.remote_locator else None
            await self._remove_fragment(session_id, key, record)

    async def _remove_fragment(
        self,
        session_id: int,
        key: Optional[str],
        record: Optional[Chunk],
    ) -> bool:
        """
        Delete a fragment's record, then its object.

        The object is kept if the record can't be deleted, so a record never
        outlives the bytes it points at. Returns True if the object went.
        """
        if record is not None:
            try:
                self._chunks.delete(record)
            except Exception as e:
                logger.error(
                    "Failed to delete chunk record",
                    extra={"session_id": session_id, "chunk_index": record.chunk_index, "error": str(e)}
                )
                return False

        if key is None:
            return False
        return await self._store.delete(key)

    def _same_object(self, record: Chunk, key: str) -> bool:
        return bool(record.remote_locator) and self._store.extract_key(record.remote_locator) == key
