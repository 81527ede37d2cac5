"""
Chunk ingestion: accepting one uploaded audio fragment at a time.

Each call stores the fragment's bytes remotely, records its metadata,
and, when the fragment is the terminal one, hands the session off to
the reconciliation engine.

Order matters here. The session is checked first so an unknown session
never leaves an orphaned object behind, and metadata is written only
after the upload returned a locator, so a record never points at bytes
that were never stored.

A session that already has a published recording takes no more bytes.
The chunk is acknowledged with the merged locator and nothing is stored.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .errors import AudioProcessingError, InvalidChunkError, SessionNotFoundError
from .models import DEFAULT_EXTENSION, Chunk, chunk_key, guess_content_type
from .ports import ChunkRepository, ObjectStore, SessionLookup
from .reconciler import ReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """What happened to one uploaded chunk."""
    chunk: Chunk
    merged_locator: Optional[str] = None
    reconciliation_pending: bool = False
    merge_error: Optional[str] = None
    already_merged: bool = False


class ChunkIngestionService:
    """
    Accepts audio chunks for a session.

    With reconcile_inline=True (the default) the terminal chunk's request
    waits for the merge. With False, the result is flagged
    reconciliation_pending and the caller is expected to schedule
    ReconciliationEngine.reconcile itself, e.g. as a background task.
    """

    def __init__(
        self,
        store: ObjectStore,
        chunks: ChunkRepository,
        sessions: SessionLookup,
        reconciler: ReconciliationEngine,
        extension: str = DEFAULT_EXTENSION,
        reconcile_inline: bool = True,
    ) -> None:
        self._store = store
        self._chunks = chunks
        self._sessions = sessions
        self._reconciler = reconciler
        self._extension = extension
        self._reconcile_inline = reconcile_inline

    async def ingest(
        self,
        session_id: int,
        chunk_index: int,
        is_terminal: bool,
        data: bytes,
        content_type: Optional[str] = None,
        original_filename: Optional[str] = None,
    ) -> IngestResult:
        """
        Store one chunk and, if it is the last, merge the session.

        Args:
            session_id: Owning session
            chunk_index: Position of this chunk (0-based)
            is_terminal: True if no more chunks will follow
            data: Raw chunk bytes
            content_type: MIME type reported by the client, if any
            original_filename: Client-side filename, used to infer the
                content type when none was reported

        Raises:
            InvalidChunkError: Negative index or empty payload
            SessionNotFoundError: Unknown session
            StorageError: The upload failed; nothing was recorded
        """
        if chunk_index < 0:
            raise InvalidChunkError(f"chunkIndex must be >= 0, got {chunk_index}")
        if not data:
            raise InvalidChunkError("Audio chunk is empty")

        logger.info(
            "Processing audio chunk",
            extra={
                "session_id": session_id,
                "chunk_index": chunk_index,
                "is_terminal": is_terminal,
                "size_bytes": len(data),
            }
        )

        if self._sessions.find_session_by_id(session_id) is None:
            raise SessionNotFoundError(session_id)

        if not content_type or content_type == "application/octet-stream":
            content_type = guess_content_type(original_filename or f"chunk.{self._extension}")

        merged = await self._reconciler.published_sentinel(session_id)
        if merged is not None:
            logger.warning(
                "Session already merged, chunk not stored",
                extra={"session_id": session_id, "chunk_index": chunk_index, "locator": merged.remote_locator}
            )
            return IngestResult(
                chunk=Chunk.fragment(
                    session_id=session_id,
                    chunk_index=chunk_index,
                    remote_locator=merged.remote_locator,
                    content_type=content_type,
                    is_terminal=is_terminal,
                    extension=self._extension,
                ),
                merged_locator=merged.remote_locator,
                already_merged=True,
            )

        key = chunk_key(session_id, chunk_index, self._extension)
        locator = await self._store.put(data, key, content_type)

        chunk = Chunk.fragment(
            session_id=session_id,
            chunk_index=chunk_index,
            remote_locator=locator,
            content_type=content_type,
            is_terminal=is_terminal,
            extension=self._extension,
        )
        self._chunks.save(chunk)

        logger.info(
            "Stored audio chunk",
            extra={"session_id": session_id, "chunk_index": chunk_index, "locator": locator}
        )

        result = IngestResult(chunk=chunk)
        if not is_terminal:
            return result

        if not self._reconcile_inline:
            result.reconciliation_pending = True
            return result

        logger.info(
            "Last chunk received, initiating merge",
            extra={"session_id": session_id, "chunk_index": chunk_index}
        )

        # The chunk itself is safely stored at this point, so a failed merge
        # is reported on the result rather than failing the upload.
        try:
            result.merged_locator = await self._reconciler.reconcile(
                session_id, expected_chunk_count=chunk_index + 1
            )
        except AudioProcessingError as e:
            logger.error(
                "Reconciliation failed after terminal chunk",
                extra={"session_id": session_id, "error": str(e)}
            )
            result.merge_error = str(e)

        return result
