"""
Snowflake repository for audio chunk metadata.

Rows are keyed by (session_id, chunk_index). Fragments use indices
0..N-1 and the merged artifact uses -1, so the composite key is also
what guarantees a session never ends up with two sentinel rows.

Every method commits on its own. The reconciliation engine copes with
chunks that aren't visible yet, so nothing here needs multi-row
transactions.
"""

import logging
from typing import Optional

from src.core.audio.models import SENTINEL_CHUNK_INDEX, Chunk

from .sessions import SnowflakeConnection


logger = logging.getLogger(__name__)

_COLUMNS = "session_id, chunk_index, filename, content_type, remote_locator, is_terminal, created_at"


class ChunkRepository:
    """
    Repository for audio chunk records.

    Implements the ChunkRepository protocol from core.audio.ports.
    """

    def __init__(self, connection: SnowflakeConnection) -> None:
        self._conn = connection

    def save(self, chunk: Chunk) -> None:
        """Insert or replace the row for (session_id, chunk_index)."""
        cursor = self._conn.cursor()

        try:
            cursor.execute(f"""
                MERGE INTO audio_chunks AS target
                USING (
                    SELECT %s AS session_id, %s AS chunk_index, %s AS filename,
                           %s AS content_type, %s AS remote_locator,
                           %s AS is_terminal, %s AS created_at
                ) AS source
                ON target.session_id = source.session_id
                   AND target.chunk_index = source.chunk_index
                WHEN MATCHED THEN UPDATE SET
                    filename = source.filename,
                    content_type = source.content_type,
                    remote_locator = source.remote_locator,
                    is_terminal = source.is_terminal
                WHEN NOT MATCHED THEN INSERT ({_COLUMNS})
                VALUES (
                    source.session_id, source.chunk_index, source.filename,
                    source.content_type, source.remote_locator,
                    source.is_terminal, source.created_at
                )
            """, self._to_params(chunk))

            self._conn.commit()

            logger.debug(
                "Saved chunk record",
                extra={"session_id": chunk.session_id, "chunk_index": chunk.chunk_index}
            )

        except Exception as e:
            logger.error(
                "Failed to save chunk record",
                extra={
                    "session_id": chunk.session_id,
                    "chunk_index": chunk.chunk_index,
                    "error": str(e),
                }
            )
            raise
        finally:
            cursor.close()

    def find_ordered_by_session(self, session_id: int) -> list[Chunk]:
        """Fragments for a session in ascending index order (no sentinel)."""
        cursor = self._conn.cursor()

        try:
            cursor.execute(f"""
                SELECT {_COLUMNS}
                FROM audio_chunks
                WHERE session_id = %s
                  AND chunk_index >= 0
                ORDER BY chunk_index
            """, (session_id,))

            return [self._build_chunk(row) for row in cursor.fetchall()]

        finally:
            cursor.close()

    def find_sentinel(self, session_id: int) -> Optional[Chunk]:
        """The merged-artifact record, if one has been published."""
        return self.find_by_index(session_id, SENTINEL_CHUNK_INDEX)

    def find_by_index(self, session_id: int, chunk_index: int) -> Optional[Chunk]:
        cursor = self._conn.cursor()

        try:
            cursor.execute(f"""
                SELECT {_COLUMNS}
                FROM audio_chunks
                WHERE session_id = %s
                  AND chunk_index = %s
            """, (session_id, chunk_index))

            row = cursor.fetchone()
            return self._build_chunk(row) if row else None

        finally:
            cursor.close()

    def delete(self, chunk: Chunk) -> None:
        cursor = self._conn.cursor()

        try:
            cursor.execute("""
                DELETE FROM audio_chunks
                WHERE session_id = %s
                  AND chunk_index = %s
            """, (chunk.session_id, chunk.chunk_index))

            self._conn.commit()

            logger.debug(
                "Deleted chunk record",
                extra={"session_id": chunk.session_id, "chunk_index": chunk.chunk_index}
            )

        finally:
            cursor.close()

    # -----------------------------------------------------------------------
    # Private Methods
    # -----------------------------------------------------------------------

    def _to_params(self, chunk: Chunk) -> tuple:
        return (
            chunk.session_id,
            chunk.chunk_index,
            chunk.filename,
            chunk.content_type,
            chunk.remote_locator,
            chunk.is_terminal,
            chunk.created_at,
        )

    def _build_chunk(self, row) -> Chunk:
        """Construct a Chunk from a row in _COLUMNS order."""
        return Chunk(
            session_id=int(row[0]),
            chunk_index=int(row[1]),
            filename=row[2],
            content_type=row[3] or "application/octet-stream",
            remote_locator=row[4],
            is_terminal=bool(row[5]),
            created_at=row[6],
        )
