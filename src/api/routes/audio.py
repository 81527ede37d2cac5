"""
Session audio API endpoints.

Clients record audio in short chunks and upload each one as soon as it
is ready. Chunks may arrive out of order; the one flagged isLastChunk
triggers reconciliation, which merges everything stored so far into a
single file.

Field names on the wire are camelCase to match the recording client.
"""

import logging
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, Query, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...core.audio import (
    InvalidChunkError,
    MergeError,
    SessionNotFoundError,
    StorageError,
    USE_ALL_CHUNKS,
)
from ..dependencies import (
    AuthenticatedUser,
    ChunkRepositoryDep,
    IngestionServiceDep,
    ReconcilerDep,
    SessionRepositoryDep,
    SettingsDep,
    reconcile_in_background,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request/Response Models
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChunkUploadResponse(CamelModel):
    """Result of uploading one chunk."""
    success: bool = Field(description="True if the chunk was stored")
    session_id: int = Field(description="Owning session")
    filename: str = Field(description="Server-side filename of the stored chunk")
    chunk_index: int = Field(description="Position of the chunk in the recording")
    is_last_chunk: bool = Field(description="Whether this chunk ended the recording")
    locator: str = Field(description="Where the chunk bytes were stored")
    merged_locator: Optional[str] = Field(
        None, description="Merged recording, when this chunk triggered a successful merge"
    )
    reconciliation_pending: bool = Field(
        False, description="True if the merge was scheduled to run after this response"
    )
    merge_error: Optional[str] = Field(
        None, description="Why the merge failed. The chunk itself is still stored."
    )
    already_merged: bool = Field(
        False, description="The session was already merged, so this chunk was not stored"
    )


class ReconcileResponse(CamelModel):
    """Result of a manual reconciliation."""
    session_id: int
    merged_locator: str


class AudioStatusResponse(CamelModel):
    """Merge state of a session's audio."""
    session_id: int
    merged: bool = Field(description="Whether a merged recording has been published")
    merged_locator: Optional[str] = None
    pending_chunk_indices: list[int] = Field(
        default_factory=list,
        description="Chunks stored but not yet merged and cleaned up",
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/upload-chunk",
    response_model=ChunkUploadResponse,
    status_code=status.HTTP_200_OK,
    summary="Upload an audio chunk",
    description="Store one chunk of a session recording. The last chunk triggers the merge.",
)
async def upload_chunk(
    file: Annotated[UploadFile, File(description="Audio chunk (webm, mp3, wav, ogg)")],
    session_id: Annotated[int, Form(alias="sessionId")],
    chunk_index: Annotated[int, Form(alias="chunkIndex")],
    background_tasks: BackgroundTasks,
    service: IngestionServiceDep,
    settings: SettingsDep,
    is_last_chunk: Annotated[bool, Form(alias="isLastChunk")] = False,
    api_key: AuthenticatedUser = None,
) -> ChunkUploadResponse:
    """
    Upload one chunk.

    A failed merge does not fail the upload: the chunk is stored either
    way, and the response carries mergeError so the client can retry via
    the reconcile endpoint.
    """
    data = await file.read()

    if len(data) > settings.max_chunk_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Chunk exceeds {settings.max_chunk_size_mb}MB"
        )

    try:
        result = await service.ingest(
            session_id=session_id,
            chunk_index=chunk_index,
            is_terminal=is_last_chunk,
            data=data,
            content_type=file.content_type,
            original_filename=file.filename,
        )
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidChunkError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StorageError as e:
        logger.error(
            "Chunk upload failed",
            extra={"session_id": session_id, "chunk_index": chunk_index, "error": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Failed to store audio chunk: {e}"
        )

    if result.reconciliation_pending:
        background_tasks.add_task(
            reconcile_in_background, settings, session_id, chunk_index + 1
        )
        logger.info(
            "Scheduled background reconciliation",
            extra={"session_id": session_id, "expected_chunks": chunk_index + 1}
        )

    return ChunkUploadResponse(
        success=True,
        session_id=session_id,
        filename=result.chunk.filename,
        chunk_index=result.chunk.chunk_index,
        is_last_chunk=result.chunk.is_terminal,
        locator=result.chunk.remote_locator,
        merged_locator=result.merged_locator,
        reconciliation_pending=result.reconciliation_pending,
        merge_error=result.merge_error,
        already_merged=result.already_merged,
    )


@router.post(
    "/{session_id}/reconcile",
    response_model=ReconcileResponse,
    status_code=status.HTTP_200_OK,
    summary="Merge a session's chunks",
    description="Re-run reconciliation. Returns the existing recording if one is already published.",
)
async def reconcile_session(
    session_id: int,
    reconciler: ReconcilerDep,
    sessions: SessionRepositoryDep,
    expected_chunks: Annotated[
        int,
        Query(alias="expectedChunks", ge=USE_ALL_CHUNKS, description="-1 merges every chunk found"),
    ] = USE_ALL_CHUNKS,
    api_key: AuthenticatedUser = None,
) -> ReconcileResponse:
    if sessions.find_session_by_id(session_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found"
        )

    try:
        locator = await reconciler.reconcile(session_id, expected_chunks)
    except MergeError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except StorageError as e:
        logger.error(
            "Publishing merged audio failed",
            extra={"session_id": session_id, "error": str(e)}
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to publish merged audio: {e}"
        )

    return ReconcileResponse(session_id=session_id, merged_locator=locator)


@router.get(
    "/{session_id}",
    response_model=AudioStatusResponse,
    status_code=status.HTTP_200_OK,
    summary="Get merge status",
)
async def get_audio_status(
    session_id: int,
    chunks: ChunkRepositoryDep,
    sessions: SessionRepositoryDep,
    api_key: AuthenticatedUser = None,
) -> AudioStatusResponse:
    if sessions.find_session_by_id(session_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found"
        )

    sentinel = chunks.find_sentinel(session_id)
    pending = [chunk.chunk_index for chunk in chunks.find_ordered_by_session(session_id)]

    return AudioStatusResponse(
        session_id=session_id,
        merged=sentinel is not None,
        merged_locator=sentinel.remote_locator if sentinel else None,
        pending_chunk_indices=pending,
    )
