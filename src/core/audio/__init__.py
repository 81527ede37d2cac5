"""
Chunked session audio: ingestion, merging, and reconciliation.

Contains the domain models, the ingestion service, the reconciliation
engine, and the merge strategies it chains together.
"""

from .errors import (
    AudioProcessingError,
    InvalidChunkError,
    MergeError,
    SessionNotFoundError,
    StorageConfigurationError,
    StorageError,
)
from .ingestion import ChunkIngestionService, IngestResult
from .locks import SessionLockRegistry
from .merge import (
    ByteConcatStrategy,
    FFmpegConcatStrategy,
    MergeAttempt,
    MergeOutcome,
    MergePipeline,
    MergeStrategy,
    create_merge_pipeline,
)
from .models import (
    SENTINEL_CHUNK_INDEX,
    USE_ALL_CHUNKS,
    Chunk,
    Session,
    SessionStatus,
)
from .reconciler import ReconciliationEngine

__all__ = [
    "AudioProcessingError",
    "InvalidChunkError",
    "MergeError",
    "SessionNotFoundError",
    "StorageConfigurationError",
    "StorageError",
    "ChunkIngestionService",
    "IngestResult",
    "SessionLockRegistry",
    "ByteConcatStrategy",
    "FFmpegConcatStrategy",
    "MergeAttempt",
    "MergeOutcome",
    "MergePipeline",
    "MergeStrategy",
    "create_merge_pipeline",
    "SENTINEL_CHUNK_INDEX",
    "USE_ALL_CHUNKS",
    "Chunk",
    "Session",
    "SessionStatus",
    "ReconciliationEngine",
]
