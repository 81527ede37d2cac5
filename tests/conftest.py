"""
Shared fixtures for the audio pipeline tests.

Everything runs against the in-memory Snowflake mock and the simulated
object store. The merge pipeline is pointed at an FFmpeg binary that
doesn't exist, so every merge deterministically falls back to byte
concatenation and merged bytes can be asserted exactly.
"""

import pytest

from src.core.audio import (
    ChunkIngestionService,
    MergeAttempt,
    MergePipeline,
    MergeStrategy,
    ReconciliationEngine,
    SessionLockRegistry,
    StorageError,
    create_merge_pipeline,
)
from src.infrastructure.snowflake.client import MockSnowflakeConnection
from src.infrastructure.snowflake.repositories import ChunkRepository, SessionRepository
from src.infrastructure.storage import SimulatedObjectStore

MISSING_FFMPEG = "/nonexistent/bin/ffmpeg"
SESSION_ID = 42


# ---------------------------------------------------------------------------
# Test Doubles
# ---------------------------------------------------------------------------

class RecordingObjectStore(SimulatedObjectStore):
    """Simulated store that remembers every write and can be told to fail."""

    def __init__(self, bucket_name: str = "session-audio") -> None:
        super().__init__(bucket_name)
        self.puts: list[str] = []
        self.deletes: list[str] = []
        self.failing_puts: set[str] = set()

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        if key in self.failing_puts:
            raise StorageError(f"Upload failed for {key}: simulated outage")
        self.puts.append(key)
        return await super().put(data, key, content_type)

    async def delete(self, key: str) -> bool:
        self.deletes.append(key)
        return await super().delete(key)


class FailingStrategy(MergeStrategy):
    name = "failing"

    async def merge(self, chunk_paths, output_path):
        return MergeAttempt.failure(self.name, "cannot merge")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def missing_ffmpeg() -> str:
    return MISSING_FFMPEG


@pytest.fixture
def session_id() -> int:
    return SESSION_ID


@pytest.fixture
def mock_connection() -> MockSnowflakeConnection:
    conn = MockSnowflakeConnection()
    conn._add_session(SESSION_ID)
    yield conn
    conn._clear()


@pytest.fixture
def store() -> RecordingObjectStore:
    return RecordingObjectStore()


@pytest.fixture
def chunk_repository(mock_connection) -> ChunkRepository:
    return ChunkRepository(mock_connection)


@pytest.fixture
def session_repository(mock_connection) -> SessionRepository:
    return SessionRepository(mock_connection)


@pytest.fixture
def locks() -> SessionLockRegistry:
    return SessionLockRegistry()


@pytest.fixture
def failing_merger() -> MergePipeline:
    """A merge pipeline whose only strategy always fails."""
    return MergePipeline([FailingStrategy()])


@pytest.fixture
def reconciler(store, chunk_repository, locks, tmp_path) -> ReconciliationEngine:
    return ReconciliationEngine(
        store=store,
        chunks=chunk_repository,
        merger=create_merge_pipeline(ffmpeg_path=MISSING_FFMPEG),
        locks=locks,
        staging_root=str(tmp_path),
    )


@pytest.fixture
def ingestion_service(store, chunk_repository, session_repository, reconciler) -> ChunkIngestionService:
    return ChunkIngestionService(
        store=store,
        chunks=chunk_repository,
        sessions=session_repository,
        reconciler=reconciler,
    )
