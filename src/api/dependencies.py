"""
Request-scoped wiring for the audio routes.

Handlers ask for repositories and services through Depends() and never
build them, which is what lets the tests swap any piece.

Three things are process-wide rather than per-request:
- The object store, selected once at startup (real or simulated)
- The session lock registry, which only works if every request shares it
- The mock Snowflake connection, so mock data survives across requests
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Generator, Optional

from fastapi import Depends, HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ..config.settings import Settings, get_settings
from ..core.audio import (
    AudioProcessingError,
    ChunkIngestionService,
    MergePipeline,
    ReconciliationEngine,
    SessionLockRegistry,
    create_merge_pipeline,
)
from ..core.audio.ports import ObjectStore
from ..infrastructure.snowflake.client import MockSnowflakeConnection, create_snowflake_connection
from ..infrastructure.snowflake.repositories import ChunkRepository, SessionRepository
from ..infrastructure.snowflake.repositories.sessions import SnowflakeConfig, SnowflakeConnection
from ..infrastructure.storage import StorageConfig, create_object_store

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Process-wide instances
_object_store: Optional[ObjectStore] = None
_lock_registry = SessionLockRegistry()
_mock_snowflake_connection: Optional[MockSnowflakeConnection] = None


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

async def verify_api_key(
    settings: Annotated[Settings, Depends(get_settings)],
    api_key: Optional[str] = Security(api_key_header),
) -> str:
    """Accept the request only if X-API-Key is one of API_KEYS; 403 otherwise."""
    if api_key and api_key in settings.api_keys_list:
        return api_key

    logger.warning(
        "Rejected API key",
        extra={"reason": "invalid" if api_key else "missing", "key_prefix": (api_key or "")[:8]}
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Invalid API key" if api_key else "Missing X-API-Key header",
    )


# ---------------------------------------------------------------------------
# Configuration Helpers
# ---------------------------------------------------------------------------

def snowflake_config_from_settings(settings: Settings) -> SnowflakeConfig:
    return SnowflakeConfig(
        account=settings.snowflake_account,
        user=settings.snowflake_user,
        password=settings.snowflake_password or None,
        private_key_path=settings.snowflake_private_key_path,
        database=settings.snowflake_database,
        schema=settings.snowflake_schema,
        warehouse=settings.snowflake_warehouse,
        role=settings.snowflake_role,
    )


def storage_config_from_settings(settings: Settings) -> StorageConfig:
    return StorageConfig(
        access_key_id=settings.s3_access_key_id,
        secret_access_key=settings.s3_secret_access_key,
        bucket_name=settings.s3_bucket_name,
        region=settings.s3_region,
        endpoint_url=settings.s3_endpoint_url,
        url_style=settings.s3_url_style,
    )


# ---------------------------------------------------------------------------
# Object Store
# ---------------------------------------------------------------------------

def init_object_store(settings: Settings) -> ObjectStore:
    """
    Select the object store for this process.

    Called from the application lifespan. The choice is made once and
    never revisited per request: a half-configured store silently
    switching modes mid-session would scatter chunks across backends.
    """
    global _object_store

    if _object_store is None:
        _object_store = create_object_store(
            config=storage_config_from_settings(settings),
            simulated=settings.storage_simulated_mode,
        )
        logger.info(
            "Object store initialized",
            extra={
                "backend": type(_object_store).__name__,
                "bucket": _object_store.bucket_name,
            }
        )

    return _object_store


def get_object_store(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ObjectStore:
    return init_object_store(settings)


def get_lock_registry() -> SessionLockRegistry:
    return _lock_registry


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@contextmanager
def open_db_connection(settings: Settings) -> Generator[SnowflakeConnection, None, None]:
    """
    Open a connection for one unit of work.

    In mock mode, we reuse the same connection across requests
    so that data persists during the testing session.
    """
    global _mock_snowflake_connection

    if settings.snowflake_mock_mode:
        if _mock_snowflake_connection is None:
            _mock_snowflake_connection = MockSnowflakeConnection()
            logger.info("Created shared mock Snowflake connection")
        yield _mock_snowflake_connection
    else:
        config = snowflake_config_from_settings(settings)
        with create_snowflake_connection(config=config) as conn:
            yield conn


def get_db_connection(
    settings: Annotated[Settings, Depends(get_settings)],
) -> Generator[SnowflakeConnection, None, None]:
    """
    Provide a database connection for the duration of a request.

    FastAPI caches dependencies per request, so both repositories below
    share this one connection.
    """
    with open_db_connection(settings) as conn:
        yield conn


def get_chunk_repository(
    conn: Annotated[SnowflakeConnection, Depends(get_db_connection)],
) -> ChunkRepository:
    return ChunkRepository(conn)


def get_session_repository(
    conn: Annotated[SnowflakeConnection, Depends(get_db_connection)],
) -> SessionRepository:
    return SessionRepository(conn)


# ---------------------------------------------------------------------------
# Audio Services
# ---------------------------------------------------------------------------

def get_merge_pipeline(
    settings: Annotated[Settings, Depends(get_settings)],
) -> MergePipeline:
    return create_merge_pipeline(
        ffmpeg_path=settings.ffmpeg_path,
        timeout_seconds=settings.merge_timeout_seconds,
    )


def build_reconciler(
    settings: Settings,
    store: ObjectStore,
    chunks: ChunkRepository,
) -> ReconciliationEngine:
    staging_root = None
    if settings.staging_dir:
        Path(settings.staging_dir).mkdir(parents=True, exist_ok=True)
        staging_root = settings.staging_dir

    return ReconciliationEngine(
        store=store,
        chunks=chunks,
        merger=get_merge_pipeline(settings),
        locks=get_lock_registry(),
        extension=settings.audio_extension,
        staging_root=staging_root,
    )


def get_reconciler(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[ObjectStore, Depends(get_object_store)],
    chunks: Annotated[ChunkRepository, Depends(get_chunk_repository)],
) -> ReconciliationEngine:
    return build_reconciler(settings, store, chunks)


def get_ingestion_service(
    settings: Annotated[Settings, Depends(get_settings)],
    store: Annotated[ObjectStore, Depends(get_object_store)],
    chunks: Annotated[ChunkRepository, Depends(get_chunk_repository)],
    sessions: Annotated[SessionRepository, Depends(get_session_repository)],
    reconciler: Annotated[ReconciliationEngine, Depends(get_reconciler)],
) -> ChunkIngestionService:
    return ChunkIngestionService(
        store=store,
        chunks=chunks,
        sessions=sessions,
        reconciler=reconciler,
        extension=settings.audio_extension,
        reconcile_inline=not settings.reconcile_in_background,
    )


async def reconcile_in_background(
    settings: Settings,
    session_id: int,
    expected_chunk_count: int,
) -> None:
    """
    Background task body for deferred reconciliation.

    Opens its own connection: by the time background tasks run, the
    request's dependencies have already been torn down.
    """
    store = init_object_store(settings)

    with open_db_connection(settings) as conn:
        reconciler = build_reconciler(settings, store, ChunkRepository(conn))
        try:
            locator = await reconciler.reconcile(session_id, expected_chunk_count)
        except AudioProcessingError as e:
            logger.error(
                "Background reconciliation failed",
                extra={"session_id": session_id, "error": str(e)}
            )
            return

    logger.info(
        "Background reconciliation complete",
        extra={"session_id": session_id, "locator": locator}
    )


# ---------------------------------------------------------------------------
# Convenience Type Aliases
# ---------------------------------------------------------------------------

# These type aliases make route signatures cleaner
AuthenticatedUser = Annotated[str, Depends(verify_api_key)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
ObjectStoreDep = Annotated[ObjectStore, Depends(get_object_store)]
ChunkRepositoryDep = Annotated[ChunkRepository, Depends(get_chunk_repository)]
SessionRepositoryDep = Annotated[SessionRepository, Depends(get_session_repository)]
MergePipelineDep = Annotated[MergePipeline, Depends(get_merge_pipeline)]
ReconcilerDep = Annotated[ReconciliationEngine, Depends(get_reconciler)]
IngestionServiceDep = Annotated[ChunkIngestionService, Depends(get_ingestion_service)]
