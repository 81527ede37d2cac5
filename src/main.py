"""
Session Audio API.

Builds the FastAPI app through create_app(), so tests can construct a
fresh instance with their own dependency overrides.

Local run:
    uvicorn src.main:app --reload

Reconciliation locks live in this process. With more than one worker,
the terminal chunk of a session must always reach the same worker.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.dependencies import init_object_store
from .api.routes import audio, health, sessions
from .config.settings import Settings, get_settings
from .core.audio import AudioProcessingError

logger = logging.getLogger(__name__)

DESCRIPTION = """
Ingests session recordings uploaded as a series of short audio chunks
and merges them into one file once the last chunk arrives.

Every `/api` route expects an `X-API-Key` header.

1. `PUT /api/sessions/{session_id}` registers the session
2. `POST /api/audio/upload-chunk` uploads each chunk, in any order,
   with `isLastChunk=true` on the final one
3. `GET /api/audio/{session_id}` shows the merged file and any
   chunks still waiting
4. `POST /api/audio/{session_id}/reconcile` retries a failed merge
"""

ROUTERS = [
    (health.router, "/health", "Health"),
    (audio.router, "/api/audio", "Audio"),
    (sessions.router, "/api/sessions", "Sessions"),
]


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Pick the object store before serving anything; flag bad config early."""
    settings = get_settings()

    missing = settings.validate_required_fields()
    if missing:
        logger.error("Configuration incomplete", extra={"missing_fields": missing})

    missing_storage = settings.missing_storage_fields()
    if missing_storage:
        logger.warning(
            "S3 credentials missing, falling back to simulated storage",
            extra={"missing_fields": missing_storage}
        )

    store = init_object_store(settings)
    logger.info(
        "Session Audio API ready",
        extra={
            "version": settings.api_version,
            "store": type(store).__name__,
            "snowflake_mock": settings.snowflake_mock_mode,
            "reconcile_in_background": settings.reconcile_in_background,
        }
    )

    yield

    logger.info("Session Audio API stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=DESCRIPTION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for router, prefix, tag in ROUTERS:
        app.include_router(router, prefix=prefix, tags=[tag])

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "docs": "/docs",
        }

    @app.exception_handler(AudioProcessingError)
    async def audio_error_handler(request: Request, exc: AudioProcessingError):
        """Pipeline errors a route didn't translate itself."""
        logger.warning(
            "Audio pipeline error",
            extra={"path": request.url.path, "error": str(exc)}
        )
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        """Log everything, leak nothing."""
        logger.error(
            "Unhandled exception",
            extra={"path": request.url.path, "method": request.method, "error": str(exc)},
            exc_info=exc,
        )
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=True)
