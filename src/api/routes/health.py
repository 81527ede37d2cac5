"""
Liveness and readiness probes.

/health answers as long as the process is up. /health/ready looks at
configuration and the backends the audio pipeline leans on, and returns
503 only for problems that would make requests fail. Simulated storage
and a missing FFmpeg binary are "degraded": uploads and merges still
work, just without durable storage or container-aware concatenation.
"""

import logging
import shutil
from typing import Literal, Optional

from fastapi import APIRouter, Response, status
from pydantic import BaseModel

from ...infrastructure.storage import SimulatedObjectStore
from ..dependencies import MergePipelineDep, ObjectStoreDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter()

CheckStatus = Literal["ok", "degraded", "error"]


class LivenessResponse(BaseModel):
    status: str
    version: str
    simulated_storage: bool
    snowflake_mock: bool


class BackendCheck(BaseModel):
    name: str
    status: CheckStatus
    error: Optional[str] = None


class ReadinessResponse(BaseModel):
    status: Literal["ready", "not_ready"]
    version: str
    checks: list[BackendCheck]


def _check(name: str, problem: Optional[str], severity: CheckStatus = "error") -> BackendCheck:
    if problem is None:
        return BackendCheck(name=name, status="ok")
    return BackendCheck(name=name, status=severity, error=problem)


@router.get("", response_model=LivenessResponse, summary="Liveness probe")
async def health_check(settings: SettingsDep) -> LivenessResponse:
    return LivenessResponse(
        status="ok",
        version=settings.api_version,
        simulated_storage=settings.storage_simulated_mode,
        snowflake_mock=settings.snowflake_mock_mode,
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    responses={503: {"model": ReadinessResponse, "description": "A required backend is unusable"}},
)
async def readiness_check(
    response: Response,
    settings: SettingsDep,
    store: ObjectStoreDep,
    merger: MergePipelineDep,
) -> ReadinessResponse:
    missing = settings.validate_required_fields()
    fallback = merger.strategy_names[-1]

    storage_problem = None
    if isinstance(store, SimulatedObjectStore):
        storage_problem = "simulated mode, chunks are kept in memory"
        missing_storage = settings.missing_storage_fields()
        if missing_storage:
            storage_problem += f" (missing {', '.join(missing_storage)})"

    checks = [
        _check(
            "configuration",
            f"Missing required fields: {', '.join(missing)}" if missing else None,
        ),
        _check(
            "database",
            "mock mode, data is kept in memory" if settings.snowflake_mock_mode else None,
            severity="degraded",
        ),
        _check(
            "storage",
            storage_problem,
            severity="degraded",
        ),
        _check(
            "ffmpeg",
            f"{settings.ffmpeg_path} not found, merges will use {fallback}"
            if shutil.which(settings.ffmpeg_path) is None else None,
            severity="degraded",
        ),
    ]

    ready = all(check.status != "error" for check in checks)
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        logger.warning(
            "Not ready",
            extra={"failed": [c.name for c in checks if c.status == "error"]}
        )

    return ReadinessResponse(
        status="ready" if ready else "not_ready",
        version=settings.api_version,
        checks=checks,
    )
