"""
Object storage integration for session audio.

Supports S3 (AWS) and S3-compatible services via boto3.
Includes a simulated mode for local development without credentials.
"""

from .client import (
    S3ObjectStore,
    SimulatedObjectStore,
    StorageConfig,
    build_locator,
    create_object_store,
    extract_key,
)

__all__ = [
    "S3ObjectStore",
    "SimulatedObjectStore",
    "StorageConfig",
    "build_locator",
    "create_object_store",
    "extract_key",
]
