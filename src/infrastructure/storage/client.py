"""
Object storage client for session audio.

Two implementations behind the ObjectStore protocol:
- S3ObjectStore: any S3-compatible backend (AWS S3, R2, MinIO) via boto3
- SimulatedObjectStore: no network I/O, fabricates s3://bucket/key
  locators and keeps bytes in memory so the pipeline runs end to end

Which one a process gets is decided once, at startup, by
create_object_store(). Missing credentials are not fatal; the factory
logs a warning and hands back the simulated store instead.

Locators come in three shapes, and extract_key() understands all of
them so keys can be recovered no matter which one was stored:
- virtual-hosted: https://bucket.s3.amazonaws.com/key
- path-style:     https://s3.amazonaws.com/bucket/key
- short form:     s3://bucket/key
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional
from urllib.parse import quote, unquote, urlsplit

from ...core.audio.errors import StorageConfigurationError, StorageError
from ...core.audio.ports import ObjectStore

logger = logging.getLogger(__name__)

UrlStyle = Literal["virtual", "path", "short"]

AWS_S3_HOST = "s3.amazonaws.com"


@dataclass
class StorageConfig:
    """
    Configuration for S3-compatible storage.

    endpoint_url is only needed for non-AWS backends. url_style controls
    the shape of the locators put() hands back.
    """
    access_key_id: str
    secret_access_key: str
    bucket_name: str
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    url_style: UrlStyle = "virtual"


# ---------------------------------------------------------------------------
# Locator helpers
# ---------------------------------------------------------------------------

def _endpoint(endpoint_url: Optional[str]) -> tuple[str, str]:
    """(scheme, host) of the storage endpoint; AWS when none is configured."""
    if not endpoint_url:
        return "https", AWS_S3_HOST
    parts = urlsplit(endpoint_url)
    return parts.scheme or "https", parts.netloc or parts.path


def build_locator(
    bucket: str,
    key: str,
    style: UrlStyle = "virtual",
    endpoint_url: Optional[str] = None,
) -> str:
    """Build a locator for key in one of the three supported shapes."""
    quoted_key = quote(key, safe="/")

    if style == "short":
        return f"s3://{bucket}/{quoted_key}"

    scheme, host = _endpoint(endpoint_url)

    if style == "path":
        return f"{scheme}://{host}/{bucket}/{quoted_key}"

    return f"{scheme}://{bucket}.{host}/{quoted_key}"


def extract_key(locator: str, bucket: str, endpoint_url: Optional[str] = None) -> str:
    """
    Recover the object key from any supported locator shape.

    endpoint_url is the store's configured endpoint. A host that is the
    endpoint itself means path-style, even when the endpoint's first
    label happens to equal the bucket name.

    A bare key (no scheme) comes back unchanged. So does anything we
    can't make sense of, with a warning, since the caller may still be
    able to use it.
    """
    parts = urlsplit(locator)

    if not parts.scheme:
        return locator

    path = unquote(parts.path)

    if parts.scheme == "s3":
        return path.lstrip("/")

    # path-style: bucket is the first path segment
    prefix = f"/{bucket}/"
    _, endpoint_host = _endpoint(endpoint_url)
    if parts.netloc == endpoint_host and path.startswith(prefix):
        return path[len(prefix):]

    # virtual-hosted: bucket is the first label of the host
    if parts.netloc.startswith(f"{bucket}."):
        return path.lstrip("/")

    # path-style on a host other than the configured endpoint
    if path.startswith(prefix):
        return path[len(prefix):]

    logger.warning("Could not parse storage locator", extra={"locator": locator})
    return locator


# ---------------------------------------------------------------------------
# S3-compatible storage
# ---------------------------------------------------------------------------

class S3ObjectStore:
    """
    S3-compatible object store.

    boto3 is synchronous, so every call runs in a worker thread via
    asyncio.to_thread to keep the event loop free while a large chunk
    uploads.
    """

    def __init__(self, config: StorageConfig) -> None:
        """
        Initialize the boto3 client.

        We import boto3 here (not at module level) because simulated
        mode doesn't need it.
        """
        if not config.access_key_id or not config.secret_access_key:
            raise StorageConfigurationError("S3 credentials are not configured")
        if not config.bucket_name:
            raise StorageConfigurationError("S3 bucket name is not configured")

        try:
            import boto3
            from botocore.config import Config
        except ImportError:
            raise ImportError(
                "boto3 is required for S3 storage. Install with: pip install boto3"
            )

        self._config = config
        self.bucket_name = config.bucket_name

        boto_config = Config(
            signature_version="s3v4",
            s3={"addressing_style": "path" if config.url_style == "path" else "auto"},
        )

        try:
            self._s3_client = boto3.client(
                "s3",
                endpoint_url=config.endpoint_url,
                aws_access_key_id=config.access_key_id,
                aws_secret_access_key=config.secret_access_key,
                region_name=config.region,
                config=boto_config,
            )
        except Exception as e:
            raise StorageConfigurationError(f"Could not create S3 client: {e}")

        logger.info(
            "Initialized S3 object store",
            extra={
                "bucket": config.bucket_name,
                "endpoint": config.endpoint_url or AWS_S3_HOST,
                "url_style": config.url_style,
            }
        )

    def extract_key(self, locator: str) -> str:
        return extract_key(locator, self.bucket_name, self._config.endpoint_url)

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        """Upload data under key. Raises StorageError on any failure."""
        try:
            await asyncio.to_thread(
                self._s3_client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except Exception as e:
            logger.error(
                "Failed to upload object",
                extra={"key": key, "size_bytes": len(data), "error": str(e)}
            )
            raise StorageError(f"Upload failed for {key}: {e}")

        logger.debug("Uploaded object", extra={"key": key, "size_bytes": len(data)})

        return build_locator(
            self.bucket_name,
            key,
            style=self._config.url_style,
            endpoint_url=self._config.endpoint_url,
        )

    async def get(self, locator: str, destination: Path) -> bool:
        """Download locator into destination. Returns False on failure."""
        key = self.extract_key(locator)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(
                self._s3_client.download_file,
                self.bucket_name,
                key,
                str(destination),
            )
        except Exception as e:
            logger.error(
                "Failed to download object",
                extra={"key": key, "error": str(e)}
            )
            return False

        logger.debug("Downloaded object", extra={"key": key, "destination": str(destination)})
        return True

    async def delete(self, key: str) -> bool:
        """Delete key. Failures are logged, never raised."""
        try:
            await asyncio.to_thread(
                self._s3_client.delete_object,
                Bucket=self.bucket_name,
                Key=key,
            )
        except Exception as e:
            logger.error("Failed to delete object", extra={"key": key, "error": str(e)})
            return False

        logger.debug("Deleted object", extra={"key": key})
        return True

    async def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            await asyncio.to_thread(
                self._s3_client.head_object,
                Bucket=self.bucket_name,
                Key=key,
            )
            return True
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("404", "NoSuchKey", "NotFound"):
                logger.error("Failed to check object", extra={"key": key, "error": str(e)})
            return False
        except Exception as e:
            logger.error("Failed to check object", extra={"key": key, "error": str(e)})
            return False


# ---------------------------------------------------------------------------
# Simulated storage for local development
# ---------------------------------------------------------------------------

class SimulatedObjectStore:
    """
    Object store that never touches the network.

    put() returns a deterministic s3://bucket/key locator and keeps the
    bytes in a dictionary, so uploads, merges, and cleanup all behave
    plausibly without credentials. get() for something that was never
    stored is a no-op that still reports success, just like a backend
    that isn't really there.

    Not suitable for production, but perfect for development and testing.
    """

    def __init__(self, bucket_name: str = "session-audio") -> None:
        self.bucket_name = bucket_name
        # {key: bytes}
        self._objects: dict[str, bytes] = {}
        logger.info(
            "Initialized simulated object store (in-memory)",
            extra={"bucket": bucket_name}
        )

    def extract_key(self, locator: str) -> str:
        return extract_key(locator, self.bucket_name)

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        self._objects[key] = bytes(data)

        logger.debug(
            "Stored object in simulated storage",
            extra={"key": key, "size_bytes": len(data), "content_type": content_type}
        )

        return build_locator(self.bucket_name, key, style="short")

    async def get(self, locator: str, destination: Path) -> bool:
        key = self.extract_key(locator)
        data = self._objects.get(key)

        if data is None:
            logger.info("Simulating download", extra={"key": key})
            return True

        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(destination.write_bytes, data)
        return True

    async def delete(self, key: str) -> bool:
        self._objects.pop(key, None)
        logger.debug("Deleted object from simulated storage", extra={"key": key})
        return True

    async def exists(self, key: str) -> bool:
        return key in self._objects

    # Helper methods for testing
    def _get_object(self, key: str) -> Optional[bytes]:
        """Get stored bytes (for test assertions)."""
        return self._objects.get(key)

    def _keys(self) -> list[str]:
        """List stored keys (for test assertions)."""
        return sorted(self._objects)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

def create_object_store(
    config: Optional[StorageConfig] = None,
    simulated: bool = False,
) -> ObjectStore:
    """
    Create the object store for this process.

    Args:
        config: S3 configuration (ignored when simulated)
        simulated: If True, always return the simulated store

    Returns:
        S3ObjectStore, or SimulatedObjectStore when asked for or when no
        real backend can be configured
    """
    bucket = config.bucket_name if config and config.bucket_name else "session-audio"

    if simulated:
        return SimulatedObjectStore(bucket_name=bucket)

    if config is None:
        logger.warning("No storage configuration, using simulated object store")
        return SimulatedObjectStore(bucket_name=bucket)

    try:
        return S3ObjectStore(config)
    except StorageConfigurationError as e:
        logger.warning(
            "Storage backend unavailable, using simulated object store",
            extra={"reason": str(e)}
        )
        return SimulatedObjectStore(bucket_name=bucket)
