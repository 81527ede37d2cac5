"""
Service settings, read from the environment (and .env) by pydantic-settings.

Nothing here needs real credentials to start: with SNOWFLAKE_MOCK_MODE
and no S3 keys the whole pipeline runs in memory, which is how local
development and the tests use it.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    All fields map to upper-case environment variables of the same name.
    List-valued settings (API_KEYS, CORS_ORIGINS) are comma-separated.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # API
    api_title: str = "Session Audio API"
    api_version: str = "v1"
    api_keys: str = Field(
        default="dev-key-1,dev-key-2",
        description="Accepted X-API-Key values, comma-separated"
    )

    # Snowflake
    snowflake_account: str = ""
    snowflake_user: str = ""
    snowflake_password: str = ""
    snowflake_private_key_path: Optional[str] = Field(
        default=None,
        description="PEM key for key-pair auth; takes precedence over the password"
    )
    snowflake_database: str = "SESSION_AUDIO"
    snowflake_schema: str = "PUBLIC"
    snowflake_warehouse: str = "COMPUTE_WH"
    snowflake_role: Optional[str] = None
    snowflake_mock_mode: bool = Field(
        default=False,
        description="Keep sessions and chunk records in process memory"
    )

    # Object storage
    s3_access_key_id: str = ""
    s3_secret_access_key: str = ""
    s3_bucket_name: str = "session-audio"
    s3_region: str = "us-east-1"
    s3_endpoint_url: Optional[str] = Field(
        default=None,
        description="Only for S3-compatible services such as R2 or MinIO"
    )
    s3_url_style: Literal["virtual", "path", "short"] = Field(
        default="virtual",
        description="Locator shape: https://bucket.host/key, https://host/bucket/key or s3://bucket/key"
    )
    storage_simulated_mode: bool = Field(
        default=False,
        description="Skip S3 entirely. Also used automatically when credentials are missing."
    )

    # Audio pipeline
    audio_extension: str = Field(
        default="webm",
        description="Container extension used in chunk and merged filenames"
    )
    max_chunk_size_mb: int = 25
    ffmpeg_path: str = "ffmpeg"
    merge_timeout_seconds: float = Field(
        default=120.0,
        description="FFmpeg is killed after this long and byte concatenation takes over"
    )
    staging_dir: Optional[str] = Field(
        default=None,
        description="Where per-merge temp directories go; system temp when unset"
    )
    reconcile_in_background: bool = Field(
        default=False,
        description="Answer the last chunk's upload immediately and merge afterwards"
    )

    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000"

    @property
    def api_keys_list(self) -> list[str]:
        return [key.strip() for key in self.api_keys.split(",") if key.strip()]

    @property
    def cors_origins_list(self) -> list[str]:
        if self.cors_origins.strip() == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def max_chunk_size_bytes(self) -> int:
        return self.max_chunk_size_mb * 1024 * 1024

    def validate_required_fields(self) -> list[str]:
        """
        Names of settings that must be set but aren't.

        S3 credentials never appear here (see missing_storage_fields()):
        without them the service falls back to simulated storage instead
        of failing.
        """
        missing = []

        if not self.snowflake_mock_mode:
            for name in ("snowflake_account", "snowflake_user"):
                if not getattr(self, name):
                    missing.append(name.upper())
            if not self.snowflake_password and not self.snowflake_private_key_path:
                missing.append("SNOWFLAKE_PASSWORD or SNOWFLAKE_PRIVATE_KEY_PATH")

        if not self.api_keys_list:
            missing.append("API_KEYS")

        return missing

    def missing_storage_fields(self) -> list[str]:
        """
        S3 credentials that are unset.

        Reported separately from validate_required_fields() because they
        are not fatal: the store falls back to simulated mode without them.
        """
        if self.storage_simulated_mode:
            return []
        return [
            name.upper()
            for name in ("s3_access_key_id", "s3_secret_access_key")
            if not getattr(self, name)
        ]


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings. Tests reset with get_settings.cache_clear()."""
    return Settings()
