from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024

_CONFIG = SettingsConfigDict(
    env_prefix="", case_sensitive=False, extra="ignore", populate_by_name=True
)


class StoreSettings(BaseSettings):
    """Configuration for the primary S3-compatible store."""

    model_config = _CONFIG

    endpoint: str | None = Field(
        default="http://127.0.0.1:9000",
        validation_alias="S3_MIRROR_STORE_ENDPOINT",
    )
    access_key: str | None = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "S3_MIRROR_STORE_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "S3_MIRROR_STORE_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "S3_MIRROR_STORE_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("S3_MIRROR_STORE_REGION", "AWS_REGION"),
    )
    bucket: str = Field(
        default="mirror",
        validation_alias="S3_MIRROR_STORE_BUCKET",
    )
    bucket_location: str = Field(
        default="us-east-1",
        validation_alias="S3_MIRROR_STORE_BUCKET_LOCATION",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="path",
        validation_alias="S3_MIRROR_STORE_ADDRESSING_STYLE",
    )


class OriginSettings(BaseSettings):
    """Configuration for the origin HTTP object store."""

    model_config = _CONFIG

    url: str = Field(
        default="http://127.0.0.1:9000/origin/",
        validation_alias="S3_MIRROR_ORIGIN_URL",
    )
    timeout: float = Field(
        default=60.0,
        validation_alias="S3_MIRROR_ORIGIN_TIMEOUT",
    )
    read_timeout: float = Field(
        default=300.0,
        validation_alias="S3_MIRROR_ORIGIN_READ_TIMEOUT",
    )
    max_connections: int = Field(
        default=32,
        ge=2,
        validation_alias="S3_MIRROR_ORIGIN_MAX_CONNECTIONS",
    )

    @field_validator("url")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            msg = "origin URL must start with 'http://' or 'https://'"
            raise ValueError(msg)
        return value if value.endswith("/") else f"{value}/"


class MirrorSettings(BaseSettings):
    """Thresholds and limits for copy-on-read mirroring."""

    model_config = _CONFIG

    enabled: bool = Field(
        default=True,
        validation_alias="S3_MIRROR_ENABLED",
    )
    single_shot_threshold: int = Field(
        default=8 * MIB,
        gt=0,
        validation_alias="S3_MIRROR_SINGLE_SHOT_THRESHOLD",
    )
    chunk_alignment: int = Field(
        default=8 * MIB,
        gt=0,
        validation_alias="S3_MIRROR_CHUNK_ALIGNMENT",
    )
    min_chunk_size: int = Field(
        default=5 * MIB,
        gt=0,
        validation_alias="S3_MIRROR_MIN_CHUNK_SIZE",
    )
    max_chunk_size: int = Field(
        default=5 * 1024 * MIB,
        gt=0,
        validation_alias="S3_MIRROR_MAX_CHUNK_SIZE",
    )
    max_parts: int = Field(
        default=5,
        ge=1,
        le=10000,
        validation_alias="S3_MIRROR_MAX_PARTS",
    )
    concurrency: int = Field(
        default=5,
        ge=1,
        validation_alias="S3_MIRROR_CONCURRENCY",
    )

    @model_validator(mode="after")
    def _check_chunk_bounds(self) -> MirrorSettings:
        if self.min_chunk_size > self.max_chunk_size:
            msg = "min_chunk_size must not exceed max_chunk_size"
            raise ValueError(msg)
        # Candidates are whole multiples of the alignment, so a bound only
        # needs aligning when it can actually clamp one.
        alignment = self.chunk_alignment
        if self.max_chunk_size % alignment:
            msg = "max_chunk_size must be a multiple of chunk_alignment"
            raise ValueError(msg)
        if self.min_chunk_size > alignment and self.min_chunk_size % alignment:
            msg = "min_chunk_size above chunk_alignment must be a multiple of it"
            raise ValueError(msg)
        return self


class CacheSettings(BaseSettings):
    """Configuration for the edge response cache."""

    model_config = _CONFIG

    enabled: bool = Field(
        default=True,
        validation_alias="S3_MIRROR_CACHE_ENABLED",
    )
    backend: Literal["memory", "redis"] = Field(
        default="memory",
        validation_alias="S3_MIRROR_CACHE_BACKEND",
    )
    redis_url: str = Field(
        default="redis://127.0.0.1:6379/0",
        validation_alias=AliasChoices("S3_MIRROR_CACHE_REDIS_URL", "REDIS_URL"),
    )
    ttl: int = Field(
        default=3600,
        gt=0,
        validation_alias="S3_MIRROR_CACHE_TTL",
    )
    cache_control: str = Field(
        default="public, max-age=0, must-revalidate",
        validation_alias="S3_MIRROR_CACHE_CONTROL",
    )
    max_entry_size: int = Field(
        default=8 * MIB,
        ge=0,
        validation_alias="S3_MIRROR_CACHE_MAX_ENTRY_SIZE",
    )
    memory_max_entries: int = Field(
        default=1024,
        ge=1,
        validation_alias="S3_MIRROR_CACHE_MEMORY_MAX_ENTRIES",
    )


class GatewaySettings(BaseSettings):
    """Process-level gateway behaviour."""

    model_config = _CONFIG

    log_level: str = Field(
        default="INFO",
        validation_alias="S3_MIRROR_LOG_LEVEL",
    )
    passthrough_on_error: bool = Field(
        default=True,
        validation_alias="S3_MIRROR_PASSTHROUGH_ON_ERROR",
    )
    shutdown_grace_period: float = Field(
        default=30.0,
        ge=0,
        validation_alias="S3_MIRROR_SHUTDOWN_GRACE_PERIOD",
    )
    host: str = Field(
        default="0.0.0.0",  # noqa: S104
        validation_alias="S3_MIRROR_HOST",
    )
    port: int = Field(
        default=8000,
        validation_alias="S3_MIRROR_PORT",
    )

    @field_validator("log_level")
    @classmethod
    def _normalise_level(cls, value: str) -> str:
        return value.strip().upper()


@dataclass(frozen=True)
class GatewayConfig:
    """Configuration bundle built once at startup."""

    store: StoreSettings
    origin: OriginSettings
    mirror: MirrorSettings
    cache: CacheSettings
    gateway: GatewaySettings

    def __post_init__(self) -> None:
        if self.mirror.concurrency >= self.origin.max_connections:
            msg = (
                f"mirror concurrency ({self.mirror.concurrency}) must stay below "
                f"the origin connection limit ({self.origin.max_connections})"
            )
            raise ValueError(msg)

    @classmethod
    def from_env(cls) -> GatewayConfig:
        """Load the full gateway configuration from environment variables.

        Returns:
            GatewayConfig populated from environment variables.
        """
        return cls(
            store=StoreSettings(),
            origin=OriginSettings(),
            mirror=MirrorSettings(),
            cache=CacheSettings(),
            gateway=GatewaySettings(),
        )
