"""Application configuration for the edge relay services."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field, RedisDsn, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class RelaySettings(BaseSettings):
    """Runtime settings for the install relay, built once at process start."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
    )

    repository: str = env_field("Zyling-ai/zyhive", "EDGERELAY_REPOSITORY")
    raw_base_url: str = env_field("https://raw.githubusercontent.com", "EDGERELAY_RAW_BASE_URL")
    api_base_url: str = env_field("https://api.github.com", "EDGERELAY_API_BASE_URL")
    download_base_url: str = env_field("https://github.com", "EDGERELAY_DOWNLOAD_BASE_URL")
    script_branch: str = env_field("main", "EDGERELAY_SCRIPT_BRANCH")
    script_path: str = env_field("scripts/install.sh", "EDGERELAY_SCRIPT_PATH")
    script_route: str = env_field("/zyhive.sh", "EDGERELAY_SCRIPT_ROUTE")
    homepage_url: str = env_field("https://zyling.ai", "EDGERELAY_HOMEPAGE_URL")
    served_by: str = env_field("install.zyling.ai", "EDGERELAY_SERVED_BY")
    user_agent: str = env_field("ZyHive-Install-Worker/1.0", "EDGERELAY_USER_AGENT")

    latest_cache_ttl_seconds: int = env_field(300, "EDGERELAY_LATEST_TTL")
    download_cache_ttl_seconds: int = env_field(86400, "EDGERELAY_DOWNLOAD_TTL")
    cache_backend: Literal["memory", "redis"] = env_field("memory", "EDGERELAY_CACHE_BACKEND")
    redis_url: Optional[RedisDsn] = env_field(None, "EDGERELAY_REDIS_URL")
    memory_cache_max_entries: int = env_field(256, "EDGERELAY_MEMORY_CACHE_MAX_ENTRIES")
    max_cached_object_bytes: int = env_field(128 * 1024 * 1024, "EDGERELAY_MAX_CACHED_OBJECT_BYTES")  # 128MB default
    cache_writer_drain_timeout_seconds: float = env_field(10.0, "EDGERELAY_CACHE_DRAIN_TIMEOUT")
    upstream_timeout_seconds: Optional[float] = env_field(None, "EDGERELAY_UPSTREAM_TIMEOUT")

    bind_host: str = env_field("0.0.0.0", "EDGERELAY_BIND_HOST")
    bind_port: int = env_field(8080, "EDGERELAY_BIND_PORT")
    ops_host: str = env_field("127.0.0.1", "EDGERELAY_OPS_HOST")
    ops_port: int = env_field(9480, "EDGERELAY_OPS_PORT")
    metrics_token: Optional[SecretStr] = env_field(None, "EDGERELAY_METRICS_TOKEN")

    log_level: str = env_field("INFO", "EDGERELAY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGERELAY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGERELAY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGERELAY_OTEL_SAMPLER_RATIO")

    @field_validator("raw_base_url", "api_base_url", "download_base_url", "homepage_url", mode="before")
    @classmethod
    def _strip_trailing_slash(cls, value):
        if isinstance(value, str):
            return value.strip().rstrip("/")
        return value

    @field_validator("repository", "script_path", mode="before")
    @classmethod
    def _strip_slashes(cls, value):
        if isinstance(value, str):
            return value.strip().strip("/")
        return value

    @field_validator("latest_cache_ttl_seconds", "download_cache_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("cache TTLs must be positive")
        return value

    @model_validator(mode="after")
    def _require_redis_url(self) -> "RelaySettings":
        if self.cache_backend == "redis" and self.redis_url is None:
            raise ValueError("EDGERELAY_REDIS_URL is required when EDGERELAY_CACHE_BACKEND=redis")
        return self

    @property
    def script_url(self) -> str:
        return f"{self.raw_base_url}/{self.repository}/{self.script_branch}/{self.script_path}"

    @property
    def latest_release_url(self) -> str:
        return f"{self.api_base_url}/repos/{self.repository}/releases/latest"

    @property
    def latest_cache_key(self) -> str:
        return f"relay://latest/{self.repository}"

    def download_url(self, version: str, filename: str) -> str:
        return f"{self.download_base_url}/{self.repository}/releases/download/{version}/{filename}"
