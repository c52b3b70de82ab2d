"""Shared configuration classes for attachsync.

This module defines:
- RemoteConfig: credential bundle for the remote work-item-tracking service
- SyncSettings: tunables for the attachment synchronization engine

Both can be built from ``ATTACHSYNC_*`` environment variables.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

MIB = 1024 * 1024

DEFAULT_API_VERSION = "5.1"
DEFAULT_CHUNK_SIZE = 5 * MIB
DEFAULT_CHUNK_THRESHOLD = 5 * MIB
DEFAULT_MAX_FILE_SIZE = 500 * MIB

ENV_PREFIX = "ATTACHSYNC_"


class ConfigError(ValueError):
    """Raised when configuration values are missing or invalid."""


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RemoteConfig:
    """Connection settings for the remote work-item-tracking service.

    Attributes:
        org_url: Collection/organization URL (e.g., "https://tfs.example.com/DefaultCollection").
        project: Project name used in project-scoped API paths.
        pat: Personal access token, sent as basic auth password.
        api_version: Preferred REST API version.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    org_url: str
    project: str
    pat: str
    api_version: str = DEFAULT_API_VERSION
    timeout: float = 60.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize org URL.

        Strips trailing slashes and a trailing project segment, which users
        commonly paste along with the collection URL.
        """
        self.org_url = self.org_url.strip().rstrip("/")
        self.project = self.project.strip()
        suffix = f"/{self.project}".lower()
        if self.project and self.org_url.lower().endswith(suffix):
            self.org_url = self.org_url[: -len(suffix)]

    @property
    def auth(self) -> tuple[str, str]:
        """Basic auth pair (empty user name, PAT as password)."""
        return ("", self.pat)

    @property
    def project_url(self) -> str:
        """Base URL including the project segment."""
        return f"{self.org_url}/{self.project}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RemoteConfig:
        """Build from ATTACHSYNC_ORG_URL, ATTACHSYNC_PROJECT, ATTACHSYNC_PAT.

        Raises:
            ConfigError: If any required variable is missing.
        """
        env = os.environ if environ is None else environ
        values = {
            "org_url": env.get(f"{ENV_PREFIX}ORG_URL", ""),
            "project": env.get(f"{ENV_PREFIX}PROJECT", ""),
            "pat": env.get(f"{ENV_PREFIX}PAT", ""),
        }
        missing = [name for name, value in values.items() if not value.strip()]
        if missing:
            raise ConfigError(f"Missing remote service settings: {', '.join(missing)}")
        return cls(
            **values,
            api_version=env.get(f"{ENV_PREFIX}API_VERSION", DEFAULT_API_VERSION),
            timeout=float(env.get(f"{ENV_PREFIX}REQUEST_TIMEOUT", "60")),
            verify_ssl=_env_bool(env.get(f"{ENV_PREFIX}VERIFY_SSL", "true")),
        )


@dataclass
class SyncSettings:
    """Tunables for uploads, downloads, retries and the job queue.

    Files larger than ``chunk_threshold`` are sent with the chunked protocol
    in ``chunk_size`` pieces; both default to 5 MiB.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_threshold: int = DEFAULT_CHUNK_THRESHOLD
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    max_retries: int = 3
    retry_backoff: float = 1.0
    max_backoff: float = 30.0
    download_concurrency: int = 4
    session_ttl_hours: int = 24
    webhook_secret: str = ""
    detect_remote_deletions: bool = True
    job_batch_size: int = 10
    job_max_retries: int = 3
    job_poll_seconds: int = 30

    def __post_init__(self) -> None:
        """Validate numeric settings."""
        if self.chunk_size <= 0:
            raise ConfigError("chunk_size must be positive")
        if self.chunk_threshold <= 0:
            raise ConfigError("chunk_threshold must be positive")
        if self.max_file_size <= 0:
            raise ConfigError("max_file_size must be positive")
        if self.max_retries < 0:
            raise ConfigError("max_retries cannot be negative")
        if self.download_concurrency < 1:
            raise ConfigError("download_concurrency must be at least 1")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> SyncSettings:
        """Build settings from ATTACHSYNC_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def _int(name: str, default: int) -> int:
            return int(env.get(f"{ENV_PREFIX}{name}", default))

        return cls(
            chunk_size=_int("CHUNK_SIZE", defaults.chunk_size),
            chunk_threshold=_int("CHUNK_THRESHOLD", defaults.chunk_threshold),
            max_file_size=_int("MAX_FILE_SIZE", defaults.max_file_size),
            max_retries=_int("MAX_RETRIES", defaults.max_retries),
            retry_backoff=float(env.get(f"{ENV_PREFIX}RETRY_BACKOFF", defaults.retry_backoff)),
            max_backoff=float(env.get(f"{ENV_PREFIX}MAX_BACKOFF", defaults.max_backoff)),
            download_concurrency=_int("DOWNLOAD_CONCURRENCY", defaults.download_concurrency),
            session_ttl_hours=_int("SESSION_TTL_HOURS", defaults.session_ttl_hours),
            webhook_secret=env.get(f"{ENV_PREFIX}WEBHOOK_SECRET", ""),
            detect_remote_deletions=_env_bool(
                env.get(f"{ENV_PREFIX}DETECT_REMOTE_DELETIONS", "true")
            ),
            job_batch_size=_int("JOB_BATCH_SIZE", defaults.job_batch_size),
            job_max_retries=_int("JOB_MAX_RETRIES", defaults.job_max_retries),
            job_poll_seconds=_int("JOB_POLL_SECONDS", defaults.job_poll_seconds),
        )
