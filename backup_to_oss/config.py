"""
Configuration management for backup-to-oss.

Configuration comes from three layers, highest priority first:
1. Command-line flags
2. Environment variables
3. A .env file (current directory by default, or --env-file)

Invariants:
    - All settings have defaults usable for local runs
    - Uploads refuse to start without endpoint, credentials and bucket
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that keep existing .env files working
    - Keep environment variable names stable; deployments depend on them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

COMPRESS_METHODS = ("zstd", "gzip", "none")


class ConfigError(ValueError):
    """Configuration is missing or invalid."""

    pass


@dataclass(frozen=True)
class VerifierConfig:
    """Snapshot verification configuration.

    Attributes:
        etcdutl_path: Primary status tool (name on PATH or absolute path)
        etcdctl_path: Legacy status tool
        etcdctl_api: Value for ETCDCTL_API when running the legacy tool
        internal_fallback: Scan the snapshot directly when both tools fail
    """

    etcdutl_path: str = "etcdutl"
    etcdctl_path: str = "etcdctl"
    etcdctl_api: str = "3"
    internal_fallback: bool = True

    @classmethod
    def from_env(cls) -> VerifierConfig:
        """Load configuration from environment variables."""
        return cls(
            etcdutl_path=os.getenv("ETCDUTL_PATH", "etcdutl"),
            etcdctl_path=os.getenv("ETCDCTL_PATH", "etcdctl"),
            etcdctl_api=os.getenv("ETCDCTL_API", "3"),
            internal_fallback=os.getenv("SNAPSHOT_INTERNAL_FALLBACK", "true").lower() == "true",
        )


class BackupSettings(BaseSettings):
    """Backup configuration loaded from environment and .env file."""

    # What to back up
    dirs_to_backup: str = Field(default="", description="Comma-separated directories")
    exclude_patterns: str = Field(default="", description="Comma-separated glob patterns")

    # Object storage
    oss_endpoint: str = Field(default="", description="S3-compatible endpoint")
    oss_access_key: str = Field(default="", description="Access key id")
    oss_secret_key: str = Field(default="", description="Secret access key")
    oss_bucket: str = Field(default="", description="Bucket name")
    oss_object_prefix: str = Field(default="", description="Object key prefix")
    oss_region: str = Field(default="us-east-1", description="Signing region")

    # Archiving
    compress_method: str = Field(default="zstd", description="zstd, gzip or none")
    keep_backup_files: bool = Field(default=False, description="Keep local archives")
    work_dir: str = Field(default="", description="Directory for temporary archives")

    # Logging
    log_level: str = Field(default="info", description="debug, info, warn or error")
    log_dir: str = Field(default="", description="Also write logs to this directory")
    log_format: str = Field(default="text", description="text or json")

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("compress_method")
    @classmethod
    def _check_compress_method(cls, value: str) -> str:
        return normalize_compress_method(value)

    @classmethod
    def load(cls, env_file: str | None = None) -> BackupSettings:
        """Load settings, reading env_file instead of ./.env when given.

        Raises:
            ConfigError: If env_file does not exist or a value is invalid
        """
        if env_file and not os.path.isfile(env_file):
            raise ConfigError(f"env file not found: {env_file}")
        try:
            if env_file:
                return cls(_env_file=env_file)
            return cls()
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @property
    def dir_paths(self) -> list[str]:
        return _split_list(self.dirs_to_backup)

    @property
    def exclude_list(self) -> list[str]:
        return _split_list(self.exclude_patterns)

    def merge_with_flags(self, **flags: Any) -> BackupSettings:
        """Return a copy with non-empty flag values taking precedence.

        Raises:
            ConfigError: If a flag value is invalid
        """
        updates = {k: v for k, v in flags.items() if v not in (None, "")}
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ConfigError(f"Unknown settings: {', '.join(sorted(unknown))}")
        if "compress_method" in updates:
            try:
                updates["compress_method"] = normalize_compress_method(updates["compress_method"])
            except ValueError as e:
                raise ConfigError(str(e)) from e
        return self.model_copy(update=updates)

    def validate_for_upload(self) -> None:
        """Check that everything an upload needs is present.

        Raises:
            ConfigError: Naming every missing setting
        """
        required = {
            "OSS_ENDPOINT": self.oss_endpoint,
            "OSS_ACCESS_KEY": self.oss_access_key,
            "OSS_SECRET_KEY": self.oss_secret_key,
            "OSS_BUCKET": self.oss_bucket,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Backup configuration loaded",
            extra={
                "dirs": self.dir_paths,
                "exclude": self.exclude_list,
                "oss_endpoint": self.oss_endpoint,
                "oss_bucket": self.oss_bucket,
                "oss_object_prefix": self.oss_object_prefix,
                "oss_access_key_set": bool(self.oss_access_key),
                "compress_method": self.compress_method,
                "keep_backup_files": self.keep_backup_files,
            },
        )


def normalize_compress_method(value: str) -> str:
    """Lower-case and validate a compression method name."""
    value = value.lower()
    if value not in COMPRESS_METHODS:
        raise ValueError(f"compress_method must be one of {', '.join(COMPRESS_METHODS)}")
    return value


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]
