"""
Unit tests for configuration loading.

Tests cover:
- Defaults, environment variables and .env files
- Command-line overrides
- Validation of compression method and upload settings
"""

import os
import tempfile

import pytest

from backup_to_oss.config import BackupSettings, ConfigError, normalize_compress_method

ENV_VARS = [
    "DIRS_TO_BACKUP",
    "EXCLUDE_PATTERNS",
    "OSS_ENDPOINT",
    "OSS_ACCESS_KEY",
    "OSS_SECRET_KEY",
    "OSS_BUCKET",
    "OSS_OBJECT_PREFIX",
    "OSS_REGION",
    "COMPRESS_METHOD",
    "KEEP_BACKUP_FILES",
    "WORK_DIR",
    "LOG_LEVEL",
    "LOG_DIR",
    "LOG_FORMAT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Run in an empty directory with no backup variables set."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.chdir(tmpdir)
        yield tmpdir


class TestBackupSettings:
    """Tests for BackupSettings."""

    def test_defaults(self, clean_env):
        """Without configuration everything has a usable default."""
        settings = BackupSettings.load()

        assert settings.compress_method == "zstd"
        assert settings.keep_backup_files is False
        assert settings.oss_region == "us-east-1"
        assert settings.dir_paths == []

    def test_environment(self, clean_env, monkeypatch):
        """Environment variables are read."""
        monkeypatch.setenv("DIRS_TO_BACKUP", "/etc, /var/lib/app ,")
        monkeypatch.setenv("EXCLUDE_PATTERNS", "*.log,tmp")
        monkeypatch.setenv("COMPRESS_METHOD", "GZIP")
        monkeypatch.setenv("KEEP_BACKUP_FILES", "true")

        settings = BackupSettings.load()

        assert settings.dir_paths == ["/etc", "/var/lib/app"]
        assert settings.exclude_list == ["*.log", "tmp"]
        assert settings.compress_method == "gzip"
        assert settings.keep_backup_files is True

    def test_dotenv_in_working_directory(self, clean_env):
        """A .env file in the working directory is read."""
        with open(os.path.join(clean_env, ".env"), "w") as f:
            f.write("OSS_BUCKET=from-dotenv\n")

        assert BackupSettings.load().oss_bucket == "from-dotenv"

    def test_explicit_env_file(self, clean_env, monkeypatch):
        """--env-file is read, and the environment still wins over it."""
        path = os.path.join(clean_env, "backup.env")
        with open(path, "w") as f:
            f.write("OSS_BUCKET=from-file\nOSS_ENDPOINT=file-endpoint\n")
        monkeypatch.setenv("OSS_ENDPOINT", "env-endpoint")

        settings = BackupSettings.load(path)

        assert settings.oss_bucket == "from-file"
        assert settings.oss_endpoint == "env-endpoint"

    def test_missing_env_file(self, clean_env):
        """A named env file must exist."""
        with pytest.raises(ConfigError, match="not found"):
            BackupSettings.load(os.path.join(clean_env, "missing.env"))

    def test_invalid_compress_method(self, clean_env, monkeypatch):
        """Unknown compression methods are rejected."""
        monkeypatch.setenv("COMPRESS_METHOD", "brotli")

        with pytest.raises(ConfigError):
            BackupSettings.load()

    def test_flags_override(self, clean_env, monkeypatch):
        """Flags win; unset flags leave values alone."""
        monkeypatch.setenv("OSS_BUCKET", "env-bucket")
        monkeypatch.setenv("KEEP_BACKUP_FILES", "true")

        settings = BackupSettings.load().merge_with_flags(
            oss_bucket="flag-bucket",
            oss_endpoint="",
            keep_backup_files=None,
            compress_method="None",
        )

        assert settings.oss_bucket == "flag-bucket"
        assert settings.keep_backup_files is True
        assert settings.compress_method == "none"

    def test_flags_validated(self, clean_env):
        """Bad flag values and unknown settings are rejected."""
        settings = BackupSettings.load()

        with pytest.raises(ConfigError):
            settings.merge_with_flags(compress_method="rar")
        with pytest.raises(ConfigError, match="Unknown"):
            settings.merge_with_flags(color="blue")

    def test_validate_for_upload(self, clean_env, monkeypatch):
        """Missing upload settings are all named."""
        monkeypatch.setenv("OSS_ENDPOINT", "oss.example.com")

        with pytest.raises(ConfigError) as exc_info:
            BackupSettings.load().validate_for_upload()

        message = str(exc_info.value)
        assert "OSS_ACCESS_KEY" in message
        assert "OSS_SECRET_KEY" in message
        assert "OSS_BUCKET" in message
        assert "OSS_ENDPOINT" not in message

    def test_secret_not_logged(self, clean_env, monkeypatch, caplog):
        """Logging the configuration never includes the secret."""
        monkeypatch.setenv("OSS_SECRET_KEY", "s3cr3t-value")
        caplog.set_level("INFO")

        BackupSettings.load().log_config()

        for record in caplog.records:
            assert "s3cr3t-value" not in str(record.__dict__)


class TestNormalizeCompressMethod:
    """Tests for normalize_compress_method."""

    def test_case_insensitive(self):
        assert normalize_compress_method("ZSTD") == "zstd"

    def test_unknown(self):
        with pytest.raises(ValueError):
            normalize_compress_method("xz")
