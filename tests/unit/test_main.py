"""
Unit tests for the command line entry point.

Tests cover:
- Argument parsing
- Logging setup (text, JSON, log file)
- The status command end to end on a real snapshot
- Exit codes for configuration and verification failures
"""

import json
import logging
import os
import tempfile

import json_log_formatter
import pytest

from backup_to_oss.etcd import SnapshotStatus
from backup_to_oss.main import build_parser, format_status, main, setup_logging
from tests.snapshot_builder import EtcdSnapshotBuilder


@pytest.fixture
def data_dir(monkeypatch):
    """Empty working directory with no external tools reachable."""
    monkeypatch.setenv("ETCDUTL_PATH", "/nonexistent/bin/etcdutl")
    monkeypatch.setenv("ETCDCTL_PATH", "/nonexistent/bin/etcdctl")
    for name in ("OSS_ENDPOINT", "OSS_ACCESS_KEY", "OSS_SECRET_KEY", "OSS_BUCKET", "LOG_DIR"):
        monkeypatch.delenv(name, raising=False)
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.chdir(tmpdir)
        yield tmpdir


@pytest.fixture(autouse=True)
def restore_logging():
    """Put the root logger back after each test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestParser:
    """Tests for build_parser."""

    def test_global_flags_and_subcommand(self):
        """Global flags precede the subcommand."""
        args = build_parser().parse_args(
            ["-l", "debug", "-c", "gzip", "-b", "bkt", "dir", "-p", "/etc,/opt", "-x", "*.log"]
        )

        assert args.command == "dir"
        assert args.log_level == "debug"
        assert args.compress == "gzip"
        assert args.bucket == "bkt"
        assert args.path == "/etc,/opt"
        assert args.exclude == "*.log"
        assert args.keep_backup_files is None

    def test_status_defaults_to_json(self):
        args = build_parser().parse_args(["status", "etcd.db"])

        assert args.file == "etcd.db"
        assert args.write_out == "json"

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_level_names(self):
        """warn is accepted and unknown levels mean info."""
        setup_logging("warn")
        assert logging.getLogger().level == logging.WARNING

        setup_logging("verbose")
        assert logging.getLogger().level == logging.INFO

    def test_json_format(self):
        """JSON output uses the JSON log formatter."""
        setup_logging("info", log_format="json")

        handler = logging.getLogger().handlers[0]
        assert isinstance(handler.formatter, json_log_formatter.JSONFormatter)

    def test_log_file(self, data_dir):
        """Records also go to backup-<timestamp>.log in the log directory."""
        log_dir = os.path.join(data_dir, "logs")
        setup_logging("info", log_dir=log_dir)

        logging.getLogger("backup_to_oss.test").info("hello file")
        for handler in logging.getLogger().handlers:
            handler.flush()

        (name,) = os.listdir(log_dir)
        assert name.startswith("backup-") and name.endswith(".log")
        with open(os.path.join(log_dir, name)) as f:
            assert "hello file" in f.read()


class TestFormatStatus:
    """Tests for format_status."""

    STATUS = SnapshotStatus(hash=0xBEEF, revision=7, total_key=2, total_size=30)

    def test_json(self):
        assert json.loads(format_status(self.STATUS, "json")) == {
            "hash": 0xBEEF,
            "revision": 7,
            "totalKey": 2,
            "totalSize": 30,
        }

    def test_table(self):
        """The table shows the hash in hex."""
        lines = format_status(self.STATUS, "table").splitlines()

        assert len(lines) == 5
        assert "TOTAL KEYS" in lines[1]
        assert "beef" in lines[3]


class TestMain:
    """Tests for main."""

    def test_status_command(self, data_dir, capsys):
        """status prints the scanned status as JSON and exits 0."""
        builder = EtcdSnapshotBuilder()
        builder.put(b"foo", b"bar")
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        assert main(["status", path]) == 0

        report = json.loads(capsys.readouterr().out)
        assert report == builder.expected_status().to_dict()

    def test_status_empty_file(self, data_dir, capsys):
        """An empty snapshot exits 1."""
        path = os.path.join(data_dir, "empty.db")
        open(path, "wb").close()

        assert main(["status", path]) == 1
        assert "empty" in capsys.readouterr().err

    def test_dir_without_credentials(self, data_dir, capsys):
        """Uploads refuse to start without object storage settings."""
        assert main(["dir", "-p", data_dir]) == 1
        assert "OSS_BUCKET" in capsys.readouterr().err

    def test_missing_env_file(self, data_dir, capsys):
        """A missing --env-file exits 1."""
        assert main(["--env-file", "missing.env", "status", "x.db"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_invalid_compression(self, data_dir):
        """Unknown compression methods exit 1."""
        assert main(["-c", "rar", "status", "x.db"]) == 1
