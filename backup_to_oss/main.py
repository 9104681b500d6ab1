"""
backup-to-oss command line.

Usage:
    backup-to-oss [global flags] dir -p /etc,/var/lib/app -x '*.log'
    backup-to-oss [global flags] snapshot /backups/etcd.db
    backup-to-oss [global flags] status /backups/etcd.db -w table

Global flags override environment variables, which override the .env
file. Exit status is 0 on success and 1 on any failure.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
import time

import json_log_formatter

from ._version import __version__
from .config import BackupSettings, ConfigError, VerifierConfig
from .controller import DirBackupRequest, SnapshotBackupRequest, dir_backup, snapshot_backup
from .etcd import SnapshotStatus, VerifierError, check_snapshot_status
from .ipfetcher import PublicIPFetcher
from .oss import OssConfig

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str = "info", log_dir: str = "", log_format: str = "text") -> None:
    """Configure logging to stderr and, optionally, a file in log_dir.

    Args:
        level: debug, info, warn or error (unknown values mean info)
        log_dir: Directory for backup-<timestamp>.log; empty disables it
        log_format: "json" or "text"
    """
    if log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    log_file_error = None
    if log_dir:
        log_path = os.path.join(log_dir, f"backup-{time.strftime('%Y%m%d-%H%M%S')}.log")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
        except OSError as e:
            log_file_error = f"{log_path}: {e}"

    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
    root_logger.handlers = handlers

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if log_file_error:
        logger.warning("Logging to stderr only, cannot open log file", extra={"error": log_file_error})


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="backup-to-oss",
        description="Back up directories and etcd snapshots to S3-compatible object storage",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-l", "--log-level", help="debug, info, warn or error")
    parser.add_argument("--log-dir", help="Also write logs to this directory")
    parser.add_argument("--log-format", choices=["text", "json"], help="Log output format")
    parser.add_argument("--env-file", help="Read settings from this file instead of ./.env")
    parser.add_argument("-c", "--compress", help="Compression method: zstd, gzip or none")
    parser.add_argument(
        "--keep-backup-files",
        action="store_true",
        default=None,
        help="Keep local archives after upload",
    )
    parser.add_argument("-e", "--endpoint", help="Object storage endpoint")
    parser.add_argument("-a", "--access-key", help="Access key id")
    parser.add_argument("-s", "--secret-key", help="Secret access key")
    parser.add_argument("-b", "--bucket", help="Bucket name")
    parser.add_argument("--prefix", help="Object key prefix")

    subparsers = parser.add_subparsers(dest="command", required=True)

    dir_parser = subparsers.add_parser("dir", help="Archive and upload directories")
    dir_parser.add_argument("-p", "--path", help="Comma-separated directories (env DIRS_TO_BACKUP)")
    dir_parser.add_argument("-x", "--exclude", help="Comma-separated glob patterns (env EXCLUDE_PATTERNS)")

    snap_parser = subparsers.add_parser("snapshot", help="Verify and upload an etcd snapshot")
    snap_parser.add_argument("file", help="Snapshot file")

    status_parser = subparsers.add_parser("status", help="Print the status of an etcd snapshot")
    status_parser.add_argument("file", help="Snapshot file")
    status_parser.add_argument(
        "-w",
        "--write-out",
        choices=["json", "table"],
        default="json",
        help="Output format",
    )

    return parser


def load_settings(args: argparse.Namespace) -> BackupSettings:
    """Load settings and apply command-line overrides.

    Raises:
        ConfigError: If the env file is missing or a value is invalid
    """
    settings = BackupSettings.load(args.env_file)
    return settings.merge_with_flags(
        log_level=args.log_level,
        log_dir=args.log_dir,
        log_format=args.log_format,
        compress_method=args.compress,
        keep_backup_files=args.keep_backup_files,
        oss_endpoint=args.endpoint,
        oss_access_key=args.access_key,
        oss_secret_key=args.secret_key,
        oss_bucket=args.bucket,
        oss_object_prefix=args.prefix,
        dirs_to_backup=getattr(args, "path", None),
        exclude_patterns=getattr(args, "exclude", None),
    )


def oss_config(settings: BackupSettings) -> OssConfig:
    """Object storage target from settings.

    Raises:
        ConfigError: If a required setting is missing
    """
    settings.validate_for_upload()
    return OssConfig(
        endpoint=settings.oss_endpoint,
        access_key=settings.oss_access_key,
        secret_key=settings.oss_secret_key,
        bucket=settings.oss_bucket,
        object_prefix=settings.oss_object_prefix,
        region=settings.oss_region,
    )


def format_status(status: SnapshotStatus, write_out: str) -> str:
    """Render a snapshot status as JSON or a table."""
    if write_out == "json":
        return json.dumps(status.to_dict())

    header = ["HASH", "REVISION", "TOTAL KEYS", "TOTAL SIZE"]
    row = [f"{status.hash:x}", str(status.revision), str(status.total_key), str(status.total_size)]
    widths = [max(len(h), len(v)) + 2 for h, v in zip(header, row)]
    border = "+" + "+".join("-" * w for w in widths) + "+"

    def line(cells: list[str]) -> str:
        return "|" + "|".join(c.center(w) for c, w in zip(cells, widths)) + "|"

    return "\n".join([border, line(header), border, line(row), border])


def run_dir(settings: BackupSettings) -> int:
    req = DirBackupRequest(
        dir_paths=settings.dir_paths,
        oss=oss_config(settings),
        exclude_patterns=settings.exclude_list,
        compress_method=settings.compress_method,
        keep_backup_files=settings.keep_backup_files,
        work_dir=settings.work_dir,
    )
    result = asyncio.run(dir_backup(req))
    if not result.success:
        print(f"Backup failed: {result.error}", file=sys.stderr)
        return 1
    for key in result.objects:
        print(f"Uploaded oss://{settings.oss_bucket}/{key}")
    return 0


def run_snapshot(settings: BackupSettings, file_path: str) -> int:
    req = SnapshotBackupRequest(
        snapshot_path=file_path,
        oss=oss_config(settings),
        compress_method=settings.compress_method,
        keep_backup_files=settings.keep_backup_files,
        work_dir=settings.work_dir,
        verifier_config=VerifierConfig.from_env(),
        ip_fetcher=PublicIPFetcher(),
    )
    result = asyncio.run(snapshot_backup(req))
    if not result.success:
        print(f"Snapshot backup failed: {result.error}", file=sys.stderr)
        return 1
    print(f"Snapshot verified: {result.status}")
    for key in result.objects:
        print(f"Uploaded oss://{settings.oss_bucket}/{key}")
    return 0


def run_status(file_path: str, write_out: str) -> int:
    try:
        status = check_snapshot_status(file_path, VerifierConfig.from_env())
    except VerifierError as e:
        print(f"Snapshot verification failed: {e}", file=sys.stderr)
        return 1
    print(format_status(status, write_out))
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, settings.log_dir, settings.log_format)
    logger.info("backup-to-oss starting", extra={"version": __version__, "command": args.command})

    try:
        if args.command == "dir":
            settings.log_config()
            return run_dir(settings)
        if args.command == "snapshot":
            settings.log_config()
            return run_snapshot(settings, args.file)
        return run_status(args.file, args.write_out)
    except ConfigError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
