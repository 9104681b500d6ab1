"""
Backup controller.

Drives the two backup jobs:

    dir:      archive each directory ─▶ upload ─▶ remove local archive
    snapshot: verify snapshot ─▶ archive ─▶ upload ─▶ upload manifest
              ─▶ remove local archive

Blocking work (verification, tar, hashing) runs in the default executor
so uploads can share the event loop.

Invariants:
    - A snapshot that fails verification is never uploaded
    - Local archives are removed after upload unless keep_backup_files is set
    - A failure stops the job; later directories are not attempted
    - Every directory in a job maps to a distinct object key; sources
      sharing a base name get a tag from their resolved path
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .archive import ArchiveError, ArchiveInfo, create_archive, source_tag
from .config import VerifierConfig
from .etcd import SnapshotStatus, SnapshotVerifier, VerifierError
from .ipfetcher import IPFetchError, PublicIPFetcher
from .oss import OssConfig, OssUploader, UploadError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = ".manifest.json"


@dataclass
class DirBackupRequest:
    """Directories to back up.

    Attributes:
        dir_paths: Directories (or files) to archive, one archive each
        oss: Object storage target
        exclude_patterns: Glob patterns left out of every archive
        compress_method: zstd, gzip or none
        keep_backup_files: Keep local archives after upload
        work_dir: Where archives are written (system temp dir if empty)
    """

    dir_paths: Sequence[str]
    oss: OssConfig
    exclude_patterns: Sequence[str] = ()
    compress_method: str = "zstd"
    keep_backup_files: bool = False
    work_dir: str = ""


@dataclass
class SnapshotBackupRequest:
    """An etcd snapshot to verify and back up.

    Attributes:
        snapshot_path: Snapshot file
        oss: Object storage target
        compress_method: zstd, gzip or none
        keep_backup_files: Keep the local archive after upload
        work_dir: Where the archive is written (system temp dir if empty)
        verifier_config: Verification tiers (loaded from env if None)
        ip_fetcher: Public IP lookup for the manifest (skipped if None)
    """

    snapshot_path: str
    oss: OssConfig
    compress_method: str = "zstd"
    keep_backup_files: bool = False
    work_dir: str = ""
    verifier_config: VerifierConfig | None = None
    ip_fetcher: PublicIPFetcher | None = None


@dataclass
class BackupResult:
    """Result of a backup job.

    Attributes:
        success: Whether every step succeeded
        objects: Object keys uploaded, in order
        duration_ms: Total job duration
        status: Snapshot status (snapshot jobs only)
        error: Error message if failed
    """

    success: bool
    objects: list[str] = field(default_factory=list)
    duration_ms: int = 0
    status: SnapshotStatus | None = None
    error: str | None = None


async def dir_backup(req: DirBackupRequest, uploader: OssUploader | None = None) -> BackupResult:
    """Archive and upload each directory in turn."""
    start = time.time()
    uploader = uploader or OssUploader(req.oss)
    result = BackupResult(success=False)

    if not req.dir_paths:
        result.error = "no directories to back up"
        logger.error("Directory backup failed", extra={"error": result.error})
        return result

    work_dir = req.work_dir or tempfile.gettempdir()
    logger.info("Starting directory backup", extra={"dirs": list(req.dir_paths)})

    try:
        tags = archive_tags(req.dir_paths)
        for dir_path, tag in zip(req.dir_paths, tags):
            key = await _archive_and_upload(
                dir_path,
                work_dir,
                req.compress_method,
                req.exclude_patterns,
                req.keep_backup_files,
                uploader,
                tag,
            )
            if key in result.objects:
                raise ArchiveError(f"Duplicate object key in one job: {key}")
            result.objects.append(key)
    except (ArchiveError, UploadError) as e:
        result.error = str(e)
        logger.error("Directory backup failed", extra={"error": str(e)})
    else:
        result.success = True
        logger.info("Directory backup complete", extra={"objects": result.objects})

    result.duration_ms = int((time.time() - start) * 1000)
    return result


async def snapshot_backup(
    req: SnapshotBackupRequest,
    uploader: OssUploader | None = None,
) -> BackupResult:
    """Verify an etcd snapshot, then upload it with a manifest."""
    start = time.time()
    uploader = uploader or OssUploader(req.oss)
    result = BackupResult(success=False)
    loop = asyncio.get_event_loop()

    verifier = SnapshotVerifier.from_config(req.verifier_config or VerifierConfig.from_env())
    try:
        status = await loop.run_in_executor(None, verifier.verify, req.snapshot_path)
    except VerifierError as e:
        result.error = f"snapshot verification failed: {e}"
        result.duration_ms = int((time.time() - start) * 1000)
        logger.error(
            "Snapshot backup aborted",
            extra={"path": req.snapshot_path, "error": str(e)},
        )
        return result
    result.status = status

    source_ip = await loop.run_in_executor(None, _source_ip, req.ip_fetcher)

    work_dir = req.work_dir or tempfile.gettempdir()
    archive: ArchiveInfo | None = None
    try:
        archive = await loop.run_in_executor(
            None,
            create_archive,
            req.snapshot_path,
            work_dir,
            req.compress_method,
        )
        checksum = await loop.run_in_executor(None, compute_checksum, archive.path)

        key = await uploader.upload_file(archive.path)
        result.objects.append(key)

        manifest = build_manifest(status, checksum, archive, source_ip)
        manifest_key = await uploader.put_json(key + MANIFEST_SUFFIX, manifest)
        result.objects.append(manifest_key)
    except (ArchiveError, UploadError, OSError) as e:
        result.error = str(e)
        logger.error(
            "Snapshot backup failed",
            extra={"path": req.snapshot_path, "error": str(e)},
        )
    else:
        result.success = True
        logger.info(
            "Snapshot backup complete",
            extra={"path": req.snapshot_path, "objects": result.objects},
        )
    finally:
        if archive is not None:
            _cleanup(archive.path, req.keep_backup_files)

    result.duration_ms = int((time.time() - start) * 1000)
    return result


def archive_tags(dir_paths: Sequence[str]) -> list[str]:
    """Name tag per directory, empty unless its base name is shared.

    Raises:
        ArchiveError: If the same directory is listed twice
    """
    resolved = [Path(p).resolve() for p in dir_paths]
    seen: set[Path] = set()
    for path in resolved:
        if path in seen:
            raise ArchiveError(f"Directory listed more than once: {path}")
        seen.add(path)

    names = [path.name or "root" for path in resolved]
    return [
        source_tag(path) if names.count(name) > 1 else ""
        for path, name in zip(resolved, names)
    ]


def build_manifest(
    status: SnapshotStatus,
    checksum: str,
    archive: ArchiveInfo,
    source_ip: str | None,
) -> dict[str, Any]:
    """Manifest uploaded next to a snapshot archive."""
    return {
        "snapshot": archive.source.name,
        "archive": archive.path.name,
        "compress_method": archive.method,
        "size_bytes": archive.size_bytes,
        "checksum": checksum,
        "status": status.to_dict(),
        "source_ip": source_ip,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


def compute_checksum(file_path: str | Path) -> str:
    """Compute SHA-256 checksum of file."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return f"sha256:{sha256.hexdigest()}"


async def _archive_and_upload(
    source: str,
    work_dir: str,
    method: str,
    exclude_patterns: Sequence[str],
    keep: bool,
    uploader: OssUploader,
    tag: str = "",
) -> str:
    archive = await asyncio.get_event_loop().run_in_executor(
        None,
        create_archive,
        source,
        work_dir,
        method,
        exclude_patterns,
        tag,
    )
    try:
        return await uploader.upload_file(archive.path)
    finally:
        _cleanup(archive.path, keep)


def _source_ip(fetcher: PublicIPFetcher | None) -> str | None:
    if fetcher is None:
        return None
    try:
        return fetcher.fetch()
    except IPFetchError as e:
        logger.warning("Could not determine public IP", extra={"error": str(e)})
        return None


def _cleanup(path: Path, keep: bool) -> None:
    if keep:
        logger.info("Keeping local archive", extra={"archive": str(path)})
        return
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as e:
        logger.warning("Failed to remove local archive", extra={"archive": str(path), "error": str(e)})
        return
    logger.debug("Removed local archive", extra={"archive": str(path)})
