"""
Tar archive packer for backups.

Archive naming:
    <work_dir>/<source basename>-<YYYYmmdd-HHMMSS>.tar[.zst|.gz]

Exclude patterns are shell globs matched against a member's base name
and against its path relative to the archived source. A matching
directory is skipped together with everything below it.

Invariants:
    - Sources are only read
    - A failed archive never leaves a partial file behind
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import tarfile
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import zstandard as zstd

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "zstd": ".tar.zst",
    "gzip": ".tar.gz",
    "none": ".tar",
}

ZSTD_LEVEL = 3


class ArchiveError(Exception):
    """Creating an archive failed."""

    pass


@dataclass
class ArchiveInfo:
    """A finished archive.

    Attributes:
        path: Archive file path
        source: What was archived
        method: Compression method
        size_bytes: Archive size on disk
        member_count: Number of tar members written
    """

    path: Path
    source: Path
    method: str
    size_bytes: int
    member_count: int


def archive_name(
    source: str | os.PathLike[str],
    method: str,
    now: float | None = None,
    tag: str = "",
) -> str:
    """Build the archive file name for a source.

    tag, when given, is inserted after the base name to keep archives of
    same-named sources apart.
    """
    if method not in EXTENSIONS:
        raise ValueError(f"Unsupported compression method: {method}")
    stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(now))
    base = Path(source).resolve().name or "root"
    if tag:
        base = f"{base}-{tag}"
    return f"{base}-{stamp}{EXTENSIONS[method]}"


def source_tag(source: str | os.PathLike[str]) -> str:
    """Short stable tag derived from a source's resolved path."""
    resolved = str(Path(source).resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:8]


def is_excluded(rel_path: str, patterns: Sequence[str]) -> bool:
    """Whether a member path matches any exclude pattern."""
    name = os.path.basename(rel_path)
    for pattern in patterns:
        pattern = pattern.rstrip("/")
        if fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_path, pattern):
            return True
    return False


def create_archive(
    source: str | os.PathLike[str],
    output_dir: str | os.PathLike[str],
    method: str = "zstd",
    exclude_patterns: Sequence[str] = (),
    tag: str = "",
) -> ArchiveInfo:
    """Archive a directory or a single file.

    Args:
        source: Directory or file to archive
        output_dir: Where to write the archive
        method: "zstd", "gzip" or "none"
        exclude_patterns: Glob patterns to leave out
        tag: Optional name tag (see archive_name)

    Returns:
        ArchiveInfo describing the written archive

    Raises:
        ArchiveError: If the source is missing, the output directory is
            unusable, or writing fails
        ValueError: If method is unknown
    """
    source_path = Path(source).resolve()
    if not source_path.exists():
        raise ArchiveError(f"Source does not exist: {source}")

    archive_path = Path(output_dir) / archive_name(source_path, method, tag=tag)
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ArchiveError(f"Cannot create output directory {output_dir}: {e}") from e

    arcname = source_path.name or "root"
    members = 0

    def tar_filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        nonlocal members
        rel = info.name[len(arcname) :].lstrip("/")
        if rel and is_excluded(rel, exclude_patterns):
            logger.debug("Excluding from archive", extra={"member": info.name})
            return None
        members += 1
        return info

    logger.info(
        "Creating archive",
        extra={"source": str(source_path), "archive": str(archive_path), "method": method},
    )

    try:
        if method == "zstd":
            cctx = zstd.ZstdCompressor(level=ZSTD_LEVEL)
            with open(archive_path, "wb") as fh:
                with cctx.stream_writer(fh, closefd=False) as writer:
                    with tarfile.open(fileobj=writer, mode="w|") as tar:
                        tar.add(str(source_path), arcname=arcname, filter=tar_filter)
        elif method == "gzip":
            with tarfile.open(archive_path, mode="w:gz") as tar:
                tar.add(str(source_path), arcname=arcname, filter=tar_filter)
        else:
            with tarfile.open(archive_path, mode="w") as tar:
                tar.add(str(source_path), arcname=arcname, filter=tar_filter)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        if archive_path.exists():
            archive_path.unlink()
        raise ArchiveError(f"Failed to archive {source_path}: {e}") from e

    try:
        size_bytes = archive_path.stat().st_size
    except OSError as e:
        raise ArchiveError(f"Cannot stat archive {archive_path}: {e}") from e

    info = ArchiveInfo(
        path=archive_path,
        source=source_path,
        method=method,
        size_bytes=size_bytes,
        member_count=members,
    )
    logger.info(
        "Archive created",
        extra={
            "archive": str(archive_path),
            "size_bytes": info.size_bytes,
            "members": info.member_count,
        },
    )
    return info
