"""
Archive module for backup-to-oss.

This module packs directories and snapshot files into tar archives
compressed with zstd (default), gzip, or left uncompressed.

Invariants:
    - Archives are written to a work directory, never next to the source
    - Excluded directories are skipped with their whole subtree
"""

from .packer import (
    ArchiveError,
    ArchiveInfo,
    archive_name,
    create_archive,
    is_excluded,
    source_tag,
)

__all__ = [
    "ArchiveError",
    "ArchiveInfo",
    "archive_name",
    "create_archive",
    "is_excluded",
    "source_tag",
]
