"""
etcd snapshot status verification.

This module reports the hash, revision, key count and byte size of an
etcd snapshot file, preferring the official tools and falling back to
reading the bbolt storage format directly.

Invariants:
    - Snapshots are inspected, never written or repaired
    - All tiers report the same four fields in the same JSON shape
    - Only the last tier's failure is surfaced to the caller

How to change safely:
    - New tiers implement StatusVerifier and are added to SnapshotVerifier
    - Storage format changes belong in backend.py and schema.py only
"""

from .base import (
    ExternalToolError,
    InternalScanError,
    ReportParseError,
    SnapshotFileError,
    SnapshotStatus,
    StatusVerifier,
    VerifierError,
)
from .external import ExternalVerifier
from .report import parse_status_json
from .scanner import InternalScanner, scan_internal
from .status import SnapshotVerifier, check_snapshot_file, check_snapshot_status

__all__ = [
    # Types and protocol
    "SnapshotStatus",
    "StatusVerifier",
    # Errors
    "VerifierError",
    "SnapshotFileError",
    "ExternalToolError",
    "ReportParseError",
    "InternalScanError",
    # Tiers
    "ExternalVerifier",
    "InternalScanner",
    # Entry points
    "SnapshotVerifier",
    "check_snapshot_file",
    "check_snapshot_status",
    "parse_status_json",
    "scan_internal",
]
