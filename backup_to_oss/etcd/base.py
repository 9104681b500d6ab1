"""
Base types for etcd snapshot status verification.

This module defines the SnapshotStatus record every verification tier
produces, the StatusVerifier protocol tiers implement, and the error
hierarchy shared by all tiers.

Invariants:
    - SnapshotStatus is immutable and built fresh for every verification
    - hash is an unsigned 32-bit CRC, total_key and total_size are >= 0
    - Every tier failure is a VerifierError subclass

How to change safely:
    - The JSON field names match etcdutl's --write-out=json output
    - New tiers must implement StatusVerifier, nothing else is required
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

UINT32_MAX = 0xFFFFFFFF


class VerifierError(Exception):
    """Base exception for snapshot verification."""

    pass


class SnapshotFileError(VerifierError):
    """Snapshot path is missing, not a regular file, or empty."""

    pass


class ExternalToolError(VerifierError):
    """External status tool is missing, failed, or printed nothing."""

    pass


class ReportParseError(VerifierError):
    """External tool output could not be decoded into a status."""

    pass


class InternalScanError(VerifierError):
    """Reading the snapshot storage directly failed."""

    pass


@dataclass(frozen=True)
class SnapshotStatus:
    """Status of an etcd snapshot file.

    Attributes:
        hash: CRC-32 (IEEE) over every live key followed by its value,
            in ascending key order
        revision: Last committed store revision at snapshot time
        total_key: Number of live key/value pairs
        total_size: Sum of len(key) + len(value) over all live pairs
    """

    hash: int
    revision: int
    total_key: int
    total_size: int

    def __post_init__(self) -> None:
        if not 0 <= self.hash <= UINT32_MAX:
            raise ValueError(f"hash out of uint32 range: {self.hash}")
        if self.total_key < 0:
            raise ValueError(f"total_key must be >= 0, got {self.total_key}")
        if self.total_size < 0:
            raise ValueError(f"total_size must be >= 0, got {self.total_size}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to the etcdutl JSON shape."""
        return {
            "hash": self.hash,
            "revision": self.revision,
            "totalKey": self.total_key,
            "totalSize": self.total_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotStatus:
        """Create from the etcdutl JSON shape.

        Raises:
            KeyError: If a field is missing
            ValueError: If a field is out of range
        """
        return cls(
            hash=data["hash"],
            revision=data["revision"],
            total_key=data["totalKey"],
            total_size=data["totalSize"],
        )

    def __str__(self) -> str:
        return (
            f"hash={self.hash:08x} revision={self.revision} "
            f"keys={self.total_key} size={self.total_size}"
        )


@runtime_checkable
class StatusVerifier(Protocol):
    """Protocol for one verification tier.

    A tier turns a snapshot path into a SnapshotStatus or raises a
    VerifierError. The orchestrator tries tiers in priority order.
    """

    name: str

    @abstractmethod
    def status(self, path: str) -> SnapshotStatus:
        """Compute the status of the snapshot at path.

        Raises:
            VerifierError: If this tier cannot produce a status
        """
        ...
