"""
Snapshot status verification with tiered fallback.

Tiers, in priority order:
1. etcdutl snapshot status        (authoritative, current tool)
2. etcdctl snapshot status        (authoritative, deprecated API)
3. internal scan of the bbolt file (fallback when no tool is installed)

The first tier that succeeds wins. Failures of earlier tiers are logged
at DEBUG and dropped; only the last tier's error reaches the caller.

Invariants:
    - The snapshot must be an existing, non-empty regular file; this is
      checked before any tier runs
    - Tiers run one at a time, never concurrently
    - No timeout: tool runs and scans are bounded by the file size only
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Sequence

from ..config import VerifierConfig
from .base import SnapshotFileError, SnapshotStatus, StatusVerifier, VerifierError
from .external import ExternalVerifier
from .scanner import InternalScanner

logger = logging.getLogger(__name__)


class SnapshotVerifier:
    """Tries verification tiers in order until one succeeds.

    Attributes:
        verifiers: Tiers in priority order

    Example:
        >>> verifier = SnapshotVerifier.from_config(VerifierConfig.from_env())
        >>> status = verifier.verify("/backups/etcd.db")
        >>> print(status.hash, status.revision)
    """

    def __init__(self, verifiers: Sequence[StatusVerifier]) -> None:
        if not verifiers:
            raise ValueError("at least one verifier is required")
        self.verifiers = list(verifiers)

    @classmethod
    def from_config(cls, config: VerifierConfig) -> SnapshotVerifier:
        """Build the default tier chain."""
        verifiers: list[StatusVerifier] = [
            ExternalVerifier.primary(config.etcdutl_path),
            ExternalVerifier.legacy(config.etcdctl_path, config.etcdctl_api),
        ]
        if config.internal_fallback:
            verifiers.append(InternalScanner())
        return cls(verifiers)

    def verify(self, path: str | os.PathLike[str]) -> SnapshotStatus:
        """Verify a snapshot file.

        Args:
            path: Snapshot file path

        Returns:
            SnapshotStatus from the first tier that succeeds

        Raises:
            SnapshotFileError: If the file is missing, not regular, or empty
            VerifierError: The last tier's error if every tier fails
        """
        path = os.fspath(path)
        check_snapshot_file(path)

        last = len(self.verifiers) - 1
        for i, verifier in enumerate(self.verifiers):
            try:
                status = verifier.status(path)
            except VerifierError as e:
                if i == last:
                    logger.error(
                        "Snapshot verification failed",
                        extra={"path": path, "tier": verifier.name, "error": str(e)},
                    )
                    raise
                logger.debug(
                    "Verification tier failed, trying next",
                    extra={"path": path, "tier": verifier.name, "error": str(e)},
                )
                continue

            logger.info(
                "Snapshot verified",
                extra={"path": path, "tier": verifier.name, **status.to_dict()},
            )
            return status

        # Unreachable: the last tier either returns or raises
        raise AssertionError("no verification tier ran")


def check_snapshot_file(path: str) -> None:
    """Reject missing, non-regular and empty snapshot files.

    Raises:
        SnapshotFileError: Describing what is wrong with the path
    """
    try:
        st = os.stat(path)
    except OSError as e:
        raise SnapshotFileError(f"Failed to stat snapshot file {path}: {e}") from e
    if not stat.S_ISREG(st.st_mode):
        raise SnapshotFileError(f"Snapshot path is not a regular file: {path}")
    if st.st_size == 0:
        raise SnapshotFileError(f"Snapshot file is empty: {path}")


def check_snapshot_status(
    file_path: str | os.PathLike[str],
    config: VerifierConfig | None = None,
) -> SnapshotStatus:
    """Verify an etcd snapshot file and report its status.

    Args:
        file_path: Snapshot file path
        config: Verification settings (loaded from env if not provided)

    Returns:
        SnapshotStatus of the snapshot

    Raises:
        VerifierError: If the file is invalid or every tier fails
    """
    verifier = SnapshotVerifier.from_config(config or VerifierConfig.from_env())
    return verifier.verify(file_path)
