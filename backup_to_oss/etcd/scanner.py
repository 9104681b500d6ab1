"""
Internal snapshot scanner (fallback verification tier).

Reconstructs the snapshot status directly from the storage format when no
external tool is installed:

    Backend ─▶ Lessor(NoOpCluster) ─▶ MvccStore ─▶ ReadTxn ─▶ paged Range

Pagination:
    start = b""            lowest key
    end   = b"\\xff"        above every key written through the API
    limit = 1000
    next start = last key + b"\\x00"  (first key strictly after it)

A page shorter than the limit, or empty, ends the scan.

Invariants:
    - Every live key is counted exactly once, in ascending order
    - The CRC covers key bytes then value bytes for each pair
    - Components are released in reverse order on every exit path
"""

from __future__ import annotations

import logging
import os
import zlib

from .backend import Backend, BackendError
from .base import InternalScanError, SnapshotStatus
from .lease import LeaseError, Lessor, NoOpCluster
from .mvcc import MvccStore, StoreError

logger = logging.getLogger(__name__)

SCAN_PAGE_LIMIT = 1000
SCAN_START_KEY = b""
SCAN_END_KEY = b"\xff"


class InternalScanner:
    """Computes snapshot status by scanning the store itself.

    Attributes:
        name: Tier name used in logs
        page_limit: Keys per range request

    Example:
        >>> status = InternalScanner().status("/backups/etcd.db")
    """

    name = "internal"

    def __init__(self, page_limit: int = SCAN_PAGE_LIMIT) -> None:
        if page_limit <= 0:
            raise ValueError(f"page_limit must be positive, got {page_limit}")
        self.page_limit = page_limit

    def status(self, path: str) -> SnapshotStatus:
        """Open the snapshot read-only and scan every live key.

        Raises:
            InternalScanError: If the snapshot cannot be opened or read
        """
        try:
            backend = Backend(path)
        except BackendError as e:
            raise InternalScanError(f"open snapshot backend: {e}") from e

        with backend:
            try:
                lessor = Lessor(backend, NoOpCluster())
            except (BackendError, LeaseError) as e:
                raise InternalScanError(f"open snapshot backend: restore leases: {e}") from e

            with lessor:
                try:
                    store = MvccStore(backend, lessor)
                except (BackendError, StoreError) as e:
                    raise InternalScanError(f"open snapshot backend: restore store: {e}") from e

                with store:
                    revision = store.rev()
                    with store.read() as txn:
                        total_key, total_size, crc, pages = self._scan(txn)

        logger.debug(
            "Scanned snapshot",
            extra={"path": path, "pages": pages, "total_key": total_key},
        )
        return SnapshotStatus(
            hash=crc,
            revision=revision,
            total_key=total_key,
            total_size=total_size,
        )

    def _scan(self, txn) -> tuple[int, int, int, int]:
        total_key = 0
        total_size = 0
        crc = 0
        pages = 0

        key = SCAN_START_KEY
        while True:
            try:
                result = txn.range(key, SCAN_END_KEY, limit=self.page_limit)
            except (BackendError, StoreError) as e:
                raise InternalScanError(f"read snapshot data: {e}") from e
            pages += 1

            if not result.kvs:
                break

            for kv in result.kvs:
                total_key += 1
                total_size += len(kv.key) + len(kv.value)
                crc = zlib.crc32(kv.key, crc)
                crc = zlib.crc32(kv.value, crc)

            if len(result.kvs) < self.page_limit:
                break

            key = result.kvs[-1].key + b"\x00"

        return total_key, total_size, crc, pages


def scan_internal(path: str | os.PathLike[str]) -> SnapshotStatus:
    """Scan a snapshot with the default page limit."""
    return InternalScanner().status(os.fspath(path))
