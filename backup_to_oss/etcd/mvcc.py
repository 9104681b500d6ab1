"""
Versioned key/value store restored from a snapshot backend.

The store rebuilds its key index by walking the key bucket in revision
order, then serves ordered range reads at the current revision through
read transactions.

Invariants:
    - The latest event for a user key decides whether it is live
    - current_rev starts at 1 and never falls below the finished compaction
    - A ReadTxn observes the revision current when it was opened
    - Range results are in ascending key order over [key, end)

How to change safely:
    - Keep restore read-only; a scheduled compaction is reported, not run
    - Index/bucket disagreement is corruption, raise StoreCorruptError
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field
from typing import Any

from google.protobuf.message import DecodeError

from .backend import Backend
from .lease import LeaseNotFoundError, Lessor
from .schema import (
    FINISHED_COMPACT_KEY,
    KEY_BUCKET,
    META_BUCKET,
    SCHEDULED_COMPACT_KEY,
    KeyValue,
    Revision,
    is_tombstone,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base exception for store operations."""

    pass


class StoreCorruptError(StoreError):
    """Key index and key bucket disagree."""

    pass


class StoreClosedError(StoreError):
    """Store or read transaction used after close."""

    pass


class FutureRevisionError(StoreError):
    """Requested revision is newer than the store."""

    pass


class CompactedError(StoreError):
    """Requested revision has been compacted."""

    pass


@dataclass
class _IndexEntry:
    revision: Revision
    live: bool


@dataclass
class RangeResult:
    """Result of a range read.

    Attributes:
        kvs: Decoded KeyValue messages in ascending key order
        rev: Revision the read was served at
        count: Number of keys in the range, ignoring the limit
    """

    kvs: list[Any] = field(default_factory=list)
    rev: int = 0
    count: int = 0


class MvccStore:
    """Read-only multi-version store over a snapshot backend.

    Attributes:
        backend: Snapshot backend (borrowed)
        lessor: Lessor keys are attached to (borrowed)
        compact_main_rev: Last finished compaction, -1 if none

    Example:
        >>> with MvccStore(backend, lessor) as store:
        ...     with store.read() as txn:
        ...         result = txn.range(b"", b"\\xff", limit=10)
    """

    def __init__(
        self,
        backend: Backend,
        lessor: Lessor,
    ) -> None:
        self.backend = backend
        self.lessor = lessor
        self.current_rev = 1
        self.compact_main_rev = -1
        self._index: dict[bytes, _IndexEntry] = {}
        self._live_keys: list[bytes] = []
        self._closed = False

        self._restore()

    def _restore(self) -> None:
        tx = self.backend.read_tx()

        finished = _meta_revision(tx, FINISHED_COMPACT_KEY)
        if finished is not None:
            self.compact_main_rev = finished
        scheduled = _meta_revision(tx, SCHEDULED_COMPACT_KEY)

        keys_to_lease: dict[bytes, int] = {}

        def visit(rev_bytes: bytes, value: bytes) -> None:
            try:
                rev = Revision.from_bytes(rev_bytes)
            except ValueError as e:
                raise StoreCorruptError(f"bad revision key {rev_bytes!r}: {e}") from e

            kv = KeyValue()
            try:
                kv.ParseFromString(value)
            except DecodeError as e:
                raise StoreCorruptError(f"bad key value at revision {rev}: {e}") from e

            if is_tombstone(rev_bytes):
                self._index[kv.key] = _IndexEntry(revision=rev, live=False)
                keys_to_lease.pop(kv.key, None)
            else:
                self._index[kv.key] = _IndexEntry(revision=rev, live=True)
                if kv.lease:
                    keys_to_lease[kv.key] = kv.lease
                else:
                    keys_to_lease.pop(kv.key, None)
            self.current_rev = rev.main

        tx.unsafe_for_each(KEY_BUCKET, visit)

        if self.current_rev < self.compact_main_rev:
            self.current_rev = self.compact_main_rev
        if scheduled is not None and scheduled > self.compact_main_rev:
            logger.info(
                "Snapshot has an unfinished compaction; not resuming on a read-only store",
                extra={"scheduled_compact_rev": scheduled, "finished_compact_rev": finished},
            )

        for key, lease_id in keys_to_lease.items():
            try:
                self.lessor.attach(lease_id, key)
            except LeaseNotFoundError:
                logger.warning(
                    "Failed to attach lease to key",
                    extra={"lease_id": lease_id, "key": key.decode("utf-8", "replace")},
                )

        self._live_keys = sorted(k for k, e in self._index.items() if e.live)
        logger.debug(
            "Restored store index",
            extra={
                "current_rev": self.current_rev,
                "compact_rev": self.compact_main_rev,
                "live_keys": len(self._live_keys),
                "indexed_keys": len(self._index),
            },
        )

    def rev(self) -> int:
        """Current revision of the store."""
        self._check_open()
        return self.current_rev

    def read(self) -> ReadTxn:
        """Open a consistent read transaction at the current revision."""
        self._check_open()
        return ReadTxn(self, self.current_rev, self._live_keys)

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError("store closed")

    def close(self) -> None:
        self._closed = True
        self._index.clear()
        self._live_keys = []

    def __enter__(self) -> MvccStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ReadTxn:
    """Read transaction over a store at a fixed revision."""

    def __init__(self, store: MvccStore, rev: int, keys: list[bytes]) -> None:
        self._store = store
        self._tx = store.backend.read_tx()
        self._keys = keys
        self._index = store._index
        self.rev = rev
        self._ended = False

    def range(
        self,
        key: bytes,
        end: bytes | None = None,
        limit: int = 0,
        rev: int = 0,
    ) -> RangeResult:
        """Read live keys in [key, end), or exactly key when end is None.

        Args:
            key: First key (inclusive)
            end: End key (exclusive), None for a single key
            limit: Maximum number of kvs, 0 for no limit
            rev: Revision to read at, 0 for the transaction's revision

        Raises:
            StoreClosedError: If the transaction has ended
            FutureRevisionError: If rev is beyond the store
            CompactedError: If rev has been compacted away
            StoreCorruptError: If an indexed revision is missing
        """
        if self._ended:
            raise StoreClosedError("read transaction ended")
        if rev == 0:
            rev = self.rev
        if rev > self.rev:
            raise FutureRevisionError(f"revision {rev} is newer than {self.rev}")
        if rev < self._store.compact_main_rev:
            raise CompactedError(f"revision {rev} compacted at {self._store.compact_main_rev}")
        if rev != self.rev:
            # The restored index only keeps the latest event per key
            raise CompactedError(f"historical revision {rev} is not retained")

        lo = bisect.bisect_left(self._keys, key)
        if end is None:
            hi = lo + 1 if lo < len(self._keys) and self._keys[lo] == key else lo
        else:
            hi = max(bisect.bisect_left(self._keys, end), lo)

        selected = self._keys[lo:hi]
        if limit > 0:
            selected = selected[:limit]

        kvs = []
        for user_key in selected:
            entry = self._index[user_key]
            rev_bytes = entry.revision.to_bytes()
            _, values = self._tx.unsafe_range(KEY_BUCKET, rev_bytes)
            if len(values) != 1:
                raise StoreCorruptError(
                    f"range failed to find revision {entry.revision} for key {user_key!r}"
                )
            kv = KeyValue()
            try:
                kv.ParseFromString(values[0])
            except DecodeError as e:
                raise StoreCorruptError(f"bad key value at revision {entry.revision}: {e}") from e
            kvs.append(kv)

        return RangeResult(kvs=kvs, rev=rev, count=hi - lo)

    def end(self) -> None:
        self._ended = True

    def __enter__(self) -> ReadTxn:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.end()


def _meta_revision(tx: Any, name: bytes) -> int | None:
    _, values = tx.unsafe_range(META_BUCKET, name)
    if not values:
        return None
    try:
        return Revision.from_bytes(values[0]).main
    except ValueError as e:
        raise StoreCorruptError(f"bad {name.decode()} in meta bucket: {e}") from e
