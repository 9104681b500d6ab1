"""
Read-only bbolt backend for etcd snapshot files.

An etcd snapshot is a bbolt database file. This module maps the file
read-only and walks its B+tree pages, exposing the small read API the
versioned store needs (range and for-each over a bucket).

File layout:
    page 0, 1     meta pages (double-buffered, highest valid txid wins)
    page N        branch / leaf / freelist pages, possibly with overflow

    page header   <QHHI   id, flags, count, overflow
    meta          <IIIIQQQQQQ  magic, version, page_size, flags,
                               root, sequence, freelist, pgid, txid, checksum
    leaf element  <IIII   flags, pos, ksize, vsize
    branch elem.  <IIQ    pos, ksize, pgid
    bucket value  <QQ     root, sequence (+ inline page when root == 0)

Invariants:
    - The file is opened O_RDONLY and mapped ACCESS_READ; nothing is written
    - Keys are yielded in ascending byte order within a bucket
    - Every read after close() raises BackendClosedError

How to change safely:
    - Format constants mirror bbolt; never change them without a new format
    - Corruption is reported as BackendCorruptError, never as IndexError
"""

from __future__ import annotations

import bisect
import logging
import mmap
import os
import struct
from collections.abc import Callable, Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAGIC = 0xED0CDAED
VERSION = 2

BRANCH_PAGE_FLAG = 0x01
LEAF_PAGE_FLAG = 0x02
META_PAGE_FLAG = 0x04
FREELIST_PAGE_FLAG = 0x10

BUCKET_LEAF_FLAG = 0x01

PAGE_HEADER = struct.Struct("<QHHI")
META = struct.Struct("<IIIIQQQQQQ")
LEAF_ELEMENT = struct.Struct("<IIII")
BRANCH_ELEMENT = struct.Struct("<IIQ")
BUCKET_HEADER = struct.Struct("<QQ")

META_CHECKSUM_OFFSET = META.size - 8  # checksum covers the fields before it

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3


class BackendError(Exception):
    """Base exception for backend operations."""

    pass


class BackendOpenError(BackendError):
    """Snapshot file could not be opened."""

    pass


class BackendCorruptError(BackendError):
    """Snapshot file is not a valid bbolt database."""

    pass


class BackendClosedError(BackendError):
    """Backend used after close()."""

    pass


def fnv64a(data: bytes) -> int:
    """64-bit FNV-1a hash, the bbolt meta checksum."""
    h = _FNV64_OFFSET
    for b in data:
        h ^= b
        h = (h * _FNV64_PRIME) & 0xFFFFFFFFFFFFFFFF
    return h


@dataclass(frozen=True)
class Meta:
    """Decoded bbolt meta page.

    Attributes:
        page_size: Database page size in bytes
        root: Page id of the root bucket's tree
        freelist: Page id of the freelist
        pgid: High water mark (first unallocated page id)
        txid: Transaction id that wrote this meta
    """

    page_size: int
    root: int
    freelist: int
    pgid: int
    txid: int

    @classmethod
    def decode(cls, buf: bytes | mmap.mmap, offset: int) -> Meta:
        """Decode and validate a meta block.

        Raises:
            BackendCorruptError: On bad magic, version or checksum
        """
        if offset + META.size > len(buf):
            raise BackendCorruptError("meta page truncated")
        (
            magic,
            version,
            page_size,
            _flags,
            root,
            _sequence,
            freelist,
            pgid,
            txid,
            checksum,
        ) = META.unpack_from(buf, offset)
        if magic != MAGIC:
            raise BackendCorruptError(f"invalid magic {magic:#x}")
        if version != VERSION:
            raise BackendCorruptError(f"unsupported version {version}")
        expected = fnv64a(bytes(buf[offset : offset + META_CHECKSUM_OFFSET]))
        if checksum != expected:
            raise BackendCorruptError("meta checksum mismatch")
        return cls(page_size=page_size, root=root, freelist=freelist, pgid=pgid, txid=txid)


@dataclass(frozen=True)
class _Page:
    """A page (with its overflow) viewed as one buffer."""

    buf: bytes
    id: int
    flags: int
    count: int
    overflow: int

    def branch_key(self, i: int) -> bytes:
        off = PAGE_HEADER.size + i * BRANCH_ELEMENT.size
        pos, ksize, _ = BRANCH_ELEMENT.unpack_from(self.buf, off)
        return bytes(self.buf[off + pos : off + pos + ksize])

    def branch_child(self, i: int) -> int:
        off = PAGE_HEADER.size + i * BRANCH_ELEMENT.size
        return BRANCH_ELEMENT.unpack_from(self.buf, off)[2]

    def leaf_key(self, i: int) -> bytes:
        off = PAGE_HEADER.size + i * LEAF_ELEMENT.size
        _, pos, ksize, _ = LEAF_ELEMENT.unpack_from(self.buf, off)
        start = off + pos
        if start + ksize > len(self.buf):
            raise BackendCorruptError(f"leaf key {i} overruns page {self.id}")
        return bytes(self.buf[start : start + ksize])

    def leaf_element(self, i: int) -> tuple[int, bytes, bytes]:
        off = PAGE_HEADER.size + i * LEAF_ELEMENT.size
        flags, pos, ksize, vsize = LEAF_ELEMENT.unpack_from(self.buf, off)
        start = off + pos
        if start + ksize + vsize > len(self.buf):
            raise BackendCorruptError(f"leaf element {i} overruns page {self.id}")
        key = bytes(self.buf[start : start + ksize])
        value = bytes(self.buf[start + ksize : start + ksize + vsize])
        return flags, key, value


def _parse_page(buf: bytes, expected_id: int | None = None) -> _Page:
    if len(buf) < PAGE_HEADER.size:
        raise BackendCorruptError("page header truncated")
    page_id, flags, count, overflow = PAGE_HEADER.unpack_from(buf, 0)
    if expected_id is not None and page_id != expected_id:
        raise BackendCorruptError(f"page id mismatch: expected {expected_id}, found {page_id}")
    return _Page(buf=buf, id=page_id, flags=flags, count=count, overflow=overflow)


class Backend:
    """Read-only view of a bbolt database file.

    Attributes:
        path: Snapshot file path
        meta: The meta page in effect

    Thread safety:
        Reads never mutate state; close() must not race with readers.

    Example:
        >>> with Backend("/backups/etcd.db") as be:
        ...     keys, values = be.read_tx().unsafe_range(b"meta", b"consistent_index")
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        """Open and map the database file.

        Args:
            path: Path to the bbolt file

        Raises:
            BackendOpenError: If the file cannot be opened or mapped
            BackendCorruptError: If no valid meta page is found
        """
        self.path = os.fspath(path)
        self._file = None
        self._mm: mmap.mmap | None = None

        try:
            self._file = open(self.path, "rb")
            self._mm = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
        except (OSError, ValueError) as e:
            self._release()
            raise BackendOpenError(f"Failed to open {self.path}: {e}") from e

        try:
            self.meta = self._load_meta()
        except BackendError:
            self._release()
            raise

        logger.debug(
            "Opened snapshot backend",
            extra={
                "path": self.path,
                "page_size": self.meta.page_size,
                "txid": self.meta.txid,
                "size": self.size,
            },
        )

    @property
    def size(self) -> int:
        """Mapped file size in bytes."""
        return len(self._view())

    @property
    def closed(self) -> bool:
        return self._mm is None

    def _view(self) -> mmap.mmap:
        if self._mm is None:
            raise BackendClosedError(f"Backend closed: {self.path}")
        return self._mm

    def _load_meta(self) -> Meta:
        mm = self._view()
        candidates: list[Meta] = []
        errors: list[str] = []

        # Page 0 tells us the page size; page 1 is probed at that size or
        # the OS page size if page 0 is unreadable.
        try:
            candidates.append(Meta.decode(mm, PAGE_HEADER.size))
        except BackendCorruptError as e:
            errors.append(f"meta0: {e}")

        page_sizes = [candidates[0].page_size] if candidates else []
        for size in (mmap.PAGESIZE, 4096):
            if size not in page_sizes:
                page_sizes.append(size)
        for page_size in page_sizes:
            try:
                candidates.append(Meta.decode(mm, page_size + PAGE_HEADER.size))
                break
            except BackendCorruptError as e:
                errors.append(f"meta1@{page_size}: {e}")

        if not candidates:
            raise BackendCorruptError(f"No valid meta page in {self.path}: {'; '.join(errors)}")

        meta = max(candidates, key=lambda m: m.txid)
        if meta.pgid * meta.page_size > len(mm):
            raise BackendCorruptError(
                f"File truncated: high water mark {meta.pgid} pages of "
                f"{meta.page_size} bytes exceeds {len(mm)} bytes"
            )
        return meta

    def _page(self, pgid: int) -> _Page:
        mm = self._view()
        page_size = self.meta.page_size
        offset = pgid * page_size
        if pgid < 2 or offset + PAGE_HEADER.size > len(mm):
            raise BackendCorruptError(f"page {pgid} out of bounds")
        _, _, _, overflow = PAGE_HEADER.unpack_from(mm, offset)
        end = offset + (overflow + 1) * page_size
        if end > len(mm):
            raise BackendCorruptError(f"page {pgid} overflow runs past end of file")
        return _parse_page(mm[offset:end], expected_id=pgid)

    def read_tx(self) -> ReadTx:
        """Start a read transaction over the current meta root."""
        return ReadTx(self, self.meta.root)

    def close(self) -> None:
        """Unmap and close the file. Safe to call twice."""
        if self._mm is not None:
            logger.debug("Closing snapshot backend", extra={"path": self.path})
        self._release()

    def _release(self) -> None:
        if self._mm is not None:
            self._mm.close()
            self._mm = None
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> Backend:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Backend(path={self.path!r}, closed={self.closed})"


class ReadTx:
    """Read transaction pinned to one root bucket page.

    The unsafe_* names follow the store backend API: callers must not
    use a ReadTx after its backend is closed.
    """

    def __init__(self, backend: Backend, root: int) -> None:
        self._backend = backend
        self._root = root
        self._buckets: dict[bytes, _Page | None] = {}

    def _bucket_root(self, name: bytes) -> _Page | None:
        if name not in self._buckets:
            page = None
            root_page = self._backend._page(self._root)
            for flags, key, value in _walk(self._backend, root_page, name):
                if key != name:
                    break
                if not flags & BUCKET_LEAF_FLAG:
                    raise BackendCorruptError(f"{name!r} is a key, not a bucket")
                page = self._open_bucket(value)
                break
            self._buckets[name] = page
        return self._buckets[name]

    def _open_bucket(self, value: bytes) -> _Page:
        if len(value) < BUCKET_HEADER.size:
            raise BackendCorruptError("bucket header truncated")
        root, _ = BUCKET_HEADER.unpack_from(value, 0)
        if root == 0:
            # Inline bucket: the page is stored inside the value
            return _parse_page(value[BUCKET_HEADER.size :])
        return self._backend._page(root)

    def has_bucket(self, name: bytes) -> bool:
        return self._bucket_root(name) is not None

    def iterate(self, bucket: bytes, start: bytes = b"") -> Iterator[tuple[bytes, bytes]]:
        """Yield (key, value) pairs with key >= start in ascending order."""
        page = self._bucket_root(bucket)
        if page is None:
            return
        for flags, key, value in _walk(self._backend, page, start):
            if flags & BUCKET_LEAF_FLAG:
                # Nested buckets never occur in the store's buckets
                continue
            yield key, value

    def unsafe_range(
        self,
        bucket: bytes,
        key: bytes,
        end: bytes | None = None,
        limit: int = 0,
    ) -> tuple[list[bytes], list[bytes]]:
        """Read keys in [key, end), or exactly key when end is None.

        Args:
            bucket: Bucket name
            key: First key (inclusive)
            end: End key (exclusive), None for a point lookup
            limit: Maximum pairs to return, 0 for no limit

        Returns:
            Parallel lists of keys and values
        """
        if end is None:
            limit = 1

        keys: list[bytes] = []
        values: list[bytes] = []
        for k, v in self.iterate(bucket, key):
            if end is None:
                if k != key:
                    break
            elif k >= end:
                break
            keys.append(k)
            values.append(v)
            if limit and len(keys) >= limit:
                break
        return keys, values

    def unsafe_for_each(self, bucket: bytes, visitor: Callable[[bytes, bytes], None]) -> None:
        """Call visitor(key, value) for every pair in the bucket."""
        for k, v in self.iterate(bucket):
            visitor(k, v)


def _walk(backend: Backend, page: _Page, start: bytes) -> Iterator[tuple[int, bytes, bytes]]:
    """In-order walk of a (sub)tree, seeking to the first key >= start."""
    if page.flags & BRANCH_PAGE_FLAG:
        first = 0
        if start:
            indexes = range(page.count)
            first = max(bisect.bisect_right(indexes, start, key=page.branch_key) - 1, 0)
        for i in range(first, page.count):
            yield from _walk(backend, backend._page(page.branch_child(i)), start)
    elif page.flags & LEAF_PAGE_FLAG:
        # Only keys are read while seeking; values are copied from the match on
        first = bisect.bisect_left(range(page.count), start, key=page.leaf_key) if start else 0
        for i in range(first, page.count):
            yield page.leaf_element(i)
    else:
        raise BackendCorruptError(f"page {page.id} has unexpected flags {page.flags:#x}")
