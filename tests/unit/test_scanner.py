"""
Unit tests for the internal snapshot scanner.

Tests cover:
- Status of empty and populated snapshots
- Hash over key bytes then value bytes, in key order
- Page-by-page cursor over the key space
- Determinism and sensitivity to value bytes
- Error wrapping and resource release
"""

import os
import tempfile
import zlib

import pytest

from backup_to_oss.etcd import InternalScanError, InternalScanner, SnapshotStatus, scan_internal
from backup_to_oss.etcd import scanner as scanner_module
from backup_to_oss.etcd.mvcc import ReadTxn
from tests.snapshot_builder import EtcdSnapshotBuilder


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def range_calls(monkeypatch):
    """Record the number of kvs returned by every range call."""
    calls = []
    original = ReadTxn.range

    def spy(self, key, end=None, limit=0, rev=0):
        result = original(self, key, end, limit, rev)
        calls.append((key, len(result.kvs)))
        return result

    monkeypatch.setattr(ReadTxn, "range", spy)
    return calls


class TestInternalScanner:
    """Tests for InternalScanner."""

    def test_empty_snapshot(self, data_dir):
        """A store with no keys reports zeroes at revision 1."""
        path = EtcdSnapshotBuilder().write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status == SnapshotStatus(hash=0, revision=1, total_key=0, total_size=0)

    def test_single_key(self, data_dir):
        """One key hashes as CRC-32 over key then value."""
        builder = EtcdSnapshotBuilder()
        builder.put(b"foo", b"bar")
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status.hash == zlib.crc32(b"foobar")
        assert status.revision == 2
        assert status.total_key == 1
        assert status.total_size == 6

    def test_keys_hashed_in_key_order(self, data_dir):
        """Pairs are hashed in ascending key order, not write order."""
        builder = EtcdSnapshotBuilder()
        builder.put(b"b", b"2")
        builder.put(b"a", b"1")
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status.hash == zlib.crc32(b"a1b2")
        assert status.total_size == 4

    def test_matches_recorded_writes(self, data_dir):
        """Overwrites, deletes and leases all resolve to the live key set."""
        builder = EtcdSnapshotBuilder()
        builder.grant_lease(7, ttl=30)
        builder.put_many(50, prefix=b"/registry/pods/")
        builder.put(b"/registry/pods/000003", b"updated")
        builder.delete(b"/registry/pods/000010")
        builder.put(b"/leases/node-1", b"held", lease=7)
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status == builder.expected_status()
        assert status.total_key == 50
        assert status.revision == builder.revision

    def test_keys_at_or_above_ff_are_outside_scan(self, data_dir):
        """Keys starting with 0xff fall outside the scanned range."""
        builder = EtcdSnapshotBuilder()
        builder.put(b"normal", b"v")
        builder.put(b"\xff\x00hidden", b"v")
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status.total_key == 1
        assert status.hash == zlib.crc32(b"normalv")

    def test_deterministic(self, data_dir):
        """Scanning the same file twice gives the same status."""
        builder = EtcdSnapshotBuilder()
        builder.put_many(120)
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        assert scan_internal(path) == scan_internal(path)

    def test_value_change_changes_hash_only(self, data_dir):
        """Changing one value byte changes the hash but not the counts."""
        first = EtcdSnapshotBuilder()
        first.put(b"key", b"value-a")
        second = EtcdSnapshotBuilder()
        second.put(b"key", b"value-b")

        a = scan_internal(first.write(os.path.join(data_dir, "a.db")))
        b = scan_internal(second.write(os.path.join(data_dir, "b.db")))

        assert a.hash != b.hash
        assert (a.revision, a.total_key, a.total_size) == (b.revision, b.total_key, b.total_size)

    def test_exact_page_boundary(self, data_dir, range_calls):
        """1000 keys take a full page followed by an empty one."""
        builder = EtcdSnapshotBuilder()
        builder.put_many(1000)
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status.total_key == 1000
        assert [n for _, n in range_calls] == [1000, 0]
        assert range_calls[0][0] == b""
        assert range_calls[1][0] == b"key-000999\x00"

    def test_one_past_page_boundary(self, data_dir, range_calls):
        """1001 keys take a full page followed by a single key."""
        builder = EtcdSnapshotBuilder()
        builder.put_many(1001)
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = scan_internal(path)

        assert status.total_key == 1001
        assert [n for _, n in range_calls] == [1000, 1]

    def test_small_page_limit(self, data_dir, range_calls):
        """The page limit only changes how the scan is split."""
        builder = EtcdSnapshotBuilder()
        builder.put_many(25)
        path = builder.write(os.path.join(data_dir, "etcd.db"))

        status = InternalScanner(page_limit=10).status(path)

        assert status == builder.expected_status()
        assert [n for _, n in range_calls] == [10, 10, 5]

    def test_invalid_page_limit(self):
        """A page limit must be positive."""
        with pytest.raises(ValueError):
            InternalScanner(page_limit=0)

    def test_not_a_database(self, data_dir):
        """A file that is not a snapshot fails to open."""
        path = os.path.join(data_dir, "notes.txt")
        with open(path, "wb") as f:
            f.write(b"not a snapshot\n" * 1000)

        with pytest.raises(InternalScanError, match="open snapshot backend"):
            scan_internal(path)

    def test_backend_closed_after_scan(self, data_dir, monkeypatch):
        """The backend is closed whether the scan succeeds or fails."""
        opened = []
        original = scanner_module.Backend

        def tracking_backend(path):
            backend = original(path)
            opened.append(backend)
            return backend

        monkeypatch.setattr(scanner_module, "Backend", tracking_backend)

        builder = EtcdSnapshotBuilder()
        builder.put(b"a", b"1")
        path = builder.write(os.path.join(data_dir, "etcd.db"))
        scan_internal(path)

        def failing_range(self, key, end=None, limit=0, rev=0):
            raise scanner_module.StoreError("boom")

        monkeypatch.setattr(ReadTxn, "range", failing_range)
        with pytest.raises(InternalScanError, match="read snapshot data"):
            scan_internal(path)

        assert len(opened) == 2
        assert all(backend.closed for backend in opened)
