"""
Unit tests for status report parsing and the SnapshotStatus record.

Tests cover:
- Plain JSON reports
- Reports preceded by a deprecation warning
- Malformed and incomplete reports
- SnapshotStatus validation and serialization
"""

import pytest

from backup_to_oss.etcd import ReportParseError, SnapshotStatus, parse_status_json


class TestParseStatusJson:
    """Tests for parse_status_json."""

    def test_plain_report(self):
        """A bare JSON object decodes to a status."""
        output = b'{"hash":3700548012,"revision":12,"totalKey":4,"totalSize":20480}\n'

        status = parse_status_json(output)

        assert status == SnapshotStatus(
            hash=3700548012, revision=12, total_key=4, total_size=20480
        )

    def test_preamble_is_skipped(self):
        """Text before the first '{' is ignored."""
        body = b'{"hash":1,"revision":2,"totalKey":3,"totalSize":4}'
        warning = b"Deprecated: Use `etcdutl snapshot status` instead.\n\n"

        assert parse_status_json(warning + body) == parse_status_json(body)

    def test_preamble_without_newline(self):
        """A preamble on the same line as the object is also skipped."""
        status = parse_status_json(b'WARN {"hash":7,"revision":1,"totalKey":0,"totalSize":0}')

        assert status.hash == 7
        assert status.total_key == 0

    def test_extra_fields_ignored(self):
        """Unknown fields in the report are ignored."""
        output = b'{"hash":1,"revision":2,"totalKey":3,"totalSize":4,"version":"3.6.0"}'

        assert parse_status_json(output).revision == 2

    def test_no_object(self):
        """Output without any JSON object is rejected."""
        with pytest.raises(ReportParseError):
            parse_status_json(b"Error: snapshot file not found\n")

    def test_truncated_object(self):
        """A truncated object is rejected."""
        with pytest.raises(ReportParseError):
            parse_status_json(b'{"hash":1,"revision":2,')

    def test_missing_field(self):
        """Every field is required."""
        with pytest.raises(ReportParseError, match="totalSize"):
            parse_status_json(b'{"hash":1,"revision":2,"totalKey":3}')

    def test_non_integer_field(self):
        """Fields must be integers."""
        with pytest.raises(ReportParseError, match="hash"):
            parse_status_json(b'{"hash":"abc","revision":2,"totalKey":3,"totalSize":4}')

    def test_boolean_field_rejected(self):
        """Booleans are not accepted as integers."""
        with pytest.raises(ReportParseError):
            parse_status_json(b'{"hash":true,"revision":2,"totalKey":3,"totalSize":4}')

    def test_hash_out_of_range(self):
        """A hash wider than 32 bits is rejected."""
        with pytest.raises(ReportParseError):
            parse_status_json(b'{"hash":4294967296,"revision":2,"totalKey":3,"totalSize":4}')

    def test_array_rejected(self):
        """A JSON array is not a report."""
        with pytest.raises(ReportParseError):
            parse_status_json(b"[1, 2, 3]")


class TestSnapshotStatus:
    """Tests for SnapshotStatus."""

    def test_to_dict_uses_report_field_names(self):
        """to_dict matches the tool's JSON shape."""
        status = SnapshotStatus(hash=1, revision=2, total_key=3, total_size=4)

        assert status.to_dict() == {"hash": 1, "revision": 2, "totalKey": 3, "totalSize": 4}

    def test_from_dict_inverts_to_dict(self):
        """from_dict accepts what to_dict produces."""
        status = SnapshotStatus(hash=0xFFFFFFFF, revision=9, total_key=1, total_size=6)

        assert SnapshotStatus.from_dict(status.to_dict()) == status

    def test_negative_counts_rejected(self):
        """Negative key counts and sizes are invalid."""
        with pytest.raises(ValueError):
            SnapshotStatus(hash=0, revision=1, total_key=-1, total_size=0)
        with pytest.raises(ValueError):
            SnapshotStatus(hash=0, revision=1, total_key=0, total_size=-1)

    def test_immutable(self):
        """Status records cannot be modified."""
        status = SnapshotStatus(hash=0, revision=1, total_key=0, total_size=0)

        with pytest.raises(AttributeError):
            status.hash = 5

    def test_str(self):
        """String form shows the hash in hex."""
        status = SnapshotStatus(hash=0xABC, revision=3, total_key=1, total_size=6)

        assert str(status) == "hash=00000abc revision=3 keys=1 size=6"
