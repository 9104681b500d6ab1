"""
Parser for `snapshot status --write-out=json` reports.

etcdctl prints a deprecation warning on stdout before the JSON document,
and the warning cannot be silenced with its own flags. The parser skips
everything before the first '{'.
"""

from __future__ import annotations

import json
import logging

from .base import ReportParseError, SnapshotStatus

logger = logging.getLogger(__name__)

_FIELDS = ("hash", "revision", "totalKey", "totalSize")


def parse_status_json(output: bytes) -> SnapshotStatus:
    """Decode a status report, tolerating a non-JSON preamble.

    Args:
        output: Raw stdout of the status tool

    Returns:
        SnapshotStatus decoded from the JSON object

    Raises:
        ReportParseError: If the document is malformed or incomplete
    """
    start = output.find(b"{")
    if start < 0:
        # No object at all; let the decoder report the error
        start = 0
    elif start > 0:
        logger.debug(
            "Skipping status report preamble",
            extra={"preamble": output[:start].decode("utf-8", "replace").strip()},
        )

    try:
        data = json.loads(output[start:])
    except ValueError as e:
        raise ReportParseError(f"Failed to parse status JSON: {e}") from e

    if not isinstance(data, dict):
        raise ReportParseError(f"Status JSON is not an object: {type(data).__name__}")

    for name in _FIELDS:
        if name not in data:
            raise ReportParseError(f"Status JSON missing field '{name}'")
        value = data[name]
        if isinstance(value, bool) or not isinstance(value, int):
            raise ReportParseError(f"Status JSON field '{name}' is not an integer: {value!r}")

    try:
        return SnapshotStatus.from_dict(data)
    except ValueError as e:
        raise ReportParseError(f"Invalid status values: {e}") from e
