"""
backup-to-oss Test Suite.

This package contains:
- unit/: Unit tests (no external tools, network or object storage)
- snapshot_builder: Writes real etcd snapshot files for the tests
"""
