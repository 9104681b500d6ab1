"""
backup-to-oss - Directory and etcd snapshot backups to S3-compatible object storage.

This package implements a backup pipeline built on:
- tar archives compressed with zstd or gzip
- S3-compatible object storage (Aliyun OSS, MinIO, AWS S3)
- etcd snapshot verification before upload

Architecture:
    ┌─────────────┐     ┌──────────────┐     ┌─────────────────┐
    │     CLI     │────▶│  Controller  │────▶│ Snapshot verify │
    │  (argparse) │     │              │     │ (etcd package)  │
    └─────────────┘     └──────┬───────┘     └─────────────────┘
                               │
                  ┌────────────┼─────────────┐
                  ▼            ▼             ▼
             ┌─────────┐  ┌─────────┐  ┌───────────┐
             │ Archive │  │ Upload  │  │ Public IP │
             │ (tar)   │  │  (S3)   │  │  (HTTP)   │
             └─────────┘  └─────────┘  └───────────┘

Invariants:
    - A snapshot is never uploaded unless its status could be verified
    - Snapshot files are only ever read, never modified
    - Local archives are removed after upload unless explicitly kept

How to change safely:
    - Keep the snapshot status JSON shape identical to etcdutl's
    - Add new verification tiers as StatusVerifier implementations
    - Object naming changes break restore scripts; add, don't rename

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
