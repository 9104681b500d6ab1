"""
Object storage module for backup-to-oss.

Uploads archives and manifests to any S3-compatible store
(Aliyun OSS, MinIO, AWS S3).

Invariants:
    - Object keys are normalized (no leading '/', no '//')
    - Failed uploads raise UploadError; nothing is retried silently
"""

from .uploader import OssConfig, OssUploader, UploadError, object_name_for

__all__ = ["OssConfig", "OssUploader", "UploadError", "object_name_for"]
