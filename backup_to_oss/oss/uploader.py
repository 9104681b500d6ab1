"""
Upload of backup artifacts to S3-compatible object storage.

Aliyun OSS, MinIO and AWS S3 are all reached through the S3 API with
virtual-hosted addressing.

Object naming:
    no prefix:   backup-<YYYYmmdd-HHMMSS>-<file name>
    with prefix: <prefix>/<file name>

Invariants:
    - Object names never start with '/' and never contain '//'
    - Upload failures surface as UploadError with the cause attached
    - Credentials are never logged
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any

from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Uploading to object storage failed."""

    pass


@dataclass(frozen=True)
class OssConfig:
    """Object storage configuration.

    Attributes:
        endpoint: Endpoint host or URL (https:// is assumed without a scheme)
        access_key: Access key id
        secret_key: Secret access key
        bucket: Bucket name
        object_prefix: Optional object key prefix
        region: Signing region
    """

    endpoint: str
    access_key: str
    secret_key: str
    bucket: str
    object_prefix: str = ""
    region: str = "us-east-1"

    @property
    def endpoint_url(self) -> str:
        if "://" in self.endpoint:
            return self.endpoint
        return f"https://{self.endpoint}"


def object_name_for(file_path: str | os.PathLike[str], prefix: str = "", now: float | None = None) -> str:
    """Build the object key for an uploaded file.

    Args:
        file_path: Local file being uploaded
        prefix: Optional object prefix
        now: Timestamp for unprefixed names (defaults to current time)

    Returns:
        Object key
    """
    file_name = os.path.basename(os.fspath(file_path))

    if not prefix:
        stamp = time.strftime("%Y%m%d-%H%M%S", time.localtime(now))
        object_name = f"backup-{stamp}-{file_name}"
    else:
        object_name = prefix.lstrip("/")
        if not object_name.endswith("/"):
            object_name += "/"
        object_name += file_name

    object_name = object_name.lstrip("/")
    while "//" in object_name:
        object_name = object_name.replace("//", "/")
    return object_name or file_name


class OssUploader:
    """Uploads files and manifests to a bucket.

    Example:
        >>> uploader = OssUploader(config)
        >>> key = await uploader.upload_file("/tmp/etc-20250101-000000.tar.zst")
    """

    def __init__(self, config: OssConfig) -> None:
        self.config = config

    def _create_client(self) -> Any:
        session = get_session()
        return session.create_client(
            "s3",
            endpoint_url=self.config.endpoint_url,
            region_name=self.config.region,
            aws_access_key_id=self.config.access_key,
            aws_secret_access_key=self.config.secret_key,
            config=AioConfig(s3={"addressing_style": "virtual"}),
        )

    async def upload_file(
        self,
        file_path: str | os.PathLike[str],
        object_name: str | None = None,
    ) -> str:
        """Upload a local file.

        Args:
            file_path: File to upload
            object_name: Object key (derived from the prefix if not given)

        Returns:
            Object key written

        Raises:
            UploadError: If the file cannot be read or the upload fails
        """
        object_name = object_name or object_name_for(file_path, self.config.object_prefix)
        logger.info(
            "Uploading to object storage",
            extra={
                "bucket": self.config.bucket,
                "object": object_name,
                "url": f"oss://{self.config.bucket}/{object_name}",
                "path": os.fspath(file_path),
            },
        )

        try:
            # TODO: switch to multipart upload so archives are not read into memory
            with open(file_path, "rb") as f:
                body = f.read()
        except OSError as e:
            raise UploadError(f"Failed to read {file_path}: {e}") from e

        await self._put(object_name, body, "application/octet-stream")
        return object_name

    async def put_json(self, object_name: str, payload: dict[str, Any]) -> str:
        """Upload a JSON document.

        Raises:
            UploadError: If the upload fails
        """
        body = json.dumps(payload, indent=2).encode("utf-8")
        await self._put(object_name, body, "application/json")
        return object_name

    async def _put(self, object_name: str, body: bytes, content_type: str) -> None:
        try:
            async with self._create_client() as s3:
                await s3.put_object(
                    Bucket=self.config.bucket,
                    Key=object_name,
                    Body=body,
                    ContentType=content_type,
                )
        except (BotoCoreError, ClientError) as e:
            raise UploadError(f"Failed to upload {object_name}: {e}") from e

        logger.info(
            "Uploaded object",
            extra={"bucket": self.config.bucket, "object": object_name, "size_bytes": len(body)},
        )
