"""Optional S3 archival of fetch and analysis artifacts."""

from __future__ import annotations

import gzip
import logging
import os
from pathlib import Path
from typing import Optional

import boto3


_LOGGER = logging.getLogger("tally.archive")
_S3_REGION = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")
_S3_CLIENT = None


def _s3_client():
    global _S3_CLIENT
    if _S3_CLIENT is None:
        _LOGGER.info("s3 init region=%s", _S3_REGION)
        _S3_CLIENT = boto3.client("s3", region_name=_S3_REGION)
    return _S3_CLIENT


def archive_key(path: Path, prefix: str) -> str:
    prefix = prefix.strip("/")
    name = f"{path.name}.gz"
    return f"{prefix}/{name}" if prefix else name


def archive_artifact(path: str | Path, bucket: Optional[str], prefix: str = "tally") -> Optional[str]:
    """Upload a gzip copy of ``path`` to S3 and return its key.

    Archival never fails the run: the local artifact is the record, so upload
    errors are logged and ``None`` is returned.
    """

    if not bucket:
        return None
    file_path = Path(path)
    key = archive_key(file_path, prefix)
    try:
        body = gzip.compress(file_path.read_bytes())
        _s3_client().put_object(
            Bucket=bucket,
            Key=key,
            Body=body,
            ContentType="application/json",
            ContentEncoding="gzip",
        )
    except Exception:
        _LOGGER.exception("s3 archive failed bucket=%s key=%s", bucket, key)
        return None
    _LOGGER.info("s3 archive stored bucket=%s key=%s bytes=%s", bucket, key, len(body))
    return key
