"""
Transparency log mirrors.

The SQLite certificate_log table is the log of record. A mirror writes each
committed entry somewhere the operator cannot rewrite, so a later edit of
the database is detectable against the mirror.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from .canonicalization import canonicalize
from .config import Settings
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class LogMirror:
    def append(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError


class S3ObjectLockMirror(LogMirror):
    """Writes each log entry as a separate immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """

    def __init__(
        self,
        bucket: str,
        prefix: str,
        retention_days: int,
        legal_hold: str = "OFF",
        client: Optional[Any] = None
    ):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold
        self._client = client

    def _s3(self):
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("boto3 required for S3 Object Lock mirroring. Install mindprint[aws]") from e
            self._client = boto3.client("s3")
        return self._client

    def object_key(self, entry: Dict[str, Any]) -> str:
        return f"{self.prefix}{entry['createdAt']}-{entry['certificateId']}.json"

    def append(self, entry: Dict[str, Any]) -> None:
        key = self.object_key(entry)
        # Retain until now + retention_days
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        self._s3().put_object(
            Bucket=self.bucket,
            Key=key,
            Body=canonicalize(entry),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )
        logger.info("Mirrored log entry %s to s3://%s/%s", entry["certificateId"], self.bucket, key)


class MemoryMirror(LogMirror):
    """Keeps mirrored entries in memory; used by tests and local runs."""

    def __init__(self):
        self.entries = []

    def append(self, entry: Dict[str, Any]) -> None:
        self.entries.append(json.loads(json.dumps(entry)))


def get_log_mirror(settings: Settings, client: Optional[Any] = None) -> Optional[LogMirror]:
    """
    Build the mirror selected by settings.log_mirror, or None.

    Raises:
        ConfigurationError: If the mirror is unknown or S3 is selected without a bucket
    """
    if settings.log_mirror in ("", "none"):
        return None
    if settings.log_mirror == "s3_object_lock":
        if not settings.s3_bucket:
            raise ConfigurationError("S3_BUCKET must be set when MINDPRINT_LOG_MIRROR=s3_object_lock")
        return S3ObjectLockMirror(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            retention_days=settings.s3_retention_days,
            client=client,
        )
    if settings.log_mirror == "memory":
        return MemoryMirror()
    raise ConfigurationError(f"Unknown log mirror {settings.log_mirror!r}")
