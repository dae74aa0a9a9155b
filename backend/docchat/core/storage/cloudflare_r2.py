"""Cloudflare R2 storage client (S3-compatible) for reading uploaded documents.

Implements the minimal read interface the chat worker needs.
"""
from __future__ import annotations
import boto3
from botocore.client import Config
from botocore.exceptions import ClientError
from typing import Optional
from docchat.config import settings
from docchat.errors import ConfigurationError
from docchat.utils.logging import logger

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404"}


class CloudflareR2Storage:
    def __init__(self, *, access_key_id: str, secret_access_key: str, endpoint_url: str, default_bucket: str = ""):
        self.default_bucket = default_bucket
        # region_name can be 'auto' for R2; disable signature version guessing
        self.client = boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name='auto',
            config=Config(signature_version='s3v4', retries={'max_attempts': 2})
        )

    def get_bytes(self, key: str, bucket: Optional[str] = None) -> bytes:
        """Get object bytes from R2. Raises FileNotFoundError for a missing object."""
        bucket = bucket or self.default_bucket
        try:
            resp = self.client.get_object(Bucket=bucket, Key=key)
            data = resp['Body'].read()
            logger.info("Retrieved object from R2", extra={"bucket": bucket, "key": key, "size": len(data)})
            return data
        except ClientError as e:
            if e.response['Error']['Code'] in _NOT_FOUND_CODES:
                logger.error("Object not found in R2", extra={"bucket": bucket, "key": key})
                raise FileNotFoundError(f"Object not found in R2: {bucket}/{key}") from e
            logger.exception("Failed to retrieve object from R2", extra={"bucket": bucket, "key": key})
            raise

    def exists(self, key: str, bucket: Optional[str] = None) -> bool:
        """Check if an object exists in R2."""
        bucket = bucket or self.default_bucket
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in _NOT_FOUND_CODES:
                return False
            logger.exception("Failed to check if object exists in R2", extra={"bucket": bucket, "key": key})
            raise


_R2_CACHE: Optional[CloudflareR2Storage] = None


def get_r2_storage() -> CloudflareR2Storage:
    """Get or create a singleton CloudflareR2Storage instance."""
    global _R2_CACHE
    if _R2_CACHE is None:
        if not (settings.r2_access_key_id and settings.r2_secret_access_key and settings.r2_endpoint_url):
            raise ConfigurationError("R2 storage not configured", stage="context")
        _R2_CACHE = CloudflareR2Storage(
            access_key_id=settings.r2_access_key_id,
            secret_access_key=settings.r2_secret_access_key,
            endpoint_url=settings.r2_endpoint_url,
            default_bucket=settings.r2_bucket,
        )
    return _R2_CACHE
