"""S3 storage service for export archives (optional; local filesystem is the default)."""
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("404", "NoSuchKey", "NotFound")


class S3StorageService:
    """Uploads and deletes objects in a single bucket."""

    def __init__(self, region: str, bucket: str, access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 client.

        Args:
            region: AWS region
            bucket: S3 bucket name
            access_key: AWS access key (optional; uses IAM role on EC2)
            secret_key: AWS secret key (optional; uses IAM role on EC2)
        """
        self.bucket = bucket
        self.region = region
        self.client = None
        self.enabled = bool(bucket and region)

        if self.enabled:
            try:
                self.client = boto3.client(
                    "s3",
                    region_name=region,
                    aws_access_key_id=access_key or None,
                    aws_secret_access_key=secret_key or None,
                )
                logger.info(f"S3 storage initialized for bucket '{bucket}' in region '{region}'")
            except (BotoCoreError, ValueError) as e:
                logger.error(f"Failed to initialize S3 client: {e}")
                self.enabled = False
        else:
            logger.info("S3 storage disabled; using local filesystem")

    @classmethod
    def from_settings(cls, settings) -> "S3StorageService":
        return cls(
            region=settings.AWS_REGION,
            bucket=settings.AWS_S3_BUCKET,
            access_key=settings.AWS_ACCESS_KEY_ID,
            secret_key=settings.AWS_SECRET_ACCESS_KEY,
        )

    def is_available(self) -> bool:
        return self.enabled and self.client is not None

    def upload_file(self, file_data: bytes, s3_key: str, content_type: str = "application/octet-stream") -> str:
        """Upload bytes under ``s3_key`` and return the key."""
        if not self.is_available():
            raise RuntimeError("S3 storage is not configured")

        self.client.put_object(
            Bucket=self.bucket,
            Key=s3_key,
            Body=file_data,
            ContentType=content_type,
            ServerSideEncryption="AES256",
        )
        logger.info(f"Uploaded to S3: s3://{self.bucket}/{s3_key}")
        return s3_key

    def delete_file_with_key(self, s3_key: str) -> None:
        """Delete an object. A key that is already gone counts as deleted."""
        if not self.is_available():
            raise RuntimeError("S3 storage is not configured")

        try:
            self.client.delete_object(Bucket=self.bucket, Key=s3_key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                logger.debug(f"S3 object already gone: s3://{self.bucket}/{s3_key}")
                return
            raise
        logger.info(f"Deleted from S3: s3://{self.bucket}/{s3_key}")

    def generate_presigned_url(self, s3_key: str, expiration: int = 3600) -> str:
        """Presigned GET URL for downloading an export; valid for ``expiration`` seconds."""
        if not self.is_available():
            raise RuntimeError("S3 storage is not configured")

        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": s3_key},
            ExpiresIn=expiration,
        )
