# poflow/services/storage.py
import boto3
from botocore.config import Config
from poflow.config import settings
import structlog

logger = structlog.get_logger()


class R2Client:
    def __init__(self, bucket: str = settings.INVOICE_BUCKET_NAME):
        self.s3 = boto3.client(
            "s3",
            endpoint_url=settings.R2_ENDPOINT_URL,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID or None,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY or None,
            config=Config(
                signature_version="s3v4",
                connect_timeout=settings.R2_CONNECT_TIMEOUT_SECONDS,
                read_timeout=settings.R2_READ_TIMEOUT_SECONDS,
                retries={"max_attempts": settings.R2_MAX_ATTEMPTS, "mode": "standard"},
            ),
            region_name="auto",
        )
        self.bucket = bucket

    def upload(
        self, file_bytes: bytes, key: str, content_type: str = "application/pdf"
    ) -> str:
        self.s3.put_object(
            Bucket=self.bucket, Key=key, Body=file_bytes, ContentType=content_type
        )
        logger.info("r2_uploaded", bucket=self.bucket, key=key, size=len(file_bytes))
        return key

    def get_presigned_url(self, key: str, expires_in: int = 3600) -> str:
        return self.s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )

    def delete(self, key: str):
        self.s3.delete_object(Bucket=self.bucket, Key=key)
        logger.info("r2_deleted", bucket=self.bucket, key=key)

    def head_bucket(self) -> bool:
        self.s3.head_bucket(Bucket=self.bucket)
        return True


invoice_storage = R2Client()
