"""S3FileService provides S3-backed object reads for the importer."""

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.core.errors import FileFetchError
from app.core.settings import Settings, get_settings


class S3FileService:
    """Service for S3 object reads."""

    def __init__(self, settings: Settings | None = None, client: object | None = None) -> None:
        """Initialize the S3 client from settings; `client` replaces it when given."""
        settings = settings or get_settings()
        self.s3 = client or boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
        )
        self.bucket = settings.S3_BUCKET

    def download(self, key: str, bucket: str | None = None) -> bytes:
        """Download an object by key, from `bucket` or the default bucket."""
        try:
            obj = self.s3.get_object(Bucket=bucket or self.bucket, Key=str(key))
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            msg = f"Could not read s3://{bucket or self.bucket}/{key}: {exc}"
            raise FileFetchError(msg, user_message="The file could not be downloaded from storage.") from exc

