"""S3-compatible image storage for invoice uploads.

Invoice images must be reachable by the vision model, so every upload
returns a public object URL of the form
``{public_base}/storage/v1/object/public/{bucket}/{filename}`` (the
Supabase storage layout).

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from invoice_processor.shared.config import Settings

logger = logging.getLogger(__name__)

PUBLIC_OBJECT_PATH = "storage/v1/object/public"
NOT_CONFIGURED_MESSAGE = (
    "Storage is not configured. Set APP_STORAGE_ENDPOINT, "
    "APP_STORAGE_ACCESS_KEY and APP_STORAGE_SECRET_KEY"
)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Object name in storage
        bucket: Bucket name
        url: Public URL of the stored object
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    url: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class StorageService:
    """Uploads invoice images to S3-compatible object storage."""

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self._client: Minio | None = None
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
                region=self.settings.storage_region or None,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        """Check if storage is configured.

        Returns:
            True if endpoint and credentials are set
        """
        return bool(
            self.settings.storage_endpoint
            and self.settings.storage_access_key
            and self.settings.storage_secret_key
        )

    def health_check(self) -> bool:
        """Check if storage backend is reachable.

        Returns:
            True if the server responds to list_buckets
        """
        if not self.is_available():
            return False

        try:
            self._get_client().list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return

        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")

        self._bucket_exists_cache.add(bucket)

    def public_url(self, filename: str, bucket: str | None = None) -> str:
        """Build the public URL of a stored object.

        Args:
            filename: Object name in storage
            bucket: Bucket name (defaults to settings.storage_bucket)

        Returns:
            Publicly readable object URL
        """
        bucket = bucket or self.settings.storage_bucket
        base = self.settings.storage_public_base_url
        if not base:
            scheme = "https" if self.settings.storage_secure else "http"
            base = f"{scheme}://{self.settings.storage_endpoint}"
        return f"{base.rstrip('/')}/{PUBLIC_OBJECT_PATH}/{bucket}/{filename}"

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put_object(self, bucket: str, filename: str, data: bytes, content_type: str) -> str:
        result = self._get_client().put_object(
            bucket_name=bucket,
            object_name=filename,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        return result.etag

    def upload_image(
        self,
        data: bytes,
        filename: str,
        content_type: str = "image/png",
        bucket: str | None = None,
    ) -> StorageResult:
        """Upload image bytes and return their public URL.

        Args:
            data: Image bytes
            filename: Target object name (e.g. invoice_<ns>.png)
            content_type: MIME type of the image
            bucket: Target bucket (defaults to settings.storage_bucket)

        Returns:
            StorageResult with the public URL, or the error
        """
        bucket = bucket or self.settings.storage_bucket

        if not self.is_available():
            return StorageResult(
                success=False,
                object_name=filename,
                bucket=bucket,
                error=NOT_CONFIGURED_MESSAGE,
            )

        try:
            self._ensure_bucket(bucket)
            etag = self._put_object(bucket, filename, data, content_type)
        except S3Error as e:
            logger.error(f"S3 error uploading {filename}: {e}")
            return StorageResult(
                success=False,
                object_name=filename,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error uploading {filename}: {e}")
            return StorageResult(success=False, object_name=filename, bucket=bucket, error=str(e))

        logger.info(f"Uploaded {filename} to {bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True,
            object_name=filename,
            bucket=bucket,
            url=self.public_url(filename, bucket),
            etag=etag,
            size=len(data),
        )
