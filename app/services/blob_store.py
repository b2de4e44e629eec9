import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from app.config import settings
from app.errors import BlobUnavailable
from typing import BinaryIO, Optional, Union
import io
import logging
import uuid

logger = logging.getLogger(__name__)

class BlobStore:
    """S3-compatible (Cloudflare R2) document storage. Paths returned are object keys."""

    def __init__(self, client=None, bucket_name: Optional[str] = None):
        self.bucket_name = bucket_name or settings.R2_BUCKET_NAME or self._bucket_from_url(settings.R2_BUCKET_URL)
        if client is not None:
            self.s3_client = client
            return

        if not settings.R2_ENDPOINT_URL:
            raise BlobUnavailable("blob_store_not_configured", {"missing": "R2_ENDPOINT_URL"})
        if not settings.R2_ACCESS_KEY or not settings.R2_SECRET_KEY:
            raise BlobUnavailable("blob_store_not_configured", {"missing": "R2 credentials"})

        logger.info("R2 configuration: endpoint=%s bucket=%s", settings.R2_ENDPOINT_URL, self.bucket_name)
        self.s3_client = boto3.client(
            's3',
            endpoint_url=settings.R2_ENDPOINT_URL,
            aws_access_key_id=settings.R2_ACCESS_KEY,
            aws_secret_access_key=settings.R2_SECRET_KEY,
            config=Config(
                signature_version='s3v4',
                connect_timeout=settings.STORE_TIMEOUT_SECONDS,
                read_timeout=settings.STORE_TIMEOUT_SECONDS,
            ),
        )

    @staticmethod
    def _bucket_from_url(url: str) -> Optional[str]:
        # https://pub-xxxx.r2.dev/bucket-name or https://bucket-name.r2.cloudflarestorage.com
        if not url:
            return None
        parts = url.replace('https://', '').replace('http://', '').rstrip('/').split('/')
        if len(parts) > 1:
            return parts[-1].split('?')[0]
        return parts[0].split('.')[0] or None

    def put(self, data: Union[BinaryIO, bytes], filename: str, folder: str = "documents") -> str:
        """Store bytes under a fresh key and return the key."""
        file_ext = filename.rsplit('.', 1)[-1] if '.' in filename else ''
        key = f"{folder}/{uuid.uuid4()}.{file_ext}" if file_ext else f"{folder}/{uuid.uuid4()}"
        if isinstance(data, bytes):
            data = io.BytesIO(data)
        if hasattr(data, 'seek'):
            data.seek(0)
        try:
            self.s3_client.upload_fileobj(
                data,
                self.bucket_name,
                key,
                ExtraArgs={'ContentType': self._get_content_type(filename)},
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Blob upload failed for %s: %s", key, e)
            raise BlobUnavailable("blob_put_failed", {"key": key}) from e
        return key

    def delete(self, key: str) -> bool:
        """Best-effort delete. Returns False instead of raising."""
        if not key:
            return False
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._key(key))
            return True
        except (BotoCoreError, ClientError) as e:
            logger.warning("Blob delete failed for %s: %s", key, e)
            return False

    def sign(self, key: str, ttl_seconds: Optional[int] = None) -> str:
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': self._key(key)},
                ExpiresIn=ttl_seconds or settings.SIGNED_URL_TTL_SECONDS,
            )
        except (BotoCoreError, ClientError) as e:
            raise BlobUnavailable("blob_sign_failed", {"key": key}) from e

    def _key(self, path: str) -> str:
        # Older rows stored the full public URL
        base = settings.R2_BUCKET_URL.rstrip('/')
        if base and path.startswith(base + '/'):
            return path[len(base) + 1:]
        return path

    def _get_content_type(self, filename: str) -> str:
        ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else ''
        content_types = {
            'pdf': 'application/pdf',
            'jpg': 'image/jpeg',
            'jpeg': 'image/jpeg',
            'png': 'image/png',
            'doc': 'application/msword',
            'docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
        }
        return content_types.get(ext, 'application/octet-stream')


_blob_store: Optional[BlobStore] = None

def get_blob_store() -> BlobStore:
    """FastAPI dependency; the client is created lazily on first use."""
    global _blob_store
    if _blob_store is None:
        _blob_store = BlobStore()
    return _blob_store

def get_optional_blob_store() -> Optional[BlobStore]:
    """For routes whose blob work is best effort: an unconfigured store yields None."""
    try:
        return get_blob_store()
    except BlobUnavailable as e:
        logger.warning("Blob store unavailable, continuing without it: %s", e.reason)
        return None
