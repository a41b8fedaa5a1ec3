import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from deptflow.config import settings
from deptflow.errors import ValidationFailed

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """A file could not be written to or read from the backing store."""


@dataclass(frozen=True)
class StoredFile:
    file_name: str
    file_size: int
    mime_type: str
    file_path: str


@dataclass(frozen=True)
class Upload:
    """A file received from a client, not yet persisted."""

    file_name: str
    content: bytes
    mime_type: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.content


class StorageService:
    def __init__(self, backend: str | None = None, root: str | Path | None = None):
        self.backend = backend or settings.storage_backend
        self.root = Path(root or settings.upload_dir)

    # ------------------------------------------------------------------
    # S3
    # ------------------------------------------------------------------

    @staticmethod
    def s3_is_configured() -> bool:
        return bool(
            settings.s3_endpoint_url
            and settings.s3_access_key
            and settings.s3_secret_key
        )

    @staticmethod
    def _get_client():  # type: ignore[return]
        if not StorageService.s3_is_configured():
            raise StorageError(
                "S3 storage is not configured. "
                "Set S3_ENDPOINT_URL, S3_ACCESS_KEY, and S3_SECRET_KEY."
            )
        return boto3.client(
            "s3",
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(signature_version="s3v4"),
        )

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    @staticmethod
    def generate_storage_key(document_id, file_name: str) -> str:
        safe_name = Path(file_name).name or "upload.bin"
        stamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        unique = uuid.uuid4().hex[:12]
        return f"documents/{document_id}/{stamp}-{unique}-{safe_name}"

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def save(
        self,
        document_id,
        file_name: str,
        content: bytes,
        mime_type: str | None = None,
    ) -> StoredFile:
        if not content:
            raise ValidationFailed("Uploaded file is empty")
        if len(content) > settings.max_upload_size_bytes:
            raise ValidationFailed(
                "Uploaded file is too large",
                details={"max_bytes": settings.max_upload_size_bytes},
            )
        mime_type = mime_type or "application/octet-stream"
        key = self.generate_storage_key(document_id, file_name)

        if self.backend == "s3":
            try:
                self._get_client().put_object(
                    Bucket=settings.s3_bucket_name,
                    Key=key,
                    Body=content,
                    ContentType=mime_type,
                )
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Failed to upload {key}: {exc}") from exc
        else:
            target = self.root / key
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
            except OSError as exc:
                raise StorageError(f"Failed to write {target}: {exc}") from exc

        logger.info("Stored %s (%d bytes) for document %s", key, len(content), document_id)
        return StoredFile(
            file_name=Path(file_name).name,
            file_size=len(content),
            mime_type=mime_type,
            file_path=key,
        )

    def read(self, file_path: str) -> bytes:
        if self.backend == "s3":
            try:
                obj = self._get_client().get_object(
                    Bucket=settings.s3_bucket_name, Key=file_path
                )
                return obj["Body"].read()
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Failed to read {file_path}: {exc}") from exc
        try:
            return (self.root / file_path).read_bytes()
        except OSError as exc:
            raise StorageError(f"Failed to read {file_path}: {exc}") from exc

    def local_path(self, file_path: str) -> Path:
        return self.root / file_path

    def generate_download_url(self, file_path: str) -> str:
        client = self._get_client()
        try:
            url: str = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": settings.s3_bucket_name, "Key": file_path},
                ExpiresIn=settings.s3_presigned_url_expiry,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to sign {file_path}: {exc}") from exc
        return url

    def delete(self, file_path: str) -> None:
        """Best-effort removal; failures are logged, never raised."""
        try:
            if self.backend == "s3":
                self._get_client().delete_object(
                    Bucket=settings.s3_bucket_name, Key=file_path
                )
            else:
                (self.root / file_path).unlink(missing_ok=True)
        except (OSError, StorageError, BotoCoreError, ClientError) as exc:
            logger.warning("Failed to delete stored file %s: %s", file_path, exc)


storage = StorageService()
