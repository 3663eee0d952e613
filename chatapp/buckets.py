"""
Object storage for the two buckets:

- avatars: public profile pictures
- chat-images: images attached to messages, readable by conversation participants

Objects are addressed as <bucket>/<owner user_id>/<file name>. Two backends
are available: a directory tree on local disk (development and tests) and
S3-compatible storage through boto3.
"""

import logging
import time
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from chatapp.config import settings

logger = logging.getLogger(__name__)


# Raster types stored under their own extension. Anything else that claims
# image/* is kept as opaque bytes and never served with a renderable type.
IMAGE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/bmp": "bmp",
    "image/avif": "avif",
}
OPAQUE_EXTENSION = "bin"
OPAQUE_CONTENT_TYPE = "application/octet-stream"
_CONTENT_TYPES = {ext: content_type for content_type, ext in IMAGE_EXTENSIONS.items()}


class UploadRejected(Exception):
    """File failed client-side validation; nothing was stored."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class ObjectNotFound(Exception):
    pass


def _media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def validate_image(content_type: Optional[str], size: int, max_bytes: Optional[int] = None) -> None:
    """
    Reject anything that is not an image or is larger than the upload limit.

    Raises:
        UploadRejected: 415 for a non-image MIME type, 413 for an oversize file
    """
    max_bytes = settings.MAX_IMAGE_BYTES if max_bytes is None else max_bytes
    if not _media_type(content_type).startswith("image/"):
        raise UploadRejected(415, "Please select an image file.")
    if size > max_bytes:
        raise UploadRejected(413, f"Please select an image smaller than {max_bytes // (1024 * 1024)}MB.")


def image_extension(content_type: Optional[str]) -> str:
    """Extension for a validated upload. The client's file name is never used."""
    return IMAGE_EXTENSIONS.get(_media_type(content_type), OPAQUE_EXTENSION)


def object_content_type(object_name: str) -> str:
    """Content type an object is stored and served with, from its extension."""
    ext = object_name.rsplit(".", 1)[1].lower() if "." in object_name else ""
    return _CONTENT_TYPES.get(ext, OPAQUE_CONTENT_TYPE)


def image_object_name(user_id: str, content_type: Optional[str]) -> str:
    """<user_id>/<epoch ms>.<ext>"""
    return f"{user_id}/{int(time.time() * 1000)}.{image_extension(content_type)}"


def public_object_url(bucket: str, object_name: str) -> str:
    return f"{settings.PUBLIC_URL.rstrip('/')}/storage/{bucket}/{object_name}"


class ObjectStore:
    def put(self, bucket: str, object_name: str, data: bytes) -> None:
        raise NotImplementedError

    def get(self, bucket: str, object_name: str) -> Tuple[bytes, str]:
        raise NotImplementedError


class LocalObjectStore(ObjectStore):
    """Stores objects as files under <root>/<bucket>/<object name>."""

    def __init__(self, root: str):
        self.root = Path(root).resolve()

    def _path(self, bucket: str, object_name: str) -> Path:
        path = (self.root / bucket / object_name).resolve()
        if self.root / bucket not in path.parents:
            raise ObjectNotFound(f"{bucket}/{object_name}")
        return path

    def put(self, bucket: str, object_name: str, data: bytes) -> None:
        path = self._path(bucket, object_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        logger.info(f"Stored object {bucket}/{object_name} ({len(data)} bytes)")

    def get(self, bucket: str, object_name: str) -> Tuple[bytes, str]:
        path = self._path(bucket, object_name)
        if not path.is_file():
            raise ObjectNotFound(f"{bucket}/{object_name}")
        return path.read_bytes(), object_content_type(object_name)


class S3ObjectStore(ObjectStore):
    """S3-compatible storage; each logical bucket maps to <prefix><bucket>."""

    def __init__(self):
        self.prefix = settings.S3_BUCKET_PREFIX
        self.client = boto3.client(
            "s3",
            endpoint_url=settings.S3_ENDPOINT_URL,
            aws_access_key_id=settings.S3_ACCESS_KEY,
            aws_secret_access_key=settings.S3_SECRET_KEY,
        )

    def put(self, bucket: str, object_name: str, data: bytes) -> None:
        self.client.put_object(
            Bucket=f"{self.prefix}{bucket}",
            Key=object_name,
            Body=data,
            ContentType=object_content_type(object_name),
        )
        logger.info(f"Uploaded object {bucket}/{object_name} ({len(data)} bytes) to S3")

    def get(self, bucket: str, object_name: str) -> Tuple[bytes, str]:
        try:
            response = self.client.get_object(Bucket=f"{self.prefix}{bucket}", Key=object_name)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise ObjectNotFound(f"{bucket}/{object_name}") from e
            raise
        return response["Body"].read(), object_content_type(object_name)


@lru_cache()
def get_object_store() -> ObjectStore:
    if settings.STORAGE_BACKEND == "s3":
        logger.info(f"Using S3 object storage at {settings.S3_ENDPOINT_URL}")
        return S3ObjectStore()
    logger.info(f"Using local object storage under {settings.STORAGE_ROOT}")
    return LocalObjectStore(settings.STORAGE_ROOT)
