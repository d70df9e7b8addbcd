# app/services/image_archive.py
"""
Archive of the images submitted for verification.

Every resolved document page and selfie is stored in S3 under
`<prefix>/<identity_id>/<label>.<ext>` so the audit record can point at the
exact bytes the provider saw. Archival is optional (no bucket, no archive).
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Protocol
from urllib.parse import quote, urlencode

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config import settings
from utils.image import NormalizedImage

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/bmp": "bmp",
    "image/webp": "webp",
}


class ImageArchiveError(Exception):
    pass


@dataclass(frozen=True)
class ArchivedImage:
    url: str
    key: str
    bucket: str
    bytes: int
    mime_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ImageArchive(Protocol):
    async def archive(
        self, image: NormalizedImage, name: str, tags: Optional[Dict[str, str]] = None
    ) -> ArchivedImage: ...


class S3ImageArchive:
    def __init__(self, bucket: str, prefix: str = "", region: Optional[str] = None, client=None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.region = region or settings.AWS_REGION
        self.client = client or boto3.client(
            "s3",
            aws_access_key_id=settings.AWS_ACCESS_KEY_ID,
            aws_secret_access_key=settings.AWS_SECRET_ACCESS_KEY,
            region_name=self.region,
        )

    def object_key(self, name: str, mime_type: Optional[str]) -> str:
        extension = _EXTENSIONS.get(mime_type or "", "bin")
        key = f"{name}.{extension}"
        return f"{self.prefix}/{key}" if self.prefix else key

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    async def archive(
        self, image: NormalizedImage, name: str, tags: Optional[Dict[str, str]] = None
    ) -> ArchivedImage:
        key = self.object_key(name, image.mime_type)
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": image.data,
            "ContentType": image.mime_type or "application/octet-stream",
        }
        if tags:
            params["Tagging"] = urlencode(tags)

        try:
            await asyncio.to_thread(self.client.put_object, **params)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"❌ S3 upload of {key} to {self.bucket} failed: {str(e)}")
            raise ImageArchiveError(f"Could not archive {name}: {str(e)}") from e

        logger.info(f"Archived {key} ({image.size} bytes)")
        return ArchivedImage(
            url=self.object_url(key),
            key=key,
            bucket=self.bucket,
            bytes=image.size,
            mime_type=image.mime_type,
        )


def build_image_archive(config=settings) -> Optional[S3ImageArchive]:
    bucket = (config.S3_BUCKET or "").strip()
    if not bucket:
        logger.info("Image archival disabled (S3_BUCKET not set)")
        return None
    return S3ImageArchive(bucket, prefix=config.S3_PREFIX, region=config.AWS_REGION)
