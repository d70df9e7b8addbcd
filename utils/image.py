# app/utils/image.py
"""
Image payload normalization.

Clients send images either as bare base64 or as data URIs, and capture SDKs
are known to send doubled or broken headers such as
``data:image/jpeg;base64,base64,/9j/...``. Everything is reduced to raw bytes
plus the declared (or sniffed) MIME type before it reaches the provider.
"""

import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import Optional, Union

from utils.exceptions import InvalidImageError

_DATA_URI_PREFIX = re.compile(r"^data:(?P<mime>[^;,]*)[^,]*,", re.IGNORECASE)
_BASE64_PREFIX = re.compile(r"^;?base64,", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")

_MAGIC_NUMBERS = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


@dataclass(frozen=True)
class NormalizedImage:
    data: bytes
    mime_type: Optional[str] = field(default=None, compare=False)

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def describe(self) -> dict:
        """Metadata safe to log or persist (no image content)"""
        return {"mime_type": self.mime_type, "bytes": self.size}


def sniff_mime_type(data: bytes) -> Optional[str]:
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for magic, mime_type in _MAGIC_NUMBERS:
        if data.startswith(magic):
            return mime_type
    return None


def strip_data_uri_prefixes(raw: str):
    """Remove every leading data-URI / base64 marker, returning (payload, mime)"""
    payload = raw.strip()
    mime_type = None

    while True:
        match = _DATA_URI_PREFIX.match(payload)
        if match:
            if mime_type is None and match.group("mime"):
                mime_type = match.group("mime").lower()
            payload = payload[match.end():].lstrip()
            continue

        match = _BASE64_PREFIX.match(payload)
        if match:
            payload = payload[match.end():].lstrip()
            continue

        return payload, mime_type


def normalize_image(raw: Union[str, bytes, bytearray, None]) -> NormalizedImage:
    """Decode a base64 / data-URI image payload into bytes"""
    if isinstance(raw, (bytes, bytearray)):
        data = bytes(raw)
        if not data:
            raise InvalidImageError("Image payload is empty")
        return NormalizedImage(data=data, mime_type=sniff_mime_type(data))

    if not isinstance(raw, str) or not raw.strip():
        raise InvalidImageError("Image payload must be a non-empty string")

    payload, declared_mime = strip_data_uri_prefixes(raw)
    payload = _WHITESPACE.sub("", payload)
    if not payload:
        raise InvalidImageError("Image payload is empty")

    missing_padding = len(payload) % 4
    if missing_padding:
        payload += "=" * (4 - missing_padding)

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as decode_error:
        raise InvalidImageError(f"Invalid base64 image: {decode_error}") from decode_error

    if not data:
        raise InvalidImageError("Image payload decoded to zero bytes")

    return NormalizedImage(data=data, mime_type=declared_mime or sniff_mime_type(data))
