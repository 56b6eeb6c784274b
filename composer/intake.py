"""Image intake: turn user-supplied files into transport-ready ImageData.

The encoded payload is the file's bytes, base64-encoded without any
re-encoding, so decoding it gives back the original file. Pillow is only used
to check that the bytes really are an image of an accepted type.
"""

import base64
import binascii
import logging
from io import BytesIO
from typing import Optional

import httpx
from fastapi import UploadFile
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from composer.errors import DecodeError, FileTooLargeError, UnsupportedImageTypeError

logger = logging.getLogger(__name__)

ACCEPTED_MIME_TYPES = ("image/png", "image/jpeg", "image/webp")
PIL_FORMAT_TO_MIME = {"PNG": "image/png", "JPEG": "image/jpeg", "WEBP": "image/webp"}
DEFAULT_MAX_BYTES = 10 * 1024 * 1024

# Some image hosts refuse requests without browser-like headers.
FETCH_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
    "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
}


class ImageData(BaseModel):
    encoded_bytes: str
    mime_type: str

    def raw_bytes(self) -> bytes:
        return base64.b64decode(self.encoded_bytes)


class ImageUpload(BaseModel):
    image: ImageData
    filename: Optional[str] = None
    preview_uri: str
    size: int


def to_data_uri(payload: str, mime_type: str) -> str:
    return f"data:{mime_type};base64,{payload}"


def _normalize_mime(mime_type: Optional[str]) -> Optional[str]:
    if not mime_type:
        return None
    mime_type = mime_type.split(";", 1)[0].strip().lower()
    if mime_type == "image/jpg":
        return "image/jpeg"
    # Browsers send this when they cannot tell; let Pillow decide.
    if mime_type == "application/octet-stream":
        return None
    return mime_type


def _detect_format(data: bytes) -> Optional[str]:
    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
            return img.format
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"File is not a readable image: {e}") from e


def read_image(
    data: bytes,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> ImageUpload:
    """Validate raw file bytes and wrap them as an ImageUpload.

    The declared `mime_type` is kept as-is when it is an accepted type; when
    nothing is declared, the format Pillow detects is used instead.

    Raises:
        DecodeError: empty or undecodable data.
        FileTooLargeError: more than `max_bytes`.
        UnsupportedImageTypeError: not PNG, JPEG or WEBP.
    """
    if not data:
        raise DecodeError("File is empty")
    if len(data) > max_bytes:
        raise FileTooLargeError(f"File is {len(data)} bytes, limit is {max_bytes}")

    declared = _normalize_mime(mime_type)
    if declared is not None and declared not in ACCEPTED_MIME_TYPES:
        raise UnsupportedImageTypeError(f"Unsupported media type: {declared}")

    detected = PIL_FORMAT_TO_MIME.get(_detect_format(data) or "")
    if detected is None:
        raise UnsupportedImageTypeError("Image format is not PNG, JPEG or WEBP")

    resolved = declared or detected
    encoded = base64.b64encode(data).decode("ascii")
    return ImageUpload(
        image=ImageData(encoded_bytes=encoded, mime_type=resolved),
        filename=filename,
        preview_uri=to_data_uri(encoded, resolved),
        size=len(data),
    )


def decode_payload(encoded: str, mime_type: Optional[str], max_bytes: int = DEFAULT_MAX_BYTES) -> ImageUpload:
    """Same as read_image, for images that arrive already base64-encoded."""
    if encoded.startswith("data:") and "," in encoded:
        header, encoded = encoded.split(",", 1)
        mime_type = mime_type or header[5:].split(";", 1)[0]
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Payload is not valid base64: {e}") from e
    return read_image(data, mime_type, max_bytes=max_bytes)


async def read_upload(upload: UploadFile, max_bytes: int = DEFAULT_MAX_BYTES) -> ImageUpload:
    try:
        data = await upload.read(max_bytes + 1)
    except OSError as e:
        raise DecodeError(f"Could not read upload {upload.filename!r}: {e}") from e
    finally:
        await upload.close()
    result = read_image(data, upload.content_type, filename=upload.filename, max_bytes=max_bytes)
    logger.info(f"Read upload {upload.filename!r} ({result.image.mime_type}, {result.size} bytes)")
    return result


async def fetch_image(url: str, max_bytes: int = DEFAULT_MAX_BYTES, timeout: float = 15.0) -> ImageUpload:
    """Load an image straight from a URL."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(url, follow_redirects=True, timeout=timeout, headers=FETCH_HEADERS)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DecodeError(f"Image server error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise DecodeError(f"Failed to fetch image: {e}") from e

    content_type = response.headers.get("content-type", "")
    if not content_type.startswith("image/"):
        raise UnsupportedImageTypeError(f"URL is not a direct image link ({content_type or 'no content type'})")

    filename = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0] or None
    return read_image(response.content, content_type, filename=filename, max_bytes=max_bytes)
