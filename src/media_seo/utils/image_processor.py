"""Image loading and preparation for vision APIs."""

import base64
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Union

import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# Formats every supported vendor accepts inline.
SUPPORTED_MIME_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

FORMAT_TO_MIME = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "AVIF": "image/avif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}


@dataclass
class ImagePayload:
    """Image bytes ready to be inlined into a vendor request."""

    data: bytes
    mime_type: str
    width: int = 0
    height: int = 0
    source: str = ""

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class ImageProcessor:
    """Fetches images and converts them into vendor-compatible payloads."""

    def __init__(self, timeout: int = 30, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    def load(self, source: Union[str, Path]) -> ImagePayload:
        """Load from a local path or http(s) URL.

        Raises:
            ValueError: if the image cannot be read or converted.
        """
        source = str(source)
        if source.startswith(("http://", "https://")):
            data, header_mime = self._fetch(source)
        else:
            data = Path(source).read_bytes()
            header_mime = None

        return self.prepare(data, header_mime, source=source)

    def _fetch(self, url: str) -> Tuple[bytes, Optional[str]]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ValueError(f"Failed to fetch image {url}: {e}") from e

        if not response.content:
            raise ValueError(f"Empty image body from {url}")

        mime = response.headers.get("content-type", "").split(";")[0].strip() or None
        return response.content, mime

    def prepare(self, data: bytes, mime_type: Optional[str] = None, source: str = "") -> ImagePayload:
        """Identify dimensions and convert unsupported formats to JPEG."""
        try:
            image = Image.open(BytesIO(data))
            width, height = image.size
            detected = FORMAT_TO_MIME.get(image.format or "", mime_type)
        except UnidentifiedImageError as e:
            raise ValueError(f"Unrecognized image data from {source or 'buffer'}") from e

        mime_type = detected or mime_type or "image/jpeg"
        if mime_type not in SUPPORTED_MIME_TYPES:
            logger.info(f"Converting {mime_type} image to JPEG: {source}")
            data = self.to_jpeg(image)
            mime_type = "image/jpeg"

        return ImagePayload(data=data, mime_type=mime_type, width=width, height=height, source=source)

    @staticmethod
    def to_jpeg(image: Image.Image, quality: int = 90) -> bytes:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        buffer = BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
        return buffer.getvalue()
