import logging
import os
from typing import Optional

import httpx

from docstore import UpstreamUnavailableError

logger = logging.getLogger(__name__)

IMGBB_UPLOAD_URL = "https://api.imgbb.com/1/upload"


class ImageHostClient:
    """Uploads payment receipts to ImgBB and returns the hosted URL."""

    def __init__(self, api_key: Optional[str] = None, upload_url: str = IMGBB_UPLOAD_URL,
                 timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key or os.getenv("IMGBB_API_KEY")
        self.upload_url = upload_url
        self.timeout = timeout
        self.transport = transport

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    def upload(self, content: bytes, filename: str = "receipt.jpg") -> str:
        if not self.is_available:
            raise UpstreamUnavailableError("Image host is not configured")

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.upload_url,
                    params={"key": self.api_key},
                    files={"image": (filename, content)},
                )
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Image upload failed: {e}") from e

        if response.status_code != 200:
            raise UpstreamUnavailableError(f"Image host error: HTTP {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise UpstreamUnavailableError("Image host returned an unreadable response") from e

        if not result.get("success"):
            raise UpstreamUnavailableError("Image upload failed")

        url = result["data"]["url"]
        logger.debug("Uploaded %s to %s", filename, url)
        return url
