"""Async client for the external image generation API.

The generator is a black box: a prompt goes in, an image URL comes out.
Requests go to ``{IMAGE_API_URL}/{model}`` with a ``Key`` authorization
header and return ``{"images": [{"url": ...}]}``.
"""

from __future__ import annotations

from typing import Any

import httpx

from imagecredit.config import settings

# model -> credit cost
MODEL_COSTS = {
    "flux": 1,
    "flux-2": 2,
    "nano-banana-pro": 3,
}


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------

class ImageApiError(Exception):
    """Base class for failures talking to the image API."""


class ImageApiTimeoutError(ImageApiError):
    """Raised when generation exceeds its time budget."""


class ImageApiConnectionError(ImageApiError):
    """Raised when the image API is unreachable or answers with an error."""


class ImageApiMalformedResponseError(ImageApiError):
    """Raised when the response carries no image URL."""


# ---------------------------------------------------------------------------
# ImageApiClient
# ---------------------------------------------------------------------------

class ImageApiClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        self.base_url = (base_url or settings.IMAGE_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.IMAGE_API_KEY
        self.timeout = timeout or settings.IMAGE_API_TIMEOUT_SECONDS

    async def generate(self, prompt: str, model: str) -> str:
        """Generate one image and return its URL.

        Raises:
            ImageApiTimeoutError: on request timeout.
            ImageApiConnectionError: on connection failure or HTTP error.
            ImageApiMalformedResponseError: on a response without an image.
        """
        if model not in MODEL_COSTS:
            raise ValueError(f"Unknown model: {model}")

        headers = {"Authorization": f"Key {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
            ) as client:
                response = await client.post(
                    f"/{model}", json={"prompt": prompt}, headers=headers,
                )
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ImageApiTimeoutError(
                f"Image generation timed out after {self.timeout}s"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ImageApiConnectionError(
                f"Image API returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ImageApiConnectionError(
                f"Cannot connect to image API at {self.base_url}"
            ) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise ImageApiMalformedResponseError("Image API returned non-JSON body") from exc
        return self._parse_image_url(body)

    @staticmethod
    def _parse_image_url(body: Any) -> str:
        if isinstance(body, dict):
            images = body.get("images")
            if isinstance(images, list) and images and isinstance(images[0], dict):
                url = images[0].get("url")
                if isinstance(url, str) and url:
                    return url
            url = body.get("image_url")
            if isinstance(url, str) and url:
                return url
        raise ImageApiMalformedResponseError("Image API response contained no image URL")
