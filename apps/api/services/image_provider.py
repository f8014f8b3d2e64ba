"""Client for the external text-to-image provider.

The provider is opaque to the credit logic: one prompt in, one image URL out,
or ``ImageGenerationError``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict

import httpx

from config import settings


logger = logging.getLogger(__name__)

MAX_PROMPT_LENGTH = 500

COVER_PROMPT_TEMPLATE = (
    "Chinese New Year red envelope cover art, vertical 957x1278 composition, "
    "festive and auspicious, rich red and gold palette, no text. Theme: {prompt}"
)

ImageGenerator = Callable[[str], Awaitable[str]]


class ImageGenerationError(RuntimeError):
    """The provider failed or returned no image."""


def build_cover_prompt(prompt: str) -> str:
    return COVER_PROMPT_TEMPLATE.format(prompt=prompt.strip())


async def generate_cover_image(prompt: str) -> str:
    if not settings.IMAGE_PROVIDER_URL:
        raise ImageGenerationError("IMAGE_PROVIDER_URL is not configured")

    headers: Dict[str, str] = {"Content-Type": "application/json"}
    if settings.IMAGE_PROVIDER_API_KEY:
        headers["Authorization"] = f"Bearer {settings.IMAGE_PROVIDER_API_KEY}"

    try:
        async with httpx.AsyncClient(timeout=settings.IMAGE_PROVIDER_TIMEOUT_SECONDS) as client:
            response = await client.post(
                settings.IMAGE_PROVIDER_URL,
                json={"prompt": build_cover_prompt(prompt)},
                headers=headers,
            )
            response.raise_for_status()
            payload: Dict[str, Any] = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Image provider call failed: %s", exc)
        raise ImageGenerationError(str(exc)) from exc

    image_url = payload.get("image_url") or payload.get("url")
    if not image_url:
        raise ImageGenerationError("Image provider returned no image URL")
    return str(image_url)


def get_image_generator() -> ImageGenerator:
    """FastAPI dependency; tests override it with a stub."""
    return generate_cover_image
