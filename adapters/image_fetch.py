"""
image_fetch.py — One-shot illustrative image lookup for a topic.

GET {image.base_url}/search?query=<topic>&per_page=1
Selects photos[0].src.landscape. No retry; every failure is a NextwikiError.
"""

import logging
from typing import Any

import httpx

from config_loader import ImageEndpointConfig
from errors import NextwikiError

logger = logging.getLogger("nextwiki.image_fetch")

IMAGE_VARIANT = "landscape"


def _safe_error_body(response: httpx.Response) -> str:
    """Extract error message from response body without exposing sensitive data."""
    try:
        data = response.json()
        if isinstance(data, dict):
            error = data.get("error") or data.get("code")
            if error:
                return str(error)[:200]
        return response.text[:200]
    except ValueError:
        return response.text[:200] if response.text else "(empty body)"


def select_image_url(payload: Any, variant: str = IMAGE_VARIANT) -> str:
    """Pick the first candidate's variant URL from a search response.

    Raises NextwikiError(code="image_error") when there is no candidate or
    the candidate lacks the variant.
    """
    photos = payload.get("photos") if isinstance(payload, dict) else None
    if not isinstance(photos, list):
        raise NextwikiError("image_error", "Image response has no 'photos' list")
    if not photos:
        raise NextwikiError("image_error", "No image found for this topic")

    first = photos[0]
    src = first.get("src") if isinstance(first, dict) else None
    url = src.get(variant) if isinstance(src, dict) else None
    if not isinstance(url, str) or not url:
        raise NextwikiError(
            "image_error", f"First image candidate has no '{variant}' variant"
        )
    return url


async def fetch_image(
    client: httpx.AsyncClient, config: ImageEndpointConfig, topic: str
) -> str:
    """Fetch the image reference for a topic.

    Returns the image URL. Raises NextwikiError on any failure.
    """
    headers = {"Authorization": config.api_key}
    params = {"query": topic, "per_page": 1}

    try:
        response = await client.get(config.search_url, params=params, headers=headers)
    except httpx.TimeoutException as e:
        raise NextwikiError("network_error", f"Could not generate image: request timed out: {e}")
    except httpx.RequestError as e:
        raise NextwikiError("network_error", f"Could not generate image: connection failed: {e}")

    if not response.is_success:
        logger.error("Image endpoint returned HTTP %d for %r", response.status_code, topic)
        raise NextwikiError(
            "provider_error",
            f"Could not generate image: HTTP {response.status_code}: {_safe_error_body(response)}",
            status_code=response.status_code,
        )

    try:
        payload = response.json()
    except ValueError:
        raise NextwikiError(
            "image_error",
            f"Could not generate image: non-JSON response: {response.text[:200]}",
        )

    url = select_image_url(payload)
    logger.debug("Image for %r: %s", topic, url)
    return url
