"""
Menu-parsing and image-generation clients.

The pipeline only depends on the two protocols below. Gemini-backed
implementations run inside this service (behind the proxy endpoints); the
HTTP implementations talk to a deployed proxy instead.
"""

from __future__ import annotations

import base64
import logging
import os
import uuid
from typing import Dict, List, Optional, Protocol

import httpx
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .gemini_client import GeminiClient
from .image_store import ImageStore
from .imaging import to_data_url
from .observability import AnalysisError, GenerationError
from .schemas import MenuAnalysisResponse, PhotoStyle, RawDishRecord

logger = logging.getLogger(__name__)

IMAGE_ASPECT_RATIO = os.getenv("IMAGE_ASPECT_RATIO", "4:3")

try:
    PROXY_TIMEOUT_SECONDS = float(os.getenv("PROXY_TIMEOUT_SECONDS", "120"))
except ValueError:
    PROXY_TIMEOUT_SECONDS = 120.0

STYLE_CLAUSES: Dict[PhotoStyle, str] = {
    PhotoStyle.RUSTIC: (
        "Rustic and dark aesthetic, moody lighting, wood textures, dramatic shadows, "
        "professional food styling, high resolution, 8k."
    ),
    PhotoStyle.BRIGHT: (
        "Bright and modern aesthetic, soft natural daylight, professional food styling, "
        "high resolution, 8k."
    ),
    PhotoStyle.SOCIAL: (
        "Top-down flat lay, vibrant colors, trendy social media styling, "
        "high resolution, 8k."
    ),
}


def build_dish_prompt(subject_name: str, description: str, style: PhotoStyle = PhotoStyle.BRIGHT) -> str:
    return (
        f"Realistic, appetizing professional photography of {subject_name}. "
        f"Visual description: {description}. {STYLE_CLAUSES[style]}"
    )


class MenuParsingClient(Protocol):
    async def parse(self, image: bytes, mime_type: str = "image/jpeg") -> List[RawDishRecord]:
        """Extract dish records from a menu photo. Raises AnalysisError."""
        ...


class ImageGenerationClient(Protocol):
    async def generate(self, subject_name: str, description: str) -> str:
        """Return an image reference (URL or data URL). Raises GenerationError."""
        ...


# -----------------------------------------------------------------------------
# Gemini-backed
# -----------------------------------------------------------------------------
class GeminiMenuParser:
    def __init__(self, gemini: GeminiClient) -> None:
        self._gemini = gemini

    async def parse(self, image: bytes, mime_type: str = "image/jpeg") -> List[RawDishRecord]:
        try:
            result = await self._gemini.parse_menu_from_image_async(image_bytes=image, mime_type=mime_type)
        except ValidationError as e:
            raise AnalysisError(f"Menu payload has the wrong shape: {e.error_count()} error(s)") from e
        except Exception as e:
            raise AnalysisError(f"Menu analysis failed: {e}") from e
        return list(result.dishes)


class GeminiImageGenerator:
    """
    Generates dish photos with Gemini.

    Without a store the reference is a ``data:`` URL. With a store the bytes
    are kept under ``{key_prefix}/<random>.png`` and the reference is the
    asset URL served by ``GET /assets/gen/...``.
    """

    def __init__(
        self,
        gemini: GeminiClient,
        *,
        style: PhotoStyle = PhotoStyle.BRIGHT,
        image_store: Optional[ImageStore] = None,
        key_prefix: str = "",
        public_base_url: str = "",
    ) -> None:
        self._gemini = gemini
        self.style = style
        self._store = image_store
        self._key_prefix = key_prefix.strip("/")
        self._public_base_url = public_base_url.rstrip("/")

    async def generate(self, subject_name: str, description: str) -> str:
        prompt = build_dish_prompt(subject_name, description, self.style)
        try:
            image_bytes = await self._gemini.generate_food_image_bytes_async(
                prompt=prompt,
                aspect_ratio=IMAGE_ASPECT_RATIO,
            )
        except Exception as e:
            raise GenerationError(f"Image generation failed for {subject_name!r}: {e}") from e

        if not image_bytes:
            raise GenerationError(f"Image model returned an empty image for {subject_name!r}")

        if self._store is None:
            return to_data_url(image_bytes)

        key = "/".join(p for p in (self._key_prefix, f"{uuid.uuid4().hex}.png") if p)
        try:
            self._store.put(f"gen/{key}", image_bytes, content_type="image/png")
        except (BotoCoreError, ClientError) as e:
            raise GenerationError(f"Storing the image for {subject_name!r} failed: {e}") from e
        return f"{self._public_base_url}/assets/gen/{key}"


# -----------------------------------------------------------------------------
# Proxy-backed
# -----------------------------------------------------------------------------
class HttpMenuParser:
    def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None) -> None:
        self._url = f"{base_url.rstrip('/')}/api/parse-menu"
        self._client = client

    async def parse(self, image: bytes, mime_type: str = "image/jpeg") -> List[RawDishRecord]:
        payload = {"base64Image": base64.b64encode(image).decode("ascii")}
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=PROXY_TIMEOUT_SECONDS) as client:
                    resp = await client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise AnalysisError(f"Menu analysis service unreachable: {e}") from e

        if not resp.is_success:
            raise AnalysisError(f"Menu analysis service returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise AnalysisError("Menu analysis service returned a non-JSON body") from e

        try:
            return list(MenuAnalysisResponse.model_validate(data).dishes)
        except ValidationError as e:
            raise AnalysisError(f"Menu payload has the wrong shape: {e.error_count()} error(s)") from e


class HttpImageGenerator:
    def __init__(
        self,
        base_url: str,
        *,
        style: PhotoStyle = PhotoStyle.BRIGHT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/api/generate-image"
        self.style = style
        self._client = client

    async def generate(self, subject_name: str, description: str) -> str:
        payload = {"dishName": subject_name, "description": description, "style": self.style.value}
        try:
            if self._client is not None:
                resp = await self._client.post(self._url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=PROXY_TIMEOUT_SECONDS) as client:
                    resp = await client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise GenerationError(f"Image service unreachable: {e}") from e

        if not resp.is_success:
            raise GenerationError(f"Image service returned {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError("Image service returned a non-JSON body") from e

        image_url = data.get("imageUrl") if isinstance(data, dict) else None
        if not isinstance(image_url, str) or not image_url.strip():
            raise GenerationError("Image service response has no imageUrl")
        return image_url
