"""Lazily built, process-wide clients and the session registry."""

from __future__ import annotations

import logging
import os
from typing import Optional

from .clients import (
    GeminiImageGenerator,
    GeminiMenuParser,
    HttpImageGenerator,
    HttpMenuParser,
    ImageGenerationClient,
    MenuParsingClient,
)
from .gemini_client import GeminiClient
from .image_store import ImageStore
from .observability import ApiKeyMissingError
from .schemas import PhotoStyle
from .session import ScanSession, SessionRegistry
from .visibility import VisibilityConfig

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
_PROXY_BASE_URL = os.getenv("PROXY_BASE_URL", "").strip()
_PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip()
_GENERATED_IMAGE_MODE = os.getenv("GENERATED_IMAGE_MODE", "inline").strip().lower()

try:
    _MAX_CONCURRENT_GENERATIONS = int(os.getenv("MAX_CONCURRENT_GENERATIONS", "0"))
except ValueError:
    _MAX_CONCURRENT_GENERATIONS = 0

try:
    _MAX_SESSIONS = int(os.getenv("MAX_SESSIONS", "500"))
except ValueError:
    _MAX_SESSIONS = 500

try:
    _PHOTO_STYLE = PhotoStyle(os.getenv("PHOTO_STYLE", PhotoStyle.BRIGHT.value).upper())
except ValueError:
    _PHOTO_STYLE = PhotoStyle.BRIGHT

# -----------------------------------------------------------------------------
# Lazy-init clients
# -----------------------------------------------------------------------------
_gemini_client: Optional[GeminiClient] = None
_image_store: Optional[ImageStore] = None
_registry: Optional[SessionRegistry] = None


def get_api_key() -> Optional[str]:
    key = (os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY") or "").strip()
    return key or None


def get_gemini_client() -> GeminiClient:
    global _gemini_client
    if _gemini_client is None:
        api_key = get_api_key()
        if not api_key:
            raise ApiKeyMissingError("API key not configured")
        _gemini_client = GeminiClient(api_key=api_key)
    return _gemini_client


def get_image_store() -> ImageStore:
    global _image_store
    if _image_store is None:
        _image_store = ImageStore()
    return _image_store


def make_menu_parser() -> MenuParsingClient:
    if _PROXY_BASE_URL:
        return HttpMenuParser(_PROXY_BASE_URL)
    return GeminiMenuParser(get_gemini_client())


def make_image_generator(
    *,
    key_prefix: str = "",
    style: PhotoStyle = _PHOTO_STYLE,
) -> ImageGenerationClient:
    if _PROXY_BASE_URL:
        return HttpImageGenerator(_PROXY_BASE_URL, style=style)
    if _GENERATED_IMAGE_MODE == "url":
        return GeminiImageGenerator(
            get_gemini_client(),
            style=style,
            image_store=get_image_store(),
            key_prefix=key_prefix,
            public_base_url=_PUBLIC_BASE_URL,
        )
    return GeminiImageGenerator(get_gemini_client(), style=style)


def make_session(session_id: str) -> ScanSession:
    return ScanSession(
        session_id,
        make_menu_parser(),
        make_image_generator(key_prefix=session_id),
        visibility=VisibilityConfig.from_env(),
        max_concurrency=_MAX_CONCURRENT_GENERATIONS,
    )


def release_session_images(session_id: str) -> None:
    if _image_store is not None:
        _image_store.discard_prefix(f"gen/{session_id}/")


def get_registry() -> SessionRegistry:
    global _registry
    if _registry is None:
        _registry = SessionRegistry(make_session, max_sessions=_MAX_SESSIONS, on_close=release_session_images)
    return _registry
