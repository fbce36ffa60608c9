"""
Session API endpoints.

Endpoints:
- POST   /api/v1/sessions                               -> Create a session
- GET    /api/v1/sessions/{id}                          -> Session snapshot
- PATCH  /api/v1/sessions/{id}/ui                       -> Tab / camera flags
- POST   /api/v1/sessions/{id}/scan                     -> Analyze a menu photo
- POST   /api/v1/sessions/{id}/dishes/{dish_id}/visible -> Card entered the viewport
- POST   /api/v1/sessions/{id}/viewport                 -> Viewport + card geometry
- POST   /api/v1/sessions/{id}/dishes/{dish_id}/retry   -> Retry a failed image
- POST   /api/v1/sessions/{id}/reset                    -> Clear the menu
- DELETE /api/v1/sessions/{id}                          -> Drop the session
- GET    /api/v1/sessions/{id}/events                   -> SSE card updates
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import StreamingResponse

from . import services
from .imaging import InvalidImageError, decode_base64_image, prepare_menu_image
from .observability import AnalysisError, ApiKeyMissingError, ErrorCode, ScanInProgressError
from .schemas import Dish, ScanRequest, SessionView, UiStateUpdate, ViewportReport, ViewportResult
from .session import ScanSession
from .visibility import Rect

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sessions")

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
try:
    _SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "10"))
except ValueError:
    _SSE_HEARTBEAT_SECONDS = 10.0

try:
    _MAX_UPLOAD_IMAGE_BYTES = int(os.getenv("MAX_UPLOAD_IMAGE_BYTES", str(20 * 1024 * 1024)))
except ValueError:
    _MAX_UPLOAD_IMAGE_BYTES = 20 * 1024 * 1024


def _http_error(status_code: int, code: ErrorCode, message: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code.value, "message": message})


def _get_session(session_id: str) -> ScanSession:
    session = services.get_registry().get(session_id)
    if session is None:
        raise _http_error(404, ErrorCode.SESSION_NOT_FOUND, "Session not found")
    return session


def _get_dish(session: ScanSession, dish_id: str) -> Dish:
    dish = session.store.get(dish_id)
    if dish is None:
        raise _http_error(404, ErrorCode.DISH_NOT_FOUND, "Dish not found")
    return dish


async def _maybe_wait(task: Optional[asyncio.Task], wait: bool) -> None:
    if task is None or not wait:
        return
    # A dropped request must not cancel the generation itself.
    await asyncio.shield(task)


@router.post("", response_model=SessionView)
async def create_session() -> SessionView:
    try:
        session = services.get_registry().create()
    except ApiKeyMissingError as e:
        raise _http_error(500, e.error_code, "API key not configured")
    logger.info("Created session %s", session.session_id)
    return session.view()


@router.get("/{session_id}", response_model=SessionView)
async def get_session(session_id: str) -> SessionView:
    return _get_session(session_id).view()


@router.patch("/{session_id}/ui", response_model=SessionView)
async def update_ui(session_id: str, req: UiStateUpdate) -> SessionView:
    session = _get_session(session_id)
    session.update_ui(active_tab=req.active_tab, is_camera_open=req.is_camera_open)
    return session.view()


@router.post("/{session_id}/scan", response_model=SessionView)
async def scan_menu(session_id: str, req: ScanRequest) -> SessionView:
    session = _get_session(session_id)

    try:
        image_bytes, mime_type = decode_base64_image(req.image_base64)
    except InvalidImageError as e:
        raise _http_error(400, ErrorCode.INVALID_IMAGE_BASE64, str(e))
    if len(image_bytes) > _MAX_UPLOAD_IMAGE_BYTES:
        raise _http_error(413, ErrorCode.IMAGE_TOO_LARGE, "Menu image is too large")
    try:
        image_bytes, mime_type = prepare_menu_image(image_bytes, mime_type)
    except InvalidImageError as e:
        raise _http_error(400, ErrorCode.INVALID_IMAGE_BASE64, str(e))

    try:
        await session.scan(image_bytes, mime_type)
    except ScanInProgressError as e:
        raise _http_error(409, e.error_code, str(e))
    except AnalysisError as e:
        raise _http_error(502, e.error_code, session.state.error or "Menu analysis failed")

    return session.view()


@router.post("/{session_id}/dishes/{dish_id}/visible", response_model=Dish)
async def dish_visible(session_id: str, dish_id: str, wait: bool = Query(default=False)) -> Dish:
    session = _get_session(session_id)
    _get_dish(session, dish_id)
    await _maybe_wait(session.dish_visible(dish_id), wait)
    return _get_dish(session, dish_id)


@router.post("/{session_id}/viewport", response_model=ViewportResult)
async def report_viewport(session_id: str, req: ViewportReport) -> ViewportResult:
    session = _get_session(session_id)
    viewport = Rect(req.viewport.x, req.viewport.y, req.viewport.width, req.viewport.height)
    cards = {dish_id: Rect(r.x, r.y, r.width, r.height) for dish_id, r in req.cards.items()}
    fired = session.viewport(viewport, cards)
    return ViewportResult(fired=[str(h) for h in fired])


@router.post("/{session_id}/dishes/{dish_id}/retry", response_model=Dish)
async def retry_dish(session_id: str, dish_id: str, wait: bool = Query(default=False)) -> Dish:
    session = _get_session(session_id)
    _get_dish(session, dish_id)
    await _maybe_wait(session.retry(dish_id), wait)
    return _get_dish(session, dish_id)


@router.post("/{session_id}/reset", response_model=SessionView)
async def reset_session(session_id: str) -> SessionView:
    session = _get_session(session_id)
    session.reset()
    return session.view()


@router.delete("/{session_id}")
async def delete_session(session_id: str) -> dict:
    if not services.get_registry().discard(session_id):
        raise _http_error(404, ErrorCode.SESSION_NOT_FOUND, "Session not found")
    return {"status": "ok", "session_id": session_id}


@router.get("/{session_id}/events")
async def stream_session_events(session_id: str) -> StreamingResponse:
    """Stream SSE events for a session: state, menu_data, dish_update, heartbeat."""
    session = _get_session(session_id)
    return StreamingResponse(
        session.events(heartbeat_s=_SSE_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
