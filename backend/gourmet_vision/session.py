"""
Per-browser pipeline instances.

A ScanSession owns one DishStateStore with its VisibilityTrigger and
GenerationScheduler, the small UI state the page needs, and the SSE queues that
carry card re-renders back to the page.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import AsyncGenerator, Callable, Dict, Hashable, List, Mapping, Optional

from .clients import ImageGenerationClient, MenuParsingClient
from .observability import (
    AnalysisError,
    ScanContext,
    ScanInProgressError,
    log_scan_done,
    log_scan_error,
    log_scan_start,
)
from .scheduler import GenerationScheduler
from .schemas import AppStateView, Dish, SessionView
from .sse import sse_event
from .store import DishStateStore, StoreChange
from .visibility import Rect, VisibilityConfig, VisibilityTrigger

logger = logging.getLogger(__name__)

SCAN_FAILED_MESSAGE = "Failed to analyze the menu. Please try a clearer image."


@dataclass
class AppState:
    is_analyzing: bool = False
    active_tab: str = "photos"
    is_camera_open: bool = False
    has_menu_image: bool = False
    error: Optional[str] = None

    def view(self) -> AppStateView:
        return AppStateView(
            is_analyzing=self.is_analyzing,
            active_tab=self.active_tab,
            is_camera_open=self.is_camera_open,
            has_menu_image=self.has_menu_image,
            error=self.error,
        )


class ScanSession:
    def __init__(
        self,
        session_id: str,
        parser: MenuParsingClient,
        generator: ImageGenerationClient,
        *,
        visibility: Optional[VisibilityConfig] = None,
        max_concurrency: int = 0,
    ) -> None:
        self.session_id = session_id
        self.state = AppState()
        self.store = DishStateStore()
        self.trigger = VisibilityTrigger(visibility or VisibilityConfig())
        self.scheduler = GenerationScheduler(self.store, generator, max_concurrency=max_concurrency)
        self._parser = parser
        self._queues: List[asyncio.Queue] = []
        self._seq = 0
        self._closed = False
        self._unsubscribe = self.store.subscribe(self._on_store_change)

    def view(self) -> SessionView:
        return SessionView(session_id=self.session_id, state=self.state.view(), dishes=self.store.dishes())

    # -------------------------------------------------------------------------
    # Scan
    # -------------------------------------------------------------------------
    async def scan(self, image: bytes, mime_type: str = "image/jpeg") -> List[Dish]:
        """
        Analyze a menu photo and install the resulting dishes.

        A failed analysis sets the retry banner, leaves the current dishes in
        place and re-raises AnalysisError.
        """
        if self.state.is_analyzing:
            raise ScanInProgressError(f"session {self.session_id} is already analyzing a menu")

        ctx = ScanContext(self.session_id, uuid.uuid4().hex[:12], image_bytes=len(image))
        log_scan_start(ctx, mime_type=mime_type)

        self.state.is_analyzing = True
        self.state.error = None
        self.state.active_tab = "photos"
        self.state.is_camera_open = False
        self.state.has_menu_image = True
        self._publish_state()

        try:
            started = time.monotonic()
            records = await self._parser.parse(image, mime_type)
            ctx.analysis_ms = int((time.monotonic() - started) * 1000)

            dishes = [Dish.from_record(f"dish-{i}-{ctx.scan_token}", r) for i, r in enumerate(records)]
            self.store.replace_all(dishes)
        except AnalysisError as e:
            self.state.error = SCAN_FAILED_MESSAGE
            log_scan_error(ctx, e.error_code, str(e), exc=e)
            ctx.finish("failed")
            log_scan_done(ctx)
            raise
        finally:
            self.state.is_analyzing = False
            self._publish_state()

        ctx.finish("completed", dish_count=len(dishes))
        log_scan_done(ctx)
        return self.store.dishes()

    # -------------------------------------------------------------------------
    # Visibility / retry
    # -------------------------------------------------------------------------
    def dish_visible(self, dish_id: str) -> Optional[asyncio.Task]:
        """A card reported itself in view. Returns the generation task if one started."""
        if not self.trigger.notify_visible(dish_id):
            return None
        return self.scheduler.task_for(dish_id)

    def viewport(self, viewport: Rect, cards: Mapping[Hashable, Rect]) -> List[Hashable]:
        return self.trigger.observe(viewport, cards)

    def retry(self, dish_id: str) -> Optional[asyncio.Task]:
        return self.scheduler.retry(dish_id)

    def update_ui(self, *, active_tab: Optional[str] = None, is_camera_open: Optional[bool] = None) -> None:
        if active_tab is not None:
            self.state.active_tab = active_tab
        if is_camera_open is not None:
            self.state.is_camera_open = is_camera_open
        self._publish_state()

    def reset(self) -> None:
        self.state.error = None
        self.state.has_menu_image = False
        self.state.active_tab = "photos"
        self.store.clear()
        self._publish_state()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.scheduler.cancel_all()
        self.trigger.unwatch_all()
        self._unsubscribe()
        for q in self._queues:
            q.put_nowait(None)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------
    def _on_store_change(self, change: StoreChange) -> None:
        self.trigger.sync(self.store.dishes(), self.scheduler.on_dish_visible)
        if change.kind == "updated" and change.dish is not None:
            self._publish("dish_update", {"session_id": self.session_id, "dish": change.dish})
        else:
            self._publish("menu_data", {"session_id": self.session_id, "dishes": self.store.dishes()})

    def _publish_state(self) -> None:
        self._publish("state", {"session_id": self.session_id, "state": self.state.view()})

    def _publish(self, event: str, data: Dict) -> None:
        if not self._queues:
            return
        self._seq += 1
        frame = sse_event(event, _jsonable(data), event_id=str(self._seq))
        for q in self._queues:
            q.put_nowait(frame)

    async def events(self, heartbeat_s: float = 10.0) -> AsyncGenerator[str, None]:
        """SSE frames for this session: a snapshot first, then every change."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            yield sse_event("state", _jsonable({"session_id": self.session_id, "state": self.state.view()}))
            yield sse_event("menu_data", _jsonable({"session_id": self.session_id, "dishes": self.store.dishes()}))
            while not self._closed:
                try:
                    frame = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except asyncio.TimeoutError:
                    yield sse_event("heartbeat", {"ts": time.time()})
                    continue
                if frame is None:
                    return
                yield frame
        finally:
            if queue in self._queues:
                self._queues.remove(queue)


def _jsonable(data: Dict) -> Dict:
    out: Dict = {}
    for k, v in data.items():
        if isinstance(v, list):
            out[k] = [x.model_dump(mode="json", by_alias=True) if hasattr(x, "model_dump") else x for x in v]
        elif hasattr(v, "model_dump"):
            out[k] = v.model_dump(mode="json", by_alias=True)
        else:
            out[k] = v
    return out


class SessionRegistry:
    def __init__(
        self,
        factory: Callable[[str], ScanSession],
        max_sessions: int = 500,
        *,
        on_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._factory = factory
        self._max_sessions = max(1, max_sessions)
        self._on_close = on_close
        self._sessions: "OrderedDict[str, ScanSession]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self) -> ScanSession:
        session_id = uuid.uuid4().hex
        session = self._factory(session_id)
        self._sessions[session_id] = session
        while len(self._sessions) > self._max_sessions:
            old_id, old = self._sessions.popitem(last=False)
            logger.info("Evicting session %s", old_id)
            self._teardown(old)
        return session

    def get(self, session_id: str) -> Optional[ScanSession]:
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
        return session

    def discard(self, session_id: str) -> bool:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        self._teardown(session)
        return True

    def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            self._teardown(session)

    def _teardown(self, session: ScanSession) -> None:
        session.close()
        if self._on_close is not None:
            self._on_close(session.session_id)
