from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Set

from .clients import ImageGenerationClient
from .observability import GenerationError, log_generation_outcome
from .schemas import GenerationEvent, GenerationState
from .store import DishStateStore

logger = logging.getLogger(__name__)


class GenerationScheduler:
    """
    Turns visibility notifications and retries into image generation calls.

    The dish's Pending state is the only guard against duplicate requests: a
    request is started only by the call that moved the dish into Pending.
    """

    def __init__(
        self,
        store: DishStateStore,
        client: ImageGenerationClient,
        *,
        max_concurrency: int = 0,
    ) -> None:
        self._store = store
        self._client = client
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(max_concurrency) if max_concurrency > 0 else None
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    def on_dish_visible(self, dish_id: str) -> Optional[asyncio.Task]:
        if self._store.state_of(dish_id) is not GenerationState.NOT_REQUESTED:
            return None
        return self._start(dish_id, GenerationEvent.VISIBLE)

    def retry(self, dish_id: str) -> Optional[asyncio.Task]:
        if self._store.state_of(dish_id) is not GenerationState.FAILED:
            return None
        return self._start(dish_id, GenerationEvent.RETRY)

    def task_for(self, dish_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(dish_id)

    def in_flight(self) -> Set[str]:
        return {dish_id for dish_id, task in self._tasks.items() if not task.done()}

    async def drain(self) -> None:
        """Wait for every generation currently in flight."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def cancel_all(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()

    def _start(self, dish_id: str, event: GenerationEvent) -> Optional[asyncio.Task]:
        dish = self._store.get(dish_id)
        if dish is None or not self._store.transition(dish_id, event):
            return None

        task = asyncio.get_running_loop().create_task(
            self._generate(dish_id, dish.english_translation, dish.description),
            name=f"generate:{dish_id}",
        )
        self._tasks[dish_id] = task
        task.add_done_callback(lambda t, dish_id=dish_id: self._forget(dish_id, t))
        return task

    def _forget(self, dish_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(dish_id) is task:
            del self._tasks[dish_id]

    async def _generate(self, dish_id: str, name: str, description: str) -> None:
        started = time.monotonic()
        try:
            if self._semaphore is not None:
                async with self._semaphore:
                    image_ref = await self._client.generate(name, description)
            else:
                image_ref = await self._client.generate(name, description)
        except asyncio.CancelledError:
            raise
        except GenerationError as e:
            self._finish(dish_id, started, error=str(e))
            return
        except Exception as e:
            logger.exception("Unexpected error generating image for dish %s", dish_id)
            self._finish(dish_id, started, error=f"unexpected: {e}")
            return

        if not image_ref:
            self._finish(dish_id, started, error="empty image reference")
            return
        self._finish(dish_id, started, image_ref=image_ref)

    def _finish(
        self,
        dish_id: str,
        started: float,
        *,
        image_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        duration_ms = int((time.monotonic() - started) * 1000)
        if error is None:
            applied = self._store.transition(dish_id, GenerationEvent.SUCCEEDED, image_ref=image_ref)
        else:
            applied = self._store.transition(dish_id, GenerationEvent.FAILED)

        if not applied:
            # The collection was replaced while the call was in flight.
            log_generation_outcome(dish_id, "discarded", duration_ms)
            return
        log_generation_outcome(dish_id, "failed" if error else "succeeded", duration_ms, error=error)
