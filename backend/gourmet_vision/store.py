"""Ordered dish collection for one scan, with per-dish generation state."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Literal, Optional, Tuple, Union

from .observability import InvalidTransition, log_invalid_transition
from .schemas import Dish, GenerationEvent, GenerationState

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[Tuple[GenerationState, GenerationEvent], GenerationState] = {
    (GenerationState.NOT_REQUESTED, GenerationEvent.VISIBLE): GenerationState.PENDING,
    (GenerationState.PENDING, GenerationEvent.SUCCEEDED): GenerationState.SUCCEEDED,
    (GenerationState.PENDING, GenerationEvent.FAILED): GenerationState.FAILED,
    (GenerationState.FAILED, GenerationEvent.RETRY): GenerationState.PENDING,
}

ChangeKind = Literal["replaced", "updated", "cleared"]


@dataclass(frozen=True)
class StoreChange:
    kind: ChangeKind
    dish: Optional[Dish] = None


Listener = Callable[[StoreChange], None]


class DishStateStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._order: List[str] = []
        self._dishes: Dict[str, Dish] = {}
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._order)

    def __contains__(self, dish_id: object) -> bool:
        return dish_id in self._dishes

    def replace_all(self, dishes: Iterable[Dish]) -> None:
        """Install a fresh collection; every dish starts NotRequested with no image."""
        order: List[str] = []
        fresh: Dict[str, Dish] = {}
        for d in dishes:
            if d.id in fresh:
                raise ValueError(f"duplicate dish id {d.id!r}")
            fresh[d.id] = d.model_copy(
                update={"generation_state": GenerationState.NOT_REQUESTED, "image_ref": None}
            )
            order.append(d.id)

        with self._lock:
            self._order = order
            self._dishes = fresh
        self._emit(StoreChange("replaced"))

    def clear(self) -> None:
        with self._lock:
            self._order = []
            self._dishes = {}
        self._emit(StoreChange("cleared"))

    def get(self, dish_id: str) -> Optional[Dish]:
        with self._lock:
            dish = self._dishes.get(dish_id)
            return dish.model_copy() if dish is not None else None

    def state_of(self, dish_id: str) -> Optional[GenerationState]:
        with self._lock:
            dish = self._dishes.get(dish_id)
            return dish.generation_state if dish is not None else None

    def dishes(self) -> List[Dish]:
        with self._lock:
            return [self._dishes[i].model_copy() for i in self._order]

    def transition(
        self,
        dish_id: str,
        event: Union[GenerationEvent, str],
        image_ref: Optional[str] = None,
    ) -> bool:
        """
        Apply one generation event to a dish.

        Returns True when the dish moved. An absent dish or an illegal event is
        an InvalidTransition condition: it is logged and False is returned.
        """
        event = GenerationEvent(event)
        with self._lock:
            dish = self._dishes.get(dish_id)
            if dish is None:
                condition = InvalidTransition(dish_id, event.value, None)
            else:
                target = _TRANSITIONS.get((dish.generation_state, event))
                if target is None:
                    condition = InvalidTransition(dish_id, event.value, dish.generation_state.value)
                elif target is GenerationState.SUCCEEDED and not image_ref:
                    # Success needs an image.
                    condition = InvalidTransition(dish_id, event.value, dish.generation_state.value)
                else:
                    condition = None
                    updated = dish.model_copy(
                        update={
                            "generation_state": target,
                            "image_ref": image_ref if target is GenerationState.SUCCEEDED else None,
                        }
                    )
                    self._dishes[dish_id] = updated

        if condition is not None:
            log_invalid_transition(condition)
            return False

        self._emit(StoreChange("updated", updated.model_copy()))
        return True

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _emit(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed on %s", change.kind)
