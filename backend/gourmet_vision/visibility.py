"""
One-shot visibility notifications for dish cards.

Cards are reported either one at a time by a native observer in the browser
(``notify_visible``) or as raw geometry that is tested here (``observe``).
Either way a watched card fires its callback once and is then unwatched.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, Iterable, List, Mapping

from .schemas import Dish, GenerationState

logger = logging.getLogger(__name__)

Callback = Callable[[Hashable], None]


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


@dataclass(frozen=True)
class VisibilityConfig:
    proximity_margin: float = 100.0
    visible_fraction: float = 0.1

    @classmethod
    def from_env(cls) -> VisibilityConfig:
        fraction = _env_float("VISIBILITY_VISIBLE_FRACTION", 0.1)
        return cls(
            proximity_margin=max(0.0, _env_float("VISIBILITY_PROXIMITY_MARGIN", 100.0)),
            visible_fraction=max(0.0, min(1.0, fraction)),
        )


@dataclass(frozen=True)
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def expanded(self, margin: float) -> Rect:
        return Rect(self.x - margin, self.y - margin, self.width + 2 * margin, self.height + 2 * margin)

    def intersection_area(self, other: Rect) -> float:
        w = min(self.right, other.right) - max(self.x, other.x)
        h = min(self.bottom, other.bottom) - max(self.y, other.y)
        if w <= 0 or h <= 0:
            return 0.0
        return w * h

    def contains_point(self, x: float, y: float) -> bool:
        return self.x <= x <= self.right and self.y <= y <= self.bottom


def visible_ratio(card: Rect, viewport: Rect, margin: float = 0.0) -> float:
    """Share of the card's area inside the viewport grown by ``margin``."""
    root = viewport.expanded(margin)
    if card.area == 0:
        return 1.0 if root.contains_point(card.x, card.y) else 0.0
    return root.intersection_area(card) / card.area


class VisibilityTrigger:
    def __init__(self, config: VisibilityConfig = VisibilityConfig()) -> None:
        self.config = config
        self._watched: Dict[Hashable, Callback] = {}

    def watch(self, handle: Hashable, on_become_visible: Callback) -> None:
        self._watched[handle] = on_become_visible

    def unwatch(self, handle: Hashable) -> None:
        self._watched.pop(handle, None)

    def unwatch_all(self) -> None:
        self._watched.clear()

    def is_watching(self, handle: Hashable) -> bool:
        return handle in self._watched

    def watched(self) -> List[Hashable]:
        return list(self._watched)

    def is_in_view(self, card: Rect, viewport: Rect) -> bool:
        ratio = visible_ratio(card, viewport, self.config.proximity_margin)
        if self.config.visible_fraction <= 0:
            return ratio > 0
        return ratio >= self.config.visible_fraction

    def notify_visible(self, handle: Hashable) -> bool:
        """Fire and forget ``handle``. Returns False if it was not watched."""
        callback = self._watched.pop(handle, None)
        if callback is None:
            return False
        try:
            callback(handle)
        except Exception:
            logger.exception("Visibility callback failed for %s", handle)
        return True

    def observe(self, viewport: Rect, cards: Mapping[Hashable, Rect]) -> List[Hashable]:
        """Fire every watched card that is in view; returns the handles fired."""
        fired: List[Hashable] = []
        for handle, rect in cards.items():
            if handle not in self._watched:
                continue
            if self.is_in_view(rect, viewport) and self.notify_visible(handle):
                fired.append(handle)
        return fired

    def sync(self, dishes: Iterable[Dish], on_become_visible: Callback) -> None:
        """Watch exactly the dishes that are still NotRequested."""
        wanted = set()
        for dish in dishes:
            if dish.generation_state is GenerationState.NOT_REQUESTED:
                wanted.add(dish.id)
                if dish.id not in self._watched:
                    self._watched[dish.id] = on_become_visible

        for handle in list(self._watched):
            if handle not in wanted:
                del self._watched[handle]
