"""Cycle observers: where scheduler events go instead of an event emitter."""

from __future__ import annotations

import logging
from typing import Iterable

from trading.collaborators import (
    EVENT_ERROR,
    EVENT_TRADE,
    EVENT_WARNING,
    CycleEvent,
    CycleObserver,
)

logger = logging.getLogger(__name__)

_LEVELS = {
    EVENT_WARNING: logging.WARNING,
    EVENT_ERROR: logging.ERROR,
}


class LoggingObserver:
    def __init__(self, name: str = "trading.events") -> None:
        self._log = logging.getLogger(name)

    def on_event(self, event: CycleEvent) -> None:
        level = _LEVELS.get(event.level, logging.INFO)
        fields = " ".join(f"{key}={value}" for key, value in sorted(event.data.items()))
        prefix = "TRADE " if event.level == EVENT_TRADE else ""
        self._log.log(
            level,
            "%s%s %s%s",
            prefix,
            event.name,
            fields,
            f" err={event.error}" if event.error is not None else "",
        )


class ObserverGroup:
    """Fans one event out to several observers. A failing observer is logged and skipped."""

    def __init__(self, observers: Iterable[CycleObserver] = ()) -> None:
        self._observers: list[CycleObserver] = list(observers)

    def add(self, observer: CycleObserver) -> None:
        self._observers.append(observer)

    def __len__(self) -> int:
        return len(self._observers)

    def on_event(self, event: CycleEvent) -> None:
        for observer in self._observers:
            try:
                observer.on_event(event)
            except Exception:
                logger.exception("OBSERVER_FAIL observer=%s event=%s", type(observer).__name__, event.name)
