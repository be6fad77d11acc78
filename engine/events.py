"""Subscribe-style callbacks for the orchestrator and the monitoring manager."""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Sequence

LOGGER = logging.getLogger(__name__)


class EventEmitter:
    """Named callback lists; a listener that raises is logged and skipped."""

    def __init__(self, events: Sequence[str]) -> None:
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in events}

    @property
    def events(self) -> List[str]:
        return list(self._listeners)

    def on(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        if event not in self._listeners:
            raise ValueError(
                f"Unknown event {event!r}; expected one of {', '.join(self._listeners)}"
            )
        listeners = self._listeners[event]
        listeners.append(callback)

        def off() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return off

    def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:  # noqa: BLE001 - a broken listener must not stop a run
                LOGGER.exception("Listener for %r failed", event)
