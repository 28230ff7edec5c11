"""Change notifications for pins and photos.

A UI layer subscribes to the events it renders; the acquisition code only
emits them and never knows who listens.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

PIN_CHANGED = "pin_changed"
PIN_DELETED = "pin_deleted"
PHOTO_ADDED = "photo_added"
PHOTO_DELETED = "photo_deleted"
PHOTO_IMAGE_READY = "photo_image_ready"

EVENT_NAMES = frozenset(
    {PIN_CHANGED, PIN_DELETED, PHOTO_ADDED, PHOTO_DELETED, PHOTO_IMAGE_READY}
)

EventHandler = Callable[..., Awaitable[None] | None]


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def on(self, name: str, handler: EventHandler) -> None:
        if name not in EVENT_NAMES:
            raise ValueError(f"Unknown event {name!r}")
        self._handlers.setdefault(name, []).append(handler)

    def off(self, name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def emit(self, name: str, **payload: Any) -> None:
        for handler in list(self._handlers.get(name, ())):
            label = getattr(handler, "__name__", repr(handler))
            try:
                result = handler(**payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logging.exception("Event handler %s for %s failed", label, name)


__all__ = [
    "EventEmitter",
    "EventHandler",
    "EVENT_NAMES",
    "PIN_CHANGED",
    "PIN_DELETED",
    "PHOTO_ADDED",
    "PHOTO_DELETED",
    "PHOTO_IMAGE_READY",
]
