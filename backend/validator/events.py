from __future__ import annotations

from collections import defaultdict
import logging
import threading
from typing import Callable, Literal

from pydantic import BaseModel

logger = logging.getLogger("validator.events")


class SessionStatusChanged(BaseModel):
    kind: Literal["session_status_changed"] = "session_status_changed"
    session_id: str
    from_status: str
    to_status: str
    error: str | None = None


class BeginValidation(BaseModel):
    kind: Literal["begin_validation"] = "begin_validation"
    session_id: str


Event = SessionStatusChanged | BeginValidation
Handler = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe channel.

    Handlers run synchronously on the publishing thread in subscription order. A failing
    handler is logged and does not prevent delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, kind: str, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[kind].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[kind]:
                    self._handlers[kind].remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.kind, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    extra={
                        "event": "event_handler_failed",
                        "event_kind": event.kind,
                        "session_id": event.session_id,
                    },
                )
