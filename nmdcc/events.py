from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum


class HubEvent(str, Enum):
    """Event channels a client front end can subscribe to.

    Payloads (positional arguments passed to handlers):

    - CONNECTED, CLOSED: none
    - SYSTEM_MESSAGE(text), DEBUG(text)
    - PUBLIC_MESSAGE(sender, text), PRIVATE_MESSAGE(sender, text)
    - USER_JOINED(nick), USER_DEPARTED(nick), USER_UPDATED(raw_profile_line)
    - STATE_CHANGED(phase), HUB_NAME_CHANGED(name)
    - USER_COMMAND(type, context_bitmask, title, body)
    - CONNECT_TO_ME(raw), SEARCH_RESULT(raw)
    """

    CONNECTED = "connected"
    SYSTEM_MESSAGE = "system_message"
    PUBLIC_MESSAGE = "public_message"
    PRIVATE_MESSAGE = "private_message"
    USER_JOINED = "user_joined"
    USER_DEPARTED = "user_departed"
    USER_UPDATED = "user_updated"
    DEBUG = "debug"
    CLOSED = "closed"
    STATE_CHANGED = "state_changed"
    HUB_NAME_CHANGED = "hub_name_changed"
    USER_COMMAND = "user_command"
    CONNECT_TO_ME = "connect_to_me"
    SEARCH_RESULT = "search_result"


Handler = Callable[..., None]


class EventHub:
    """Registry of handlers per HubEvent, owned by one HubSession."""

    def __init__(self) -> None:
        self.log = logging.getLogger("nmdcc.events")
        self._lock = threading.Lock()
        self._handlers: dict[HubEvent, list[Handler]] = {}

    def subscribe(self, event: HubEvent, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event``; returns a callable that removes it."""
        event = HubEvent(event)
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)
        return lambda: self.unsubscribe(event, handler)

    def unsubscribe(self, event: HubEvent, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(HubEvent(event))
            if handlers and handler in handlers:
                handlers.remove(handler)

    def emit(self, event: HubEvent, *args) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                self.log.exception("Event handler failed event=%s", event.value)
