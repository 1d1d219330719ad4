from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from pydantic import BaseModel, Field

SESSION_IDLE = "session.idle"


class HostEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    session_id: str | None = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A synchronous, in-order event bus between the host runtime and the loop.

    Subscribers run one at a time on the emitting thread. Their errors
    propagate to the emitter; a failed state write must not go unnoticed.
    """

    def __init__(self):
        self._subscribers: List[Callable[[HostEvent], None]] = []

    def subscribe(self, callback: Callable[[HostEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def emit(self, event_type: str, session_id: str | None = None, payload: Dict[str, Any] | None = None) -> HostEvent:
        """Construct and broadcast a HostEvent to all subscribers."""
        event = HostEvent(
            event_type=event_type,
            session_id=session_id,
            payload=payload or {},
        )

        for subscriber in self._subscribers:
            subscriber(event)

        return event
