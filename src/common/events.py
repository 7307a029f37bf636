from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class SessionCreatedEvent:
    session_id: str
    profile_name: str


@dataclass(frozen=True, slots=True)
class SessionSelectedEvent:
    session_id: str


@dataclass(frozen=True, slots=True)
class SessionDeletedEvent:
    session_id: str
    was_active: bool


@dataclass(frozen=True, slots=True)
class SessionTouchedEvent:
    session_id: str


@dataclass(frozen=True, slots=True)
class MessageAppendedEvent:
    session_id: str
    message_id: str
    role: str


@dataclass(frozen=True, slots=True)
class TitleAssignedEvent:
    session_id: str
    title: str


@dataclass(frozen=True, slots=True)
class RuntimeChangedEvent:
    status: str
    is_sending: bool


@dataclass(frozen=True, slots=True)
class StateRestoredEvent:
    sessions: int
    active_session_id: str | None


Event: TypeAlias = (
    SessionCreatedEvent
    | SessionSelectedEvent
    | SessionDeletedEvent
    | SessionTouchedEvent
    | MessageAppendedEvent
    | TitleAssignedEvent
    | RuntimeChangedEvent
    | StateRestoredEvent
)
EventCallback: TypeAlias = Callable[[Event], None]


class EventEmitter:
    def __init__(self, callback: EventCallback | None = None):
        self._callbacks: list[EventCallback] = []
        if callback is not None:
            self._callbacks.append(callback)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def emit(self, event: Event) -> None:
        for callback in list(self._callbacks):
            callback(event)
