from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from common.events import (
    EventEmitter,
    MessageAppendedEvent,
    RuntimeChangedEvent,
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionSelectedEvent,
    SessionTouchedEvent,
    StateRestoredEvent,
    TitleAssignedEvent,
)
from common.ids import generate_id, utc_now
from tether.sessions.schema import (
    ChatMessage,
    ChatSession,
    PersistedState,
    ProfileSnapshot,
    Role,
)

logger = logging.getLogger(__name__)


class RequestStatus(str, Enum):
    IDLE = "Idle"
    SENDING = "Sending…"
    RETRYING = "Retrying…"
    DONE = "Done"
    ERROR = "Error"
    STOPPED = "Stopped"


@dataclass(frozen=True, slots=True)
class InFlightRequest:
    request_id: str
    session_id: str

    @classmethod
    def new(cls, session_id: str) -> InFlightRequest:
        return cls(request_id=generate_id(), session_id=session_id)


@dataclass(frozen=True, slots=True)
class LastError:
    kind: str
    message: str


@dataclass(frozen=True, slots=True)
class RuntimeState:
    status: RequestStatus = RequestStatus.IDLE
    is_sending: bool = False
    is_typing: bool = False
    in_flight: InFlightRequest | None = None
    last_error: LastError | None = None


IDLE_RUNTIME = RuntimeState()


class SessionStore:
    """In-memory ordered collection of sessions plus the active-session pointer.

    The store is the only owner of live ``ChatSession`` objects. Every read
    hands out a deep copy, and every mutation goes through a method that emits
    an event on ``self.events`` so observers (persistence, UI) never have to
    poll live fields.
    """

    def __init__(self, events: EventEmitter | None = None):
        self.events = events or EventEmitter()
        self._sessions: list[ChatSession] = []
        self._active_session_id: str | None = None
        self._runtime: RuntimeState = IDLE_RUNTIME

    # reads

    @property
    def sessions(self) -> list[ChatSession]:
        return [s.model_copy(deep=True) for s in self._sessions]

    @property
    def session_ids(self) -> list[str]:
        return [s.id for s in self._sessions]

    @property
    def active_session_id(self) -> str | None:
        return self._active_session_id

    @property
    def active_session(self) -> ChatSession | None:
        if self._active_session_id is None:
            return None
        return self.get_session(self._active_session_id)

    @property
    def runtime(self) -> RuntimeState:
        return self._runtime

    def get_session(self, session_id: str) -> ChatSession | None:
        session = self._find(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def contains(self, session_id: str) -> bool:
        return self._find(session_id) is not None

    def api_transcript(self, session_id: str) -> list[ChatMessage]:
        session = self._find(session_id)
        if session is None:
            return []
        return [m.model_copy() for m in session.api_messages()]

    def history(self) -> list[ChatSession]:
        eligible = [s for s in self._sessions if s.has_assistant_reply()]
        eligible.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [s.model_copy(deep=True) for s in eligible]

    def snapshot(self) -> PersistedState:
        return PersistedState(
            active_session_id=self._active_session_id,
            sessions=self.sessions,
        )

    # session lifecycle

    def begin_session(self, profile_name: str, system_prompt: str) -> ChatSession:
        session = ChatSession(
            profile_snapshot=ProfileSnapshot(profile_name=profile_name, system_prompt=system_prompt)
        )
        self._sessions.append(session)
        self._active_session_id = session.id
        logger.debug(
            f"Began session {session.id} profile={profile_name!r} prompt_len={len(system_prompt)}"
        )
        self.events.emit(SessionCreatedEvent(session_id=session.id, profile_name=profile_name))
        return session.model_copy(deep=True)

    def select_session(self, session_id: str) -> bool:
        if self._find(session_id) is None:
            logger.debug(f"Ignoring select of unknown session {session_id}")
            return False
        self._active_session_id = session_id
        self.reset_runtime()
        logger.debug(f"Selected session {session_id}")
        self.events.emit(SessionSelectedEvent(session_id=session_id))
        return True

    def delete_session(self, session_id: str) -> bool:
        was_active = self._active_session_id == session_id
        session = self._find(session_id)
        if session is None:
            logger.debug(f"Ignoring delete of unknown session {session_id}")
            return False

        self._sessions.remove(session)
        if was_active:
            self._active_session_id = None
            self.reset_runtime()
        logger.info(f"Deleted session {session_id} (active={was_active})")
        self.events.emit(SessionDeletedEvent(session_id=session_id, was_active=was_active))
        return was_active

    # session mutation

    def touch(self, session_id: str) -> bool:
        session = self._find(session_id)
        if session is None:
            return False
        session.last_activity_at = utc_now()
        self.events.emit(SessionTouchedEvent(session_id=session_id))
        return True

    def append_message(self, session_id: str, role: Role, content: str) -> ChatMessage | None:
        session = self._find(session_id)
        if session is None:
            logger.warning(f"Dropping {role.value} message for missing session {session_id}")
            return None
        message = ChatMessage(role=role, content=content)
        session.messages.append(message)
        session.last_activity_at = max(message.created_at, session.last_activity_at)
        self.events.emit(
            MessageAppendedEvent(session_id=session_id, message_id=message.id, role=role.value)
        )
        return message.model_copy()

    def assign_title(self, session_id: str, title: str) -> bool:
        session = self._find(session_id)
        if session is None or session.title is not None:
            return False
        session.title = title
        session.title_generated_at = utc_now()
        logger.debug(f"Assigned title {title!r} to session {session_id}")
        self.events.emit(TitleAssignedEvent(session_id=session_id, title=title))
        return True

    # runtime-only state

    def update_runtime(self, **changes) -> RuntimeState:
        self._runtime = replace(self._runtime, **changes)
        self.events.emit(
            RuntimeChangedEvent(
                status=self._runtime.status.value, is_sending=self._runtime.is_sending
            )
        )
        return self._runtime

    def reset_runtime(self, status: RequestStatus = RequestStatus.IDLE) -> RuntimeState:
        return self.update_runtime(
            status=status,
            is_sending=False,
            is_typing=False,
            in_flight=None,
            last_error=None,
        )

    def restore(self, state: PersistedState) -> None:
        self._sessions = [s.model_copy(deep=True) for s in state.sessions]
        self._active_session_id = state.active_session_id
        self._runtime = IDLE_RUNTIME
        self.events.emit(
            StateRestoredEvent(
                sessions=len(self._sessions), active_session_id=self._active_session_id
            )
        )

    def _find(self, session_id: str | None) -> ChatSession | None:
        if session_id is None:
            return None
        for session in self._sessions:
            if session.id == session_id:
                return session
        return None
