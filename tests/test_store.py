from datetime import datetime, timedelta, timezone

from common.events import (
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionSelectedEvent,
)
from tether.sessions.schema import (
    ChatMessage,
    ChatSession,
    PersistedState,
    ProfileSnapshot,
    Role,
)
from tether.sessions.store import InFlightRequest, LastError, RequestStatus, SessionStore

BASE_TIME = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def collect(store: SessionStore) -> list:
    events = []
    store.events.subscribe(events.append)
    return events


def test_begin_session_appends_and_activates(store):
    events = collect(store)

    first = store.begin_session("Default", "Be helpful.")
    second = store.begin_session("Concise Coach", "Be brief.")

    assert store.session_ids == [first.id, second.id]
    assert store.active_session_id == second.id
    assert second.profile_snapshot.profile_name == "Concise Coach"
    assert second.profile_snapshot.system_prompt == "Be brief."
    assert second.messages == []
    assert second.last_activity_at == second.created_at
    assert [type(e) for e in events] == [SessionCreatedEvent, SessionCreatedEvent]


def test_select_unknown_session_is_noop(store):
    session = store.begin_session("Default", "")
    events = collect(store)

    assert store.select_session("missing") is False
    assert store.active_session_id == session.id
    assert events == []


def test_select_session_resets_runtime(store):
    a = store.begin_session("Default", "")
    store.begin_session("Default", "")
    store.update_runtime(
        status=RequestStatus.SENDING,
        is_sending=True,
        in_flight=InFlightRequest.new(store.active_session_id),
        last_error=LastError("timeout", "slow"),
    )
    events = collect(store)

    assert store.select_session(a.id) is True

    runtime = store.runtime
    assert runtime.status == RequestStatus.IDLE
    assert runtime.is_sending is False
    assert runtime.in_flight is None
    assert runtime.last_error is None
    assert isinstance(events[-1], SessionSelectedEvent)


def test_delete_active_session_clears_pointer(store):
    a = store.begin_session("Default", "")
    store.update_runtime(status=RequestStatus.ERROR, last_error=LastError("x", "y"))
    events = collect(store)

    assert store.delete_session(a.id) is True

    assert store.active_session_id is None
    assert store.session_ids == []
    assert store.runtime.status == RequestStatus.IDLE
    assert store.runtime.last_error is None
    deleted = [e for e in events if isinstance(e, SessionDeletedEvent)]
    assert deleted == [SessionDeletedEvent(session_id=a.id, was_active=True)]


def test_delete_inactive_session_keeps_runtime(store):
    a = store.begin_session("Default", "")
    b = store.begin_session("Default", "")
    store.update_runtime(status=RequestStatus.DONE)
    events = collect(store)

    assert store.delete_session(a.id) is False

    assert store.active_session_id == b.id
    assert store.runtime.status == RequestStatus.DONE
    assert SessionDeletedEvent(session_id=a.id, was_active=False) in events


def test_delete_unknown_session_emits_nothing(store):
    store.begin_session("Default", "")
    events = collect(store)

    assert store.delete_session("missing") is False
    assert events == []


def test_append_message_bumps_activity(store):
    session = store.begin_session("Default", "")

    message = store.append_message(session.id, Role.USER, "Hello")

    current = store.get_session(session.id)
    assert current.messages[0].id == message.id
    assert current.last_activity_at >= message.created_at


def test_append_to_missing_session_returns_none(store):
    assert store.append_message("missing", Role.USER, "Hello") is None


def test_reads_are_copies(store):
    session = store.begin_session("Default", "")
    store.append_message(session.id, Role.USER, "Hello")

    copy = store.get_session(session.id)
    copy.messages.clear()
    copy.title = "Mutated"

    current = store.get_session(session.id)
    assert len(current.messages) == 1
    assert current.title is None


def test_assign_title_only_once(store):
    session = store.begin_session("Default", "")

    assert store.assign_title(session.id, "First") is True
    assert store.assign_title(session.id, "Second") is False

    current = store.get_session(session.id)
    assert current.title == "First"
    assert current.title_generated_at is not None


def make_session(minutes: int, *, replied: bool) -> ChatSession:
    at = BASE_TIME + timedelta(minutes=minutes)
    messages = [ChatMessage(role=Role.USER, content=f"at {minutes}", created_at=at)]
    if replied:
        messages.append(ChatMessage(role=Role.ASSISTANT, content="reply", created_at=at))
    return ChatSession(
        created_at=at,
        last_activity_at=at,
        profile_snapshot=ProfileSnapshot(profile_name="Default", system_prompt=""),
        messages=messages,
    )


def test_history_lists_replied_sessions_newest_first(store):
    a = make_session(0, replied=True)
    b = make_session(5, replied=False)
    c = make_session(10, replied=True)
    store.restore(PersistedState(active_session_id=b.id, sessions=[a, b, c]))

    assert [s.id for s in store.history()] == [c.id, a.id]

    store.touch(a.id)
    assert [s.id for s in store.history()] == [a.id, c.id]


def test_api_transcript_excludes_errors(store):
    session = store.begin_session("Default", "")
    store.append_message(session.id, Role.USER, "Hello")
    store.append_message(session.id, Role.ERROR, "Server returned HTTP 400.")

    transcript = store.api_transcript(session.id)

    assert [m.role for m in transcript] == [Role.USER]


def test_restore_replaces_state(store):
    original = store.begin_session("Default", "")
    snapshot = store.snapshot()

    other = SessionStore()
    other.begin_session("Default", "")
    other.restore(snapshot)

    assert other.session_ids == [original.id]
    assert other.active_session_id == original.id
    assert other.runtime.status == RequestStatus.IDLE


def test_touch_advances_activity(store):
    session = store.begin_session("Default", "")
    before = store.get_session(session.id).last_activity_at - timedelta(seconds=1)

    assert store.touch(session.id) is True
    assert store.get_session(session.id).last_activity_at > before
    assert store.touch("missing") is False
