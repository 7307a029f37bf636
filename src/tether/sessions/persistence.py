from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from common.events import (
    Event,
    MessageAppendedEvent,
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionSelectedEvent,
    SessionTouchedEvent,
    TitleAssignedEvent,
)
from common.jsonio import atomic_write_json, quarantine_file
from tether.sessions.schema import (
    DATE_FORMAT_ISO8601,
    DATE_FORMAT_LEGACY_NUMERIC,
    SCHEMA_VERSION,
    PersistedState,
)
from tether.sessions.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_S = 0.35

_SCHEDULING_EVENTS = (
    SessionCreatedEvent,
    SessionSelectedEvent,
    SessionTouchedEvent,
    MessageAppendedEvent,
    TitleAssignedEvent,
)


@dataclass(frozen=True, slots=True)
class DecodeStrategy:
    name: str
    date_format: str
    needs_upgrade: bool


DECODE_STRATEGIES: tuple[DecodeStrategy, ...] = (
    DecodeStrategy(name="iso8601", date_format=DATE_FORMAT_ISO8601, needs_upgrade=False),
    DecodeStrategy(
        name="legacy-numeric", date_format=DATE_FORMAT_LEGACY_NUMERIC, needs_upgrade=True
    ),
)


@dataclass(frozen=True, slots=True)
class LoadOutcome:
    status: str
    strategy: str | None = None
    sessions: int = 0
    active_session_id: str | None = None
    quarantined_to: Path | None = None


def decode_state(raw: str) -> tuple[PersistedState, DecodeStrategy] | None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"State file is not valid JSON: {e}")
        return None

    for strategy in DECODE_STRATEGIES:
        try:
            state = PersistedState.model_validate(
                data, context={"date_format": strategy.date_format}
            )
        except ValidationError as e:
            logger.debug(f"Decode strategy {strategy.name} failed: {e.error_count()} error(s)")
            continue
        return state, strategy
    return None


def heal_active_session(state: PersistedState) -> str | None:
    ids = {s.id for s in state.sessions}
    if state.active_session_id in ids:
        return state.active_session_id
    if not state.sessions:
        return None
    return max(state.sessions, key=lambda s: s.last_activity_at).id


class PersistenceGateway:
    """Durable JSON snapshots of a ``SessionStore``.

    Mutation bursts are coalesced with a single-slot debounce timer; deletions
    are written immediately. Snapshots are taken on the event loop and the file
    write itself runs in a worker thread, so a slow disk never blocks a state
    change.
    """

    def __init__(
        self,
        store: SessionStore,
        path: str | Path,
        *,
        debounce_s: float = DEFAULT_DEBOUNCE_S,
    ):
        self.store = store
        self.path = Path(path)
        self.debounce_s = debounce_s
        self._pending: asyncio.TimerHandle | None = None
        self._writes: set[asyncio.Task] = set()
        self._write_lock: asyncio.Lock | None = None
        self._unsubscribe = store.events.subscribe(self._on_event)

    @property
    def has_pending_save(self) -> bool:
        return self._pending is not None

    def close(self) -> None:
        self._cancel_pending()
        self._unsubscribe()

    def _on_event(self, event: Event) -> None:
        if isinstance(event, SessionDeletedEvent):
            self.request_save_now()
        elif isinstance(event, _SCHEDULING_EVENTS):
            self.schedule_save()

    # loading

    def load(self) -> LoadOutcome:
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting empty")
            return LoadOutcome(status="missing")

        try:
            raw = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"Could not read state file {self.path}: {e}")
            return self._quarantine()

        decoded = decode_state(raw)
        if decoded is None:
            return self._quarantine()
        state, strategy = decoded

        if not state.sessions:
            logger.warning(f"State file {self.path} holds no sessions")
            return self._quarantine()
        if state.schema_version > SCHEMA_VERSION:
            logger.warning(
                f"State file schema {state.schema_version} is newer than {SCHEMA_VERSION}; "
                "unknown fields will be dropped on the next save"
            )

        active_id = heal_active_session(state)
        if active_id != state.active_session_id:
            logger.info(f"Healed active session {state.active_session_id} -> {active_id}")
        self.store.restore(state.model_copy(update={"active_session_id": active_id}))
        logger.info(
            f"Loaded {len(state.sessions)} session(s) via {strategy.name}, active={active_id}"
        )

        if strategy.needs_upgrade:
            logger.info("Rewriting legacy state file in the current format")
            self.schedule_save()

        return LoadOutcome(
            status="loaded",
            strategy=strategy.name,
            sessions=len(state.sessions),
            active_session_id=active_id,
        )

    def _quarantine(self) -> LoadOutcome:
        try:
            backup = quarantine_file(self.path)
        except OSError as e:
            logger.error(f"Could not move corrupt state file {self.path} aside: {e}")
            return LoadOutcome(status="corrupt")
        logger.warning(f"Moved corrupt state file to {backup}; starting empty")
        return LoadOutcome(status="corrupt", quarantined_to=backup)

    # saving

    def schedule_save(self) -> None:
        self._cancel_pending()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(self.store.snapshot())
            return
        self._pending = loop.call_later(self.debounce_s, self._fire_pending)

    def request_save_now(self) -> None:
        self._cancel_pending()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(self.store.snapshot())
            return
        self._track(loop.create_task(self.save_now()))

    async def save_now(self) -> None:
        self._cancel_pending()
        snapshot = self.store.snapshot()
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        async with self._write_lock:
            await asyncio.to_thread(self._write, snapshot)

    async def flush(self) -> None:
        if self._pending is not None:
            self._cancel_pending()
            self._track(asyncio.get_running_loop().create_task(self.save_now()))
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _fire_pending(self) -> None:
        self._pending = None
        self._track(asyncio.get_running_loop().create_task(self.save_now()))

    def _track(self, task: asyncio.Task) -> None:
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def _write(self, state: PersistedState) -> None:
        try:
            atomic_write_json(self.path, state.to_json_dict())
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save state to {self.path}: {e}")
            return
        logger.debug(f"Saved {len(state.sessions)} session(s) to {self.path}")
