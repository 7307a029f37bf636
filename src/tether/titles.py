from __future__ import annotations

import asyncio
import logging
import re

from common.events import Event, SessionDeletedEvent
from tether.server_model import ModelResolver
from tether.sessions.schema import ChatSession, Role
from tether.sessions.store import SessionStore
from tether.transport import ClientError, ServerClient

logger = logging.getLogger(__name__)

TITLE_SYSTEM_PROMPT = (
    "You generate short, neutral chat titles. Return ONLY the title text. 3-7 words. "
    "No quotes. No emojis. No trailing punctuation."
)
TITLE_INSTRUCTION = "Generate a neutral title for this conversation:"

MAX_TITLE_CHARS = 60
FALLBACK_TITLE_CHARS = 42
TITLE_PREFIXES = ("title:", "chat title:", "conversation title:")
TRAILING_PUNCTUATION = ".,;:!?"
QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"), ("‘", "’"))

_WHITESPACE_RE = re.compile(r"\s+")


def sanitize_title(raw: str) -> str:
    s = (raw or "").strip()
    for left, right in QUOTE_PAIRS:
        if len(s) >= 2 and s.startswith(left) and s.endswith(right):
            s = s[1:-1].strip()
            break

    lower = s.lower()
    for prefix in TITLE_PREFIXES:
        if lower.startswith(prefix):
            s = s[len(prefix):].strip()
            break

    if len(s) >= 4 and s.startswith("**") and s.endswith("**"):
        s = s[2:-2].strip()
    if len(s) >= 2 and s.startswith("`") and s.endswith("`"):
        s = s[1:-1].strip()

    s = _WHITESPACE_RE.sub(" ", s)
    s = s[:MAX_TITLE_CHARS]
    s = s.rstrip(TRAILING_PUNCTUATION + " ")
    return s.strip()


def fallback_title(session: ChatSession) -> str:
    first_user = session.first_message(Role.USER)
    if first_user is not None:
        trimmed = first_user.content.strip()
        if trimmed:
            return trimmed[:FALLBACK_TITLE_CHARS]
    created = session.created_at
    return f"Chat — {created:%b} {created.day}, {created.year}"


def display_title(session: ChatSession) -> str:
    return session.title or fallback_title(session)


def build_title_prompt(session: ChatSession) -> str:
    first_user = session.first_message(Role.USER)
    first_assistant = session.first_message(Role.ASSISTANT)
    context = (
        f"User: {first_user.content if first_user else ''}\n"
        f"Assistant: {first_assistant.content if first_assistant else ''}"
    )
    return f"{TITLE_INSTRUCTION}\n\n{context}"


class TitleGenerator:
    """Best-effort, one-shot titling of a session after its first reply.

    At most one generation runs per session. Whatever the outcome (generated,
    sanitized to empty, transport failure, no model), the session ends up with
    a title, and a title that is already set is never replaced.
    """

    def __init__(self, store: SessionStore, client: ServerClient, resolver: ModelResolver):
        self.store = store
        self.client = client
        self.resolver = resolver
        self._in_flight: dict[str, asyncio.Task] = {}
        self._unsubscribe = store.events.subscribe(self._on_event)

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def close(self) -> None:
        self._unsubscribe()
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()

    async def wait(self) -> None:
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def _on_event(self, event: Event) -> None:
        if isinstance(event, SessionDeletedEvent):
            self.forget(event.session_id)

    def forget(self, session_id: str) -> None:
        task = self._in_flight.pop(session_id, None)
        if task is not None:
            task.cancel()
            logger.debug(f"Cancelled title generation for deleted session {session_id}")

    def maybe_generate(self, session_id: str) -> asyncio.Task | None:
        session = self.store.get_session(session_id)
        if session is None or session.title is not None:
            return None
        if not session.has_assistant_reply():
            return None
        if session_id in self._in_flight:
            return None

        task = asyncio.get_running_loop().create_task(self._generate(session_id))
        self._in_flight[session_id] = task
        task.add_done_callback(lambda t, sid=session_id: self._release(sid, t))
        return task

    def _release(self, session_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(session_id) is task:
            del self._in_flight[session_id]

    async def _generate(self, session_id: str) -> str | None:
        session = self.store.get_session(session_id)
        if session is None:
            return None

        title = ""
        model = (self.resolver.resolved_model or "").strip()
        if model:
            try:
                raw = await self.client.send_title_request(
                    build_title_prompt(session), model, TITLE_SYSTEM_PROMPT
                )
                title = sanitize_title(raw)
            except ClientError as e:
                logger.info(f"Title generation failed for {session_id} ({e.kind}), using fallback")
            except Exception:
                logger.exception(f"Unexpected error generating title for {session_id}")
        else:
            logger.debug(f"No model resolved, using fallback title for {session_id}")

        current = self.store.get_session(session_id)
        if current is None:
            return None
        if not title:
            title = fallback_title(current)
        if self.store.assign_title(session_id, title):
            return title
        return None
