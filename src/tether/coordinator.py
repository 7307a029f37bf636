from __future__ import annotations

import asyncio
import logging

from tether.server_model import ModelResolver
from tether.sessions.schema import Role
from tether.sessions.store import InFlightRequest, LastError, RequestStatus, SessionStore
from tether.titles import TitleGenerator
from tether.transport import ClientError, ServerClient

logger = logging.getLogger(__name__)

UNREACHABLE_MESSAGE = (
    "Server is not reachable. Make sure the server is running and the URL is correct."
)
NO_MODEL_MESSAGE = "No model loaded on the server. Load a model and try again."


class RequestCoordinator:
    """Runs one send/retry at a time and fences its result against current state.

    Each attempt carries an ``InFlightRequest`` descriptor (request id plus the
    session it was started from). A completion only touches the store when its
    descriptor is still the tracked one and that session is still active, so a
    late reply after a session switch, a stop, or a newer attempt is dropped.
    """

    def __init__(
        self,
        store: SessionStore,
        client: ServerClient,
        resolver: ModelResolver,
        titles: TitleGenerator,
    ):
        self.store = store
        self.client = client
        self.resolver = resolver
        self.titles = titles
        self._task: asyncio.Task | None = None

    @property
    def is_sending(self) -> bool:
        return self.store.runtime.is_sending

    @property
    def current_task(self) -> asyncio.Task | None:
        return self._task

    def send(self, prompt: str) -> asyncio.Task | None:
        prompt = (prompt or "").strip()
        if not prompt or self.is_sending:
            return None
        session_id = self.store.active_session_id
        if session_id is None:
            logger.warning("send() called with no active session")
            return None

        self.store.append_message(session_id, Role.USER, prompt)
        return self._start(session_id, RequestStatus.SENDING)

    def retry(self) -> asyncio.Task | None:
        if self.is_sending:
            return None
        session_id = self.store.active_session_id
        if session_id is None:
            logger.warning("retry() called with no active session")
            return None

        self.store.touch(session_id)
        return self._start(session_id, RequestStatus.RETRYING)

    def stop_sending(self) -> bool:
        if not self.is_sending:
            return False
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.store.reset_runtime(status=RequestStatus.STOPPED)
        logger.debug("Stopped in-flight request")
        return True

    def reset_chat(self) -> None:
        self.store.reset_runtime()

    async def wait(self) -> None:
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def _start(self, session_id: str, status: RequestStatus) -> asyncio.Task:
        request = InFlightRequest.new(session_id)
        self.store.update_runtime(
            status=status,
            is_sending=True,
            is_typing=True,
            in_flight=request,
            last_error=None,
        )
        if self._task is not None:
            self._task.cancel()
        task = asyncio.get_running_loop().create_task(self._run(request))
        self._task = task
        logger.debug(f"Started request {request.request_id} for session {session_id}")
        return task

    def _is_current(self, request: InFlightRequest) -> bool:
        tracked = self.store.runtime.in_flight
        return (
            tracked is not None
            and tracked.request_id == request.request_id
            and tracked.session_id == request.session_id
            and tracked.session_id == self.store.active_session_id
        )

    async def _run(self, request: InFlightRequest) -> None:
        try:
            model = await self._resolve_model()
            if model is None:
                self._record_unresolved_model(request)
                return

            session = self.store.get_session(request.session_id)
            if session is None:
                return
            text = await self.client.send_chat(
                session.api_messages(), model, session.profile_snapshot.system_prompt
            )
        except ClientError as e:
            self._record_failure(request, e)
        else:
            self._record_reply(request, text)
        finally:
            self._finish(request)

    async def _resolve_model(self) -> str | None:
        model = (self.resolver.resolved_model or "").strip()
        if model:
            return model
        status = await self.resolver.refresh()
        return (status.model or "").strip() or None

    def _record_unresolved_model(self, request: InFlightRequest) -> None:
        if not self._is_current(request):
            return
        if self.resolver.status.reachable:
            kind, message = "no_model", NO_MODEL_MESSAGE
        else:
            kind, message = "unreachable", UNREACHABLE_MESSAGE
        self.store.append_message(request.session_id, Role.ERROR, message)
        self.store.update_runtime(status=RequestStatus.ERROR, last_error=LastError(kind, message))

    def _record_reply(self, request: InFlightRequest, text: str) -> None:
        if not self._is_current(request):
            logger.debug(f"Discarding stale reply for request {request.request_id}")
            return
        session = self.store.get_session(request.session_id)
        first_reply = session is not None and not session.has_assistant_reply()

        self.store.append_message(request.session_id, Role.ASSISTANT, text)
        self.store.touch(request.session_id)
        self.store.update_runtime(status=RequestStatus.DONE)

        if first_reply:
            self.titles.maybe_generate(request.session_id)

    def _record_failure(self, request: InFlightRequest, error: ClientError) -> None:
        if not self._is_current(request):
            logger.debug(f"Discarding stale {error.kind} failure for request {request.request_id}")
            return
        logger.info(f"Request {request.request_id} failed: {error.kind}")
        message = error.description
        self.store.append_message(request.session_id, Role.ERROR, message)
        self.store.update_runtime(
            status=RequestStatus.ERROR, last_error=LastError(error.kind, message)
        )

    def _finish(self, request: InFlightRequest) -> None:
        tracked = self.store.runtime.in_flight
        if tracked == request:
            self.store.update_runtime(is_sending=False, is_typing=False, in_flight=None)
        if self._task is asyncio.current_task():
            self._task = None
