import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from tether.app import ChatApp
from tether.config import TetherConfig
from tether.sessions.store import SessionStore
from tether.titles import TITLE_SYSTEM_PROMPT


def completion(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 12, "completion_tokens": 4, "total_tokens": 16},
        },
    )


class FakeServer:
    """OpenAI-compatible server stand-in for ``httpx.MockTransport``.

    Queued replies may be a string (turned into a completion), an
    ``httpx.Response``, or an exception to raise. Title requests are told apart
    from chat requests by their system prompt.
    """

    def __init__(self):
        self.models: list[str] = ["test-model"]
        self.models_error: Exception | None = None
        self.chat_replies: list[object] = []
        self.title_replies: list[object] = []
        self.chat_requests: list[dict] = []
        self.title_requests: list[dict] = []
        self.model_requests = 0
        self.chat_gate: asyncio.Event | None = None

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/models":
            self.model_requests += 1
            if self.models_error is not None:
                raise self.models_error
            return httpx.Response(200, json={"data": [{"id": m} for m in self.models]})

        payload = json.loads(request.content)
        first = payload["messages"][0]
        if first["role"] == "system" and first["content"] == TITLE_SYSTEM_PROMPT:
            self.title_requests.append(payload)
            return self._respond(self.title_replies, "Friendly Greeting Exchange")

        self.chat_requests.append(payload)
        if self.chat_gate is not None:
            await self.chat_gate.wait()
        return self._respond(self.chat_replies, "Hi there!")

    def _respond(self, queue: list[object], default: str) -> httpx.Response:
        reply = queue.pop(0) if queue else default
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return completion(str(reply))


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def config(tmp_path):
    return TetherConfig(
        server_url="http://testserver:1234",
        data_dir=str(tmp_path),
        profiles_path=None,
        default_profile=None,
        user_name="",
        user_pronouns="",
        save_debounce_s=0.01,
    )


@pytest_asyncio.fixture
async def app(config, server):
    chat_app = ChatApp(config, transport=httpx.MockTransport(server))
    yield chat_app
    await chat_app.aclose()
