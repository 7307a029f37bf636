from __future__ import annotations

import logging
import ssl
from dataclasses import dataclass
from typing import Any, Iterable

import httpx
from pydantic import BaseModel, ValidationError

from tether.config import DEFAULT_SERVER_URL, TransportConfig
from tether.sessions.schema import ChatMessage, Role

logger = logging.getLogger(__name__)

SNIPPET_BYTES = 200


class ClientError(Exception):
    kind = "client_error"

    @property
    def description(self) -> str:
        return str(self)


class BadURLError(ClientError):
    kind = "bad_url"

    def __init__(self, url: str = ""):
        self.url = url
        super().__init__("Bad server URL. Check your server connection settings.")


class ServerUnreachableError(ClientError):
    kind = "unreachable"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(
            "Server is not reachable. Make sure the server is running and the URL is correct."
            f"\n\n{detail}"
        )


class RequestTimedOutError(ClientError):
    kind = "timeout"

    def __init__(self):
        super().__init__(
            "The request timed out. The server may be busy or the model may be too slow to respond."
        )


class HTTPStatusError(ClientError):
    kind = "http_status"

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Server returned HTTP {status_code}.\n{body}")


class NoChoicesError(ClientError):
    kind = "no_choices"

    def __init__(self):
        super().__init__(
            "Server returned an empty response. The model may still be loading, try again in a moment."
        )


class DecodingFailedError(ClientError):
    kind = "decoding_failed"

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(
            "Unexpected response from the server. It may be loading a model or returned an "
            f"invalid response.\n\n{detail}"
        )


class CompletionMessage(BaseModel):
    role: str
    content: str | None = None


class CompletionChoice(BaseModel):
    index: int = 0
    message: CompletionMessage
    finish_reason: str | None = None


class CompletionUsage(BaseModel):
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


class ChatCompletionResponse(BaseModel):
    choices: list[CompletionChoice]
    usage: CompletionUsage | None = None


class ModelEntry(BaseModel):
    id: str


class ModelsResponse(BaseModel):
    data: list[ModelEntry]


@dataclass(frozen=True, slots=True)
class RequestBudget:
    max_tokens: int
    timeout_s: float


def normalize_base_url(raw: str | None) -> str:
    s = (raw or "").strip()
    if not s:
        s = DEFAULT_SERVER_URL
    s = s.replace(" ", "")
    lower = s.lower()
    if not lower.startswith("http://") and not lower.startswith("https://"):
        s = "http://" + s
    s = s.rstrip("/")
    if s.endswith("/v1"):
        s = s[: -len("/v1")].rstrip("/")
    return s


def build_api_messages(messages: Iterable[ChatMessage], system_prompt: str) -> list[dict[str, str]]:
    api_messages = [m.as_api_message() for m in messages if m.role != Role.ERROR]
    if not any(m["role"] == Role.SYSTEM.value for m in api_messages):
        api_messages.insert(0, {"role": Role.SYSTEM.value, "content": system_prompt})
    return api_messages


def _caused_by(exc: BaseException, kind: type[BaseException]) -> bool:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, kind):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


def classify_request_error(exc: httpx.RequestError) -> ClientError:
    if isinstance(exc, httpx.TimeoutException):
        return RequestTimedOutError()
    if isinstance(exc, httpx.UnsupportedProtocol):
        return BadURLError(str(exc.request.url) if _has_request(exc) else "")
    if isinstance(exc, httpx.ConnectError):
        if _caused_by(exc, ssl.SSLError):
            return ServerUnreachableError(
                "Secure connection failed. Local servers typically use http://, not https://."
            )
        return ServerUnreachableError(f"Connection failed: {exc}")
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return ServerUnreachableError(f"Connection lost: {exc}")
    return ServerUnreachableError(f"Network error: {exc}")


def _has_request(exc: httpx.RequestError) -> bool:
    try:
        exc.request
    except RuntimeError:
        return False
    return True


def _snippet(content: bytes) -> str:
    return content[:SNIPPET_BYTES].decode("utf-8", errors="replace") or "(empty body)"


class ServerClient:
    """Minimal async client for an OpenAI-compatible ``/v1/chat/completions`` server."""

    def __init__(
        self,
        base_url: str | None = None,
        config: TransportConfig | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or TransportConfig()
        self.base_url = normalize_base_url(base_url)
        self.chat_budget = RequestBudget(self.config.chat_max_tokens, self.config.chat_timeout_s)
        self.title_budget = RequestBudget(
            self.config.title_max_tokens, self.config.title_timeout_s
        )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def endpoint(self, path: str) -> httpx.URL:
        try:
            url = httpx.URL(f"{self.base_url}/v1/{path}")
        except httpx.InvalidURL as e:
            raise BadURLError(self.base_url) from e
        if not url.host:
            raise BadURLError(self.base_url)
        return url

    def _timeout(self, total_s: float) -> httpx.Timeout:
        return httpx.Timeout(total_s, connect=self.config.connect_timeout_s)

    async def send_chat(self, messages: Iterable[ChatMessage], model: str, system_prompt: str) -> str:
        api_messages = build_api_messages(messages, system_prompt)
        logger.debug(
            f"Chat request model={model} messages={len(api_messages)} "
            f"system_prompt_len={len(system_prompt)}"
        )
        return await self._complete(api_messages, model, self.chat_budget)

    async def send_title_request(self, prompt: str, model: str, system_prompt: str) -> str:
        api_messages = [
            {"role": Role.SYSTEM.value, "content": system_prompt},
            {"role": Role.USER.value, "content": prompt},
        ]
        return await self._complete(api_messages, model, self.title_budget)

    async def list_models(self) -> list[str]:
        response = await self._request(
            "GET", self.endpoint("models"), timeout=self._timeout(self.config.models_timeout_s)
        )
        try:
            decoded = ModelsResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise DecodingFailedError(
                f"Could not parse models list: {e.error_count()} error(s)\n"
                f"Response start: {_snippet(response.content)}"
            ) from e
        return [entry.id for entry in decoded.data]

    async def _complete(self, api_messages: list[dict[str, str]], model: str, budget: RequestBudget) -> str:
        body: dict[str, Any] = {
            "model": model,
            "messages": api_messages,
            "temperature": self.config.temperature,
            "max_tokens": budget.max_tokens,
            "stream": False,
        }
        response = await self._request(
            "POST",
            self.endpoint("chat/completions"),
            json=body,
            timeout=self._timeout(budget.timeout_s),
        )
        try:
            decoded = ChatCompletionResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise DecodingFailedError(
                f"Could not parse response: {e.error_count()} error(s)\n"
                f"Response start: {_snippet(response.content)}"
            ) from e

        if not decoded.choices:
            raise NoChoicesError()
        first = decoded.choices[0]
        # A null content field carries no reply text either.
        if first.message.content is None:
            raise NoChoicesError()
        usage = decoded.usage
        logger.debug(
            f"Completion finish_reason={first.finish_reason} "
            f"prompt_tokens={usage.prompt_tokens if usage else None} "
            f"completion_tokens={usage.completion_tokens if usage else None} "
            f"chars={len(first.message.content)}"
        )
        return first.message.content

    async def _request(self, method: str, url: httpx.URL, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.RequestError as e:
            raise classify_request_error(e) from e
        if not response.is_success:
            body = response.text or "(no body)"
            raise HTTPStatusError(response.status_code, body)
        return response
