import dataclasses
import json

import httpx
import pytest

from tether.app import ChatApp
from tether.sessions.schema import Role
from tether.sessions.store import RequestStatus


@pytest.mark.asyncio
async def test_start_reports_model_status(app):
    outcome = await app.start()

    assert outcome.status == "missing"
    assert app.resolver.status.label == "Connected — test-model"
    assert app.resolver.resolved_model == "test-model"


@pytest.mark.asyncio
async def test_start_with_empty_model_list(app, server):
    server.models = []

    await app.start()

    assert app.resolver.status.reachable is True
    assert app.resolver.status.label == "Connected — No model loaded"


@pytest.mark.asyncio
async def test_start_with_server_down(app, server):
    server.models_error = httpx.ConnectError("Connection refused")

    await app.start()

    assert app.resolver.status.reachable is False
    assert app.resolver.status.label == "Unreachable"


@pytest.mark.asyncio
async def test_new_session_carries_personalized_prompt(config, server):
    config = dataclasses.replace(config, user_name="Sam", user_pronouns="they/them")
    app = ChatApp(config, transport=httpx.MockTransport(server))

    session = app.begin_session(app.profiles.get("Concise Coach"))
    await app.coordinator.send("Hi")
    await app.aclose()

    assert session.profile_snapshot.profile_name == "Concise Coach"
    assert session.profile_snapshot.system_prompt.startswith(
        "Hi Sam, I'll use these pronouns for you: (they/them)."
    )
    assert server.chat_requests[0]["messages"][0]["content"] == (
        session.profile_snapshot.system_prompt
    )


@pytest.mark.asyncio
async def test_deleting_active_session_begins_replacement(app, config):
    first = app.ensure_active_session()
    second = app.begin_session()

    assert app.delete_session(first.id) is False
    assert app.store.active_session_id == second.id

    assert app.delete_session(second.id) is True
    replacement = app.store.active_session_id
    assert replacement not in (None, first.id, second.id)
    assert app.store.session_ids == [replacement]

    await app.persistence.flush()
    data = json.loads(config.state_path.read_text(encoding="utf-8"))
    assert [s["id"] for s in data["sessions"]] == [replacement]


@pytest.mark.asyncio
async def test_begin_session_clears_runtime(app):
    app.ensure_active_session()
    app.store.update_runtime(status=RequestStatus.ERROR)

    app.begin_session()

    assert app.store.runtime.status == RequestStatus.IDLE


@pytest.mark.asyncio
async def test_state_survives_restart(config, server):
    first = ChatApp(config, transport=httpx.MockTransport(server))
    session = first.ensure_active_session()
    await first.coordinator.send("Hello")
    await first.titles.wait()
    await first.aclose()

    second = ChatApp(config, transport=httpx.MockTransport(server))
    outcome = second.load()

    assert outcome.status == "loaded"
    assert second.store.active_session_id == session.id
    restored = second.store.get_session(session.id)
    assert [m.role for m in restored.messages] == [Role.USER, Role.ASSISTANT]
    assert restored.title == "Friendly Greeting Exchange"
    assert second.store.runtime.status == RequestStatus.IDLE
    await second.aclose()
