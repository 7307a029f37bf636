import pytest

from tether.repl import BuiltinCommands, ChatREPL, format_session_line, route
from tether.sessions.schema import Role


def test_route_prompt_and_commands():
    commands = {"new", "quit"}

    assert route("hello there", commands).kind == "prompt"
    result = route("/new Concise Coach", commands)
    assert (result.kind, result.name, result.args) == ("builtin", "new", "Concise Coach")
    unknown = route("/bogus", commands)
    assert (unknown.kind, unknown.name) == ("unknown", "bogus")


def test_format_session_line_marks_active(store):
    session = store.begin_session("Default", "")
    store.append_message(session.id, Role.USER, "What is a monad?")
    current = store.get_session(session.id)

    line = format_session_line(current, session.id)

    assert line.startswith(f"* {session.id[:8]}")
    assert line.endswith("What is a monad?")
    assert format_session_line(current, None).startswith(" ")


@pytest.mark.asyncio
async def test_new_with_unknown_profile(app, capsys):
    commands = BuiltinCommands(app)

    assert await commands.handle("new", "Pirate") is True

    assert "Unknown profile 'Pirate'" in capsys.readouterr().out
    assert app.store.session_ids == []


@pytest.mark.asyncio
async def test_switch_and_confirmed_delete_by_prefix(app, capsys, monkeypatch):
    prompts = []
    monkeypatch.setattr("builtins.input", lambda prompt="": prompts.append(prompt) or "y")
    commands = BuiltinCommands(app)
    first = app.begin_session()
    second = app.begin_session()

    await commands.handle("switch", first.id[:8])
    assert app.store.active_session_id == first.id

    await commands.handle("delete", first.id)
    out = capsys.readouterr().out
    assert f"Deleted {first.id[:8]}" in out
    assert "Started new chat" in out
    assert first.id not in app.store.session_ids
    assert second.id in app.store.session_ids
    assert prompts and prompts[0].startswith("Delete chat")


@pytest.mark.asyncio
async def test_sessions_lists_only_replied_chats(app, capsys):
    commands = BuiltinCommands(app)
    app.ensure_active_session()
    await commands.handle("sessions", "")
    assert "No chats yet" in capsys.readouterr().out

    await app.coordinator.send("Hello")
    await app.titles.wait()
    await commands.handle("sessions", "")
    assert "Friendly Greeting Exchange" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_quit_stops_loop(app):
    assert await BuiltinCommands(app).handle("quit", "") is False


@pytest.mark.asyncio
async def test_repl_send_prints_reply(app, capsys):
    repl = ChatREPL(app)
    app.ensure_active_session()

    await repl.send("Hello")

    assert "[assistant] Hi there!" in capsys.readouterr().out


@pytest.mark.asyncio
@pytest.mark.parametrize("answer", ["", "n", "no"])
async def test_declined_delete_keeps_session(app, capsys, monkeypatch, answer):
    monkeypatch.setattr("builtins.input", lambda prompt="": answer)
    session = app.ensure_active_session()

    await BuiltinCommands(app).handle("delete", session.id[:8])

    assert "Kept" in capsys.readouterr().out
    assert app.store.session_ids == [session.id]
    assert app.store.active_session_id == session.id


@pytest.mark.asyncio
async def test_delete_at_end_of_input_keeps_session(app, monkeypatch):
    def closed(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", closed)
    session = app.ensure_active_session()

    await BuiltinCommands(app).handle("delete", session.id)

    assert app.store.session_ids == [session.id]


@pytest.mark.asyncio
@pytest.mark.parametrize("command", ["switch", "delete"])
async def test_usage_names_the_command(app, capsys, command):
    await BuiltinCommands(app).handle(command, "  ")

    assert f"Usage: /{command} <session-id-prefix>" in capsys.readouterr().out
