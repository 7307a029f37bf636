from __future__ import annotations

import asyncio
from dataclasses import dataclass

from tether.app import ChatApp
from tether.sessions.schema import ChatSession, Role
from tether.titles import display_title


@dataclass(frozen=True)
class RouteResult:
    kind: str
    name: str | None
    args: str


def route(user_input: str, commands: set[str]) -> RouteResult:
    if not user_input.startswith("/"):
        return RouteResult(kind="prompt", name=None, args=user_input)

    parts = user_input.split(maxsplit=1)
    cmd = parts[0].lstrip("/")
    args = parts[1] if len(parts) > 1 else ""
    if cmd in commands:
        return RouteResult(kind="builtin", name=cmd, args=args)
    return RouteResult(kind="unknown", name=cmd, args=args)


def format_session_line(session: ChatSession, active_id: str | None) -> str:
    marker = "*" if session.id == active_id else " "
    stamp = session.last_activity_at.strftime("%Y-%m-%d %H:%M")
    return f"{marker} {session.id[:8]}  {stamp}  {display_title(session)}"


class BuiltinCommands:
    def __init__(self, app: ChatApp):
        self.app = app
        self._handlers = {
            "quit": self.cmd_quit,
            "exit": self.cmd_quit,
            "help": self.cmd_help,
            "new": self.cmd_new,
            "sessions": self.cmd_sessions,
            "switch": self.cmd_switch,
            "delete": self.cmd_delete,
            "retry": self.cmd_retry,
            "profiles": self.cmd_profiles,
            "status": self.cmd_status,
        }

    def names(self) -> set[str]:
        return set(self._handlers)

    async def handle(self, name: str, args: str) -> bool:
        handler = self._handlers.get(name)
        if not handler:
            return True
        return await handler(args)

    def _resolve_session(self, command: str, prefix: str) -> str | None:
        prefix = prefix.strip()
        if not prefix:
            print(f"Usage: /{command} <session-id-prefix>")
            return None
        matches = [sid for sid in self.app.store.session_ids if sid.startswith(prefix)]
        if not matches:
            print(f"No session matches {prefix!r}")
            return None
        if len(matches) > 1:
            print(f"{prefix!r} is ambiguous ({len(matches)} sessions)")
            return None
        return matches[0]

    async def cmd_quit(self, args: str) -> bool:
        print("Goodbye!")
        return False

    async def cmd_help(self, args: str) -> bool:
        print("Commands:")
        print("  /new [profile]      Start a new chat (optionally with a profile)")
        print("  /sessions           List chats that have a reply")
        print("  /switch <id>        Switch to a chat by id prefix")
        print("  /delete <id>        Delete a chat by id prefix (asks first)")
        print("  /retry              Re-send the current transcript")
        print("  /profiles           List available profiles")
        print("  /status             Show server and request status")
        print("  /quit               Exit")
        return True

    async def cmd_new(self, args: str) -> bool:
        profile = None
        if args.strip():
            profile = self.app.profiles.get(args)
            if profile is None:
                print(f"Unknown profile {args.strip()!r}. Try /profiles")
                return True
        session = self.app.begin_session(profile)
        print(f"New chat {session.id[:8]} ({session.profile_snapshot.profile_name})")
        return True

    async def cmd_sessions(self, args: str) -> bool:
        history = self.app.store.history()
        if not history:
            print("No chats yet")
            return True
        active_id = self.app.store.active_session_id
        for session in history:
            print(format_session_line(session, active_id))
        return True

    async def cmd_switch(self, args: str) -> bool:
        session_id = self._resolve_session("switch", args)
        if session_id and self.app.store.select_session(session_id):
            session = self.app.store.get_session(session_id)
            print(f"Switched to {display_title(session)}")
            for message in session.messages[-6:]:
                print_message(message.role, message.content)
        return True

    async def cmd_delete(self, args: str) -> bool:
        session_id = self._resolve_session("delete", args)
        if session_id is None:
            return True
        title = display_title(self.app.store.get_session(session_id))
        try:
            answer = await asyncio.to_thread(input, f"Delete chat {title!r}? [y/N] ")
        except EOFError:
            answer = ""
        if answer.strip().lower() not in ("y", "yes"):
            print("Kept")
            return True
        was_active = self.app.delete_session(session_id)
        print(f"Deleted {session_id[:8]}")
        if was_active:
            print(f"Started new chat {self.app.store.active_session_id[:8]}")
        return True

    async def cmd_retry(self, args: str) -> bool:
        task = self.app.coordinator.retry()
        if task is None:
            print("Nothing to retry right now")
            return True
        await wait_for_reply(self.app)
        return True

    async def cmd_profiles(self, args: str) -> bool:
        default = self.app.profiles.default.name
        for name in self.app.profiles.names():
            marker = "*" if name == default else " "
            print(f"{marker} {name}")
        return True

    async def cmd_status(self, args: str) -> bool:
        runtime = self.app.store.runtime
        print(f"Server: {self.app.client.base_url} ({self.app.resolver.status.label})")
        print(f"Status: {runtime.status.value}")
        if runtime.last_error:
            print(f"Last error [{runtime.last_error.kind}]")
        return True


def print_message(role: Role, content: str) -> None:
    label = {
        Role.USER: "you",
        Role.ASSISTANT: "assistant",
        Role.ERROR: "error",
        Role.SYSTEM: "system",
    }[role]
    print(f"\n[{label}] {content}")


async def wait_for_reply(app: ChatApp) -> None:
    session_id = app.store.active_session_id
    before = len(app.store.get_session(session_id).messages) if session_id else 0
    await app.coordinator.wait()
    session = app.store.get_session(session_id) if session_id else None
    if session is None:
        return
    for message in session.messages[before:]:
        if message.role in (Role.ASSISTANT, Role.ERROR):
            print_message(message.role, message.content)


class ChatREPL:
    def __init__(self, app: ChatApp):
        self.app = app
        self.builtins = BuiltinCommands(app)

    async def run(self, initial_message: str | None = None) -> None:
        session = self.app.ensure_active_session()
        print(f"tether ({self.app.client.base_url}, {self.app.resolver.status.label})")
        print(f"Chat {session.id[:8]} with profile {session.profile_snapshot.profile_name}")
        print("Commands: /help for all commands")

        if initial_message:
            await self.send(initial_message)

        while True:
            try:
                user_input = (await asyncio.to_thread(input, "\n> ")).strip()
            except EOFError:
                break
            if not user_input:
                continue

            result = route(user_input, self.builtins.names())
            if result.kind == "builtin":
                if not await self.builtins.handle(result.name, result.args):
                    break
                continue
            if result.kind == "unknown":
                print(f"Unknown command: /{result.name}. Type /help for available commands.")
                continue
            await self.send(result.args)

    async def send(self, prompt: str) -> None:
        if self.app.coordinator.send(prompt) is None:
            print("Message not sent (empty, or a request is already running)")
            return
        await wait_for_reply(self.app)
