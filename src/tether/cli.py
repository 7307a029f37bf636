from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv

from tether.app import ChatApp
from tether.config import ConfigError, TetherConfig
from tether.profiles import ProfileError
from tether.repl import ChatREPL, format_session_line


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tether", description="Local client for OpenAI-compatible chat servers"
    )
    parser.add_argument("--server", default=None, help="Server base URL (overrides TETHER_SERVER_URL)")
    parser.add_argument("--data-dir", default=None, help="State directory (overrides TETHER_DATA_DIR)")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-q", "--quiet", action="store_true")
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    parser.set_defaults(profile=None, new=False, message=None)
    subparsers = parser.add_subparsers(dest="command", required=False)

    chat = subparsers.add_parser("chat", help="Start the interactive chat REPL")
    chat.add_argument("--profile", default=None, help="Profile for a new chat")
    chat.add_argument("--new", action="store_true", help="Start a new chat instead of resuming")
    chat.add_argument("--message", "-m", help="Send one message before entering the REPL")

    subparsers.add_parser("sessions", help="List saved chats")
    subparsers.add_parser("models", help="Check the server connection and loaded model")
    return parser


def _load_config(args: argparse.Namespace) -> TetherConfig:
    config = TetherConfig.from_env()
    if args.server:
        config.server_url = args.server
    if args.data_dir:
        config.data_dir = args.data_dir
    config.validate()
    return config


async def _cmd_chat(app: ChatApp, args: argparse.Namespace) -> int:
    await app.start()
    profile = None
    if args.profile:
        profile = app.profiles.get(args.profile)
        if profile is None:
            print(f"Error: unknown profile {args.profile!r}", file=sys.stderr)
            return 1
    if args.new or profile is not None:
        app.begin_session(profile)
    try:
        await ChatREPL(app).run(initial_message=args.message)
    except KeyboardInterrupt:
        print("\nInterrupted")
    return 0


async def _cmd_sessions(app: ChatApp, args: argparse.Namespace) -> int:
    app.load()
    history = app.store.history()
    if not history:
        print("No chats yet")
        return 0
    active_id = app.store.active_session_id
    for session in history:
        print(format_session_line(session, active_id))
    return 0


async def _cmd_models(app: ChatApp, args: argparse.Namespace) -> int:
    status = await app.resolver.refresh()
    print(f"{app.client.base_url}: {status.label}")
    return 0 if status.model else 1


_COMMANDS = {
    "chat": _cmd_chat,
    "sessions": _cmd_sessions,
    "models": _cmd_models,
}


async def _run(app: ChatApp, args: argparse.Namespace) -> int:
    handler = _COMMANDS[args.command or "chat"]
    try:
        return await handler(app, args)
    finally:
        await app.aclose()


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


def _main(argv: list[str]) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = _load_config(args)
        app = ChatApp(config)
    except (ConfigError, ProfileError) as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return asyncio.run(_run(app, args))


if __name__ == "__main__":
    raise SystemExit(main())
