# src/taskmirror/connectors/console_connector.py

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime

from ..cli.commands import registry as command_registry
from ..core.engine import Engine
from ..core.errors import QuotaExceeded, TaskMirrorError
from ..sync.mirror import MirrorSnapshot

logger = logging.getLogger(__name__)


def _ts_local() -> str:
    return datetime.now().astimezone().strftime("%Y-%m-%d %H:%M:%S")


def _rewrite_prev_line(line: str) -> None:
    """
    Replace the last terminal line with `line`.
    Best-effort: if not a TTY, just print a new line.
    """
    try:
        if sys.stdout.isatty():
            sys.stdout.write("\033[1A\033[2K\r")
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
        else:
            print(line)
    except Exception:
        print(line)


def _print_ts(text: str) -> None:
    print(f"[{_ts_local()}] {text}")


class ConsoleListener:
    """Prints sync-state transitions and surfaced errors."""

    def __init__(self) -> None:
        self._offline: bool | None = None

    def on_mirror_changed(self, snapshot: MirrorSnapshot) -> None:
        if self._offline is None:
            self._offline = snapshot.offline
            return
        if snapshot.offline != self._offline:
            self._offline = snapshot.offline
            if snapshot.offline:
                _print_ts("[SYNC] Remote store offline; changes are kept locally.")
            else:
                _print_ts("[SYNC] Remote store back online; local changes synced.")

    def on_error(self, error: TaskMirrorError) -> None:
        if isinstance(error, QuotaExceeded):
            _print_ts(
                "[SYNC] Daily quota of the remote store is exhausted. "
                "Your data is stored locally and will sync when the quota resets."
            )
        else:
            _print_ts(f"[SYNC] {type(error).__name__}: {error}")


async def _read_line(prompt: str) -> str:
    # input() blocks; keep the loop free for timers and snapshot pushes.
    return await asyncio.to_thread(input, prompt)


async def run_console_loop(engine: Engine, *, app_name: str = "taskmirror") -> None:
    logger.info("Console connector started.")
    _print_ts(f"[CONSOLE] {app_name}: use /help for commands, /exit to quit.\n")

    remove_listener = engine.add_listener(ConsoleListener())

    def emit(text: str) -> None:
        # Immediate user-visible feedback for long operations (e.g. probes)
        print(f"[{_ts_local()}] {text}", flush=True)

    try:
        while True:
            try:
                user_input = (await _read_line(">>> ")).strip()
                _rewrite_prev_line(f"[{_ts_local()}] >>> {user_input}")
            except EOFError:
                logger.info("Console EOF received, exiting.")
                break
            except KeyboardInterrupt:
                logger.info("Console KeyboardInterrupt, exiting.")
                print()
                break

            if not user_input:
                continue

            if user_input.lower() in ("/exit", "/quit"):
                logger.info("Console exit command received.")
                break

            try:
                response = await command_registry.handle(engine, user_input, emit=emit)
            except Exception:
                logger.exception("Command handler crashed.")
                response = "Internal error while handling a command."

            if response is None:
                response = "Commands start with '/'. Use /help to list available commands."
            _print_ts(response)
    finally:
        remove_listener()

    logger.info("Console connector finished.")
