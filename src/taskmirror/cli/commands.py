# src/taskmirror/cli/commands.py

from __future__ import annotations

import contextlib
import logging
from collections.abc import Awaitable, Callable

from ..core.engine import Engine
from ..core.errors import StoreErrorKind, TaskMirrorError
from ..core.models import Task

CommandEmitter = Callable[[str], None]
CommandHandler = Callable[[Engine, list[str], CommandEmitter | None], Awaitable[str]]

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Simple slash-command registry used by connectors (/help, /add, ...)."""

    def __init__(self) -> None:
        self._handlers: dict[str, CommandHandler] = {}
        self._help: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: CommandHandler,
        help_text: str,
        aliases: list[str] | None = None,
    ) -> None:
        aliases = aliases or []
        key = name.lower()
        self._handlers[key] = handler
        self._help[key] = help_text
        for alias in aliases:
            self._handlers[alias.lower()] = handler

    async def handle(
        self,
        engine: Engine,
        line: str,
        emit: CommandEmitter | None = None,
    ) -> str | None:
        """
        Handle a string like "/command args".
        Returns a reply string or None if not a command.
        """
        if not line.startswith("/"):
            return None

        parts = line[1:].split()
        if not parts:
            return "Empty command. Use /help to list available commands."

        name = parts[0].lower()
        args = parts[1:]

        handler = self._handlers.get(name)
        if not handler:
            return f"Unknown command: /{name}. Use /help to list available commands."

        try:
            return await handler(engine, args, emit)
        except ValueError as e:
            return f"Invalid input: {e}"
        except TaskMirrorError as e:
            logger.info("/%s failed: %s: %s", name, type(e).__name__, e)
            return f"Remote store error ({type(e).__name__}): {e}"

    def build_help(self) -> str:
        lines = ["Available commands:"]
        for name, help_text in self._help.items():
            lines.append(f"  /{name} - {help_text}")
        return "\n".join(lines)


registry = CommandRegistry()


def format_duration(ms: int) -> str:
    total = max(0, int(ms)) // 1000
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h}h {m:02d}m {s:02d}s"


def _resolve(engine: Engine, ref: str) -> Task | None:
    """A task by 1-based list position, exact id or unique id prefix."""
    tasks = engine.mirror.get_all()
    if ref.isdigit():
        idx = int(ref) - 1
        return tasks[idx] if 0 <= idx < len(tasks) else None
    exact = engine.mirror.get_by_id(ref)
    if exact is not None:
        return exact
    matches = [t for t in tasks if t.id.startswith(ref)]
    return matches[0] if len(matches) == 1 else None


def _format_task(engine: Engine, pos: int, task: Task) -> str:
    mark = "x" if task.completed else " "
    elapsed = task.elapsed_time
    if task.is_tracking and task.tracking_start_time is not None:
        elapsed += max(0, engine.clock() - task.tracking_start_time)
    line = f"{pos:>3}. [{mark}] {task.description}  (due {task.deadline or '-'}, {format_duration(elapsed)})"
    if task.is_tracking:
        line += "  <tracking>"
    line += f"  id={task.id}"
    for i, item in enumerate(task.checklist_items(), start=1):
        line += f"\n       {i}) [{'x' if item.completed else ' '}] {item.prompt}"
    return line


async def cmd_help(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    return registry.build_help()


async def cmd_list(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    tasks = engine.mirror.get_all()
    if not tasks:
        return "No tasks yet. Use /add <YYYY-MM-DDTHH:MM> <description>."
    return "\n".join(_format_task(engine, i, t) for i, t in enumerate(tasks, start=1))


async def cmd_add(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /add <deadline> <description...>
    """
    if len(args) < 2:
        return "Usage: /add <YYYY-MM-DDTHH:MM> <description>"
    task_id = await engine.add_task(" ".join(args[1:]), args[0])
    suffix = " (saved locally; remote store is offline)" if engine.breaker.is_open else ""
    return f"Task added: id={task_id}{suffix}"


async def cmd_done(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /done <n|id>"
    task = _resolve(engine, args[0])
    if task is None or not await engine.toggle_complete(task.id):
        return f"No such task: {args[0]}"
    now = engine.mirror.get_by_id(task.id)
    return f"Task {'completed' if now and now.completed else 'reopened'}: {task.description}"


async def cmd_del(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /del <n|id>"
    task = _resolve(engine, args[0])
    if task is None or not await engine.delete_task(task.id):
        return f"No such task: {args[0]}"
    return f"Task deleted: {task.description}"


async def cmd_track(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not args:
        return "Usage: /track <n|id>"
    task = _resolve(engine, args[0])
    if task is None:
        return f"No such task: {args[0]}"
    if task.completed:
        return "Completed tasks cannot be tracked."
    was_tracking = task.is_tracking
    await engine.toggle_tracking(task.id)
    return f"Tracking {'stopped' if was_tracking else 'started'}: {task.description}"


async def cmd_stop(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if not await engine.stop_tracking():
        return "Nothing is being tracked."
    return "Tracking stopped."


async def cmd_desc(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) < 2:
        return "Usage: /desc <n|id> <new description>"
    task = _resolve(engine, args[0])
    if task is None:
        return f"No such task: {args[0]}"
    if not engine.update_description(task.id, " ".join(args[1:])):
        return "Description unchanged."
    return "Description updated (syncs after a short pause)."


async def cmd_deadline(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) != 2:
        return "Usage: /deadline <n|id> <YYYY-MM-DDTHH:MM>"
    task = _resolve(engine, args[0])
    if task is None:
        return f"No such task: {args[0]}"
    engine.update_deadline(task.id, args[1])
    return "Deadline updated (syncs after a short pause)."


async def cmd_move(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /move <from> <to>  -> drop task <from> onto the position of task <to>
    """
    if len(args) != 2:
        return "Usage: /move <n|id> <n|id>"
    dragged = _resolve(engine, args[0])
    target = _resolve(engine, args[1])
    if dragged is None or target is None:
        return "No such task."
    changes = await engine.reorder(dragged.id, target.id)
    return f"Moved. {len(changes)} task(s) renumbered."


async def cmd_stats(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    stats = engine.mirror.stats
    idling = stats.total_idling_time + engine.tracker.current_idling_ms()
    tracking = engine.tracking_task_id
    lines = [
        "Stats:",
        f"  Focus:   {format_duration(stats.total_focus_time)}",
        f"  Idling:  {format_duration(idling)}",
        f"  Pending idling (not yet synced): {format_duration(engine.tracker.pending_idling_ms)}",
    ]
    if tracking:
        task = engine.mirror.get_by_id(tracking)
        lines.append(f"  Tracking: {task.description if task else tracking}")
    return "\n".join(lines)


async def cmd_reset(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    await engine.reset_stats()
    return "Focus and idling totals reset."


async def cmd_remark(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /remark          -> show remark
    /remark <text>   -> replace remark
    """
    if not args:
        return f"Remark: {engine.mirror.remark or '(empty)'}"
    synced = await engine.save_remark(" ".join(args))
    return "Remark saved." if synced else "Remark saved locally."


async def cmd_check(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if len(args) != 2 or not args[1].isdigit():
        return "Usage: /check <n|id> <item number>"
    task = _resolve(engine, args[0])
    if task is None:
        return f"No such task: {args[0]}"
    if not await engine.toggle_checklist_item(task.id, int(args[1]) - 1):
        return "No such checklist item."
    return "Checklist item toggled."


async def cmd_test(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    if emit:
        with contextlib.suppress(Exception):
            emit("[SYNC] Probing remote store...")
    report = await engine.test_connection()
    lines = [
        "Connection test:",
        f"  Read:  {'OK' if report.read_ok else 'FAILED'}",
        f"  Write: {'OK' if report.write_ok else 'FAILED'}",
    ]
    if report.quota_exceeded:
        lines.append("  Quota exceeded: running on local storage until a probe succeeds.")
    if report.error:
        lines.append(f"  Error: {report.error}")
    return "\n".join(lines)


async def cmd_status(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    cfg = engine.config
    breaker = engine.breaker
    return (
        "Status:\n"
        f"  User: {cfg.user_id or '(single-user)'}\n"
        f"  Tasks collection: {cfg.tasks_collection}\n"
        f"  Remote store: {'OFFLINE (quota breaker open)' if breaker.is_open else 'online'}\n"
        f"  Live listener: {'yes' if engine.reconciler.active else 'no'}\n"
        f"  Deferred writes: {len(engine.deferred)}\n"
        f"  Pending edits: {len(engine.coalescer.pending_keys)}"
    )


async def cmd_quota(engine: Engine, args: list[str], emit: CommandEmitter | None = None) -> str:
    """
    /quota on   -> make the demo remote store reject everything for quota
    /quota off  -> lift the simulated exhaustion (recovery happens on the next probe)
    """
    remote = engine.remote
    if not hasattr(remote, "fail_with"):
        return "Quota simulation needs the in-process remote store."
    if not args:
        return f"Breaker is {'OPEN' if engine.breaker.is_open else 'CLOSED'}. Use /quota on or /quota off."

    arg = args[0].lower()
    if arg in ("on", "1", "true", "yes"):
        remote.fail_with(StoreErrorKind.QUOTA_EXCEEDED)
        remote.break_listeners(StoreErrorKind.QUOTA_EXCEEDED)
        return "Simulating quota exhaustion."
    if arg in ("off", "0", "false", "no"):
        remote.clear_failure()
        if engine.breaker.is_open and await engine.breaker.probe_now():
            return "Quota restored; breaker closed and deferred writes replayed."
        return "Quota simulation lifted."
    return "Usage: /quota on or /quota off."


registry.register("help", cmd_help, help_text="Show available commands.", aliases=["h", "?"])
registry.register("list", cmd_list, help_text="List tasks in display order.", aliases=["ls"])
registry.register("add", cmd_add, help_text="Add a task: /add <YYYY-MM-DDTHH:MM> <description>.")
registry.register("done", cmd_done, help_text="Toggle completion: /done <n|id>.")
registry.register("del", cmd_del, help_text="Delete a task: /del <n|id>.", aliases=["rm"])
registry.register("track", cmd_track, help_text="Start/stop time tracking: /track <n|id>.")
registry.register("stop", cmd_stop, help_text="Stop time tracking.")
registry.register("desc", cmd_desc, help_text="Edit description: /desc <n|id> <text>.")
registry.register("deadline", cmd_deadline, help_text="Edit deadline: /deadline <n|id> <YYYY-MM-DDTHH:MM>.")
registry.register("move", cmd_move, help_text="Reorder: /move <n|id> <n|id>.")
registry.register("stats", cmd_stats, help_text="Show focus/idling totals.")
registry.register("reset", cmd_reset, help_text="Reset focus/idling totals.")
registry.register("remark", cmd_remark, help_text="Show or set the free-text remark.")
registry.register("check", cmd_check, help_text="Toggle a checklist item: /check <n|id> <item>.")
registry.register("test", cmd_test, help_text="Probe remote read/write access.")
registry.register("status", cmd_status, help_text="Show sync status (breaker/listener/pending writes).")
registry.register("quota", cmd_quota, help_text="Simulate quota exhaustion: /quota on | /quota off.")
