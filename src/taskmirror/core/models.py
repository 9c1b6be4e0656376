# src/taskmirror/core/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

UNORDERED = 999999

# Remote (camelCase) names of the fields the core understands.
_KNOWN_FIELDS = frozenset(
    {
        "description",
        "deadline",
        "completed",
        "elapsedTime",
        "isTracking",
        "trackingStartTime",
        "order",
        "createdAt",
        "codingChecklist",
        "link",
    }
)

# Python attribute name -> remote field name, for partial updates.
REMOTE_FIELD_NAMES: dict[str, str] = {
    "description": "description",
    "deadline": "deadline",
    "completed": "completed",
    "elapsed_time": "elapsedTime",
    "is_tracking": "isTracking",
    "tracking_start_time": "trackingStartTime",
    "order": "order",
    "created_at": "createdAt",
    "checklist": "codingChecklist",
    "link": "link",
}


def to_millis(raw: Any) -> int | None:
    """
    Coerce the remote representation of a timestamp into epoch milliseconds.

    Accepts ints/floats, numeric strings, datetimes and anything exposing
    timestamp() (e.g. store-native timestamp types). Returns None otherwise.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    if isinstance(raw, str):
        s = raw.strip()
        if not s:
            return None
        try:
            return int(float(s))
        except ValueError:
            pass
        try:
            return int(datetime.fromisoformat(s).timestamp() * 1000)
        except ValueError:
            return None
    ts = getattr(raw, "timestamp", None)
    if callable(ts):
        try:
            return int(float(ts()) * 1000)
        except Exception:
            return None
    return None


def remote_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Translate a partial update keyed by attribute names into remote names."""
    out: dict[str, Any] = {}
    for name, value in fields.items():
        remote = REMOTE_FIELD_NAMES.get(name, name)
        if name == "checklist" and value is not None:
            value = [dict(item) for item in value]
        out[remote] = value
    return out


@dataclass(frozen=True, slots=True)
class ChecklistItem:
    prompt: str = ""
    outcome: str = ""
    rationale: str = ""
    completed: bool = False

    @classmethod
    def from_raw(cls, raw: Any) -> ChecklistItem:
        if not isinstance(raw, dict):
            return cls(prompt=str(raw or ""))
        return cls(
            prompt=str(raw.get("prompt", "") or ""),
            outcome=str(raw.get("outcome", "") or ""),
            rationale=str(raw.get("rationale", "") or ""),
            completed=bool(raw.get("completed", False)),
        )


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    description: str
    deadline: str
    completed: bool = False
    elapsed_time: int = 0
    is_tracking: bool = False
    tracking_start_time: int | None = None
    order: int | None = None
    created_at: int = 0

    # Extension payload: opaque to the core, written back untouched.
    checklist: tuple[dict[str, Any], ...] | None = None
    link: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_order(self) -> int:
        return self.order if self.order is not None else UNORDERED

    def checklist_items(self) -> list[ChecklistItem]:
        return [ChecklistItem.from_raw(raw) for raw in (self.checklist or ())]

    @classmethod
    def from_remote(cls, doc_id: str, data: Any) -> Task:
        """
        Build a Task from a raw remote record.

        Raises ValueError when the record cannot represent a task at all;
        individual malformed fields are coerced to safe defaults instead.
        """
        if not doc_id:
            raise ValueError("record without id")
        if not isinstance(data, dict):
            raise ValueError(f"record {doc_id} is not a mapping")

        elapsed_raw = data.get("elapsedTime")
        if isinstance(elapsed_raw, (int, float)) and not isinstance(elapsed_raw, bool) and elapsed_raw >= 0:
            elapsed = int(elapsed_raw)
        else:
            elapsed = 0

        order_raw = data.get("order")
        if isinstance(order_raw, (int, float)) and not isinstance(order_raw, bool):
            order: int | None = int(order_raw)
        else:
            order = None

        checklist_raw = data.get("codingChecklist")
        checklist = tuple(dict(x) if isinstance(x, dict) else x for x in checklist_raw) if isinstance(
            checklist_raw, list
        ) else None

        tracking_start = to_millis(data.get("trackingStartTime"))
        # A tracking flag with no usable start time cannot be credited.
        is_tracking = bool(data.get("isTracking", False)) and tracking_start is not None

        link_raw = data.get("link")
        return cls(
            id=str(doc_id),
            description=str(data.get("description", "") or ""),
            deadline=str(data.get("deadline", "") or ""),
            completed=bool(data.get("completed", False)),
            elapsed_time=elapsed,
            is_tracking=is_tracking,
            tracking_start_time=tracking_start if is_tracking else None,
            order=order,
            created_at=to_millis(data.get("createdAt")) or 0,
            checklist=checklist,
            link=str(link_raw) if link_raw else None,
            extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )

    def to_remote(self) -> dict[str, Any]:
        out: dict[str, Any] = dict(self.extra)
        out.update(
            {
                "description": self.description,
                "deadline": self.deadline,
                "completed": self.completed,
                "elapsedTime": self.elapsed_time,
                "isTracking": self.is_tracking,
                "trackingStartTime": self.tracking_start_time,
                "order": self.order,
                "createdAt": self.created_at,
            }
        )
        if self.checklist is not None:
            out["codingChecklist"] = [dict(x) if isinstance(x, dict) else x for x in self.checklist]
        if self.link is not None:
            out["link"] = self.link
        return out


def task_sort_key(task: Task, insertion_index: int = 0) -> tuple[int, int, int]:
    """order ascending, createdAt descending, insertion order ascending."""
    return (task.sort_order, -task.created_at, insertion_index)


def sort_tasks(tasks: list[Task]) -> list[Task]:
    indexed = list(enumerate(tasks))
    indexed.sort(key=lambda pair: task_sort_key(pair[1], pair[0]))
    return [t for _, t in indexed]


@dataclass(frozen=True, slots=True)
class Stats:
    total_focus_time: int = 0
    total_idling_time: int = 0
    last_reset_time: int | None = None

    @classmethod
    def from_remote(cls, data: Any) -> Stats:
        if not isinstance(data, dict):
            return cls()

        def _ms(raw: Any) -> int:
            v = to_millis(raw)
            return v if v is not None and v > 0 else 0

        return cls(
            total_focus_time=_ms(data.get("totalFocusTime")),
            total_idling_time=_ms(data.get("totalIdlingTime")),
            last_reset_time=to_millis(data.get("lastResetTime")) or None,
        )

    def to_remote(self) -> dict[str, Any]:
        return {
            "totalFocusTime": self.total_focus_time,
            "totalIdlingTime": self.total_idling_time,
            "lastResetTime": self.last_reset_time,
        }
