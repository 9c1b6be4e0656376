# src/taskmirror/sync/reorder.py

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from ..core.models import Task


@dataclass(frozen=True, slots=True)
class OrderChange:
    task_id: str
    old_order: int | None
    new_order: int


def plan_reorder(tasks: Sequence[Task], dragged_id: str, target_id: str) -> list[OrderChange]:
    """
    Compute the order writes needed after dropping `dragged_id` onto `target_id`.

    `tasks` must be in display order. The dragged task is removed and reinserted
    at the target's index (so it lands before the target when moving up and after
    it when moving down), then the whole list gets compact ascending orders.
    Only tasks whose new order differs from the stored one are returned.
    """
    ids = [t.id for t in tasks]
    dragged_id, target_id = str(dragged_id), str(target_id)
    if dragged_id == target_id or dragged_id not in ids or target_id not in ids:
        return []

    from_index = ids.index(dragged_id)
    to_index = ids.index(target_id)

    reordered = list(tasks)
    moved = reordered.pop(from_index)
    reordered.insert(to_index, moved)

    return [
        OrderChange(task_id=t.id, old_order=t.order, new_order=index)
        for index, t in enumerate(reordered)
        if t.order != index
    ]
