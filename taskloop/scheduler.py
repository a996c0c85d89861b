"""Pick the next task to attempt.

A task is eligible when its own runtime status is not `completed` (skipped tasks resolve to
`completed` too) and every dependency resolves to `completed`. A `failed` task whose
dependencies are met is picked again; the executor bounds that with `max_retries`.

Policies
- `PRIORITY` (default): highest priority first (high > medium > low), ties broken by ID
  ascending on the numeric suffix, so `task-9` comes before `task-10`.
- `PLAN_ORDER`: the first eligible task in the order the plan lists them.

`next_task` returning `None` ends the run: either everything is done or what remains waits
on a dependency that never reached `completed`.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import Enum

from .plan import Plan, Task
from .status import RuntimeStatus

_ID_NUMBER_RE = re.compile(r"(\d+)$")


class SchedulePolicy(str, Enum):
    PRIORITY = "priority"
    PLAN_ORDER = "plan-order"


def eligible_tasks(plan: Plan, statuses: Mapping[str, RuntimeStatus]) -> list[Task]:
    """Eligible tasks, in plan order."""
    out: list[Task] = []
    for task in plan.tasks:
        if statuses.get(task.id) is RuntimeStatus.COMPLETED:
            continue
        if all(statuses.get(dep) is RuntimeStatus.COMPLETED for dep in task.dependencies):
            out.append(task)
    return out


def next_task(
    plan: Plan,
    statuses: Mapping[str, RuntimeStatus],
    *,
    policy: SchedulePolicy = SchedulePolicy.PRIORITY,
) -> Task | None:
    candidates = eligible_tasks(plan, statuses)
    if not candidates:
        return None
    if policy == SchedulePolicy.PLAN_ORDER:
        return candidates[0]
    return min(candidates, key=lambda t: (t.priority.rank, _id_sort_key(t.id)))


def _id_sort_key(task_id: str) -> tuple[int, str]:
    m = _ID_NUMBER_RE.search(task_id)
    return (int(m.group(1)) if m else -1, task_id)
