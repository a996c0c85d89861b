"""taskloop.plan

In-memory plan model: a `Plan` is an ordered list of `Task`s with dependencies, a priority,
and acceptance criteria. The markdown form lives in `taskloop.markdown`; structural checks
(ID format, duplicates, dangling dependencies, cycles) live in `taskloop.dag`.

Two kinds of status exist and must not be confused:
- `Task.status` (`PlanStatus`) is the annotation written in the plan file, either by hand
  or by the executor's write-back after verification. `Implemented`/`Verified` mean done.
- The runtime status (`taskloop.status.RuntimeStatus`) is derived at scheduling time from
  the session log, commit history and this annotation.

Ownership
- A `Plan` is input to a run. The only mutation during execution is the write-back of
  acceptance-criteria completion and `status`, and it is expressed as `apply_verification`,
  which returns a new `Plan` instead of editing the one it was given.
- Task order is significant: it is the default scan order for scheduling and the
  tie-break for display.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field, replace
from enum import Enum

TASK_ID_RE = re.compile(r"^task-\d+$")


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class PlanStatus(str, Enum):
    TODO = "To Do"
    IN_PROGRESS = "In Progress"
    IMPLEMENTED = "Implemented"
    NEEDS_REWORK = "Needs Re-Work"
    VERIFIED = "Verified"

    @property
    def is_done(self) -> bool:
        return self in (PlanStatus.IMPLEMENTED, PlanStatus.VERIFIED)


@dataclass
class AcceptanceCriterion:
    text: str
    completed: bool = False


@dataclass
class Task:
    id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[AcceptanceCriterion] = field(default_factory=list)
    status: PlanStatus = PlanStatus.TODO
    tags: list[str] = field(default_factory=list)
    estimated_complexity: int | None = None
    spec_reference: str | None = None

    @property
    def criteria_texts(self) -> list[str]:
        return [c.text for c in self.acceptance_criteria]


@dataclass
class Plan:
    project_name: str
    description: str
    tasks: list[Task]
    generated_at: str
    total_tasks: int
    estimated_duration: str | None = None

    @property
    def task_ids(self) -> list[str]:
        return [t.id for t in self.tasks]

    def get_task(self, task_id: str) -> Task:
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise KeyError(f"Task not found: {task_id}")

    def tasks_with_priority(self, priority: Priority) -> list[Task]:
        return [t for t in self.tasks if t.priority == priority]

    def tasks_with_tag(self, tag: str) -> list[Task]:
        return [t for t in self.tasks if tag in t.tags]

    def replace_task(self, task: Task) -> "Plan":
        """Return a copy of this plan with `task` swapped in for the task of the same id."""
        self.get_task(task.id)
        tasks = [task if t.id == task.id else copy.deepcopy(t) for t in self.tasks]
        return replace(self, tasks=tasks)


def apply_verification(plan: Plan, task_id: str, *, passed: list[str], failed: list[str]) -> Plan:
    """Return a new plan carrying the verifier's verdict for one task.

    Each criterion's `completed` flag becomes "its text is in `passed`". The annotation moves
    to `Implemented` when nothing failed, to `Needs Re-Work` when some but not all criteria
    passed, and is left alone when none passed.
    """
    task = plan.get_task(task_id)
    passed_set = set(passed)
    criteria = [AcceptanceCriterion(text=c.text, completed=c.text in passed_set) for c in task.acceptance_criteria]

    status = task.status
    if not failed:
        status = PlanStatus.IMPLEMENTED
    elif passed:
        status = PlanStatus.NEEDS_REWORK

    updated = replace(
        task,
        acceptance_criteria=criteria,
        status=status,
        dependencies=list(task.dependencies),
        tags=list(task.tags),
    )
    return plan.replace_task(updated)
