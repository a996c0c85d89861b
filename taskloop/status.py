"""Runtime status resolution.

Three sources can say something about a task, and they sometimes disagree:
- the plan annotation (`Task.status`), edited by hand or written back after verification,
- the session log (current task plus the `completed`/`failed`/`skipped` sets),
- commit markers: `[task-NNN]` tags found in recent commit messages.

`resolve_status_info` merges them with a fixed precedence, highest first:
1. plan annotation `Implemented`/`Verified` -> completed, whatever else says,
2. session: current task -> in-progress; `completed` -> completed; `failed` -> failed;
   `skipped` -> completed (skipped tasks satisfy their dependents),
3. commit marker -> completed, only when the session said nothing about the task,
4. otherwise inferred: blocked when some dependency is not completed, else pending.

Step 4 depends on the resolved status of other tasks, so each task is resolved lazily
with memoization. A dependency that is missing from the plan, or that is reached again
while it is still being resolved (a cycle), counts as not completed.

Nothing here mutates its inputs.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from .plan import Plan, Task

if TYPE_CHECKING:
    from .git_ops import CommitInfo
    from .session import ExecutionSession

_MARKER_RE = re.compile(r"\[(task-\d+)\]")


class RuntimeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"


class StatusSource(str, Enum):
    PLAN = "plan"
    SESSION = "session"
    GIT = "git"
    INFERRED = "inferred"


@dataclass(frozen=True)
class TaskStatusInfo:
    task_id: str
    status: RuntimeStatus
    source: StatusSource
    session_id: str | None = None
    commit_hash: str | None = None
    reason: str = ""


@dataclass(frozen=True)
class ProgressSummary:
    total: int
    completed: int
    in_progress: int
    blocked: int
    failed: int
    pending: int
    percentage: int


def parse_commit_markers(commits: Iterable["CommitInfo"]) -> dict[str, str]:
    """Map task IDs to the hash of the first commit (newest first) whose message tags them."""
    markers: dict[str, str] = {}
    for commit in commits:
        for task_id in _MARKER_RE.findall(commit.message):
            markers.setdefault(task_id, commit.hash)
    return markers


def resolve_status_info(
    plan: Plan,
    session: "ExecutionSession | None" = None,
    commit_markers: Mapping[str, str] | None = None,
) -> dict[str, TaskStatusInfo]:
    by_id: dict[str, Task] = {}
    for task in plan.tasks:
        by_id.setdefault(task.id, task)
    markers = commit_markers or {}
    resolved: dict[str, TaskStatusInfo] = {}
    visiting: set[str] = set()

    def direct(task: Task) -> TaskStatusInfo | None:
        if task.status.is_done:
            return TaskStatusInfo(task.id, RuntimeStatus.COMPLETED, StatusSource.PLAN, reason=f"marked {task.status.value}")
        if session is not None:
            sid = session.session_id
            if session.current_task_id == task.id:
                return TaskStatusInfo(task.id, RuntimeStatus.IN_PROGRESS, StatusSource.SESSION, session_id=sid)
            if task.id in session.completed:
                reason = "retries exhausted" if task.id in session.failed else "completed in session"
                return TaskStatusInfo(task.id, RuntimeStatus.COMPLETED, StatusSource.SESSION, session_id=sid, reason=reason)
            if task.id in session.failed:
                return TaskStatusInfo(task.id, RuntimeStatus.FAILED, StatusSource.SESSION, session_id=sid)
            if task.id in session.skipped:
                return TaskStatusInfo(task.id, RuntimeStatus.COMPLETED, StatusSource.SESSION, session_id=sid, reason="skipped")
        if task.id in markers:
            return TaskStatusInfo(task.id, RuntimeStatus.COMPLETED, StatusSource.GIT, commit_hash=markers[task.id])
        return None

    def resolve(task_id: str) -> RuntimeStatus | None:
        if task_id in resolved:
            return resolved[task_id].status
        task = by_id.get(task_id)
        if task is None or task_id in visiting:
            return None
        visiting.add(task_id)
        try:
            info = direct(task)
            if info is None:
                unmet = [d for d in task.dependencies if resolve(d) is not RuntimeStatus.COMPLETED]
                if unmet:
                    info = TaskStatusInfo(
                        task.id, RuntimeStatus.BLOCKED, StatusSource.INFERRED, reason=f"waiting on {', '.join(unmet)}"
                    )
                else:
                    info = TaskStatusInfo(task.id, RuntimeStatus.PENDING, StatusSource.INFERRED)
        finally:
            visiting.discard(task_id)
        resolved[task_id] = info
        return info.status

    for task_id in by_id:
        resolve(task_id)
    return {task_id: resolved[task_id] for task_id in by_id}


def resolve_statuses(
    plan: Plan,
    session: "ExecutionSession | None" = None,
    commit_markers: Mapping[str, str] | None = None,
) -> dict[str, RuntimeStatus]:
    return {tid: info.status for tid, info in resolve_status_info(plan, session, commit_markers).items()}


def progress_summary(statuses: Mapping[str, RuntimeStatus]) -> ProgressSummary:
    counts = {s: 0 for s in RuntimeStatus}
    for status in statuses.values():
        counts[status] += 1
    total = len(statuses)
    completed = counts[RuntimeStatus.COMPLETED]
    # Round half up: 1/3 -> 33, 1/8 -> 13.
    percentage = (completed * 200 + total) // (2 * total) if total else 0
    return ProgressSummary(
        total=total,
        completed=completed,
        in_progress=counts[RuntimeStatus.IN_PROGRESS],
        blocked=counts[RuntimeStatus.BLOCKED],
        failed=counts[RuntimeStatus.FAILED],
        pending=counts[RuntimeStatus.PENDING],
        percentage=percentage,
    )
