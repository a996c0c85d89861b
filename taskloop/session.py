"""taskloop.session

Durable record of one execution run, persisted as `.taskloop/sessions/<session-id>.json`.

An `ExecutionSession` is the single source of truth for "what happened": which task is
being attempted right now, which tasks are settled (`completed`, `skipped`, `failed`),
and an append-only `task_history` with one `TaskExecution` record per attempt (a task
retried three times has three records).

Persisted shape (UTF-8 JSON, `indent=2`, trailing newline)
- `session_id`, `plan_path`, `started_at`, `last_activity` (ISO-8601 UTC strings)
- `completed`, `skipped`, `failed`: sorted arrays of task IDs
- `current_task_id`: string or null
- `task_history`: array of records with `task_id`, `status`, `started_at`,
  `completed_at`, `duration_ms`, `attempt_number`, `error`, `result`

Durability
- `SessionStore.save` writes a temp file in the sessions directory and `os.replace`s it
  over the target, so a crash mid-write leaves the previous checkpoint intact.
- The latest session is found through `index.json`, a manifest listing session IDs in
  creation order. Session IDs embed the UTC creation time down to microseconds, so they
  also sort lexicographically in creation order.
- Errors writing either file propagate: losing the checkpoint ends the run.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping


class ExecutionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat()


@dataclass
class TaskResult:
    files_added: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    output: str = ""
    commit_hash: str | None = None
    criteria_passed: list[str] = field(default_factory=list)
    criteria_failed: list[str] = field(default_factory=list)

    @property
    def files_changed(self) -> list[str]:
        return [*self.files_added, *self.files_modified, *self.files_deleted]

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "TaskResult":
        return TaskResult(
            files_added=[str(x) for x in (d.get("files_added") or [])],
            files_modified=[str(x) for x in (d.get("files_modified") or [])],
            files_deleted=[str(x) for x in (d.get("files_deleted") or [])],
            output=str(d.get("output") or ""),
            commit_hash=(str(d["commit_hash"]) if d.get("commit_hash") is not None else None),
            criteria_passed=[str(x) for x in (d.get("criteria_passed") or [])],
            criteria_failed=[str(x) for x in (d.get("criteria_failed") or [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "files_added": list(self.files_added),
            "files_modified": list(self.files_modified),
            "files_deleted": list(self.files_deleted),
            "output": self.output,
            "commit_hash": self.commit_hash,
            "criteria_passed": list(self.criteria_passed),
            "criteria_failed": list(self.criteria_failed),
        }


@dataclass
class TaskExecution:
    task_id: str
    status: ExecutionStatus
    started_at: str
    attempt_number: int
    completed_at: str | None = None
    duration_ms: int | None = None
    error: str | None = None
    result: TaskResult | None = None

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "TaskExecution":
        result = d.get("result")
        return TaskExecution(
            task_id=str(d["task_id"]),
            status=ExecutionStatus(str(d["status"])),
            started_at=str(d["started_at"]),
            attempt_number=int(d["attempt_number"]),
            completed_at=(str(d["completed_at"]) if d.get("completed_at") is not None else None),
            duration_ms=(int(d["duration_ms"]) if d.get("duration_ms") is not None else None),
            error=(str(d["error"]) if d.get("error") is not None else None),
            result=(TaskResult.from_dict(result) if isinstance(result, Mapping) else None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "attempt_number": self.attempt_number,
            "error": self.error,
            "result": (self.result.to_dict() if self.result is not None else None),
        }


@dataclass
class ExecutionSession:
    session_id: str
    plan_path: str
    started_at: str
    last_activity: str
    completed: set[str] = field(default_factory=set)
    skipped: set[str] = field(default_factory=set)
    failed: set[str] = field(default_factory=set)
    current_task_id: str | None = None
    task_history: list[TaskExecution] = field(default_factory=list)

    def attempt_count(self, task_id: str) -> int:
        """Number of history records for `task_id`, including an unfinished one."""
        return len(self.attempts(task_id))

    def attempts(self, task_id: str) -> list[TaskExecution]:
        return [e for e in self.task_history if e.task_id == task_id]

    def begin_attempt(self, task_id: str, *, now: datetime | None = None) -> TaskExecution:
        now = now or utc_now()
        execution = TaskExecution(
            task_id=task_id,
            status=ExecutionStatus.IN_PROGRESS,
            started_at=_iso(now),
            attempt_number=self.attempt_count(task_id) + 1,
        )
        self.task_history.append(execution)
        self.current_task_id = task_id
        self.last_activity = _iso(now)
        return execution

    def finish_attempt(
        self,
        execution: TaskExecution,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        result: TaskResult | None = None,
        now: datetime | None = None,
    ) -> None:
        if status == ExecutionStatus.IN_PROGRESS:
            raise ValueError("finish_attempt needs a terminal status")
        now = now or utc_now()
        execution.status = status
        execution.completed_at = _iso(now)
        started = datetime.fromisoformat(execution.started_at)
        execution.duration_ms = max(0, int((now - started).total_seconds() * 1000))
        execution.error = (error or "unknown error") if status == ExecutionStatus.FAILED else None
        execution.result = result
        self.last_activity = _iso(now)

    def mark_completed(self, task_id: str) -> None:
        self.completed.add(task_id)
        self.failed.discard(task_id)

    def mark_skipped(self, task_id: str) -> None:
        self.skipped.add(task_id)

    def mark_exhausted(self, task_id: str) -> None:
        """Retries ran out: the task stays failed but no longer blocks its dependents."""
        self.failed.add(task_id)
        self.completed.add(task_id)

    def clear_current(self, *, now: datetime | None = None) -> None:
        self.current_task_id = None
        self.last_activity = _iso(now or utc_now())

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "ExecutionSession":
        return ExecutionSession(
            session_id=str(d["session_id"]),
            plan_path=str(d["plan_path"]),
            started_at=str(d["started_at"]),
            last_activity=str(d.get("last_activity") or d["started_at"]),
            completed={str(x) for x in (d.get("completed") or [])},
            skipped={str(x) for x in (d.get("skipped") or [])},
            failed={str(x) for x in (d.get("failed") or [])},
            current_task_id=(str(d["current_task_id"]) if d.get("current_task_id") is not None else None),
            task_history=[TaskExecution.from_dict(x) for x in (d.get("task_history") or [])],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "plan_path": self.plan_path,
            "started_at": self.started_at,
            "last_activity": self.last_activity,
            "completed": sorted(self.completed),
            "skipped": sorted(self.skipped),
            "failed": sorted(self.failed),
            "current_task_id": self.current_task_id,
            "task_history": [e.to_dict() for e in self.task_history],
        }


class SessionStore:
    INDEX_NAME = "index.json"

    def __init__(self, sessions_dir: Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.sessions_dir = sessions_dir
        self._clock = clock

    @property
    def index_path(self) -> Path:
        return self.sessions_dir / self.INDEX_NAME

    def path_for(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def create(self, plan_path: Path | str) -> ExecutionSession:
        now = self._clock()
        ids = self.list_ids()
        base = f"session-{now.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')}"
        session_id = base
        n = 1
        while session_id in ids or self.path_for(session_id).exists():
            n += 1
            session_id = f"{base}-{n}"
        session = ExecutionSession(
            session_id=session_id,
            plan_path=str(plan_path),
            started_at=_iso(now),
            last_activity=_iso(now),
        )
        self.save(session)
        self._write_json(self.index_path, {"sessions": [*ids, session_id]})
        return session

    def save(self, session: ExecutionSession) -> None:
        self._write_json(self.path_for(session.session_id), session.to_dict())

    def load(self, session_id: str) -> ExecutionSession:
        path = self.path_for(session_id)
        if not path.exists():
            raise FileNotFoundError(f"Session not found: {session_id}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"expected a JSON object, got {type(raw).__name__}")
            return ExecutionSession.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed session file {path}: {e}") from e

    def list_ids(self) -> list[str]:
        if not self.index_path.exists():
            return []
        raw = json.loads(self.index_path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict) or not isinstance(raw.get("sessions"), list):
            raise ValueError(f"Malformed session index {self.index_path}")
        return [str(x) for x in raw["sessions"]]

    def latest(self) -> ExecutionSession | None:
        ids = self.list_ids()
        return self.load(ids[-1]) if ids else None

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(json.dumps(payload, indent=2, ensure_ascii=True) + "\n")
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise
