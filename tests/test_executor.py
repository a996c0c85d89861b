from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

import taskloop.executor as executor_mod
from taskloop.agents import AgentResult
from taskloop.dag import PlanValidationError
from taskloop.executor import Executor, ExecutorConfig, commit_message
from taskloop.git_ops import CommitInfo
from taskloop.markdown import load_plan, save_plan
from taskloop.plan import AcceptanceCriterion, Plan, PlanStatus, Task
from taskloop.session import ExecutionStatus, SessionStore, TaskResult


class _FakeAgent:
    def __init__(self, script: dict[str, list[AgentResult | Exception]] | None = None) -> None:
        self.script = script or {}
        self.calls: list[str] = []
        self.prompt_files: list[Path] = []
        self.log_files: list[Path | None] = []

    def execute(self, *, task: Task, prompt_file: Path, cwd: Path, log_file: Path | None = None) -> AgentResult:
        self.calls.append(task.id)
        self.prompt_files.append(prompt_file)
        self.log_files.append(log_file)
        queue = self.script.get(task.id) or []
        outcome = queue.pop(0) if queue else AgentResult(success=True, files_added=[f"src/{task.id}.py"])
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class _FakeVerifier:
    def __init__(self, failing: set[str] | None = None, raising: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.raising = raising or set()
        self.calls: list[str] = []

    def verify(self, *, criterion: str, cwd: Path) -> bool:
        self.calls.append(criterion)
        if criterion in self.raising:
            raise RuntimeError("verifier down")
        return criterion not in self.failing


class _FakeGit:
    def __init__(self, *, commits: list[CommitInfo] | None = None, commit_error: Exception | None = None) -> None:
        self.commits = commits or []
        self.commit_error = commit_error
        self.committed: list[tuple[list[str], str]] = []

    def log(self, *, cwd: Path, max_count: int = 100) -> list[CommitInfo]:
        return list(self.commits)

    def commit_paths(self, paths: list[str], *, cwd: Path, message: str) -> str | None:
        if self.commit_error is not None:
            raise self.commit_error
        self.committed.append((list(paths), message))
        return f"{len(self.committed):040d}"


def _task(task_id: str, deps: list[str] | None = None, criteria: list[str] | None = None) -> Task:
    return Task(
        id=task_id,
        title=f"Title {task_id}",
        description=f"Do {task_id}.",
        dependencies=deps or [],
        acceptance_criteria=[AcceptanceCriterion(c) for c in (criteria if criteria is not None else [f"{task_id} ok"])],
    )


def _write_plan(root: Path, *tasks: Task) -> Path:
    path = root / "PLAN.md"
    plan = Plan(project_name="demo", description="Demo.", tasks=list(tasks), generated_at="now", total_tasks=len(tasks))
    save_plan(path, plan)
    return path


def _cfg(root: Path, plan_path: Path, **kw) -> ExecutorConfig:
    kw.setdefault("agent", _FakeAgent())
    kw.setdefault("verifier", _FakeVerifier())
    kw.setdefault("git", _FakeGit())
    return ExecutorConfig(control_root=root, plan_path=plan_path, **kw)


def test_runs_tasks_in_dependency_order_and_records_success(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-002", ["task-001"]), _task("task-001"))
    agent = _FakeAgent()
    git = _FakeGit()
    cfg = _cfg(tmp_path, plan_path, agent=agent, git=git)

    session = Executor(cfg).run()

    assert agent.calls == ["task-001", "task-002"]
    assert session.completed == {"task-001", "task-002"}
    assert session.failed == set()
    assert session.current_task_id is None
    assert [e.status for e in session.task_history] == [ExecutionStatus.COMPLETED] * 2
    first = session.task_history[0]
    assert first.attempt_number == 1
    assert first.result is not None
    assert first.result.criteria_passed == ["task-001 ok"]
    assert first.result.commit_hash == f"{1:040d}"

    assert [paths for paths, _ in git.committed] == [["src/task-001.py"], ["src/task-002.py"]]
    assert git.committed[0][1].startswith("[task-001] Title task-001\n")

    on_disk = load_plan(plan_path)
    assert all(t.status == PlanStatus.IMPLEMENTED for t in on_disk.tasks)
    assert all(c.completed for t in on_disk.tasks for c in t.acceptance_criteria)

    assert agent.prompt_files[0] == tmp_path / ".taskloop" / "renders" / "task-001-agent.md"
    assert "I am in charge of task-001" in agent.prompt_files[0].read_text(encoding="utf-8")
    assert agent.log_files[0] == tmp_path / ".taskloop" / "logs" / f"{session.session_id}-task-001.log"

    stored = SessionStore(cfg.sessions_dir).latest()
    assert stored == session


def test_failed_task_is_retried_then_exhausted_so_dependents_run(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001", criteria=["a"]), _task("task-002", ["task-001"]))
    agent = _FakeAgent()
    cfg = _cfg(tmp_path, plan_path, agent=agent, verifier=_FakeVerifier(failing={"a"}), max_retries=3)

    session = Executor(cfg).run()

    assert agent.calls == ["task-001", "task-001", "task-001", "task-002"]
    records = session.attempts("task-001")
    assert [r.attempt_number for r in records] == [1, 2, 3]
    assert all(r.status == ExecutionStatus.FAILED for r in records)
    assert records[0].error == "Acceptance criteria not met (0/1 passed):\n  - a"
    assert session.failed == {"task-001"}
    assert session.completed == {"task-001", "task-002"}
    assert load_plan(plan_path).get_task("task-001").status == PlanStatus.TODO


def test_partial_pass_is_written_back_as_needs_rework(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001", criteria=["a", "b"]))
    cfg = _cfg(tmp_path, plan_path, verifier=_FakeVerifier(failing={"b"}), max_retries=1)

    session = Executor(cfg).run()

    task = load_plan(plan_path).get_task("task-001")
    assert task.status == PlanStatus.NEEDS_REWORK
    assert [(c.text, c.completed) for c in task.acceptance_criteria] == [("a", True), ("b", False)]
    assert session.task_history[0].result.criteria_failed == ["b"]


def test_agent_exception_and_failure_fail_the_attempt(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002"))
    agent = _FakeAgent(
        {
            "task-001": [RuntimeError("kaput")],
            "task-002": [AgentResult(success=False, error="Agent exited with code 2")],
        }
    )
    verifier = _FakeVerifier()
    cfg = _cfg(tmp_path, plan_path, agent=agent, verifier=verifier, max_retries=1)

    session = Executor(cfg).run()

    errors = {e.task_id: e.error for e in session.task_history}
    assert errors == {"task-001": "Agent raised RuntimeError: kaput", "task-002": "Agent exited with code 2"}
    assert verifier.calls == []
    assert session.failed == {"task-001", "task-002"}


def test_raising_verifier_counts_as_failed_criterion(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001", criteria=["a", "b"]))
    cfg = _cfg(tmp_path, plan_path, verifier=_FakeVerifier(raising={"a"}), max_retries=1)

    session = Executor(cfg).run()

    result = session.task_history[0].result
    assert result is not None
    assert result.criteria_passed == ["b"]
    assert result.criteria_failed == ["a"]


def test_commit_and_write_back_failures_are_not_fatal(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"))
    git = _FakeGit(commit_error=subprocess.CalledProcessError(1, ["git", "commit"]))

    def broken_save(path: Path, plan: Plan) -> None:
        raise OSError("read-only")

    monkeypatch.setattr(executor_mod, "save_plan", broken_save)
    cfg = _cfg(tmp_path, plan_path, git=git)

    session = Executor(cfg).run()

    assert session.completed == {"task-001"}
    assert session.task_history[0].result.commit_hash is None
    assert load_plan(plan_path).get_task("task-001").status == PlanStatus.TODO


def test_no_commit_when_disabled_or_only_state_files_changed(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002"))
    agent = _FakeAgent({"task-001": [AgentResult(success=True, files_modified=[".taskloop/renders/x.md"])]})
    git = _FakeGit()

    Executor(_cfg(tmp_path, plan_path, agent=agent, git=git)).run()
    assert [paths for paths, _ in git.committed] == [["src/task-002.py"]]

    other = tmp_path / "other"
    other.mkdir()
    plan_path = _write_plan(other, _task("task-001"))
    git = _FakeGit()
    Executor(_cfg(other, plan_path, git=git, auto_commit=False)).run()
    assert git.committed == []


def test_resume_clears_interrupted_task_and_counts_its_attempt(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    cfg = _cfg(tmp_path, plan_path)
    store = SessionStore(cfg.sessions_dir)
    crashed = store.create(plan_path)
    crashed.begin_attempt("task-001")
    store.save(crashed)

    session = Executor(cfg).run(resume=True)

    assert session.session_id == crashed.session_id
    assert store.list_ids() == [crashed.session_id]
    records = session.attempts("task-001")
    assert [(r.attempt_number, r.status) for r in records] == [
        (1, ExecutionStatus.IN_PROGRESS),
        (2, ExecutionStatus.COMPLETED),
    ]
    assert session.completed == {"task-001", "task-002"}


def test_resume_without_sessions_starts_a_new_one(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"))
    cfg = _cfg(tmp_path, plan_path)

    session = Executor(cfg).run(resume=True)

    assert SessionStore(cfg.sessions_dir).list_ids() == [session.session_id]


def test_resume_skips_tasks_already_completed(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002"))
    cfg = _cfg(tmp_path, plan_path)
    store = SessionStore(cfg.sessions_dir)
    previous = store.create(plan_path)
    previous.mark_completed("task-001")
    store.save(previous)
    agent = _FakeAgent()

    Executor(_cfg(tmp_path, plan_path, agent=agent)).run(resume=True)

    assert agent.calls == ["task-002"]


def test_skip_marks_tasks_done_without_running_them(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    agent = _FakeAgent()

    session = Executor(_cfg(tmp_path, plan_path, agent=agent, skip=("task-001", "task-404"))).run()

    assert agent.calls == ["task-002"]
    assert session.skipped == {"task-001", "task-404"}
    assert "--skip task-404 is not in the plan" in capsys.readouterr().err


def test_commit_markers_count_as_completed(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    commits = [CommitInfo(hash="h1", message="[task-001] Title task-001", timestamp=1)]

    agent = _FakeAgent()
    Executor(_cfg(tmp_path, plan_path, agent=agent, git=_FakeGit(commits=commits))).run()
    assert agent.calls == ["task-002"]

    agent = _FakeAgent()
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    Executor(_cfg(tmp_path, plan_path, agent=agent, git=_FakeGit(commits=commits), check_git_commits=False)).run()
    assert agent.calls == ["task-001", "task-002"]


def test_invalid_plan_raises_before_anything_runs(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001", ["task-002"]), _task("task-002", ["task-001"]))
    agent = _FakeAgent()
    cfg = _cfg(tmp_path, plan_path, agent=agent)

    with pytest.raises(PlanValidationError) as exc:
        Executor(cfg).run()

    assert exc.value.errors == ["Circular dependencies detected: task-001 -> task-002 -> task-001"]
    assert agent.calls == []
    assert not cfg.sessions_dir.exists()


def test_auto_test_failure_fails_attempt_and_blocks_implemented(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001", criteria=["a"]))
    seen: list[list[str]] = []

    def fake_run(args, **kwargs):
        seen.append(list(args))
        return subprocess.CompletedProcess(args, 1)

    monkeypatch.setattr(executor_mod.subprocess, "run", fake_run)
    cfg = _cfg(tmp_path, plan_path, auto_test=True, test_command="pytest -q", max_retries=1)

    session = Executor(cfg).run()

    assert seen == [["pytest", "-q"]]
    assert session.task_history[0].error == "Tests failed with exit code 1"
    assert session.failed == {"task-001"}
    task = load_plan(plan_path).get_task("task-001")
    assert task.status == PlanStatus.NEEDS_REWORK
    assert task.acceptance_criteria[0].completed is True


def test_auto_test_missing_command_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"))

    def fake_run(args, **kwargs):
        raise FileNotFoundError("no such tool")

    monkeypatch.setattr(executor_mod.subprocess, "run", fake_run)
    cfg = _cfg(tmp_path, plan_path, auto_test=True, max_retries=1)

    session = Executor(cfg).run()

    assert session.task_history[0].error == "Failed to run tests: no such tool"


def test_resume_ignores_latest_session_of_another_plan(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002"))
    cfg = _cfg(tmp_path, plan_path)
    store = SessionStore(cfg.sessions_dir)
    other = store.create(tmp_path / "OTHER.md")
    other.mark_completed("task-001")
    store.save(other)
    agent = _FakeAgent()

    session = Executor(_cfg(tmp_path, plan_path, agent=agent)).run(resume=True)

    assert agent.calls == ["task-001", "task-002"]
    assert session.session_id != other.session_id
    assert session.plan_path == str(plan_path)
    assert store.list_ids() == [other.session_id, session.session_id]
    assert f"latest session {other.session_id} belongs to {tmp_path / 'OTHER.md'}" in capsys.readouterr().err


def test_resume_retries_a_task_left_failed(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    cfg = _cfg(tmp_path, plan_path)
    store = SessionStore(cfg.sessions_dir)
    previous = store.create(plan_path)
    record = previous.begin_attempt("task-001")
    previous.finish_attempt(record, ExecutionStatus.FAILED, error="boom")
    previous.clear_current()
    previous.failed.add("task-001")
    store.save(previous)
    agent = _FakeAgent()

    session = Executor(_cfg(tmp_path, plan_path, agent=agent)).run(resume=True)

    assert agent.calls == ["task-001", "task-002"]
    assert [r.attempt_number for r in session.attempts("task-001")] == [1, 2]
    assert session.failed == set()
    assert session.completed == {"task-001", "task-002"}


def test_prompt_write_error_fails_the_attempt(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"))

    def broken_prompt(**kwargs):
        raise PermissionError("read-only renders dir")

    monkeypatch.setattr(executor_mod, "write_task_prompt", broken_prompt)
    agent = _FakeAgent()
    cfg = _cfg(tmp_path, plan_path, agent=agent, max_retries=1)

    session = Executor(cfg).run()

    assert agent.calls == []
    record = session.task_history[0]
    assert record.status == ExecutionStatus.FAILED
    assert record.error == "Could not write prompt for task-001: read-only renders dir"
    assert session.current_task_id is None
    assert SessionStore(cfg.sessions_dir).latest().current_task_id is None


def test_hooks_fire_around_each_attempt(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"), _task("task-002", ["task-001"]))
    events: list[tuple] = []
    hooks = executor_mod.ExecutorHooks(
        on_task_start=lambda task, session: events.append(("start", task.id, session.current_task_id)),
        on_task_complete=lambda task, result, session: events.append(("complete", task.id, result.files_changed)),
        on_task_fail=lambda task, error, session: events.append(("fail", task.id, error)),
        on_progress=lambda summary, session: events.append(("progress", summary.percentage)),
        on_checkpoint=lambda session: events.append(("checkpoint", session.current_task_id, len(session.task_history))),
    )
    agent = _FakeAgent({"task-001": [AgentResult(success=False, error="boom")]})

    Executor(_cfg(tmp_path, plan_path, agent=agent, hooks=hooks)).run()

    assert events == [
        ("start", "task-001", "task-001"),
        ("fail", "task-001", "boom"),
        ("progress", 0),
        ("checkpoint", None, 1),
        ("start", "task-001", "task-001"),
        ("complete", "task-001", ["src/task-001.py"]),
        ("progress", 50),
        ("checkpoint", None, 2),
        ("start", "task-002", "task-002"),
        ("complete", "task-002", ["src/task-002.py"]),
        ("progress", 100),
        ("checkpoint", None, 3),
    ]


def test_hook_exceptions_propagate(tmp_path: Path) -> None:
    plan_path = _write_plan(tmp_path, _task("task-001"))

    def explode(task, session):
        raise RuntimeError("hook broke")

    cfg = _cfg(tmp_path, plan_path, hooks=executor_mod.ExecutorHooks(on_task_start=explode))

    with pytest.raises(RuntimeError, match="hook broke"):
        Executor(cfg).run()


def test_commit_message_lists_changed_files() -> None:
    task = _task("task-007")
    result = TaskResult(files_added=["a.py"], files_modified=["b.py"], files_deleted=["c.py"])

    assert commit_message(task, result) == (
        "[task-007] Title task-007\n\nDo task-007.\n\nSummary: Changed 3 file(s):\n  + a.py\n  ~ b.py\n  - c.py\n"
    )
