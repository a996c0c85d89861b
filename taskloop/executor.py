"""taskloop executor: pick a task -> run the agent -> verify -> record, until nothing is eligible.

This module drives one execution run over a markdown plan. It is designed to be
restartable: every state change is checkpointed to the session file before the loop moves
on, so a killed process can be resumed with `run(resume=True)` without re-running
completed work.

Lifecycle
1. Load
  - Parse the plan file and validate it (`taskloop.dag.validate_plan`). An invalid plan raises
    `PlanValidationError` with every error and warning attached; nothing runs.
  - Create a new session, or on resume load the latest one from the session index. A
    leftover `current_task_id` from a crash is cleared; its dangling `in_progress` record
    stays in the history and counts as an attempt. A latest session recorded for a different
    plan file is not resumed; a new session starts instead.
  - Apply `skip` IDs to the session's `skipped` set.
  - Read `[task-NNN]` commit markers once from the last 100 commits (when enabled).

2. Loop
  - Resolve runtime statuses (`taskloop.status`) and ask the scheduler for the next task.
    `None` ends the run.
  - Attempt the task (below) and checkpoint.

3. One attempt
  - `begin_attempt` appends an `in_progress` record; checkpoint; `on_task_start`.
  - Render the prompt to `.taskloop/renders/<task-id>-agent.md` and call the agent. A prompt
    that cannot be written, or an agent that raises or reports failure, fails the attempt.
  - Ask the verifier about every acceptance criterion, in order. A verifier that raises
    counts as a failed criterion.
  - With `auto_test`, run `test_command`; a non-zero exit fails the attempt.
  - Write back criterion completion and plan status to the plan file. A failed test run is
    written back like an extra failed criterion, so the plan never says `Implemented` for
    an attempt that failed. Write-back errors are logged, never fatal.
  - Success: with `auto_commit`, commit the changed files (never `.taskloop/`) under a
    `[task-NNN] <title>` message; commit errors are logged, never fatal. Then the task is
    marked completed; `on_task_complete`.
  - Failure: the record is marked failed. Once the task has `max_retries` records it is
    marked exhausted (in both `failed` and `completed`) so its dependents can still run;
    below the limit it stays pending and is selected again. `on_task_fail`.
  - `current_task_id` is cleared; `on_progress`; checkpoint; `on_checkpoint`.

Key invariants
- Exactly one task is attempted at a time. `max_parallel` is accepted and stored only.
- The session is the only state mutated during the loop, plus the plan file write-back.
- Task failures never unwind the loop. Session persistence failures always do.
"""

from __future__ import annotations

import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .agents import AgentResult, CriterionVerifier, ExecutionAgent
from .dag import validate_plan
from .git_ops import GitClient
from .markdown import load_plan, save_plan
from .plan import Plan, Task, apply_verification
from .render import write_task_prompt
from .scheduler import SchedulePolicy, next_task
from .session import ExecutionSession, ExecutionStatus, SessionStore, TaskResult, utc_now
from .status import ProgressSummary, RuntimeStatus, parse_commit_markers, progress_summary, resolve_statuses

STATE_DIR_NAME = ".taskloop"
DEFAULT_TEST_COMMAND = "npm run test:run"


@dataclass(frozen=True)
class ExecutorHooks:
    """Optional callbacks fired by the loop. Exceptions raised by a hook propagate."""

    on_task_start: Callable[[Task, ExecutionSession], None] | None = None
    on_task_complete: Callable[[Task, TaskResult, ExecutionSession], None] | None = None
    on_task_fail: Callable[[Task, str, ExecutionSession], None] | None = None
    on_progress: Callable[[ProgressSummary, ExecutionSession], None] | None = None
    on_checkpoint: Callable[[ExecutionSession], None] | None = None


@dataclass(frozen=True)
class ExecutorConfig:
    control_root: Path
    plan_path: Path
    agent: ExecutionAgent
    verifier: CriterionVerifier
    git: GitClient
    max_retries: int = 3
    max_parallel: int = 1
    auto_commit: bool = True
    auto_test: bool = False
    test_command: str = DEFAULT_TEST_COMMAND
    check_git_commits: bool = True
    policy: SchedulePolicy = SchedulePolicy.PRIORITY
    skip: tuple[str, ...] = field(default_factory=tuple)
    hooks: ExecutorHooks = field(default_factory=ExecutorHooks)

    @property
    def state_dir(self) -> Path:
        return self.control_root / STATE_DIR_NAME

    @property
    def sessions_dir(self) -> Path:
        return self.state_dir / "sessions"

    @property
    def renders_dir(self) -> Path:
        return self.state_dir / "renders"

    @property
    def logs_dir(self) -> Path:
        return self.state_dir / "logs"


def load_checked_plan(path: Path) -> Plan:
    """Load a plan and refuse it unless it validates. Warnings are printed, not raised."""
    plan = load_plan(path)
    result = validate_plan(plan)
    for warning in result.warnings:
        print(f"[taskloop] warn: {warning}", file=sys.stderr)
    result.raise_for_errors()
    return plan


class Executor:
    def __init__(self, cfg: ExecutorConfig, *, store: SessionStore | None = None, clock=utc_now) -> None:
        self.cfg = cfg
        self._clock = clock
        self.store = store or SessionStore(cfg.sessions_dir, clock=clock)
        self.plan: Plan | None = None
        self.commit_markers: dict[str, str] = {}

    def run(self, *, resume: bool = False) -> ExecutionSession:
        """Entry point for the CLI. Returns the session once no task is eligible."""
        plan = load_checked_plan(self.cfg.plan_path)
        self.plan = plan
        print(f"[taskloop] plan: {self.cfg.plan_path} ({len(plan.tasks)} tasks)", file=sys.stderr)
        if self.cfg.max_parallel > 1:
            print(f"[taskloop] max_parallel={self.cfg.max_parallel} is reserved; running one task at a time", file=sys.stderr)

        session = self._open_session(resume=resume)
        self.commit_markers = self._read_commit_markers()

        while True:
            statuses = resolve_statuses(self.plan, session, self.commit_markers)
            task = next_task(self.plan, statuses, policy=self.cfg.policy)
            if task is None:
                break
            self._attempt(session, task, statuses)

        statuses = resolve_statuses(self.plan, session, self.commit_markers)
        blocked = [tid for tid, s in statuses.items() if s == RuntimeStatus.BLOCKED]
        if blocked:
            print(f"[taskloop] blocked: {', '.join(blocked)}", file=sys.stderr)
        summary = progress_summary(statuses)
        print(
            f"[taskloop] done: {summary.completed}/{summary.total} completed ({summary.percentage}%), "
            f"failed={len(session.failed)} session={session.session_id}",
            file=sys.stderr,
        )
        return session

    def _open_session(self, *, resume: bool) -> ExecutionSession:
        session: ExecutionSession | None = None
        if resume:
            session = self.store.latest()
            if session is None:
                print("[taskloop] no session to resume; starting a new one", file=sys.stderr)
            elif session.plan_path != str(self.cfg.plan_path):
                print(
                    f"[taskloop] warn: latest session {session.session_id} belongs to {session.plan_path}; starting a new one",
                    file=sys.stderr,
                )
                session = None
            else:
                print(f"[taskloop] resuming session {session.session_id}", file=sys.stderr)
                if session.current_task_id is not None:
                    print(f"[taskloop] clearing interrupted task {session.current_task_id}", file=sys.stderr)
                    session.clear_current(now=self._clock())
        if session is None:
            session = self.store.create(self.cfg.plan_path)
            print(f"[taskloop] session: {session.session_id}", file=sys.stderr)

        assert self.plan is not None
        known = set(self.plan.task_ids)
        for task_id in self.cfg.skip:
            if task_id not in known:
                print(f"[taskloop] warn: --skip {task_id} is not in the plan", file=sys.stderr)
            session.mark_skipped(task_id)
        self.store.save(session)
        return session

    def _read_commit_markers(self) -> dict[str, str]:
        if not self.cfg.check_git_commits:
            return {}
        try:
            commits = self.cfg.git.log(cwd=self.cfg.control_root, max_count=100)
        except (subprocess.CalledProcessError, OSError) as exc:
            print(f"[taskloop] warn: could not read git history: {exc}", file=sys.stderr)
            return {}
        return parse_commit_markers(commits)

    def _attempt(self, session: ExecutionSession, task: Task, statuses: dict[str, RuntimeStatus]) -> None:
        assert self.plan is not None
        execution = session.begin_attempt(task.id, now=self._clock())
        self.store.save(session)
        print(
            f"[taskloop] {task.id} start attempt={execution.attempt_number}/{self.cfg.max_retries} {task.title!r}",
            file=sys.stderr,
        )
        hooks = self.cfg.hooks
        if hooks.on_task_start is not None:
            hooks.on_task_start(task, session)

        result, error = self._run_attempt(session, task, statuses)

        if error is None:
            if self.cfg.auto_commit:
                result.commit_hash = self._commit(task, result)
            session.finish_attempt(execution, ExecutionStatus.COMPLETED, result=result, now=self._clock())
            session.mark_completed(task.id)
            print(f"[taskloop] {task.id} completed", file=sys.stderr)
            if hooks.on_task_complete is not None:
                hooks.on_task_complete(task, result, session)
        else:
            session.finish_attempt(execution, ExecutionStatus.FAILED, error=error, result=result, now=self._clock())
            attempts = session.attempt_count(task.id)
            if attempts >= self.cfg.max_retries:
                session.mark_exhausted(task.id)
                print(
                    f"[taskloop] {task.id} failed: max retries ({self.cfg.max_retries}) reached; continuing without it",
                    file=sys.stderr,
                )
            else:
                print(f"[taskloop] {task.id} failed (attempt {attempts}/{self.cfg.max_retries}); will retry", file=sys.stderr)
            print(f"[taskloop] {task.id} error: {error}", file=sys.stderr)
            if hooks.on_task_fail is not None:
                hooks.on_task_fail(task, error, session)

        session.clear_current(now=self._clock())
        if hooks.on_progress is not None:
            hooks.on_progress(progress_summary(resolve_statuses(self.plan, session, self.commit_markers)), session)
        self.store.save(session)
        if hooks.on_checkpoint is not None:
            hooks.on_checkpoint(session)

    def _run_attempt(
        self, session: ExecutionSession, task: Task, statuses: dict[str, RuntimeStatus]
    ) -> tuple[TaskResult, str | None]:
        """Run the agent, verifier and tests for one attempt. Returns the result and an error, if any."""
        assert self.plan is not None
        result = TaskResult()
        try:
            prompt_file = write_task_prompt(cfg=self.cfg, plan=self.plan, task=task, statuses=statuses)
        except OSError as exc:
            return result, f"Could not write prompt for {task.id}: {exc}"
        log_file = self.cfg.logs_dir / f"{session.session_id}-{task.id}.log"

        try:
            outcome: AgentResult = self.cfg.agent.execute(
                task=task, prompt_file=prompt_file, cwd=self.cfg.control_root, log_file=log_file
            )
        except Exception as exc:
            return result, f"Agent raised {type(exc).__name__}: {exc}"

        result.output = outcome.output
        result.files_added = list(outcome.files_added)
        result.files_modified = list(outcome.files_modified)
        result.files_deleted = list(outcome.files_deleted)
        if not outcome.success:
            return result, outcome.error or "Agent reported failure"

        passed, failed = self._verify_criteria(task)
        result.criteria_passed = passed
        result.criteria_failed = failed

        test_error: str | None = None
        if self.cfg.auto_test:
            test_error = self._run_tests(task)

        self._write_back(task, passed=passed, failed=failed + ([test_error] if test_error else []))

        if failed:
            lines = "\n".join(f"  - {f}" for f in failed)
            return result, (
                f"Acceptance criteria not met ({len(passed)}/{len(task.acceptance_criteria)} passed):\n{lines}"
            )
        if test_error:
            return result, test_error
        return result, None

    def _verify_criteria(self, task: Task) -> tuple[list[str], list[str]]:
        passed: list[str] = []
        failed: list[str] = []
        for text in task.criteria_texts:
            try:
                ok = self.cfg.verifier.verify(criterion=text, cwd=self.cfg.control_root)
            except Exception as exc:
                print(f"[taskloop] warn: verifier failed on {text!r}: {exc}", file=sys.stderr)
                ok = False
            (passed if ok else failed).append(text)
            print(f"[taskloop] {task.id} criterion {'ok' if ok else 'FAILED'}: {text}", file=sys.stderr)
        return passed, failed

    def _run_tests(self, task: Task) -> str | None:
        print(f"[taskloop] {task.id} running tests: {self.cfg.test_command}", file=sys.stderr)
        try:
            p = subprocess.run(shlex.split(self.cfg.test_command), cwd=self.cfg.control_root, check=False)
        except OSError as exc:
            return f"Failed to run tests: {exc}"
        if p.returncode != 0:
            return f"Tests failed with exit code {p.returncode}"
        return None

    def _write_back(self, task: Task, *, passed: list[str], failed: list[str]) -> None:
        assert self.plan is not None
        self.plan = apply_verification(self.plan, task.id, passed=passed, failed=failed)
        try:
            # Re-read so hand edits made during the run are kept.
            on_disk = load_plan(self.cfg.plan_path)
            save_plan(self.cfg.plan_path, apply_verification(on_disk, task.id, passed=passed, failed=failed))
        except (OSError, KeyError, ValueError) as exc:
            print(f"[taskloop] warn: could not update plan file for {task.id}: {exc}", file=sys.stderr)

    def _commit(self, task: Task, result: TaskResult) -> str | None:
        paths = [p for p in result.files_changed if not p.startswith(f"{STATE_DIR_NAME}/")]
        if not paths:
            print(f"[taskloop] warn: no files to commit for {task.id}", file=sys.stderr)
            return None
        try:
            commit_hash = self.cfg.git.commit_paths(paths, cwd=self.cfg.control_root, message=commit_message(task, result))
        except (subprocess.CalledProcessError, OSError) as exc:
            print(f"[taskloop] warn: commit failed for {task.id}: {exc}", file=sys.stderr)
            return None
        if commit_hash:
            print(f"[taskloop] {task.id} committed {commit_hash[:12]}", file=sys.stderr)
        return commit_hash


def commit_message(task: Task, result: TaskResult) -> str:
    lines = [f"[{task.id}] {task.title}", ""]
    if task.description.strip():
        lines += [task.description.strip(), ""]
    lines.append(f"Summary: Changed {len(result.files_changed)} file(s):")
    lines += [f"  + {f}" for f in result.files_added]
    lines += [f"  ~ {f}" for f in result.files_modified]
    lines += [f"  - {f}" for f in result.files_deleted]
    return "\n".join(lines) + "\n"
