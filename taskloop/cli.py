"""taskloop.cli

Command-line entrypoint for taskloop, an unattended executor for markdown work plans:
1) parses and validates the plan (IDs, dependencies, cycles),
2) picks the next eligible task by priority and hands it to an external agent CLI,
3) verifies each acceptance criterion and writes the verdict back into the plan,
4) records every attempt in `.taskloop/sessions/<session-id>.json` so a crashed run can resume.

Entry points
- `taskloop.cli:main`
- `python3 -m taskloop ...` (delegates to this module)

Subcommands
- `run PLAN`: execute the plan until no task is eligible.
  - `--resume`: continue the most recent session instead of starting a new one.
  - `--max-retries <int>`: attempts per task before it is given up on (default 3).
  - `--max-parallel <int>`: accepted and stored; execution is always one task at a time.
  - `--no-commit`: do not commit after a task succeeds.
  - `--auto-test` / `--test-command <cmd>`: run a test command after verification; a
    non-zero exit fails the attempt.
  - `--policy priority|plan-order`: selection policy (default `priority`).
  - `--skip <id> ...`: task IDs to treat as done without running them.
  - `--no-git-status`: ignore `[task-NNN]` commit markers in git history.
  - `--model <name>`: model passed to the agent and verifier CLIs.
  - `--agent-cmd <exe>`: agent CLI executable (default: `$TASKLOOP_AGENT_CMD` or `claude`).
  - `--dry-run`: stub agent and verifier, no-op git client.
  - `-v`, `--verbose`: print task start, completion, failure and progress lines to stdout.
- `validate PLAN`: print errors and warnings; exit 1 when the plan is invalid.
- `status PLAN [--session ID] [--priority P] [--tag T]`: print each task's runtime status and
  the progress summary. Without `--session` the latest session is used when one exists.
  `--priority` and `--tag` narrow the task list; the summary still covers the whole plan.
- `session [ID]`: print a session (default: the latest) as JSON.

Control root and path resolution
taskloop operates relative to a "control root", which is:
- `Path($TASKLOOP_CONTROL_ROOT).resolve()` when that environment variable is set, otherwise
- `Path.cwd().resolve()` at process start.

The plan path is resolved as `(control_root / PLAN).resolve()`, so relative paths are
anchored at the control root and absolute paths bypass it. State lives under
`<control_root>/.taskloop/` (`sessions/`, `renders/`, `logs/`).

Dry-run semantics
`--dry-run` smoke-tests the loop wiring: no agent or git command runs, every criterion
passes, but the session file and the plan write-back are still produced.

Exit status
- 0 on success (including runs that leave tasks failed or blocked; see the session).
- 1 when the plan file is missing or invalid, or a requested session does not exist.
- 2 on argument errors (argparse).
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
from pathlib import Path

from .agents import ClaudeAgent, ClaudeVerifier, RuleVerifier, StubAgent, StubVerifier
from .dag import PlanValidationError, validate_plan
from .executor import DEFAULT_TEST_COMMAND, Executor, ExecutorConfig, ExecutorHooks, STATE_DIR_NAME, load_checked_plan
from .git_ops import DryRunGitClient, GitClient
from .markdown import load_plan
from .plan import Priority
from .scheduler import SchedulePolicy
from .session import SessionStore
from .status import parse_commit_markers, progress_summary, resolve_status_info


def _control_root() -> Path:
    env = os.environ.get("TASKLOOP_CONTROL_ROOT")
    return (Path(env) if env else Path.cwd()).resolve()


def _store(control_root: Path) -> SessionStore:
    return SessionStore(control_root / STATE_DIR_NAME / "sessions")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="taskloop", description="Run a markdown task plan through an agent CLI, one task at a time.")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute the plan until no task is eligible.")
    run.add_argument("plan", help="Path to the plan markdown file.")
    run.add_argument("--resume", action="store_true", help="Resume the most recent session.")
    run.add_argument("--max-retries", type=int, default=3, help="Attempts per task before giving up on it (default 3).")
    run.add_argument(
        "--max-parallel",
        type=int,
        default=1,
        help="Reserved; tasks always run one at a time (default 1).",
    )
    run.add_argument("--no-commit", action="store_true", help="Do not commit after a task succeeds.")
    run.add_argument("--auto-test", action="store_true", help="Run the test command after verification.")
    run.add_argument(
        "--test-command",
        default=DEFAULT_TEST_COMMAND,
        help=f"Test command used with --auto-test (default: {DEFAULT_TEST_COMMAND!r}).",
    )
    run.add_argument(
        "--policy",
        choices=[pol.value for pol in SchedulePolicy],
        default=SchedulePolicy.PRIORITY.value,
        help="Task selection policy (default: priority).",
    )
    run.add_argument("--skip", nargs="+", default=[], metavar="TASK_ID", help="Task IDs to treat as done.")
    run.add_argument("--no-git-status", action="store_true", help="Ignore [task-NNN] markers in git history.")
    run.add_argument("--model", default=None, help="Model passed to the agent and verifier CLIs.")
    run.add_argument(
        "--agent-cmd",
        default=None,
        help="Agent CLI executable (default: $TASKLOOP_AGENT_CMD or 'claude').",
    )
    run.add_argument("--dry-run", action="store_true", help="Use a stub agent/verifier and a no-op git client.")
    run.add_argument("-v", "--verbose", action="store_true", help="Print task start, result and progress lines to stdout.")

    validate = sub.add_parser("validate", help="Validate a plan and print errors and warnings.")
    validate.add_argument("plan", help="Path to the plan markdown file.")

    status = sub.add_parser("status", help="Show runtime status per task.")
    status.add_argument("plan", help="Path to the plan markdown file.")
    status.add_argument("--session", default=None, help="Session ID (default: latest).")
    status.add_argument("--priority", choices=[p.value for p in Priority], default=None, help="Only list tasks of this priority.")
    status.add_argument("--tag", default=None, help="Only list tasks carrying this tag.")

    session = sub.add_parser("session", help="Print a session as JSON.")
    session.add_argument("session_id", nargs="?", default=None, help="Session ID (default: latest).")
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    control_root = _control_root()

    if args.command == "run":
        return _cmd_run(args, control_root)
    if args.command == "validate":
        return _cmd_validate(args, control_root)
    if args.command == "status":
        return _cmd_status(args, control_root)
    if args.command == "session":
        return _cmd_session(args, control_root)
    raise ValueError(f"Unknown command: {args.command}")


def _cmd_run(args: argparse.Namespace, control_root: Path) -> int:
    plan_path = (control_root / args.plan).resolve()
    agent_cmd = args.agent_cmd or os.environ.get("TASKLOOP_AGENT_CMD") or "claude"

    if args.dry_run:
        git = DryRunGitClient(control_root=control_root)
        agent = StubAgent()
        verifier = StubVerifier()
    else:
        git = GitClient(control_root=control_root)
        agent = ClaudeAgent(git=git, cmd=agent_cmd, model=args.model)
        verifier = RuleVerifier(fallback=ClaudeVerifier(cmd=agent_cmd, model=args.model))

    cfg = ExecutorConfig(
        control_root=control_root,
        plan_path=plan_path,
        agent=agent,
        verifier=verifier,
        git=git,
        max_retries=max(1, int(args.max_retries)),
        max_parallel=max(1, int(args.max_parallel)),
        auto_commit=not args.no_commit,
        auto_test=bool(args.auto_test),
        test_command=args.test_command,
        check_git_commits=not args.no_git_status,
        policy=SchedulePolicy(args.policy),
        skip=tuple(args.skip),
        hooks=_console_hooks() if args.verbose else ExecutorHooks(),
    )
    try:
        Executor(cfg).run(resume=bool(args.resume))
    except FileNotFoundError:
        print(f"[taskloop] plan not found: {plan_path}", file=sys.stderr)
        return 1
    except PlanValidationError as exc:
        _print_validation(exc.errors, [])
        return 1
    return 0


def _cmd_validate(args: argparse.Namespace, control_root: Path) -> int:
    plan_path = (control_root / args.plan).resolve()
    try:
        plan = load_plan(plan_path)
    except FileNotFoundError:
        print(f"[taskloop] plan not found: {plan_path}", file=sys.stderr)
        return 1
    result = validate_plan(plan)
    _print_validation(result.errors, result.warnings)
    if result.valid:
        print(f"{plan_path}: valid")
        return 0
    return 1


def _cmd_status(args: argparse.Namespace, control_root: Path) -> int:
    plan_path = (control_root / args.plan).resolve()
    try:
        plan = load_checked_plan(plan_path)
    except FileNotFoundError:
        print(f"[taskloop] plan not found: {plan_path}", file=sys.stderr)
        return 1
    except PlanValidationError as exc:
        _print_validation(exc.errors, [])
        return 1

    store = _store(control_root)
    try:
        session = store.load(args.session) if args.session else store.latest()
    except FileNotFoundError as exc:
        print(f"[taskloop] {exc}", file=sys.stderr)
        return 1

    markers = _commit_markers(control_root)
    infos = resolve_status_info(plan, session, markers)
    shown = plan.tasks_with_priority(Priority(args.priority)) if args.priority else list(plan.tasks)
    if args.tag:
        tagged = {t.id for t in plan.tasks_with_tag(args.tag)}
        shown = [t for t in shown if t.id in tagged]
    for task in shown:
        info = infos[task.id]
        detail = info.source.value
        if info.reason:
            detail += f": {info.reason}"
        elif info.commit_hash:
            detail += f": {info.commit_hash[:12]}"
        print(f"{task.id}  {info.status.value:<11}  {task.priority.value:<6}  {task.title}  ({detail})")

    summary = progress_summary({tid: i.status for tid, i in infos.items()})
    print(
        f"\n{summary.completed}/{summary.total} completed ({summary.percentage}%), "
        f"in progress={summary.in_progress} pending={summary.pending} blocked={summary.blocked} failed={summary.failed}"
    )
    if session is not None:
        print(f"session: {session.session_id}")
    return 0


def _cmd_session(args: argparse.Namespace, control_root: Path) -> int:
    store = _store(control_root)
    try:
        session = store.load(args.session_id) if args.session_id else store.latest()
    except FileNotFoundError as exc:
        print(f"[taskloop] {exc}", file=sys.stderr)
        return 1
    if session is None:
        print("[taskloop] no sessions recorded yet", file=sys.stderr)
        return 1
    print(json.dumps(session.to_dict(), indent=2))
    return 0


def _console_hooks() -> ExecutorHooks:
    def on_start(task, session):
        print(f"[{task.id}] Starting: {task.title}")

    def on_complete(task, result, session):
        print(f"[{task.id}] Completed: {len(result.files_changed)} file(s) changed")

    def on_fail(task, error, session):
        first_line = error.partition("\n")[0]
        print(f"[{task.id}] Failed: {first_line}")

    def on_progress(summary, session):
        print(f"Progress: {summary.percentage}% ({summary.completed}/{summary.total} tasks completed)")

    return ExecutorHooks(on_task_start=on_start, on_task_complete=on_complete, on_task_fail=on_fail, on_progress=on_progress)


def _commit_markers(control_root: Path) -> dict[str, str]:
    git = GitClient(control_root=control_root)
    try:
        if not git.is_repo(cwd=control_root):
            return {}
        return parse_commit_markers(git.log(cwd=control_root))
    except (subprocess.CalledProcessError, OSError) as exc:
        print(f"[taskloop] warn: could not read git history: {exc}", file=sys.stderr)
        return {}


def _print_validation(errors: list[str], warnings: list[str]) -> None:
    for e in errors:
        print(f"[taskloop] error: {e}", file=sys.stderr)
    for w in warnings:
        print(f"[taskloop] warn: {w}", file=sys.stderr)
