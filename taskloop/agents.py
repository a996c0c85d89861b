"""taskloop.agents

This module defines the collaborator protocols used by the executor and provides two sets
of implementations:

- Stub backends: deterministic/no-op implementations used by `--dry-run`.
- External backends: implementations that shell out to the Claude Code CLI, or check the
  working tree directly.

The goal is to keep the execution loop (`taskloop/executor.py`) independent from any
particular AI provider/CLI by programming to small, explicit protocols.

Protocols and data models
- ExecutionAgent.execute(task, prompt_file, cwd, log_file) -> AgentResult
  Performs one attempt at a task. The prompt is read from `prompt_file` (rendered by
  `taskloop/render.py`). `log_file` is where the agent may mirror its raw output.
  Failures are expressed as `AgentResult(success=False, error=...)`; an exception is also
  tolerated and recorded as a failed attempt by the executor.

- CriterionVerifier.verify(criterion, cwd) -> bool
  Returns whether one acceptance criterion holds in `cwd`. The executor treats this as a
  black box and asks about each criterion in order.

Stub vs external implementations
- StubAgent: does not execute anything; returns success with no changed files.
- StubVerifier: always passes.

- ClaudeAgent: runs `run_claude_stream` (`taskloop/claude_cli.py`) with the prompt on
  stdin. Changed files are computed from `git status --porcelain` snapshots taken before
  and after the run, so the agent does not have to report them.
- RuleVerifier: answers common criterion shapes directly, without an LLM:
  - `<path> exists` / `<path> file exists`: the path exists under `cwd`.
  - `<command> passes` / `npm run <script> passes`: the command exits 0 in `cwd`.
  - `<path> includes <text>`: the file contains `text` (surrounding quotes stripped).
  - a single token with no spaces: treated as a path that must exist.
  Anything else goes to the `fallback` verifier; without one it fails closed (False).
- ClaudeVerifier: asks the Claude CLI in structured JSON mode and expects
  `{"passed": bool, "note"?: str}`. Raises on a non-zero exit or a malformed payload; the
  executor counts a raising verifier as a failed criterion.
"""

from __future__ import annotations

import re
import shlex
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from .claude_cli import DEFAULT_TIMEOUT_S, run_claude_json, run_claude_stream
from .git_ops import GitClient, diff_status
from .plan import Task
from .render import render_criterion_prompt

_EXISTS_RE = re.compile(r"^(.+?)(?:\s+file)?\s+exists$", re.IGNORECASE)
_PASSES_RE = re.compile(r"^(npm run \S+|[\w-]+)\s+passes$", re.IGNORECASE)
_INCLUDES_RE = re.compile(r"^(.+?)\s+includes\s+(.+)$", re.IGNORECASE)

VERIFIER_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "passed": {"type": "boolean"},
        "note": {"type": "string"},
    },
    "required": ["passed"],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: str = ""
    files_added: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)
    error: str | None = None


class ExecutionAgent(Protocol):
    def execute(
        self,
        *,
        task: Task,
        prompt_file: Path,
        cwd: Path,
        log_file: Path | None = None,
    ) -> AgentResult: ...


class CriterionVerifier(Protocol):
    def verify(self, *, criterion: str, cwd: Path) -> bool: ...


class StubAgent:
    """No-op agent for `--dry-run`."""

    def execute(
        self,
        *,
        task: Task,
        prompt_file: Path,
        cwd: Path,
        log_file: Path | None = None,
    ) -> AgentResult:
        _ = (prompt_file, cwd, log_file)
        return AgentResult(success=True, output=f"(stub) no-op agent for {task.id}")


class StubVerifier:
    """Always-pass verifier for `--dry-run`."""

    def verify(self, *, criterion: str, cwd: Path) -> bool:
        _ = (criterion, cwd)
        return True


class ClaudeAgent:
    def __init__(
        self,
        *,
        git: GitClient,
        cmd: str | None = None,
        model: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.git = git
        self.cmd = cmd or "claude"
        self.model = model
        self.timeout_s = timeout_s

    def execute(
        self,
        *,
        task: Task,
        prompt_file: Path,
        cwd: Path,
        log_file: Path | None = None,
    ) -> AgentResult:
        prompt = prompt_file.read_text(encoding="utf-8")
        before = self._snapshot(cwd)
        res = run_claude_stream(
            executable=self.cmd,
            model=self.model,
            prompt=prompt,
            cwd=cwd,
            log_file=log_file,
            timeout_s=self.timeout_s,
        )
        changes = diff_status(before, self._snapshot(cwd))

        error: str | None = None
        if res.timed_out:
            error = f"Agent timed out after {int(self.timeout_s)}s on {task.id}"
        elif not res.success:
            detail = res.stderr.splitlines()[-1] if res.stderr else res.result_text
            error = f"Agent exited with code {res.exit_code}" + (f": {detail}" if detail else "")

        return AgentResult(
            success=res.success,
            output=res.result_text,
            files_added=changes.added,
            files_modified=changes.modified,
            files_deleted=changes.deleted,
            error=error,
        )

    def _snapshot(self, cwd: Path) -> dict[str, str]:
        try:
            return self.git.status(cwd=cwd)
        except (subprocess.CalledProcessError, OSError) as exc:
            print(f"[taskloop] warn: git status failed: {exc}", file=sys.stderr)
            return {}


def _run_command(command: str, cwd: Path) -> int:
    try:
        p = subprocess.run(shlex.split(command), cwd=cwd, check=False, capture_output=True, text=True)
    except OSError:
        return 127
    return p.returncode


class RuleVerifier:
    def __init__(
        self,
        *,
        fallback: CriterionVerifier | None = None,
        run_command: Callable[[str, Path], int] = _run_command,
    ) -> None:
        self.fallback = fallback
        self.run_command = run_command

    def verify(self, *, criterion: str, cwd: Path) -> bool:
        text = criterion.strip()

        m = _EXISTS_RE.match(text)
        if m:
            return (cwd / _unquote(m.group(1))).exists()

        m = _PASSES_RE.match(text)
        if m:
            return self.run_command(m.group(1), cwd) == 0

        m = _INCLUDES_RE.match(text)
        if m:
            path = cwd / _unquote(m.group(1))
            needle = _unquote(m.group(2))
            try:
                return needle in path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                return False

        if text and " " not in text:
            return (cwd / _unquote(text)).exists()

        if self.fallback is None:
            return False
        return self.fallback.verify(criterion=text, cwd=cwd)


class ClaudeVerifier:
    def __init__(self, *, cmd: str | None = None, model: str | None = None) -> None:
        self.cmd = cmd or "claude"
        self.model = model

    def verify(self, *, criterion: str, cwd: Path) -> bool:
        res = run_claude_json(
            executable=self.cmd,
            model=self.model,
            prompt=render_criterion_prompt(criterion),
            schema=VERIFIER_SCHEMA,
            cwd=cwd,
        )
        if res.exit_code != 0:
            raise RuntimeError(f"Verifier command failed with exit code {res.exit_code}: {res.stderr}")
        if not isinstance(res.data, dict):
            raise ValueError(f"Verifier returned non-object JSON: {type(res.data)}")

        passed = res.data.get("passed")
        if not isinstance(passed, bool):
            raise ValueError("Verifier JSON missing required boolean field: passed")
        note = res.data.get("note")
        if not passed and isinstance(note, str) and note.strip():
            print(f"[taskloop] criterion rejected: {criterion!r}: {note.strip()}", file=sys.stderr)
        return passed


def _unquote(s: str) -> str:
    s = s.strip()
    for q in ('"', "'", "`"):
        if len(s) >= 2 and s.startswith(q) and s.endswith(q):
            return s[1:-1]
    return s
