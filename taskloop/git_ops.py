"""Git operations for taskloop.

Two implementations share one public surface:

- `GitClient`: shells out to `git` via `subprocess`.
- `DryRunGitClient`: a no-op used by `--dry-run` and tests; it never touches git state.

GitClient API
Each method maps onto a single git command so callers can reason about side effects.

- `is_repo(cwd=...) -> bool`
  True when `cwd` is inside a git work tree.
- `status(cwd=...) -> dict[str, str]`
  Parses `git status --porcelain --untracked-files=all` into `path -> XY code`. Renames
  are reported under their new path.
- `log(cwd=..., max_count=100) -> list[CommitInfo]`
  Recent commits, newest first, with full messages. Used to find `[task-NNN]` markers.
- `head(cwd=...) -> str`
  The commit SHA of `HEAD`.
- `commit_paths(paths, cwd=..., message=...) -> str | None`
  Stages exactly `paths` (including deletions) and commits them. Returns the new `HEAD`
  SHA, or None when there was nothing to commit.

`diff_status(before, after)` turns two `status()` snapshots into a `FileChanges` record,
which is how the executor learns what an agent run touched.

Side effects and safety notes
- Git invocations go through `_git(...)`, which uses `check=True` and raises
  `subprocess.CalledProcessError` on failure. The executor catches these around commits
  and history reads; they never fail a task.
- `DryRunGitClient` reports a clean tree, an empty history and never commits.
"""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"


@dataclass(frozen=True)
class CommitInfo:
    hash: str
    message: str
    timestamp: int


@dataclass
class FileChanges:
    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)


def parse_porcelain(out: str) -> dict[str, str]:
    entries: dict[str, str] = {}
    for line in out.splitlines():
        if len(line) < 4:
            continue
        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        entries[path.strip().strip('"')] = code
    return entries


def diff_status(before: dict[str, str], after: dict[str, str]) -> FileChanges:
    """Classify paths whose porcelain code appeared or changed between two snapshots."""
    changes = FileChanges()
    for path in sorted(after):
        code = after[path]
        if before.get(path) == code:
            continue
        if code == "??" or "A" in code:
            changes.added.append(path)
        elif "D" in code:
            changes.deleted.append(path)
        else:
            changes.modified.append(path)
    return changes


def parse_log(out: str) -> list[CommitInfo]:
    commits: list[CommitInfo] = []
    for record in out.split(_RECORD_SEP):
        record = record.strip("\n")
        if not record.strip():
            continue
        parts = record.split(_FIELD_SEP, 2)
        if len(parts) != 3:
            continue
        sha, ts, message = parts
        try:
            timestamp = int(ts.strip())
        except ValueError:
            timestamp = 0
        commits.append(CommitInfo(hash=sha.strip(), message=message.strip(), timestamp=timestamp))
    return commits


class GitClient:
    def __init__(self, *, control_root: Path) -> None:
        self.control_root = control_root

    def is_repo(self, *, cwd: Path) -> bool:
        p = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=cwd,
            text=True,
            check=False,
            capture_output=True,
        )
        return p.returncode == 0 and p.stdout.strip() == "true"

    def status(self, *, cwd: Path) -> dict[str, str]:
        return parse_porcelain(self._git(["status", "--porcelain", "--untracked-files=all"], cwd=cwd))

    def log(self, *, cwd: Path, max_count: int = 100) -> list[CommitInfo]:
        fmt = f"%H{_FIELD_SEP}%ct{_FIELD_SEP}%B{_RECORD_SEP}"
        return parse_log(self._git(["log", f"--max-count={max_count}", f"--format={fmt}"], cwd=cwd))

    def head(self, *, cwd: Path) -> str:
        return self._git(["rev-parse", "HEAD"], cwd=cwd).strip()

    def commit_paths(self, paths: list[str], *, cwd: Path, message: str) -> str | None:
        if not paths:
            return None
        self._git(["add", "-A", "--", *paths], cwd=cwd)
        staged = self._git(["diff", "--cached", "--name-only"], cwd=cwd)
        if not staged.strip():
            return None
        self._git(["commit", "-m", message], cwd=cwd)
        return self.head(cwd=cwd)

    def _git(self, args: list[str], *, cwd: Path) -> str:
        p = subprocess.run(
            ["git", *args],
            cwd=cwd,
            text=True,
            check=True,
            capture_output=True,
        )
        return p.stdout


class DryRunGitClient(GitClient):
    """A no-op Git client for smoke testing without touching git state."""

    def is_repo(self, *, cwd: Path) -> bool:  # type: ignore[override]
        return False

    def status(self, *, cwd: Path) -> dict[str, str]:  # type: ignore[override]
        return {}

    def log(self, *, cwd: Path, max_count: int = 100) -> list[CommitInfo]:  # type: ignore[override]
        return []

    def head(self, *, cwd: Path) -> str:  # type: ignore[override]
        return "DRYRUN"

    def commit_paths(self, paths: list[str], *, cwd: Path, message: str) -> str | None:  # type: ignore[override]
        return None
