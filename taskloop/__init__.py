"""taskloop: crash-resumable, one-task-at-a-time execution of markdown work plans.

Given a plan of tasks with dependencies, priorities and acceptance criteria, taskloop
repeatedly picks the next eligible task, hands it to an external coding agent CLI,
verifies the acceptance criteria, and records the attempt in a durable session log.

What taskloop provides
- A CLI entrypoint (`taskloop.cli:main`, runnable via `python -m taskloop`).
- The plan model and its markdown form (`taskloop.plan`, `taskloop.markdown`).
- Structural validation and topological ordering (`taskloop.dag`).
- Runtime status resolution over session, commit history and plan annotations
  (`taskloop.status`) and next-task selection (`taskloop.scheduler`).
- The session store (`taskloop.session`) and the execution loop (`taskloop.executor`).
- Protocol-style agent/verifier interfaces with stub and Claude CLI implementations
  (`taskloop.agents`).

What taskloop intentionally does not do
- Run tasks in parallel: `max_parallel` is accepted but tasks always run one at a time.
- Implement an agent of its own; non-`--dry-run` execution depends on an external CLI.

Key exports from this module
- `__version__`: the package version string. (`__all__` is intentionally limited to this.)
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
