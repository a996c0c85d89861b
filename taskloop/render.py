'''Prompt rendering for taskloop agents (task executor / criterion verifier).

Task prompts are written under `cfg.renders_dir` (typically `.taskloop/renders/`) as
`<task-id>-agent.md`. They are composed from, in order:

1) Project context: project name and the plan overview.
2) A one-line-per-task view of the plan with status glyphs, so the agent can see what is
   already done around it.
3) The task itself: ID, title, priority, plan status, dependencies, description, acceptance
   criteria (as a checklist) and the optional spec reference.
4) Fixed implementation instructions separated by a Markdown thematic break (`---`).

Status glyphs (rendered in the plan view)
Tasks are printed as `[<glyph>] <id>. <title>`. Glyphs come from `RuntimeStatus` via
`STATUS_GLYPH`:
- `COMPLETED`: "✓" (U+2713)
- `IN_PROGRESS`: ">"
- `PENDING`: " " (space)
- `BLOCKED`: "…" (U+2026)
- `FAILED`: "✗" (U+2717)
The task being executed is shown as in progress. Without a status map every other task
renders as pending.

Criterion prompts
`render_criterion_prompt(criterion)` builds the question asked of the Claude verifier. It is
passed on the command line, not written to disk.

All outputs are UTF-8 and end with a trailing newline. Files under `.taskloop/renders/` are
generated artifacts, rewritten every attempt.
'''

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from .plan import Plan, Task
from .status import RuntimeStatus

STATUS_GLYPH: dict[RuntimeStatus, str] = {
    RuntimeStatus.COMPLETED: "\u2713",  # ✓
    RuntimeStatus.IN_PROGRESS: ">",
    RuntimeStatus.PENDING: " ",
    RuntimeStatus.BLOCKED: "\u2026",  # …
    RuntimeStatus.FAILED: "\u2717",  # ✗
}


class RenderConfig(Protocol):
    @property
    def renders_dir(self) -> Path: ...


def render_plan_view(plan: Plan, *, statuses: Mapping[str, RuntimeStatus] | None = None, active: str | None = None) -> str:
    lines: list[str] = []
    for task in plan.tasks:
        status = RuntimeStatus.IN_PROGRESS if task.id == active else (statuses or {}).get(task.id, RuntimeStatus.PENDING)
        glyph = STATUS_GLYPH.get(status, " ")
        lines.append(f"[{glyph}] {task.id}. {task.title}")
    return "\n".join(lines) + "\n"


def render_task(plan: Plan, task: Task, *, statuses: Mapping[str, RuntimeStatus] | None = None) -> str:
    lines: list[str] = []
    lines.append(f"# {plan.project_name}\n")
    if plan.description.strip():
        lines.append("## Project Overview\n")
        lines.append(plan.description.strip() + "\n")

    lines.append("## Plan\n")
    lines.append(render_plan_view(plan, statuses=statuses, active=task.id))

    lines.append(f"## Task {task.id}: {task.title}\n")
    lines.append(f"**Priority:** {task.priority.value}")
    lines.append(f"**Status:** {task.status.value}")
    if task.dependencies:
        lines.append(f"**Dependencies:** {', '.join(task.dependencies)}")
        lines.append("(These tasks are complete and their changes are already in the codebase.)")
    lines.append("")

    if task.description.strip():
        lines.append('Description: """')
        lines.append(task.description.strip())
        lines.append('"""')
        lines.append("")

    if task.acceptance_criteria:
        lines.append("Done when (all must hold):")
        for criterion in task.acceptance_criteria:
            mark = "x" if criterion.completed else " "
            lines.append(f"- [{mark}] {criterion.text}")
        lines.append("")

    if task.spec_reference:
        lines.append(f"Reference: {task.spec_reference}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


def _task_instructions(task: Task) -> str:
    return (
        "\n---\n\n"
        "Instructions\n\n"
        f"I am in charge of {task.id}. I implement it now by creating, modifying or deleting files; "
        "describing the change is not enough.\n\n"
        "1. Read the relevant code first and follow its existing conventions.\n"
        "2. Make only the changes this task needs.\n"
        "3. Check every acceptance criterion above before finishing; run tests when they exist.\n"
        "4. Finish with a short summary of what changed.\n\n"
        "If something is underspecified, make a reasonable assumption and proceed. Do not ask questions.\n"
        "Do not commit; taskloop commits after verification.\n"
    )


def write_task_prompt(
    *,
    cfg: RenderConfig,
    plan: Plan,
    task: Task,
    statuses: Mapping[str, RuntimeStatus] | None = None,
) -> Path:
    cfg.renders_dir.mkdir(parents=True, exist_ok=True)
    out = cfg.renders_dir / f"{task.id}-agent.md"
    out.write_text(render_task(plan, task, statuses=statuses) + _task_instructions(task), encoding="utf-8")
    return out


def render_criterion_prompt(criterion: str) -> str:
    return (
        "# Acceptance Criterion Verification\n\n"
        "Decide whether the following acceptance criterion holds in the codebase in the current directory.\n\n"
        f'Criterion: """\n{criterion.strip()}\n"""\n\n'
        "Inspect the files, and run tests or commands if needed. If the criterion says something exists, "
        "is created or is implemented, confirm it actually does.\n\n"
        "Return a JSON object with `passed` (boolean) and, when it does not hold, a short `note`.\n"
        "Return only valid JSON on stdout. No markdown fences or extra commentary.\n"
    )
