"""Markdown plan format: parse and serialize `Plan` objects.

The format is the one written by `serialize_plan` (see below). The parser is tolerant:
missing optional fields take defaults, unknown lines are ignored, and tasks without an
explicit ID are numbered `task-001`, `task-002`, ... in the order their headers appear.

Round-trip law: `parse_plan(serialize_plan(plan))` has the same task order, IDs, titles,
priorities, statuses, dependencies and acceptance criteria (text, order and completion)
as `plan`. Whitespace and the placement of optional fields may differ. Description lines
are stripped and blank lines inside a description are dropped, because a blank line ends
the description block.

Description and overview lines that the parser would read as structure (headings, `**Label:**`
lines, `---`) are written with a leading backslash, which `parse_plan` strips again. A line
that already starts with a backslash gets a second one.
"""

from __future__ import annotations

import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .plan import AcceptanceCriterion, Plan, PlanStatus, Priority, Task

_TASK_HEADER_RE = re.compile(r"^###\s+(.+)$")
_HEADER_PREFIX_RE = re.compile(r"^(?:Task\s+\d+|(task-\d+))\s*:\s*(.*)$", re.IGNORECASE)
_LABEL_RE = re.compile(r"^\*\*([^*:]+):\*\*\s*(.*)$")
_CHECKBOX_RE = re.compile(r"^[-*]\s+\[([ xX]?)\]\s*(.+)$")
_COMPLEXITY_RE = re.compile(r"^([1-5])\s*(?:/\s*5)?$")
_LINK_RE = re.compile(r"^\[([^\]]*)\]\(([^)]+)\)$")
_GENERATED_RE = re.compile(r"^\*Generated on (.+)\*$")
_ESCAPED_RE = re.compile(r"^(?:#|\*|\\|---$)")


def parse_plan(markdown: str, *, project_dir: Path | None = None) -> Plan:
    """Parse the markdown plan format into a `Plan`."""
    lines = markdown.splitlines()
    project_name: str | None = None
    total_tasks: int | None = None
    estimated_duration: str | None = None
    generated_at: str | None = None
    overview: list[str] = []

    tasks: list[Task] = []
    explicit_ids: list[str | None] = []
    current: Task | None = None
    current_id: str | None = None
    section = ""

    i = 0
    while i < len(lines):
        line = lines[i].strip()
        i += 1

        m = _GENERATED_RE.match(line)
        if m:
            generated_at = m.group(1).strip()
            continue

        if line.startswith("## "):
            section = line[3:].strip().lower()
            continue

        if section != "tasks":
            label = _LABEL_RE.match(line)
            if label:
                name, value = label.group(1).strip().lower(), label.group(2).strip()
                if name == "project":
                    project_name = value
                elif name == "total tasks" and value.isdigit():
                    total_tasks = int(value)
                elif name == "estimated duration":
                    estimated_duration = value
                continue
            if section == "overview" and line and line != "---" and not line.startswith("#"):
                overview.append(_unescape(line))
            elif section == "overview" and overview and not line:
                # First paragraph only.
                section = "overview-done"
            continue

        header = _TASK_HEADER_RE.match(line)
        if header:
            if current is not None:
                tasks.append(current)
                explicit_ids.append(current_id)
            title, current_id = _split_header(header.group(1).strip())
            current = Task(id="", title=title)
            continue

        if current is None:
            continue

        checkbox = _CHECKBOX_RE.match(line)
        if checkbox:
            done = checkbox.group(1).lower() == "x"
            current.acceptance_criteria.append(AcceptanceCriterion(text=checkbox.group(2).strip(), completed=done))
            continue

        label = _LABEL_RE.match(line)
        if not label:
            continue
        name, value = label.group(1).strip().lower(), label.group(2).strip()

        if name == "id":
            if value:
                current_id = value
        elif name == "priority":
            current.priority = _parse_priority(value)
        elif name == "status":
            current.status = _parse_status(value)
        elif name == "dependencies":
            current.dependencies = _split_list(value)
        elif name == "complexity":
            cm = _COMPLEXITY_RE.match(value)
            current.estimated_complexity = int(cm.group(1)) if cm else None
        elif name == "tags":
            current.tags = _split_list(value)
        elif name == "spec reference":
            link = _LINK_RE.match(value)
            current.spec_reference = (link.group(2) if link else value) or None
        elif name == "description":
            desc = [value] if value else []
            while i < len(lines):
                nxt = lines[i].strip()
                if not nxt or _LABEL_RE.match(nxt) or nxt.startswith("#"):
                    break
                desc.append(_unescape(nxt))
                i += 1
            current.description = "\n".join(desc)

    if current is not None:
        tasks.append(current)
        explicit_ids.append(current_id)

    for index, (task, explicit) in enumerate(zip(tasks, explicit_ids)):
        task.id = explicit or f"task-{index + 1:03d}"

    if not project_name:
        project_name = project_dir.name if project_dir is not None else "Project"

    return Plan(
        project_name=project_name,
        description="\n".join(overview),
        tasks=tasks,
        generated_at=generated_at or datetime.now(timezone.utc).isoformat(),
        total_tasks=total_tasks if total_tasks is not None else len(tasks),
        estimated_duration=estimated_duration,
    )


def serialize_plan(plan: Plan) -> str:
    out: list[str] = ["# Implementation Plan", "", "## Overview", ""]
    description = _clean_block(plan.description)
    if description:
        out += [description, ""]
    out.append(f"**Project:** {plan.project_name}")
    out.append(f"**Total Tasks:** {plan.total_tasks}")
    if plan.estimated_duration:
        out.append(f"**Estimated Duration:** {plan.estimated_duration}")
    out += ["", "---", "", "## Tasks", ""]

    for task in plan.tasks:
        out += [f"### {task.id}: {task.title}", ""]
        out.append(f"**ID:** {task.id}")
        out.append(f"**Priority:** {task.priority.value}")
        out.append(f"**Status:** {task.status.value}")
        if task.dependencies:
            out.append(f"**Dependencies:** {', '.join(task.dependencies)}")
        if task.estimated_complexity:
            out.append(f"**Complexity:** {task.estimated_complexity}/5")
        if task.tags:
            out.append(f"**Tags:** {', '.join(task.tags)}")
        out.append("")
        out.append("**Description:**")
        block = _clean_block(task.description)
        if block:
            out.append(block)
        out.append("")
        out.append("**Acceptance Criteria:**")
        for criterion in task.acceptance_criteria:
            mark = "x" if criterion.completed else " "
            out.append(f"- [{mark}] {criterion.text}")
        if task.spec_reference:
            out += ["", f"**Spec Reference:** [{task.spec_reference}]({task.spec_reference})"]
        out += ["", "---", ""]

    out.append(f"*Generated on {plan.generated_at}*")
    return "\n".join(out) + "\n"


def load_plan(path: Path) -> Plan:
    return parse_plan(path.read_text(encoding="utf-8"), project_dir=path.parent)


def save_plan(path: Path, plan: Plan) -> None:
    """Write the plan next to itself and swap it in, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(serialize_plan(plan))
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


def _split_header(text: str) -> tuple[str, str | None]:
    m = _HEADER_PREFIX_RE.match(text)
    if not m or not m.group(2).strip():
        return text, None
    return m.group(2).strip(), (m.group(1).lower() if m.group(1) else None)


def _split_list(value: str) -> list[str]:
    items = [v.strip() for v in value.split(",")]
    return [v for v in items if v and v.lower() not in {"none", "-", "n/a"}]


def _parse_priority(value: str) -> Priority:
    try:
        return Priority(value.strip().lower())
    except ValueError:
        return Priority.MEDIUM


def _parse_status(value: str) -> PlanStatus:
    wanted = value.strip().lower()
    for status in PlanStatus:
        if status.value.lower() == wanted:
            return status
    return PlanStatus.TODO


def _clean_block(text: str) -> str:
    lines = (ln.strip() for ln in text.splitlines())
    return "\n".join(_escape(ln) for ln in lines if ln)


def _escape(line: str) -> str:
    return "\\" + line if _ESCAPED_RE.match(line) else line


def _unescape(line: str) -> str:
    if line.startswith("\\") and _ESCAPED_RE.match(line[1:]):
        return line[1:]
    return line
