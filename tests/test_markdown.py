from pathlib import Path

import pytest

from taskloop.markdown import load_plan, parse_plan, save_plan, serialize_plan
from taskloop.plan import AcceptanceCriterion, Plan, PlanStatus, Priority, Task

SAMPLE = """\
# Implementation Plan

## Overview

Build a thing.
Second line.

**Project:** demo
**Total Tasks:** 2
**Estimated Duration:** 2 days

---

## Tasks

### task-001: Set up

**ID:** task-001
**Priority:** high
**Status:** To Do

**Description:**
Create the skeleton.
Add a README.

**Acceptance Criteria:**
- [ ] README.md exists
- [x] src exists

---

### Task 2: Build API
**Priority:** bogus
**Status:** Needs Re-Work
**Dependencies:** task-001
**Complexity:** 3/5
**Tags:** api, backend
**Description:** Inline start
continues here
**Acceptance Criteria:**
- [X] api works

**Spec Reference:** [docs/api.md](docs/api.md)

---

*Generated on 2026-01-01T00:00:00Z*
"""


def test_parse_reads_header_fields() -> None:
    plan = parse_plan(SAMPLE)

    assert plan.project_name == "demo"
    assert plan.description == "Build a thing.\nSecond line."
    assert plan.total_tasks == 2
    assert plan.estimated_duration == "2 days"
    assert plan.generated_at == "2026-01-01T00:00:00Z"


def test_parse_reads_task_fields() -> None:
    plan = parse_plan(SAMPLE)

    first, second = plan.tasks
    assert first.id == "task-001"
    assert first.title == "Set up"
    assert first.priority == Priority.HIGH
    assert first.status == PlanStatus.TODO
    assert first.dependencies == []
    assert first.description == "Create the skeleton.\nAdd a README."
    assert [(c.text, c.completed) for c in first.acceptance_criteria] == [("README.md exists", False), ("src exists", True)]

    assert second.id == "task-002"
    assert second.title == "Build API"
    assert second.priority == Priority.MEDIUM
    assert second.status == PlanStatus.NEEDS_REWORK
    assert second.dependencies == ["task-001"]
    assert second.estimated_complexity == 3
    assert second.tags == ["api", "backend"]
    assert second.description == "Inline start\ncontinues here"
    assert [(c.text, c.completed) for c in second.acceptance_criteria] == [("api works", True)]
    assert second.spec_reference == "docs/api.md"


def test_parse_assigns_sequential_ids_in_header_order_when_missing() -> None:
    md = "## Tasks\n\n### First\n- [ ] a\n\n### task-007: Explicit\n\n### Third\n**ID:** task-042\n\n### Fourth\n"

    plan = parse_plan(md)

    assert plan.task_ids == ["task-001", "task-007", "task-042", "task-004"]
    assert [t.title for t in plan.tasks] == ["First", "Explicit", "Third", "Fourth"]


def test_parse_is_tolerant_of_missing_fields_and_unknown_lines() -> None:
    md = "## Tasks\n\n### Lonely\nsome stray text\n**Owner:** bob\n**Dependencies:** none\n"

    plan = parse_plan(md, project_dir=Path("/tmp/my-project"))

    assert plan.project_name == "my-project"
    assert plan.total_tasks == 1
    task = plan.tasks[0]
    assert task.priority == Priority.MEDIUM
    assert task.status == PlanStatus.TODO
    assert task.dependencies == []
    assert task.acceptance_criteria == []
    assert task.description == ""


def test_parse_ignores_headers_outside_tasks_section() -> None:
    md = "## Overview\n\nIntro\n\n### Not a task\n\n## Tasks\n\n### Real task\n"

    assert [t.title for t in parse_plan(md).tasks] == ["Real task"]


def test_description_stops_at_blank_line() -> None:
    md = "## Tasks\n\n### T\n**Description:**\nline one\n\nnot description\n- [ ] crit\n"

    task = parse_plan(md).tasks[0]

    assert task.description == "line one"
    assert task.criteria_texts == ["crit"]


def _plan() -> Plan:
    return Plan(
        project_name="demo",
        description="Overview text.\nMore.",
        generated_at="2026-02-03T04:05:06+00:00",
        total_tasks=3,
        estimated_duration="1 week",
        tasks=[
            Task(
                id="task-001",
                title="Base",
                description="Do base.",
                priority=Priority.HIGH,
                acceptance_criteria=[AcceptanceCriterion("base exists", True), AcceptanceCriterion("npm run build passes")],
                status=PlanStatus.IMPLEMENTED,
                tags=["core"],
                estimated_complexity=2,
            ),
            Task(
                id="task-002",
                title="Feature: part one",
                description="Line A\nLine B",
                priority=Priority.LOW,
                dependencies=["task-001"],
                acceptance_criteria=[AcceptanceCriterion("feature.py includes 'def run'")],
                spec_reference="docs/feature.md",
            ),
            Task(
                id="task-003",
                title="Wrap up",
                description="Finish.",
                dependencies=["task-001", "task-002"],
                status=PlanStatus.NEEDS_REWORK,
            ),
        ],
    )


def test_round_trip_preserves_tasks() -> None:
    original = _plan()

    reparsed = parse_plan(serialize_plan(original))

    assert reparsed.task_ids == original.task_ids
    for a, b in zip(original.tasks, reparsed.tasks):
        assert b.title == a.title
        assert b.priority == a.priority
        assert b.status == a.status
        assert b.dependencies == a.dependencies
        assert b.acceptance_criteria == a.acceptance_criteria
        assert b.description == a.description
        assert b.tags == a.tags
        assert b.estimated_complexity == a.estimated_complexity
        assert b.spec_reference == a.spec_reference
    assert reparsed.project_name == original.project_name
    assert reparsed.description == original.description
    assert reparsed.total_tasks == original.total_tasks
    assert reparsed.estimated_duration == original.estimated_duration
    assert reparsed.generated_at == original.generated_at


@pytest.mark.parametrize(
    "description",
    [
        "Steps:\n### Step 1\nwrite code",
        "Intro\n## Notes\nmore",
        "**Status:** Implemented\n---\n*Generated on never*",
        "\\# already escaped\n\\n stays",
    ],
)
def test_round_trip_keeps_structure_like_description_lines(description: str) -> None:
    plan = Plan(
        project_name="demo",
        description="Overview\n## Not a section",
        generated_at="2026-02-03T04:05:06+00:00",
        total_tasks=2,
        tasks=[
            Task(id="task-001", title="One", description=description, acceptance_criteria=[AcceptanceCriterion("a")]),
            Task(id="task-002", title="Two", description="plain", dependencies=["task-001"]),
        ],
    )

    reparsed = parse_plan(serialize_plan(plan))

    assert reparsed.task_ids == ["task-001", "task-002"]
    assert [t.title for t in reparsed.tasks] == ["One", "Two"]
    assert reparsed.tasks[0].description == description
    assert reparsed.tasks[0].status == PlanStatus.TODO
    assert reparsed.tasks[0].criteria_texts == ["a"]
    assert reparsed.tasks[1].dependencies == ["task-001"]
    assert reparsed.description == "Overview\n## Not a section"
    assert reparsed.generated_at == "2026-02-03T04:05:06+00:00"


def test_serialize_escapes_heading_lines_in_descriptions() -> None:
    task = Task(id="task-001", title="One", description="Steps:\n### Step 1")
    plan = Plan(project_name="p", description="", tasks=[task], generated_at="now", total_tasks=1)

    out = serialize_plan(plan)

    assert "**Description:**\nSteps:\n\\### Step 1\n" in out
    assert [ln for ln in out.splitlines() if ln.startswith("#")] == ["# Implementation Plan", "## Overview", "## Tasks", "### task-001: One"]


def test_serialize_writes_expected_layout() -> None:
    out = serialize_plan(_plan())

    assert out.startswith("# Implementation Plan\n\n## Overview\n")
    assert "**Total Tasks:** 3" in out
    assert "### task-002: Feature: part one" in out
    assert "**Dependencies:** task-001, task-002" in out
    assert "- [x] base exists" in out
    assert "- [ ] npm run build passes" in out
    assert "**Complexity:** 2/5" in out
    assert "**Spec Reference:** [docs/feature.md](docs/feature.md)" in out
    assert out.rstrip().endswith("*Generated on 2026-02-03T04:05:06+00:00*")


def test_save_then_load(tmp_path: Path) -> None:
    path = tmp_path / "plans" / "PLAN.md"

    save_plan(path, _plan())

    assert load_plan(path).task_ids == ["task-001", "task-002", "task-003"]
    assert [p.name for p in path.parent.iterdir()] == ["PLAN.md"]


def test_save_keeps_previous_file_when_serialization_fails(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import taskloop.markdown as md_mod

    path = tmp_path / "PLAN.md"
    path.write_text("original\n", encoding="utf-8")

    def boom(_plan: Plan) -> str:
        raise RuntimeError("boom")

    monkeypatch.setattr(md_mod, "serialize_plan", boom)

    with pytest.raises(RuntimeError):
        save_plan(path, _plan())

    assert path.read_text(encoding="utf-8") == "original\n"
    assert [p.name for p in tmp_path.iterdir()] == ["PLAN.md"]
