"""Structural checks over a plan's dependency graph.

A plan is only executed after `validate_plan` accepts it. The checks never repair anything:
they report every problem found so the author can fix the markdown by hand.

Checks, in order
- empty plan (short-circuits: nothing else is checked),
- task ID format (`task-<digits>`),
- duplicate IDs,
- required fields: a missing title or description is an error; a task without acceptance
  criteria is only a warning,
- the declared `total_tasks` against the real task count,
- dependencies that point at tasks not in the plan,
- dependency cycles.

Graph traversal
- The adjacency list (`task id -> dependency ids`) is built once per call. Dependencies on
  unknown IDs are dropped from it; they are reported by the dangling-dependency check.
- Cycle detection and `topological_sort` share one iterative white/gray/black DFS, so deep
  chains do not hit the interpreter's recursion limit and the cost stays O(V+E).
- Reaching a gray node means the current path has looped back on itself. The cycle is the
  path from that node's position to the top, closed with the node again, and every such
  back edge is reported, so independent cycles all show up in one pass.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from .plan import TASK_ID_RE, Plan, Task

_WHITE, _GRAY, _BLACK = 0, 1, 2


class PlanValidationError(ValueError):
    def __init__(self, errors: list[str], warnings: list[str] | None = None) -> None:
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Invalid plan:\n" + "\n".join(f"- {e}" for e in self.errors))


class CycleError(ValueError):
    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.valid:
            raise PlanValidationError(self.errors, self.warnings)


def validate_plan(plan: Plan) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    if not plan.tasks:
        return ValidationResult(valid=False, errors=["Plan must contain at least one task"])

    for index, task in enumerate(plan.tasks, start=1):
        if not TASK_ID_RE.match(task.id):
            errors.append(f"Task {index} has invalid ID format: {task.id} (expected: task-XXX)")

    seen: set[str] = set()
    for task in plan.tasks:
        if task.id in seen:
            errors.append(f"Duplicate task ID: {task.id}")
        seen.add(task.id)

    for task in plan.tasks:
        if not task.title.strip():
            errors.append(f"Task {task.id} is missing a title")
        if not task.description.strip():
            errors.append(f"Task {task.id} is missing a description")
        if not task.acceptance_criteria:
            warnings.append(f"Task {task.id} has no acceptance criteria")

    if plan.total_tasks != len(plan.tasks):
        errors.append(f"Plan declares {plan.total_tasks} total tasks but contains {len(plan.tasks)}")

    for task in plan.tasks:
        for dep in task.dependencies:
            if dep not in seen:
                errors.append(f"Task {task.id} depends on non-existent task: {dep}")

    for cycle in find_cycles(plan.tasks):
        errors.append(f"Circular dependencies detected: {' -> '.join(cycle)}")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)


def find_cycles(tasks: Sequence[Task]) -> list[list[str]]:
    """Return every cycle reached by the DFS, each as a closed path (`[a, b, a]`)."""
    graph = _adjacency(tasks)
    color = {tid: _WHITE for tid in graph}
    cycles: list[list[str]] = []
    for root in graph:
        if color[root] == _WHITE:
            for event, node, path in _dfs(graph, color, root):
                if event == "cycle":
                    cycles.append(path[path.index(node):] + [node])
    return cycles


def topological_sort(tasks: Sequence[Task]) -> list[Task]:
    """Order `tasks` so every task comes after all of its dependencies.

    Raises `CycleError` instead of returning a partial order; validate first.
    """
    by_id: dict[str, Task] = {}
    for task in tasks:
        by_id.setdefault(task.id, task)
    graph = _adjacency(tasks)
    color = {tid: _WHITE for tid in graph}
    order: list[Task] = []
    for root in graph:
        if color[root] != _WHITE:
            continue
        for event, node, path in _dfs(graph, color, root):
            if event == "cycle":
                raise CycleError(path[path.index(node):] + [node])
            order.append(by_id[node])
    return order


def _adjacency(tasks: Sequence[Task]) -> dict[str, list[str]]:
    known = {t.id for t in tasks}
    graph: dict[str, list[str]] = {}
    for task in tasks:
        if task.id in graph:
            continue
        graph[task.id] = [d for d in task.dependencies if d in known]
    return graph


def _dfs(graph: dict[str, list[str]], color: dict[str, int], root: str) -> Iterator[tuple[str, str, list[str]]]:
    """Iterative DFS from `root`.

    Yields `("done", node, path)` when a node is finished (post-order) and
    `("cycle", node, path)` when an edge leads back to a gray node on `path`.
    """
    path: list[str] = [root]
    stack: list[Iterator[str]] = [iter(graph[root])]
    color[root] = _GRAY
    while stack:
        node = path[-1]
        for dep in stack[-1]:
            if color[dep] == _GRAY:
                yield "cycle", dep, path
            elif color[dep] == _WHITE:
                color[dep] = _GRAY
                path.append(dep)
                stack.append(iter(graph[dep]))
                break
        else:
            color[node] = _BLACK
            stack.pop()
            path.pop()
            yield "done", node, path + [node]
