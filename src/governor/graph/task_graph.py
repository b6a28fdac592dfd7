from __future__ import annotations

import logging
from collections import Counter

from governor.errors import (
    CyclicDependencyError,
    DanglingDependencyError,
    TaskRecordError,
    WaveOrderError,
)
from governor.models import (
    TASK_STATUSES,
    FailureRecord,
    Task,
    TaskGraph,
    VerificationResult,
    utcnow_iso,
)
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.graph")

_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "blocked", "deferred", "superseded", "failed"}),
    "running": frozenset({"completed", "failed", "blocked", "pending"}),
    "completed": frozenset({"pending", "failed", "blocked", "superseded"}),
    "failed": frozenset({"pending", "superseded"}),
    "blocked": frozenset({"pending", "deferred", "superseded"}),
    "deferred": frozenset({"pending", "superseded"}),
    "superseded": frozenset(),
}
_UNPASSABLE = frozenset({"failed", "blocked", "superseded", "deferred"})


def _transition(task: Task, status: str) -> None:
    if status != task.status and status not in _TRANSITIONS[task.status]:
        raise TaskRecordError(
            f"Task '{task.id}' cannot move from {task.status} to {status}.", task_id=task.id
        )
    task.status = status  # type: ignore[assignment]
    task.updated_at = utcnow_iso()


def find_cycle(graph: TaskGraph) -> list[str] | None:
    """Depth-first search with an explicit recursion stack.

    Returns the cycle as a closed path (first id repeated at the end).
    """
    by_id = graph.by_id()
    visited: set[str] = set()
    on_stack: list[str] = []
    on_stack_set: set[str] = set()

    def _visit(task_id: str) -> list[str] | None:
        visited.add(task_id)
        on_stack.append(task_id)
        on_stack_set.add(task_id)
        for dep_id in by_id[task_id].depends_on:
            if dep_id not in by_id:
                continue
            if dep_id in on_stack_set:
                start = on_stack.index(dep_id)
                return [*on_stack[start:], dep_id]
            if dep_id not in visited:
                cycle = _visit(dep_id)
                if cycle:
                    return cycle
        on_stack.pop()
        on_stack_set.discard(task_id)
        return None

    for task in graph.tasks:
        if task.id not in visited:
            cycle = _visit(task.id)
            if cycle:
                return cycle
    return None


def validate_graph(graph: TaskGraph) -> None:
    counts = Counter(task.id for task in graph.tasks)
    duplicates = sorted(task_id for task_id, count in counts.items() if count > 1)
    if duplicates:
        raise TaskRecordError(
            f"Duplicate task id(s) in graph: {', '.join(duplicates)}.", task_id=duplicates[0]
        )

    by_id = graph.by_id()
    for task in graph.tasks:
        for dep_id in task.depends_on:
            if dep_id not in by_id:
                raise DanglingDependencyError(task.id, dep_id)

    cycle = find_cycle(graph)
    if cycle:
        raise CyclicDependencyError(cycle)

    for task in graph.tasks:
        for dep_id in task.depends_on:
            dependency = by_id[dep_id]
            if dependency.wave >= task.wave:
                raise WaveOrderError(task.id, task.wave, dep_id, dependency.wave)


class TaskGraphManager:
    """Loads, validates, mutates and persists the task graph.

    Mutations only touch the in-memory graph; callers persist with ``save``.
    """

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def load(self) -> TaskGraph:
        payload = self.store.read_json(self.store.task_graph_file, default=None)
        if payload is None:
            return TaskGraph()
        if not isinstance(payload, dict):
            raise TaskRecordError("Task graph document must be a JSON object.")
        graph = TaskGraph.from_dict(payload)
        validate_graph(graph)
        logger.debug("Loaded task graph with %d task(s)", len(graph.tasks))
        return graph

    def save(self, graph: TaskGraph) -> None:
        graph.reindex()
        graph.last_updated = utcnow_iso()
        self.store.write_json(self.store.task_graph_file, graph.to_dict())

    def validate(self, graph: TaskGraph) -> None:
        validate_graph(graph)

    def add_task(self, graph: TaskGraph, task: Task) -> Task:
        if graph.get(task.id) is not None:
            raise TaskRecordError(f"Task id already exists: {task.id}", task_id=task.id)
        by_id = graph.by_id()
        for dep_id in task.depends_on:
            if dep_id not in by_id:
                raise DanglingDependencyError(task.id, dep_id)
            if by_id[dep_id].wave >= task.wave:
                raise WaveOrderError(task.id, task.wave, dep_id, by_id[dep_id].wave)
        graph.tasks.append(task)
        graph.reindex()
        return task

    # Status transitions

    def mark_running(self, graph: TaskGraph, task_id: str) -> Task:
        task = graph.require(task_id)
        _transition(task, "running")
        task.started_at = utcnow_iso()
        task.completed_at = None
        return task

    def mark_completed(
        self,
        graph: TaskGraph,
        task_id: str,
        *,
        summary: str | None = None,
        verification: VerificationResult | None = None,
    ) -> Task:
        task = graph.require(task_id)
        _transition(task, "completed")
        task.completed_at = utcnow_iso()
        task.blocker = None
        if summary is not None:
            task.summary = summary
        if verification is not None:
            task.verification = verification
        return task

    def mark_failed(self, graph: TaskGraph, task_id: str, failure: FailureRecord) -> Task:
        task = graph.require(task_id)
        _transition(task, "failed")
        task.failure = failure
        task.completed_at = utcnow_iso()
        return task

    def mark_blocked(self, graph: TaskGraph, task_id: str, reason: str) -> Task:
        task = graph.require(task_id)
        _transition(task, "blocked")
        task.blocker = reason
        return task

    def requeue(
        self, graph: TaskGraph, task_id: str, failure: FailureRecord | None = None
    ) -> Task:
        task = graph.require(task_id)
        _transition(task, "pending")
        if failure is not None:
            task.failure = failure
        task.blocker = None
        task.started_at = None
        task.completed_at = None
        return task

    def defer(self, graph: TaskGraph, task_id: str) -> Task:
        task = graph.require(task_id)
        _transition(task, "deferred")
        return task

    def supersede(self, graph: TaskGraph, task_id: str, replacement_id: str) -> Task:
        task = graph.require(task_id)
        replacement = graph.require(replacement_id)
        if replacement.id == task.id:
            raise TaskRecordError("A task cannot supersede itself.", task_id=task_id)
        dependents = [
            other
            for other in graph.tasks
            if other.id != replacement.id and task_id in other.depends_on
        ]
        for other in dependents:
            if replacement.wave >= other.wave:
                raise WaveOrderError(other.id, other.wave, replacement.id, replacement.wave)
        _transition(task, "superseded")
        task.superseded_by = replacement.id
        for other in dependents:
            rewired = [
                replacement.id if dep_id == task_id else dep_id for dep_id in other.depends_on
            ]
            other.depends_on = list(dict.fromkeys(rewired))
        return task

    def attach_checkpoint(self, graph: TaskGraph, task_id: str, checkpoint_id: str) -> Task:
        task = graph.require(task_id)
        task.checkpoint_id = checkpoint_id
        task.updated_at = utcnow_iso()
        return task

    def recover_interrupted(self, graph: TaskGraph) -> list[str]:
        recovered: list[str] = []
        for task in graph.tasks:
            if task.status == "running":
                _transition(task, "pending")
                task.started_at = None
                recovered.append(task.id)
        if recovered:
            logger.warning("Reset interrupted task(s) to pending: %s", ", ".join(recovered))
        return recovered

    # Queries

    @staticmethod
    def ready_tasks(graph: TaskGraph) -> list[Task]:
        by_id = graph.by_id()
        ready: list[Task] = []
        for task in graph.tasks:
            if task.status != "pending":
                continue
            if all(
                dep_id in by_id and by_id[dep_id].status == "completed"
                for dep_id in task.depends_on
            ):
                ready.append(task)
        return ready

    def shallow_deadlock(self, graph: TaskGraph) -> list[str]:
        """One-hop check: every dependency is failed, blocked or still pending."""
        if self.ready_tasks(graph):
            return []
        by_id = graph.by_id()
        stuck: list[str] = []
        for task in graph.tasks:
            if task.status not in {"pending", "blocked"} or not task.depends_on:
                continue
            if all(
                dep_id in by_id and by_id[dep_id].status in {"failed", "blocked", "pending"}
                for dep_id in task.depends_on
            ):
                stuck.append(task.id)
        return stuck

    @staticmethod
    def stalled_tasks(graph: TaskGraph) -> list[str]:
        """Pending tasks that can never become ready, following dependencies transitively."""
        by_id = graph.by_id()
        memo: dict[str, bool] = {}

        def _can_finish(task_id: str, trail: frozenset[str]) -> bool:
            if task_id in memo:
                return memo[task_id]
            task = by_id.get(task_id)
            if task is None or task_id in trail:
                return False
            if task.status in {"completed", "running"}:
                result = True
            elif task.status in _UNPASSABLE:
                result = False
            else:
                result = all(
                    _can_finish(dep_id, trail | {task_id}) for dep_id in task.depends_on
                )
            memo[task_id] = result
            return result

        return [
            task.id
            for task in graph.tasks
            if task.status == "pending" and not _can_finish(task.id, frozenset())
        ]

    @staticmethod
    def summary(graph: TaskGraph) -> dict[str, int]:
        counts = Counter(task.status for task in graph.tasks)
        return {status: counts.get(status, 0) for status in TASK_STATUSES}
