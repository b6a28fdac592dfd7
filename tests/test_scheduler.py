from pathlib import Path

import pytest

from governor.errors import DeadlockError
from governor.graph import TaskGraphManager, WaveScheduler
from governor.models import Task, TaskGraph
from governor.state import ProjectStore


def _scheduler(tmp_path: Path) -> tuple[TaskGraphManager, WaveScheduler]:
    manager = TaskGraphManager(ProjectStore(tmp_path))
    return manager, WaveScheduler(manager)


def _complete(manager: TaskGraphManager, graph: TaskGraph, *task_ids: str) -> None:
    for task_id in task_ids:
        manager.mark_running(graph, task_id)
        manager.mark_completed(graph, task_id)


def test_waves_progress_in_order(tmp_path: Path) -> None:
    manager, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1),
            Task(id="B", description="b", wave=1),
            Task(id="C", description="c", wave=2, depends_on=["A", "B"]),
        ]
    )

    first = scheduler.next_wave(graph)
    assert first is not None
    assert first.wave == 1
    assert first.task_ids == ["A", "B"]

    _complete(manager, graph, "A", "B")
    second = scheduler.next_wave(graph)
    assert second is not None
    assert second.task_ids == ["C"]

    _complete(manager, graph, "C")
    assert scheduler.next_wave(graph) is None
    assert scheduler.is_complete(graph)


def test_next_wave_is_idempotent_without_mutation(tmp_path: Path) -> None:
    _, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1),
            Task(id="B", description="b", wave=2),
        ]
    )

    first = scheduler.next_wave(graph)
    second = scheduler.next_wave(graph)

    assert first is not None and second is not None
    assert first.task_ids == second.task_ids == ["A"]
    assert [task.status for task in graph.tasks] == ["pending", "pending"]


def test_ready_tasks_require_completed_dependencies(tmp_path: Path) -> None:
    manager, _ = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, status="running"),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
            Task(id="C", description="c", wave=2),
        ]
    )

    assert [task.id for task in manager.ready_tasks(graph)] == ["C"]


def test_pending_work_behind_running_tasks_is_not_a_deadlock(tmp_path: Path) -> None:
    _, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, status="running"),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
        ]
    )

    assert scheduler.next_wave(graph) is None
    assert not scheduler.is_complete(graph)


def test_failed_dependency_reports_deadlock(tmp_path: Path) -> None:
    _, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, status="failed"),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
        ]
    )

    with pytest.raises(DeadlockError) as excinfo:
        scheduler.next_wave(graph)

    assert excinfo.value.task_ids == ["B"]


def test_transitive_stall_is_detected(tmp_path: Path) -> None:
    manager, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, status="blocked"),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
            Task(id="C", description="c", wave=3, depends_on=["B"]),
        ]
    )

    assert manager.stalled_tasks(graph) == ["B", "C"]
    with pytest.raises(DeadlockError) as excinfo:
        scheduler.next_wave(graph)
    assert excinfo.value.task_ids == ["B", "C"]


def test_chain_behind_running_task_waits_instead_of_deadlocking(tmp_path: Path) -> None:
    manager, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, status="running"),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
            Task(id="C", description="c", wave=3, depends_on=["B"]),
        ]
    )

    assert manager.shallow_deadlock(graph) == ["C"]
    assert manager.stalled_tasks(graph) == []
    assert scheduler.next_wave(graph) is None


def test_only_lowest_ready_wave_is_selected(tmp_path: Path) -> None:
    _, scheduler = _scheduler(tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="late", description="late", wave=3),
            Task(id="early", description="early", wave=1, risk_tier="critical"),
        ]
    )

    schedule = scheduler.next_wave(graph)

    assert schedule is not None
    assert schedule.wave == 1
    assert schedule.task_ids == ["early"]
    assert schedule.has_high_risk
