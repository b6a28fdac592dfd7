from __future__ import annotations

import logging
from dataclasses import dataclass, field

from governor.errors import DeadlockError
from governor.graph.task_graph import TaskGraphManager
from governor.models import Task, TaskGraph

logger = logging.getLogger("governor.scheduler")


@dataclass(slots=True)
class WaveSchedule:
    wave: int
    tasks: list[Task] = field(default_factory=list)

    @property
    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks]

    @property
    def has_high_risk(self) -> bool:
        return any(task.is_high_risk for task in self.tasks)


class WaveScheduler:
    """Chooses the next set of tasks that may run concurrently.

    ``next_wave`` is a pure read: calling it twice without mutating the graph
    returns the same schedule.
    """

    def __init__(self, graphs: TaskGraphManager) -> None:
        self.graphs = graphs

    def next_wave(self, graph: TaskGraph) -> WaveSchedule | None:
        ready = self.graphs.ready_tasks(graph)
        if not ready:
            if not any(task.status == "pending" for task in graph.tasks):
                return None
            stalled = self.graphs.stalled_tasks(graph)
            if stalled:
                logger.error("Deadlock detected: %s", ", ".join(stalled))
                raise DeadlockError(stalled)
            # Remaining pending work waits on tasks that are still running.
            suspects = self.graphs.shallow_deadlock(graph)
            if suspects:
                logger.debug("Waiting on running work: %s", ", ".join(suspects))
            return None

        wave = min(task.wave for task in ready)
        selected = [task for task in ready if task.wave == wave]
        deferred = len(ready) - len(selected)
        if deferred:
            logger.debug("Wave %d selected; %d ready task(s) deferred", wave, deferred)
        return WaveSchedule(wave=wave, tasks=selected)

    @staticmethod
    def is_complete(graph: TaskGraph) -> bool:
        return all(task.status in {"completed", "superseded"} for task in graph.tasks)
