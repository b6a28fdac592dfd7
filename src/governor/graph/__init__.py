from governor.graph.scheduler import WaveSchedule, WaveScheduler
from governor.graph.task_graph import TaskGraphManager, find_cycle, validate_graph

__all__ = ["TaskGraphManager", "WaveSchedule", "WaveScheduler", "find_cycle", "validate_graph"]
