from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from governor.models import TaskGraph, utcnow_iso
from governor.state.store import ProjectStore

LoopPosition = Literal["planning", "executing", "verifying", "unifying", "complete"]
LOOP_POSITIONS: tuple[str, ...] = ("planning", "executing", "verifying", "unifying", "complete")
MAX_RECENT_DECISIONS = 20


@dataclass(slots=True)
class Metrics:
    phases_complete: int = 0
    phases_total: int = 0
    tasks_complete: int = 0
    tasks_total: int = 0
    scars_count: int = 0
    dispatches: int = 0
    failures: int = 0
    escalations: int = 0


@dataclass(slots=True)
class SessionContinuity:
    last_updated: str = field(default_factory=utcnow_iso)
    next_action: str = ""
    handoff_file: str | None = None


@dataclass(slots=True)
class GovernanceState:
    version: int = 1
    mission: str = ""
    current_phase: str = ""
    current_plan: str = ""
    loop_position: LoopPosition = "planning"
    metrics: Metrics = field(default_factory=Metrics)
    decisions: list[str] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    session: SessionContinuity = field(default_factory=SessionContinuity)

    def add_blocker(self, blocker: str) -> None:
        if blocker not in self.blockers:
            self.blockers.append(blocker)

    def remove_blockers(self, prefix: str) -> None:
        self.blockers = [item for item in self.blockers if not item.startswith(prefix)]

    def add_decision(self, summary: str) -> None:
        self.decisions.append(summary)
        self.decisions = self.decisions[-MAX_RECENT_DECISIONS:]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "mission": self.mission,
            "current_phase": self.current_phase,
            "current_plan": self.current_plan,
            "loop_position": self.loop_position,
            "metrics": {
                "phases_complete": self.metrics.phases_complete,
                "phases_total": self.metrics.phases_total,
                "tasks_complete": self.metrics.tasks_complete,
                "tasks_total": self.metrics.tasks_total,
                "scars_count": self.metrics.scars_count,
                "dispatches": self.metrics.dispatches,
                "failures": self.metrics.failures,
                "escalations": self.metrics.escalations,
            },
            "decisions": list(self.decisions),
            "blockers": list(self.blockers),
            "session": {
                "last_updated": self.session.last_updated,
                "next_action": self.session.next_action,
                "handoff_file": self.session.handoff_file,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GovernanceState:
        loop_position = data.get("loop_position", "planning")
        if loop_position not in LOOP_POSITIONS:
            loop_position = "planning"
        metrics = data.get("metrics") or {}
        session = data.get("session") or {}
        return cls(
            version=int(data.get("version", 1)),
            mission=str(data.get("mission") or ""),
            current_phase=str(data.get("current_phase") or ""),
            current_plan=str(data.get("current_plan") or ""),
            loop_position=loop_position,
            metrics=Metrics(**{k: int(v) for k, v in metrics.items() if k in Metrics.__slots__}),
            decisions=[str(item) for item in data.get("decisions", [])],
            blockers=[str(item) for item in data.get("blockers", [])],
            session=SessionContinuity(
                last_updated=str(session.get("last_updated") or utcnow_iso()),
                next_action=str(session.get("next_action") or ""),
                handoff_file=session.get("handoff_file"),
            ),
        )


def _loop_visual(position: str) -> str:
    steps = [
        ("PLAN", "planning"),
        ("EXECUTE", "executing"),
        ("VERIFY", "verifying"),
        ("UNIFY", "unifying"),
    ]
    rendered = []
    for label, key in steps:
        if position == "complete" or LOOP_POSITIONS.index(key) < LOOP_POSITIONS.index(position):
            rendered.append(f"{label} [done]")
        elif key == position:
            rendered.append(f"{label} [active]")
        else:
            rendered.append(label)
    return " -> ".join(rendered)


def _progress_bar(done: int, total: int, width: int = 20) -> str:
    if total <= 0:
        return "[" + "-" * width + "] 0%"
    filled = round(width * done / total)
    return "[" + "#" * filled + "-" * (width - filled) + f"] {round(100 * done / total)}%"


def render_state_markdown(state: GovernanceState) -> str:
    lines = [
        "# Project State",
        "",
        f"Mission: {state.mission or '(not set)'}",
        f"Phase: {state.current_phase or '(none)'}",
        f"Plan: {state.current_plan or '(none)'}",
        "",
        "## Loop",
        "",
        _loop_visual(state.loop_position),
        "",
        "## Progress",
        "",
        f"Phases {_progress_bar(state.metrics.phases_complete, state.metrics.phases_total)}",
        f"Tasks  {_progress_bar(state.metrics.tasks_complete, state.metrics.tasks_total)}",
        f"Dispatches: {state.metrics.dispatches}  Failures: {state.metrics.failures}  "
        f"Escalations: {state.metrics.escalations}  Scars: {state.metrics.scars_count}",
        "",
        "## Blockers",
        "",
    ]
    lines.extend(f"- {blocker}" for blocker in state.blockers)
    if not state.blockers:
        lines.append("None.")
    lines.extend(["", "## Recent Decisions", ""])
    lines.extend(f"- {decision}" for decision in state.decisions)
    if not state.decisions:
        lines.append("None.")
    lines.extend(
        [
            "",
            "## Session Continuity",
            "",
            f"Last updated: {state.session.last_updated}",
            f"Next action: {state.session.next_action or '(none)'}",
        ]
    )
    if state.session.handoff_file:
        lines.append(f"Handoff: {state.session.handoff_file}")
    return "\n".join(lines) + "\n"


class GovernanceStore:
    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def load(self) -> GovernanceState:
        payload = self.store.read_json(self.store.state_file, default=None)
        if not isinstance(payload, dict):
            return GovernanceState()
        return GovernanceState.from_dict(payload)

    def save(self, state: GovernanceState) -> None:
        state.session.last_updated = utcnow_iso()
        self.store.write_json(self.store.state_file, state.to_dict())
        self.store.write_text(self.store.state_markdown, render_state_markdown(state))

    def update(self, mutate: Callable[[GovernanceState], None]) -> GovernanceState:
        state = self.load()
        mutate(state)
        self.save(state)
        return state

    def sync_with_graph(self, graph: TaskGraph) -> GovernanceState:
        def _sync(state: GovernanceState) -> None:
            if graph.mission:
                state.mission = graph.mission
            if graph.current_phase:
                state.current_phase = graph.current_phase
            state.metrics.tasks_total = len(graph.tasks)
            state.metrics.tasks_complete = sum(
                1 for task in graph.tasks if task.status == "completed"
            )
            phases = {task.phase for task in graph.tasks if task.phase}
            state.metrics.phases_total = len(phases)
            state.metrics.phases_complete = sum(
                1
                for phase in phases
                if all(
                    task.status in {"completed", "superseded"}
                    for task in graph.tasks
                    if task.phase == phase
                )
            )

        return self.update(_sync)
