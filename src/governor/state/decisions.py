from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Any

from governor.models import utcnow_iso
from governor.state.store import ProjectStore


@dataclass(slots=True)
class Decision:
    id: str
    phase: str
    description: str
    rationale: str
    impact: str = ""
    alternatives: list[str] = field(default_factory=list)
    reversible: bool = True
    rollback_path: str | None = None
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "phase": self.phase,
            "description": self.description,
            "rationale": self.rationale,
            "impact": self.impact,
            "alternatives": list(self.alternatives),
            "reversible": self.reversible,
            "rollback_path": self.rollback_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Decision:
        return cls(
            id=str(data.get("id", "")),
            phase=str(data.get("phase", "")),
            description=str(data.get("description", "")),
            rationale=str(data.get("rationale", "")),
            impact=str(data.get("impact", "")),
            alternatives=[str(item) for item in data.get("alternatives", [])],
            reversible=bool(data.get("reversible", True)),
            rollback_path=data.get("rollback_path"),
            timestamp=str(data.get("timestamp") or utcnow_iso()),
        )


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


class DecisionLog:
    """Append-only record of governance decisions with a markdown mirror."""

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def record(
        self,
        *,
        phase: str,
        description: str,
        rationale: str,
        impact: str = "",
        alternatives: list[str] | None = None,
        reversible: bool = True,
        rollback_path: str | None = None,
    ) -> Decision:
        decision = Decision(
            id=f"dec-{secrets.token_hex(4)}",
            phase=phase,
            description=description,
            rationale=rationale,
            impact=impact,
            alternatives=list(alternatives or []),
            reversible=reversible,
            rollback_path=rollback_path,
        )
        self.store.append_jsonl(self.store.decisions_log, decision.to_dict())
        self._write_markdown()
        return decision

    def all(self) -> list[Decision]:
        records = self.store.read_jsonl(self.store.decisions_log)
        return [Decision.from_dict(item) for item in records]

    def _write_markdown(self) -> None:
        lines = [
            "# Decision Log",
            "",
            "| ID | Date | Phase | Decision | Rationale | Impact | Reversible |",
            "|----|------|-------|----------|-----------|--------|------------|",
        ]
        for decision in self.all():
            lines.append(
                f"| {decision.id} | {decision.timestamp[:10]} | {_cell(decision.phase)} "
                f"| {_cell(decision.description)} | {_cell(decision.rationale)} "
                f"| {_cell(decision.impact)} | {'yes' if decision.reversible else 'no'} |"
            )
        self.store.write_text(self.store.decision_markdown, "\n".join(lines) + "\n")
