from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Literal

from governor.errors import EscalationLimitReached
from governor.models import FailureRecord, utcnow_iso
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.escalation")

EscalationKind = Literal["consecutive_failures", "gap_closure_limit"]


@dataclass(slots=True)
class EscalationRecord:
    id: str
    kind: EscalationKind
    message: str
    task_id: str | None = None
    phase: str | None = None
    failures: list[dict[str, Any]] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    resolved_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "message": self.message,
            "task_id": self.task_id,
            "phase": self.phase,
            "failures": [dict(item) for item in self.failures],
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EscalationRecord:
        return cls(
            id=str(data.get("id", "")),
            kind=data.get("kind", "consecutive_failures"),
            message=str(data.get("message", "")),
            task_id=data.get("task_id"),
            phase=data.get("phase"),
            failures=[dict(item) for item in data.get("failures", []) if isinstance(item, dict)],
            created_at=str(data.get("created_at") or utcnow_iso()),
            resolved_at=data.get("resolved_at"),
        )


def _empty_state() -> dict[str, Any]:
    return {"tasks": {}, "gap_closure": {}, "records": []}


class EscalationTracker:
    """Counts repeated failures and stops automation once the limits are hit.

    Counters persist across runs; only a human clears them.
    """

    def __init__(
        self,
        store: ProjectStore,
        *,
        max_consecutive_failures: int = 3,
        max_gap_closure_iterations: int = 3,
    ) -> None:
        self.store = store
        self.max_consecutive_failures = max(1, max_consecutive_failures)
        self.max_gap_closure_iterations = max(1, max_gap_closure_iterations)

    def _load(self) -> dict[str, Any]:
        payload = self.store.read_json(self.store.escalations_file, default=None)
        if not isinstance(payload, dict):
            return _empty_state()
        state = _empty_state()
        for key in state:
            if isinstance(payload.get(key), type(state[key])):
                state[key] = payload[key]
        return state

    def _save(self, state: dict[str, Any]) -> None:
        self.store.write_json(self.store.escalations_file, state)

    def _append_record(self, state: dict[str, Any], record: EscalationRecord) -> None:
        state["records"].append(record.to_dict())
        logger.error("Escalation %s (%s): %s", record.id, record.kind, record.message)

    # Task failures

    def failures(self, task_id: str) -> list[FailureRecord]:
        entry = self._load()["tasks"].get(task_id, {})
        return [FailureRecord.from_dict(item) for item in entry.get("failures", [])]

    def record_failure(self, task_id: str, failure: FailureRecord) -> int:
        state = self._load()
        entry = state["tasks"].setdefault(task_id, {"failures": [], "escalated": False})
        entry["failures"].append(failure.to_dict())
        self._save(state)
        return len(entry["failures"])

    def record_success(self, task_id: str) -> None:
        state = self._load()
        if task_id in state["tasks"] and not state["tasks"][task_id].get("escalated"):
            del state["tasks"][task_id]
            self._save(state)

    def limit_reached(self, task_id: str) -> bool:
        entry = self._load()["tasks"].get(task_id, {})
        return bool(entry.get("escalated")) or (
            len(entry.get("failures", [])) >= self.max_consecutive_failures
        )

    def escalate_task(self, task_id: str) -> EscalationRecord:
        state = self._load()
        entry = state["tasks"].setdefault(task_id, {"failures": [], "escalated": False})
        for existing in reversed(state["records"]):
            if existing.get("task_id") == task_id and not existing.get("resolved_at"):
                return EscalationRecord.from_dict(existing)
        recent = entry["failures"][-self.max_consecutive_failures :]
        record = EscalationRecord(
            id=f"esc-{secrets.token_hex(4)}",
            kind="consecutive_failures",
            task_id=task_id,
            message=(
                f"Task {task_id} failed {len(recent)} consecutive time(s); "
                "automatic dispatch is disabled until a human clears it."
            ),
            failures=recent,
        )
        entry["escalated"] = True
        self._append_record(state, record)
        self._save(state)
        return record

    def clear_task(self, task_id: str) -> bool:
        state = self._load()
        cleared = state["tasks"].pop(task_id, None) is not None
        now = utcnow_iso()
        for record in state["records"]:
            if record.get("task_id") == task_id and not record.get("resolved_at"):
                record["resolved_at"] = now
                cleared = True
        self._save(state)
        return cleared

    # Gap closure

    def gap_closure_iterations(self, phase: str) -> int:
        entry = self._load()["gap_closure"].get(phase, {})
        return int(entry.get("iterations", 0))

    def begin_gap_closure(self, phase: str) -> int:
        state = self._load()
        entry = state["gap_closure"].setdefault(phase, {"iterations": 0, "disabled": False})
        if entry.get("disabled") or entry["iterations"] >= self.max_gap_closure_iterations:
            record: EscalationRecord | None = None
            if not entry.get("disabled"):
                record = EscalationRecord(
                    id=f"esc-{secrets.token_hex(4)}",
                    kind="gap_closure_limit",
                    phase=phase,
                    message=(
                        f"Phase {phase} used all {self.max_gap_closure_iterations} "
                        "gap-closure iterations; remediation needs a human decision."
                    ),
                )
                entry["disabled"] = True
                self._append_record(state, record)
                self._save(state)
            raise EscalationLimitReached(
                f"Gap closure for phase '{phase}' is disabled after "
                f"{entry['iterations']} iteration(s).",
                record=record.to_dict() if record else None,
            )
        entry["iterations"] += 1
        self._save(state)
        logger.info(
            "Gap closure iteration %d/%d for phase %s",
            entry["iterations"],
            self.max_gap_closure_iterations,
            phase,
        )
        return int(entry["iterations"])

    def reset_gap_closure(self, phase: str) -> None:
        state = self._load()
        state["gap_closure"].pop(phase, None)
        now = utcnow_iso()
        for record in state["records"]:
            if record.get("phase") == phase and not record.get("resolved_at"):
                record["resolved_at"] = now
        self._save(state)

    def records(self, *, include_resolved: bool = False) -> list[EscalationRecord]:
        return [
            EscalationRecord.from_dict(item)
            for item in self._load()["records"]
            if include_resolved or not item.get("resolved_at")
        ]
