from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from governor.errors import TaskRecordError

TaskStatus = Literal[
    "pending", "running", "completed", "failed", "blocked", "superseded", "deferred"
]
RiskTier = Literal["low", "medium", "high", "critical"]
TestMode = Literal["hard", "standard", "skip"]
Verdict = Literal["approved", "rejected", "needs-revision"]
FailureKind = Literal[
    "no_signal",
    "malformed_signal",
    "timeout",
    "launch_error",
    "process_error",
    "verification_rejected",
]
Severity = Literal["blocking", "advisory", "info"]

TASK_STATUSES: tuple[str, ...] = (
    "pending",
    "running",
    "completed",
    "failed",
    "blocked",
    "superseded",
    "deferred",
)
RISK_TIERS: tuple[str, ...] = ("low", "medium", "high", "critical")
TEST_MODES: tuple[str, ...] = ("hard", "standard", "skip")
HIGH_RISK_TIERS = frozenset({"high", "critical"})
REQUIRED_TASK_FIELDS: tuple[str, ...] = (
    "id",
    "description",
    "risk_tier",
    "test_mode",
    "files",
    "depends_on",
    "wave",
    "acceptance_criteria",
)

# Order matters: reasons and reports list flags in this sequence.
VERIFICATION_FLAGS: tuple[str, ...] = (
    "files_ok",
    "deterministic_ok",
    "goal_ok",
    "adversarial_ok",
    "integration_ok",
    "browser_ok",
)
FLAG_LABELS: dict[str, str] = {
    "files_ok": "file existence and substance",
    "deterministic_ok": "deterministic checks",
    "goal_ok": "goal wiring",
    "adversarial_ok": "adversarial review",
    "integration_ok": "integration tests",
    "browser_ok": "browser flows",
}


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _items(value: Any) -> list[Any]:
    # Verifier payloads may send null where a list is expected.
    return value if isinstance(value, list) else []


def _string_list(value: Any, *, field_name: str, task_id: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TaskRecordError(
            f"Task '{task_id}' field '{field_name}' must be a list of strings.",
            task_id=task_id,
        )
    return list(value)


@dataclass(slots=True)
class FailureRecord:
    kind: FailureKind
    message: str
    attempt: int = 1
    at: str = field(default_factory=utcnow_iso)
    dispatch_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "attempt": self.attempt,
            "at": self.at,
            "dispatch_id": self.dispatch_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailureRecord:
        return cls(
            kind=data.get("kind", "process_error"),
            message=str(data.get("message", "")),
            attempt=int(data.get("attempt", 1)),
            at=str(data.get("at") or utcnow_iso()),
            dispatch_id=data.get("dispatch_id"),
            details=dict(data.get("details") or {}),
        )


@dataclass(slots=True)
class VerificationGap:
    truth: str
    flag: str
    status: Literal["failed", "partial"] = "failed"
    reason: str = ""
    artifacts: list[dict[str, str]] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def evidence(self) -> list[str]:
        items: list[str] = []
        for artifact in self.artifacts:
            path = artifact.get("path", "")
            issue = artifact.get("issue", "")
            if path and issue:
                items.append(f"{path}: {issue}")
            elif path:
                items.append(path)
        items.extend(f"missing: {item}" for item in self.missing)
        return items

    def to_dict(self) -> dict[str, Any]:
        return {
            "truth": self.truth,
            "flag": self.flag,
            "status": self.status,
            "reason": self.reason,
            "artifacts": [dict(item) for item in self.artifacts],
            "missing": list(self.missing),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationGap:
        return cls(
            truth=str(data.get("truth") or ""),
            flag=str(data.get("flag") or ""),
            status=data.get("status") or "failed",
            reason=str(data.get("reason") or ""),
            artifacts=[
                {"path": str(item.get("path") or ""), "issue": str(item.get("issue") or "")}
                for item in _items(data.get("artifacts"))
                if isinstance(item, dict)
            ],
            missing=[str(item) for item in _items(data.get("missing"))],
        )


@dataclass(slots=True)
class Finding:
    flag: str
    severity: Severity
    message: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "flag": self.flag,
            "severity": self.severity,
            "message": self.message,
            "path": self.path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        return cls(
            flag=str(data.get("flag", "")),
            severity=data.get("severity", "info"),
            message=str(data.get("message", "")),
            path=data.get("path"),
        )


@dataclass(slots=True)
class VerificationResult:
    """Six independent flags plus the evidence that explains them.

    A flag left as ``None`` was never reported by the verifier.
    """

    task_id: str
    files_ok: bool | None = None
    deterministic_ok: bool | None = None
    goal_ok: bool | None = None
    adversarial_ok: bool | None = None
    integration_ok: bool | None = None
    browser_ok: bool | None = None
    gaps: list[VerificationGap] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)

    def flags(self) -> dict[str, bool | None]:
        return {name: getattr(self, name) for name in VERIFICATION_FLAGS}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"task_id": self.task_id}
        payload.update(self.flags())
        payload["gaps"] = [gap.to_dict() for gap in self.gaps]
        payload["findings"] = [finding.to_dict() for finding in self.findings]
        payload["artifacts"] = list(self.artifacts)
        payload["timestamp"] = self.timestamp
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VerificationResult:
        flags: dict[str, bool | None] = {}
        for name in VERIFICATION_FLAGS:
            value = data.get(name)
            flags[name] = value if isinstance(value, bool) else None
        return cls(
            task_id=str(data.get("task_id", "")),
            gaps=[
                VerificationGap.from_dict(item)
                for item in _items(data.get("gaps"))
                if isinstance(item, dict)
            ],
            findings=[
                Finding.from_dict(item)
                for item in _items(data.get("findings"))
                if isinstance(item, dict)
            ],
            artifacts=[str(item) for item in _items(data.get("artifacts"))],
            timestamp=str(data.get("timestamp") or utcnow_iso()),
            **flags,
        )


@dataclass(slots=True)
class DecisionReason:
    flag: str
    message: str
    evidence: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"flag": self.flag, "message": self.message, "evidence": list(self.evidence)}


@dataclass(slots=True, frozen=True)
class MergeDecision:
    id: str
    task_id: str
    verdict: Verdict
    flags: dict[str, bool | None]
    reasons: tuple[DecisionReason, ...] = ()
    notes: tuple[str, ...] = ()
    timestamp: str = field(default_factory=utcnow_iso)

    @property
    def approved(self) -> bool:
        return self.verdict == "approved"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "verdict": self.verdict,
            "flags": dict(self.flags),
            "reasons": [reason.to_dict() for reason in self.reasons],
            "notes": list(self.notes),
            "timestamp": self.timestamp,
        }


@dataclass(slots=True, frozen=True)
class Checkpoint:
    id: str
    task_id: str
    created_at: str
    git_ref: str
    description: str
    files: tuple[str, ...] = ()
    state_snapshot: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "created_at": self.created_at,
            "git_ref": self.git_ref,
            "description": self.description,
            "files": list(self.files),
            "state_snapshot": dict(self.state_snapshot),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        return cls(
            id=str(data["id"]),
            task_id=str(data.get("task_id", "")),
            created_at=str(data.get("created_at", "")),
            git_ref=str(data["git_ref"]),
            description=str(data.get("description", "")),
            files=tuple(str(item) for item in data.get("files", [])),
            state_snapshot={
                str(k): str(v) for k, v in dict(data.get("state_snapshot") or {}).items()
            },
        )


@dataclass(slots=True)
class Task:
    id: str
    description: str
    wave: int
    risk_tier: RiskTier = "low"
    test_mode: TestMode = "standard"
    phase: str = ""
    status: TaskStatus = "pending"
    depends_on: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    checkpoint_id: str | None = None
    verification: VerificationResult | None = None
    failure: FailureRecord | None = None
    blocker: str | None = None
    superseded_by: str | None = None
    summary: str = ""
    created_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None
    updated_at: str | None = None

    @property
    def is_high_risk(self) -> bool:
        return self.risk_tier in HIGH_RISK_TIERS

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "phase": self.phase,
            "description": self.description,
            "status": self.status,
            "risk_tier": self.risk_tier,
            "test_mode": self.test_mode,
            "depends_on": list(self.depends_on),
            "files": list(self.files),
            "wave": self.wave,
            "acceptance_criteria": list(self.acceptance_criteria),
            "checkpoint_id": self.checkpoint_id,
            "verification": self.verification.to_dict() if self.verification else None,
            "failure": self.failure.to_dict() if self.failure else None,
            "blocker": self.blocker,
            "superseded_by": self.superseded_by,
            "summary": self.summary,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> Task:
        if not isinstance(data, dict):
            raise TaskRecordError("Task record must be a JSON object.")
        task_id = data.get("id")
        if not isinstance(task_id, str) or not task_id.strip():
            raise TaskRecordError("Task record is missing a non-empty 'id'.")
        missing = [name for name in REQUIRED_TASK_FIELDS if name not in data]
        if missing:
            raise TaskRecordError(
                f"Task '{task_id}' is missing required field(s): {', '.join(missing)}.",
                task_id=task_id,
            )

        status = data.get("status", "pending")
        if status not in TASK_STATUSES:
            raise TaskRecordError(
                f"Task '{task_id}' has unknown status '{status}'.", task_id=task_id
            )
        if data["risk_tier"] not in RISK_TIERS:
            raise TaskRecordError(
                f"Task '{task_id}' has unknown risk tier '{data['risk_tier']}'.", task_id=task_id
            )
        if data["test_mode"] not in TEST_MODES:
            raise TaskRecordError(
                f"Task '{task_id}' has unknown test mode '{data['test_mode']}'.", task_id=task_id
            )
        wave = data["wave"]
        if isinstance(wave, bool) or not isinstance(wave, int) or wave < 1:
            raise TaskRecordError(
                f"Task '{task_id}' wave must be a positive integer, got {wave!r}.", task_id=task_id
            )
        files = _string_list(data["files"], field_name="files", task_id=task_id)
        repeated = sorted({path for path in files if files.count(path) > 1})
        if repeated:
            raise TaskRecordError(
                f"Task '{task_id}' lists file(s) more than once: {', '.join(repeated)}.",
                task_id=task_id,
            )

        verification = data.get("verification")
        failure = data.get("failure")
        return cls(
            id=task_id,
            description=str(data["description"]),
            wave=wave,
            risk_tier=data["risk_tier"],
            test_mode=data["test_mode"],
            phase=str(data.get("phase") or ""),
            status=status,
            depends_on=_string_list(data["depends_on"], field_name="depends_on", task_id=task_id),
            files=files,
            acceptance_criteria=_string_list(
                data["acceptance_criteria"], field_name="acceptance_criteria", task_id=task_id
            ),
            checkpoint_id=data.get("checkpoint_id"),
            verification=(
                VerificationResult.from_dict(verification)
                if isinstance(verification, dict)
                else None
            ),
            failure=FailureRecord.from_dict(failure) if isinstance(failure, dict) else None,
            blocker=data.get("blocker"),
            superseded_by=data.get("superseded_by"),
            summary=str(data.get("summary") or ""),
            created_at=str(data.get("created_at") or utcnow_iso()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass(slots=True)
class TaskGraph:
    mission: str = ""
    current_phase: str = ""
    tasks: list[Task] = field(default_factory=list)
    waves: dict[int, list[str]] = field(default_factory=dict)
    version: int = 1
    last_updated: str = field(default_factory=utcnow_iso)

    def get(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def require(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task is None:
            raise TaskRecordError(f"Task not found: {task_id}", task_id=task_id)
        return task

    def by_id(self) -> dict[str, Task]:
        return {task.id: task for task in self.tasks}

    def reindex(self) -> None:
        waves: dict[int, list[str]] = {}
        for task in self.tasks:
            waves.setdefault(task.wave, []).append(task.id)
        self.waves = dict(sorted(waves.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "mission": self.mission,
            "current_phase": self.current_phase,
            "last_updated": self.last_updated,
            "tasks": [task.to_dict() for task in self.tasks],
            "waves": {str(wave): list(ids) for wave, ids in self.waves.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskGraph:
        raw_tasks = data.get("tasks", [])
        if not isinstance(raw_tasks, list):
            raise TaskRecordError("Task graph 'tasks' must be a list.")
        graph = cls(
            mission=str(data.get("mission") or ""),
            current_phase=str(data.get("current_phase") or ""),
            tasks=[Task.from_dict(item) for item in raw_tasks],
            version=int(data.get("version", 1)),
            last_updated=str(data.get("last_updated") or utcnow_iso()),
        )
        graph.reindex()
        return graph
