from __future__ import annotations

from typing import Any


class GovernorError(RuntimeError):
    """Base class for every failure the engine raises on purpose."""

    def __init__(self, message: str, *, task_id: str | None = None) -> None:
        super().__init__(message)
        self.task_id = task_id


class StateError(GovernorError):
    """Raised when persisted governance state cannot be read or written."""


class TaskRecordError(GovernorError):
    """Raised when a task record is missing required fields or holds bad values."""


class GraphValidationError(GovernorError):
    """Raised when the task graph as a whole is structurally invalid."""


class DanglingDependencyError(GraphValidationError):
    def __init__(self, task_id: str, missing: str) -> None:
        super().__init__(
            f"Task '{task_id}' depends on '{missing}', which is not in the task graph.",
            task_id=task_id,
        )
        self.missing = missing


class CyclicDependencyError(GraphValidationError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(cycle),
            task_id=cycle[0] if cycle else None,
        )
        self.cycle = cycle


class WaveOrderError(GraphValidationError):
    def __init__(self, task_id: str, wave: int, dependency: str, dependency_wave: int) -> None:
        super().__init__(
            f"Task '{task_id}' is in wave {wave} but depends on '{dependency}' "
            f"in wave {dependency_wave}; dependencies must sit in an earlier wave.",
            task_id=task_id,
        )
        self.wave = wave
        self.dependency = dependency
        self.dependency_wave = dependency_wave


class DeadlockError(GovernorError):
    """Raised when unfinished tasks remain but none can ever become ready."""

    def __init__(self, task_ids: list[str]) -> None:
        super().__init__(
            "No task can make progress; deadlocked tasks: " + ", ".join(task_ids)
        )
        self.task_ids = list(task_ids)


class CheckpointError(GovernorError):
    """Raised when a checkpoint cannot be created, found or validated."""


class RollbackFailureError(CheckpointError):
    """Raised when a rollback cannot complete. Never retried automatically."""

    def __init__(
        self,
        message: str,
        *,
        checkpoint_id: str,
        quarantine_path: str | None = None,
    ) -> None:
        detail = message
        if quarantine_path:
            detail = f"{message} (discarded changes quarantined at {quarantine_path})"
        super().__init__(detail)
        self.checkpoint_id = checkpoint_id
        self.quarantine_path = quarantine_path


class DispatchError(GovernorError):
    """Raised when a worker process cannot be run to completion."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class DispatchTimeoutError(DispatchError):
    """Raised when a worker exceeds its wall-clock budget and is killed."""


class WorkerLaunchError(DispatchError):
    """Raised when the worker binary cannot be started."""


class SignalError(GovernorError):
    """Raised when worker output does not carry a usable completion signal."""


class MalformedSignalError(SignalError):
    def __init__(self, message: str, *, payload: str = "") -> None:
        super().__init__(message)
        self.payload = payload


class NoSignalError(SignalError):
    def __init__(self, message: str, *, tail: str = "") -> None:
        super().__init__(message)
        self.tail = tail


class VerificationFlagFalse(GovernorError):
    """A verification flag came back false; carried as a rejected merge decision."""

    def __init__(self, flag: str, evidence: list[str]) -> None:
        super().__init__(f"Verification flag '{flag}' is false: " + "; ".join(evidence))
        self.flag = flag
        self.evidence = list(evidence)


class EscalationLimitReached(GovernorError):
    """Raised when automatic remediation is exhausted and a human must step in."""

    def __init__(
        self,
        message: str,
        *,
        task_id: str | None = None,
        record: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, task_id=task_id)
        self.record = record or {}
