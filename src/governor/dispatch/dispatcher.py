from __future__ import annotations

import fnmatch
import json
import logging
import os
import secrets
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from governor.config import GovernorConfig
from governor.context import ContextPacket, ContextPacketBuilder
from governor.dispatch.process import ProcessOutcome, ProcessSupervisor
from governor.dispatch.runtimes import WorkerRuntime
from governor.dispatch.signals import (
    BLOCKED_CLOSE,
    BLOCKED_OPEN,
    COMPLETE_CLOSE,
    COMPLETE_OPEN,
    parse_signal,
)
from governor.errors import (
    DispatchTimeoutError,
    MalformedSignalError,
    NoSignalError,
    WorkerLaunchError,
)
from governor.models import FailureKind, FailureRecord, Task, TaskGraph
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.dispatch")

DispatchEventHook = Callable[[dict[str, Any]], None]

TEST_MODE_INSTRUCTIONS = {
    "hard": "write failing tests BEFORE the implementation",
    "standard": "write tests alongside the implementation",
    "skip": "no new tests are required for this task",
}


@dataclass(slots=True)
class DispatchResult:
    task_id: str
    dispatch_id: str
    status: Literal["completed", "blocked", "failed"]
    message: str
    files_modified: list[str] = field(default_factory=list)
    undeclared_files: list[str] = field(default_factory=list)
    failure: FailureRecord | None = None
    exit_code: int | None = None
    record_dir: str = ""
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "dispatch_id": self.dispatch_id,
            "status": self.status,
            "message": self.message,
            "files_modified": list(self.files_modified),
            "undeclared_files": list(self.undeclared_files),
            "failure": self.failure.to_dict() if self.failure else None,
            "exit_code": self.exit_code,
            "record_dir": self.record_dir,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def render_prompt(task: Task, packet: ContextPacket) -> str:
    files = ", ".join(task.files) or "(none declared)"
    tests = TEST_MODE_INSTRUCTIONS.get(task.test_mode, "follow project conventions")
    packet_json = json.dumps(packet.to_dict(), ensure_ascii=False, indent=2)
    return "\n".join(
        [
            "You are a worker agent. Carry out exactly the task below and nothing else.",
            "",
            "## Task",
            f"ID: {task.id}",
            f"Description: {task.description}",
            f"Risk tier: {task.risk_tier}",
            f"Test mode: {task.test_mode}",
            f"Files to modify: {files}",
            "",
            "## Context Packet",
            packet_json,
            "",
            "## Instructions",
            "1. Do the task described above.",
            "2. Modify only the files listed under 'Files to modify'.",
            "3. Never touch paths listed under 'boundaries' in the context packet.",
            f"4. Tests: {tests}.",
            "5. When finished, print exactly one signal block, each tag on its own line:",
            "",
            COMPLETE_OPEN,
            '{"filesModified": ["path/one", "path/two"], "summary": "one-line summary"}',
            COMPLETE_CLOSE,
            "",
            "If you cannot proceed, print instead:",
            BLOCKED_OPEN,
            '{"reason": "what is blocking you"}',
            BLOCKED_CLOSE,
            "",
            "Print no other signal tags.",
        ]
    )


class WorkerDispatcher:
    """Hands one task to one worker process and interprets what comes back.

    Every prompt, packet and raw output is written under the dispatch
    record directory whatever the outcome.
    """

    def __init__(
        self,
        store: ProjectStore,
        config: GovernorConfig,
        runtime: WorkerRuntime,
        context_builder: ContextPacketBuilder | None = None,
        event_hook: DispatchEventHook | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.runtime = runtime
        self.context_builder = context_builder or ContextPacketBuilder(store, config)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    @staticmethod
    def _new_dispatch_id() -> str:
        return f"{datetime.now(UTC).strftime('%Y%m%dT%H%M%S%f')}-{secrets.token_hex(2)}"

    def _environment(self, task: Task, record_dir: Path) -> dict[str, str]:
        env = os.environ.copy()
        env["GOVERNOR_TASK_ID"] = task.id
        env["GOVERNOR_PROMPT_FILE"] = str(record_dir / "prompt.txt")
        env["GOVERNOR_CONTEXT_FILE"] = str(record_dir / "context.json")
        env["GOVERNOR_PROJECT_ROOT"] = str(self.store.repo_root)
        return env

    def _failed(
        self,
        task: Task,
        dispatch_id: str,
        record_dir: Path,
        kind: FailureKind,
        message: str,
        *,
        attempt: int,
        exit_code: int | None = None,
        duration: float = 0.0,
        details: dict[str, Any] | None = None,
    ) -> DispatchResult:
        failure = FailureRecord(
            kind=kind,
            message=message,
            attempt=attempt,
            dispatch_id=dispatch_id,
            details=details or {},
        )
        return DispatchResult(
            task_id=task.id,
            dispatch_id=dispatch_id,
            status="failed",
            message=message,
            failure=failure,
            exit_code=exit_code,
            record_dir=self.store.relative(record_dir),
            duration_seconds=duration,
        )

    def _interpret(
        self,
        task: Task,
        dispatch_id: str,
        record_dir: Path,
        outcome: ProcessOutcome,
        *,
        attempt: int,
    ) -> DispatchResult:
        text = self.runtime.extract_text(outcome.stdout)
        tail_chars = self.config.dispatch.output_tail_chars
        try:
            signal = parse_signal(text, tail_chars=tail_chars)
        except NoSignalError as exc:
            message = f"{exc} (exit code {outcome.exit_code})"
            return self._failed(
                task,
                dispatch_id,
                record_dir,
                "no_signal",
                message,
                attempt=attempt,
                exit_code=outcome.exit_code,
                duration=outcome.duration_seconds,
                details={"tail": exc.tail, "stderr_tail": outcome.stderr[-tail_chars:]},
            )
        except MalformedSignalError as exc:
            return self._failed(
                task,
                dispatch_id,
                record_dir,
                "malformed_signal",
                str(exc),
                attempt=attempt,
                exit_code=outcome.exit_code,
                duration=outcome.duration_seconds,
                details={"payload": exc.payload[:tail_chars]},
            )

        if outcome.exit_code not in (0, None):
            logger.warning(
                "Task %s signalled %s but exited with code %s",
                task.id,
                signal.status,
                outcome.exit_code,
            )
        if signal.status == "blocked":
            return DispatchResult(
                task_id=task.id,
                dispatch_id=dispatch_id,
                status="blocked",
                message=signal.reason,
                exit_code=outcome.exit_code,
                record_dir=self.store.relative(record_dir),
                duration_seconds=outcome.duration_seconds,
            )

        files_modified = signal.files_modified or list(task.files)
        undeclared = [path for path in files_modified if path not in task.files]
        if undeclared:
            logger.warning(
                "Task %s reported undeclared file(s): %s", task.id, ", ".join(undeclared)
            )
        for path in files_modified:
            for pattern in self.config.guardrails.forbidden_paths:
                if fnmatch.fnmatch(path, pattern):
                    logger.warning(
                        "Task %s reported forbidden path %s (guardrail %s)", task.id, path, pattern
                    )
        return DispatchResult(
            task_id=task.id,
            dispatch_id=dispatch_id,
            status="completed",
            message=signal.summary,
            files_modified=files_modified,
            undeclared_files=undeclared,
            exit_code=outcome.exit_code,
            record_dir=self.store.relative(record_dir),
            duration_seconds=outcome.duration_seconds,
        )

    async def dispatch(self, task: Task, graph: TaskGraph, *, attempt: int = 1) -> DispatchResult:
        dispatch_id = self._new_dispatch_id()
        record_dir = self.store.dispatches_dir / task.id / dispatch_id
        record_dir.mkdir(parents=True, exist_ok=True)

        packet = await self.context_builder.build(task, graph)
        prompt = render_prompt(task, packet)
        self.store.write_json(record_dir / "context.json", packet.to_dict())
        self.store.write_text(record_dir / "prompt.txt", prompt)

        command = self.runtime.build_command(prompt, record_dir / "prompt.txt")
        self._emit(
            {
                "event": "dispatch_started",
                "task_id": task.id,
                "dispatch_id": dispatch_id,
                "runtime": self.runtime.name,
                "attempt": attempt,
            }
        )
        logger.info("Dispatching %s via %s (attempt %d)", task.id, self.runtime.name, attempt)

        supervisor = ProcessSupervisor(
            command,
            cwd=self.store.repo_root,
            env=self._environment(task, record_dir),
            timeout_seconds=self.config.dispatch.timeout_seconds,
            grace_seconds=self.config.dispatch.grace_seconds,
            on_line=lambda stream, line: logger.debug("[%s:%s] %s", task.id, stream, line[:200]),
        )
        try:
            outcome = await supervisor.run()
        except DispatchTimeoutError as exc:
            self.store.write_text(record_dir / "stdout.txt", exc.stdout)
            self.store.write_text(record_dir / "stderr.txt", exc.stderr)
            result = self._failed(
                task,
                dispatch_id,
                record_dir,
                "timeout",
                str(exc),
                attempt=attempt,
                exit_code=exc.exit_code,
                duration=self.config.dispatch.timeout_seconds,
                details={"tail": exc.stdout[-self.config.dispatch.output_tail_chars :]},
            )
        except WorkerLaunchError as exc:
            self.store.write_text(record_dir / "stdout.txt", "")
            self.store.write_text(record_dir / "stderr.txt", str(exc))
            result = self._failed(
                task, dispatch_id, record_dir, "launch_error", str(exc), attempt=attempt
            )
        except Exception as exc:
            logger.exception("Supervising the worker for %s failed", task.id)
            stdout, stderr = supervisor.partial_output()
            self.store.write_text(record_dir / "stdout.txt", stdout)
            self.store.write_text(record_dir / "stderr.txt", stderr)
            result = self._failed(
                task,
                dispatch_id,
                record_dir,
                "process_error",
                f"{type(exc).__name__}: {exc}",
                attempt=attempt,
                details={"tail": stdout[-self.config.dispatch.output_tail_chars :]},
            )
        else:
            self.store.write_text(record_dir / "stdout.txt", outcome.stdout)
            self.store.write_text(record_dir / "stderr.txt", outcome.stderr)
            result = self._interpret(task, dispatch_id, record_dir, outcome, attempt=attempt)

        self.store.write_json(record_dir / "result.json", result.to_dict())
        self._emit(
            {
                "event": "dispatch_finished",
                "task_id": task.id,
                "dispatch_id": dispatch_id,
                "status": result.status,
                "message": result.message[:200],
            }
        )
        logger.info("Task %s -> %s: %s", task.id, result.status, result.message[:120])
        return result
