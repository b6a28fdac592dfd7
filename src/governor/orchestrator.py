from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from governor.checkpoints import CheckpointManager
from governor.config import GovernorConfig
from governor.dispatch.dispatcher import DispatchResult, WorkerDispatcher
from governor.errors import (
    DeadlockError,
    EscalationLimitReached,
    TaskRecordError,
    WorkerLaunchError,
)
from governor.escalation import EscalationTracker
from governor.graph.scheduler import WaveSchedule, WaveScheduler
from governor.graph.task_graph import TaskGraphManager
from governor.judge import MergeJudge
from governor.models import (
    FailureRecord,
    MergeDecision,
    Task,
    TaskGraph,
    VerificationResult,
    utcnow_iso,
)
from governor.state.decisions import DecisionLog
from governor.state.governance import GovernanceState, GovernanceStore
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.orchestrator")

Verifier = Callable[[Task, DispatchResult], Awaitable[VerificationResult]]
EventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RunSummary:
    run_id: str
    started_at: str
    ended_at: str = ""
    waves: list[int] = field(default_factory=list)
    dispatched: int = 0
    completed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)
    checkpoints: list[str] = field(default_factory=list)
    deadlocked: list[str] = field(default_factory=list)
    finished: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def task_blocker(task_id: str, message: str) -> str:
    return f"[{task_id}] {message}"


def phase_blocker(phase: str, message: str) -> str:
    return f"[phase {phase}] {message}"


class Orchestrator:
    """Drives the task graph wave by wave until it completes or stalls.

    Graph and governance state are saved after every batch, so an
    interrupted run resumes from the last saved batch.
    """

    def __init__(
        self,
        store: ProjectStore,
        config: GovernorConfig,
        dispatcher: WorkerDispatcher | None = None,
        *,
        graphs: TaskGraphManager | None = None,
        scheduler: WaveScheduler | None = None,
        checkpoints: CheckpointManager | None = None,
        judge: MergeJudge | None = None,
        escalations: EscalationTracker | None = None,
        governance: GovernanceStore | None = None,
        decisions: DecisionLog | None = None,
        verifier: Verifier | None = None,
        event_hook: EventHook | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.dispatcher = dispatcher
        self.graphs = graphs or TaskGraphManager(store)
        self.scheduler = scheduler or WaveScheduler(self.graphs)
        self.checkpoints = checkpoints or CheckpointManager(
            store, worktrees_dir=config.checkpoints.worktrees_dir
        )
        self.judge = judge or MergeJudge(store)
        self.escalations = escalations or EscalationTracker(
            store,
            max_consecutive_failures=config.orchestration.max_consecutive_failures,
            max_gap_closure_iterations=config.orchestration.max_gap_closure_iterations,
        )
        self.governance = governance or GovernanceStore(store)
        self.decisions = decisions or DecisionLog(store)
        self.verifier = verifier
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        payload = {"at": utcnow_iso(), **event}
        self.store.append_audit(payload)
        logger.debug("event %s", payload)
        if self.event_hook is not None:
            self.event_hook(payload)

    def _update_governance(self, mutate: Callable[[GovernanceState], None]) -> None:
        self.governance.update(mutate)

    # Run loop

    async def run(self) -> RunSummary:
        summary = RunSummary(run_id=f"run-{secrets.token_hex(4)}", started_at=utcnow_iso())
        graph = self.graphs.load()
        summary.recovered = self.graphs.recover_interrupted(graph)
        self.graphs.save(graph)
        self._emit({"event": "run_started", "run_id": summary.run_id, "tasks": len(graph.tasks)})
        logger.info("Run %s started with %d task(s)", summary.run_id, len(graph.tasks))

        def _start(state: GovernanceState) -> None:
            state.loop_position = "executing"
            state.session.next_action = "Dispatching ready waves"

        self._update_governance(_start)

        while True:
            try:
                schedule = self.scheduler.next_wave(graph)
            except DeadlockError as exc:
                summary.deadlocked = list(exc.task_ids)
                self._record_deadlock(exc)
                break
            if schedule is None:
                break
            await self._run_wave(graph, schedule, summary)

        summary.finished = self.scheduler.is_complete(graph)
        summary.ended_at = utcnow_iso()
        self._finish(graph, summary)
        return summary

    async def _run_wave(
        self, graph: TaskGraph, schedule: WaveSchedule, summary: RunSummary
    ) -> None:
        summary.waves.append(schedule.wave)
        self._emit({"event": "wave_started", "wave": schedule.wave, "tasks": schedule.task_ids})
        logger.info("Wave %d: %s", schedule.wave, ", ".join(schedule.task_ids))

        if schedule.has_high_risk and self.config.checkpoints.before_high_risk:
            checkpoint_id = self._checkpoint_wave(graph, schedule)
            summary.checkpoints.append(checkpoint_id)

        for task in schedule.tasks:
            self.graphs.mark_running(graph, task.id)
        self.graphs.save(graph)

        batch_size = max(1, self.config.orchestration.max_parallel_workers)
        for start in range(0, len(schedule.tasks), batch_size):
            batch = schedule.tasks[start : start + batch_size]
            results = await asyncio.gather(
                *(self._dispatch(task, graph) for task in batch), return_exceptions=True
            )
            for task, outcome in zip(batch, results):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.error("Dispatch of %s raised", task.id, exc_info=outcome)
                    outcome = self._process_error(task, outcome)
                summary.dispatched += 1
                await self._apply_outcome(graph, task, outcome, summary)
            self.graphs.save(graph)
            self.governance.sync_with_graph(graph)

        self._emit({"event": "wave_finished", "wave": schedule.wave})

    def _checkpoint_wave(self, graph: TaskGraph, schedule: WaveSchedule) -> str:
        files = list(dict.fromkeys(path for task in schedule.tasks for path in task.files))
        checkpoint = self.checkpoints.create(
            ",".join(schedule.task_ids),
            f"before wave {schedule.wave} ({', '.join(schedule.task_ids)})",
            files,
        )
        for task in schedule.tasks:
            self.graphs.attach_checkpoint(graph, task.id, checkpoint.id)
        pruned = self.checkpoints.prune(self.config.checkpoints.max_retained)
        self._emit(
            {
                "event": "checkpoint_created",
                "checkpoint_id": checkpoint.id,
                "wave": schedule.wave,
                "git_ref": checkpoint.git_ref,
                "pruned": pruned,
            }
        )
        return checkpoint.id

    async def _dispatch(self, task: Task, graph: TaskGraph) -> DispatchResult:
        if self.dispatcher is None:
            raise WorkerLaunchError("No worker dispatcher is configured.", task_id=task.id)
        attempt = len(self.escalations.failures(task.id)) + 1
        return await self.dispatcher.dispatch(task, graph, attempt=attempt)

    def _process_error(self, task: Task, exc: Exception) -> DispatchResult:
        message = f"{type(exc).__name__}: {exc}"
        return DispatchResult(
            task_id=task.id,
            dispatch_id="",
            status="failed",
            message=message,
            failure=FailureRecord(
                kind="process_error",
                message=message,
                attempt=len(self.escalations.failures(task.id)) + 1,
            ),
        )

    # Outcomes

    async def _apply_outcome(
        self, graph: TaskGraph, task: Task, result: DispatchResult, summary: RunSummary
    ) -> None:
        self._emit(
            {
                "event": "task_outcome",
                "task_id": task.id,
                "dispatch_id": result.dispatch_id,
                "status": result.status,
                "message": result.message[:200],
            }
        )

        def _count(state: GovernanceState) -> None:
            state.metrics.dispatches += 1

        self._update_governance(_count)

        if result.status == "blocked":
            self._block(graph, task.id, result.message or "worker reported blocked")
            summary.blocked.append(task.id)
            return
        if result.status == "failed":
            failure = result.failure or FailureRecord(kind="process_error", message=result.message)
            self._fail(graph, task.id, failure, summary)
            return

        if self.verifier is None:
            self.graphs.mark_completed(graph, task.id, summary=result.message)
            self.escalations.record_success(task.id)
            summary.completed.append(task.id)
            return

        def _verifying(state: GovernanceState) -> None:
            state.loop_position = "verifying"

        def _executing(state: GovernanceState) -> None:
            state.loop_position = "executing"

        self._update_governance(_verifying)
        try:
            verification = await self.verifier(task, result)
            decision = self._judge(verification)
            self._apply_decision(graph, task.id, decision, verification, result.message, summary)
        finally:
            self._update_governance(_executing)

    def _judge(self, verification: VerificationResult) -> MergeDecision:
        decision = self.judge.evaluate(verification)
        self.judge.record(decision)
        self._emit(
            {
                "event": "merge_decision",
                "task_id": decision.task_id,
                "decision_id": decision.id,
                "verdict": decision.verdict,
            }
        )
        return decision

    def _apply_decision(
        self,
        graph: TaskGraph,
        task_id: str,
        decision: MergeDecision,
        verification: VerificationResult,
        task_summary: str | None,
        summary: RunSummary | None = None,
    ) -> None:
        task = graph.require(task_id)
        task.verification = verification
        if decision.verdict == "approved":
            if task.status != "completed":
                self.graphs.mark_completed(graph, task_id, summary=task_summary)
            self.escalations.record_success(task_id)
            if summary is not None:
                summary.completed.append(task_id)
            return
        if decision.verdict == "needs-revision":
            reason = "; ".join(item.message for item in decision.reasons)
            self._block(graph, task_id, f"verification needs revision: {reason}")
            if summary is not None:
                summary.blocked.append(task_id)
            return

        evidence = [str(error) for error in self.judge.rejections(decision)]
        failure = FailureRecord(
            kind="verification_rejected",
            message="; ".join(item.message for item in decision.reasons),
            attempt=len(self.escalations.failures(task_id)) + 1,
            details={"decision_id": decision.id, "evidence": evidence},
        )
        self._fail(graph, task_id, failure, summary)

    def _block(self, graph: TaskGraph, task_id: str, reason: str) -> None:
        self.graphs.mark_blocked(graph, task_id, reason)
        logger.warning("Task %s blocked: %s", task_id, reason)

        def _add(state: GovernanceState) -> None:
            state.add_blocker(task_blocker(task_id, reason))

        self._update_governance(_add)

    def _fail(
        self,
        graph: TaskGraph,
        task_id: str,
        failure: FailureRecord,
        summary: RunSummary | None,
    ) -> None:
        count = self.escalations.record_failure(task_id, failure)

        def _count(state: GovernanceState) -> None:
            state.metrics.failures += 1

        self._update_governance(_count)
        limit = self.escalations.max_consecutive_failures
        if count < limit:
            self.graphs.requeue(graph, task_id, failure)
            logger.warning(
                "Task %s failed (%s, %d/%d); requeued", task_id, failure.kind, count, limit
            )
            if summary is not None:
                summary.requeued.append(task_id)
            return

        self.graphs.mark_failed(graph, task_id, failure)
        record = self.escalations.escalate_task(task_id)
        self._emit(
            {
                "event": "escalation",
                "task_id": task_id,
                "escalation_id": record.id,
                "kind": record.kind,
            }
        )
        self.decisions.record(
            phase=graph.require(task_id).phase or graph.current_phase,
            description=f"Escalated task {task_id} to a human",
            rationale=f"{count} consecutive failures; last: {failure.message}",
            impact="Automatic dispatch of the task is disabled",
            rollback_path=f"governor clear-escalation {task_id}",
        )

        def _escalate(state: GovernanceState) -> None:
            state.metrics.escalations += 1
            state.add_blocker(task_blocker(task_id, record.message))
            state.add_decision(f"Escalated {task_id} after {count} consecutive failures")

        self._update_governance(_escalate)
        if summary is not None:
            summary.failed.append(task_id)
            summary.escalated.append(task_id)

    def _record_deadlock(self, exc: DeadlockError) -> None:
        self._emit({"event": "deadlock", "task_ids": exc.task_ids})

        def _add(state: GovernanceState) -> None:
            state.add_blocker(f"Deadlock: {', '.join(exc.task_ids)} cannot make progress")
            state.session.next_action = "Resolve blocked or failed dependencies"

        self._update_governance(_add)

    def _finish(self, graph: TaskGraph, summary: RunSummary) -> None:
        self.governance.sync_with_graph(graph)

        def _stop(state: GovernanceState) -> None:
            if summary.finished:
                state.loop_position = "complete"
                state.session.next_action = "All tasks complete"
            elif not summary.deadlocked:
                state.loop_position = "executing"
                state.session.next_action = "Resolve blockers and re-run"

        self._update_governance(_stop)
        self._emit(
            {
                "event": "run_finished",
                "run_id": summary.run_id,
                "completed": len(summary.completed),
                "failed": len(summary.failed),
                "blocked": len(summary.blocked),
                "deadlocked": summary.deadlocked,
            }
        )
        logger.info(
            "Run %s finished: %d completed, %d failed, %d blocked",
            summary.run_id,
            len(summary.completed),
            len(summary.failed),
            len(summary.blocked),
        )

    # Single-task operations

    async def dispatch_task(self, task_id: str) -> DispatchResult:
        graph = self.graphs.load()
        task = graph.require(task_id)
        if self.escalations.limit_reached(task_id):
            record = self.escalations.escalate_task(task_id)
            self._emit(
                {"event": "dispatch_refused", "task_id": task_id, "escalation_id": record.id}
            )
            raise EscalationLimitReached(
                f"Task {task_id} reached {self.escalations.max_consecutive_failures} "
                "consecutive failures; clear the escalation before dispatching it again.",
                task_id=task_id,
                record=record.to_dict(),
            )
        if task not in self.graphs.ready_tasks(graph):
            raise TaskRecordError(
                f"Task {task_id} is not ready (status {task.status}).", task_id=task_id
            )
        self.graphs.mark_running(graph, task_id)
        self.graphs.save(graph)
        try:
            result = await self._dispatch(task, graph)
        except Exception as exc:
            logger.exception("Dispatch of %s raised", task_id)
            result = self._process_error(task, exc)
        await self._apply_outcome(graph, task, result, RunSummary(run_id="", started_at=""))
        self.graphs.save(graph)
        self.governance.sync_with_graph(graph)
        return result

    def record_verification(self, task_id: str, result: VerificationResult) -> MergeDecision:
        if result.task_id and result.task_id != task_id:
            raise TaskRecordError(
                f"Verification result names task {result.task_id}, not {task_id}.",
                task_id=task_id,
            )
        graph = self.graphs.load()
        task = graph.require(task_id)
        if task.status not in {"running", "completed"}:
            raise TaskRecordError(
                f"Task {task_id} is {task.status}; only running or completed tasks "
                "can be verified.",
                task_id=task_id,
            )
        decision = self._judge(result)
        self._apply_decision(graph, task_id, decision, result, None)
        self.graphs.save(graph)
        self.governance.sync_with_graph(graph)
        return decision

    def begin_gap_closure(self, phase: str) -> int:
        try:
            iteration = self.escalations.begin_gap_closure(phase)
        except EscalationLimitReached as exc:
            if exc.record:
                message = str(exc.record.get("message", exc))
                self._emit({"event": "escalation", "phase": phase, "kind": "gap_closure_limit"})

                def _escalate(state: GovernanceState) -> None:
                    state.metrics.escalations += 1
                    state.add_blocker(phase_blocker(phase, message))

                self._update_governance(_escalate)
            raise
        self._emit({"event": "gap_closure", "phase": phase, "iteration": iteration})
        return iteration

    def clear_escalation(self, task_id: str, *, requeue: bool = True) -> bool:
        graph = self.graphs.load()
        task = graph.require(task_id)
        cleared = self.escalations.clear_task(task_id)
        if requeue and task.status == "failed":
            self.graphs.requeue(graph, task_id)
            self.graphs.save(graph)
        self.decisions.record(
            phase=task.phase or graph.current_phase,
            description=f"Cleared escalation for task {task_id}",
            rationale="Human review",
            impact="Task is eligible for automatic dispatch again",
        )

        def _clear(state: GovernanceState) -> None:
            state.remove_blockers(f"[{task_id}]")
            state.add_decision(f"Cleared escalation for {task_id}")

        self._update_governance(_clear)
        self._emit({"event": "escalation_cleared", "task_id": task_id})
        return cleared

    def reset_gap_closure(self, phase: str) -> None:
        self.escalations.reset_gap_closure(phase)

        def _clear(state: GovernanceState) -> None:
            state.remove_blockers(f"[phase {phase}]")

        self._update_governance(_clear)
        self._emit({"event": "gap_closure_reset", "phase": phase})
