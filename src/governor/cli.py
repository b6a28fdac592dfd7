from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from governor.checkpoints import CheckpointManager
from governor.config import GovernorConfig, LoggingConfig, load_config, save_config
from governor.context import ContextPacketBuilder
from governor.dispatch import WorkerDispatcher, build_runtime
from governor.errors import GovernorError
from governor.escalation import EscalationTracker
from governor.graph import TaskGraphManager, WaveScheduler
from governor.judge import MergeJudge
from governor.models import TaskGraph, VerificationResult
from governor.orchestrator import Orchestrator
from governor.risk import underrated_tasks
from governor.state import (
    DecisionLog,
    GovernanceState,
    GovernanceStore,
    ProjectStore,
    ScarStore,
)
from governor.state.scars import SCAR_CATEGORIES

CONFIG_DEFAULT = "governor.toml"
GITIGNORE_ENTRY = ".governor/"

logger = logging.getLogger("governor.cli")


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: GovernorConfig
    store: ProjectStore
    graphs: TaskGraphManager
    scheduler: WaveScheduler
    checkpoints: CheckpointManager
    governance: GovernanceStore
    escalations: EscalationTracker


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _setup_logging(verbose: bool, config: LoggingConfig) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=config.format, stream=sys.stderr)
    logging.getLogger("governor").setLevel(level)


def _verbose_requested() -> bool:
    context = click.get_current_context(silent=True)
    if context is None:
        return False
    return bool((context.find_root().obj or {}).get("verbose", False))


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    _setup_logging(_verbose_requested(), config.logging)
    store = ProjectStore(repo_root)
    graphs = TaskGraphManager(store)
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        graphs=graphs,
        scheduler=WaveScheduler(graphs),
        checkpoints=CheckpointManager(store, worktrees_dir=config.checkpoints.worktrees_dir),
        governance=GovernanceStore(store),
        escalations=EscalationTracker(
            store,
            max_consecutive_failures=config.orchestration.max_consecutive_failures,
            max_gap_closure_iterations=config.orchestration.max_gap_closure_iterations,
        ),
    )


def _runtime_from_option(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _build_orchestrator(runtime: Runtime) -> Orchestrator:
    worker_runtime = build_runtime(runtime.config.dispatch)
    dispatcher = WorkerDispatcher(
        runtime.store,
        runtime.config,
        worker_runtime,
        context_builder=ContextPacketBuilder(runtime.store, runtime.config),
        event_hook=runtime.store.append_audit,
    )
    return Orchestrator(
        runtime.store,
        runtime.config,
        dispatcher,
        graphs=runtime.graphs,
        scheduler=runtime.scheduler,
        checkpoints=runtime.checkpoints,
        judge=MergeJudge(runtime.store),
        escalations=runtime.escalations,
        governance=runtime.governance,
        decisions=DecisionLog(runtime.store),
    )


def _orchestrator_without_worker(runtime: Runtime) -> Orchestrator:
    # Human-driven commands never dispatch, so no worker binary is required.
    return Orchestrator(
        runtime.store,
        runtime.config,
        graphs=runtime.graphs,
        scheduler=runtime.scheduler,
        checkpoints=runtime.checkpoints,
        escalations=runtime.escalations,
        governance=runtime.governance,
    )


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


def _ensure_gitignore(repo_root: Path) -> bool:
    gitignore = repo_root / ".gitignore"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    entries = {line.strip() for line in existing.splitlines()}
    if GITIGNORE_ENTRY in entries or GITIGNORE_ENTRY.rstrip("/") in entries:
        return False
    if existing and not existing.endswith("\n"):
        existing += "\n"
    gitignore.write_text(existing + GITIGNORE_ENTRY + "\n", encoding="utf-8")
    return True


@click.group()
@click.option("--verbose", "-v", is_flag=True, default=False, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Governor: wave-scheduled, checkpointed work for coding agents."""
    ctx.ensure_object(dict)["verbose"] = verbose


@cli.command("init")
@click.option(
    "--runtime",
    "runtime_name",
    type=click.Choice(["auto", "claude", "codex", "gemini", "opencode", "command"]),
    default=None,
)
@click.option("--mission", default="", help="One-line mission statement.")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def init_command(runtime_name: str | None, mission: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    created = not config_path.exists()
    config = load_config(config_path)
    if runtime_name:
        config.dispatch.runtime = runtime_name  # type: ignore[assignment]
    if created:
        config.project.name = repo_root.name
    save_config(config_path, config)

    store = ProjectStore(repo_root)
    store.ensure_layout()
    if not store.mission_file.exists():
        body = mission or "(describe the mission)"
        store.write_text(store.mission_file, f"# Mission\n\n{body}\n")
    if not store.task_graph_file.exists():
        TaskGraphManager(store).save(TaskGraph(mission=mission))
    added = _ensure_gitignore(repo_root)

    governance = GovernanceStore(store)

    def _init(state: GovernanceState) -> None:
        if mission:
            state.mission = mission
        state.session.next_action = "Write the task graph, then run 'governor validate'"

    governance.update(_init)

    click.echo(f"Initialized Governor in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker runtime: {config.dispatch.runtime}")
    if added:
        click.echo(f"Added {GITIGNORE_ENTRY} to .gitignore")


@cli.command("validate")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def validate_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        graph = runtime.graphs.load()
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Task graph OK: {len(graph.tasks)} task(s) across {len(graph.waves)} wave(s).")
    for warning in underrated_tasks(graph):
        click.echo(f"warning: {warning}")


@cli.command("status")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def status_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        graph = runtime.graphs.load()
        state = runtime.governance.load()
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(
        {
            "mission": state.mission or graph.mission,
            "phase": state.current_phase or graph.current_phase,
            "loop_position": state.loop_position,
            "tasks": runtime.graphs.summary(graph),
            "blockers": state.blockers,
            "escalations": [record.to_dict() for record in runtime.escalations.records()],
            "next_action": state.session.next_action,
        }
    )


@cli.command("next-wave")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def next_wave_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        graph = runtime.graphs.load()
        schedule = runtime.scheduler.next_wave(graph)
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    if schedule is None:
        if runtime.scheduler.is_complete(graph):
            click.echo("All tasks complete.")
        else:
            click.echo("No wave ready.")
        return
    click.echo(f"Wave {schedule.wave}:")
    for task in schedule.tasks:
        click.echo(f"  {task.id} [{task.risk_tier}] {task.description}")


@cli.command("run")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def run_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        orchestrator = _build_orchestrator(runtime)
        summary = asyncio.run(orchestrator.run())
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Waves: {', '.join(str(wave) for wave in summary.waves) or '(none)'}")
    click.echo(
        f"Completed: {len(summary.completed)}  Failed: {len(summary.failed)}  "
        f"Blocked: {len(summary.blocked)}"
    )
    for checkpoint_id in summary.checkpoints:
        click.echo(f"Checkpoint: {checkpoint_id}")
    for task_id in summary.escalated:
        click.echo(f"Escalated: {task_id}")
    if summary.deadlocked:
        raise click.ClickException(
            "Run stopped; deadlocked task(s): " + ", ".join(summary.deadlocked)
        )


@cli.command("dispatch")
@click.argument("task_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def dispatch_command(task_id: str, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        orchestrator = _build_orchestrator(runtime)
        result = asyncio.run(orchestrator.dispatch_task(task_id))
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{result.task_id}: {result.status} - {result.message}")


@cli.command("checkpoint")
@click.argument("task_id")
@click.option("--description", "-m", default="manual checkpoint", show_default=True)
@click.option("--file", "files", multiple=True, help="File to stage into the checkpoint.")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def checkpoint_command(
    task_id: str, description: str, files: tuple[str, ...], config_value: str
) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        checkpoint = runtime.checkpoints.create(task_id, description, list(files))
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {checkpoint.id} at {checkpoint.git_ref[:10]}")


@cli.command("checkpoints")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def checkpoints_command(config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    checkpoints = runtime.checkpoints.list_checkpoints()
    if not checkpoints:
        click.echo("No checkpoints.")
        return
    for checkpoint in checkpoints:
        click.echo(
            f"{checkpoint.id} {checkpoint.git_ref[:10]} {checkpoint.task_id} "
            f"{checkpoint.description}"
        )


@cli.command("prune")
@click.option("--keep", type=int, default=None, help="Records to retain.")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def prune_command(keep: int | None, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    retained = runtime.config.checkpoints.max_retained if keep is None else keep
    removed = runtime.checkpoints.prune(retained)
    click.echo(f"Pruned {len(removed)} checkpoint record(s).")


@cli.command("rollback")
@click.argument("checkpoint_id")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def rollback_command(checkpoint_id: str, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        result = runtime.checkpoints.rollback(checkpoint_id)
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    runtime.store.append_audit(
        {"event": "rollback", "checkpoint_id": checkpoint_id, "git_ref": result.git_ref}
    )
    click.echo(f"Rolled back to {result.checkpoint_id} ({result.git_ref[:10]})")
    if result.quarantine_path:
        click.echo(f"Discarded changes saved to {result.quarantine_path}")


@cli.command("judge")
@click.argument("result_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--apply",
    "apply_result",
    is_flag=True,
    default=False,
    help="Apply the decision to the task in the graph.",
)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def judge_command(result_file: Path, apply_result: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        payload = json.loads(result_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{result_file} is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise click.ClickException(f"{result_file} must hold a JSON object.")
    try:
        result = VerificationResult.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"{result_file} is not a verification result: {exc}") from exc

    try:
        if apply_result:
            decision = _orchestrator_without_worker(runtime).record_verification(
                result.task_id, result
            )
        else:
            decision = MergeJudge(runtime.store).evaluate(result)
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(decision.to_dict())


@cli.command("scar")
@click.argument("task_id")
@click.option("--category", type=click.Choice(SCAR_CATEGORIES), required=True)
@click.option("--description", required=True)
@click.option("--root-cause", required=True)
@click.option("--resolution", required=True)
@click.option("--prevention-rule", required=True)
@click.option("--rollback-ref", required=True, help="Checkpoint the rollback restored.")
@click.option("--confirmed-by", required=True, help="Human who confirmed the scar.")
@click.option("--file", "files", multiple=True)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def scar_command(
    task_id: str,
    category: str,
    description: str,
    root_cause: str,
    resolution: str,
    prevention_rule: str,
    rollback_ref: str,
    confirmed_by: str,
    files: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _runtime_from_option(config_value)
    scars = ScarStore(runtime.store)
    try:
        scar = scars.record(
            task_id=task_id,
            category=category,
            description=description,
            root_cause=root_cause,
            resolution=resolution,
            prevention_rule=prevention_rule,
            rollback_ref=rollback_ref,
            confirmed_by=confirmed_by,
            files_affected=list(files),
        )
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    total = len(scars.all())

    def _count(state: GovernanceState) -> None:
        state.metrics.scars_count = total

    runtime.governance.update(_count)
    click.echo(f"Recorded {scar.id}: {scar.prevention_rule}")


@cli.command("scars")
@click.option(
    "--consolidate",
    is_flag=True,
    default=False,
    help="Keep only the latest rule per category active.",
)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def scars_command(consolidate: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    scars = ScarStore(runtime.store)
    if consolidate:
        active = list(scars.consolidate().values())
        click.echo(f"Consolidated to {len(active)} active rule(s).")
    else:
        active = scars.prevention_rules()
    if not active:
        click.echo("No prevention rules.")
        return
    for scar in active:
        click.echo(f"[{scar.category}] {scar.prevention_rule} ({scar.id})")


@cli.command("escalations")
@click.option("--all", "include_resolved", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def escalations_command(include_resolved: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    records = runtime.escalations.records(include_resolved=include_resolved)
    if not records:
        click.echo("No open escalations.")
        return
    for record in records:
        target = record.task_id or f"phase {record.phase}"
        state = "resolved" if record.resolved_at else "open"
        click.echo(f"{record.id} {state:<8} {target}: {record.message}")


@cli.command("clear-escalation")
@click.argument("task_id")
@click.option(
    "--no-requeue",
    is_flag=True,
    default=False,
    help="Leave a failed task failed instead of returning it to pending.",
)
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def clear_escalation_command(task_id: str, no_requeue: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    try:
        cleared = _orchestrator_without_worker(runtime).clear_escalation(
            task_id, requeue=not no_requeue
        )
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    if cleared:
        click.echo(f"Cleared escalation for {task_id}")
    else:
        click.echo(f"No escalation recorded for {task_id}")


@cli.command("gap-closure")
@click.argument("phase")
@click.option("--reset", is_flag=True, default=False, help="Reset the iteration counter.")
@click.option("--config", "config_value", default=CONFIG_DEFAULT, show_default=True)
def gap_closure_command(phase: str, reset: bool, config_value: str) -> None:
    runtime = _runtime_from_option(config_value)
    orchestrator = _orchestrator_without_worker(runtime)
    if reset:
        orchestrator.reset_gap_closure(phase)
        click.echo(f"Gap closure reset for phase {phase}")
        return
    try:
        iteration = orchestrator.begin_gap_closure(phase)
    except GovernorError as exc:
        raise click.ClickException(str(exc)) from exc
    limit = runtime.config.orchestration.max_gap_closure_iterations
    click.echo(f"Gap closure iteration {iteration}/{limit} for phase {phase}")

