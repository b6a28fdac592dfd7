from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

RuntimeName = Literal["auto", "claude", "codex", "gemini", "opencode", "command"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    test_command: str = "pytest -q"
    lint_command: str = "ruff check ."
    type_check_command: str = "python -m compileall -q ."


@dataclass(slots=True)
class DispatchConfig:
    runtime: RuntimeName = "auto"
    binary: str = ""
    command: list[str] = field(default_factory=list)
    timeout_seconds: float = 1800.0
    grace_seconds: float = 2.0
    output_tail_chars: int = 500


@dataclass(slots=True)
class OrchestrationConfig:
    max_parallel_workers: int = 5
    max_consecutive_failures: int = 3
    max_gap_closure_iterations: int = 3


@dataclass(slots=True)
class CheckpointConfig:
    before_high_risk: bool = True
    max_retained: int = 10
    worktrees_dir: str = ".governor/worktrees"


@dataclass(slots=True)
class ContextConfig:
    mission_lines: int = 20
    phase_lines: int = 15
    acceptance_lines: int = 50
    acceptance_lines_per_criterion: int = 10
    prevention_rule_lines: int = 30
    prior_wave_lines: int = 30
    state_lines: int = 150


@dataclass(slots=True)
class GuardrailsConfig:
    forbidden_paths: list[str] = field(
        default_factory=lambda: [".env", "secrets/*", "production.config.*"]
    )


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class GovernorConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> GovernorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> GovernorConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            dispatch=DispatchConfig(**data.get("dispatch", {})),
            orchestration=OrchestrationConfig(**data.get("orchestration", {})),
            checkpoints=CheckpointConfig(**data.get("checkpoints", {})),
            context=ContextConfig(**data.get("context", {})),
            guardrails=GuardrailsConfig(**data.get("guardrails", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "test_command": self.project.test_command,
                "lint_command": self.project.lint_command,
                "type_check_command": self.project.type_check_command,
            },
            "dispatch": {
                "runtime": self.dispatch.runtime,
                "binary": self.dispatch.binary,
                "command": list(self.dispatch.command),
                "timeout_seconds": self.dispatch.timeout_seconds,
                "grace_seconds": self.dispatch.grace_seconds,
                "output_tail_chars": self.dispatch.output_tail_chars,
            },
            "orchestration": {
                "max_parallel_workers": self.orchestration.max_parallel_workers,
                "max_consecutive_failures": self.orchestration.max_consecutive_failures,
                "max_gap_closure_iterations": self.orchestration.max_gap_closure_iterations,
            },
            "checkpoints": {
                "before_high_risk": self.checkpoints.before_high_risk,
                "max_retained": self.checkpoints.max_retained,
                "worktrees_dir": self.checkpoints.worktrees_dir,
            },
            "context": {
                "mission_lines": self.context.mission_lines,
                "phase_lines": self.context.phase_lines,
                "acceptance_lines": self.context.acceptance_lines,
                "acceptance_lines_per_criterion": self.context.acceptance_lines_per_criterion,
                "prevention_rule_lines": self.context.prevention_rule_lines,
                "prior_wave_lines": self.context.prior_wave_lines,
                "state_lines": self.context.state_lines,
            },
            "guardrails": {
                "forbidden_paths": list(self.guardrails.forbidden_paths),
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: GovernorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "project",
        "dispatch",
        "orchestration",
        "checkpoints",
        "context",
        "guardrails",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> GovernorConfig:
    if not path.exists():
        return GovernorConfig.default()
    return GovernorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: GovernorConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
