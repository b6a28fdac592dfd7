from __future__ import annotations

import asyncio
import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from governor.config import GovernorConfig
from governor.errors import StateError
from governor.models import Task, TaskGraph, utcnow_iso
from governor.state.scars import RULES_HEADING
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.context")


@dataclass(slots=True, frozen=True)
class ContextPacket:
    """Everything a worker is allowed to see for one task.

    ``files`` is exactly the task's declared file list and ``files_content``
    has one entry per file; an empty string means the file does not exist yet.
    """

    task_id: str
    risk_tier: str
    test_mode: str
    mission_summary: str
    phase_objective: str
    files: tuple[str, ...]
    files_content: dict[str, str]
    acceptance_criteria: str
    modules: list[dict[str, Any]]
    contracts: list[dict[str, Any]]
    dependency_symbols: dict[str, list[str]]
    related_tests: dict[str, list[str]]
    prior_wave_summary: str
    prevention_rules: str
    state_digest: str
    boundaries: tuple[str, ...]
    tool_commands: dict[str, str]
    generated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "risk_tier": self.risk_tier,
            "test_mode": self.test_mode,
            "generated_at": self.generated_at,
            "mission_summary": self.mission_summary,
            "phase_objective": self.phase_objective,
            "files": list(self.files),
            "files_content": dict(self.files_content),
            "acceptance_criteria": self.acceptance_criteria,
            "modules": [dict(item) for item in self.modules],
            "contracts": [dict(item) for item in self.contracts],
            "dependency_symbols": {k: list(v) for k, v in self.dependency_symbols.items()},
            "related_tests": {k: list(v) for k, v in self.related_tests.items()},
            "prior_wave_summary": self.prior_wave_summary,
            "prevention_rules": self.prevention_rules,
            "state_digest": self.state_digest,
            "boundaries": list(self.boundaries),
            "tool_commands": dict(self.tool_commands),
        }


def head_lines(text: str, limit: int) -> str:
    return "\n".join(text.splitlines()[: max(0, limit)])


def extract_section(markdown: str, heading: str) -> str:
    lines = markdown.splitlines()
    for index, line in enumerate(lines):
        if line.strip() == heading:
            body: list[str] = []
            for following in lines[index + 1 :]:
                if following.startswith("## "):
                    break
                body.append(following)
            return "\n".join(body).strip()
    return ""


def _normalize(path: str) -> str:
    return PurePosixPath(path.replace("\\", "/")).as_posix()


def _strings(value: Any) -> list[str]:
    # Index fields hold a list of names; a bare string counts as one name.
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


class ContextPacketBuilder:
    def __init__(self, store: ProjectStore, config: GovernorConfig) -> None:
        self.store = store
        self.config = config

    def _load_index(self, path: Path, key: str) -> list[dict[str, Any]]:
        try:
            payload = self.store.read_json(path, default={})
        except StateError as exc:
            logger.warning("Ignoring unreadable index %s: %s", self.store.relative(path), exc)
            return []
        entries = payload.get(key, []) if isinstance(payload, dict) else []
        if not isinstance(entries, list):
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    # Slots

    def _mission_summary(self) -> str:
        text = self.store.read_text(self.store.mission_file)
        if not text.strip():
            return "(no mission document)"
        return head_lines(text, self.config.context.mission_lines)

    def _phase_objective(self, task: Task) -> str:
        if not task.phase:
            return ""
        text = self.store.read_text(self.store.phase_objective_file(task.phase))
        return head_lines(text, self.config.context.phase_lines)

    def _files_content(self, files: tuple[str, ...]) -> dict[str, str]:
        contents: dict[str, str] = {}
        for relative in files:
            target = (self.store.repo_root / relative).resolve()
            if not target.is_relative_to(self.store.repo_root):
                logger.warning("Declared file %s lies outside the repository", relative)
                contents[relative] = ""
                continue
            contents[relative] = (
                target.read_text(encoding="utf-8", errors="replace") if target.is_file() else ""
            )
        return contents

    def _acceptance_criteria(self, task: Task) -> str:
        text = self.store.read_text(self.store.acceptance_file)
        if not text or not task.acceptance_criteria:
            return ""
        lines = text.splitlines()
        per_criterion = self.config.context.acceptance_lines_per_criterion
        selected: list[str] = []
        for criterion in task.acceptance_criteria:
            pattern = re.compile(rf"(?<![\w-]){re.escape(criterion)}(?![\w-])")
            for index, line in enumerate(lines):
                if not pattern.search(line):
                    continue
                block = [line]
                for following in lines[index + 1 : index + per_criterion]:
                    if following.startswith("#"):
                        break
                    block.append(following)
                selected.extend(block)
                break
        return head_lines("\n".join(selected), self.config.context.acceptance_lines)

    def _modules(self, files: tuple[str, ...]) -> list[dict[str, Any]]:
        matched: list[dict[str, Any]] = []
        normalized = [_normalize(path) for path in files]
        for module in self._load_index(self.store.modules_file, "modules"):
            module_path = _normalize(str(module.get("path", ""))).rstrip("/")
            owns = _strings(module.get("owns"))
            for path in normalized:
                by_path = bool(module_path) and module_path != "." and (
                    path == module_path or path.startswith(f"{module_path}/")
                )
                if by_path or any(fnmatch.fnmatch(path, pattern) for pattern in owns):
                    matched.append(module)
                    break
        return matched

    def _contracts(self, files: tuple[str, ...]) -> list[dict[str, Any]]:
        matched: list[dict[str, Any]] = []
        normalized = [_normalize(path) for path in files]
        for contract in self._load_index(self.store.contracts_file, "contracts"):
            contract_file = contract.get("file") or contract.get("path")
            if not isinstance(contract_file, str) or not contract_file:
                continue
            contract_file = _normalize(contract_file)
            parent = PurePosixPath(contract_file).parent.as_posix()
            for path in normalized:
                same_dir = parent not in {"", "."} and path.startswith(f"{parent}/")
                if path == contract_file or same_dir:
                    matched.append(contract)
                    break
        return matched

    def _dependency_symbols(self, files: tuple[str, ...]) -> dict[str, list[str]]:
        own = {_normalize(path) for path in files}
        imported: list[str] = []
        for entry in self._load_index(self.store.ownership_file, "files"):
            if _normalize(str(entry.get("path", ""))) not in own:
                continue
            for dependency in map(_normalize, _strings(entry.get("imports"))):
                if dependency not in own and dependency not in imported:
                    imported.append(dependency)
        if not imported:
            return {}
        exports: dict[str, list[str]] = {}
        for entry in self._load_index(self.store.symbols_file, "symbols"):
            file_name = _normalize(str(entry.get("file", "")))
            exports[file_name] = _strings(entry.get("exports"))
        return {path: exports.get(path, []) for path in imported}

    def _related_tests(self, files: tuple[str, ...]) -> dict[str, list[str]]:
        own = {_normalize(path) for path in files}
        related: dict[str, list[str]] = {}
        for entry in self._load_index(self.store.test_map_file, "test_map"):
            source = _normalize(str(entry.get("source_file", "")))
            if source in own:
                related[source] = _strings(entry.get("test_files"))
        return related

    def _prior_wave_summary(self, task: Task, graph: TaskGraph) -> str:
        lines = [
            f"- [wave {other.wave}] {other.id}: {other.summary or other.description}"
            for other in sorted(graph.tasks, key=lambda item: item.wave)
            if other.wave < task.wave and other.status == "completed"
        ]
        return head_lines("\n".join(lines), self.config.context.prior_wave_lines)

    def _prevention_rules(self) -> str:
        section = extract_section(self.store.read_text(self.store.scars_markdown), RULES_HEADING)
        return head_lines(section, self.config.context.prevention_rule_lines)

    def _state_digest(self) -> str:
        return head_lines(
            self.store.read_text(self.store.state_markdown), self.config.context.state_lines
        )

    def _tool_commands(self) -> dict[str, str]:
        project = self.config.project
        commands = {
            "test": project.test_command,
            "lint": project.lint_command,
            "type_check": project.type_check_command,
        }
        return {name: command for name, command in commands.items() if command.strip()}

    async def build(self, task: Task, graph: TaskGraph) -> ContextPacket:
        files = tuple(task.files)
        (
            mission_summary,
            phase_objective,
            files_content,
            acceptance_criteria,
            modules,
            contracts,
            dependency_symbols,
            related_tests,
            prior_wave_summary,
            prevention_rules,
            state_digest,
        ) = await asyncio.gather(
            asyncio.to_thread(self._mission_summary),
            asyncio.to_thread(self._phase_objective, task),
            asyncio.to_thread(self._files_content, files),
            asyncio.to_thread(self._acceptance_criteria, task),
            asyncio.to_thread(self._modules, files),
            asyncio.to_thread(self._contracts, files),
            asyncio.to_thread(self._dependency_symbols, files),
            asyncio.to_thread(self._related_tests, files),
            asyncio.to_thread(self._prior_wave_summary, task, graph),
            asyncio.to_thread(self._prevention_rules),
            asyncio.to_thread(self._state_digest),
        )
        return ContextPacket(
            task_id=task.id,
            risk_tier=task.risk_tier,
            test_mode=task.test_mode,
            mission_summary=mission_summary,
            phase_objective=phase_objective,
            files=files,
            files_content=files_content,
            acceptance_criteria=acceptance_criteria,
            modules=modules,
            contracts=contracts,
            dependency_symbols=dependency_symbols,
            related_tests=related_tests,
            prior_wave_summary=prior_wave_summary,
            prevention_rules=prevention_rules,
            state_digest=state_digest,
            boundaries=tuple(self.config.guardrails.forbidden_paths),
            tool_commands=self._tool_commands(),
        )
