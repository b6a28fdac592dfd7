from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from governor.errors import StateError
from governor.models import utcnow_iso

logger = logging.getLogger("governor.state.store")

GOVERNOR_DIR = ".governor"


class ProjectStore:
    """File-backed storage rooted at one project directory.

    Every JSON document and every append-only log is written to a temporary
    sibling first and moved into place with ``os.replace``.
    """

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root.resolve()
        self.root = self.repo_root / GOVERNOR_DIR

    # Layout

    @property
    def mission_file(self) -> Path:
        return self.root / "mission" / "MISSION.md"

    @property
    def acceptance_file(self) -> Path:
        return self.root / "mission" / "ACCEPTANCE.md"

    def phase_objective_file(self, phase: str) -> Path:
        return self.root / "plans" / phase / "OBJECTIVE.md"

    @property
    def state_markdown(self) -> Path:
        return self.root / "governance" / "STATE.md"

    @property
    def decision_markdown(self) -> Path:
        return self.root / "governance" / "DECISION_LOG.md"

    @property
    def scars_markdown(self) -> Path:
        return self.root / "governance" / "SCARS.md"

    @property
    def modules_file(self) -> Path:
        return self.root / "architecture" / "modules.json"

    @property
    def contracts_file(self) -> Path:
        return self.root / "architecture" / "api_contracts.json"

    @property
    def symbols_file(self) -> Path:
        return self.root / "index" / "symbols.json"

    @property
    def ownership_file(self) -> Path:
        return self.root / "index" / "ownership.json"

    @property
    def test_map_file(self) -> Path:
        return self.root / "index" / "test_map.json"

    @property
    def runtime_dir(self) -> Path:
        return self.root / "runtime"

    @property
    def state_file(self) -> Path:
        return self.runtime_dir / "state.json"

    @property
    def task_graph_file(self) -> Path:
        return self.runtime_dir / "TASK_GRAPH.json"

    @property
    def decisions_log(self) -> Path:
        return self.runtime_dir / "decisions.jsonl"

    @property
    def scars_log(self) -> Path:
        return self.runtime_dir / "scars.jsonl"

    @property
    def audit_log(self) -> Path:
        return self.runtime_dir / "audit.jsonl"

    @property
    def merge_decisions_log(self) -> Path:
        return self.runtime_dir / "merge-decisions.jsonl"

    @property
    def escalations_file(self) -> Path:
        return self.runtime_dir / "escalations.json"

    @property
    def dispatches_dir(self) -> Path:
        return self.runtime_dir / "dispatches"

    @property
    def checkpoints_dir(self) -> Path:
        return self.root / "checkpoints"

    @property
    def quarantine_dir(self) -> Path:
        return self.checkpoints_dir / "quarantine"

    def coordination_files(self) -> list[Path]:
        return [self.state_file, self.task_graph_file]

    def ensure_layout(self) -> None:
        for directory in (
            self.mission_file.parent,
            self.root / "plans",
            self.state_markdown.parent,
            self.modules_file.parent,
            self.symbols_file.parent,
            self.runtime_dir,
            self.dispatches_dir,
            self.checkpoints_dir,
            self.quarantine_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.repo_root).as_posix()
        except ValueError:
            return str(path)

    # Primitives

    @classmethod
    def write_text(cls, path: Path, content: str) -> None:
        cls.write_bytes(path, content.encode("utf-8"))

    @staticmethod
    def write_bytes(path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(temp_name, path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except FileNotFoundError:
                pass
            raise StateError(f"Could not write {path}: {exc}") from exc

    @staticmethod
    def read_text(path: Path, default: str = "") -> str:
        if not path.exists():
            return default
        return path.read_text(encoding="utf-8", errors="replace")

    def write_json(self, path: Path, payload: Any) -> None:
        self.write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")

    def read_json(self, path: Path, default: Any = None) -> Any:
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateError(f"Corrupt JSON document {self.relative(path)}: {exc}") from exc

    def read_jsonl(self, path: Path) -> list[dict[str, Any]]:
        if not path.exists():
            return []
        records: list[dict[str, Any]] = []
        for line_number, line in enumerate(
            path.read_text(encoding="utf-8").splitlines(), start=1
        ):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(
                    "Skipping unreadable line %d in %s", line_number, self.relative(path)
                )
                continue
            if isinstance(record, dict):
                records.append(record)
        return records

    def append_jsonl(self, path: Path, record: dict[str, Any]) -> None:
        existing = self.read_text(path)
        if existing and not existing.endswith("\n"):
            existing += "\n"
        self.write_text(path, existing + json.dumps(record, ensure_ascii=False) + "\n")

    def append_audit(self, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("at", utcnow_iso())
        self.append_jsonl(self.audit_log, payload)

    def read_audit(self) -> list[dict[str, Any]]:
        return self.read_jsonl(self.audit_log)
