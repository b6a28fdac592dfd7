from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Literal

from governor.errors import StateError
from governor.models import utcnow_iso
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.state.scars")

ScarCategory = Literal[
    "logic", "integration", "performance", "security", "ux", "data", "test", "other"
]
SCAR_CATEGORIES: tuple[str, ...] = (
    "logic",
    "integration",
    "performance",
    "security",
    "ux",
    "data",
    "test",
    "other",
)
RULES_HEADING = "## Active Prevention Rules"


@dataclass(slots=True)
class Scar:
    id: str
    task_id: str
    category: ScarCategory
    description: str
    root_cause: str
    resolution: str
    prevention_rule: str
    rollback_ref: str
    confirmed_by: str
    files_affected: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "category": self.category,
            "description": self.description,
            "root_cause": self.root_cause,
            "resolution": self.resolution,
            "prevention_rule": self.prevention_rule,
            "files_affected": list(self.files_affected),
            "rollback_ref": self.rollback_ref,
            "confirmed_by": self.confirmed_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Scar:
        category = data.get("category", "other")
        return cls(
            id=str(data.get("id", "")),
            task_id=str(data.get("task_id", "")),
            category=category if category in SCAR_CATEGORIES else "other",
            description=str(data.get("description", "")),
            root_cause=str(data.get("root_cause", "")),
            resolution=str(data.get("resolution", "")),
            prevention_rule=str(data.get("prevention_rule", "")),
            files_affected=[str(item) for item in data.get("files_affected", [])],
            rollback_ref=str(data.get("rollback_ref", "")),
            confirmed_by=str(data.get("confirmed_by", "")),
            timestamp=str(data.get("timestamp") or utcnow_iso()),
        )


def _cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


class ScarStore:
    """Register of confirmed failures and the prevention rules they produced.

    Scars are never deleted. Consolidation only changes which rules are
    listed as active; the log keeps every entry.
    """

    def __init__(self, store: ProjectStore) -> None:
        self.store = store

    def all(self) -> list[Scar]:
        return [Scar.from_dict(item) for item in self.store.read_jsonl(self.store.scars_log)]

    def record(
        self,
        *,
        task_id: str,
        category: str,
        description: str,
        root_cause: str,
        resolution: str,
        prevention_rule: str,
        rollback_ref: str,
        confirmed_by: str,
        files_affected: list[str] | None = None,
    ) -> Scar:
        if not confirmed_by.strip():
            raise StateError("A scar needs a human confirmation (confirmed_by).", task_id=task_id)
        if not rollback_ref.strip():
            raise StateError(
                "A scar must reference the rollback it was captured from.", task_id=task_id
            )
        if category not in SCAR_CATEGORIES:
            raise StateError(
                f"Unknown scar category '{category}'. "
                f"Expected one of: {', '.join(SCAR_CATEGORIES)}.",
                task_id=task_id,
            )
        if not prevention_rule.strip():
            raise StateError("A scar must state a prevention rule.", task_id=task_id)

        scar = Scar(
            id=f"scar-{secrets.token_hex(4)}",
            task_id=task_id,
            category=category,  # type: ignore[arg-type]
            description=description,
            root_cause=root_cause,
            resolution=resolution,
            prevention_rule=prevention_rule.strip(),
            rollback_ref=rollback_ref,
            confirmed_by=confirmed_by,
            files_affected=list(files_affected or []),
        )
        self.store.append_jsonl(self.store.scars_log, scar.to_dict())
        logger.info("Recorded %s scar %s for task %s", scar.category, scar.id, task_id)
        self._write_markdown(self.prevention_rules())
        return scar

    def prevention_rules(self) -> list[Scar]:
        """Newest first, one entry per distinct rule text."""
        seen: set[str] = set()
        rules: list[Scar] = []
        for scar in reversed(self.all()):
            key = scar.prevention_rule.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            rules.append(scar)
        return rules

    def consolidate(self) -> dict[str, Scar]:
        latest: dict[str, Scar] = {}
        for scar in self.all():
            latest[scar.category] = scar
        self._write_markdown([latest[name] for name in SCAR_CATEGORIES if name in latest])
        return latest

    def _write_markdown(self, active: list[Scar]) -> None:
        lines = [
            "# Scars",
            "",
            RULES_HEADING,
            "",
            "| Category | Rule | Source | Since |",
            "|----------|------|--------|-------|",
        ]
        for scar in active:
            lines.append(
                f"| {scar.category} | {_cell(scar.prevention_rule)} | {scar.id} "
                f"| {scar.timestamp[:10]} |"
            )
        lines.extend(
            [
                "",
                "## Scar Log",
                "",
                "| ID | Date | Task | Category | Description | Root Cause | Resolution "
                "| Rollback | Confirmed By |",
                "|----|------|------|----------|-------------|------------|------------"
                "|----------|--------------|",
            ]
        )
        for scar in self.all():
            lines.append(
                f"| {scar.id} | {scar.timestamp[:10]} | {scar.task_id} | {scar.category} "
                f"| {_cell(scar.description)} | {_cell(scar.root_cause)} "
                f"| {_cell(scar.resolution)} | {scar.rollback_ref} | {_cell(scar.confirmed_by)} |"
            )
        self.store.write_text(self.store.scars_markdown, "\n".join(lines) + "\n")
