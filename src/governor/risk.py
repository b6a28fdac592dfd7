from __future__ import annotations

import re
from dataclasses import dataclass

from governor.models import RISK_TIERS, RiskTier, TaskGraph, TestMode

CRITICAL_KEYWORDS = (
    "migration",
    "alter table",
    "drop table",
    "drop column",
    "auth",
    "authentication",
    "authorization",
    "password",
    "secret",
    "encryption",
    "permission",
    "access control",
    "token",
    "jwt",
    "oauth",
    "irreversible",
    "destructive",
    "purge",
    "truncate",
)
HIGH_RISK_PATH_MARKERS = (
    "api_contracts",
    "data_models",
    "dependencies",
    "auth",
    "middleware/auth",
    "schema",
    "migration",
    ".env",
)
CRITICAL_FILE_PATTERN = re.compile(r"(migration|schema)|\.(sql|prisma)$")
SKIP_TEST_FILE_PATTERN = re.compile(r"\.(md|json|ya?ml|toml|env|txt)$")
MEDIUM_RISK_WORDS = ("endpoint", "api", "route", "config", "configuration")


def _mentions(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


def calculate_risk(description: str, files: list[str]) -> RiskTier:
    text = description.lower()
    paths = [path.lower() for path in files]

    if any(_mentions(text, keyword) for keyword in CRITICAL_KEYWORDS):
        return "critical"
    if any(CRITICAL_FILE_PATTERN.search(path) for path in paths):
        return "critical"

    if len(paths) >= 5:
        return "high"
    if any(marker in path for path in paths for marker in HIGH_RISK_PATH_MARKERS):
        return "high"
    if _mentions(text, "refactor") and len(paths) >= 3:
        return "high"

    if len(paths) >= 2:
        return "medium"
    if any(_mentions(text, word) for word in MEDIUM_RISK_WORDS):
        return "medium"
    return "low"


def suggest_test_mode(description: str, files: list[str]) -> TestMode:
    text = description.lower()
    if files and all(
        SKIP_TEST_FILE_PATTERN.search(path.lower()) or "generated" in path.lower()
        for path in files
    ):
        return "skip"
    if any(_mentions(text, word) for word in ("documentation", "readme")) or "config only" in text:
        return "skip"
    if any(_mentions(text, word) for word in ("bug", "fix", "regression", "feature")):
        return "hard"
    return "standard"


@dataclass(slots=True)
class RiskWarning:
    task_id: str
    declared: str
    assessed: str

    def __str__(self) -> str:
        return (
            f"{self.task_id}: declared risk '{self.declared}' is below the assessed "
            f"risk '{self.assessed}'"
        )


def underrated_tasks(graph: TaskGraph) -> list[RiskWarning]:
    warnings: list[RiskWarning] = []
    for task in graph.tasks:
        assessed = calculate_risk(task.description, task.files)
        if RISK_TIERS.index(task.risk_tier) < RISK_TIERS.index(assessed):
            warnings.append(RiskWarning(task.id, task.risk_tier, assessed))
    return warnings
