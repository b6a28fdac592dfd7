from __future__ import annotations

import logging
import secrets

from governor.errors import VerificationFlagFalse
from governor.models import (
    FLAG_LABELS,
    VERIFICATION_FLAGS,
    DecisionReason,
    MergeDecision,
    VerificationResult,
)
from governor.state.store import ProjectStore

logger = logging.getLogger("governor.judge")


def _finding_text(message: str, path: str | None) -> str:
    return f"{path}: {message}" if path else message


class MergeJudge:
    """Reduces a six-flag verification result to one merge decision.

    Approval requires every flag to be true. Advisory and info findings are
    carried as notes and never change the verdict.
    """

    def __init__(self, store: ProjectStore | None = None) -> None:
        self.store = store

    @staticmethod
    def structural_problems(result: VerificationResult) -> list[str]:
        problems: list[str] = []
        if not result.task_id.strip():
            problems.append("verification result does not name a task")
        flags = result.flags()
        for name, value in flags.items():
            if value is None:
                problems.append(f"flag '{name}' was not reported")

        for gap in result.gaps:
            if gap.flag not in VERIFICATION_FLAGS:
                problems.append(f"gap '{gap.truth}' refers to unknown flag '{gap.flag}'")
                continue
            if not gap.reason.strip() and not gap.evidence():
                problems.append(f"gap '{gap.truth}' declares a failed truth without evidence")
            if gap.status == "failed" and flags.get(gap.flag) is True:
                problems.append(
                    f"flag '{gap.flag}' is true but gap '{gap.truth}' records it as failed"
                )

        for finding in result.findings:
            if finding.flag not in VERIFICATION_FLAGS:
                problems.append(
                    f"finding '{finding.message}' refers to unknown flag '{finding.flag}'"
                )
                continue
            if finding.severity == "blocking" and flags.get(finding.flag) is True:
                problems.append(
                    f"flag '{finding.flag}' is true but carries blocking finding "
                    f"'{finding.message}'"
                )
        return problems

    @staticmethod
    def _reason_for(flag: str, result: VerificationResult) -> DecisionReason:
        evidence: list[str] = []
        messages: list[str] = []
        for gap in result.gaps:
            if gap.flag != flag:
                continue
            if gap.reason:
                messages.append(f"{gap.truth}: {gap.reason}" if gap.truth else gap.reason)
            evidence.extend(gap.evidence())
        for finding in result.findings:
            if finding.flag == flag and finding.severity == "blocking":
                text = _finding_text(finding.message, finding.path)
                messages.append(text)
                evidence.append(text)
        if not messages and evidence:
            messages.append(evidence[0])
        if not messages:
            messages.append("reported false with no gap or finding attached")
        return DecisionReason(
            flag=flag,
            message=f"{FLAG_LABELS[flag]} failed: " + "; ".join(messages),
            evidence=list(dict.fromkeys(evidence)),
        )

    def evaluate(self, result: VerificationResult) -> MergeDecision:
        flags = result.flags()
        notes = tuple(
            f"[{finding.severity}] {finding.flag}: "
            f"{_finding_text(finding.message, finding.path)}"
            for finding in result.findings
            if finding.severity != "blocking"
        )
        decision_id = f"md-{secrets.token_hex(4)}"

        problems = self.structural_problems(result)
        if problems:
            return MergeDecision(
                id=decision_id,
                task_id=result.task_id,
                verdict="needs-revision",
                flags=flags,
                reasons=tuple(
                    DecisionReason(flag="structure", message=problem) for problem in problems
                ),
                notes=notes,
            )

        failing = [name for name in VERIFICATION_FLAGS if flags[name] is False]
        if not failing:
            return MergeDecision(
                id=decision_id,
                task_id=result.task_id,
                verdict="approved",
                flags=flags,
                notes=notes,
            )
        return MergeDecision(
            id=decision_id,
            task_id=result.task_id,
            verdict="rejected",
            flags=flags,
            reasons=tuple(self._reason_for(name, result) for name in failing),
            notes=notes,
        )

    @staticmethod
    def rejections(decision: MergeDecision) -> list[VerificationFlagFalse]:
        return [
            VerificationFlagFalse(reason.flag, reason.evidence or [reason.message])
            for reason in decision.reasons
            if decision.verdict == "rejected"
        ]

    def record(self, decision: MergeDecision) -> None:
        logger.info(
            "Merge decision %s for %s: %s", decision.id, decision.task_id, decision.verdict
        )
        if self.store is not None:
            self.store.append_jsonl(self.store.merge_decisions_log, decision.to_dict())
