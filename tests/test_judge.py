import itertools
from pathlib import Path

import pytest

from governor.judge import MergeJudge
from governor.models import VERIFICATION_FLAGS, Finding, VerificationGap, VerificationResult
from governor.state import ProjectStore


def _result(**flags: bool) -> VerificationResult:
    values = {name: True for name in VERIFICATION_FLAGS}
    values.update(flags)
    return VerificationResult(task_id="t1", **values)


def test_all_true_flags_are_approved() -> None:
    decision = MergeJudge().evaluate(_result())

    assert decision.verdict == "approved"
    assert decision.approved
    assert decision.reasons == ()


@pytest.mark.parametrize("flag", VERIFICATION_FLAGS)
def test_any_single_false_flag_is_rejected_with_one_reason(flag: str) -> None:
    decision = MergeJudge().evaluate(_result(**{flag: False}))

    assert decision.verdict == "rejected"
    assert len(decision.reasons) == 1
    assert decision.reasons[0].flag == flag
    assert "no gap or finding attached" in decision.reasons[0].message


def test_verdict_is_total_over_flag_combinations() -> None:
    judge = MergeJudge()
    for combination in itertools.product([True, False], repeat=len(VERIFICATION_FLAGS)):
        flags = dict(zip(VERIFICATION_FLAGS, combination))
        decision = judge.evaluate(_result(**flags))
        expected = "approved" if all(combination) else "rejected"
        assert decision.verdict == expected
        assert len(decision.reasons) == combination.count(False)


def test_file_existence_failure_cites_the_stub_artifact() -> None:
    result = _result(files_ok=False)
    result.gaps.append(
        VerificationGap(
            truth="Invoice endpoint exists",
            flag="files_ok",
            reason="handler is a stub",
            artifacts=[{"path": "src/billing/api.py", "issue": "returns NotImplemented"}],
        )
    )

    decision = MergeJudge().evaluate(result)

    assert decision.verdict == "rejected"
    assert len(decision.reasons) == 1
    reason = decision.reasons[0]
    assert reason.flag == "files_ok"
    assert reason.message.startswith("file existence and substance failed")
    assert "src/billing/api.py: returns NotImplemented" in reason.evidence
    errors = MergeJudge.rejections(decision)
    assert [error.flag for error in errors] == ["files_ok"]


def test_advisory_findings_become_notes_without_changing_verdict() -> None:
    result = _result()
    result.findings.append(
        Finding(flag="adversarial_ok", severity="advisory", message="Consider rate limiting")
    )
    result.findings.append(
        Finding(flag="goal_ok", severity="info", message="Wired via router", path="src/app.py")
    )

    decision = MergeJudge().evaluate(result)

    assert decision.verdict == "approved"
    assert decision.notes == (
        "[advisory] adversarial_ok: Consider rate limiting",
        "[info] goal_ok: src/app.py: Wired via router",
    )


def test_blocking_finding_is_cited_for_false_flag() -> None:
    result = _result(adversarial_ok=False)
    result.findings.append(
        Finding(flag="adversarial_ok", severity="blocking", message="SQL built by concatenation")
    )

    decision = MergeJudge().evaluate(result)

    assert decision.verdict == "rejected"
    assert "SQL built by concatenation" in decision.reasons[0].message


@pytest.mark.parametrize(
    "mutate, fragment",
    [
        (lambda result: setattr(result, "goal_ok", None), "was not reported"),
        (lambda result: setattr(result, "task_id", " "), "does not name a task"),
        (
            lambda result: result.gaps.append(VerificationGap(truth="x", flag="speed_ok")),
            "unknown flag",
        ),
        (
            lambda result: result.gaps.append(
                VerificationGap(truth="Login works", flag="goal_ok", reason="never called")
            ),
            "records it as failed",
        ),
        (
            lambda result: result.findings.append(
                Finding(flag="files_ok", severity="blocking", message="empty file")
            ),
            "carries blocking finding",
        ),
    ],
)
def test_structurally_inconsistent_results_need_revision(mutate, fragment: str) -> None:
    result = _result()
    mutate(result)

    decision = MergeJudge().evaluate(result)

    assert decision.verdict == "needs-revision"
    assert any(fragment in reason.message for reason in decision.reasons)
    assert MergeJudge.rejections(decision) == []


def test_gap_without_evidence_needs_revision() -> None:
    result = _result(files_ok=False)
    result.gaps.append(VerificationGap(truth="Something exists", flag="files_ok"))

    decision = MergeJudge().evaluate(result)

    assert decision.verdict == "needs-revision"
    assert "without evidence" in decision.reasons[0].message


def test_decisions_are_recorded(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    judge = MergeJudge(store)

    judge.record(judge.evaluate(_result(browser_ok=False)))

    records = store.read_jsonl(store.merge_decisions_log)
    assert len(records) == 1
    assert records[0]["verdict"] == "rejected"
    assert records[0]["reasons"][0]["flag"] == "browser_ok"


def test_result_payload_with_non_boolean_flag_is_treated_as_unreported() -> None:
    payload = _result().to_dict()
    payload["integration_ok"] = "yes"

    decision = MergeJudge().evaluate(VerificationResult.from_dict(payload))

    assert decision.verdict == "needs-revision"


def test_null_evidence_lists_are_read_as_empty() -> None:
    payload = _result(files_ok=False).to_dict()
    payload.update(gaps=None, findings=None, artifacts=None)

    result = VerificationResult.from_dict(payload)
    decision = MergeJudge().evaluate(result)

    assert (result.gaps, result.findings, result.artifacts) == ([], [], [])
    assert decision.verdict == "rejected"
    assert "no gap or finding attached" in decision.reasons[0].message


def test_gap_with_null_artifacts_needs_revision() -> None:
    payload = _result(files_ok=False).to_dict()
    payload["gaps"] = [
        {
            "truth": "Stub removed",
            "flag": "files_ok",
            "reason": None,
            "artifacts": None,
            "missing": None,
        }
    ]

    decision = MergeJudge().evaluate(VerificationResult.from_dict(payload))

    assert decision.verdict == "needs-revision"
    assert any("without evidence" in reason.message for reason in decision.reasons)
