from pathlib import Path

import pytest

from governor.errors import EscalationLimitReached
from governor.escalation import EscalationTracker
from governor.models import FailureRecord
from governor.state import ProjectStore


def _failure(attempt: int) -> FailureRecord:
    return FailureRecord(
        kind="verification_rejected", message=f"attempt {attempt}", attempt=attempt
    )


def test_failures_accumulate_until_the_limit(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path))

    assert tracker.record_failure("t1", _failure(1)) == 1
    assert tracker.record_failure("t1", _failure(2)) == 2
    assert not tracker.limit_reached("t1")
    assert tracker.record_failure("t1", _failure(3)) == 3
    assert tracker.limit_reached("t1")


def test_success_resets_the_consecutive_count(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path))
    tracker.record_failure("t1", _failure(1))
    tracker.record_failure("t1", _failure(2))

    tracker.record_success("t1")

    assert tracker.failures("t1") == []
    assert tracker.record_failure("t1", _failure(3)) == 1


def test_escalation_record_holds_the_failures_and_persists(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    tracker = EscalationTracker(store)
    for attempt in range(1, 4):
        tracker.record_failure("t1", _failure(attempt))

    record = tracker.escalate_task("t1")
    again = tracker.escalate_task("t1")

    assert again.id == record.id
    assert [item["message"] for item in record.failures] == [
        "attempt 1",
        "attempt 2",
        "attempt 3",
    ]
    reloaded = EscalationTracker(store)
    assert reloaded.limit_reached("t1")
    assert [item.id for item in reloaded.records()] == [record.id]


def test_success_does_not_clear_an_escalated_task(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path), max_consecutive_failures=1)
    tracker.record_failure("t1", _failure(1))
    tracker.escalate_task("t1")

    tracker.record_success("t1")

    assert tracker.limit_reached("t1")


def test_clear_task_resolves_records(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path), max_consecutive_failures=1)
    tracker.record_failure("t1", _failure(1))
    tracker.escalate_task("t1")

    assert tracker.clear_task("t1") is True

    assert not tracker.limit_reached("t1")
    assert tracker.records() == []
    resolved = tracker.records(include_resolved=True)
    assert len(resolved) == 1 and resolved[0].resolved_at is not None


def test_gap_closure_allows_three_iterations_then_escalates(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path))

    assert [tracker.begin_gap_closure("p1") for _ in range(3)] == [1, 2, 3]
    with pytest.raises(EscalationLimitReached) as excinfo:
        tracker.begin_gap_closure("p1")

    assert excinfo.value.record["kind"] == "gap_closure_limit"
    assert excinfo.value.record["phase"] == "p1"
    with pytest.raises(EscalationLimitReached):
        tracker.begin_gap_closure("p1")
    assert len(tracker.records()) == 1
    # Other phases keep their own budget.
    assert tracker.begin_gap_closure("p2") == 1


def test_reset_gap_closure_restores_the_budget(tmp_path: Path) -> None:
    tracker = EscalationTracker(ProjectStore(tmp_path), max_gap_closure_iterations=1)
    tracker.begin_gap_closure("p1")
    with pytest.raises(EscalationLimitReached):
        tracker.begin_gap_closure("p1")

    tracker.reset_gap_closure("p1")

    assert tracker.gap_closure_iterations("p1") == 0
    assert tracker.begin_gap_closure("p1") == 1
    assert tracker.records() == []
