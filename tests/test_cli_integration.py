import json
import subprocess
import sys
from pathlib import Path

from click.testing import CliRunner

from governor.cli import cli
from governor.config import load_config, save_config
from governor.graph import TaskGraphManager
from governor.models import Task, TaskGraph
from governor.state import ProjectStore

WORKER = """
import json, sys
if sys.argv[1] == "fail":
    print("no protocol here")
else:
    print("<<COMPLETE>>" + json.dumps({"summary": "worker done"}) + "<</COMPLETE>>")
"""


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "billing.py").write_text("RATE = 1\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "billing.py"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _init_project(runner: CliRunner, repo: Path, mode: str = "complete") -> None:
    result = runner.invoke(cli, ["init", "--runtime", "command", "--mission", "Ship billing"])
    assert result.exit_code == 0, result.output
    script = repo / "worker.py"
    script.write_text(WORKER, encoding="utf-8")
    config_path = repo / "governor.toml"
    config = load_config(config_path)
    config.dispatch.command = [sys.executable, str(script), mode, "{prompt_file}"]
    save_config(config_path, config)


def _save_graph(repo: Path, *tasks: Task) -> None:
    graph = TaskGraph(mission="Ship billing", current_phase="p1", tasks=list(tasks))
    TaskGraphManager(ProjectStore(repo)).save(graph)


def test_cli_end_to_end_flow(tmp_path: Path, monkeypatch) -> None:
    _init_git_repo(tmp_path)
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)
    assert ".governor/" in (tmp_path / ".gitignore").read_text(encoding="utf-8")
    assert load_config(tmp_path / "governor.toml").project.name == tmp_path.name
    _save_graph(
        tmp_path,
        Task(
            id="pay",
            description="Adjust billing rate",
            wave=1,
            phase="p1",
            risk_tier="high",
            files=["billing.py"],
        ),
        Task(id="notes", description="Write notes", wave=2, phase="p1", depends_on=["pay"]),
    )

    validated = runner.invoke(cli, ["validate"])
    assert validated.exit_code == 0, validated.output
    assert "Task graph OK: 2 task(s) across 2 wave(s)." in validated.output

    upcoming = runner.invoke(cli, ["next-wave"])
    assert upcoming.exit_code == 0, upcoming.output
    assert "Wave 1:" in upcoming.output
    assert "pay [high] Adjust billing rate" in upcoming.output

    (tmp_path / "billing.py").write_text("RATE = 2\n", encoding="utf-8")
    run = runner.invoke(cli, ["run"])
    assert run.exit_code == 0, run.output
    assert "Waves: 1, 2" in run.output
    assert "Completed: 2" in run.output
    assert "Checkpoint: cp-" in run.output

    done = runner.invoke(cli, ["next-wave"])
    assert "All tasks complete." in done.output

    status = runner.invoke(cli, ["status"])
    assert status.exit_code == 0, status.output
    payload = json.loads(status.output)
    assert payload["mission"] == "Ship billing"
    assert payload["loop_position"] == "complete"
    assert payload["tasks"]["completed"] == 2

    listed = runner.invoke(cli, ["checkpoints"])
    assert listed.exit_code == 0, listed.output
    checkpoint_id = listed.output.split()[0]
    assert checkpoint_id.startswith("cp-")

    (tmp_path / "billing.py").write_text("RATE = 'broken'\n", encoding="utf-8")
    rolled = runner.invoke(cli, ["rollback", checkpoint_id])
    assert rolled.exit_code == 0, rolled.output
    assert f"Rolled back to {checkpoint_id}" in rolled.output
    assert "Discarded changes saved to" in rolled.output
    assert (tmp_path / "billing.py").read_text(encoding="utf-8") == "RATE = 2\n"

    scar = runner.invoke(
        cli,
        [
            "scar",
            "pay",
            "--category",
            "logic",
            "--description",
            "Rate overwritten with a string",
            "--root-cause",
            "Unchecked input",
            "--resolution",
            "Rolled back",
            "--prevention-rule",
            "Validate numeric rates before writing",
            "--rollback-ref",
            checkpoint_id,
            "--confirmed-by",
            "reviewer",
        ],
    )
    assert scar.exit_code == 0, scar.output
    assert "Recorded scar-" in scar.output

    rules = runner.invoke(cli, ["scars"])
    assert "[logic] Validate numeric rates before writing" in rules.output

    audit = ProjectStore(tmp_path).read_audit()
    assert any(event.get("event") == "rollback" for event in audit)
    assert any(event.get("event") == "dispatch_finished" for event in audit)


def test_cli_escalates_repeatedly_failing_worker(tmp_path: Path, monkeypatch) -> None:
    _init_git_repo(tmp_path)
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path, mode="fail")
    _save_graph(tmp_path, Task(id="t1", description="Write notes", wave=1, phase="p1"))

    run = runner.invoke(cli, ["run"])
    assert run.exit_code == 0, run.output
    assert "Failed: 1" in run.output
    assert "Escalated: t1" in run.output

    open_records = runner.invoke(cli, ["escalations"])
    assert "open" in open_records.output
    assert "t1: Task t1 failed 3 consecutive time(s)" in open_records.output

    refused = runner.invoke(cli, ["dispatch", "t1"])
    assert refused.exit_code != 0
    assert "clear the escalation" in refused.output

    cleared = runner.invoke(cli, ["clear-escalation", "t1"])
    assert cleared.exit_code == 0, cleared.output
    assert "Cleared escalation for t1" in cleared.output
    assert "No open escalations." in runner.invoke(cli, ["escalations"]).output
    status = json.loads(runner.invoke(cli, ["status"]).output)
    assert status["tasks"]["pending"] == 1


def test_cli_judge_evaluates_and_applies_results(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)
    _save_graph(tmp_path, Task(id="t1", description="x", wave=1, status="completed"))
    result_file = tmp_path / "verification.json"
    result_file.write_text(
        json.dumps(
            {
                "task_id": "t1",
                "files_ok": False,
                "deterministic_ok": True,
                "goal_ok": True,
                "adversarial_ok": True,
                "integration_ok": True,
                "browser_ok": True,
                "gaps": [
                    {
                        "truth": "Rate handler exists",
                        "flag": "files_ok",
                        "reason": "stub",
                        "artifacts": [{"path": "billing.py", "issue": "empty body"}],
                    }
                ],
            }
        ),
        encoding="utf-8",
    )

    preview = runner.invoke(cli, ["judge", str(result_file)])
    assert preview.exit_code == 0, preview.output
    assert json.loads(preview.output)["verdict"] == "rejected"
    graph = TaskGraphManager(ProjectStore(tmp_path)).load()
    assert graph.require("t1").status == "completed"

    applied = runner.invoke(cli, ["judge", str(result_file), "--apply"])
    assert applied.exit_code == 0, applied.output
    decision = json.loads(applied.output)
    assert decision["reasons"][0]["evidence"] == ["billing.py: empty body"]
    graph = TaskGraphManager(ProjectStore(tmp_path)).load()
    assert graph.require("t1").status == "pending"


def test_cli_gap_closure_limit(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)

    for iteration in (1, 2, 3):
        result = runner.invoke(cli, ["gap-closure", "p1"])
        assert result.exit_code == 0, result.output
        assert f"Gap closure iteration {iteration}/3 for phase p1" in result.output

    refused = runner.invoke(cli, ["gap-closure", "p1"])
    assert refused.exit_code != 0
    assert "disabled" in refused.output
    assert "phase p1" in runner.invoke(cli, ["escalations"]).output

    reset = runner.invoke(cli, ["gap-closure", "p1", "--reset"])
    assert "Gap closure reset for phase p1" in reset.output
    assert "No open escalations." in runner.invoke(cli, ["escalations"]).output


def test_cli_rejects_invalid_graph(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)
    graph = TaskGraph(
        tasks=[
            Task(id="A", description="a", wave=1, depends_on=["B"]),
            Task(id="B", description="b", wave=2, depends_on=["A"]),
        ]
    )
    store = ProjectStore(tmp_path)
    store.write_json(store.task_graph_file, graph.to_dict())

    result = runner.invoke(cli, ["validate"])

    assert result.exit_code != 0
    assert "Error:" in result.output


def test_cli_reports_empty_checkpoint_list(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)

    result = runner.invoke(cli, ["checkpoints"])

    assert result.exit_code == 0
    assert "No checkpoints." in result.output


def test_cli_judge_accepts_null_evidence_fields(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    _init_project(runner, tmp_path)
    result_file = tmp_path / "verification.json"
    result_file.write_text(
        json.dumps({"task_id": "t1", "goal_ok": False, "gaps": None, "findings": None}),
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["judge", str(result_file)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["verdict"] == "needs-revision"
