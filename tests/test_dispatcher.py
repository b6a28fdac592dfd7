import asyncio
import json
import sys
from pathlib import Path
from typing import Any

import pytest

from governor.config import GovernorConfig
from governor.context import ContextPacketBuilder
from governor.dispatch import (
    CommandRuntime,
    ProcessSupervisor,
    WorkerDispatcher,
    build_runtime,
    render_prompt,
)
from governor.dispatch.runtimes import ClaudeRuntime, CodexRuntime
from governor.errors import WorkerLaunchError
from governor.models import Task, TaskGraph
from governor.state import ProjectStore

FAKE_WORKER = """
import json, os, sys, time

mode = sys.argv[1]
prompt = open(sys.argv[2], encoding="utf-8").read()
task_id = os.environ["GOVERNOR_TASK_ID"]
if mode == "complete":
    payload = {"filesModified": ["src/a.py", "src/extra.py"], "summary": f"did {task_id}"}
    print("thinking")
    print("<<COMPLETE>>")
    print(json.dumps(payload))
    print("<</COMPLETE>>")
elif mode == "blocked":
    print('<<BLOCKED>>{"reason": "need credentials"}<</BLOCKED>>')
elif mode == "garbled":
    print("<<COMPLETE>>{not json<</COMPLETE>>")
elif mode == "silent":
    print("I forgot the protocol")
    sys.exit(1)
elif mode == "prompt":
    ok = "## Context Packet" in prompt and os.path.exists(os.environ["GOVERNOR_CONTEXT_FILE"])
    print("<<COMPLETE>>" + json.dumps({"summary": "prompt ok" if ok else "bad"}) + "<</COMPLETE>>")
elif mode == "longline":
    print("x" * 200000)
    print("<<COMPLETE>>" + json.dumps({"summary": "long ok"}) + "<</COMPLETE>>")
elif mode == "hang":
    time.sleep(30)
"""


def _dispatcher(
    tmp_path: Path, mode: str, events: list[dict[str, Any]] | None = None, timeout: float = 30.0
) -> tuple[WorkerDispatcher, ProjectStore]:
    script = tmp_path / "fake_worker.py"
    script.write_text(FAKE_WORKER, encoding="utf-8")
    config = GovernorConfig.default()
    config.dispatch.runtime = "command"
    config.dispatch.command = [sys.executable, str(script), mode, "{prompt_file}"]
    config.dispatch.timeout_seconds = timeout
    config.dispatch.grace_seconds = 0.5
    store = ProjectStore(tmp_path)
    dispatcher = WorkerDispatcher(
        store,
        config,
        build_runtime(config.dispatch),
        event_hook=events.append if events is not None else None,
    )
    return dispatcher, store


def _task() -> tuple[Task, TaskGraph]:
    task = Task(id="t1", description="Write a", wave=1, files=["src/a.py"])
    return task, TaskGraph(tasks=[task])


def test_completed_dispatch_persists_record_and_flags_undeclared_files(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    dispatcher, store = _dispatcher(tmp_path, "complete", events)
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "completed"
    assert result.message == "did t1"
    assert result.files_modified == ["src/a.py", "src/extra.py"]
    assert result.undeclared_files == ["src/extra.py"]
    record_dir = store.repo_root / result.record_dir
    for name in ("context.json", "prompt.txt", "stdout.txt", "stderr.txt", "result.json"):
        assert (record_dir / name).exists()
    saved = json.loads((record_dir / "result.json").read_text(encoding="utf-8"))
    assert saved["status"] == "completed"
    assert record_dir.parent == store.dispatches_dir / "t1"
    assert [event["event"] for event in events] == ["dispatch_started", "dispatch_finished"]


def test_worker_receives_prompt_and_context_files(tmp_path: Path) -> None:
    dispatcher, _ = _dispatcher(tmp_path, "prompt")
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "completed"
    assert result.message == "prompt ok"
    # Without filesModified the declared files are assumed.
    assert result.files_modified == ["src/a.py"]


def test_blocked_dispatch(tmp_path: Path) -> None:
    dispatcher, _ = _dispatcher(tmp_path, "blocked")
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "blocked"
    assert result.message == "need credentials"
    assert result.failure is None


def test_unparseable_payload_fails_with_specific_message(tmp_path: Path) -> None:
    dispatcher, _ = _dispatcher(tmp_path, "garbled")
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph, attempt=2))

    assert result.status == "failed"
    assert "tag found, payload unparseable" in result.message
    assert result.failure is not None
    assert result.failure.kind == "malformed_signal"
    assert result.failure.attempt == 2


def test_missing_signal_fails_with_output_tail(tmp_path: Path) -> None:
    dispatcher, _ = _dispatcher(tmp_path, "silent")
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "failed"
    assert result.failure is not None
    assert result.failure.kind == "no_signal"
    assert "I forgot the protocol" in result.failure.details["tail"]
    assert result.exit_code == 1


def test_timeout_fails_only_this_dispatch(tmp_path: Path) -> None:
    dispatcher, _ = _dispatcher(tmp_path, "hang", timeout=1.0)
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "failed"
    assert result.failure is not None
    assert result.failure.kind == "timeout"


def test_render_prompt_lists_protocol_and_files(tmp_path: Path) -> None:
    store = ProjectStore(tmp_path)
    task, graph = _task()
    packet = asyncio.run(ContextPacketBuilder(store, GovernorConfig.default()).build(task, graph))

    prompt = render_prompt(task, packet)

    assert "Files to modify: src/a.py" in prompt
    assert "<<COMPLETE>>" in prompt and "<</BLOCKED>>" in prompt
    assert '"task_id": "t1"' in prompt


def test_command_runtime_substitutes_placeholders() -> None:
    runtime = CommandRuntime(["worker", "--file", "{prompt_file}", "--text={prompt}"])

    command = runtime.build_command("hello", Path("/tmp/prompt.txt"))

    assert command == ["worker", "--file", "/tmp/prompt.txt", "--text=hello"]
    with pytest.raises(WorkerLaunchError):
        CommandRuntime([])


def test_claude_runtime_prefers_final_result_event() -> None:
    raw = "\n".join(
        [
            json.dumps({"type": "assistant", "message": {"content": [{"text": "<<COMPLETE>>"}]}}),
            json.dumps({"type": "result", "result": "final text"}),
        ]
    )

    assert ClaudeRuntime().extract_text(raw) == "final text"


def test_codex_runtime_skips_reasoning_events() -> None:
    raw = "\n".join(
        [
            json.dumps({"type": "item.completed", "item": {"type": "reasoning", "text": "hmm"}}),
            json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": "hi"}}),
        ]
    )

    assert CodexRuntime().extract_text(raw) == "hi"


def test_runtime_detection_honours_environment(monkeypatch) -> None:
    config = GovernorConfig.default()
    monkeypatch.setenv("GOVERNOR_RUNTIME", "codex")

    assert build_runtime(config.dispatch).name == "codex"


def test_lines_beyond_the_stream_limit_keep_the_signal(tmp_path: Path) -> None:
    dispatcher, store = _dispatcher(tmp_path, "longline")
    task, graph = _task()

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "completed"
    assert result.message == "long ok"
    stdout = (store.repo_root / result.record_dir / "stdout.txt").read_text(encoding="utf-8")
    assert "x" * 200000 in stdout


def test_unexpected_supervisor_error_still_persists_the_record(tmp_path: Path, monkeypatch) -> None:
    dispatcher, store = _dispatcher(tmp_path, "complete")
    task, graph = _task()

    async def _explode(self) -> None:
        raise RuntimeError("pipe vanished")

    monkeypatch.setattr(ProcessSupervisor, "run", _explode)

    result = asyncio.run(dispatcher.dispatch(task, graph))

    assert result.status == "failed"
    assert result.failure is not None
    assert result.failure.kind == "process_error"
    assert "pipe vanished" in result.message
    record_dir = store.repo_root / result.record_dir
    for name in ("stdout.txt", "stderr.txt", "result.json"):
        assert (record_dir / name).exists()
