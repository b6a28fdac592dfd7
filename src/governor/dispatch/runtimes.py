from __future__ import annotations

import json
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from governor.config import DispatchConfig
from governor.errors import WorkerLaunchError

logger = logging.getLogger("governor.dispatch.runtimes")

RUNTIME_ENV_VAR = "GOVERNOR_RUNTIME"
DETECTION_ORDER = ("claude", "codex", "opencode", "gemini")


def _appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


def iter_json_events(raw: str) -> list[dict[str, Any] | str]:
    """Split line-delimited JSON output into events, keeping non-JSON lines as text."""
    items: list[dict[str, Any] | str] = []
    parse_buffer = ""
    for raw_line in raw.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if _appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            items.append(line)
            continue
        items.append(event if isinstance(event, dict) else line)
    if parse_buffer:
        items.append(parse_buffer)
    return items


def extract_event_text(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)
    delta = event.get("delta")
    if isinstance(delta, str):
        return delta
    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return extract_event_text(message)
    item = event.get("item")
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return item["text"]
    return ""


class WorkerRuntime(ABC):
    """A worker CLI: how to invoke it and how to read its output."""

    name = "runtime"

    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or self.name

    @abstractmethod
    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        """Return the argv used to run one dispatch."""

    def extract_text(self, raw_output: str) -> str:
        return raw_output


class ClaudeRuntime(WorkerRuntime):
    name = "claude"

    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        return [
            self.binary,
            "--print",
            "--output-format",
            "stream-json",
            "--verbose",
            "--allowedTools",
            "Bash,Read,Edit,Write,Glob,Grep,MultiEdit",
            "--permission-mode",
            "acceptEdits",
            "-p",
            prompt,
        ]

    def extract_text(self, raw_output: str) -> str:
        events = iter_json_events(raw_output)
        # The closing "result" event repeats the assistant's final text.
        for event in events:
            if isinstance(event, dict) and event.get("type") == "result":
                result = event.get("result")
                if isinstance(result, str):
                    return result
        parts: list[str] = []
        for event in events:
            if isinstance(event, str):
                parts.append(event)
            elif event.get("type") in {None, "assistant", "text", "content_block_delta"}:
                parts.append(extract_event_text(event))
        return "\n".join(part for part in parts if part)


class CodexRuntime(WorkerRuntime):
    name = "codex"

    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        return [self.binary, "exec", "--full-auto", "--json", prompt]

    def extract_text(self, raw_output: str) -> str:
        parts: list[str] = []
        for event in iter_json_events(raw_output):
            if isinstance(event, str):
                parts.append(event)
                continue
            event_type = str(event.get("type", ""))
            if "user" in event_type or "reasoning" in event_type:
                continue
            item = event.get("item")
            if isinstance(item, dict) and item.get("type") not in {None, "agent_message"}:
                continue
            parts.append(extract_event_text(event))
        return "\n".join(part for part in parts if part)


class GeminiRuntime(WorkerRuntime):
    name = "gemini"

    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        return [self.binary, "--yolo", "-p", prompt]


class OpenCodeRuntime(WorkerRuntime):
    name = "opencode"

    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        return [self.binary, "run", prompt]


class CommandRuntime(WorkerRuntime):
    """Arbitrary argv template; ``{prompt}`` and ``{prompt_file}`` are substituted."""

    name = "command"

    def __init__(self, command: list[str]) -> None:
        if not command:
            raise WorkerLaunchError("The 'command' runtime needs a non-empty dispatch.command.")
        super().__init__(command[0])
        self.template = list(command)

    def build_command(self, prompt: str, prompt_file: Path) -> list[str]:
        return [
            part.replace("{prompt_file}", str(prompt_file)).replace("{prompt}", prompt)
            for part in self.template
        ]


_RUNTIMES: dict[str, type[WorkerRuntime]] = {
    "claude": ClaudeRuntime,
    "codex": CodexRuntime,
    "gemini": GeminiRuntime,
    "opencode": OpenCodeRuntime,
}


def detect_runtime_name() -> str:
    preferred = os.environ.get(RUNTIME_ENV_VAR, "").strip()
    if preferred in _RUNTIMES:
        return preferred
    for name in DETECTION_ORDER:
        if shutil.which(name):
            return name
    raise WorkerLaunchError(
        "No worker runtime found on PATH (looked for " + ", ".join(DETECTION_ORDER) + ")."
    )


def build_runtime(config: DispatchConfig) -> WorkerRuntime:
    if config.runtime == "command":
        return CommandRuntime(config.command)
    name = detect_runtime_name() if config.runtime == "auto" else config.runtime
    if name not in _RUNTIMES:
        raise WorkerLaunchError(f"Unknown worker runtime: {name}")
    logger.debug("Using %s worker runtime", name)
    return _RUNTIMES[name](config.binary or None)
