from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Literal

from governor.errors import MalformedSignalError, NoSignalError

SignalName = Literal["COMPLETE", "BLOCKED"]

COMPLETE_OPEN = "<<COMPLETE>>"
COMPLETE_CLOSE = "<</COMPLETE>>"
BLOCKED_OPEN = "<<BLOCKED>>"
BLOCKED_CLOSE = "<</BLOCKED>>"

_TOKEN_PATTERN = re.compile(r"<<(/?)(COMPLETE|BLOCKED)>>")
DEFAULT_TAIL_CHARS = 500


@dataclass(slots=True, frozen=True)
class Token:
    name: SignalName
    closing: bool
    start: int
    end: int


@dataclass(slots=True)
class WorkerSignal:
    status: Literal["completed", "blocked"]
    summary: str = ""
    reason: str = ""
    files_modified: list[str] = field(default_factory=list)


def tokenize(text: str) -> list[Token]:
    return [
        Token(
            name=match.group(2),  # type: ignore[arg-type]
            closing=bool(match.group(1)),
            start=match.start(),
            end=match.end(),
        )
        for match in _TOKEN_PATTERN.finditer(text)
    ]


def output_tail(text: str, limit: int = DEFAULT_TAIL_CHARS) -> str:
    return text[-limit:] if limit > 0 else ""


def _frame(text: str, tokens: list[Token]) -> tuple[SignalName, str]:
    """Return the single signal block, rejecting any ambiguous framing."""
    if len(tokens) != 2:
        names = ", ".join(("</" if token.closing else "<") + token.name + ">" for token in tokens)
        if len(tokens) > 2:
            raise MalformedSignalError(
                f"ambiguous signal framing: expected exactly one tagged block, found {names}"
            )
        raise MalformedSignalError(f"unterminated signal tag: {names}")
    opening, closing = tokens
    if opening.closing or not closing.closing:
        raise MalformedSignalError("signal tags out of order")
    if opening.name != closing.name:
        raise MalformedSignalError(
            f"mismatched signal tags: opened {opening.name}, closed {closing.name}"
        )
    return opening.name, text[opening.end : closing.start].strip()


def parse_signal(text: str, *, tail_chars: int = DEFAULT_TAIL_CHARS) -> WorkerSignal:
    """Interpret a worker's output as exactly one COMPLETE or BLOCKED block.

    Raises :class:`NoSignalError` when no tag is present and
    :class:`MalformedSignalError` when a tag is present but the block cannot
    be trusted. A malformed block is never read as success.
    """
    tokens = tokenize(text)
    if not tokens:
        raise NoSignalError(
            "worker produced neither a COMPLETE nor a BLOCKED signal",
            tail=output_tail(text, tail_chars),
        )
    name, body = _frame(text, tokens)

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise MalformedSignalError(
            f"{name} tag found, payload unparseable: {exc.msg}", payload=body
        ) from exc
    if not isinstance(payload, dict):
        raise MalformedSignalError(f"{name} payload must be a JSON object", payload=body)

    if name == "BLOCKED":
        reason = payload.get("reason")
        if not isinstance(reason, str) or not reason.strip():
            raise MalformedSignalError("BLOCKED payload needs a non-empty 'reason'", payload=body)
        return WorkerSignal(status="blocked", reason=reason.strip())

    files = payload.get("filesModified", [])
    summary = payload.get("summary", "")
    if not isinstance(files, list) or not all(isinstance(item, str) for item in files):
        raise MalformedSignalError(
            "COMPLETE payload 'filesModified' must be a list of strings", payload=body
        )
    if not isinstance(summary, str):
        raise MalformedSignalError("COMPLETE payload 'summary' must be a string", payload=body)
    return WorkerSignal(status="completed", summary=summary.strip(), files_modified=list(files))
