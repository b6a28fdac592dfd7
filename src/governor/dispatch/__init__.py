from governor.dispatch.dispatcher import DispatchResult, WorkerDispatcher, render_prompt
from governor.dispatch.process import ProcessOutcome, ProcessState, ProcessSupervisor
from governor.dispatch.runtimes import (
    ClaudeRuntime,
    CodexRuntime,
    CommandRuntime,
    GeminiRuntime,
    OpenCodeRuntime,
    WorkerRuntime,
    build_runtime,
)
from governor.dispatch.signals import WorkerSignal, parse_signal, tokenize

__all__ = [
    "ClaudeRuntime",
    "CodexRuntime",
    "CommandRuntime",
    "DispatchResult",
    "GeminiRuntime",
    "OpenCodeRuntime",
    "ProcessOutcome",
    "ProcessState",
    "ProcessSupervisor",
    "WorkerDispatcher",
    "WorkerRuntime",
    "WorkerSignal",
    "build_runtime",
    "parse_signal",
    "render_prompt",
    "tokenize",
]
