from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from governor.errors import DispatchTimeoutError, WorkerLaunchError

logger = logging.getLogger("governor.dispatch.process")

LineHook = Callable[[str, str], None]
READ_CHUNK_BYTES = 64 * 1024


class ProcessState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    KILLED = "killed"
    EXITED = "exited"


@dataclass(slots=True)
class ProcessOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    state: ProcessState
    duration_seconds: float


class ProcessSupervisor:
    """Runs one child process under a wall-clock budget.

    On timeout the child gets SIGTERM, then SIGKILL once the grace period
    lapses. Cancelling the awaiting task tears the child down the same way
    before the cancellation propagates.
    """

    def __init__(
        self,
        command: list[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout_seconds: float = 1800.0,
        grace_seconds: float = 2.0,
        on_line: LineHook | None = None,
    ) -> None:
        self.command = command
        self.cwd = cwd
        self.env = env
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds
        self.on_line = on_line
        self.state = ProcessState.STARTING
        self.pid: int | None = None
        self._stdout: list[str] = []
        self._stderr: list[str] = []

    def _set_state(self, state: ProcessState) -> None:
        logger.debug("pid=%s %s -> %s", self.pid, self.state.value, state.value)
        self.state = state

    def _accept(self, raw_line: bytes, sink: list[str], name: str) -> None:
        line = raw_line.decode("utf-8", errors="replace")
        sink.append(line)
        if self.on_line is not None:
            self.on_line(name, line.rstrip("\n"))

    async def _pump(self, stream: asyncio.StreamReader | None, sink: list[str], name: str) -> None:
        # Fixed-size reads: worker lines routinely exceed the StreamReader line limit.
        if stream is None:
            return
        pending = bytearray()
        while chunk := await stream.read(READ_CHUNK_BYTES):
            pending.extend(chunk)
            if b"\n" not in chunk:
                continue
            *complete, rest = bytes(pending).split(b"\n")
            for raw_line in complete:
                self._accept(raw_line + b"\n", sink, name)
            pending = bytearray(rest)
        if pending:
            self._accept(bytes(pending), sink, name)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._set_state(ProcessState.TERMINATING)
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.grace_seconds)
        except TimeoutError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            self._set_state(ProcessState.KILLED)
            await process.wait()
            return
        self._set_state(ProcessState.EXITED)

    async def _drain(self, readers: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(readers), timeout=self.grace_seconds)
        except TimeoutError:
            # A grandchild still holds the pipe open; stop reading.
            readers.cancel()
            await asyncio.gather(readers, return_exceptions=True)

    def partial_output(self) -> tuple[str, str]:
        return "".join(self._stdout), "".join(self._stderr)

    def _outcome(self, process: asyncio.subprocess.Process, started: float) -> ProcessOutcome:
        return ProcessOutcome(
            exit_code=process.returncode,
            stdout="".join(self._stdout),
            stderr="".join(self._stderr),
            state=self.state,
            duration_seconds=time.monotonic() - started,
        )

    async def run(self) -> ProcessOutcome:
        started = time.monotonic()
        self._set_state(ProcessState.STARTING)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd) if self.cwd else None,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            self._set_state(ProcessState.EXITED)
            raise WorkerLaunchError(f"Could not start worker '{self.command[0]}': {exc}") from exc

        self.pid = process.pid
        self._set_state(ProcessState.RUNNING)
        readers = asyncio.gather(
            self._pump(process.stdout, self._stdout, "stdout"),
            self._pump(process.stderr, self._stderr, "stderr"),
        )
        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout_seconds)
        except TimeoutError:
            await self._terminate(process)
            await self._drain(readers)
            outcome = self._outcome(process, started)
            raise DispatchTimeoutError(
                f"Worker exceeded {self.timeout_seconds:.1f}s and was "
                f"{'killed' if self.state is ProcessState.KILLED else 'terminated'}.",
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            ) from None
        except asyncio.CancelledError:
            await asyncio.shield(self._terminate(process))
            readers.cancel()
            raise

        await self._drain(readers)
        self._set_state(ProcessState.EXITED)
        return self._outcome(process, started)
