from __future__ import annotations

import asyncio
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

from .errors import BackendStartError


DEFAULT_LINE_LIMIT = 16 * 1024 * 1024


class LineTooLongError(Exception):
    ...


@dataclass
class RunResult:
    returncode: int
    stdout: str
    stderr: str


class BackendProcess(ABC):
    """A running CLI whose stdout is consumed line by line."""

    @abstractmethod
    def lines(self) -> AsyncIterator[str]:
        ...

    @abstractmethod
    async def wait(self) -> int:
        ...

    @abstractmethod
    async def kill(self) -> None:
        ...

    @property
    @abstractmethod
    def stderr(self) -> str:
        ...


class Backend(ABC):
    """Spawn/pipe/wait seam between the invokers and the CLI executable."""

    @abstractmethod
    async def run(self, argv: Sequence[str], stdin_text: str) -> RunResult:
        """Run to completion with ``stdin_text`` on stdin, capturing stdout and stderr."""

    @abstractmethod
    async def spawn(self, argv: Sequence[str], stdin_text: str) -> BackendProcess:
        """Start the CLI and return a handle for streaming its stdout.

        Raises BackendStartError when the executable cannot be launched.
        """


class SubprocessBackend(Backend):
    def __init__(self, line_limit: int = DEFAULT_LINE_LIMIT) -> None:
        self.line_limit = line_limit

    async def _exec(self, argv: Sequence[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.line_limit,
            )
        except OSError as e:
            raise BackendStartError(f"Claude CLI failed: {e}") from e

    async def run(self, argv: Sequence[str], stdin_text: str) -> RunResult:
        proc = await self._exec(argv)
        try:
            out, err = await proc.communicate(stdin_text.encode("utf-8"))
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            await asyncio.shield(proc.wait())
            raise
        return RunResult(
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )

    async def spawn(self, argv: Sequence[str], stdin_text: str) -> BackendProcess:
        proc = await self._exec(argv)
        if proc.stdout is None or proc.stdin is None or proc.stderr is None:
            proc.kill()
            await proc.wait()
            raise BackendStartError("Claude CLI failed: stdio pipes unavailable")
        return _SubprocessHandle(proc, stdin_text.encode("utf-8"))


class _SubprocessHandle(BackendProcess):
    def __init__(self, proc: asyncio.subprocess.Process, stdin_bytes: bytes) -> None:
        self._proc = proc
        self._stderr = b""
        # stdin is fed and stderr drained off the stdout reader so no pipe can fill up.
        self._feeder = asyncio.ensure_future(self._feed(stdin_bytes))
        self._drainer = asyncio.ensure_future(self._drain_stderr())

    async def _feed(self, data: bytes) -> None:
        assert self._proc.stdin is not None
        try:
            self._proc.stdin.write(data)
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            print(f"[proxy] CLI closed stdin early: {e}", file=sys.stderr)
        finally:
            self._proc.stdin.close()

    async def _drain_stderr(self) -> None:
        assert self._proc.stderr is not None
        self._stderr = await self._proc.stderr.read()

    async def lines(self) -> AsyncIterator[str]:
        assert self._proc.stdout is not None
        while True:
            try:
                raw = await self._proc.stdout.readline()
            except ValueError as e:
                # StreamReader reports a line over its limit as ValueError.
                raise LineTooLongError(str(e)) from e
            if not raw:
                return
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def wait(self) -> int:
        rc = await self._proc.wait()
        await asyncio.gather(self._feeder, self._drainer, return_exceptions=True)
        return rc

    async def kill(self) -> None:
        if self._proc.returncode is None:
            try:
                self._proc.kill()
            except ProcessLookupError:
                ...
        self._feeder.cancel()
        self._drainer.cancel()
        await asyncio.shield(self._proc.wait())

    @property
    def stderr(self) -> str:
        return self._stderr.decode("utf-8", errors="replace")


class InMemoryBackend(Backend):
    """Scripted stand-in for the CLI; records each (argv, stdin) it is called with."""

    def __init__(
        self,
        stdout: str = "",
        *,
        lines: Optional[List[str]] = None,
        returncode: int = 0,
        stderr: str = "",
        start_error: Optional[str] = None,
        overflow_after: Optional[int] = None,
    ) -> None:
        self.stdout = stdout
        self.script = list(lines) if lines is not None else stdout.splitlines()
        self.returncode = returncode
        self.stderr = stderr
        self.start_error = start_error
        self.overflow_after = overflow_after
        self.calls: List[Tuple[List[str], str]] = []
        self.processes: List[InMemoryProcess] = []

    def _begin(self, argv: Sequence[str], stdin_text: str) -> None:
        self.calls.append((list(argv), stdin_text))
        if self.start_error is not None:
            raise BackendStartError(f"Claude CLI failed: {self.start_error}")

    async def run(self, argv: Sequence[str], stdin_text: str) -> RunResult:
        self._begin(argv, stdin_text)
        return RunResult(returncode=self.returncode, stdout=self.stdout, stderr=self.stderr)

    async def spawn(self, argv: Sequence[str], stdin_text: str) -> BackendProcess:
        self._begin(argv, stdin_text)
        proc = InMemoryProcess(self.script, self.returncode, self.stderr, self.overflow_after)
        self.processes.append(proc)
        return proc


class InMemoryProcess(BackendProcess):
    def __init__(
        self, script: List[str], returncode: int, stderr: str, overflow_after: Optional[int] = None
    ) -> None:
        self._script = script
        self._overflow_after = overflow_after
        self._returncode = returncode
        self._stderr = stderr
        self.lines_read = 0
        self.waited = False
        self.killed = False

    async def lines(self) -> AsyncIterator[str]:
        for line in self._script:
            if self.killed:
                return
            if self._overflow_after is not None and self.lines_read >= self._overflow_after:
                raise LineTooLongError(f"line {self.lines_read + 1} exceeds the line limit")
            self.lines_read += 1
            yield line

    async def wait(self) -> int:
        self.waited = True
        return self._returncode

    async def kill(self) -> None:
        self.killed = True
        self.waited = True

    @property
    def stderr(self) -> str:
        return self._stderr
