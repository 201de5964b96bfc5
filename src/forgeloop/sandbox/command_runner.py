"""
forgeloop — command runner

File: src/forgeloop/sandbox/command_runner.py
Last updated: 2026-10-18

Purpose
- Execute shell commands for roles with a caller-supplied timeout and capture the outcome.

Functional requirements
- On timeout the process is killed and the result is marked ``timed_out`` and ``killed``
  with ``exit_code=None``; this is a result, not an exception.
- Spawn failures are reported through ``error`` with ``exit_code=None``.
- Output is decoded as UTF-8 with replacement, newline-normalized, and truncated.

Non-functional requirements
- No sandboxing beyond timeout and exit-code capture.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

PathLike = str | os.PathLike[str]

DEFAULT_MAX_OUTPUT_CHARS = 200_000
_NEW_SESSION = os.name == "posix"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Command execution outcome handed to the governor and the diagnostics engine."""

    command: str
    args: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    killed: bool = False
    error: str | None = None

    def __post_init__(self) -> None:
        if self.duration_ms < 0:
            raise ValueError("duration_ms must be >= 0")
        if self.timed_out and self.exit_code is not None:
            raise ValueError("exit_code must be None when timed_out is true")

    @property
    def succeeded(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    @property
    def combined_output(self) -> str:
        if not self.stderr:
            return self.stdout
        if not self.stdout:
            return self.stderr
        return f"{self.stdout}\n{self.stderr}"

    def to_dict(self) -> dict[str, object]:
        return {
            "command": self.command,
            "args": list(self.args),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "timed_out": self.timed_out,
            "killed": self.killed,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class CommandRunner(Protocol):
    async def run(
        self,
        command: str,
        *,
        cwd: PathLike,
        timeout_seconds: float | None,
        args: Sequence[str] = (),
    ) -> CommandResult: ...


class LocalCommandRunner:
    """Async local subprocess runner with deterministic capture/timeout behavior."""

    def __init__(
        self,
        *,
        env: Mapping[str, str] | None = None,
        max_output_chars: int | None = DEFAULT_MAX_OUTPUT_CHARS,
    ) -> None:
        if max_output_chars is not None and max_output_chars <= 0:
            raise ValueError("max_output_chars must be > 0")
        self._env = dict(env) if env is not None else None
        self._max_output_chars = max_output_chars

    async def run(
        self,
        command: str,
        *,
        cwd: PathLike,
        timeout_seconds: float | None,
        args: Sequence[str] = (),
    ) -> CommandResult:
        if not isinstance(command, str) or not command.strip():
            raise ValueError("command must be a non-empty string")
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        arg_tuple = tuple(args)
        started_ns = time.monotonic_ns()
        try:
            if arg_tuple:
                process = await asyncio.create_subprocess_exec(
                    command,
                    *arg_tuple,
                    cwd=os.fspath(cwd),
                    env=self._env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=_NEW_SESSION,
                )
            else:
                process = await asyncio.create_subprocess_shell(
                    command,
                    cwd=os.fspath(cwd),
                    env=self._env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=_NEW_SESSION,
                )
        except OSError as exc:
            return CommandResult(
                command=command,
                args=arg_tuple,
                exit_code=None,
                stdout="",
                stderr="",
                duration_ms=_elapsed_ms(started_ns),
                error=str(exc),
            )

        try:
            stdout_bytes, stderr_bytes = await _communicate_with_timeout(
                process=process,
                timeout_seconds=timeout_seconds,
            )
            timed_out = False
            error_text: str | None = None
            exit_code = process.returncode
        except _CommandTimeoutError as exc:
            stdout_bytes = exc.stdout
            stderr_bytes = exc.stderr
            timed_out = True
            timeout_value = timeout_seconds if timeout_seconds is not None else 0.0
            error_text = f"command timed out after {timeout_value:.3f}s"
            exit_code = None

        return CommandResult(
            command=command,
            args=arg_tuple,
            exit_code=exit_code,
            stdout=_truncate_text(_normalize_output_text(stdout_bytes), self._max_output_chars),
            stderr=_truncate_text(_normalize_output_text(stderr_bytes), self._max_output_chars),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=timed_out,
            killed=timed_out,
            error=error_text,
        )


@dataclass(slots=True)
class _CommandTimeoutError(Exception):
    stdout: bytes
    stderr: bytes


async def _communicate_with_timeout(
    *,
    process: asyncio.subprocess.Process,
    timeout_seconds: float | None,
) -> tuple[bytes, bytes]:
    try:
        if timeout_seconds is None:
            return await process.communicate()
        return await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except TimeoutError as exc:
        _kill_process_tree(process)
        stdout_bytes, stderr_bytes = await process.communicate()
        raise _CommandTimeoutError(stdout=stdout_bytes, stderr=stderr_bytes) from exc
    except asyncio.CancelledError:
        _kill_process_tree(process)
        await process.communicate()
        raise


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    if _NEW_SESSION:
        with suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
    with suppress(ProcessLookupError):
        process.kill()


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _truncate_text(text: str, max_chars: int | None) -> str:
    if max_chars is None or len(text) <= max_chars:
        return text
    omitted = len(text) - max_chars
    return f"{text[:max_chars]}\n...[truncated {omitted} chars]"


__all__ = [
    "DEFAULT_MAX_OUTPUT_CHARS",
    "CommandResult",
    "CommandRunner",
    "LocalCommandRunner",
]
