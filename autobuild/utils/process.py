"""Async subprocess execution used for git and nix invocations."""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Protocol, Sequence

from loguru import logger

DEFAULT_STDERR_LIMIT = 64 * 1024

# Seconds between SIGTERM and SIGKILL when a command is cancelled
TERMINATE_GRACE_S = 5.0


@dataclass
class CommandResult:
    """Captured result of one external command."""
    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    stderr_dropped: int = 0  # Leading stderr bytes discarded to stay within the limit

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def error_text(self) -> str:
        """Stderr (or stdout when stderr is empty) with a truncation marker."""
        text = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
        if self.stderr_dropped:
            text = f"... ({self.stderr_dropped} bytes truncated)\n{text}"
        return text


class CommandRunner(Protocol):
    def __call__(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        stderr_limit: int = DEFAULT_STDERR_LIMIT,
    ) -> Awaitable[CommandResult]: ...


async def _read_tail(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, int]:
    """Read a stream to EOF, keeping only the last ``limit`` bytes."""
    buf = bytearray()
    dropped = 0
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            break
        buf.extend(chunk)
        if len(buf) > limit:
            excess = len(buf) - limit
            del buf[:excess]
            dropped += excess
    return bytes(buf), dropped


async def terminate(process: asyncio.subprocess.Process) -> None:
    """Terminate a child process, escalating to SIGKILL after a grace period."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_S)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
    except ProcessLookupError:
        pass


async def run_command(
    args: Sequence[str],
    *,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    stderr_limit: int = DEFAULT_STDERR_LIMIT,
) -> CommandResult:
    """
    Run a command without a shell and capture its output.

    Stdout is read in full. Stderr is bounded to its last ``stderr_limit``
    bytes. A missing or non-executable program is reported as exit code
    127/126 rather than raised, as are other launch errors and a missing
    ``cwd``, so callers handle them like any other failure.
    If the awaiting task is cancelled, the child is terminated before the
    cancellation propagates.

    Args:
        args: Program and arguments.
        cwd: Working directory.
        env: Extra environment variables, merged over ``os.environ``.
        timeout: Seconds before the command is terminated (None = no limit).
        stderr_limit: Maximum number of stderr bytes kept.
    """
    argv = [str(a) for a in args]
    full_env = {**os.environ, **env} if env else None

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=full_env,
        )
    except FileNotFoundError:
        if cwd and not Path(cwd).is_dir():
            return CommandResult(argv, 1, "", f"Working directory does not exist: {cwd}")
        return CommandResult(argv, 127, "", f"Command not found: {argv[0]}")
    except PermissionError:
        return CommandResult(argv, 126, "", f"Permission denied executing: {argv[0]}")
    except OSError as e:
        return CommandResult(argv, 126, "", f"Failed to execute {argv[0]}: {e}")

    async def communicate() -> tuple[bytes, tuple[bytes, int]]:
        return await asyncio.gather(
            process.stdout.read(),
            _read_tail(process.stderr, stderr_limit),
        )

    try:
        stdout, (stderr, dropped) = await asyncio.wait_for(communicate(), timeout=timeout)
        returncode = await process.wait()
    except asyncio.TimeoutError:
        logger.warning(f"Process: {argv[0]} timed out after {timeout}s, terminating")
        await terminate(process)
        return CommandResult(argv, -1, "", f"Command timed out after {timeout} seconds")
    except asyncio.CancelledError:
        await terminate(process)
        raise

    return CommandResult(
        args=argv,
        returncode=returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        stderr_dropped=dropped,
    )
