from __future__ import annotations

import asyncio
import os
import signal
from asyncio.subprocess import PIPE, STDOUT
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .exceptions import CommandTimeoutError

# Lines longer than this are forwarded in limit-sized pieces.
STREAM_LINE_LIMIT = 1024 * 1024


class OutputSink(Protocol):
    def write(self, data: bytes) -> int: ...


@dataclass(slots=True)
class CommandResult:
    command: str
    args: tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str


class CommandAdapter:
    """Async helper that runs external commands for the deploy pipeline.

    ``run`` captures output for short control commands (systemctl, git
    rev-parse, tail). ``stream`` forwards interleaved stdout/stderr to a
    sink line by line and kills the whole process group when the awaiting
    task is cancelled, so a build timeout never leaves orphans behind.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base_dir = base_dir.resolve() if base_dir is not None else None

    def _resolve_cwd(self, cwd: Path | str | None) -> str | None:
        if cwd is None:
            return str(self._base_dir) if self._base_dir is not None else None
        path = Path(cwd)
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        return str(path)

    @staticmethod
    def _compose_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
        if env is None:
            return None
        process_env = os.environ.copy()
        process_env.update(env)
        return process_env

    async def run(
        self,
        command: str,
        *,
        args: Sequence[str] | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = 120.0,
    ) -> CommandResult:
        process = await asyncio.create_subprocess_exec(
            command,
            *(args or []),
            stdout=PIPE,
            stderr=PIPE,
            cwd=self._resolve_cwd(cwd),
            env=self._compose_env(env),
            start_new_session=True,
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except TimeoutError as exc:
            await _terminate(process)
            raise CommandTimeoutError(
                f"Command '{command}' timed out after {timeout} seconds"
            ) from exc
        except BaseException:
            await _terminate(process)
            raise
        exit_code = process.returncode if process.returncode is not None else -1
        return CommandResult(
            command=command,
            args=tuple(args or []),
            exit_code=exit_code,
            stdout=stdout_bytes.decode(errors="replace"),
            stderr=stderr_bytes.decode(errors="replace"),
        )

    async def stream(
        self,
        command: str,
        sink: OutputSink,
        *,
        args: Sequence[str] | None = None,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> int:
        """Run *command* and copy its merged output into *sink*; return the exit code."""
        process = await asyncio.create_subprocess_exec(
            command,
            *(args or []),
            stdout=PIPE,
            stderr=STDOUT,
            cwd=self._resolve_cwd(cwd),
            env=self._compose_env(env),
            limit=STREAM_LINE_LIMIT,
            start_new_session=True,
        )
        try:
            assert process.stdout is not None
            while True:
                chunk = await _read_chunk(process.stdout)
                if not chunk:
                    break
                sink.write(chunk)
            return await process.wait()
        except BaseException:
            await _terminate(process)
            raise


async def _read_chunk(reader: asyncio.StreamReader) -> bytes:
    """Next line, or the buffered bytes when a line exceeds the reader limit."""
    try:
        return await reader.readuntil(b"\n")
    except asyncio.IncompleteReadError as exc:
        return exc.partial
    except asyncio.LimitOverrunError as exc:
        return await reader.read(max(exc.consumed, 1))


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.kill()
    await process.wait()
