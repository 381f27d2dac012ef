"""Async subprocess primitives shared by local and SSH execution."""

import asyncio
import codecs
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Protocol

logger = logging.getLogger("pls-process")

TIMEOUT_EXIT_CODE = 124
READ_CHUNK = 4096

# (stream name, decoded text) -> None; stream name is "stdout" or "stderr"
OutputObserver = Callable[[str, str], None]


@dataclass
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def output(self) -> str:
        return self.stdout + self.stderr


class ProcessRunner(Protocol):
    def __call__(
        self,
        args: list[str],
        *,
        timeout: float,
        stdin_data: str | None = None,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        on_output: OutputObserver | None = None,
    ) -> Awaitable[ProcessResult]: ...


async def _pump(
    stream: asyncio.StreamReader,
    name: str,
    parts: list[str],
    on_output: OutputObserver | None,
) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(READ_CHUNK)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            if on_output:
                on_output(name, text)
        if not chunk:
            return


async def _feed(proc: asyncio.subprocess.Process, stdin_data: str | None) -> None:
    if stdin_data is None or proc.stdin is None:
        return
    try:
        proc.stdin.write(stdin_data.encode())
        await proc.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        pass
    finally:
        proc.stdin.close()


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


async def run_process(
    args: list[str],
    *,
    timeout: float,
    stdin_data: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    on_output: OutputObserver | None = None,
) -> ProcessResult:
    """Run a command, streaming its output while buffering all of it.

    The child gets its own process group so a timeout kills the whole
    command (e.g. `bash -c` and what it spawned) but nothing outside it.
    A timeout is reported as exit code 124 with ``timed_out=True``.

    Raises:
        FileNotFoundError: if ``args[0]`` is not installed.
    """
    started = time.monotonic()
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
        env=dict(env) if env is not None else None,
        cwd=cwd,
        start_new_session=True,
    )
    stdout_parts: list[str] = []
    stderr_parts: list[str] = []
    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(
                _feed(proc, stdin_data),
                _pump(proc.stdout, "stdout", stdout_parts, on_output),
                _pump(proc.stderr, "stderr", stderr_parts, on_output),
                proc.wait(),
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        timed_out = True
        _kill_group(proc)
        await proc.wait()
        logger.warning(f"{args[0]}: killed after {timeout}s timeout")
    except asyncio.CancelledError:
        _kill_group(proc)
        await proc.wait()
        raise

    stderr = "".join(stderr_parts)
    if timed_out:
        exit_code = TIMEOUT_EXIT_CODE
        if stderr and not stderr.endswith("\n"):
            stderr += "\n"
        stderr += f"[timeout after {timeout}s]"
    else:
        rc = proc.returncode or 0
        exit_code = 128 - rc if rc < 0 else rc
    return ProcessResult(
        exit_code=exit_code,
        stdout="".join(stdout_parts),
        stderr=stderr,
        timed_out=timed_out,
        duration=time.monotonic() - started,
    )


def format_result(stdout: str, stderr: str, exit_code: int) -> str:
    parts = []
    if stdout:
        parts.append(stdout)
    if stderr:
        parts.append(f"[stderr]\n{stderr}")
    if exit_code != 0:
        parts.append(f"[exit code: {exit_code}]")
    return "\n".join(parts) or "[no output]"
