"""Step executor: run one command locally or on a remote and record it."""

import logging
import re
import shlex
from dataclasses import dataclass

from pls_audit import audit
from pls_config import AppConfig
from pls_connections import ConnectionManager
from pls_process import OutputObserver, ProcessRunner, run_process

logger = logging.getLogger("pls-executor")

COMMAND_NOT_FOUND_EXIT = 127

SHELL_BUILTINS = frozenset([
    "cd", "pushd", "popd", "dirs",
    "history",
    "alias", "unalias",
    "export", "set", "unset", "declare", "local", "readonly",
    "source", ".",
    "jobs", "fg", "bg", "disown",
    "ulimit", "umask", "builtin", "command", "type", "enable", "hash",
    "help", "let", "read", "wait", "eval", "exec", "trap", "times", "shopt",
])
_PREFIX_WORDS = {"sudo", "env", "nohup", "nice"}
_SEPARATORS = re.compile(r"[;&|]+|\n+")


def detect_builtins(command: str) -> list[str]:
    """Shell built-ins among the commands of a (possibly compound) command line.

    They only affect the shell that runs them, so executing them in a child
    process does nothing useful for the user.
    """
    found: list[str] = []
    for part in _SEPARATORS.split(command):
        words = part.split()
        i = 0
        while i < len(words) and words[i] in _PREFIX_WORDS:
            i += 1
        if i < len(words) and words[i] in SHELL_BUILTINS and words[i] not in found:
            found.append(words[i])
    return found


def wrap_command(command: str, work_dir: str | None) -> str:
    if not work_dir:
        return command
    return f"cd {shlex.quote(work_dir)} && {command}"


@dataclass(frozen=True)
class ExecutionStep:
    index: int
    command: str
    exit_code: int
    output: str
    timed_out: bool = False

    def to_dict(self) -> dict:
        return {"index": self.index, "command": self.command, "exitCode": self.exit_code, "output": self.output}


class StepExecutor:
    def __init__(
        self,
        connections: ConnectionManager,
        config: AppConfig,
        runner: ProcessRunner = run_process,
    ):
        self.connections = connections
        self.config = config
        self.runner = runner

    async def run(
        self,
        command: str,
        target: str | None = None,
        *,
        index: int = 1,
        timeout: float | None = None,
        on_output: OutputObserver | None = None,
    ) -> ExecutionStep:
        """Execute ``command`` on ``target`` (None = this machine).

        Non-zero exits and timeouts are returned in the step. Connection
        failures propagate as RemoteConnectionError.
        """
        timeout = timeout or self.config.command_timeout
        if target is None:
            try:
                result = await self.runner(
                    [self.config.shell, "-c", command],
                    timeout=timeout,
                    on_output=on_output,
                )
            except FileNotFoundError:
                message = f"shell not found: {self.config.shell}"
                logger.error(message)
                step = ExecutionStep(index=index, command=command, exit_code=COMMAND_NOT_FOUND_EXIT, output=message)
                audit("command_executed", target="local", command=command, exit_code=step.exit_code)
                return step
        else:
            work_dir = self.connections.registry.get_work_dir(target)
            result = await self.connections.execute(
                target,
                wrap_command(command, work_dir),
                timeout=timeout,
                on_output=on_output,
            )

        step = ExecutionStep(
            index=index,
            command=command,
            exit_code=result.exit_code,
            output=result.output,
            timed_out=result.timed_out,
        )
        logger.debug(f"{target or 'local'}: step {index} exited {step.exit_code} in {result.duration:.1f}s")
        audit(
            "command_executed",
            target=target or "local",
            command=command,
            exit_code=step.exit_code,
            timed_out=step.timed_out,
            duration=round(result.duration, 3),
        )
        return step
