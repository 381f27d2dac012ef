"""SSH ControlMaster management for registered remotes.

One master channel per remote, backed by a control socket under
``<data_dir>/remotes/<name>/ssh.sock``. The socket's existence is the only
source of truth for "a master is active"; nothing is cached in memory
beyond the transient establishing/closing marks.
"""

import asyncio
import fcntl
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path

from pls_audit import audit
from pls_config import AppConfig
from pls_errors import (
    AuthFailedError,
    ConnectTimeoutError,
    MissingDependencyError,
    PlsError,
    RemoteConnectionError,
)
from pls_process import OutputObserver, ProcessResult, ProcessRunner, run_process
from pls_registry import RemoteRegistry, RemoteTarget
from pls_secrets import SecretProvider

logger = logging.getLogger("pls-connections")

SSH_ERROR_EXIT = 255
SSHPASS_BAD_PASSWORD_EXIT = 5
CONTROL_TIMEOUT = 5
CONNECTION_TEST_MARKER = "pls-connection-test"

STALE_SOCKET_INDICATORS = ["Control socket connect", "mux_client_request_session"]
TIMEOUT_INDICATORS = ["Connection timed out", "Operation timed out", "timed out during banner exchange"]
AUTH_INDICATORS = [
    "Permission denied", "Authentication failed",
    "Too many authentication failures", "no matching host key",
]
TRANSPORT_INDICATORS = [
    "Connection refused", "Connection reset", "Broken pipe", "No route to host",
    "Network is unreachable", "Could not resolve hostname", "ssh_exchange_identification",
    "kex_exchange_identification", "Connection closed by", "Host key verification failed",
]


class ConnectionState(Enum):
    ABSENT = "absent"
    ESTABLISHING = "establishing"
    ACTIVE = "active"
    CLOSING = "closing"


def _has_stale_socket_error(stderr: str) -> bool:
    return any(ind in stderr for ind in STALE_SOCKET_INDICATORS)


def classify_ssh_failure(name: str, returncode: int, stderr: str) -> RemoteConnectionError | None:
    """Map an ssh exit into a connection error, or None if the remote command just failed.

    ssh reports its own failures as 255, but a remote command may exit 255
    as well, so the stderr text decides.
    """
    if returncode != SSH_ERROR_EXIT:
        return None
    detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"rc={returncode}"
    if any(ind in stderr for ind in TIMEOUT_INDICATORS):
        return ConnectTimeoutError(f"{name}: connection timed out ({detail})", target=name)
    if any(ind in stderr for ind in AUTH_INDICATORS):
        return AuthFailedError(f"{name}: authentication failed ({detail})", target=name)
    if any(ind in stderr for ind in TRANSPORT_INDICATORS):
        return RemoteConnectionError(f"{name}: connection failed ({detail})", target=name)
    return None


class ConnectionManager:
    def __init__(
        self,
        registry: RemoteRegistry,
        config: AppConfig,
        secret_provider: SecretProvider,
        runner: ProcessRunner = run_process,
    ):
        self.registry = registry
        self.config = config
        self.secret_provider = secret_provider
        self.runner = runner
        self._locks: dict[str, asyncio.Lock] = {}
        self._transitions: dict[str, ConnectionState] = {}

    # --- artifact ---

    def socket_path(self, name: str) -> Path:
        return self.config.remote_dir(name) / "ssh.sock"

    def is_active(self, name: str) -> bool:
        return self.socket_path(name).exists()

    def state(self, name: str) -> ConnectionState:
        if name in self._transitions:
            return self._transitions[name]
        return ConnectionState.ACTIVE if self.is_active(name) else ConnectionState.ABSENT

    def _discard_socket(self, name: str) -> None:
        try:
            self.socket_path(name).unlink()
        except FileNotFoundError:
            pass

    @asynccontextmanager
    async def _exclusive(self, name: str) -> AsyncIterator[None]:
        """Serialize establish/close for one remote, in-process and across processes."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            lock_path = self.config.remote_dir(name) / "ssh.lock"
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with open(lock_path, "a+") as lock_file:
                await asyncio.to_thread(fcntl.flock, lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    # --- argv ---

    def _ssh_args(self, target: RemoteTarget, *, control: str | None = None) -> list[str]:
        args = [
            "ssh",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.config.connect_timeout}",
        ]
        if control == "master":
            args += ["-o", "ControlMaster=yes", "-o", f"ControlPersist={self.config.control_persist}"]
        elif control == "reuse":
            args += ["-o", "ControlMaster=no"]
        if control:
            args += ["-o", f"ControlPath={self.socket_path(target.name)}"]
        if target.port != 22:
            args += ["-p", str(target.port)]
        if target.key_path:
            args += ["-i", str(Path(target.key_path).expanduser())]
        return args

    async def _run(
        self,
        target: RemoteTarget,
        args: list[str],
        *,
        timeout: float,
        stdin: str | None = None,
        env: dict[str, str] | None = None,
        on_output: OutputObserver | None = None,
    ) -> ProcessResult:
        try:
            return await self.runner(args, timeout=timeout, stdin_data=stdin, env=env, on_output=on_output)
        except FileNotFoundError:
            dependency = args[0]
            hint = " (install it, e.g. `apt install sshpass` or `brew install sshpass`)" if dependency == "sshpass" else ""
            raise MissingDependencyError(
                f"{target.name}: '{dependency}' is not installed{hint}",
                target=target.name,
                dependency=dependency,
            )

    # --- master lifecycle ---

    async def _establish_master(self, target: RemoteTarget) -> None:
        name = target.name
        secret = await self.secret_provider.get_secret(target)
        self._transitions[name] = ConnectionState.ESTABLISHING
        try:
            self.config.remote_dir(name).mkdir(parents=True, exist_ok=True)
            logger.info(f"{name}: establishing master channel to {target.destination}")
            args = ["sshpass", "-e", *self._ssh_args(target, control="master"), target.destination, "true"]
            env = {**os.environ, "SSHPASS": secret}
            result = await self._run(target, args, timeout=self.config.master_timeout, env=env)
        finally:
            self._transitions.pop(name, None)

        if result.timed_out:
            raise ConnectTimeoutError(
                f"{name}: no master channel after {self.config.master_timeout}s", target=name,
            )
        if result.exit_code == SSHPASS_BAD_PASSWORD_EXIT:
            raise AuthFailedError(f"{name}: password rejected", target=name)
        if result.exit_code != 0:
            error = classify_ssh_failure(name, result.exit_code, result.stderr)
            if error:
                raise error
            raise RemoteConnectionError(
                f"{name}: master channel failed (exit {result.exit_code}): {result.stderr.strip()}",
                target=name,
            )
        if not self.is_active(name):
            raise RemoteConnectionError(f"{name}: master exited without leaving a control socket", target=name)
        logger.info(f"{name}: master channel active")
        audit("master_established", remote=name, host=target.host)

    async def ensure_master(self, target: RemoteTarget) -> None:
        """Bring up the master channel for a password-mode target if it is absent."""
        if self.is_active(target.name):
            return
        async with self._exclusive(target.name):
            # another task or process may have won the race
            if self.is_active(target.name):
                return
            await self._establish_master(target)

    # --- public API ---

    async def execute(
        self,
        name: str,
        command: str,
        *,
        timeout: float | None = None,
        stdin: str | None = None,
        on_output: OutputObserver | None = None,
    ) -> ProcessResult:
        """Run ``command`` on a registered remote.

        A non-zero exit of the remote command is returned, not raised. A
        command timeout comes back as exit code 124 and leaves the master
        channel alone.

        Raises:
            ConfigError: unknown remote.
            ConnectTimeoutError / AuthFailedError / MissingDependencyError /
            RemoteConnectionError: the transport could not be used.
        """
        target = self.registry.require(name)
        timeout = timeout or self.config.command_timeout

        for attempt in (1, 2):
            if target.needs_secret:
                await self.ensure_master(target)
            use_socket = target.needs_secret or self.is_active(name)
            args = [
                *self._ssh_args(target, control="reuse" if use_socket else None),
                target.destination,
                command,
            ]
            result = await self._run(target, args, timeout=timeout, stdin=stdin, on_output=on_output)
            if result.timed_out:
                logger.warning(f"{name}: command timed out after {timeout}s, master left running")
                return result

            if use_socket and _has_stale_socket_error(result.stderr):
                logger.warning(f"{name}: stale control socket, removing it")
                self._discard_socket(name)
                if target.needs_secret and result.exit_code == SSH_ERROR_EXIT and attempt == 1:
                    continue

            error = classify_ssh_failure(name, result.exit_code, result.stderr)
            if error:
                raise error
            return result
        raise RemoteConnectionError(f"{name}: master channel keeps going stale", target=name)

    async def check(self, name: str) -> bool:
        """`ssh -O check` probe; a socket that fails the probe is removed."""
        if not self.is_active(name):
            return False
        target = self.registry.require(name)
        args = [*self._ssh_args(target, control="reuse"), "-O", "check", target.destination]
        result = await self._run(target, args, timeout=CONTROL_TIMEOUT)
        if result.exit_code == 0:
            return True
        logger.warning(f"{name}: control socket present but master is gone, removing it")
        self._discard_socket(name)
        return False

    async def close(self, name: str) -> None:
        """Tear down the master channel; a missing socket is fine."""
        if not self.is_active(name):
            return
        async with self._exclusive(name):
            if not self.is_active(name):
                return
            self._transitions[name] = ConnectionState.CLOSING
            try:
                target = self.registry.get(name)
                if target is not None:
                    args = [*self._ssh_args(target, control="reuse"), "-O", "exit", target.destination]
                    try:
                        result = await self._run(target, args, timeout=CONTROL_TIMEOUT)
                        if result.exit_code != 0:
                            logger.debug(f"{name}: -O exit returned {result.exit_code}: {result.stderr.strip()}")
                    except MissingDependencyError as e:
                        logger.warning(f"{name}: {e}")
                self._discard_socket(name)
            finally:
                self._transitions.pop(name, None)
        logger.info(f"{name}: master channel closed")
        audit("master_closed", remote=name)

    async def close_all(self) -> None:
        names = [name for name in self.registry.all() if self.is_active(name)]
        if not names:
            return
        results = await asyncio.gather(*(self.close(n) for n in names), return_exceptions=True)
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.warning(f"Teardown failed for {name}: {result}")

    async def test_connection(self, name: str) -> tuple[bool, str]:
        try:
            result = await self.execute(name, f'echo "{CONNECTION_TEST_MARKER}"', timeout=15)
        except PlsError as e:
            return False, str(e)
        if result.exit_code == 0 and CONNECTION_TEST_MARKER in result.stdout:
            return True, "connection ok"
        return False, f"connection failed, exit code {result.exit_code}"
