"""Tests for the SSH connection manager, with a scripted ssh in place of the real one."""
import asyncio
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pls_config import AppConfig
from pls_connections import ConnectionManager, ConnectionState
from pls_errors import (
    AuthFailedError,
    ConfigError,
    ConnectTimeoutError,
    MissingDependencyError,
    RemoteConnectionError,
)
from pls_process import ProcessResult
from pls_registry import RemoteRegistry
from pls_secrets import StaticSecretProvider


def _control_path(args):
    for arg in args:
        if arg.startswith("ControlPath="):
            return Path(arg.split("=", 1)[1])
    return None


class FakeSSH:
    """Stands in for run_process.

    A ``ControlMaster=yes`` call creates the control socket file, like a
    real master would. Everything else is answered by ``respond`` (or a
    plain success).
    """

    def __init__(self, respond=None, master_result=None):
        self.calls = []
        self.envs = []
        self.respond = respond
        self.master_result = master_result or ProcessResult(0, "", "")

    async def __call__(self, args, *, timeout, stdin_data=None, env=None, cwd=None, on_output=None):
        self.calls.append(list(args))
        self.envs.append(env)
        await asyncio.sleep(0)
        if "ControlMaster=yes" in args:
            if self.master_result.exit_code == 0 and not self.master_result.timed_out:
                path = _control_path(args)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch()
            return self.master_result
        if self.respond:
            return self.respond(args)
        return ProcessResult(0, "ok\n", "")

    @property
    def master_calls(self):
        return [c for c in self.calls if "ControlMaster=yes" in c]

    @property
    def command_calls(self):
        return [c for c in self.calls if "ControlMaster=yes" not in c and "-O" not in c]


@pytest.fixture
def config(tmp_path):
    return AppConfig(data_dir=tmp_path)


@pytest.fixture
def registry(config):
    reg = RemoteRegistry(config)
    reg.add("pw", "root@10.0.0.9", password=True)
    reg.add("agent", "deploy@10.0.0.5:2222")
    return reg


def _manager(registry, config, runner, secrets=None):
    provider = StaticSecretProvider(secrets if secrets is not None else {"pw": "hunter2"})
    return ConnectionManager(registry, config, provider, runner=runner), provider


# ---------------------------------------------------------------------------
# Password mode: master channel
# ---------------------------------------------------------------------------

class TestPasswordMaster:
    @pytest.mark.asyncio
    async def test_prompts_once_for_two_commands(self, registry, config):
        ssh = FakeSSH()
        manager, secrets = _manager(registry, config, ssh)
        await manager.execute("pw", "uptime")
        await manager.execute("pw", "df -h")
        assert secrets.prompts == 1
        assert len(ssh.master_calls) == 1
        assert len(ssh.command_calls) == 2
        assert manager.state("pw") == ConnectionState.ACTIVE

    @pytest.mark.asyncio
    async def test_concurrent_commands_share_one_master(self, registry, config):
        ssh = FakeSSH()
        manager, secrets = _manager(registry, config, ssh)
        await asyncio.gather(*(manager.execute("pw", f"echo {i}") for i in range(5)))
        assert secrets.prompts == 1
        assert len(ssh.master_calls) == 1

    @pytest.mark.asyncio
    async def test_master_uses_sshpass_env(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh)
        await manager.execute("pw", "true")
        master = ssh.master_calls[0]
        assert master[:2] == ["sshpass", "-e"]
        assert "hunter2" not in master
        assert ssh.envs[0]["SSHPASS"] == "hunter2"
        assert _control_path(master) == config.remote_dir("pw") / "ssh.sock"

    @pytest.mark.asyncio
    async def test_commands_reuse_socket(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh)
        await manager.execute("pw", "uptime")
        command = ssh.command_calls[0]
        assert "ControlMaster=no" in command
        assert _control_path(command) == manager.socket_path("pw")
        assert command[-1] == "uptime"

    @pytest.mark.asyncio
    async def test_missing_sshpass(self, registry, config):
        async def runner(args, **kwargs):
            raise FileNotFoundError(args[0])

        manager, _ = _manager(registry, config, runner)
        with pytest.raises(MissingDependencyError) as exc:
            await manager.execute("pw", "uptime")
        assert exc.value.dependency == "sshpass"
        assert "install" in str(exc.value)

    @pytest.mark.asyncio
    async def test_wrong_password(self, registry, config):
        ssh = FakeSSH(master_result=ProcessResult(5, "", ""))
        manager, _ = _manager(registry, config, ssh)
        with pytest.raises(AuthFailedError):
            await manager.execute("pw", "uptime")
        assert not manager.is_active("pw")
        assert ssh.command_calls == []

    @pytest.mark.asyncio
    async def test_master_timeout(self, registry, config):
        ssh = FakeSSH(master_result=ProcessResult(124, "", "", timed_out=True))
        manager, _ = _manager(registry, config, ssh)
        with pytest.raises(ConnectTimeoutError):
            await manager.execute("pw", "uptime")
        assert manager.state("pw") == ConnectionState.ABSENT

    @pytest.mark.asyncio
    async def test_unreachable_host(self, registry, config):
        ssh = FakeSSH(master_result=ProcessResult(255, "", "ssh: connect to host 10.0.0.9 port 22: No route to host"))
        manager, _ = _manager(registry, config, ssh)
        with pytest.raises(RemoteConnectionError, match="No route to host"):
            await manager.execute("pw", "uptime")

    @pytest.mark.asyncio
    async def test_cancelled_prompt(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh, secrets={})
        with pytest.raises(RemoteConnectionError):
            await manager.execute("pw", "uptime")
        assert ssh.calls == []


# ---------------------------------------------------------------------------
# Command results
# ---------------------------------------------------------------------------

class TestExecute:
    @pytest.mark.asyncio
    async def test_agent_mode_connects_directly(self, registry, config):
        ssh = FakeSSH()
        manager, secrets = _manager(registry, config, ssh)
        result = await manager.execute("agent", "uptime")
        assert result.exit_code == 0
        assert secrets.prompts == 0
        assert ssh.master_calls == []
        command = ssh.calls[0]
        assert command[0] == "ssh"
        assert _control_path(command) is None
        assert command[command.index("-p") + 1] == "2222"
        assert "deploy@10.0.0.5" in command

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_returned(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(2, "", "ls: cannot access 'x'"))
        manager, _ = _manager(registry, config, ssh)
        result = await manager.execute("agent", "ls x")
        assert result.exit_code == 2
        assert "cannot access" in result.stderr

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(255, "", "ssh: connect to host x: Connection refused"))
        manager, _ = _manager(registry, config, ssh)
        with pytest.raises(RemoteConnectionError):
            await manager.execute("agent", "uptime")

    @pytest.mark.asyncio
    async def test_command_timeout_keeps_master(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(124, "partial", "[timeout after 1s]", timed_out=True))
        manager, _ = _manager(registry, config, ssh)
        result = await manager.execute("pw", "sleep 100", timeout=1)
        assert result.timed_out
        assert result.exit_code == 124
        assert manager.is_active("pw")
        assert not any("-O" in c for c in ssh.calls)

    @pytest.mark.asyncio
    async def test_stale_socket_is_replaced(self, registry, config):
        answers = [
            ProcessResult(255, "", "Control socket connect(/x/ssh.sock): Connection refused"),
            ProcessResult(0, "up 3 days\n", ""),
        ]
        ssh = FakeSSH(respond=lambda args: answers.pop(0))
        manager, secrets = _manager(registry, config, ssh)
        manager.socket_path("pw").parent.mkdir(parents=True, exist_ok=True)
        manager.socket_path("pw").touch()

        result = await manager.execute("pw", "uptime")
        assert result.stdout == "up 3 days\n"
        assert len(ssh.master_calls) == 1
        assert secrets.prompts == 1
        assert manager.is_active("pw")

    @pytest.mark.asyncio
    async def test_unknown_remote(self, registry, config):
        manager, _ = _manager(registry, config, FakeSSH())
        with pytest.raises(ConfigError, match="Unknown remote"):
            await manager.execute("ghost", "uptime")

    @pytest.mark.asyncio
    async def test_connection_test(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(0, "pls-connection-test\n", ""))
        manager, _ = _manager(registry, config, ssh)
        assert await manager.test_connection("agent") == (True, "connection ok")

    @pytest.mark.asyncio
    async def test_connection_test_failure_does_not_raise(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(255, "", "Permission denied (publickey)."))
        manager, _ = _manager(registry, config, ssh)
        ok, message = await manager.test_connection("agent")
        assert not ok
        assert "authentication failed" in message


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class TestClose:
    @pytest.mark.asyncio
    async def test_close_without_master_is_noop(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh)
        await manager.close("pw")
        await manager.close("pw")
        assert ssh.calls == []

    @pytest.mark.asyncio
    async def test_close_removes_socket(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh)
        await manager.execute("pw", "uptime")
        await manager.close("pw")
        assert not manager.is_active("pw")
        exit_call = ssh.calls[-1]
        assert exit_call[exit_call.index("-O") + 1] == "exit"

    @pytest.mark.asyncio
    async def test_close_tolerates_dead_master(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(255, "", "Control socket connect: No such file"))
        manager, _ = _manager(registry, config, ssh)
        manager.socket_path("pw").parent.mkdir(parents=True, exist_ok=True)
        manager.socket_path("pw").touch()
        await manager.close("pw")
        assert manager.state("pw") == ConnectionState.ABSENT

    @pytest.mark.asyncio
    async def test_close_all(self, registry, config):
        ssh = FakeSSH()
        manager, _ = _manager(registry, config, ssh)
        await manager.execute("pw", "uptime")
        manager.socket_path("agent").touch()
        await manager.close_all()
        assert not manager.is_active("pw")
        assert not manager.is_active("agent")

    @pytest.mark.asyncio
    async def test_check_discards_dead_socket(self, registry, config):
        ssh = FakeSSH(respond=lambda args: ProcessResult(255, "", "Control socket connect: Connection refused"))
        manager, _ = _manager(registry, config, ssh)
        manager.socket_path("pw").parent.mkdir(parents=True, exist_ok=True)
        manager.socket_path("pw").touch()
        assert not await manager.check("pw")
        assert not manager.is_active("pw")
