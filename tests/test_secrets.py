"""Tests for pls_secrets.py."""
import signal
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from pls_errors import RemoteConnectionError, SecretPromptCancelled
from pls_registry import AuthMode, RemoteTarget
from pls_secrets import EnvSecretProvider, TTYSecretProvider

TARGET = RemoteTarget(name="db-1", host="10.0.0.7", user="admin", auth_mode=AuthMode.PASSWORD)


class TestTTYSecretProvider:
    @pytest.mark.asyncio
    async def test_returns_typed_secret(self):
        prompts = []

        def fake_getpass(prompt):
            prompts.append(prompt)
            return "s3cret"

        assert await TTYSecretProvider(fake_getpass).get_secret(TARGET) == "s3cret"
        assert prompts == ["Password for admin@10.0.0.7 (db-1): "]

    @pytest.mark.asyncio
    async def test_interrupt_cancels(self):
        def interrupted(prompt):
            raise KeyboardInterrupt

        with pytest.raises(SecretPromptCancelled, match="db-1"):
            await TTYSecretProvider(interrupted).get_secret(TARGET)

    @pytest.mark.asyncio
    async def test_eof_cancels(self):
        def closed(prompt):
            raise EOFError

        with pytest.raises(SecretPromptCancelled):
            await TTYSecretProvider(closed).get_secret(TARGET)

    @pytest.mark.asyncio
    async def test_sigint_raises_inside_prompt(self):
        seen = []

        def fake_getpass(prompt):
            seen.append(signal.getsignal(signal.SIGINT))
            return "x"

        before = signal.getsignal(signal.SIGINT)
        await TTYSecretProvider(fake_getpass).get_secret(TARGET)
        assert seen == [signal.default_int_handler]
        assert signal.getsignal(signal.SIGINT) is before


class TestEnvSecretProvider:
    def test_variable_name(self):
        assert EnvSecretProvider.variable_for("db-1") == "PLS_PASSWORD_DB_1"

    @pytest.mark.asyncio
    async def test_reads_environment(self):
        provider = EnvSecretProvider({"PLS_PASSWORD_DB_1": "hunter2"})
        assert await provider.get_secret(TARGET) == "hunter2"

    @pytest.mark.asyncio
    async def test_missing_variable(self):
        with pytest.raises(RemoteConnectionError, match="PLS_PASSWORD_DB_1"):
            await EnvSecretProvider({}).get_secret(TARGET)
