"""Secret providers for password-mode remotes.

The connection manager asks for a secret at most once per master channel;
where it comes from (a TTY prompt, the environment, a test fixture) is the
provider's business.
"""

import getpass
import logging
import os
import re
import signal
import threading
from typing import Callable, Mapping, Protocol

from pls_errors import RemoteConnectionError, SecretPromptCancelled
from pls_registry import RemoteTarget

logger = logging.getLogger("pls-secrets")


class SecretProvider(Protocol):
    async def get_secret(self, target: RemoteTarget) -> str: ...


class TTYSecretProvider:
    """Prompts on the controlling terminal, on the event loop thread.

    While the prompt is open SIGINT raises KeyboardInterrupt into getpass
    (which restores echo) rather than cancelling the main task.
    """

    def __init__(self, prompt_fn: Callable[[str], str] = getpass.getpass):
        self.prompt_fn = prompt_fn

    def _prompt(self, prompt: str) -> str:
        if threading.current_thread() is not threading.main_thread():
            return self.prompt_fn(prompt)
        previous = signal.signal(signal.SIGINT, signal.default_int_handler)
        try:
            return self.prompt_fn(prompt)
        finally:
            signal.signal(signal.SIGINT, previous)

    async def get_secret(self, target: RemoteTarget) -> str:
        prompt = f"Password for {target.destination} ({target.name}): "
        try:
            return self._prompt(prompt)
        except (KeyboardInterrupt, EOFError):
            logger.info(f"{target.name}: password prompt cancelled")
            raise SecretPromptCancelled(f"{target.name}: password prompt cancelled", target=target.name)


class EnvSecretProvider:
    """Reads PLS_PASSWORD_<NAME> (name upper-cased, '-' mapped to '_')."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self.environ = os.environ if environ is None else environ

    @staticmethod
    def variable_for(name: str) -> str:
        return "PLS_PASSWORD_" + re.sub(r"[^A-Za-z0-9]", "_", name).upper()

    async def get_secret(self, target: RemoteTarget) -> str:
        var = self.variable_for(target.name)
        secret = self.environ.get(var)
        if not secret:
            raise RemoteConnectionError(
                f"{target.name}: password auth needs {var} to be set", target=target.name,
            )
        return secret


class StaticSecretProvider:
    def __init__(self, secrets: Mapping[str, str]):
        self.secrets = dict(secrets)
        self.prompts = 0

    async def get_secret(self, target: RemoteTarget) -> str:
        self.prompts += 1
        if target.name not in self.secrets:
            raise SecretPromptCancelled(f"{target.name}: no secret available", target=target.name)
        return self.secrets[target.name]
