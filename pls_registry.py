"""Remote registry: named SSH targets persisted in one JSON document.

Pure data access. Nothing here touches the network; the connection
manager and the history store own everything derived from a target
except its data directory, which is removed together with the entry.
"""

import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from pls_audit import audit
from pls_config import AppConfig
from pls_errors import ConfigError, PersistenceError

logger = logging.getLogger("pls-registry")

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_SSH_PORT = 22


class AuthMode(Enum):
    KEY = "key"
    PASSWORD = "password"
    AGENT = "agent"


@dataclass
class RemoteTarget:
    name: str
    host: str
    user: str
    port: int = DEFAULT_SSH_PORT
    auth_mode: AuthMode = AuthMode.AGENT
    key_path: str | None = None
    work_dir: str | None = None

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"

    @property
    def needs_secret(self) -> bool:
        return self.auth_mode == AuthMode.PASSWORD

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "host": self.host,
            "user": self.user,
            "port": self.port,
            "authMode": self.auth_mode.value,
        }
        if self.key_path:
            data["key"] = self.key_path
        if self.work_dir:
            data["workDir"] = self.work_dir
        return data

    @classmethod
    def from_dict(cls, name: str, data: Any) -> "RemoteTarget":
        if not isinstance(data, dict):
            raise ConfigError(f"Remote '{name}' is not an object", key=name)
        host = data.get("host")
        user = data.get("user")
        if not isinstance(host, str) or not host or not isinstance(user, str) or not user:
            raise ConfigError(f"Remote '{name}' needs non-empty 'host' and 'user'", key=name)
        port = data.get("port", DEFAULT_SSH_PORT)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
            raise ConfigError(f"Remote '{name}' has invalid port {port!r}", key=name)

        mode_str = data.get("authMode")
        if mode_str is None:
            # documents written before authMode existed
            if data.get("password"):
                mode_str = AuthMode.PASSWORD.value
            elif data.get("key"):
                mode_str = AuthMode.KEY.value
            else:
                mode_str = AuthMode.AGENT.value
        try:
            auth_mode = AuthMode(mode_str)
        except ValueError:
            raise ConfigError(
                f"Remote '{name}' has invalid authMode '{mode_str}'. "
                f"Valid options: {', '.join(m.value for m in AuthMode)}",
                key=name,
            )
        return cls(
            name=name,
            host=host,
            user=user,
            port=port,
            auth_mode=auth_mode,
            key_path=data.get("key") or None,
            work_dir=data.get("workDir") or None,
        )


def parse_host_string(host_str: str) -> tuple[str, str, int]:
    """Split ``user@host[:port]`` into (user, host, port)."""
    user = ""
    host = host_str.strip()
    port = DEFAULT_SSH_PORT
    if "@" in host:
        user, host = host.split("@", 1)
    if ":" in host:
        head, _, port_str = host.rpartition(":")
        if port_str.isdigit():
            port = int(port_str)
            host = head
    return user, host, port


class RemoteRegistry:
    """CRUD over ``<data_dir>/remotes.json``."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.path = config.registry_path

    # --- persistence ---

    def _load(self) -> dict[str, Any]:
        empty: dict[str, Any] = {"remotes": {}, "default": None}
        if not self.path.exists():
            return empty
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"registry {self.path} unreadable, treating as empty: {e}")
            return empty
        if not isinstance(raw, dict) or not isinstance(raw.get("remotes", {}), dict):
            logger.warning(f"registry {self.path} has unexpected shape, treating as empty")
            return empty
        return {"remotes": dict(raw.get("remotes", {})), "default": raw.get("default")}

    def _save(self, doc: dict[str, Any]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".remotes-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError as e:
            raise PersistenceError(f"cannot write registry {self.path}: {e}", path=str(self.path)) from e

    # --- queries ---

    def all(self) -> dict[str, RemoteTarget]:
        targets: dict[str, RemoteTarget] = {}
        for name, data in self._load()["remotes"].items():
            try:
                targets[name] = RemoteTarget.from_dict(name, data)
            except ConfigError as e:
                logger.warning(f"skipping remote '{name}': {e}")
        return targets

    def get(self, name: str) -> RemoteTarget | None:
        return self.all().get(name)

    def require(self, name: str) -> RemoteTarget:
        targets = self.all()
        if name not in targets:
            available = ", ".join(sorted(targets)) or "(none)"
            raise ConfigError(f"Unknown remote '{name}'. Available remotes: {available}", key=name)
        return targets[name]

    def validate(self, names: list[str]) -> list[RemoteTarget]:
        """Resolve every name or fail with all unknown names listed."""
        targets = self.all()
        unknown = [n for n in names if n not in targets]
        if unknown:
            raise ConfigError(f"Unknown remotes: {', '.join(unknown)}", key=unknown[0])
        return [targets[n] for n in names]

    @property
    def default(self) -> str | None:
        name = self._load()["default"]
        return name if isinstance(name, str) and self.get(name) else None

    def remote_dir(self, name: str) -> Path:
        return self.config.remote_dir(name)

    # --- mutations ---

    def add(
        self,
        name: str,
        host_str: str,
        key: str | None = None,
        password: bool = False,
    ) -> RemoteTarget:
        if not name or not name.strip():
            raise ConfigError("Remote name must not be empty")
        if not NAME_PATTERN.match(name):
            raise ConfigError(
                f"Invalid remote name '{name}': use letters, digits, '_' and '-' only",
                key=name,
            )
        user, host, port = parse_host_string(host_str)
        if not host:
            raise ConfigError("Host must not be empty", key=name)
        if not user:
            raise ConfigError("User is required, use the user@host form", key=name)
        if key and not Path(key).expanduser().exists():
            raise ConfigError(f"Key file not found: {key}", key=name)

        doc = self._load()
        if name in doc["remotes"]:
            raise ConfigError(f"Remote '{name}' already exists; remove it first or pick another name", key=name)

        if password:
            auth_mode = AuthMode.PASSWORD
        elif key:
            auth_mode = AuthMode.KEY
        else:
            auth_mode = AuthMode.AGENT
        target = RemoteTarget(
            name=name, host=host, user=user, port=port,
            auth_mode=auth_mode, key_path=key or None,
        )
        doc["remotes"][name] = target.to_dict()
        self._save(doc)
        self.remote_dir(name).mkdir(parents=True, exist_ok=True)
        logger.info(f"{name}: registered {target.destination}:{port} ({auth_mode.value})")
        audit("remote_added", remote=name, host=host, user=user, port=port, auth_mode=auth_mode.value)
        return target

    def remove(self, name: str) -> bool:
        """Delete the entry and its data directory (history, caches, socket)."""
        doc = self._load()
        if name not in doc["remotes"]:
            return False
        del doc["remotes"][name]
        if doc.get("default") == name:
            doc["default"] = None
        self._save(doc)
        data_dir = self.remote_dir(name)
        if data_dir.exists():
            shutil.rmtree(data_dir)
        logger.info(f"{name}: removed")
        audit("remote_removed", remote=name)
        return True

    def set_work_dir(self, name: str, work_dir: str | None) -> RemoteTarget:
        """Set the remote working directory; ``""``, ``"-"`` or None clear it."""
        doc = self._load()
        if name not in doc["remotes"]:
            raise ConfigError(f"Unknown remote '{name}'", key=name)
        target = RemoteTarget.from_dict(name, doc["remotes"][name])
        target.work_dir = None if not work_dir or work_dir == "-" else work_dir
        doc["remotes"][name] = target.to_dict()
        self._save(doc)
        return target

    def get_work_dir(self, name: str) -> str | None:
        target = self.get(name)
        return target.work_dir if target else None

    def set_default(self, name: str | None) -> None:
        doc = self._load()
        if name is not None and name not in doc["remotes"]:
            raise ConfigError(f"Unknown remote '{name}'", key=name)
        doc["default"] = name
        self._save(doc)
