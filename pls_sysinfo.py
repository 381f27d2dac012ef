"""System information for generation context, local and per remote.

Both kinds are cached for ``sysinfo_ttl_days``; a missing, expired or
corrupt cache is simply re-detected.
"""

import asyncio
import getpass
import json
import logging
import os
import platform
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pls_config import AppConfig
from pls_connections import ConnectionManager
from pls_errors import PersistenceError, RemoteConnectionError
from pls_history import (
    HistoryStore,
    ShellHistoryItem,
    fetch_remote_shell_history,
    format_shell_history,
    local_shell_history,
)
from pls_registry import RemoteRegistry, RemoteTarget

logger = logging.getLogger("pls-sysinfo")

CACHE_VERSION = 1
PROBE_TIMEOUT = 30
PROBE_SCRIPT = "\n".join([
    'echo "OS:$(uname -s)"',
    'echo "OS_VERSION:$(uname -r)"',
    'echo "SHELL:$(basename "$SHELL")"',
    'echo "HOSTNAME:$(hostname)"',
])

PACKAGE_MANAGERS = [
    ("brew", "brew"), ("apt", "apt-get"), ("dnf", "dnf"), ("yum", "yum"),
    ("pacman", "pacman"), ("zypper", "zypper"), ("apk", "apk"),
]
TOOLS_TO_CHECK = [
    "eza", "fd", "fdfind", "rg", "ag", "bat", "batcat", "fzf", "jq", "yq",
    "pnpm", "yarn", "bun", "npm", "uv", "poetry", "pip", "cargo", "go",
    "docker", "podman", "kubectl", "helm",
    "git", "gh", "make", "cmake",
    "curl", "wget", "rsync", "ssh", "tmux",
]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _is_fresh(cached_at: str, ttl_days: int) -> bool:
    try:
        when = datetime.fromisoformat(cached_at)
    except (TypeError, ValueError):
        return False
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return _now() - when < timedelta(days=ttl_days)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"ignoring unreadable cache {path}: {e}")
        return None


def _write_json(path: Path, data: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}", path=str(path)) from e


# ---------------------------------------------------------------------------
# Remote
# ---------------------------------------------------------------------------

@dataclass
class RemoteSysInfo:
    os: str = "unknown"
    os_version: str = "unknown"
    shell: str = "bash"
    hostname: str = "unknown"
    cached_at: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "os": self.os,
            "osVersion": self.os_version,
            "shell": self.shell,
            "hostname": self.hostname,
            "cachedAt": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteSysInfo | None":
        if not isinstance(data, dict) or not all(isinstance(data.get(k), str) for k in ("os", "cachedAt")):
            return None
        return cls(
            os=data["os"],
            os_version=str(data.get("osVersion", "unknown")),
            shell=str(data.get("shell", "bash")),
            hostname=str(data.get("hostname", "unknown")),
            cached_at=data["cachedAt"],
        )


def parse_probe_output(stdout: str) -> dict[str, str]:
    info = {}
    for line in stdout.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            info[key.strip()] = value.strip()
    return info


def sysinfo_cache_path(config: AppConfig, name: str) -> Path:
    return config.remote_dir(name) / "sysinfo.json"


def cached_remote_sysinfo(config: AppConfig, name: str) -> RemoteSysInfo | None:
    return RemoteSysInfo.from_dict(_read_json(sysinfo_cache_path(config, name)))


async def collect_remote_sysinfo(
    connections: ConnectionManager,
    name: str,
    force: bool = False,
) -> RemoteSysInfo:
    """Cached system info for ``name``, probing the host when stale.

    Raises:
        RemoteConnectionError: the probe could not run.
    """
    config = connections.config
    if not force:
        cached = cached_remote_sysinfo(config, name)
        if cached and _is_fresh(cached.cached_at, config.sysinfo_ttl_days):
            return cached

    logger.info(f"{name}: probing system info")
    result = await connections.execute(name, PROBE_SCRIPT, timeout=PROBE_TIMEOUT)
    if result.exit_code != 0:
        raise RemoteConnectionError(
            f"{name}: system info probe failed (exit {result.exit_code}): {result.stderr.strip()}",
            target=name,
        )
    info = parse_probe_output(result.stdout)
    sysinfo = RemoteSysInfo(
        os=info.get("OS") or "unknown",
        os_version=info.get("OS_VERSION") or "unknown",
        shell=info.get("SHELL") or "bash",
        hostname=info.get("HOSTNAME") or "unknown",
        cached_at=_now().isoformat(),
    )
    _write_json(sysinfo_cache_path(config, name), sysinfo.to_dict())
    return sysinfo


def format_remote_sysinfo(target: RemoteTarget, info: RemoteSysInfo) -> str:
    lines = [
        f"Remote host: {target.name} ({target.destination})",
        f"OS: {info.os} {info.os_version}",
        f"Shell: {info.shell}",
        f"Hostname: {info.hostname}",
    ]
    if target.work_dir:
        lines.append(f"Working directory: {target.work_dir} (commands run after cd into it)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------

@dataclass
class StaticSystemInfo:
    os: str
    arch: str
    shell: str
    user: str
    package_manager: str
    available_commands: list[str] = field(default_factory=list)


def detect_package_manager() -> str:
    for name, binary in PACKAGE_MANAGERS:
        if shutil.which(binary):
            return name
    return "unknown"


def detect_static_info(shell: str) -> StaticSystemInfo:
    return StaticSystemInfo(
        os=platform.system().lower(),
        arch=platform.machine(),
        shell=os.path.basename(shell),
        user=getpass.getuser(),
        package_manager=detect_package_manager(),
        available_commands=[cmd for cmd in TOOLS_TO_CHECK if shutil.which(cmd)],
    )


def get_static_info(config: AppConfig, refresh: bool = False) -> StaticSystemInfo:
    path = config.data_dir / "system_cache.json"
    if not refresh:
        cache = _read_json(path)
        if isinstance(cache, dict) and _is_fresh(cache.get("cachedAt", ""), config.sysinfo_ttl_days):
            try:
                return StaticSystemInfo(**cache["static"])
            except (KeyError, TypeError):
                logger.warning(f"ignoring malformed cache {path}")

    info = detect_static_info(config.shell)
    _write_json(path, {
        "version": CACHE_VERSION,
        "cachedAt": _now().isoformat(),
        "expiresInDays": config.sysinfo_ttl_days,
        "static": asdict(info),
    })
    return info


def format_local_sysinfo(info: StaticSystemInfo, cwd: str) -> str:
    lines = [
        f"OS: {info.os}, Arch: {info.arch}, Shell: {info.shell}, User: {info.user}",
        f"Package manager: {info.package_manager}, CWD: {cwd}",
    ]
    if info.available_commands:
        lines.append(f"Available tools (not exhaustive): {', '.join(info.available_commands)}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Generation context
# ---------------------------------------------------------------------------

@dataclass
class TargetContext:
    name: str | None
    system_text: str
    history_text: str
    sys_info: RemoteSysInfo | StaticSystemInfo | None = None
    shell_history: list[ShellHistoryItem] = field(default_factory=list)


class ContextBuilder:
    """Assembles system and history text for one target.

    Shell activity is preferred as history context when there is any;
    otherwise the pls command history of that scope is used.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: RemoteRegistry,
        connections: ConnectionManager,
        history: HistoryStore,
    ):
        self.config = config
        self.registry = registry
        self.connections = connections
        self.history = history

    async def build(self, target: str | None = None) -> TargetContext:
        if target is None:
            return await asyncio.to_thread(self._build_local)
        return await self._build_remote(target)

    def _build_local(self) -> TargetContext:
        info = get_static_info(self.config)
        items = local_shell_history(self.config, self.history)
        history_text = format_shell_history(items, self.history) if items else self.history.format(None)
        return TargetContext(
            name=None,
            system_text=format_local_sysinfo(info, os.getcwd()),
            history_text=history_text,
            sys_info=info,
            shell_history=items,
        )

    async def _build_remote(self, name: str) -> TargetContext:
        target = self.registry.require(name)
        info = await collect_remote_sysinfo(self.connections, name)
        items = await fetch_remote_shell_history(self.connections, self.history, name)
        if items:
            history_text = format_shell_history(items, self.history, name)
        else:
            history_text = self.history.format(name)
        return TargetContext(
            name=name,
            system_text=format_remote_sysinfo(target, info),
            history_text=history_text,
            sys_info=info,
            shell_history=items,
        )
