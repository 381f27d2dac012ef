"""Command history and shell-activity stores.

Two shapes on disk:

* ``history.json``: a JSON array of HistoryRecord objects per scope (local
  scope under the data dir, one per remote under ``remotes/<name>/``),
  capped FIFO at ``command_history_limit``.
* ``shell_history.jsonl``: one ShellHistoryItem per line, appended by the
  shell hook; a remote's local copy is the last snapshot fetched from it.

Reads never fail on bad data: a corrupt file or line just means fewer
records. Write failures raise PersistenceError.
"""

import json
import logging
import os
import re
import shlex
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from pls_config import AppConfig
from pls_connections import SSH_ERROR_EXIT, ConnectionManager
from pls_errors import PersistenceError, RemoteConnectionError

logger = logging.getLogger("pls-history")

TRUNCATION_MARK = "...(truncated)"
REMOTE_SHELL_HISTORY = "~/.please/shell_history.jsonl"
REMOTE_FETCH_TIMEOUT = 10

# command-line flags skipped when recovering the request from a `pls run` line
_PLS_VALUE_FLAGS = {"-r", "--remote", "--config", "--data-dir", "--max-steps"}
_PLS_GLOBAL_FLAGS = {"-v", "-vv", "--verbose", "--config", "--data-dir"}
_PLS_RUN_FLAGS = {"--local", "-y", "--yes"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_atomic(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except OSError as e:
        raise PersistenceError(f"cannot write {path}: {e}", path=str(path)) from e


def _unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise PersistenceError(f"cannot remove {path}: {e}", path=str(path)) from e


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class HistoryRecord:
    user_prompt: str
    command: str
    executed: bool
    exit_code: int | None = None
    output: str = ""
    ai_generated_command: str | None = None
    user_modified: bool = False
    timestamp: str = ""
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "userPrompt": self.user_prompt,
            "command": self.command,
            "userModified": self.user_modified,
            "executed": self.executed,
            "exitCode": self.exit_code,
            "output": self.output,
            "timestamp": self.timestamp,
        }
        if self.ai_generated_command is not None:
            data["aiGeneratedCommand"] = self.ai_generated_command
        if self.reason is not None:
            data["reason"] = self.reason
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "HistoryRecord | None":
        if not isinstance(data, dict):
            return None
        prompt, command = data.get("userPrompt"), data.get("command")
        exit_code = data.get("exitCode")
        if not isinstance(prompt, str) or not isinstance(command, str):
            return None
        if exit_code is not None and (isinstance(exit_code, bool) or not isinstance(exit_code, int)):
            return None
        return cls(
            user_prompt=prompt,
            command=command,
            executed=bool(data.get("executed", False)),
            exit_code=exit_code,
            output=str(data.get("output") or ""),
            ai_generated_command=data.get("aiGeneratedCommand"),
            user_modified=bool(data.get("userModified", False)),
            timestamp=str(data.get("timestamp") or ""),
            reason=data.get("reason"),
        )

    @property
    def status(self) -> str:
        if self.reason == "builtin":
            return "(contains a shell built-in, not executed)"
        if not self.executed:
            return "(declined by user)" if self.reason in (None, "declined") else f"(not executed: {self.reason})"
        return "ok" if self.exit_code == 0 else f"failed, exit {self.exit_code}"


@dataclass
class ShellHistoryItem:
    cmd: str
    exit: int
    time: str

    def to_dict(self) -> dict[str, Any]:
        return {"cmd": self.cmd, "exit": self.exit, "time": self.time}

    @classmethod
    def from_dict(cls, data: Any) -> "ShellHistoryItem | None":
        if not isinstance(data, dict) or not isinstance(data.get("cmd"), str):
            return None
        exit_code = data.get("exit", 0)
        if isinstance(exit_code, bool) or not isinstance(exit_code, int):
            return None
        return cls(cmd=data["cmd"], exit=exit_code, time=str(data.get("time") or ""))


def parse_shell_history_lines(lines: Iterable[str]) -> list[ShellHistoryItem]:
    items = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            item = ShellHistoryItem.from_dict(json.loads(line))
        except json.JSONDecodeError:
            item = None
        if item is None:
            logger.debug(f"skipping malformed shell history line: {line[:80]!r}")
            continue
        items.append(item)
    return items


# ---------------------------------------------------------------------------
# Command history (history.json)
# ---------------------------------------------------------------------------

class HistoryStore:
    """Per-scope command history. ``scope`` None is the local machine, else a remote name."""

    def __init__(self, config: AppConfig):
        self.config = config

    def path(self, scope: str | None) -> Path:
        if scope is None:
            return self.config.data_dir / "history.json"
        return self.config.remote_dir(scope) / "history.json"

    def list(self, scope: str | None = None) -> list[HistoryRecord]:
        path = self.path(scope)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"history {path} unreadable, ignoring it: {e}")
            return []
        if not isinstance(raw, list):
            logger.warning(f"history {path} is not a list, ignoring it")
            return []
        records = []
        for entry in raw:
            record = HistoryRecord.from_dict(entry)
            if record is None:
                logger.debug(f"skipping malformed history record in {path}")
                continue
            records.append(record)
        return records

    def append(self, scope: str | None, record: HistoryRecord) -> HistoryRecord:
        """Store ``record``, dropping the oldest records beyond the limit."""
        if not record.timestamp:
            record.timestamp = _now()
        limit = self.config.output_limit
        if len(record.output) > limit:
            record.output = record.output[:limit] + TRUNCATION_MARK
        records = self.list(scope)
        records.append(record)
        records = records[-self.config.command_history_limit:]
        _write_atomic(
            self.path(scope),
            json.dumps([r.to_dict() for r in records], indent=2, ensure_ascii=False),
        )
        return record

    def clear(self, scope: str | None = None) -> None:
        _unlink(self.path(scope))

    def find_by_prompt(self, prompt: str, scope: str | None = None) -> HistoryRecord | None:
        records = self.list(scope)
        normalized = prompt.strip().strip("\"'")
        for candidate in (prompt, normalized):
            for record in reversed(records):
                if record.user_prompt == candidate:
                    return record
        return None

    def format(self, scope: str | None = None) -> str:
        """Render the history as generation context, oldest first."""
        records = self.list(scope)
        if not records:
            return ""
        lines = []
        for i, record in enumerate(records, 1):
            if record.user_modified and record.ai_generated_command:
                line = (
                    f'{i}. "{record.user_prompt}" -> AI generated: {record.ai_generated_command} '
                    f"/ user changed it to: {record.command} {record.status}"
                )
            else:
                line = f'{i}. "{record.user_prompt}" -> {record.command} {record.status}'
            if record.executed and record.exit_code != 0 and record.output:
                line += f"\n   output: {record.output.splitlines()[0]}"
            lines.append(line)
        where = "on this machine" if scope is None else f"on {scope}"
        return f"Commands recently run through pls {where}:\n" + "\n".join(lines)

    # --- shell activity ---

    def shell_log(self, scope: str | None = None) -> "ShellHistoryLog":
        if scope is None:
            return ShellHistoryLog(self.config.data_dir / "shell_history.jsonl")
        return ShellHistoryLog(self.config.remote_dir(scope) / "shell_history.jsonl")


# ---------------------------------------------------------------------------
# Shell activity (shell_history.jsonl)
# ---------------------------------------------------------------------------

class ShellHistoryLog:
    def __init__(self, path: Path):
        self.path = path

    def read(self, limit: int | None = None) -> list[ShellHistoryItem]:
        try:
            text = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning(f"cannot read {self.path}: {e}")
            return []
        items = parse_shell_history_lines(text.splitlines())
        return items[-limit:] if limit else items

    def append(self, item: ShellHistoryItem) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(item.to_dict(), ensure_ascii=False) + "\n")
        except OSError as e:
            raise PersistenceError(f"cannot write {self.path}: {e}", path=str(self.path)) from e

    def write_snapshot(self, items: list[ShellHistoryItem]) -> None:
        _write_atomic(self.path, "".join(json.dumps(i.to_dict(), ensure_ascii=False) + "\n" for i in items))

    def clear(self) -> None:
        _unlink(self.path)


def _pls_prompt(cmd: str) -> str | None:
    """The request text of a ``pls run ...`` line, or None for anything else."""
    match = re.match(r"^(pls|please)\s+(.+)$", cmd.strip())
    if not match:
        return None
    try:
        words = shlex.split(match.group(2))
    except ValueError:
        words = match.group(2).split()
    while words and words[0] in _PLS_GLOBAL_FLAGS:
        words = words[2:] if words[0] in _PLS_VALUE_FLAGS else words[1:]
    if not words or words[0] != "run":
        return None
    prompt = []
    rest = words[1:]
    while rest:
        word = rest.pop(0)
        if word in _PLS_VALUE_FLAGS:
            rest = rest[1:]
        elif word not in _PLS_RUN_FLAGS:
            prompt.append(word)
    return " ".join(prompt) or None


def format_shell_history(
    items: list[ShellHistoryItem],
    store: HistoryStore | None = None,
    scope: str | None = None,
) -> str:
    """Render shell activity; ``pls <prompt>`` lines get the matching pls record."""
    if not items:
        return ""
    lines = []
    for i, item in enumerate(items, 1):
        status = "ok" if item.exit == 0 else f"failed, exit {item.exit}"
        prompt = _pls_prompt(item.cmd)
        record = store.find_by_prompt(prompt, scope) if prompt and store else None
        if prompt is None:
            lines.append(f"{i}. {item.cmd} {status}")
        elif record is None:
            lines.append(f'{i}. [pls] "{prompt}" {status}')
        elif record.user_modified and record.ai_generated_command:
            lines.append(
                f'{i}. [pls] "{prompt}" -> AI generated: {record.ai_generated_command} '
                f"/ user changed it to: {record.command} {record.status}"
            )
        elif record.executed:
            lines.append(f'{i}. [pls] "{prompt}" -> ran: {record.command} {record.status}')
        else:
            lines.append(f'{i}. [pls] "{prompt}" -> generated: {record.command} {record.status}')
    where = "in the user's terminal" if scope is None else f"in terminals on {scope}"
    return f"Commands recently run {where}:\n" + "\n".join(lines)


# ---------------------------------------------------------------------------
# Local fallback: the interactive shell's own history file
# ---------------------------------------------------------------------------

_ZSH_EXTENDED = re.compile(r"^:\s*(\d+):\d+;(.+)$")


def read_system_shell_history(
    shell: str,
    histfile: str | None = None,
    limit: int = 15,
    home: Path | None = None,
) -> list[ShellHistoryItem]:
    """Last ``limit`` commands from ~/.zsh_history or ~/.bash_history (exit always 0)."""
    home = home or Path.home()
    if "zsh" in shell:
        path = Path(histfile) if histfile else home / ".zsh_history"
    elif "bash" in shell:
        path = Path(histfile) if histfile else home / ".bash_history"
    else:
        return []
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        return []

    items = []
    for line in lines[-limit:]:
        match = _ZSH_EXTENDED.match(line)
        if match:
            when = datetime.fromtimestamp(int(match.group(1)), timezone.utc).isoformat()
            cmd = match.group(2).strip()
        else:
            when, cmd = "", line.strip()
        if cmd:
            items.append(ShellHistoryItem(cmd=cmd, exit=0, time=when))
    return items


def local_shell_history(config: AppConfig, store: HistoryStore) -> list[ShellHistoryItem]:
    """Hook log when enabled and non-empty, else the shell's history file."""
    if config.shell_hook:
        items = store.shell_log().read(config.shell_history_limit)
        if items:
            return items
    return read_system_shell_history(
        config.shell, os.environ.get("HISTFILE"), config.shell_history_limit,
    )


# ---------------------------------------------------------------------------
# Remote shell activity
# ---------------------------------------------------------------------------

async def fetch_remote_shell_history(
    connections: ConnectionManager,
    store: HistoryStore,
    name: str,
    limit: int | None = None,
) -> list[ShellHistoryItem]:
    """Live tail of the remote hook log, falling back to the last snapshot.

    A successful fetch replaces the snapshot. An unreachable host yields the
    snapshot; an empty list means "no history", never an error.
    """
    limit = limit or store.config.shell_history_limit
    snapshot = store.shell_log(name)
    try:
        result = await connections.execute(
            name,
            f"tail -n {int(limit)} {REMOTE_SHELL_HISTORY} 2>/dev/null || true",
            timeout=REMOTE_FETCH_TIMEOUT,
        )
    except RemoteConnectionError as e:
        logger.warning(f"{name}: live shell history unavailable, using cached snapshot: {e}")
        return snapshot.read(limit)

    if result.exit_code != 0:
        reason = "ssh failure" if result.exit_code == SSH_ERROR_EXIT else f"exit {result.exit_code}"
        logger.warning(f"{name}: shell history fetch failed ({reason}), using cached snapshot")
        return snapshot.read(limit)

    items = parse_shell_history_lines(result.stdout.splitlines())
    if items:
        snapshot.write_snapshot(items)
    return items


async def clear_remote_shell_history(
    connections: ConnectionManager,
    store: HistoryStore,
    name: str,
) -> None:
    await connections.execute(name, f"rm -f {REMOTE_SHELL_HISTORY}", timeout=REMOTE_FETCH_TIMEOUT)
    store.shell_log(name).clear()
