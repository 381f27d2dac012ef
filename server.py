#!/usr/bin/env python3
"""
pls MCP server: batch command planning and execution across registered remotes.

Runs over stdio. Remotes come from the pls registry (``pls remote add``).
Password-mode remotes cannot prompt here because stdin carries the protocol;
their passwords are read from PLS_PASSWORD_<NAME> environment variables.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from pls import Services, build_services
from pls_batch import BatchPlan
from pls_config import AppConfig, load_config
from pls_history import fetch_remote_shell_history, format_shell_history, local_shell_history
from pls_process import format_result
from pls_secrets import EnvSecretProvider

logger = logging.getLogger("pls-server")

MAX_INLINE_OUTPUT = 4000

_SERVICES: Services | None = None


def _services() -> Services:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = build_services(load_config(), EnvSecretProvider())
    return _SERVICES


def _truncate(text: str, max_len: int = MAX_INLINE_OUTPUT) -> tuple[str, bool]:
    """Truncate text, return (text, was_truncated)."""
    if len(text) <= max_len:
        return text, False
    return text[:max_len] + "\n... [truncated]", True


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def pls_lifespan(server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    services = _services()
    logger.info(f"pls: serving {len(services.registry.all())} remote(s)")
    try:
        yield {"services": services}
    finally:
        try:
            logger.info("pls: shutting down, closing master channels...")
            await services.connections.close_all()
        except Exception:
            logger.exception("pls: error during teardown")


mcp = FastMCP(
    "pls",
    instructions=(
        "pls turns a natural-language request into shell commands on registered SSH remotes.\n"
        "\n"
        "  pls_remotes        List remotes and whether a master connection is up.\n"
        "  pls_plan_batch     Generate one command per remote for a request (nothing runs).\n"
        "  pls_execute_batch  Run a command per remote concurrently; per-host results.\n"
        "  pls_history        Commands previously run through pls (local or per remote).\n"
        "  pls_history_clear  Clear that history.\n"
        "  pls_shell_history  Recent terminal activity (local or per remote).\n"
        "\n"
        "Plan first, show the commands to the user, then execute the approved ones.\n"
    ),
    lifespan=pls_lifespan,
)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def pls_remotes() -> str:
    """List registered remotes with address, auth mode, working directory and connection state."""
    services = _services()
    targets = services.registry.all()
    if not targets:
        return "No remotes registered. Add one with: pls remote add <name> user@host[:port]"
    default = services.registry.default
    lines = ["pls remotes", "=" * 55]
    for target in targets.values():
        state = services.connections.state(target.name).value
        line = f"  {target.name:12s} {target.destination}:{target.port} [{target.auth_mode.value}] {state}"
        if target.work_dir:
            line += f"  cwd={target.work_dir}"
        if target.name == default:
            line += "  (default)"
        lines.append(line)
    return "\n".join(lines)


@mcp.tool()
async def pls_plan_batch(remotes: list[str], prompt: str) -> str:
    """Generate one shell command per remote for a natural-language request.

    Each remote is planned from its own system info and history, so different
    hosts may get different commands. Nothing is executed.

    Args:
        remotes: Remote names (see pls_remotes). Unknown names fail the whole call.
        prompt: What to do, in natural language.
    """
    plans = await _services().batch.run_batch(remotes, prompt)
    return json.dumps(
        [
            {
                "remote": p.target,
                "command": p.final_command,
                "reasoning": p.reasoning,
                "os": p.sys_info.os if p.sys_info else None,
                "error": p.error,
            }
            for p in plans
        ],
        indent=2,
        ensure_ascii=False,
    )


@mcp.tool()
async def pls_execute_batch(commands: dict[str, str], prompt: str = "", timeout: int | None = None) -> str:
    """Run commands on several remotes concurrently.

    One host failing never affects the others; every remote gets a result.

    Args:
        commands: Mapping of remote name to the shell command to run there.
        prompt: The request the commands were generated for (recorded in history).
        timeout: Per-command timeout in seconds (default from config, usually 300).
    """
    services = _services()
    services.registry.validate(list(commands))
    plans = [BatchPlan(target=name, final_command=command) for name, command in commands.items()]
    results = await services.batch.execute_batch(plans, prompt, timeout=timeout)
    payload = []
    for r in results:
        preview, truncated = _truncate(format_result(r.stdout, r.stderr, r.exit_code))
        payload.append({
            "remote": r.target,
            "command": r.command,
            "success": r.ok,
            "exit_code": r.exit_code,
            "timed_out": r.timed_out,
            "output": preview if r.error is None else None,
            "truncated": truncated,
            "error": r.error,
        })
    return json.dumps(payload, indent=2, ensure_ascii=False)


@mcp.tool()
async def pls_history(remote: str | None = None) -> str:
    """Show commands previously run through pls.

    Args:
        remote: Remote name; omit for this machine.
    """
    services = _services()
    if remote:
        services.registry.require(remote)
    return services.history.format(remote) or "No history yet."


@mcp.tool()
async def pls_history_clear(remote: str | None = None) -> str:
    """Clear the pls command history.

    Args:
        remote: Remote name; omit for this machine.
    """
    services = _services()
    if remote:
        services.registry.require(remote)
    services.history.clear(remote)
    return f"[OK] history cleared for {remote or 'this machine'}"


@mcp.tool()
async def pls_shell_history(remote: str | None = None) -> str:
    """Show recent terminal activity.

    For a remote this is a live read of its shell-hook log, falling back to
    the last cached copy when the host is unreachable.

    Args:
        remote: Remote name; omit for this machine.
    """
    services = _services()
    if remote:
        services.registry.require(remote)
        items = await fetch_remote_shell_history(services.connections, services.history, remote)
    else:
        items = local_shell_history(services.config, services.history)
    return format_shell_history(items, services.history, remote) or "No shell history."


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def serve(config: AppConfig) -> None:
    global _SERVICES
    _SERVICES = build_services(config, EnvSecretProvider())
    mcp.run(transport="stdio")


if __name__ == "__main__":
    from pls_audit import setup_logging

    _config = load_config()
    setup_logging(_config.data_dir)
    serve(_config)
