#!/usr/bin/env python3
"""
pls: natural language to shell commands, locally or across an SSH fleet.

  pls run "find the biggest log files"            # this machine
  pls run -r web1 "restart nginx"                 # one remote, multi-step
  pls run -r web1 -r db1 "show disk usage"        # batch, one command per host
  pls remote add web1 deploy@10.0.0.5:2222 --key ~/.ssh/id_ed25519
  pls history show -r web1
  pls serve                                       # MCP stdio server
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

from pls_audit import setup_logging
from pls_batch import BatchOrchestrator, BatchPlan, BatchResult
from pls_config import AppConfig, load_config
from pls_connections import ConnectionManager
from pls_errors import PlsError
from pls_executor import StepExecutor
from pls_generation import CliPlanGenerator, MultiStepPlan, PlanGenerator, SingleStepPlan
from pls_history import (
    HistoryStore,
    clear_remote_shell_history,
    fetch_remote_shell_history,
    local_shell_history,
)
from pls_orchestrator import Confirmation, MultiStepOrchestrator, RunState
from pls_registry import RemoteRegistry
from pls_secrets import SecretProvider, TTYSecretProvider
from pls_sysinfo import ContextBuilder, collect_remote_sysinfo, format_remote_sysinfo

logger = logging.getLogger("pls")


@dataclass
class Services:
    config: AppConfig
    registry: RemoteRegistry
    connections: ConnectionManager
    history: HistoryStore
    executor: StepExecutor
    context_builder: ContextBuilder
    generator: PlanGenerator
    orchestrator: MultiStepOrchestrator
    batch: BatchOrchestrator


def build_services(
    config: AppConfig,
    secret_provider: SecretProvider,
    generator: PlanGenerator | None = None,
) -> Services:
    registry = RemoteRegistry(config)
    connections = ConnectionManager(registry, config, secret_provider)
    history = HistoryStore(config)
    executor = StepExecutor(connections, config)
    context_builder = ContextBuilder(config, registry, connections, history)
    generator = generator or CliPlanGenerator(config.generator, timeout=config.generator_timeout)
    return Services(
        config=config,
        registry=registry,
        connections=connections,
        history=history,
        executor=executor,
        context_builder=context_builder,
        generator=generator,
        orchestrator=MultiStepOrchestrator(generator, executor, history, context_builder, config),
        batch=BatchOrchestrator(registry, connections, generator, history, context_builder, config),
    )


# ---------------------------------------------------------------------------
# Terminal helpers
# ---------------------------------------------------------------------------

def _stream_output(stream: str, text: str) -> None:
    out = sys.stderr if stream == "stderr" else sys.stdout
    out.write(text)
    out.flush()


async def _ask(prompt: str) -> str:
    try:
        return (await asyncio.to_thread(input, prompt)).strip()
    except EOFError:
        return ""


async def _confirm_interactive(index: int, plan: SingleStepPlan | MultiStepPlan) -> Confirmation:
    print()
    if isinstance(plan, MultiStepPlan) or index > 1:
        print(f"Step {index}: {plan.reasoning}" if plan.reasoning else f"Step {index}")
    print(f"  $ {plan.command}")
    answer = (await _ask("Run it? [y]es / [e]dit / [N]o: ")).lower()
    if answer in ("y", "yes"):
        return Confirmation(approved=True)
    if answer in ("e", "edit"):
        edited = await _ask("command> ")
        return Confirmation(approved=True, command=edited or None)
    return Confirmation(approved=False)


async def _confirm_auto(index: int, plan: SingleStepPlan | MultiStepPlan) -> Confirmation:
    print(f"\n[step {index}] $ {plan.command}")
    return Confirmation(approved=True)


def _print_batch_plans(plans: list[BatchPlan]) -> None:
    for plan in plans:
        if plan.ok:
            print(f"  {plan.target:<16} $ {plan.final_command}")
        else:
            print(f"  {plan.target:<16} [no command] {plan.error}")


def _print_batch_results(results: list[BatchResult]) -> None:
    for result in results:
        print(f"\n=== {result.target} ===")
        if result.error:
            print(f"[error] {result.error}")
            continue
        print(f"$ {result.command}")
        if result.output:
            print(result.output.rstrip())
        print("[ok]" if result.exit_code == 0 else f"[exit code: {result.exit_code}]")
    failed = sum(1 for r in results if not r.ok)
    print(f"\n{len(results) - failed}/{len(results)} host(s) succeeded")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def cmd_run(services: Services, args: argparse.Namespace) -> int:
    prompt = " ".join(args.prompt).strip()
    if not prompt:
        print("Describe what you want to do, e.g. pls run \"compress the logs directory\"", file=sys.stderr)
        return 1

    targets = args.remote or []
    if not targets and not args.local and services.registry.default:
        targets = [services.registry.default]

    if len(targets) > 1:
        return await _run_batch(services, targets, prompt, args.yes)

    target = targets[0] if targets else None
    if target:
        services.registry.require(target)
    result = await services.orchestrator.run(
        prompt,
        target=target,
        confirm=_confirm_auto if args.yes else _confirm_interactive,
        on_output=_stream_output,
        max_steps=args.max_steps,
    )
    print()
    if result.state == RunState.ABORTED:
        print(f"aborted: {result.reason}", file=sys.stderr)
        return 1
    last = result.steps[-1]
    if last.exit_code != 0:
        print(f"[exit code: {last.exit_code}]", file=sys.stderr)
        return 1
    if len(result.steps) > 1:
        print(f"done, {len(result.steps)} steps")
    return 0


async def _run_batch(services: Services, targets: list[str], prompt: str, yes: bool) -> int:
    print(f"Planning on {len(targets)} hosts...")
    plans = await services.batch.run_batch(targets, prompt)
    _print_batch_plans(plans)
    if not any(p.ok for p in plans):
        print("no host received a command", file=sys.stderr)
        return 1
    if not yes:
        answer = (await _ask("Run on all hosts with a command? [y/N]: ")).lower()
        if answer not in ("y", "yes"):
            print("cancelled")
            return 1
    results = await services.batch.execute_batch(plans, prompt)
    _print_batch_results(results)
    return 0 if all(r.ok for r in results) else 1


async def cmd_remote(services: Services, args: argparse.Namespace) -> int:
    registry = services.registry
    action = args.remote_action

    if action == "add":
        target = registry.add(args.name, args.host, key=args.key, password=args.password)
        print(f"added {target.name}: {target.destination}:{target.port} ({target.auth_mode.value})")
    elif action == "list":
        targets = registry.all()
        if not targets:
            print("no remotes registered; add one with: pls remote add <name> user@host")
            return 0
        default = registry.default
        for target in targets.values():
            marks = []
            if target.name == default:
                marks.append("default")
            if services.connections.is_active(target.name):
                marks.append("connected")
            if target.work_dir:
                marks.append(f"workdir={target.work_dir}")
            suffix = f"  [{', '.join(marks)}]" if marks else ""
            print(f"  {target.name:<16} {target.destination}:{target.port} ({target.auth_mode.value}){suffix}")
    elif action == "remove":
        await services.connections.close(args.name)
        if not registry.remove(args.name):
            print(f"no remote named '{args.name}'", file=sys.stderr)
            return 1
        print(f"removed {args.name}")
    elif action == "workdir":
        if args.dir is None:
            print(registry.require(args.name).work_dir or "(not set)")
        else:
            target = registry.set_work_dir(args.name, args.dir)
            print(f"{target.name}: working directory {target.work_dir or 'cleared'}")
    elif action == "default":
        if args.name is None:
            print(registry.default or "(none)")
        else:
            registry.set_default(None if args.name == "-" else args.name)
    elif action == "test":
        ok, message = await services.connections.test_connection(args.name)
        print(f"{args.name}: {message}")
        return 0 if ok else 1
    elif action == "close":
        if args.name:
            await services.connections.close(args.name)
        else:
            await services.connections.close_all()
    elif action == "sysinfo":
        target = registry.require(args.name)
        info = await collect_remote_sysinfo(services.connections, args.name, force=args.refresh)
        print(format_remote_sysinfo(target, info))
    return 0


async def cmd_history(services: Services, args: argparse.Namespace) -> int:
    scope = args.remote
    if scope:
        services.registry.require(scope)
    if args.action == "clear":
        services.history.clear(scope)
        print("history cleared")
        return 0
    records = services.history.list(scope)
    if not records:
        print("no history yet")
        return 0
    for i, record in enumerate(records, 1):
        print(f"{i:>3}. {record.user_prompt}")
        if record.user_modified and record.ai_generated_command:
            print(f"     AI:   {record.ai_generated_command}")
            print(f"     ran:  {record.command} {record.status}")
        else:
            print(f"     -> {record.command or '(none)'} {record.status}")
        print(f"     {record.timestamp}")
    print(f"\nhistory file: {services.history.path(scope)}")
    return 0


async def cmd_shell_history(services: Services, args: argparse.Namespace) -> int:
    scope = args.remote
    if args.action == "clear":
        if scope:
            services.registry.require(scope)
            await clear_remote_shell_history(services.connections, services.history, scope)
        else:
            services.history.shell_log().clear()
        print("shell history cleared")
        return 0
    if scope:
        services.registry.require(scope)
        items = await fetch_remote_shell_history(services.connections, services.history, scope)
    else:
        items = local_shell_history(services.config, services.history)
    if not items:
        print("no shell history")
        return 0
    for i, item in enumerate(items, 1):
        status = "ok" if item.exit == 0 else f"exit {item.exit}"
        print(f"{i:>3}. {item.cmd}  ({status})")
    return 0


COMMANDS = {
    "run": cmd_run,
    "remote": cmd_remote,
    "history": cmd_history,
    "shell-history": cmd_shell_history,
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pls", description="Natural language to shell commands")
    parser.add_argument("--config", type=Path, help="config file (default: <data dir>/config.yaml)")
    parser.add_argument("--data-dir", type=Path, help="data directory (default: ~/.please or $PLS_HOME)")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="-v for info logs, -vv for debug")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="turn a request into commands and run them")
    run.add_argument("prompt", nargs="+")
    run.add_argument("-r", "--remote", action="append", help="remote name; repeat for a batch run")
    run.add_argument("--local", action="store_true", help="run here even if a default remote is set")
    run.add_argument("-y", "--yes", action="store_true", help="do not ask before running commands")
    run.add_argument("--max-steps", type=int, help="step ceiling for multi-step runs")

    remote = sub.add_parser("remote", help="manage remote hosts")
    rsub = remote.add_subparsers(dest="remote_action", required=True)
    add = rsub.add_parser("add", help="register a remote")
    add.add_argument("name")
    add.add_argument("host", help="user@host[:port]")
    add.add_argument("--key", help="private key file")
    add.add_argument("--password", action="store_true", help="authenticate with a password (needs sshpass)")
    rsub.add_parser("list", help="list remotes")
    rm = rsub.add_parser("remove", help="remove a remote and its history")
    rm.add_argument("name")
    wd = rsub.add_parser("workdir", help="show or set the remote working directory ('-' clears)")
    wd.add_argument("name")
    wd.add_argument("dir", nargs="?")
    default = rsub.add_parser("default", help="show or set the default remote ('-' clears)")
    default.add_argument("name", nargs="?")
    test = rsub.add_parser("test", help="test the connection")
    test.add_argument("name")
    close = rsub.add_parser("close", help="close the master connection (all if no name)")
    close.add_argument("name", nargs="?")
    sysinfo = rsub.add_parser("sysinfo", help="show the remote's system info")
    sysinfo.add_argument("name")
    sysinfo.add_argument("--refresh", action="store_true")

    for name, help_text in (("history", "pls command history"), ("shell-history", "terminal activity")):
        hist = sub.add_parser(name, help=help_text)
        hist.add_argument("action", nargs="?", choices=["show", "clear"], default="show")
        hist.add_argument("-r", "--remote", help="remote name (default: this machine)")

    sub.add_parser("serve", help="run the MCP stdio server")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config, data_dir=args.data_dir)
    except PlsError as e:
        print(f"pls: {e}", file=sys.stderr)
        return 1

    if args.command == "serve":
        import server

        setup_logging(config.data_dir, logging.DEBUG if args.verbose > 1 else logging.INFO)
        server.serve(config)
        return 0

    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    setup_logging(config.data_dir, level)
    services = build_services(config, TTYSecretProvider())
    try:
        return asyncio.run(COMMANDS[args.command](services, args))
    except PlsError as e:
        print(f"pls: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
