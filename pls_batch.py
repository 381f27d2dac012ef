"""Batch orchestration: one intent, many remotes, one command each.

Planning and execution are separate calls so a caller can show every
host's command and confirm once. Each host is planned from its own context,
so heterogeneous hosts get different commands. Hosts never affect each
other: failures land in that host's plan or result, never as a
batch-wide exception.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from pls_config import AppConfig
from pls_connections import ConnectionManager
from pls_errors import PlsError
from pls_executor import wrap_command
from pls_generation import AbortPlan, GenerationRequest, PlanGenerator
from pls_history import HistoryRecord, HistoryStore
from pls_registry import RemoteRegistry
from pls_sysinfo import ContextBuilder, RemoteSysInfo

logger = logging.getLogger("pls-batch")

# (target, stream, text) -> None
BatchOutputObserver = Callable[[str, str, str], None]


@dataclass
class BatchPlan:
    target: str
    final_command: str
    sys_info: RemoteSysInfo | None = None
    reasoning: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.final_command)


@dataclass
class BatchResult:
    target: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    sys_info: RemoteSysInfo | None = None
    error: str | None = None
    timed_out: bool = False

    @property
    def output(self) -> str:
        return self.stdout + self.stderr

    @property
    def ok(self) -> bool:
        return self.error is None and self.exit_code == 0


class BatchOrchestrator:
    def __init__(
        self,
        registry: RemoteRegistry,
        connections: ConnectionManager,
        generator: PlanGenerator,
        history: HistoryStore,
        context_builder: ContextBuilder,
        config: AppConfig,
    ):
        self.registry = registry
        self.connections = connections
        self.generator = generator
        self.history = history
        self.context_builder = context_builder
        self.config = config

    def _semaphore(self) -> asyncio.Semaphore:
        return asyncio.Semaphore(self.config.batch_concurrency)

    async def run_batch(self, names: list[str], user_prompt: str) -> list[BatchPlan]:
        """Plan one command per remote.

        Raises:
            ConfigError: some names are unknown; nothing has been contacted.
        """
        names = list(dict.fromkeys(names))
        self.registry.validate(names)
        logger.info(f"batch: planning '{user_prompt}' on {len(names)} host(s)")
        sem = self._semaphore()

        async def _plan_one(name: str) -> BatchPlan:
            async with sem:
                try:
                    context = await self.context_builder.build(name)
                except PlsError as e:
                    logger.warning(f"{name}: context collection failed: {e}")
                    return BatchPlan(target=name, final_command="", error=str(e))
                request = GenerationRequest(
                    user_text=user_prompt,
                    system_context=context.system_text,
                    history_context=context.history_text,
                    multi_step=False,
                )
                try:
                    plan = await self.generator.generate(request)
                except PlsError as e:
                    logger.warning(f"{name}: generation failed: {e}")
                    return BatchPlan(target=name, final_command="", sys_info=context.sys_info, error=str(e))
            # continuation is ignored in batch mode, each host gets one command
            if isinstance(plan, AbortPlan):
                return BatchPlan(
                    target=name,
                    final_command="",
                    sys_info=context.sys_info,
                    reasoning=plan.reasoning,
                    error=plan.reasoning or "no command generated",
                )
            return BatchPlan(
                target=name,
                final_command=plan.command,
                sys_info=context.sys_info,
                reasoning=plan.reasoning,
            )

        return list(await asyncio.gather(*(_plan_one(n) for n in names)))

    async def execute_batch(
        self,
        plans: list[BatchPlan],
        user_prompt: str = "",
        timeout: float | None = None,
        on_output: BatchOutputObserver | None = None,
    ) -> list[BatchResult]:
        """Run every planned command concurrently; one result per plan, in plan order."""
        sem = self._semaphore()

        async def _execute_one(plan: BatchPlan) -> BatchResult:
            if not plan.ok:
                self._record(
                    plan, user_prompt, executed=False, reason="no_command",
                    output=plan.error or "no command generated",
                )
                return BatchResult(
                    target=plan.target,
                    command=plan.final_command,
                    exit_code=-1,
                    sys_info=plan.sys_info,
                    error=plan.error or "no command generated",
                )
            observer = (lambda stream, text: on_output(plan.target, stream, text)) if on_output else None
            work_dir = self.registry.get_work_dir(plan.target)
            async with sem:
                try:
                    result = await self.connections.execute(
                        plan.target,
                        wrap_command(plan.final_command, work_dir),
                        timeout=timeout,
                        on_output=observer,
                    )
                except PlsError as e:
                    logger.warning(f"{plan.target}: {e}")
                    self._record(plan, user_prompt, executed=False, reason="connection_error", output=str(e))
                    return BatchResult(
                        target=plan.target,
                        command=plan.final_command,
                        exit_code=-1,
                        sys_info=plan.sys_info,
                        error=str(e),
                    )
            self._record(plan, user_prompt, executed=True, exit_code=result.exit_code, output=result.output)
            return BatchResult(
                target=plan.target,
                command=plan.final_command,
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
                sys_info=plan.sys_info,
                timed_out=result.timed_out,
            )

        results = list(await asyncio.gather(*(_execute_one(p) for p in plans)))
        failed = sum(1 for r in results if not r.ok)
        logger.info(f"batch: {len(results) - failed}/{len(results)} host(s) succeeded")
        return results

    def _record(self, plan: BatchPlan, user_prompt: str, **fields) -> None:
        try:
            self.history.append(
                plan.target,
                HistoryRecord(user_prompt=user_prompt, command=plan.final_command, **fields),
            )
        except PlsError as e:
            logger.warning(f"{plan.target}: could not record history: {e}")
