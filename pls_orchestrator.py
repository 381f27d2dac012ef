"""Multi-step orchestration: generate, confirm, execute, feed back, repeat.

One run serves one user request against one target. Steps run strictly in
sequence; step N+1 is requested only with step N's result in the log. The
run always terminates: by the plan (no continuation), by an abort (the
generator gives up, a generation failure, a declined confirmation, a
built-in, a dead transport) or by the step ceiling.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from pls_config import AppConfig
from pls_errors import GenerationError, RemoteConnectionError
from pls_executor import ExecutionStep, StepExecutor, detect_builtins
from pls_generation import AbortPlan, GenerationRequest, MultiStepPlan, PlanGenerator, SingleStepPlan
from pls_history import HistoryRecord, HistoryStore
from pls_process import OutputObserver
from pls_sysinfo import ContextBuilder

logger = logging.getLogger("pls-orchestrator")


class RunState(Enum):
    REQUEST_PLAN = "request_plan"
    EXECUTE = "execute"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class Confirmation:
    approved: bool
    # set when the user edited the command before approving it
    command: str | None = None


ConfirmCallback = Callable[[int, SingleStepPlan | MultiStepPlan], Awaitable[Confirmation]]


@dataclass
class RunResult:
    state: RunState
    steps: list[ExecutionStep] = field(default_factory=list)
    reason: str = ""
    target: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE and bool(self.steps) and self.steps[-1].exit_code == 0


class MultiStepOrchestrator:
    def __init__(
        self,
        generator: PlanGenerator,
        executor: StepExecutor,
        history: HistoryStore,
        context_builder: ContextBuilder,
        config: AppConfig,
    ):
        self.generator = generator
        self.executor = executor
        self.history = history
        self.context_builder = context_builder
        self.config = config

    def _record(self, target: str | None, prompt: str, command: str, **fields) -> None:
        self.history.append(target, HistoryRecord(user_prompt=prompt, command=command, **fields))

    async def run(
        self,
        user_prompt: str,
        target: str | None = None,
        confirm: ConfirmCallback | None = None,
        on_output: OutputObserver | None = None,
        max_steps: int | None = None,
    ) -> RunResult:
        """Drive one request to DONE or ABORTED.

        Args:
            user_prompt: The natural-language request.
            target: Remote name, or None for this machine.
            confirm: Awaited once per plan before executing it. None approves everything.
            on_output: Receives (stream, text) chunks of each running step.
            max_steps: Step ceiling for this run (defaults to config.max_steps).
        """
        ceiling = max_steps or self.config.max_steps
        log: list[ExecutionStep] = []

        def aborted(reason: str) -> RunResult:
            logger.info(f"{target or 'local'}: run aborted after {len(log)} step(s): {reason}")
            return RunResult(RunState.ABORTED, list(log), reason, target)

        try:
            context = await self.context_builder.build(target)
        except RemoteConnectionError as e:
            return aborted(str(e))

        while True:
            # --- REQUEST_PLAN ---
            index = len(log) + 1
            request = GenerationRequest(
                user_text=user_prompt,
                system_context=context.system_text,
                history_context=context.history_text,
                execution_log=tuple(log),
                multi_step=True,
            )
            try:
                plan = await self.generator.generate(request)
            except GenerationError as e:
                self._record(
                    target, self._step_prompt(user_prompt, index, ""), "",
                    executed=False, reason="generation_failed", output=str(e),
                )
                return aborted(f"generation failed: {e}")

            if isinstance(plan, AbortPlan):
                reason = plan.reasoning or "the generator gave up without a reason"
                self._record(
                    target, self._step_prompt(user_prompt, index, plan.reasoning), "",
                    executed=False, reason="abandoned", output=reason,
                )
                return aborted(reason)

            step_prompt = self._step_prompt(user_prompt, index, plan.reasoning)

            builtin_abort = self._check_builtins(target, step_prompt, plan.command)
            if builtin_abort:
                return aborted(builtin_abort)

            decision = await confirm(index, plan) if confirm else Confirmation(approved=True)
            if not decision.approved:
                self._record(target, step_prompt, plan.command, executed=False, reason="declined")
                return aborted("declined by user")

            command = plan.command
            modified = bool(decision.command) and decision.command.strip() != plan.command
            if modified:
                command = decision.command.strip()
                builtin_abort = self._check_builtins(target, step_prompt, command)
                if builtin_abort:
                    return aborted(builtin_abort)

            # --- EXECUTE ---
            try:
                step = await self.executor.run(command, target, index=index, on_output=on_output)
            except RemoteConnectionError as e:
                self._record(
                    target, step_prompt, command,
                    executed=False, reason="connection_error", output=str(e),
                )
                return aborted(str(e))

            log.append(step)
            self._record(
                target, step_prompt, command,
                executed=True,
                exit_code=step.exit_code,
                output=step.output,
                user_modified=modified,
                ai_generated_command=plan.command if modified else None,
            )

            if not isinstance(plan, MultiStepPlan):
                return RunResult(RunState.DONE, list(log), plan.reasoning, target)
            if len(log) >= ceiling:
                reason = f"step limit of {ceiling} reached"
                self._record(
                    target, self._step_prompt(user_prompt, index + 1, plan.next_step_hint), "",
                    executed=False, reason="step_limit", output=reason,
                )
                return aborted(reason)
            logger.debug(f"{target or 'local'}: step {index} exited {step.exit_code}, requesting next step")

    @staticmethod
    def _step_prompt(user_prompt: str, index: int, reasoning: str) -> str:
        if index == 1:
            return user_prompt
        return f"[step {index}] {reasoning or user_prompt}"

    def _check_builtins(self, target: str | None, step_prompt: str, command: str) -> str | None:
        # remote shells run built-ins themselves
        if target is not None:
            return None
        builtins = detect_builtins(command)
        if not builtins:
            return None
        self._record(target, step_prompt, command, executed=False, reason="builtin")
        return (
            f"'{command}' uses shell built-ins ({', '.join(builtins)}) that have no effect "
            "outside your shell; run it yourself"
        )
