"""Plan generation: prompt assembly, plan validation and the agent-CLI adapter.

The generation service is an external text-completion process. Whatever it
answers is untrusted until it validates into exactly one StepPlan variant;
anything else is a GenerationError, never a command.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Protocol, Sequence, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, TypeAdapter, ValidationError, field_validator

from pls_errors import GenerationError
from pls_executor import ExecutionStep
from pls_process import ProcessRunner, run_process

logger = logging.getLogger("pls-generation")

MAX_LOGGED_OUTPUT = 2000


# ---------------------------------------------------------------------------
# Plan variants
# ---------------------------------------------------------------------------

class _PlanBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    command: str
    reasoning: str = ""
    next_step_hint: str = Field(default="", alias="nextStepHint")


class SingleStepPlan(_PlanBase):
    """Run ``command``; the run ends afterwards."""

    continue_: Literal[False] = Field(default=False, alias="continue")

    @field_validator("command")
    @classmethod
    def _command_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("command must not be empty")
        return value


class MultiStepPlan(_PlanBase):
    """Run ``command`` and ask again with the updated execution log."""

    continue_: Literal[True] = Field(alias="continue")

    @field_validator("command")
    @classmethod
    def _command_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("a plan that continues needs a command")
        return value


class AbortPlan(_PlanBase):
    """Empty command, no continuation: the generator gives up, ``reasoning`` says why."""

    continue_: Literal[False] = Field(default=False, alias="continue")

    @field_validator("command")
    @classmethod
    def _command_empty(cls, value: str) -> str:
        value = value.strip()
        if value:
            raise ValueError("an abort plan carries no command")
        return value


def _plan_kind(data: Any) -> str | None:
    if isinstance(data, BaseModel):
        return {SingleStepPlan: "single", MultiStepPlan: "multi", AbortPlan: "abort"}.get(type(data))
    if not isinstance(data, dict):
        return None
    if data.get("continue") is True:
        return "multi"
    command = data.get("command")
    if isinstance(command, str) and not command.strip():
        return "abort"
    return "single"


StepPlan = Annotated[
    Union[
        Annotated[SingleStepPlan, Tag("single")],
        Annotated[MultiStepPlan, Tag("multi")],
        Annotated[AbortPlan, Tag("abort")],
    ],
    Discriminator(_plan_kind),
]

_plan_adapter: TypeAdapter = TypeAdapter(StepPlan)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


def parse_plan(text: str) -> SingleStepPlan | MultiStepPlan | AbortPlan:
    """Validate raw generator output into one plan variant.

    Tolerates a surrounding markdown code fence and prose around a single
    JSON object.

    Raises:
        GenerationError: not JSON, not an object, or matches no variant.
    """
    body = text.strip()
    fenced = _FENCE_RE.match(body)
    if fenced:
        body = fenced.group(1).strip()
    if not body.startswith("{"):
        start, end = body.find("{"), body.rfind("}")
        if start == -1 or end <= start:
            raise GenerationError(f"generator returned no JSON object: {text[:200]!r}")
        body = body[start:end + 1]
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise GenerationError(f"generator returned invalid JSON: {e}")
    if not isinstance(data, dict):
        raise GenerationError(f"generator returned {type(data).__name__}, expected an object")
    try:
        return _plan_adapter.validate_python(data)
    except ValidationError as e:
        errors = "; ".join(err["msg"] for err in e.errors())
        raise GenerationError(f"generator returned an invalid plan: {errors}")


# ---------------------------------------------------------------------------
# Requests and prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """You are a shell command generator. The user describes a goal in natural \
language; you answer with a raw, directly executable shell command for their system.

Rules:
1. Answer with a single JSON object and nothing else. The "command" field must be \
executable as-is: no explanation, no comments, no markdown, no shebang.
2. A command may chain several commands with && and still counts as one step.
3. Pick tools that exist on the described system (package manager, shell, OS flavour).
4. When the user refers to earlier actions ("the previous one", "again"), use the history.
5. Never output a pls or please command.

Single step, when one command finishes the job:
{"command": "ls -la"}

Multiple steps, only when a later command depends on the output of an earlier one:
{"command": "find . -name '*.log' -size +100M", "continue": true, \
"reasoning": "find large logs", "nextStepHint": "compress what was found"}

After each step you receive its exit code and output in the execution log and answer \
with the next step. If a step failed, analyse the error and either return a corrected \
command (continue true to keep going, false if it finishes the job) or give up with:
{"command": "", "continue": false, "reasoning": "why the task cannot be completed"}
"""

SINGLE_STEP_NOTE = (
    "Answer with exactly one command that completes the goal on this host. "
    "Do not set continue."
)


@dataclass
class GenerationRequest:
    user_text: str
    system_context: str = ""
    history_context: str = ""
    execution_log: Sequence[ExecutionStep] = field(default_factory=tuple)
    multi_step: bool = True


def format_execution_log(steps: Sequence[ExecutionStep]) -> str:
    blocks = []
    for step in steps:
        output = step.output
        if len(output) > MAX_LOGGED_OUTPUT:
            output = output[:MAX_LOGGED_OUTPUT] + "\n... [truncated]"
        blocks.append(
            f"Step {step.index}: {step.command}\n"
            f"Exit code: {step.exit_code}\n"
            f"Output:\n{output.rstrip() or '(none)'}"
        )
    return "\n\n".join(blocks)


def build_prompt(request: GenerationRequest) -> str:
    sections = [SYSTEM_PROMPT.strip()]
    if request.system_context:
        sections.append(f"<system_info>\n{request.system_context.strip()}\n</system_info>")
    if request.history_context:
        sections.append(f"<history>\n{request.history_context.strip()}\n</history>")
    if request.execution_log:
        sections.append(f"<execution_log>\n{format_execution_log(request.execution_log)}\n</execution_log>")
    if not request.multi_step:
        sections.append(SINGLE_STEP_NOTE)
    sections.append(f"<user_request>\n{request.user_text.strip()}\n</user_request>")
    return "\n\n".join(sections)


# ---------------------------------------------------------------------------
# Generators
# ---------------------------------------------------------------------------

class PlanGenerator(Protocol):
    async def generate(self, request: GenerationRequest) -> SingleStepPlan | MultiStepPlan | AbortPlan: ...


def extract_agent_response(raw_output: str) -> str:
    """Unwrap the JSON envelope of a headless agent CLI, if there is one.

    ``claude --output-format json`` puts the answer under ``result``;
    ``gemini --output-format json`` under ``response``. Anything else is
    returned unchanged.
    """
    try:
        parsed = json.loads(raw_output)
    except json.JSONDecodeError:
        return raw_output
    if not isinstance(parsed, dict):
        return raw_output
    if parsed.get("is_error"):
        raise GenerationError(f"generator reported an error: {str(parsed.get('result', ''))[:500]}")
    for key in ("result", "response"):
        if isinstance(parsed.get(key), str):
            return parsed[key]
    return raw_output


class CliPlanGenerator:
    """Dispatch the prompt to an agent CLI, e.g. ``claude -p {prompt} --output-format json``.

    Arguments equal to ``{prompt}`` are replaced by the prompt; without such
    a placeholder the prompt is written to stdin.
    """

    def __init__(
        self,
        argv_template: list[str],
        timeout: float = 120,
        runner: ProcessRunner = run_process,
    ):
        if not argv_template:
            raise ValueError("generator command must not be empty")
        self.argv_template = list(argv_template)
        self.timeout = timeout
        self.runner = runner

    async def generate(self, request: GenerationRequest) -> SingleStepPlan | MultiStepPlan | AbortPlan:
        prompt = build_prompt(request)
        has_placeholder = any("{prompt}" in arg for arg in self.argv_template)
        args = [arg.replace("{prompt}", prompt) for arg in self.argv_template]
        binary = args[0]
        logger.debug(f"{binary}: requesting plan ({len(prompt)} chars, step {len(request.execution_log) + 1})")
        try:
            result = await self.runner(
                args,
                timeout=self.timeout,
                stdin_data=None if has_placeholder else prompt,
            )
        except FileNotFoundError:
            raise GenerationError(f"generator '{binary}' is not installed")
        if result.timed_out:
            raise GenerationError(f"generator '{binary}' timed out after {self.timeout}s")
        if result.exit_code != 0:
            detail = (result.stderr or result.stdout).strip()[:500]
            raise GenerationError(f"generator '{binary}' failed (exit {result.exit_code}): {detail}")
        return parse_plan(extract_agent_response(result.stdout))
