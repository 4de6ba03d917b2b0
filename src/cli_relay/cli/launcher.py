from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from loguru import logger

from cli_relay.cli.skills import build_skill_prompt, detect_and_load_skill
from cli_relay.cli.stream_parser import StreamParser, StreamRecord, TerminalResult, TurnUpdate, decode_record

COMPACT_COMMAND = "/compact\n"

SKILL_RULES_PROMPT = (
    "CRITICAL RULES FOR SKILL EXECUTION:\n"
    "1. When executing skills, you MUST complete EVERY step in the EXACT sequential order "
    "defined in the skill workflow. NEVER skip, reorder, or omit any step.\n"
    "2. Many skills have infrastructure prerequisites (SSO login, VPN tunnels, browser "
    "authorization). These MUST complete before any API/MCP tool calls.\n"
    "3. Do not check or use the current git branch unless the skill explicitly instructs you to.\n"
    "4. If a step fails, report the failure. Do NOT skip ahead to later steps."
)

_READ_CHUNK_BYTES = 64 * 1024
_PROMPT_LOG_LIMIT = 500
_STREAM_LOG_TEXT_LIMIT = 200

R = TypeVar("R")


@dataclass
class TurnResult:
    exit_code: int | None
    response: str | None = None
    resumption_token: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    turn_count: int | None = None
    cost_usd: float | None = None

    @property
    def launch_failed(self) -> bool:
        return self.exit_code is None


@dataclass
class CompactResult:
    success: bool
    input_tokens: int | None = None
    cost_usd: float | None = None


def context_tokens(usage: dict[str, Any]) -> int:
    """Context size under prompt caching: fresh + cache-write + cache-read tokens."""
    total = 0
    for key in ("input_tokens", "cache_creation_input_tokens", "cache_read_input_tokens"):
        value = usage.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            total += value
    return total


class TurnAccumulator:
    """Folds stream records into the fields of a TurnResult.

    Usage counters are overwritten by each usage-bearing record, never summed:
    every record reports the context size at that point of the turn.
    """

    def __init__(self, *, track_resumption: bool = False, label: str = "cli"):
        self._track_resumption = track_resumption
        self._label = label
        self._fallback_text = ""
        self.response: str | None = None
        self.resumption_token: str | None = None
        self.input_tokens: int | None = None
        self.output_tokens: int | None = None
        self.turn_count: int | None = None
        self.cost_usd: float | None = None

    def apply(self, record: StreamRecord) -> None:
        if isinstance(record, TurnUpdate):
            self._apply_turn_update(record)
        elif isinstance(record, TerminalResult):
            self._apply_terminal(record)

    def _apply_turn_update(self, record: TurnUpdate) -> None:
        if record.usage is not None:
            self.input_tokens = context_tokens(record.usage)
            output = record.usage.get("output_tokens")
            if isinstance(output, int) and not isinstance(output, bool):
                self.output_tokens = output
        for text in record.text_blocks():
            preview = text if len(text) <= _STREAM_LOG_TEXT_LIMIT else text[:_STREAM_LOG_TEXT_LIMIT] + "..."
            logger.debug(f"[{self._label}] text: {preview}")
            self._fallback_text = text
        for name in record.tool_names():
            logger.debug(f"[{self._label}] tool_use: {name}")

    def _apply_terminal(self, record: TerminalResult) -> None:
        if record.cost_usd is not None:
            self.cost_usd = record.cost_usd
        text = record.response_text()
        if text:
            self.response = text
        else:
            logger.warning(
                f"[{self._label}] result field empty or unexpected type: {type(record.result).__name__}"
            )
        if self._track_resumption and record.session_id:
            self.resumption_token = record.session_id
        if record.num_turns is not None:
            self.turn_count = record.num_turns

    def finish(self, exit_code: int | None) -> TurnResult:
        response = self.response
        if not response and self._fallback_text:
            logger.info(f"[{self._label}] Using assistant text fallback ({len(self._fallback_text)} chars)")
            response = self._fallback_text
        if self.cost_usd is not None:
            logger.info(f"[{self._label}] Done. Cost: ${self.cost_usd:.4f}")
        return TurnResult(
            exit_code=exit_code,
            response=response,
            resumption_token=self.resumption_token,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            turn_count=self.turn_count,
            cost_usd=self.cost_usd,
        )


def safe_kill(process: asyncio.subprocess.Process | None, *, label: str = "cli") -> bool:
    """SIGTERM the process. Returns False if it was already gone or the signal failed."""
    if process is None or process.returncode is not None:
        return False
    try:
        process.terminate()
        return True
    except ProcessLookupError:
        logger.warning(f"[{label}] kill failed, process already exited (pid: {process.pid})")
    except OSError as ex:
        logger.warning(f"[{label}] kill failed ({ex}), process may already be dead (pid: {process.pid})")
    return False


@dataclass
class CliRun(Generic[R]):
    """A spawned CLI process and the task that resolves to its result."""

    process: asyncio.subprocess.Process | None
    done: asyncio.Future[R]
    label: str = "cli"

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def kill(self) -> bool:
        return safe_kill(self.process, label=self.label)


def _resolved(value: R) -> asyncio.Future[R]:
    future: asyncio.Future[R] = asyncio.get_running_loop().create_future()
    future.set_result(value)
    return future


def _preview(text: str) -> str:
    return text if len(text) <= _PROMPT_LOG_LIMIT else text[:_PROMPT_LOG_LIMIT] + "..."


def _redact_args(args: list[str]) -> list[str]:
    redacted: list[str] = []
    hide_next = False
    for arg in args:
        redacted.append("<...>" if hide_next else arg)
        hide_next = arg in ("-p", "--append-system-prompt")
    return redacted


class CliLauncher:
    """Builds and spawns the three CLI invocation shapes.

    Single-turn (investigations), resumable (discussions) and compact
    (``/compact`` piped over stdin). Launch problems resolve the ``done``
    future with a failure value instead of raising.
    """

    def __init__(
        self,
        *,
        binary: str = "claude",
        cwd: str | None = None,
        model: str = "claude-sonnet-4-5-20250929",
        alert_model: str = "claude-opus-4-6",
        mcp_config_path: str | None = None,
        skills_dir: str | None = None,
        compact_timeout_seconds: float = 120.0,
        env: dict[str, str] | None = None,
    ):
        self._binary = binary
        self._cwd = cwd
        self._model = model
        self._alert_model = alert_model
        self._mcp_config_path = mcp_config_path
        self._skills_dir = skills_dir
        self._compact_timeout_seconds = compact_timeout_seconds
        self._env = env

    # -- argument construction --

    def build_single_turn_args(self, prompt: str) -> list[str]:
        args = [
            "-p", prompt,
            "--verbose",
            "--model", self._alert_model,
            "--dangerously-skip-permissions",
            "--output-format", "stream-json",
        ]
        return self._with_mcp_config(args)

    def build_resumable_args(self, prompt: str, resume_token: str | None = None) -> list[str]:
        args: list[str] = []
        if resume_token:
            args.extend(["--resume", resume_token])
        args.extend([
            "-p", prompt,
            "--verbose",
            "--model", self._model,
            "--dangerously-skip-permissions",
            "--output-format", "stream-json",
            "--append-system-prompt", SKILL_RULES_PROMPT,
        ])
        return self._with_mcp_config(args)

    def build_compact_args(self, resume_token: str) -> list[str]:
        args = [
            "--resume", resume_token,
            "--output-format", "stream-json",
            "--model", self._model,
            "--dangerously-skip-permissions",
        ]
        return self._with_mcp_config(args)

    def _with_mcp_config(self, args: list[str]) -> list[str]:
        if self._mcp_config_path:
            args.extend(["--mcp-config", self._mcp_config_path])
        return args

    # -- spawning --

    async def start_single_turn(self, prompt: str) -> CliRun[TurnResult]:
        label = "ClaudeCLI"
        logger.info(f"[{label}] Spawning with prompt: {_preview(prompt)}")
        process = await self._spawn(self.build_single_turn_args(prompt), label=label)
        if process is None:
            return CliRun(process=None, done=_resolved(TurnResult(exit_code=None)), label=label)
        accumulator = TurnAccumulator(label=label)
        done = asyncio.create_task(self._collect(process, accumulator, label))
        return CliRun(process=process, done=done, label=label)

    def compose_resumable_prompt(self, prompt: str, context: str = "") -> str:
        """Rewrite ``prompt`` into a skill directive if it names one, then prepend ``context``.

        Only the owner's own text is scanned; context from other people is passed through.
        """
        skill = detect_and_load_skill(prompt, self._skills_dir)
        return context + (build_skill_prompt(skill) if skill is not None else prompt)

    async def start_resumable(
        self,
        prompt: str,
        resume_token: str | None = None,
        *,
        context: str = "",
    ) -> CliRun[TurnResult]:
        label = "DiscussCLI"
        effective_prompt = self.compose_resumable_prompt(prompt, context)
        logger.info(
            f"[{label}] Spawning with prompt: {_preview(effective_prompt)}"
            + (f" (resume: {resume_token})" if resume_token else "")
        )
        process = await self._spawn(self.build_resumable_args(effective_prompt, resume_token), label=label)
        if process is None:
            return CliRun(process=None, done=_resolved(TurnResult(exit_code=None)), label=label)
        accumulator = TurnAccumulator(track_resumption=True, label=label)
        done = asyncio.create_task(self._collect(process, accumulator, label))
        return CliRun(process=process, done=done, label=label)

    async def start_compact(self, resume_token: str) -> CliRun[CompactResult]:
        label = "DiscussCLI compact"
        logger.info(f"[{label}] Compacting session {resume_token}")
        process = await self._spawn(self.build_compact_args(resume_token), label=label, interactive=True)
        if process is None:
            return CliRun(process=None, done=_resolved(CompactResult(success=False)), label=label)
        await self._send_compact_command(process, label)
        done = asyncio.create_task(self._collect_compact(process, label))
        return CliRun(process=process, done=done, label=label)

    async def _spawn(
        self,
        args: list[str],
        *,
        label: str,
        interactive: bool = False,
    ) -> asyncio.subprocess.Process | None:
        logger.debug(f"[{label}] Args: {_redact_args(args)}")
        try:
            return await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._env if self._env is not None else dict(os.environ),
            )
        except OSError as ex:
            logger.error(f"[{label}] spawn error: {ex}")
            return None

    async def _send_compact_command(self, process: asyncio.subprocess.Process, label: str) -> None:
        if process.stdin is None:
            return
        try:
            process.stdin.write(COMPACT_COMMAND.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as ex:
            logger.warning(f"[{label}] failed to write compact command: {ex}")
        finally:
            process.stdin.close()

    # -- stream collection --

    async def _collect(
        self,
        process: asyncio.subprocess.Process,
        accumulator: TurnAccumulator,
        label: str,
    ) -> TurnResult:
        await asyncio.gather(
            self._pump_stdout(process, accumulator),
            self._pump_stderr(process, label),
        )
        exit_code = await process.wait()
        logger.info(f"[{label}] exited (code: {exit_code}, pid: {process.pid})")
        return accumulator.finish(exit_code)

    async def _collect_compact(self, process: asyncio.subprocess.Process, label: str) -> CompactResult:
        loop = asyncio.get_running_loop()
        safety_timer = loop.call_later(self._compact_timeout_seconds, safe_kill, process)
        try:
            result = await self._collect(process, TurnAccumulator(label=label), label)
        finally:
            safety_timer.cancel()
        logger.info(f"[{label}] Compact done (exit: {result.exit_code})")
        return CompactResult(
            success=result.exit_code == 0,
            input_tokens=result.input_tokens,
            cost_usd=result.cost_usd,
        )

    async def _pump_stdout(self, process: asyncio.subprocess.Process, accumulator: TurnAccumulator) -> None:
        if process.stdout is None:
            return
        parser = StreamParser()
        while True:
            chunk = await process.stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            for obj in parser.feed(chunk):
                accumulator.apply(decode_record(obj))
        for obj in parser.flush():
            accumulator.apply(decode_record(obj))

    async def _pump_stderr(self, process: asyncio.subprocess.Process, label: str) -> None:
        if process.stderr is None:
            return
        while True:
            chunk = await process.stderr.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            text = chunk.decode(errors="replace").strip()
            if text:
                logger.warning(f"[{label} stderr] {text}")


async def wait_result(run: CliRun[R]) -> R:
    """Await a run's result without letting caller cancellation cancel the collector."""
    return await asyncio.shield(run.done)
