from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from cli_relay.cli.launcher import CliRun, TurnResult, wait_result


@dataclass
class SupervisedOutcome:
    result: TurnResult
    timed_out: bool
    elapsed_seconds: float


async def supervise_turn(
    run: CliRun[TurnResult],
    *,
    timeout_seconds: float,
    heartbeat_interval_seconds: float | None = None,
    on_heartbeat: Callable[[float], Awaitable[None]] | None = None,
) -> SupervisedOutcome:
    """Await one CLI turn under a heartbeat ticker and a hard timeout.

    Heartbeat failures are logged and ignored. On timeout the process is
    killed and the outcome is flagged; both timers are released on every exit
    path, including cancellation of the caller.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    timed_out = False

    def _on_timeout() -> None:
        nonlocal timed_out
        timed_out = True
        logger.warning(f"[{run.label}] timeout after {timeout_seconds:.0f}s, killing pid {run.pid}")
        run.kill()

    async def _heartbeat() -> None:
        assert on_heartbeat is not None and heartbeat_interval_seconds is not None
        while True:
            await asyncio.sleep(heartbeat_interval_seconds)
            try:
                await on_heartbeat(loop.time() - started)
            except Exception as ex:
                logger.debug(f"[{run.label}] heartbeat update failed: {ex}")

    heartbeat_task: asyncio.Task | None = None
    if on_heartbeat is not None and heartbeat_interval_seconds:
        heartbeat_task = asyncio.create_task(_heartbeat())
    timeout_handle = loop.call_later(timeout_seconds, _on_timeout)

    try:
        result = await wait_result(run)
    finally:
        timeout_handle.cancel()
        if heartbeat_task is not None:
            heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat_task

    return SupervisedOutcome(result=result, timed_out=timed_out, elapsed_seconds=loop.time() - started)


def log_task_failure(tag: str) -> Callable[[asyncio.Task], None]:
    """Done-callback that retrieves and logs a background task's exception."""

    def _callback(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        ex = task.exception()
        if ex is not None:
            logger.opt(exception=ex).error(f"[{tag}] background turn failed: {ex!r}")

    return _callback
