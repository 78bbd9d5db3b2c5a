"""Timeout, retry and API-key failover around single attempts.

This is the only place that decides between retrying and giving up, and
the only place that emits a run's terminal event.

Per run::

    Idle -> Attempting -> Succeeded
                       -> Retrying -> Attempting
                       -> Failed

An attempt is retried only while attempts remain *and* nothing has been
shown to the user during it.  Once content has streamed, a failure is
reported as-is, since restarting would corrupt the visible transcript.
User cancellation always ends the run with a clean ``done``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Awaitable

from mu_chat.config import ProviderSettings
from mu_chat.core.turn import TurnRunner
from mu_chat.diagnostics import StreamTrace
from mu_chat.errors import MuChatError, RequestTimeoutError, RunCancelled
from mu_chat.providers.base import Emit
from mu_chat.types import RunRequest, StreamEvent

_logger = logging.getLogger(__name__)


class RunState(enum.Enum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


def plan_attempts(settings: ProviderSettings) -> int:
    """Maximum attempts for a run.

    ``retry_count + 1``, raised to the number of keys so every key is
    tried once.  Agent runtimes get exactly one attempt.
    """
    if settings.provider_kind.is_agent:
        return 1
    return max(settings.retry_count + 1, len(settings.api_keys))


def key_slot(attempt: int, key_count: int) -> int:
    return attempt % key_count if key_count else 0


class ResiliencyController:
    """Drives the attempts of one run and emits its single terminal event."""

    def __init__(
        self,
        runner: TurnRunner | None = None,
        trace: StreamTrace | None = None,
    ) -> None:
        self._runner = runner or TurnRunner()
        self._trace = trace

    async def run(
        self,
        request: RunRequest,
        sink: Emit,
        cancel: asyncio.Event,
        run_id: str = "",
    ) -> RunState:
        settings = request.settings
        keys = settings.api_keys or [""]
        max_attempts = plan_attempts(settings)

        for attempt in range(max_attempts):
            if cancel.is_set():
                break
            slot = key_slot(attempt, len(keys))
            delivered = False

            async def forward(event: StreamEvent) -> None:
                nonlocal delivered
                if cancel.is_set():
                    return
                if not event.is_terminal:
                    delivered = True
                await sink(event)

            try:
                await self._guarded(
                    self._runner.run(request, keys[slot], forward),
                    cancel,
                    settings.request_timeout_ms,
                )
            except RunCancelled:
                break
            except MuChatError as e:
                failure = str(e)
                self._record(settings, run_id, attempt, slot, delivered, failure)
                if delivered or attempt + 1 >= max_attempts:
                    if delivered:
                        _logger.warning("Attempt %d failed after streaming output: %s",
                                        attempt + 1, failure)
                    else:
                        _logger.warning("Attempt %d/%d failed, giving up: %s",
                                        attempt + 1, max_attempts, failure)
                    await sink(StreamEvent.error(failure))
                    return RunState.FAILED
                _logger.warning("Attempt %d/%d failed, retrying: %s",
                                attempt + 1, max_attempts, failure)
                continue

            self._record(settings, run_id, attempt, slot, delivered, None)
            if cancel.is_set():
                break
            await sink(StreamEvent.done())
            return RunState.SUCCEEDED

        _logger.debug("Run %s cancelled", run_id or "?")
        await sink(StreamEvent.done())
        return RunState.CANCELLED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _guarded(
        attempt: Awaitable[Any],
        cancel: asyncio.Event,
        timeout_ms: int,
    ) -> None:
        """Race *attempt* against the cancel signal and the timeout.

        Raises ``RunCancelled`` when the user stopped the run and
        ``RequestTimeoutError`` when the deadline passed.  The attempt is
        cancelled and awaited in both cases, so its transport is closed
        before this returns.
        """
        task = asyncio.ensure_future(attempt)
        waiter = asyncio.ensure_future(cancel.wait())
        timeout = timeout_ms / 1000 if timeout_ms > 0 else None
        try:
            await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
            finished = task.done()
            if not finished:
                task.cancel()
                await _reap(task)

        if cancel.is_set():
            if finished and not task.cancelled() and task.exception() is not None:
                _logger.debug("Attempt failed after stop was requested: %s", task.exception())
            raise RunCancelled()
        if not finished:
            raise RequestTimeoutError(timeout_ms)
        task.result()

    def _record(
        self,
        settings: ProviderSettings,
        run_id: str,
        attempt: int,
        slot: int,
        delivered: bool,
        failure: str | None,
    ) -> None:
        if not settings.debug_logging_enabled:
            return
        _logger.info(
            "run=%s attempt=%d key_slot=%d has_delta=%s failure=%s",
            run_id, attempt + 1, slot, delivered, failure or "-",
        )
        if self._trace is not None:
            self._trace.log_attempt(run_id, attempt + 1, slot, delivered, failure)


async def _reap(task: asyncio.Future[Any]) -> None:
    """Wait for a cancelled attempt to unwind."""
    try:
        await task
    except asyncio.CancelledError:
        current = asyncio.current_task()
        if current is not None and current.cancelling():
            raise
    except MuChatError as e:
        _logger.debug("Attempt raised while being cancelled: %s", e)
