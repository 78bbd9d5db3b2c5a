"""Run orchestrator: accept runs, drive them in the background, publish events.

    start_run → RunHandle (immediately)
              → ResiliencyController → TurnRunner → adapter
              → EventBus (StreamEnvelope per event)

The orchestrator owns the run registry; nothing else inserts or removes
handles.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Iterator

from mu_chat.config import ACP_COMMAND, ProviderKind, acp_available, is_configured
from mu_chat.core.resiliency import ResiliencyController
from mu_chat.diagnostics import StreamTrace
from mu_chat.errors import ConfigurationError
from mu_chat.events.bus import EventBus
from mu_chat.types import RunRequest, StreamEnvelope, StreamEvent

_logger = logging.getLogger(__name__)


@dataclass
class RunHandle:
    """Live state of one accepted run."""

    run_id: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None
    terminal_sent: bool = False
    _seq: int = 0

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def cancel(self) -> None:
        """Request cooperative cancellation.  Safe to call repeatedly."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    async def wait(self) -> None:
        """Wait until the run has published its terminal event and cleaned up."""
        if self.task is not None:
            await asyncio.shield(self.task)


class RunRegistry:
    """run_id → RunHandle for runs that have not finished yet."""

    def __init__(self) -> None:
        self._runs: dict[str, RunHandle] = {}

    def register(self, handle: RunHandle) -> None:
        if handle.run_id in self._runs:
            raise ValueError(f"Run already registered: {handle.run_id}")
        self._runs[handle.run_id] = handle

    def get(self, run_id: str) -> RunHandle | None:
        return self._runs.get(run_id)

    def remove(self, run_id: str) -> RunHandle | None:
        return self._runs.pop(run_id, None)

    def ids(self) -> list[str]:
        return list(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def __iter__(self) -> Iterator[RunHandle]:
        return iter(list(self._runs.values()))


class RunOrchestrator:
    """Entry point for streaming runs.

    Parameters
    ----------
    bus:
        Event bus the run's envelopes are published on.
    registry:
        Registry of live runs (injected so tests can inspect it).
    controller:
        Resiliency controller that drives attempts.
    trace:
        Optional JSONL stream trace.
    agent_command:
        Command the CLI agent runtime is launched with; its executable
        must be on PATH for cli-agent runs to be accepted.
    """

    def __init__(
        self,
        bus: EventBus | None = None,
        registry: RunRegistry | None = None,
        controller: ResiliencyController | None = None,
        trace: StreamTrace | None = None,
        agent_command: tuple[str, ...] = ACP_COMMAND,
    ) -> None:
        self.bus = bus or EventBus()
        self._registry = registry if registry is not None else RunRegistry()
        self._controller = controller or ResiliencyController(trace=trace)
        self._trace = trace
        self._agent_command = tuple(agent_command)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_run(self, request: RunRequest) -> RunHandle:
        """Validate and dispatch *request*; return without waiting for output.

        Raises ``ConfigurationError`` before anything is scheduled when the
        provider settings are incomplete, or when the CLI agent runtime is
        not installed.  Must be called with a running event loop.
        """
        settings = request.settings
        if not is_configured(settings):
            raise ConfigurationError(_missing_settings_message(request))
        if (
            settings.provider_kind is ProviderKind.CLI_AGENT
            and not acp_available(self._agent_command)
        ):
            raise ConfigurationError(
                f"'{self._agent_command[0]}' was not found in PATH; "
                "install the agent runtime to use provider_kind=cli-agent"
            )

        loop = asyncio.get_running_loop()
        handle = RunHandle(run_id=str(uuid.uuid4()))
        self._registry.register(handle)
        handle.task = loop.create_task(self._drive(handle, request))
        _logger.debug("Accepted run %s (%s)", handle.run_id, settings.provider_kind.value)
        return handle

    def stop(self, run_id: str) -> None:
        """Cancel *run_id*.  Unknown or finished runs are ignored."""
        handle = self._registry.get(run_id)
        if handle is not None:
            handle.cancel()

    def active_runs(self) -> list[str]:
        return self._registry.ids()

    async def shutdown(self) -> None:
        """Stop every live run and wait for them to finish."""
        handles = list(self._registry)
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.wait()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _drive(self, handle: RunHandle, request: RunRequest) -> None:
        async def sink(event: StreamEvent) -> None:
            await self._publish(handle, event)

        try:
            if self._trace is not None:
                self._trace.log_run_start(handle.run_id, request.settings)
            await self._controller.run(request, sink, handle.cancel_event, run_id=handle.run_id)
            if not handle.terminal_sent:
                await self._publish(handle, StreamEvent.done())
        except Exception as e:
            _logger.exception("Run %s failed unexpectedly", handle.run_id)
            if not handle.terminal_sent:
                await self._publish(handle, StreamEvent.error(str(e) or type(e).__name__))
        finally:
            self._registry.remove(handle.run_id)

    async def _publish(self, handle: RunHandle, event: StreamEvent) -> None:
        if handle.terminal_sent:
            return
        if event.is_terminal:
            handle.terminal_sent = True
        envelope = StreamEnvelope(run_id=handle.run_id, seq=handle.next_seq(), event=event)
        if self._trace is not None:
            self._trace.log_event(envelope)
        await self.bus.emit(envelope)


def _missing_settings_message(request: RunRequest) -> str:
    settings = request.settings
    if settings.provider_kind is ProviderKind.SDK_AGENT:
        return "Provider settings are incomplete: an API key is required."
    missing = [
        name for name, present in (
            ("base URL", settings.normalized_base_url),
            ("API key", settings.api_keys),
            ("model", settings.model.strip()),
        )
        if not present
    ]
    return f"Provider settings are incomplete: missing {', '.join(missing)}."
