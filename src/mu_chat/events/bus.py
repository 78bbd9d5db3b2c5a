"""Async pub/sub EventBus that fans stream envelopes out to subscribers."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from mu_chat.types import StreamEnvelope

_logger = logging.getLogger(__name__)

# Sentinel used for wildcard subscriptions (receive every run's events)
WILDCARD = "*"

# Type alias for handlers (sync or async callables taking a StreamEnvelope)
Handler = Callable[[StreamEnvelope], Any]


class EventBus:
    """Lightweight async pub/sub event bus.

    Features:
    - Subscribe to one run id or wildcard ``"*"`` for all runs.
    - Handlers can be sync or async; sync handlers are auto-wrapped.
    - ``emit()`` fans out to matching handlers concurrently and returns
      once all of them ran, so per-run ordering is preserved.
    - ``unsubscribe()`` removes a handler.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._history: list[StreamEnvelope] = []
        self._max_history = max_history

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def subscribe(self, run_id: str, handler: Handler) -> None:
        """Register *handler* for *run_id* (or ``"*"`` for all runs)."""
        self._handlers.setdefault(run_id, []).append(handler)

    def unsubscribe(self, run_id: str, handler: Handler) -> None:
        """Remove *handler* from *run_id*."""
        handlers = self._handlers.get(run_id, [])
        try:
            handlers.remove(handler)
        except ValueError:
            pass
        if not handlers:
            self._handlers.pop(run_id, None)

    async def emit(self, envelope: StreamEnvelope) -> None:
        """Deliver *envelope* to its run's handlers and wildcard handlers.

        Exceptions in individual handlers are logged and do not propagate.
        """
        self._history.append(envelope)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(envelope.run_id, []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        if not handlers:
            return

        await asyncio.gather(
            *(self._call_handler(h, envelope) for h in handlers),
            return_exceptions=True,
        )

    @property
    def history(self) -> list[StreamEnvelope]:
        """Return a copy of the recent envelope history."""
        return list(self._history)

    def clear(self) -> None:
        """Remove all handlers and history."""
        self._handlers.clear()
        self._history.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _call_handler(handler: Handler, envelope: StreamEnvelope) -> None:
        try:
            result = handler(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for run %s event %s",
                getattr(handler, "__name__", handler),
                envelope.run_id,
                envelope.event.type.value,
            )
