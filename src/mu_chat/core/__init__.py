"""Run orchestration, resiliency and single-attempt execution."""

from mu_chat.core.orchestrator import RunHandle, RunOrchestrator, RunRegistry
from mu_chat.core.resiliency import ResiliencyController, RunState, plan_attempts
from mu_chat.core.turn import TurnRunner

__all__ = [
    "ResiliencyController",
    "RunHandle",
    "RunOrchestrator",
    "RunRegistry",
    "RunState",
    "TurnRunner",
    "plan_attempts",
]
