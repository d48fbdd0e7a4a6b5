"""Service module exports."""

from . import billing_cycle, currency, orchestrator, retry_queue, run_context, strategies

__all__ = [
    "billing_cycle",
    "currency",
    "orchestrator",
    "retry_queue",
    "run_context",
    "strategies",
]
