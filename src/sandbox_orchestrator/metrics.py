"""Prometheus metrics for the Sandbox Orchestrator."""

from prometheus_client import Counter

SANDBOX_OPERATIONS = Counter(
    "sandbox_orchestrator_operations_total",
    "Sandbox lifecycle operations",
    ["operation", "status"],
)
SANDBOXES_RECLAIMED = Counter(
    "sandbox_orchestrator_reclaimed_total",
    "Sandboxes deleted by the expiry sweeper",
    ["trigger"],
)
