"""Per-user sandbox provisioning and reclamation on Kubernetes."""

from sandbox_orchestrator.errors import (
    InvalidIdentityError,
    SandboxError,
    SandboxNotFoundError,
    UnauthorizedError,
    UpstreamError,
)
from sandbox_orchestrator.identity import (
    derive_identity,
    resolve_identity,
    validate_identity,
)
from sandbox_orchestrator.orchestrator import SandboxOrchestrator
from sandbox_orchestrator.sweeper import ExpirySweeper

__all__ = [
    "SandboxOrchestrator",
    "ExpirySweeper",
    "validate_identity",
    "derive_identity",
    "resolve_identity",
    "SandboxError",
    "InvalidIdentityError",
    "SandboxNotFoundError",
    "UnauthorizedError",
    "UpstreamError",
]
