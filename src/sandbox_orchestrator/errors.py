"""Error taxonomy for sandbox operations."""

from __future__ import annotations

from typing import Optional


class SandboxError(Exception):
    """Base class for sandbox orchestration errors."""

    pass


class InvalidIdentityError(SandboxError):
    """User ID fails Kubernetes naming rules."""

    def __init__(self, user_id: str, reason: str):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"invalid user ID for Kubernetes service: {reason}")


class SandboxNotFoundError(SandboxError):
    """No workload matches the derived name for a user ID."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"sandbox not found for user ID {user_id}")


class UnauthorizedError(SandboxError):
    """On-demand cleanup called with the wrong auth token."""

    def __init__(self, message: str = "unauthorized: invalid auth token"):
        super().__init__(message)


class UpstreamError(SandboxError):
    """A Kubernetes API call failed."""

    def __init__(
        self,
        operation: str,
        resource: str,
        *,
        status: Optional[int] = None,
        detail: str = "",
    ):
        self.operation = operation
        self.resource = resource
        self.status = status
        self.detail = detail
        msg = f"failed to {operation} {resource}"
        if status is not None:
            msg += f" (status {status})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)

    @classmethod
    def from_api_exception(
        cls, operation: str, resource: str, exc: Exception
    ) -> "UpstreamError":
        return cls(
            operation,
            resource,
            status=getattr(exc, "status", None),
            detail=getattr(exc, "reason", None) or str(exc),
        )
