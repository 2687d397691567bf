"""Models for sandbox specs, composed resources and status views."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

# =============================================================================
# Desired state
# =============================================================================


@dataclass
class SandboxSpec:
    """Desired state for one user's sandbox."""

    user_id: str
    env_vars: Dict[str, str] = field(default_factory=dict)
    runtime_env_vars: Dict[str, str] = field(default_factory=dict)
    image: str = ""

    @property
    def has_runtime_env(self) -> bool:
        return bool(self.runtime_env_vars)


@dataclass
class SandboxResourceSet:
    """Concrete resources composed for one user ID, in creation order."""

    user_id: str
    pvc: Any
    config_map: Optional[Any]
    deployment: Any
    service: Any
    entrypoints: List[Any]
    display_url: str
    api_url: str


# =============================================================================
# Teardown
# =============================================================================

DELETED = "deleted"
NOT_FOUND = "not_found"
FAILED = "failed"


@dataclass
class TeardownStep:
    kind: str
    name: str
    outcome: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome != FAILED


@dataclass
class TeardownReport:
    """Per-resource outcome of a best-effort sandbox deletion."""

    user_id: str
    steps: List[TeardownStep] = field(default_factory=list)

    def record(
        self, kind: str, name: str, outcome: str, error: Optional[str] = None
    ) -> None:
        self.steps.append(TeardownStep(kind=kind, name=name, outcome=outcome, error=error))

    @property
    def succeeded(self) -> int:
        return sum(1 for s in self.steps if s.ok)

    @property
    def failed(self) -> int:
        return sum(1 for s in self.steps if not s.ok)

    @property
    def ok(self) -> bool:
        return self.failed == 0


# =============================================================================
# Status views
# =============================================================================


class ContainerStatusInfo(BaseModel):
    """Status of one container or init container in a sandbox pod."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    ready: bool = False
    state: str = "unknown"  # running | waiting | terminated | unknown
    restart_count: int = Field(default=0, alias="restartCount")
    image: str = ""
    message: Optional[str] = None
    reason: Optional[str] = None


class SandboxStatusView(BaseModel):
    """Composite status of a sandbox, re-derived from live resources."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    status: str
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    pod_name: Optional[str] = Field(default=None, alias="podName")
    pod_phase: Optional[str] = Field(default=None, alias="podPhase")
    pod_conditions: Optional[List[str]] = Field(default=None, alias="podConditions")
    container_statuses: Optional[List[ContainerStatusInfo]] = Field(
        default=None, alias="containerStatuses"
    )
    init_container_statuses: Optional[List[ContainerStatusInfo]] = Field(
        default=None, alias="initContainerStatuses"
    )
    message: Optional[str] = None
    reason: Optional[str] = None


# =============================================================================
# API Models
# =============================================================================


class SandboxRequest(BaseModel):
    """Env vars passed when creating a sandbox."""

    model_config = ConfigDict(populate_by_name=True)

    env_vars: Dict[str, str] = Field(default_factory=dict, alias="envVars")
    node_env_vars: Dict[str, str] = Field(default_factory=dict, alias="nodeEnvVars")


class SandboxResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    user_id: str = Field(alias="userId")
    vnc_url: Optional[str] = Field(default=None, alias="vncUrl")
    api_url: Optional[str] = Field(default=None, alias="apiUrl")


class SandboxStatusResponse(SandboxStatusView):
    exists: bool = True
    vnc_url: Optional[str] = Field(default=None, alias="vncUrl")
    api_url: Optional[str] = Field(default=None, alias="apiUrl")


class SandboxListResponse(BaseModel):
    count: int
    sandboxes: List[SandboxStatusView]


class CleanupResponse(BaseModel):
    message: str
    duration: str
    count: int
