"""
Sandbox status correlation.

Coarse status comes from the Deployment's replica counters. GetStatus then
refines it from the newest pod matching the sandbox selector.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from sandbox_orchestrator.models import ContainerStatusInfo, SandboxStatusView

RUNNING = "Running"
UNAVAILABLE = "Unavailable"
PENDING = "Pending"
UNKNOWN = "Unknown"

NO_PODS_MESSAGE = "No pods found for this deployment"

# Container wait reasons surfaced as the sandbox status while the pod is Pending
_PENDING_REASONS = {
    "ImagePullBackOff": "ImagePullBackOff",
    "ErrImagePull": "ErrImagePull",
    "PodInitializing": "Initializing",
    "ContainerCreating": "ContainerCreating",
}

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def coarse_status(deployment) -> str:
    status = deployment.status
    available = (status.available_replicas or 0) if status else 0
    unavailable = (status.unavailable_replicas or 0) if status else 0
    ready = (status.ready_replicas or 0) if status else 0

    if available > 0:
        return RUNNING
    if unavailable > 0:
        return UNAVAILABLE
    if ready == 0:
        return PENDING
    return UNKNOWN


def base_view(user_id: str, deployment) -> SandboxStatusView:
    return SandboxStatusView(
        user_id=user_id,
        status=coarse_status(deployment),
        created_at=deployment.metadata.creation_timestamp,
    )


def newest_pod(pods: list):
    """Pick the pod most likely to be the active one."""
    if not pods:
        return None
    return max(pods, key=lambda p: p.metadata.creation_timestamp or _EPOCH)


def summarize_container(cs) -> ContainerStatusInfo:
    state = "unknown"
    message = None
    reason = None

    st = cs.state
    if st is not None and st.running is not None:
        state = "running"
    elif st is not None and st.waiting is not None:
        state = "waiting"
        message = st.waiting.message
        reason = st.waiting.reason
    elif st is not None and st.terminated is not None:
        state = "terminated"
        message = st.terminated.message
        reason = st.terminated.reason
        if st.terminated.exit_code == 0:
            reason = "Completed"

    return ContainerStatusInfo(
        name=cs.name,
        ready=bool(cs.ready),
        state=state,
        restart_count=cs.restart_count or 0,
        image=cs.image or "",
        message=message or None,
        reason=reason or None,
    )


def _waiting_reason(cs) -> Optional[str]:
    if cs.state is not None and cs.state.waiting is not None:
        return cs.state.waiting.reason
    return None


def _pending_status(container_statuses: list, init_statuses: list) -> Optional[str]:
    status = None
    for cs in container_statuses:
        reason = _waiting_reason(cs)
        if reason in _PENDING_REASONS:
            status = _PENDING_REASONS[reason]
            break

    # Init containers still in progress take priority
    for cs in init_statuses:
        if cs.state is None:
            continue
        if cs.state.waiting is not None:
            return "InitContainerWaiting"
        if cs.state.running is not None:
            return "InitContainerRunning"

    return status


def refine_status(view: SandboxStatusView, pod) -> SandboxStatusView:
    """Attach pod details to a coarse view and refine its status."""
    pod_status = pod.status
    container_statuses: List = list(pod_status.container_statuses or [])
    init_statuses: List = list(pod_status.init_container_statuses or [])

    view.pod_name = pod.metadata.name
    view.pod_phase = pod_status.phase
    view.pod_conditions = [
        c.type for c in (pod_status.conditions or []) if c.status == "True"
    ]
    if pod_status.message:
        view.message = pod_status.message
    if pod_status.reason:
        view.reason = pod_status.reason

    view.container_statuses = [summarize_container(cs) for cs in container_statuses]
    view.init_container_statuses = [summarize_container(cs) for cs in init_statuses]

    if pod_status.phase == "Pending":
        refined = _pending_status(container_statuses, init_statuses)
        if refined:
            view.status = refined
    elif pod_status.phase == "Running":
        if not all(cs.ready for cs in container_statuses):
            view.status = "NotAllContainersReady"

    return view
