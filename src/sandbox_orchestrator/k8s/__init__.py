"""
Kubernetes operations for the Sandbox Orchestrator.

This module provides:
- A lazily configured K8s client wrapper
- Pure manifest builders for sandbox resources
- Ingress / Traefik IngressRoute entrypoint strategies
"""

from sandbox_orchestrator.k8s.client import K8sClient, get_k8s_client
from sandbox_orchestrator.k8s.composer import (
    build_deployment,
    build_pvc,
    build_runtime_env_config_map,
    build_service,
    compose,
    render_env_file,
)
from sandbox_orchestrator.k8s.entrypoints import (
    EntrypointStrategy,
    IngressEntrypoints,
    TraefikEntrypoints,
    get_entrypoint_strategy,
)

__all__ = [
    "K8sClient",
    "get_k8s_client",
    "build_pvc",
    "build_runtime_env_config_map",
    "build_deployment",
    "build_service",
    "compose",
    "render_env_file",
    "EntrypointStrategy",
    "IngressEntrypoints",
    "TraefikEntrypoints",
    "get_entrypoint_strategy",
]
