"""
Kubernetes client wrapper for the Sandbox Orchestrator.

Provides a unified interface for K8s API groups with lazy config loading.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from kubernetes import client, config

logger = structlog.get_logger(__name__)


class K8sClient:
    """
    Kubernetes client wrapper.

    Automatically loads config from:
    1. In-cluster config (when running in K8s)
    2. KUBECONFIG environment variable
    3. Default ~/.kube/config
    """

    def __init__(self, namespace: str, request_timeout: Optional[float] = None):
        self._namespace = namespace
        self._request_timeout = request_timeout
        self._loaded = False
        self._core_v1: Optional[client.CoreV1Api] = None
        self._apps_v1: Optional[client.AppsV1Api] = None
        self._networking_v1: Optional[client.NetworkingV1Api] = None
        self._custom_objects: Optional[client.CustomObjectsApi] = None

    def _ensure_loaded(self) -> None:
        """Lazy-load K8s configuration."""
        if self._loaded:
            return

        try:
            # Try in-cluster config first (running inside K8s)
            config.load_incluster_config()
            logger.info("k8s_config_loaded", source="incluster")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig
                config.load_kube_config()
                logger.info("k8s_config_loaded", source="kubeconfig")
            except config.ConfigException as e:
                logger.error("k8s_config_failed", error=str(e))
                raise RuntimeError(f"Failed to load K8s config: {e}")

        self._core_v1 = client.CoreV1Api()
        self._apps_v1 = client.AppsV1Api()
        self._networking_v1 = client.NetworkingV1Api()
        self._custom_objects = client.CustomObjectsApi()
        self._loaded = True

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def call_options(self) -> Dict[str, Any]:
        """Extra kwargs for every API call (per-call timeout when configured)."""
        if self._request_timeout:
            return {"_request_timeout": self._request_timeout}
        return {}

    @property
    def core_v1(self) -> client.CoreV1Api:
        self._ensure_loaded()
        return self._core_v1  # type: ignore

    @property
    def apps_v1(self) -> client.AppsV1Api:
        self._ensure_loaded()
        return self._apps_v1  # type: ignore

    @property
    def networking_v1(self) -> client.NetworkingV1Api:
        self._ensure_loaded()
        return self._networking_v1  # type: ignore

    @property
    def custom_objects(self) -> client.CustomObjectsApi:
        self._ensure_loaded()
        return self._custom_objects  # type: ignore


def get_k8s_client(settings) -> K8sClient:
    """Build a K8s client for the configured sandbox namespace."""
    return K8sClient(
        namespace=settings.namespace,
        request_timeout=settings.request_timeout_seconds,
    )
