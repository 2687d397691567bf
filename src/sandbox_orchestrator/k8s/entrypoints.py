"""
Network entrypoint strategies for sandboxes.

Two interchangeable styles expose the same two hosts per sandbox:

- {user_id}-vnc.{domain} -> Service port "vnc" (remote display)
- {user_id}-api.{domain} -> Service port "http" (API)

IngressEntrypoints creates a single networking.k8s.io/v1 Ingress with two host
rules. TraefikEntrypoints creates two traefik.io/v1alpha1 IngressRoute custom
objects with Host() match rules and a TLS cert resolver.
"""

from __future__ import annotations

from typing import Any, Dict, List

from kubernetes import client

from sandbox_orchestrator.identity import NamingConvention
from sandbox_orchestrator.k8s.client import K8sClient
from sandbox_orchestrator.k8s.composer import (
    DISPLAY_PORT_NAME,
    HTTP_PORT_NAME,
    MANAGED_BY,
)

# role -> host label
DISPLAY_ROLE = "vnc"
API_ROLE = "api"

TRAEFIK_GROUP = "traefik.io"
TRAEFIK_VERSION = "v1alpha1"
TRAEFIK_PLURAL = "ingressroutes"


class EntrypointStrategy:
    """Base class: host naming shared by every entrypoint style."""

    kind = "entrypoint"

    def __init__(self, settings):
        self.settings = settings

    def host(self, user_id: str, role: str) -> str:
        return f"{user_id}-{role}.{self.settings.domain}"

    def display_url(self, user_id: str) -> str:
        return f"https://{self.host(user_id, DISPLAY_ROLE)}"

    def api_url(self, user_id: str) -> str:
        return f"https://{self.host(user_id, API_ROLE)}"

    def build(self, user_id: str) -> List[Any]:
        raise NotImplementedError

    def names(self, user_id: str) -> List[str]:
        raise NotImplementedError

    def create(self, kc: K8sClient, manifest: Any) -> None:
        raise NotImplementedError

    def delete(self, kc: K8sClient, name: str) -> None:
        raise NotImplementedError

    def name_of(self, manifest: Any) -> str:
        raise NotImplementedError


class IngressEntrypoints(EntrypointStrategy):
    """One multi-host Ingress per sandbox."""

    kind = "ingress"

    def _rule(self, user_id: str, role: str, port_name: str) -> client.V1IngressRule:
        return client.V1IngressRule(
            host=self.host(user_id, role),
            http=client.V1HTTPIngressRuleValue(
                paths=[
                    client.V1HTTPIngressPath(
                        path="/",
                        path_type="Prefix",
                        backend=client.V1IngressBackend(
                            service=client.V1IngressServiceBackend(
                                name=NamingConvention.service_name(user_id),
                                port=client.V1ServiceBackendPort(name=port_name),
                            )
                        ),
                    )
                ]
            ),
        )

    def build(self, user_id: str) -> List[client.V1Ingress]:
        labels = NamingConvention.labels(user_id)
        labels["app.kubernetes.io/managed-by"] = MANAGED_BY
        return [
            client.V1Ingress(
                api_version="networking.k8s.io/v1",
                kind="Ingress",
                metadata=client.V1ObjectMeta(
                    name=NamingConvention.ingress_name(user_id),
                    labels=labels,
                    annotations={
                        "kubernetes.io/ingress.class": self.settings.ingress_class
                    },
                ),
                spec=client.V1IngressSpec(
                    rules=[
                        self._rule(user_id, DISPLAY_ROLE, DISPLAY_PORT_NAME),
                        self._rule(user_id, API_ROLE, HTTP_PORT_NAME),
                    ]
                ),
            )
        ]

    def names(self, user_id: str) -> List[str]:
        return [NamingConvention.ingress_name(user_id)]

    def name_of(self, manifest: client.V1Ingress) -> str:
        return manifest.metadata.name

    def create(self, kc: K8sClient, manifest: client.V1Ingress) -> None:
        kc.networking_v1.create_namespaced_ingress(
            namespace=kc.namespace, body=manifest, **kc.call_options
        )

    def delete(self, kc: K8sClient, name: str) -> None:
        kc.networking_v1.delete_namespaced_ingress(
            name=name, namespace=kc.namespace, **kc.call_options
        )


class TraefikEntrypoints(EntrypointStrategy):
    """Two Traefik IngressRoutes per sandbox, one per exposed port."""

    kind = "ingressroute"

    def _route(self, user_id: str, role: str, port: int) -> Dict[str, Any]:
        labels = NamingConvention.labels(user_id)
        labels["app.kubernetes.io/managed-by"] = MANAGED_BY
        return {
            "apiVersion": f"{TRAEFIK_GROUP}/{TRAEFIK_VERSION}",
            "kind": "IngressRoute",
            "metadata": {
                "name": NamingConvention.route_name(user_id, role),
                "namespace": self.settings.namespace,
                "labels": labels,
                "annotations": {},
            },
            "spec": {
                "entryPoints": list(self.settings.traefik_entry_points),
                "routes": [
                    {
                        "match": f"Host(`{self.host(user_id, role)}`)",
                        "kind": "Rule",
                        "services": [
                            {
                                "name": NamingConvention.service_name(user_id),
                                "port": port,
                            }
                        ],
                    }
                ],
                "tls": {"certResolver": self.settings.traefik_cert_resolver},
            },
        }

    def build(self, user_id: str) -> List[Dict[str, Any]]:
        return [
            self._route(user_id, DISPLAY_ROLE, self.settings.display_port),
            self._route(user_id, API_ROLE, self.settings.http_port),
        ]

    def names(self, user_id: str) -> List[str]:
        return [
            NamingConvention.route_name(user_id, DISPLAY_ROLE),
            NamingConvention.route_name(user_id, API_ROLE),
        ]

    def name_of(self, manifest: Dict[str, Any]) -> str:
        return manifest["metadata"]["name"]

    def create(self, kc: K8sClient, manifest: Dict[str, Any]) -> None:
        kc.custom_objects.create_namespaced_custom_object(
            group=TRAEFIK_GROUP,
            version=TRAEFIK_VERSION,
            namespace=kc.namespace,
            plural=TRAEFIK_PLURAL,
            body=manifest,
            **kc.call_options,
        )

    def delete(self, kc: K8sClient, name: str) -> None:
        kc.custom_objects.delete_namespaced_custom_object(
            group=TRAEFIK_GROUP,
            version=TRAEFIK_VERSION,
            namespace=kc.namespace,
            plural=TRAEFIK_PLURAL,
            name=name,
            **kc.call_options,
        )


def get_entrypoint_strategy(settings) -> EntrypointStrategy:
    """Select the entrypoint style configured for this deployment."""
    if settings.entrypoint_style == "ingress":
        return IngressEntrypoints(settings)
    return TraefikEntrypoints(settings)
