"""
Sandbox lifecycle orchestration.

Create, delete, list and inspect per-user sandboxes. Sandbox state is never
stored locally; it is re-derived from the live Kubernetes resources each time.

Create is strictly ordered (each resource references an earlier one by name):
namespace -> PVC -> runtime-env ConfigMap -> Deployment -> Service -> entrypoints.
The first failure aborts the call; earlier resources are left in place for the
expiry sweeper or a later Delete.

Delete is best-effort in the order entrypoints -> Service -> Deployment ->
ConfigMap. The PVC is always kept so user data survives across sessions.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import structlog
from kubernetes import client
from kubernetes.client.rest import ApiException

from sandbox_orchestrator.errors import (
    InvalidIdentityError,
    SandboxNotFoundError,
    UpstreamError,
)
from sandbox_orchestrator.identity import (
    USER_LABEL,
    NamingConvention,
    validate_identity,
)
from sandbox_orchestrator.k8s.client import K8sClient
from sandbox_orchestrator.k8s.composer import compose
from sandbox_orchestrator.k8s.entrypoints import (
    EntrypointStrategy,
    get_entrypoint_strategy,
)
from sandbox_orchestrator.metrics import SANDBOX_OPERATIONS
from sandbox_orchestrator.models import (
    DELETED,
    FAILED,
    NOT_FOUND,
    SandboxResourceSet,
    SandboxSpec,
    SandboxStatusView,
    TeardownReport,
)
from sandbox_orchestrator.status import (
    NO_PODS_MESSAGE,
    base_view,
    newest_pod,
    refine_status,
)

logger = structlog.get_logger(__name__)


@contextmanager
def _upstream(operation: str, resource: str) -> Iterator[None]:
    """Translate K8s API failures into UpstreamError."""
    try:
        yield
    except ApiException as e:
        logger.error(
            "k8s_call_failed",
            operation=operation,
            resource=resource,
            status=e.status,
            error=e.reason,
        )
        raise UpstreamError.from_api_exception(operation, resource, e) from e
    except Exception as e:
        logger.error(
            "k8s_call_failed", operation=operation, resource=resource, error=str(e)
        )
        raise UpstreamError(operation, resource, detail=str(e)) from e


class SandboxOrchestrator:
    """
    Lifecycle operations for per-user sandboxes.

    Args:
        k8s: K8s client bound to the sandbox namespace
        settings: Service settings
        entrypoints: Entrypoint strategy (default from settings.entrypoint_style)
        naming: Naming convention (default from settings)
    """

    def __init__(
        self,
        k8s: K8sClient,
        settings,
        entrypoints: Optional[EntrypointStrategy] = None,
        naming: Optional[NamingConvention] = None,
    ):
        self.k8s = k8s
        self.settings = settings
        self.entrypoints = entrypoints or get_entrypoint_strategy(settings)
        self.naming = naming or NamingConvention.from_settings(settings)

    @property
    def namespace(self) -> str:
        return self.k8s.namespace

    # =========================================================================
    # Create
    # =========================================================================

    def ensure_namespace(self) -> None:
        """Create the sandbox namespace if missing. Safe to call concurrently."""
        ns = self.namespace
        try:
            self.k8s.core_v1.read_namespace(name=ns, **self.k8s.call_options)
            return
        except ApiException as e:
            if e.status != 404:
                raise UpstreamError.from_api_exception("read", f"namespace/{ns}", e)
        except Exception as e:
            raise UpstreamError("read", f"namespace/{ns}", detail=str(e)) from e

        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=ns))
        try:
            self.k8s.core_v1.create_namespace(body=body, **self.k8s.call_options)
            logger.info("namespace_created", namespace=ns)
        except ApiException as e:
            if e.status == 409:
                return
            raise UpstreamError.from_api_exception("create", f"namespace/{ns}", e)
        except Exception as e:
            raise UpstreamError("create", f"namespace/{ns}", detail=str(e)) from e

    def resolve_image(self) -> str:
        """Image for new sandboxes, optionally with the tag read from a ConfigMap."""
        cm_name = self.settings.image_tag_config_map
        if not cm_name:
            return self.settings.default_image

        key = self.settings.image_tag_config_key
        try:
            cm = self.k8s.core_v1.read_namespaced_config_map(
                name=cm_name, namespace=self.namespace, **self.k8s.call_options
            )
        except Exception as e:
            logger.warning(
                "image_tag_config_map_unavailable",
                config_map=cm_name,
                status=getattr(e, "status", None),
                error=str(e),
                fallback=self.settings.image_tag,
            )
            return self.settings.default_image

        tag = (cm.data or {}).get(key)
        if not tag:
            logger.warning(
                "image_tag_key_missing",
                config_map=cm_name,
                key=key,
                fallback=self.settings.image_tag,
            )
            return self.settings.default_image
        return f"{self.settings.image_repository}:{tag}"

    def _ensure_pvc(self, resources: SandboxResourceSet) -> None:
        name = resources.pvc.metadata.name
        try:
            self.k8s.core_v1.read_namespaced_persistent_volume_claim(
                name=name, namespace=self.namespace, **self.k8s.call_options
            )
            logger.info("pvc_reused", name=name, user_id=resources.user_id)
            return
        except ApiException as e:
            if e.status != 404:
                raise UpstreamError.from_api_exception("read", f"pvc/{name}", e)
        except Exception as e:
            raise UpstreamError("read", f"pvc/{name}", detail=str(e)) from e

        try:
            self.k8s.core_v1.create_namespaced_persistent_volume_claim(
                namespace=self.namespace, body=resources.pvc, **self.k8s.call_options
            )
            logger.info("pvc_created", name=name, user_id=resources.user_id)
        except ApiException as e:
            # Lost a create race with a concurrent call for the same user
            if e.status == 409:
                return
            raise UpstreamError.from_api_exception("create", f"pvc/{name}", e)
        except Exception as e:
            raise UpstreamError("create", f"pvc/{name}", detail=str(e)) from e

    def create_sandbox(
        self,
        user_id: str,
        env_vars: Optional[Dict[str, str]] = None,
        runtime_env_vars: Optional[Dict[str, str]] = None,
    ) -> SandboxResourceSet:
        """
        Create all resources for a user's sandbox.

        Raises:
            InvalidIdentityError: user_id fails naming validation
            UpstreamError: a K8s call failed (earlier resources are kept)
        """
        valid, reason = validate_identity(user_id)
        if not valid:
            SANDBOX_OPERATIONS.labels(operation="create", status="invalid").inc()
            raise InvalidIdentityError(user_id, reason)

        try:
            resources = self._create(user_id, env_vars or {}, runtime_env_vars or {})
        except UpstreamError:
            SANDBOX_OPERATIONS.labels(operation="create", status="error").inc()
            raise

        SANDBOX_OPERATIONS.labels(operation="create", status="success").inc()
        logger.info("sandbox_created", user_id=user_id, namespace=self.namespace)
        return resources

    def _create(
        self,
        user_id: str,
        env_vars: Dict[str, str],
        runtime_env_vars: Dict[str, str],
    ) -> SandboxResourceSet:
        self.ensure_namespace()

        spec = SandboxSpec(
            user_id=user_id,
            env_vars=env_vars,
            runtime_env_vars=runtime_env_vars,
            image=self.resolve_image(),
        )
        resources = compose(spec, self.settings, self.entrypoints, self.naming)
        ns = self.namespace
        opts = self.k8s.call_options

        self._ensure_pvc(resources)

        if resources.config_map is not None:
            name = resources.config_map.metadata.name
            with _upstream("create", f"configmap/{name}"):
                self.k8s.core_v1.create_namespaced_config_map(
                    namespace=ns, body=resources.config_map, **opts
                )

        name = resources.deployment.metadata.name
        with _upstream("create", f"deployment/{name}"):
            self.k8s.apps_v1.create_namespaced_deployment(
                namespace=ns, body=resources.deployment, **opts
            )

        name = resources.service.metadata.name
        with _upstream("create", f"service/{name}"):
            self.k8s.core_v1.create_namespaced_service(
                namespace=ns, body=resources.service, **opts
            )

        for manifest in resources.entrypoints:
            name = self.entrypoints.name_of(manifest)
            with _upstream("create", f"{self.entrypoints.kind}/{name}"):
                self.entrypoints.create(self.k8s, manifest)

        return resources

    # =========================================================================
    # Delete
    # =========================================================================

    def _teardown_step(
        self,
        report: TeardownReport,
        kind: str,
        name: str,
        delete: Callable[[], object],
    ) -> None:
        try:
            delete()
            report.record(kind, name, DELETED)
        except ApiException as e:
            if e.status == 404:
                report.record(kind, name, NOT_FOUND)
                return
            # Continue with other resources even if this one fails
            logger.warning(
                "sandbox_delete_step_failed",
                user_id=report.user_id,
                kind=kind,
                name=name,
                status=e.status,
                error=e.reason,
            )
            report.record(kind, name, FAILED, error=str(e.reason or e))
        except Exception as e:
            # Transport-level failures (connection refused, timeouts)
            logger.warning(
                "sandbox_delete_step_failed",
                user_id=report.user_id,
                kind=kind,
                name=name,
                error=str(e),
            )
            report.record(kind, name, FAILED, error=str(e))

    def _delete_deployment(self, names: List[str]) -> None:
        """Delete the first of names that exists; 404 only if none do."""
        for i, name in enumerate(names):
            try:
                self.k8s.apps_v1.delete_namespaced_deployment(
                    name=name,
                    namespace=self.namespace,
                    body=client.V1DeleteOptions(propagation_policy="Foreground"),
                    **self.k8s.call_options,
                )
                return
            except ApiException as e:
                if e.status != 404 or i == len(names) - 1:
                    raise

    def delete_sandbox(
        self, user_id: str, deployment_name: Optional[str] = None
    ) -> TeardownReport:
        """
        Delete a user's sandbox, keeping the PVC.

        deployment_name pins the Deployment to delete (the sweeper passes the
        name it listed). Without it the current name is tried first, then the
        names older layouts used.

        Never raises for K8s failures; each step's outcome is in the report.
        """
        report = TeardownReport(user_id=user_id)
        ns = self.namespace
        opts = self.k8s.call_options

        for name in self.entrypoints.names(user_id):
            self._teardown_step(
                report,
                self.entrypoints.kind,
                name,
                lambda name=name: self.entrypoints.delete(self.k8s, name),
            )

        service = NamingConvention.service_name(user_id)
        self._teardown_step(
            report,
            "service",
            service,
            lambda: self.k8s.core_v1.delete_namespaced_service(
                name=service, namespace=ns, **opts
            ),
        )

        candidates = (
            [deployment_name]
            if deployment_name
            else self.naming.deployment_names(user_id)
        )
        self._teardown_step(
            report,
            "deployment",
            candidates[0],
            lambda: self._delete_deployment(candidates),
        )

        config_map = NamingConvention.env_config_map_name(user_id)
        self._teardown_step(
            report,
            "configmap",
            config_map,
            lambda: self.k8s.core_v1.delete_namespaced_config_map(
                name=config_map, namespace=ns, **opts
            ),
        )

        status = "success" if report.ok else "partial"
        SANDBOX_OPERATIONS.labels(operation="delete", status=status).inc()
        logger.info(
            "sandbox_deleted",
            user_id=user_id,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    # =========================================================================
    # Read
    # =========================================================================

    def list_deployments(self, label_selector: Optional[str] = None) -> List:
        kwargs = dict(self.k8s.call_options)
        if label_selector:
            kwargs["label_selector"] = label_selector
        with _upstream("list", "deployments"):
            result = self.k8s.apps_v1.list_namespaced_deployment(
                namespace=self.namespace, **kwargs
            )
        return list(result.items or [])

    def resolve_identity(self, deployment) -> Tuple[Optional[str], Optional[str]]:
        """User ID of a listed Deployment and the rule that recovered it."""
        labels = deployment.metadata.labels or {}
        return self.naming.resolve(deployment.metadata.name, labels.get(USER_LABEL))

    def identity_of(self, deployment) -> Optional[str]:
        return self.resolve_identity(deployment)[0]

    def list_sandboxes(self) -> List[SandboxStatusView]:
        """Coarse status of every sandbox whose identity can be derived."""
        selector = (
            NamingConvention.sandbox_selector()
            if self.settings.list_label_filter
            else None
        )
        views = []
        for deployment in self.list_deployments(selector):
            user_id = self.identity_of(deployment)
            if not user_id:
                continue
            views.append(base_view(user_id, deployment))
        return views

    def _read_deployment(self, user_id: str):
        """Read the current Deployment, falling back to older layouts' names."""
        for name in self.naming.deployment_names(user_id):
            with _upstream("read", f"deployment/{name}"):
                try:
                    return self.k8s.apps_v1.read_namespaced_deployment(
                        name=name, namespace=self.namespace, **self.k8s.call_options
                    )
                except ApiException as e:
                    if e.status != 404:
                        raise
        raise SandboxNotFoundError(user_id)

    def get_sandbox_status(self, user_id: str) -> SandboxStatusView:
        """
        Detailed status of one sandbox.

        Raises:
            SandboxNotFoundError: no Deployment for this user ID
            UpstreamError: the Deployment could not be read
        """
        deployment = self._read_deployment(user_id)
        view = base_view(user_id, deployment)

        try:
            pods = self.k8s.core_v1.list_namespaced_pod(
                namespace=self.namespace,
                label_selector=NamingConvention.pod_selector(user_id),
                **self.k8s.call_options,
            )
        except Exception as e:
            # Degrade to the coarse view
            logger.warning(
                "sandbox_pod_list_failed",
                user_id=user_id,
                status=getattr(e, "status", None),
                error=str(e),
            )
            return view

        pod = newest_pod(list(pods.items or []))
        if pod is None:
            view.message = NO_PODS_MESSAGE
            return view

        return refine_status(view, pod)
