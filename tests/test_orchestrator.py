import pytest
from kubernetes import client

from factories import (
    api_error,
    container,
    deployment_list,
    make_deployment,
    make_pod,
    pod_list,
    waiting,
)
from sandbox_orchestrator.errors import (
    InvalidIdentityError,
    SandboxNotFoundError,
    UpstreamError,
)
from sandbox_orchestrator.models import DELETED, FAILED, NOT_FOUND
from sandbox_orchestrator.orchestrator import SandboxOrchestrator
from sandbox_orchestrator.status import NO_PODS_MESSAGE, PENDING, RUNNING


@pytest.fixture()
def orch(kc, settings) -> SandboxOrchestrator:
    return SandboxOrchestrator(kc, settings)


def _calls(kc, *verbs):
    """Names of K8s API calls made so far, filtered by verb."""
    names = [c[0] for c in kc.mock_calls]
    return [n for n in names if any(v in n for v in verbs)]


def _created_body(mock_method):
    return mock_method.call_args.kwargs["body"]


# =============================================================================
# Create
# =============================================================================


def test_create_rejects_invalid_identity_without_cluster_calls(orch, kc):
    with pytest.raises(InvalidIdentityError) as exc:
        orch.create_sandbox("My_User")
    assert "invalid user ID for Kubernetes service" in str(exc.value)
    assert kc.mock_calls == []


def test_create_order_for_new_user(orch, kc):
    kc.core_v1.read_namespaced_persistent_volume_claim.side_effect = api_error(404)

    resources = orch.create_sandbox(
        "alice", env_vars={"FOO": "bar"}, runtime_env_vars={"NODE_ENV": "prod"}
    )

    assert _calls(kc, "read_", "create_") == [
        "core_v1.read_namespace",
        "core_v1.read_namespaced_persistent_volume_claim",
        "core_v1.create_namespaced_persistent_volume_claim",
        "core_v1.create_namespaced_config_map",
        "apps_v1.create_namespaced_deployment",
        "core_v1.create_namespaced_service",
        "custom_objects.create_namespaced_custom_object",
        "custom_objects.create_namespaced_custom_object",
    ]
    assert resources.display_url == "https://alice-vnc.tryiris.dev"
    assert resources.api_url == "https://alice-api.tryiris.dev"

    deployment = _created_body(kc.apps_v1.create_namespaced_deployment)
    assert deployment.metadata.name == "alice-deployment"
    assert deployment.metadata.labels["user"] == "alice"


def test_create_reuses_existing_pvc(orch, kc):
    orch.create_sandbox("alice")
    kc.core_v1.create_namespaced_persistent_volume_claim.assert_not_called()
    kc.apps_v1.create_namespaced_deployment.assert_called_once()


def test_create_skips_config_map_without_runtime_env(orch, kc):
    orch.create_sandbox("alice", env_vars={"FOO": "bar"})
    kc.core_v1.create_namespaced_config_map.assert_not_called()


def test_create_creates_missing_namespace(orch, kc):
    kc.core_v1.read_namespace.side_effect = api_error(404)
    orch.create_sandbox("alice")
    body = _created_body(kc.core_v1.create_namespace)
    assert body.metadata.name == "user-sandboxes"


def test_create_tolerates_namespace_create_race(orch, kc):
    kc.core_v1.read_namespace.side_effect = api_error(404)
    kc.core_v1.create_namespace.side_effect = api_error(409, "AlreadyExists")
    orch.create_sandbox("alice")
    kc.apps_v1.create_namespaced_deployment.assert_called_once()


def test_create_tolerates_pvc_create_race(orch, kc):
    kc.core_v1.read_namespaced_persistent_volume_claim.side_effect = api_error(404)
    kc.core_v1.create_namespaced_persistent_volume_claim.side_effect = api_error(409)
    orch.create_sandbox("alice")
    kc.apps_v1.create_namespaced_deployment.assert_called_once()


def test_create_failure_aborts_without_rollback(orch, kc):
    kc.apps_v1.create_namespaced_deployment.side_effect = api_error(500, "boom")

    with pytest.raises(UpstreamError) as exc:
        orch.create_sandbox("alice", runtime_env_vars={"A": "1"})

    assert exc.value.status == 500
    assert "deployment/alice-deployment" in str(exc.value)
    kc.core_v1.create_namespaced_service.assert_not_called()
    kc.custom_objects.create_namespaced_custom_object.assert_not_called()
    assert _calls(kc, "delete_") == []


def test_create_surfaces_namespace_read_failure(orch, kc):
    kc.core_v1.read_namespace.side_effect = api_error(403, "Forbidden")
    with pytest.raises(UpstreamError):
        orch.create_sandbox("alice")
    kc.apps_v1.create_namespaced_deployment.assert_not_called()


def test_create_with_ingress_style(kc, settings):
    settings.entrypoint_style = "ingress"
    orch = SandboxOrchestrator(kc, settings)
    orch.create_sandbox("alice")
    ingress = _created_body(kc.networking_v1.create_namespaced_ingress)
    assert ingress.metadata.name == "alice-ingress"


def test_image_tag_from_config_map(orch, kc, settings):
    settings.image_tag_config_map = "app-config"
    kc.core_v1.read_namespaced_config_map.return_value = client.V1ConfigMap(
        data={"container-image-tag": "v2"}
    )
    orch.create_sandbox("alice")
    deployment = _created_body(kc.apps_v1.create_namespaced_deployment)
    image = deployment.spec.template.spec.containers[0].image
    assert image == "shanurcsenitap/iris_agent:v2"


def test_image_tag_falls_back_when_config_map_missing(orch, kc, settings):
    settings.image_tag_config_map = "app-config"
    kc.core_v1.read_namespaced_config_map.side_effect = api_error(404)
    assert orch.resolve_image() == "shanurcsenitap/iris_agent:latest"


def test_image_tag_falls_back_when_key_missing(orch, kc, settings):
    settings.image_tag_config_map = "app-config"
    kc.core_v1.read_namespaced_config_map.return_value = client.V1ConfigMap(data={})
    assert orch.resolve_image() == "shanurcsenitap/iris_agent:latest"


# =============================================================================
# Delete
# =============================================================================


def test_delete_removes_everything_but_pvc(orch, kc):
    report = orch.delete_sandbox("alice")

    assert report.ok
    assert [(s.kind, s.name, s.outcome) for s in report.steps] == [
        ("ingressroute", "alice-vnc", DELETED),
        ("ingressroute", "alice-api", DELETED),
        ("service", "alice-service", DELETED),
        ("deployment", "alice-deployment", DELETED),
        ("configmap", "alice-node-env", DELETED),
    ]
    kc.core_v1.delete_namespaced_persistent_volume_claim.assert_not_called()

    body = kc.apps_v1.delete_namespaced_deployment.call_args.kwargs["body"]
    assert body.propagation_policy == "Foreground"


def test_delete_is_idempotent(orch, kc):
    kc.custom_objects.delete_namespaced_custom_object.side_effect = api_error(404)
    kc.core_v1.delete_namespaced_service.side_effect = api_error(404)
    kc.apps_v1.delete_namespaced_deployment.side_effect = api_error(404)
    kc.core_v1.delete_namespaced_config_map.side_effect = api_error(404)

    for _ in range(2):
        report = orch.delete_sandbox("ghost")
        assert report.ok
        assert {s.outcome for s in report.steps} == {NOT_FOUND}


def test_delete_continues_past_failures(orch, kc):
    kc.core_v1.delete_namespaced_service.side_effect = api_error(500, "boom")

    report = orch.delete_sandbox("alice")

    assert not report.ok
    assert report.failed == 1
    assert report.succeeded == 4
    kc.apps_v1.delete_namespaced_deployment.assert_called_once()
    kc.core_v1.delete_namespaced_config_map.assert_called_once()
    failed = [s for s in report.steps if s.outcome == FAILED]
    assert failed[0].name == "alice-service"


def test_delete_records_transport_errors(orch, kc):
    kc.apps_v1.delete_namespaced_deployment.side_effect = ConnectionError("refused")
    report = orch.delete_sandbox("alice")
    assert report.failed == 1
    kc.core_v1.delete_namespaced_config_map.assert_called_once()


def test_delete_with_ingress_style(kc, settings):
    settings.entrypoint_style = "ingress"
    report = SandboxOrchestrator(kc, settings).delete_sandbox("alice")
    assert report.steps[0].kind == "ingress"
    kc.networking_v1.delete_namespaced_ingress.assert_called_once_with(
        name="alice-ingress", namespace="user-sandboxes"
    )


# =============================================================================
# List / Status
# =============================================================================


def test_list_sandboxes(orch, kc):
    kc.apps_v1.list_namespaced_deployment.return_value = deployment_list(
        make_deployment(
            "alice-deployment", labels={"app": "user-sandbox", "user": "alice"}, available=1
        ),
        make_deployment("iris-bob-deployment", unavailable=1),
        make_deployment("foo"),
    )

    views = orch.list_sandboxes()

    assert [(v.user_id, v.status) for v in views] == [
        ("alice", RUNNING),
        ("bob", "Unavailable"),
    ]
    kwargs = kc.apps_v1.list_namespaced_deployment.call_args.kwargs
    assert "label_selector" not in kwargs


def test_list_sandboxes_with_label_filter(orch, kc, settings):
    settings.list_label_filter = True
    kc.apps_v1.list_namespaced_deployment.return_value = deployment_list()
    assert orch.list_sandboxes() == []
    kwargs = kc.apps_v1.list_namespaced_deployment.call_args.kwargs
    assert kwargs["label_selector"] == "app=user-sandbox"


def test_list_failure_is_upstream_error(orch, kc):
    kc.apps_v1.list_namespaced_deployment.side_effect = api_error(500)
    with pytest.raises(UpstreamError):
        orch.list_sandboxes()


def test_status_not_found(orch, kc):
    kc.apps_v1.read_namespaced_deployment.side_effect = api_error(404)
    with pytest.raises(SandboxNotFoundError):
        orch.get_sandbox_status("ghost")


def test_status_read_failure_is_upstream_error(orch, kc):
    kc.apps_v1.read_namespaced_deployment.side_effect = api_error(500)
    with pytest.raises(UpstreamError):
        orch.get_sandbox_status("alice")


def test_status_refined_from_newest_pod(orch, kc):
    kc.apps_v1.read_namespaced_deployment.return_value = make_deployment(
        "alice-deployment"
    )
    kc.core_v1.list_namespaced_pod.return_value = pod_list(
        make_pod(
            "alice-pod",
            "Pending",
            containers=[container("sandbox", waiting("ImagePullBackOff"))],
        )
    )

    view = orch.get_sandbox_status("alice")

    assert view.status == "ImagePullBackOff"
    assert view.pod_name == "alice-pod"
    kwargs = kc.core_v1.list_namespaced_pod.call_args.kwargs
    assert kwargs["label_selector"] == "app=user-sandbox,user=alice"


def test_status_without_pods(orch, kc):
    kc.apps_v1.read_namespaced_deployment.return_value = make_deployment(
        "alice-deployment"
    )
    kc.core_v1.list_namespaced_pod.return_value = pod_list()

    view = orch.get_sandbox_status("alice")
    assert view.status == PENDING
    assert view.message == NO_PODS_MESSAGE


def test_status_degrades_when_pods_unreadable(orch, kc):
    kc.apps_v1.read_namespaced_deployment.return_value = make_deployment(
        "alice-deployment", available=1
    )
    kc.core_v1.list_namespaced_pod.side_effect = api_error(500)

    view = orch.get_sandbox_status("alice")
    assert view.status == RUNNING
    assert view.pod_name is None


# =============================================================================
# Transport failures
# =============================================================================


def test_create_wraps_transport_errors(orch, kc):
    kc.apps_v1.create_namespaced_deployment.side_effect = ConnectionError("refused")
    with pytest.raises(UpstreamError) as exc:
        orch.create_sandbox("alice")
    assert "refused" in str(exc.value)
    kc.core_v1.create_namespaced_service.assert_not_called()


def test_namespace_transport_error_is_upstream_error(orch, kc):
    kc.core_v1.read_namespace.side_effect = ConnectionError("timed out")
    with pytest.raises(UpstreamError):
        orch.create_sandbox("alice")


def test_pvc_transport_error_is_upstream_error(orch, kc):
    kc.core_v1.read_namespaced_persistent_volume_claim.side_effect = TimeoutError()
    with pytest.raises(UpstreamError):
        orch.create_sandbox("alice")
    kc.apps_v1.create_namespaced_deployment.assert_not_called()


def test_list_transport_error_is_upstream_error(orch, kc):
    kc.apps_v1.list_namespaced_deployment.side_effect = ConnectionError("refused")
    with pytest.raises(UpstreamError):
        orch.list_sandboxes()


def test_status_read_transport_error_is_upstream_error(orch, kc):
    kc.apps_v1.read_namespaced_deployment.side_effect = ConnectionError("refused")
    with pytest.raises(UpstreamError):
        orch.get_sandbox_status("alice")


def test_status_degrades_when_pod_list_times_out(orch, kc):
    kc.apps_v1.read_namespaced_deployment.return_value = make_deployment(
        "alice-deployment", available=1
    )
    kc.core_v1.list_namespaced_pod.side_effect = ConnectionError("timed out")

    view = orch.get_sandbox_status("alice")
    assert view.status == RUNNING


def test_image_tag_falls_back_on_transport_error(orch, kc, settings):
    settings.image_tag_config_map = "app-config"
    kc.core_v1.read_namespaced_config_map.side_effect = ConnectionError("refused")
    assert orch.resolve_image() == "shanurcsenitap/iris_agent:latest"


# =============================================================================
# Naming across create / status / delete
# =============================================================================


def test_status_after_create_uses_same_prefixed_name(kc, settings):
    settings.deployment_name_prefix = "sbx"
    orch = SandboxOrchestrator(kc, settings)
    orch.create_sandbox("alice")
    created = _created_body(kc.apps_v1.create_namespaced_deployment)
    assert created.metadata.name == "sbx-alice-deployment"

    kc.apps_v1.read_namespaced_deployment.return_value = make_deployment(
        created.metadata.name, labels=created.metadata.labels
    )
    kc.core_v1.list_namespaced_pod.return_value = pod_list()

    view = orch.get_sandbox_status("alice")

    assert view.user_id == "alice"
    kwargs = kc.apps_v1.read_namespaced_deployment.call_args_list[0].kwargs
    assert kwargs["name"] == "sbx-alice-deployment"


def test_status_finds_legacy_deployment(orch, kc):
    legacy = make_deployment("iris-bob-deployment", available=1)

    def read(name, **kwargs):
        if name == "iris-bob-deployment":
            return legacy
        raise api_error(404)

    kc.apps_v1.read_namespaced_deployment.side_effect = read
    kc.core_v1.list_namespaced_pod.return_value = pod_list()

    view = orch.get_sandbox_status("bob")
    assert view.status == RUNNING
    names = [
        c.kwargs["name"] for c in kc.apps_v1.read_namespaced_deployment.call_args_list
    ]
    assert names == ["bob-deployment", "iris-bob-deployment"]


def test_delete_finds_legacy_deployment(orch, kc):
    def delete(name, **kwargs):
        if name != "iris-bob-deployment":
            raise api_error(404)

    kc.apps_v1.delete_namespaced_deployment.side_effect = delete

    report = orch.delete_sandbox("bob")

    step = [s for s in report.steps if s.kind == "deployment"][0]
    assert step.outcome == DELETED
    names = [
        c.kwargs["name"] for c in kc.apps_v1.delete_namespaced_deployment.call_args_list
    ]
    assert names == ["bob-deployment", "iris-bob-deployment"]


def test_delete_with_pinned_name_skips_fallback(orch, kc):
    kc.apps_v1.delete_namespaced_deployment.side_effect = api_error(404)
    report = orch.delete_sandbox("bob", deployment_name="bob-deployment")
    assert report.ok
    kc.apps_v1.delete_namespaced_deployment.assert_called_once()
