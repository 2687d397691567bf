"""
Manifest builders for sandbox resources.

Each sandbox includes:
1. PersistentVolumeClaim for user data (kept across sandbox sessions)
2. Optional ConfigMap holding runtime env vars as a single .env file
3. Deployment with exactly 1 replica
4. Service exposing the remote-display (vnc) and API (http) ports
5. Network entrypoints (see entrypoints.py)

Builders are pure: they only return kubernetes client models.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from kubernetes import client

from sandbox_orchestrator.identity import NamingConvention
from sandbox_orchestrator.models import SandboxResourceSet, SandboxSpec

ENV_FILE_KEY = "node.env"
DATA_VOLUME = "user-data"
ENV_VOLUME = "node-env"
SHM_VOLUME = "shm-volume"

DISPLAY_PORT_NAME = "vnc"
HTTP_PORT_NAME = "http"

MANAGED_BY = "sandbox-orchestrator"


def _metadata(name: str, user_id: str, labels: Optional[Dict[str, str]] = None):
    meta_labels = dict(labels or NamingConvention.labels(user_id))
    meta_labels["app.kubernetes.io/managed-by"] = MANAGED_BY
    return client.V1ObjectMeta(name=name, labels=meta_labels)


def render_env_file(env_vars: Dict[str, str]) -> str:
    """Render env vars as a .env file, one KEY=VALUE per line."""
    return "".join(f"{key}={value}\n" for key, value in env_vars.items())


def build_pvc(user_id: str, settings) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=_metadata(NamingConvention.pvc_name(user_id), user_id),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=settings.storage_class or None,
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": settings.storage_size}
            ),
        ),
    )


def build_runtime_env_config_map(
    user_id: str, runtime_env_vars: Dict[str, str]
) -> client.V1ConfigMap:
    return client.V1ConfigMap(
        api_version="v1",
        kind="ConfigMap",
        metadata=_metadata(NamingConvention.env_config_map_name(user_id), user_id),
        data={ENV_FILE_KEY: render_env_file(runtime_env_vars)},
    )


def _container_env(user_id: str, env_vars: Dict[str, str]) -> List[client.V1EnvVar]:
    env = [
        client.V1EnvVar(name=key, value=value)
        for key, value in env_vars.items()
        if key != "USER_ID"
    ]
    env.append(client.V1EnvVar(name="USER_ID", value=user_id))
    return env


def _data_mounts(settings) -> List[client.V1VolumeMount]:
    return [
        client.V1VolumeMount(name=DATA_VOLUME, mount_path=path)
        for path in settings.data_mount_paths
    ]


def _health_probe(settings, **timing) -> client.V1Probe:
    return client.V1Probe(
        http_get=client.V1HTTPGetAction(
            path=settings.health_check_path,
            port=settings.http_port,
        ),
        **timing,
    )


def _init_container(settings) -> client.V1Container:
    data_path = settings.data_mount_paths[0]
    script = (
        f"chmod -R 777 {data_path} && "
        f"rm -f {data_path}/browser/user-data/Singleton*"
    )
    return client.V1Container(
        name="volume-permissions",
        image=settings.init_image,
        image_pull_policy="IfNotPresent",
        command=["sh", "-c", script],
        volume_mounts=_data_mounts(settings),
        # Root is needed to fix ownership on the mounted volume
        security_context=client.V1SecurityContext(run_as_user=0),
    )


def build_deployment(
    spec: SandboxSpec,
    settings,
    naming: Optional[NamingConvention] = None,
) -> client.V1Deployment:
    naming = naming or NamingConvention.from_settings(settings)
    user_id = spec.user_id
    labels = NamingConvention.labels(user_id)

    volume_mounts = _data_mounts(settings)
    volume_mounts.append(client.V1VolumeMount(name=SHM_VOLUME, mount_path="/dev/shm"))
    volumes = [
        client.V1Volume(
            name=DATA_VOLUME,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                claim_name=NamingConvention.pvc_name(user_id),
            ),
        ),
        client.V1Volume(
            name=SHM_VOLUME,
            empty_dir=client.V1EmptyDirVolumeSource(
                medium="Memory", size_limit=settings.shm_size_limit
            ),
        ),
    ]

    if spec.has_runtime_env:
        volume_mounts.append(
            client.V1VolumeMount(
                name=ENV_VOLUME,
                mount_path=settings.env_file_mount_path,
                sub_path=ENV_FILE_KEY,
            )
        )
        volumes.append(
            client.V1Volume(
                name=ENV_VOLUME,
                config_map=client.V1ConfigMapVolumeSource(
                    name=NamingConvention.env_config_map_name(user_id),
                ),
            )
        )

    container = client.V1Container(
        name="sandbox",
        image=spec.image or settings.default_image,
        image_pull_policy="IfNotPresent",
        security_context=client.V1SecurityContext(
            seccomp_profile=client.V1SeccompProfile(type="Unconfined"),
        ),
        ports=[
            client.V1ContainerPort(
                container_port=settings.display_port, name=DISPLAY_PORT_NAME
            ),
            client.V1ContainerPort(container_port=settings.http_port, name=HTTP_PORT_NAME),
        ],
        env=_container_env(user_id, spec.env_vars),
        volume_mounts=volume_mounts,
        resources=client.V1ResourceRequirements(
            requests={"cpu": settings.cpu_request, "memory": settings.memory_request},
            limits={"cpu": settings.cpu_limit, "memory": settings.memory_limit},
        ),
    )
    if settings.health_checks_enabled:
        container.liveness_probe = _health_probe(
            settings,
            initial_delay_seconds=3,
            timeout_seconds=2,
            period_seconds=3,
            success_threshold=1,
            failure_threshold=10,
        )
        container.readiness_probe = _health_probe(
            settings,
            initial_delay_seconds=5,
            timeout_seconds=1,
            period_seconds=3,
            success_threshold=1,
            failure_threshold=2,
        )

    pod_spec = client.V1PodSpec(containers=[container], volumes=volumes)
    if settings.init_container_enabled:
        pod_spec.init_containers = [_init_container(settings)]

    return client.V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=_metadata(naming.deployment_name(user_id), user_id),
        spec=client.V1DeploymentSpec(
            replicas=1,
            selector=client.V1LabelSelector(match_labels=labels),
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(labels)),
                spec=pod_spec,
            ),
        ),
    )


def build_service(user_id: str, settings) -> client.V1Service:
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=_metadata(NamingConvention.service_name(user_id), user_id),
        spec=client.V1ServiceSpec(
            type="ClusterIP",
            selector=NamingConvention.labels(user_id),
            ports=[
                client.V1ServicePort(
                    name=DISPLAY_PORT_NAME,
                    port=settings.display_port,
                    target_port=settings.display_port,
                    protocol="TCP",
                ),
                client.V1ServicePort(
                    name=HTTP_PORT_NAME,
                    port=settings.http_port,
                    target_port=settings.http_port,
                    protocol="TCP",
                ),
            ],
        ),
    )


def compose(
    spec: SandboxSpec,
    settings,
    entrypoints,
    naming: Optional[NamingConvention] = None,
) -> SandboxResourceSet:
    """Build every resource of a sandbox without touching the cluster."""
    user_id = spec.user_id
    return SandboxResourceSet(
        user_id=user_id,
        pvc=build_pvc(user_id, settings),
        config_map=(
            build_runtime_env_config_map(user_id, spec.runtime_env_vars)
            if spec.has_runtime_env
            else None
        ),
        deployment=build_deployment(spec, settings, naming),
        service=build_service(user_id, settings),
        entrypoints=entrypoints.build(user_id),
        display_url=entrypoints.display_url(user_id),
        api_url=entrypoints.api_url(user_id),
    )
