"""Configuration for the Sandbox Orchestrator service."""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Orchestrator settings.

    Built once at process start and handed to the orchestrator, sweeper and
    API app explicitly. Nothing reads these as module globals.
    """

    # Service configuration
    service_name: str = "sandbox-orchestrator"
    host: str = "0.0.0.0"
    port: int = 8080

    # Shared X-API-KEY for /v1 routes (empty disables the check)
    api_key: str = ""

    # Cluster placement
    namespace: str = "user-sandboxes"
    domain: str = "tryiris.dev"
    request_timeout_seconds: Optional[float] = None

    # Network entrypoints
    entrypoint_style: Literal["traefik", "ingress"] = "traefik"
    ingress_class: str = "traefik"
    traefik_entry_points: List[str] = ["websecure"]
    traefik_cert_resolver: str = "letsencrypt"

    # Sandbox image
    image_repository: str = "shanurcsenitap/iris_agent"
    image_tag: str = "latest"
    image_tag_config_map: str = ""  # e.g. "app-config"; empty uses image_tag
    image_tag_config_key: str = "container-image-tag"

    # Storage
    storage_class: str = "standard-rwo"
    storage_size: str = "1Gi"
    data_mount_paths: List[str] = ["/config"]
    env_file_mount_path: str = "/app/.env"

    # Sizing
    cpu_request: str = "500m"
    memory_request: str = "1Gi"
    cpu_limit: str = "1"
    memory_limit: str = "2Gi"
    shm_size_limit: str = "512Mi"

    # Container behaviour
    display_port: int = 6901
    http_port: int = 3000
    health_checks_enabled: bool = True
    health_check_path: str = "/api/health"
    init_container_enabled: bool = True
    init_image: str = "busybox"

    # Naming
    deployment_name_prefix: str = ""
    legacy_name_prefixes: List[str] = ["iris"]
    list_label_filter: bool = False

    # Expiry
    auto_cleanup_enabled: bool = True
    sweep_interval_seconds: float = 60.0
    sandbox_timeout_minutes: int = 30
    cleanup_auth_token: str = "k8s-auto-cleanup-token"

    class Config:
        env_prefix = "SANDBOX_"
        env_file = ".env"

    @property
    def default_image(self) -> str:
        return f"{self.image_repository}:{self.image_tag}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
