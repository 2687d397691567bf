"""
Sandbox identity validation, naming and recovery.

A sandbox is addressed by its user ID. Every resource name is derived from it:

- PVC:        {user_id}-pvc
- ConfigMap:  {user_id}-node-env
- Deployment: [{prefix}-]{user_id}-deployment
- Service:    {user_id}-service
- Ingress:    {user_id}-ingress
- Routes:     {user_id}-vnc, {user_id}-api

Workloads created here always carry a ``user`` label. Older workloads may not,
so the identity can also be recovered from the Deployment name.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

MAX_NAME_LENGTH = 63

# DNS-1035 label, as used by Kubernetes for Service names
_NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")

DEPLOYMENT_SUFFIX = "-deployment"

USER_LABEL = "user"
APP_LABEL = "app"
APP_LABEL_VALUE = "user-sandbox"

REASON_EMPTY = "Name cannot be empty"
REASON_TOO_LONG = "Name must be 63 characters or less"
REASON_PATTERN = (
    "Name must consist of lower case alphanumeric characters or '-', "
    "start with an alphabetic character, and end with an alphanumeric character"
)


def validate_identity(name: str) -> Tuple[bool, str]:
    """Check a user ID against DNS-1035 label rules.

    Returns:
        (valid, reason); reason is empty when valid.
    """
    if not name:
        return False, REASON_EMPTY
    if len(name) > MAX_NAME_LENGTH:
        return False, REASON_TOO_LONG
    if not _NAME_PATTERN.match(name):
        return False, REASON_PATTERN
    return True, ""


# Which rule recovered an identity
RULE_LABEL = "label"
RULE_NAME = "name"
RULE_SEGMENT = "segment"


def resolve_identity(
    resource_name: str,
    explicit_label: Optional[str] = None,
    *,
    prefixes: Iterable[str] = ("iris",),
) -> Tuple[Optional[str], Optional[str]]:
    """
    Recover a user ID from a workload, along with the rule that matched.

    Precedence:
    1. the explicit ``user`` label (RULE_LABEL)
    2. ``{id}-deployment`` or ``{prefix}-{id}-deployment`` (first matching
       prefix is stripped) (RULE_NAME)
    3. second ``-`` separated segment of the name (RULE_SEGMENT)

    Only the first two identify the workload itself as a sandbox Deployment.
    """
    if explicit_label:
        return explicit_label, RULE_LABEL

    name = resource_name or ""
    if name.endswith(DEPLOYMENT_SUFFIX):
        middle = name[: -len(DEPLOYMENT_SUFFIX)]
        for prefix in prefixes:
            if not prefix:
                continue
            head = f"{prefix}-"
            if middle.startswith(head) and len(middle) > len(head):
                return middle[len(head) :], RULE_NAME
        if middle:
            return middle, RULE_NAME
        return None, None

    parts = name.split("-")
    if len(parts) >= 2 and parts[1]:
        return parts[1], RULE_SEGMENT
    return None, None


def derive_identity(
    resource_name: str,
    explicit_label: Optional[str] = None,
    *,
    prefixes: Iterable[str] = ("iris",),
) -> Optional[str]:
    """Recover a user ID from a workload (see resolve_identity)."""
    user_id, _ = resolve_identity(resource_name, explicit_label, prefixes=prefixes)
    return user_id


@dataclass(frozen=True)
class NamingConvention:
    """Resource names and selectors for one sandbox deployment layout."""

    deployment_prefix: str = ""
    legacy_prefixes: List[str] = field(default_factory=lambda: ["iris"])

    @property
    def known_prefixes(self) -> List[str]:
        ordered = [self.deployment_prefix] if self.deployment_prefix else []
        ordered.extend(p for p in self.legacy_prefixes if p and p not in ordered)
        return ordered

    def deployment_name(self, user_id: str) -> str:
        if self.deployment_prefix:
            return f"{self.deployment_prefix}-{user_id}{DEPLOYMENT_SUFFIX}"
        return f"{user_id}{DEPLOYMENT_SUFFIX}"

    def deployment_names(self, user_id: str) -> List[str]:
        """Current Deployment name first, then names older layouts used."""
        names = [self.deployment_name(user_id)]
        for prefix in self.known_prefixes:
            names.append(f"{prefix}-{user_id}{DEPLOYMENT_SUFFIX}")
        names.append(f"{user_id}{DEPLOYMENT_SUFFIX}")
        return list(dict.fromkeys(names))

    @staticmethod
    def pvc_name(user_id: str) -> str:
        return f"{user_id}-pvc"

    @staticmethod
    def env_config_map_name(user_id: str) -> str:
        return f"{user_id}-node-env"

    @staticmethod
    def service_name(user_id: str) -> str:
        return f"{user_id}-service"

    @staticmethod
    def ingress_name(user_id: str) -> str:
        return f"{user_id}-ingress"

    @staticmethod
    def route_name(user_id: str, role: str) -> str:
        return f"{user_id}-{role}"

    @staticmethod
    def labels(user_id: str) -> dict:
        return {APP_LABEL: APP_LABEL_VALUE, USER_LABEL: user_id}

    @staticmethod
    def pod_selector(user_id: str) -> str:
        return f"{APP_LABEL}={APP_LABEL_VALUE},{USER_LABEL}={user_id}"

    @staticmethod
    def sandbox_selector() -> str:
        return f"{APP_LABEL}={APP_LABEL_VALUE}"

    def derive(self, resource_name: str, explicit_label: Optional[str]) -> Optional[str]:
        return derive_identity(
            resource_name, explicit_label, prefixes=self.known_prefixes
        )

    def resolve(
        self, resource_name: str, explicit_label: Optional[str]
    ) -> Tuple[Optional[str], Optional[str]]:
        return resolve_identity(
            resource_name, explicit_label, prefixes=self.known_prefixes
        )

    @classmethod
    def from_settings(cls, settings) -> "NamingConvention":
        return cls(
            deployment_prefix=settings.deployment_name_prefix,
            legacy_prefixes=list(settings.legacy_name_prefixes),
        )
