from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any

from kubernetes.client import (
    RbacV1Subject,
    V1ObjectMeta,
    V1ObjectReference,
    V1RoleBinding,
    V1RoleRef,
    V1Secret,
    V1ServiceAccount,
)

from argo_controller.src.config import WorkflowsSettings

NAME_PREFIX = "argo-workflows"
RBAC_RULE_ANNOTATION = "workflows.argoproj.io/rbac-rule"
RBAC_RULE_PRECEDENCE_ANNOTATION = "workflows.argoproj.io/rbac-rule-precedence"
RBAC_RULE_PRECEDENCE = "1"
SERVICE_ACCOUNT_NAME_ANNOTATION = "kubernetes.io/service-account.name"
RBAC_API_GROUP = "rbac.authorization.k8s.io"
OPAQUE_SECRET_TYPE = "Opaque"
TOKEN_SECRET_TYPE = "kubernetes.io/service-account-token"


@dataclass(frozen=True)
class DesiredState:
    """Every derived object that should exist in one namespace, in a stable order."""

    service_accounts: list[V1ServiceAccount] = field(default_factory=list)
    role_bindings: list[V1RoleBinding] = field(default_factory=list)
    secrets: list[V1Secret] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.service_accounts) + len(self.role_bindings) + len(self.secrets)


def group_object_name(group: str) -> str:
    return f"{NAME_PREFIX}-{group}"


def rbac_rule(group: str) -> str:
    return f"'{group}' in groups"


def admin_groups(admin_role_binding: Any) -> list[str]:
    """Return ``Group`` subject names in their declared order.

    A group listed twice is only emitted once so derived names stay unique.
    """
    groups: list[str] = []
    for subject in getattr(admin_role_binding, "subjects", None) or []:
        if getattr(subject, "kind", None) != "Group":
            continue
        name = getattr(subject, "name", None)
        if name and name not in groups:
            groups.append(name)
    return groups


def _encode(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _service_account_role_binding(namespace: str, name: str, cluster_role: str) -> V1RoleBinding:
    return V1RoleBinding(
        api_version=f"{RBAC_API_GROUP}/v1",
        kind="RoleBinding",
        metadata=V1ObjectMeta(name=name, namespace=namespace),
        role_ref=V1RoleRef(api_group=RBAC_API_GROUP, kind="ClusterRole", name=cluster_role),
        subjects=[
            RbacV1Subject(api_group="", kind="ServiceAccount", name=name, namespace=namespace)
        ],
    )


def namespace_secret(namespace: str, settings: WorkflowsSettings) -> V1Secret:
    """The opaque credential secret distributed to every namespace."""
    return V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=V1ObjectMeta(name=settings.secret_name, namespace=namespace),
        type=OPAQUE_SECRET_TYPE,
        data={
            "root-user": _encode(settings.storage_account_name),
            "root-password": _encode(settings.storage_account_key),
        },
    )


def generate_service_accounts(namespace: str, groups: list[str]) -> list[V1ServiceAccount]:
    # The runner account is the one workflow pods run as.
    service_accounts = [
        V1ServiceAccount(
            api_version="v1",
            kind="ServiceAccount",
            metadata=V1ObjectMeta(name=NAME_PREFIX, namespace=namespace),
        )
    ]
    for group in groups:
        name = group_object_name(group)
        service_accounts.append(
            V1ServiceAccount(
                api_version="v1",
                kind="ServiceAccount",
                metadata=V1ObjectMeta(
                    name=name,
                    namespace=namespace,
                    annotations={
                        RBAC_RULE_ANNOTATION: rbac_rule(group),
                        RBAC_RULE_PRECEDENCE_ANNOTATION: RBAC_RULE_PRECEDENCE,
                    },
                ),
                secrets=[V1ObjectReference(name=name)],
            )
        )
    return service_accounts


def generate_role_bindings(
    namespace: str, groups: list[str], settings: WorkflowsSettings
) -> list[V1RoleBinding]:
    role_bindings = [
        _service_account_role_binding(namespace, NAME_PREFIX, settings.runner_cluster_role)
    ]
    for group in groups:
        role_bindings.append(
            _service_account_role_binding(
                namespace, group_object_name(group), settings.interface_cluster_role
            )
        )
    return role_bindings


def generate_secrets(
    namespace: str, groups: list[str], settings: WorkflowsSettings
) -> list[V1Secret]:
    secrets = [namespace_secret(namespace, settings)]
    for group in groups:
        name = group_object_name(group)
        secrets.append(
            V1Secret(
                api_version="v1",
                kind="Secret",
                metadata=V1ObjectMeta(
                    name=name,
                    namespace=namespace,
                    annotations={SERVICE_ACCOUNT_NAME_ANNOTATION: name},
                ),
                type=TOKEN_SECRET_TYPE,
            )
        )
    return secrets


def generate_desired_state(
    namespace: str,
    admin_role_binding: Any,
    settings: WorkflowsSettings,
) -> DesiredState:
    """Compute the derived objects for *namespace* from its admin role binding.

    Pure and deterministic: the same subject order always yields the same
    lists.  ``admin_role_binding`` may be None, in which case only the
    namespace-wide secret is produced.  The system namespace gets nothing.
    """
    if namespace == settings.system_namespace:
        return DesiredState()

    if admin_role_binding is None:
        return DesiredState(secrets=[namespace_secret(namespace, settings)])

    groups = admin_groups(admin_role_binding)
    return DesiredState(
        service_accounts=generate_service_accounts(namespace, groups),
        role_bindings=generate_role_bindings(namespace, groups, settings),
        secrets=generate_secrets(namespace, groups, settings),
    )
