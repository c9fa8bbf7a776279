from __future__ import annotations

import enum
import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    CoreV1Api,
    RbacAuthorizationV1Api,
    V1DeleteOptions,
    V1Preconditions,
)
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


class ObjectKind(enum.Enum):
    NAMESPACE = "Namespace"
    SERVICE_ACCOUNT = "ServiceAccount"
    ROLE_BINDING = "RoleBinding"
    SECRET = "Secret"


def load_kube_configuration(kubeconfig: str | None = None, master: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit ``kubeconfig`` path wins.  Otherwise in-cluster config is
    attempted first (running inside a pod), falling back to the local
    kubeconfig for development.  ``master`` overrides the API server URL.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if master:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master
        client.Configuration.set_default(configuration)
        LOGGER.info("Using API server %s", master)


def build_clients() -> tuple[CoreV1Api, RbacAuthorizationV1Api]:
    """Return CoreV1 and RbacAuthorizationV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.RbacAuthorizationV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    """409 covers both ``AlreadyExists`` on create and stale ``resourceVersion`` on update."""
    return exc.status == 409


class KubeWriter:
    """Typed create/replace/read/delete calls for the namespaced kinds the engine writes.

    Every write is subject to the API server's optimistic concurrency:
    ``replace`` sends the ``resource_version`` carried by the object body, so a
    concurrent modification surfaces as an ``ApiException`` with status 409.
    """

    def __init__(self, core_api: CoreV1Api, rbac_api: RbacAuthorizationV1Api) -> None:
        self.core_api = core_api
        self.rbac_api = rbac_api

    def _api_and_suffix(self, kind: ObjectKind) -> tuple[Any, str]:
        if kind is ObjectKind.SERVICE_ACCOUNT:
            return self.core_api, "namespaced_service_account"
        if kind is ObjectKind.SECRET:
            return self.core_api, "namespaced_secret"
        if kind is ObjectKind.ROLE_BINDING:
            return self.rbac_api, "namespaced_role_binding"
        raise ValueError(f"Unsupported kind for writes: {kind.value}")

    def create(self, kind: ObjectKind, obj: Any) -> Any:
        api, suffix = self._api_and_suffix(kind)
        return getattr(api, f"create_{suffix}")(namespace=obj.metadata.namespace, body=obj)

    def replace(self, kind: ObjectKind, obj: Any) -> Any:
        api, suffix = self._api_and_suffix(kind)
        return getattr(api, f"replace_{suffix}")(
            name=obj.metadata.name,
            namespace=obj.metadata.namespace,
            body=obj,
        )

    def read(self, kind: ObjectKind, namespace: str, name: str) -> Any:
        api, suffix = self._api_and_suffix(kind)
        return getattr(api, f"read_{suffix}")(name=name, namespace=namespace)

    def delete(
        self,
        kind: ObjectKind,
        namespace: str,
        name: str,
        uid: str | None = None,
        resource_version: str | None = None,
    ) -> None:
        """Delete one object, optionally only if it still has the given uid and version."""
        api, suffix = self._api_and_suffix(kind)
        body = None
        if uid or resource_version:
            body = V1DeleteOptions(
                preconditions=V1Preconditions(uid=uid, resource_version=resource_version)
            )
        getattr(api, f"delete_{suffix}")(name=name, namespace=namespace, body=body)
