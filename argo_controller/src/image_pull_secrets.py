from __future__ import annotations

import copy
import logging
from typing import Any

from kubernetes.client import CoreV1Api, RbacAuthorizationV1Api, V1LocalObjectReference

from argo_controller.src.config import ImagePullSecretsSettings, RuntimeSettings
from argo_controller.src.informer import Informer, Store
from argo_controller.src.keys import service_account_key, split_key
from argo_controller.src.kube import KubeWriter, ObjectKind
from argo_controller.src.worker import Controller
from argo_controller.src.workqueue import RateLimitingQueue

CONTROLLER_NAME = "image-pull-secrets"


def belongs_to_subsystem(service_account: Any, settings: ImagePullSecretsSettings) -> bool:
    labels = getattr(getattr(service_account, "metadata", None), "labels", None) or {}
    return labels.get(settings.part_of_label) == settings.part_of_value


def has_image_pull_secret(service_account: Any, secret_name: str) -> bool:
    return any(
        getattr(reference, "name", None) == secret_name
        for reference in (getattr(service_account, "image_pull_secrets", None) or [])
    )


def with_image_pull_secret(service_account: Any, secret_name: str) -> Any:
    """Return a copy of *service_account* with *secret_name* appended to ``imagePullSecrets``."""
    updated = copy.deepcopy(service_account)
    references = list(updated.image_pull_secrets or [])
    references.append(V1LocalObjectReference(name=secret_name))
    updated.image_pull_secrets = references
    return updated


class ImagePullSecretsReconciler:
    """Ensures labelled service accounts reference the configured image pull secret.

    Keys are ``<namespace>/<name>``.  Existing ``imagePullSecrets`` entries are
    kept; the configured one is only appended when missing.
    """

    def __init__(
        self,
        settings: ImagePullSecretsSettings,
        service_accounts: Store,
        writer: KubeWriter,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.service_accounts = service_accounts
        self.writer = writer
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, key: str) -> bool:
        """Return True when a write was issued."""
        namespace, name = split_key(key)
        service_account = self.service_accounts.get(namespace, name)
        if service_account is None:
            return False
        if not belongs_to_subsystem(service_account, self.settings):
            return False
        if has_image_pull_secret(service_account, self.settings.image_pull_secret):
            return False

        self.logger.info("Adding image pull secret to %s/%s", namespace, name)
        self.writer.replace(
            ObjectKind.SERVICE_ACCOUNT,
            with_image_pull_secret(service_account, self.settings.image_pull_secret),
        )
        return True


def build_image_pull_secrets_controller(
    core_api: CoreV1Api,
    rbac_api: RbacAuthorizationV1Api,
    settings: ImagePullSecretsSettings,
    runtime: RuntimeSettings,
) -> tuple[Controller, list[Informer]]:
    """Wire the service account informer, queue and worker pool for ``image-pull-secrets``."""
    service_accounts = Informer(
        ObjectKind.SERVICE_ACCOUNT,
        core_api.list_service_account_for_all_namespaces,
        resync_seconds=runtime.resync_seconds,
    )
    reconciler = ImagePullSecretsReconciler(
        settings=settings,
        service_accounts=service_accounts.store,
        writer=KubeWriter(core_api=core_api, rbac_api=rbac_api),
    )
    queue = RateLimitingQueue(
        CONTROLLER_NAME,
        base_delay=runtime.retry_base_delay_seconds,
        max_delay=runtime.retry_max_delay_seconds,
        max_retries=runtime.max_retries,
    )
    controller = Controller(CONTROLLER_NAME, queue, reconciler.sync, workers=runtime.workers)
    service_accounts.add_handler(controller.notification_handler(service_account_key))
    return controller, [service_accounts]
