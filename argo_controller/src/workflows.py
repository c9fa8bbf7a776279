from __future__ import annotations

import logging
from typing import Any

from kubernetes.client import CoreV1Api, RbacAuthorizationV1Api

from argo_controller.src.config import RuntimeSettings, WorkflowsSettings
from argo_controller.src.convergence import ConvergenceEngine, ConvergenceResult
from argo_controller.src.generator import generate_desired_state
from argo_controller.src.informer import Informer, Store
from argo_controller.src.keys import namespace_key
from argo_controller.src.kube import KubeWriter, ObjectKind
from argo_controller.src.worker import Controller
from argo_controller.src.workqueue import RateLimitingQueue

CONTROLLER_NAME = "workflows"


class WorkflowsReconciler:
    """Reconciles one namespace's Argo Workflows access-control objects.

    The key is the namespace name.  Desired state is regenerated from the
    cached admin role binding on every run and handed to the
    :class:`ConvergenceEngine`; a partial failure raises
    :class:`~argo_controller.src.convergence.ReconcileError` so the key is
    retried with backoff.
    """

    def __init__(
        self,
        settings: WorkflowsSettings,
        namespaces: Store,
        role_bindings: Store,
        engine: ConvergenceEngine,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.namespaces = namespaces
        self.role_bindings = role_bindings
        self.engine = engine
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _is_terminating(namespace: Any) -> bool:
        phase = getattr(getattr(namespace, "status", None), "phase", None)
        return phase == "Terminating"

    def sync(self, key: str) -> ConvergenceResult | None:
        namespace = self.namespaces.get(None, key)
        if namespace is None:
            self.logger.debug("Namespace %s no longer exists; nothing to do", key)
            return None
        if self._is_terminating(namespace):
            self.logger.info("Skipping terminating namespace %s", key)
            return None

        admin_role_binding = self.role_bindings.get(key, self.settings.admin_role_binding_name)
        desired = generate_desired_state(key, admin_role_binding, self.settings)
        result = self.engine.converge_or_raise(key, desired)
        if result.writes:
            self.logger.info(
                "Reconciled namespace %s: %d write(s), %d unchanged",
                key,
                len(result.writes),
                len(result.unchanged),
            )
        return result


def build_workflows_controller(
    core_api: CoreV1Api,
    rbac_api: RbacAuthorizationV1Api,
    settings: WorkflowsSettings,
    runtime: RuntimeSettings,
) -> tuple[Controller, list[Informer]]:
    """Wire informers, queue, engine and worker pool for the ``workflows`` subcommand."""
    namespaces = Informer(
        ObjectKind.NAMESPACE, core_api.list_namespace, resync_seconds=runtime.resync_seconds
    )
    service_accounts = Informer(
        ObjectKind.SERVICE_ACCOUNT,
        core_api.list_service_account_for_all_namespaces,
        resync_seconds=runtime.resync_seconds,
    )
    role_bindings = Informer(
        ObjectKind.ROLE_BINDING,
        rbac_api.list_role_binding_for_all_namespaces,
        resync_seconds=runtime.resync_seconds,
    )
    secrets = Informer(
        ObjectKind.SECRET,
        core_api.list_secret_for_all_namespaces,
        resync_seconds=runtime.resync_seconds,
    )

    engine = ConvergenceEngine(
        writer=KubeWriter(core_api=core_api, rbac_api=rbac_api),
        listers={
            ObjectKind.SERVICE_ACCOUNT: service_accounts.store,
            ObjectKind.ROLE_BINDING: role_bindings.store,
            ObjectKind.SECRET: secrets.store,
        },
    )
    reconciler = WorkflowsReconciler(
        settings=settings,
        namespaces=namespaces.store,
        role_bindings=role_bindings.store,
        engine=engine,
    )
    queue = RateLimitingQueue(
        CONTROLLER_NAME,
        base_delay=runtime.retry_base_delay_seconds,
        max_delay=runtime.retry_max_delay_seconds,
        max_retries=runtime.max_retries,
    )
    controller = Controller(CONTROLLER_NAME, queue, reconciler.sync, workers=runtime.workers)

    informers = [namespaces, service_accounts, role_bindings, secrets]
    handler = controller.notification_handler(namespace_key)
    for informer in informers:
        informer.add_handler(handler)
    return controller, informers
