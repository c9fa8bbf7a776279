from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubernetes.client import ApiException

from argo_controller.src.generator import DesiredState
from argo_controller.src.kube import KubeWriter, ObjectKind, is_conflict, is_not_found
from argo_controller.src.metrics import METRICS
from argo_controller.src.owned import diff_role_binding, diff_secret, diff_service_account

CREATED = "created"
UPDATED = "updated"
REPLACED = "replaced"
UNCHANGED = "unchanged"
FAILED = "failed"

_DIFFERS = {
    ObjectKind.SERVICE_ACCOUNT: diff_service_account,
    ObjectKind.ROLE_BINDING: diff_role_binding,
    ObjectKind.SECRET: diff_secret,
}


class Lister(Protocol):
    def get(self, namespace: str, name: str) -> Any: ...


@dataclass(frozen=True)
class ObjectOutcome:
    """What happened to one desired object during a convergence run."""

    kind: ObjectKind
    namespace: str
    name: str
    action: str
    error: Exception | None = None

    def __str__(self) -> str:
        return f"{self.kind.value} {self.namespace}/{self.name}"


@dataclass(frozen=True)
class ConvergenceResult:
    namespace: str
    outcomes: list[ObjectOutcome] = field(default_factory=list)

    def _with_action(self, action: str) -> list[ObjectOutcome]:
        return [outcome for outcome in self.outcomes if outcome.action == action]

    @property
    def failed(self) -> list[ObjectOutcome]:
        return self._with_action(FAILED)

    @property
    def unchanged(self) -> list[ObjectOutcome]:
        return self._with_action(UNCHANGED)

    @property
    def writes(self) -> list[ObjectOutcome]:
        return [
            outcome
            for outcome in self.outcomes
            if outcome.action in {CREATED, UPDATED, REPLACED}
        ]

    @property
    def ok(self) -> bool:
        return not self.failed


class ReconcileError(Exception):
    """Raised when at least one object in a run could not be converged.

    Carries the full :class:`ConvergenceResult` so callers can see which
    writes already succeeded.
    """

    def __init__(self, result: ConvergenceResult) -> None:
        self.result = result
        details = "; ".join(f"{outcome}: {outcome.error}" for outcome in result.failed)
        super().__init__(
            f"{len(result.failed)} of {len(result.outcomes)} object(s) in namespace "
            f"{result.namespace} failed to converge: {details}"
        )


class ConvergenceEngine:
    """Brings observed derived objects in line with a :class:`DesiredState`.

    For each desired object the informer cache is consulted by
    ``(namespace, name)``:

    - absent: create it.  A ``409 AlreadyExists`` means another actor created
      it between lookup and write; the live object is read back and handled
      like a cache hit.
    - present: the kind's owned-field comparator decides whether a write is
      needed.  A converged object costs no API call.
    - drifted: the observed object is copied, only owned fields are rewritten,
      and it is replaced with its original ``resource_version``.  Role
      bindings whose role reference drifted are deleted and recreated.

    Objects are attempted independently; one failure never stops the rest.
    Nothing is ever pruned.
    """

    def __init__(
        self,
        writer: KubeWriter,
        listers: Mapping[ObjectKind, Lister],
        logger: logging.Logger | None = None,
    ) -> None:
        self.writer = writer
        self.listers = listers
        self.logger = logger or logging.getLogger(__name__)

    def converge(self, namespace: str, desired: DesiredState) -> ConvergenceResult:
        outcomes: list[ObjectOutcome] = []
        for kind, objects in (
            (ObjectKind.SERVICE_ACCOUNT, desired.service_accounts),
            (ObjectKind.ROLE_BINDING, desired.role_bindings),
            (ObjectKind.SECRET, desired.secrets),
        ):
            for obj in objects:
                outcomes.append(self._converge_object(kind, obj))
        return ConvergenceResult(namespace=namespace, outcomes=outcomes)

    def converge_or_raise(self, namespace: str, desired: DesiredState) -> ConvergenceResult:
        result = self.converge(namespace, desired)
        if not result.ok:
            raise ReconcileError(result)
        return result

    def _converge_object(self, kind: ObjectKind, desired: Any) -> ObjectOutcome:
        namespace = desired.metadata.namespace
        name = desired.metadata.name
        try:
            action = self._apply(kind, desired, namespace, name)
        except ApiException as exc:
            if is_conflict(exc):
                self.logger.warning(
                    "Conflict writing %s %s/%s; will retry", kind.value, namespace, name
                )
            else:
                self.logger.error(
                    "Failed to converge %s %s/%s (status=%s)",
                    kind.value,
                    namespace,
                    name,
                    exc.status,
                )
            METRICS.object_write_errors_total.labels(kind=kind.value, action="write").inc()
            return ObjectOutcome(kind, namespace, name, FAILED, exc)
        except Exception as exc:
            self.logger.exception("Unexpected error converging %s %s/%s", kind.value, namespace, name)
            METRICS.object_write_errors_total.labels(kind=kind.value, action="write").inc()
            return ObjectOutcome(kind, namespace, name, FAILED, exc)

        if action != UNCHANGED:
            METRICS.object_writes_total.labels(kind=kind.value, action=action).inc()
        return ObjectOutcome(kind, namespace, name, action)

    def _apply(self, kind: ObjectKind, desired: Any, namespace: str, name: str) -> str:
        observed = self.listers[kind].get(namespace, name)
        if observed is None:
            self.logger.info("Creating %s %s/%s", kind.value, namespace, name)
            try:
                self.writer.create(kind, desired)
                return CREATED
            except ApiException as exc:
                if not is_conflict(exc):
                    raise
                self.logger.info(
                    "%s %s/%s already exists; reading live object", kind.value, namespace, name
                )
                observed = self.writer.read(kind, namespace, name)

        patch = _DIFFERS[kind](desired, observed)
        if patch is None:
            return UNCHANGED

        if getattr(patch, "requires_replacement", False):
            self._recreate(kind, observed, patch.apply(observed), namespace, name)
            return REPLACED

        self.logger.info("Updating %s %s/%s", kind.value, namespace, name)
        self.writer.replace(kind, patch.apply(observed))
        return UPDATED

    def _recreate(
        self, kind: ObjectKind, observed: Any, replacement: Any, namespace: str, name: str
    ) -> None:
        """Delete *observed* and create *replacement* in its place.

        The delete is pinned to the observed ``uid`` and ``resource_version``
        so a stale cache entry yields 409 instead of removing a newer live
        object.  Server-assigned metadata is cleared from the replacement so
        the create is accepted; every other field carries over.
        """
        self.logger.info("Recreating %s %s/%s with new role reference", kind.value, namespace, name)
        try:
            self.writer.delete(
                kind,
                namespace,
                name,
                uid=observed.metadata.uid,
                resource_version=observed.metadata.resource_version,
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            self.logger.info("%s %s/%s already deleted", kind.value, namespace, name)

        metadata = replacement.metadata
        metadata.resource_version = None
        metadata.uid = None
        metadata.creation_timestamp = None
        metadata.managed_fields = None
        self.writer.create(kind, replacement)
