"""Per-kind comparators over the fields the engine owns.

Each ``diff_*`` function inspects only the owned fields of an observed object
and returns a typed patch describing what must change, or ``None`` when the
object is already converged.  ``patch.apply(observed)`` returns a copy of the
observed object with only those fields rewritten, keeping its
``resource_version`` and every foreign field intact.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any

from kubernetes.client import V1ObjectReference


def _metadata_annotations(obj: Any) -> dict[str, str]:
    annotations = getattr(getattr(obj, "metadata", None), "annotations", None)
    return dict(annotations) if isinstance(annotations, dict) else {}


def _secret_reference_names(obj: Any) -> list[str]:
    return [
        ref.name for ref in (getattr(obj, "secrets", None) or []) if getattr(ref, "name", None)
    ]


def role_ref_tuple(role_ref: Any) -> tuple[str, str, str]:
    return (
        getattr(role_ref, "api_group", None) or "",
        getattr(role_ref, "kind", None) or "",
        getattr(role_ref, "name", None) or "",
    )


def subject_tuples(subjects: Any) -> list[tuple[str, str, str, str]]:
    return [
        (
            getattr(subject, "api_group", None) or "",
            getattr(subject, "kind", None) or "",
            getattr(subject, "name", None) or "",
            getattr(subject, "namespace", None) or "",
        )
        for subject in (subjects or [])
    ]


@dataclass(frozen=True)
class ServiceAccountPatch:
    """Owned annotation values to set and secret references to append."""

    annotations: dict[str, str]
    missing_secrets: tuple[str, ...]

    def apply(self, observed: Any) -> Any:
        updated = copy.deepcopy(observed)
        if self.annotations:
            merged = _metadata_annotations(updated)
            merged.update(self.annotations)
            updated.metadata.annotations = merged
        if self.missing_secrets:
            references = list(updated.secrets or [])
            references.extend(V1ObjectReference(name=name) for name in self.missing_secrets)
            updated.secrets = references
        return updated


@dataclass(frozen=True)
class RoleBindingPatch:
    role_ref: Any = None
    subjects: list[Any] | None = None

    @property
    def requires_replacement(self) -> bool:
        """The API server rejects role reference changes; the binding must be recreated."""
        return self.role_ref is not None

    def apply(self, observed: Any) -> Any:
        updated = copy.deepcopy(observed)
        if self.role_ref is not None:
            updated.role_ref = copy.deepcopy(self.role_ref)
        if self.subjects is not None:
            updated.subjects = copy.deepcopy(self.subjects)
        return updated


@dataclass(frozen=True)
class SecretPatch:
    data: dict[str, str]

    def apply(self, observed: Any) -> Any:
        updated = copy.deepcopy(observed)
        updated.data = dict(self.data)
        return updated


def diff_service_account(desired: Any, observed: Any) -> ServiceAccountPatch | None:
    observed_annotations = _metadata_annotations(observed)
    drifted = {
        key: value
        for key, value in _metadata_annotations(desired).items()
        if observed_annotations.get(key) != value
    }
    present = set(_secret_reference_names(observed))
    missing = tuple(name for name in _secret_reference_names(desired) if name not in present)
    if not drifted and not missing:
        return None
    return ServiceAccountPatch(annotations=drifted, missing_secrets=missing)


def diff_role_binding(desired: Any, observed: Any) -> RoleBindingPatch | None:
    role_ref = None
    if role_ref_tuple(desired.role_ref) != role_ref_tuple(getattr(observed, "role_ref", None)):
        role_ref = desired.role_ref
    subjects = None
    if subject_tuples(desired.subjects) != subject_tuples(getattr(observed, "subjects", None)):
        subjects = list(desired.subjects or [])
    if role_ref is None and subjects is None:
        return None
    return RoleBindingPatch(role_ref=role_ref, subjects=subjects)


def diff_secret(desired: Any, observed: Any) -> SecretPatch | None:
    # Token secret data is populated by the cluster; only declared data is owned.
    if desired.data is None:
        return None
    observed_data = getattr(observed, "data", None) or {}
    if dict(observed_data) == dict(desired.data):
        return None
    return SecretPatch(data=dict(desired.data))
