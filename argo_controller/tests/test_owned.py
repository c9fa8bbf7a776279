from __future__ import annotations

import copy

from kubernetes.client import (
    RbacV1Subject,
    V1ObjectMeta,
    V1ObjectReference,
    V1RoleRef,
    V1Secret,
)

from argo_controller.src.config import WorkflowsSettings
from argo_controller.src.generator import RBAC_RULE_ANNOTATION, generate_desired_state
from argo_controller.src.owned import (
    RoleBindingPatch,
    ServiceAccountPatch,
    diff_role_binding,
    diff_secret,
    diff_service_account,
)
from argo_controller.tests.fakes import make_admin_role_binding


def _desired(settings: WorkflowsSettings):
    binding = make_admin_role_binding("team-x", [("Group", "leads")])
    return generate_desired_state("team-x", binding, settings)


def test_identical_service_account_has_no_diff(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).service_accounts[1]

    assert diff_service_account(desired, copy.deepcopy(desired)) is None


def test_foreign_annotations_and_secrets_are_not_drift(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).service_accounts[1]
    observed = copy.deepcopy(desired)
    observed.metadata.annotations["kubectl.kubernetes.io/last-applied-configuration"] = "{}"
    observed.secrets.append(V1ObjectReference(name="argo-workflows-leads-token-abcde"))

    assert diff_service_account(desired, observed) is None


def test_service_account_patch_only_touches_owned_fields(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).service_accounts[1]
    observed = copy.deepcopy(desired)
    observed.metadata.resource_version = "42"
    observed.metadata.labels = {"team": "x"}
    observed.metadata.annotations = {RBAC_RULE_ANNOTATION: "'other' in groups", "note": "keep"}
    observed.secrets = [V1ObjectReference(name="foreign")]

    patch = diff_service_account(desired, observed)

    assert isinstance(patch, ServiceAccountPatch)
    assert patch.missing_secrets == ("argo-workflows-leads",)
    updated = patch.apply(observed)
    assert updated.metadata.resource_version == "42"
    assert updated.metadata.labels == {"team": "x"}
    assert updated.metadata.annotations["note"] == "keep"
    assert updated.metadata.annotations[RBAC_RULE_ANNOTATION] == "'leads' in groups"
    assert [ref.name for ref in updated.secrets] == ["foreign", "argo-workflows-leads"]
    # the observed (cached) object must not be mutated
    assert observed.metadata.annotations[RBAC_RULE_ANNOTATION] == "'other' in groups"


def test_role_binding_subject_drift_is_patched(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).role_bindings[1]
    observed = copy.deepcopy(desired)
    observed.subjects = [
        RbacV1Subject(api_group="", kind="ServiceAccount", name="intruder", namespace="team-x")
    ]

    patch = diff_role_binding(desired, observed)

    assert isinstance(patch, RoleBindingPatch)
    assert not patch.requires_replacement
    assert [s.name for s in patch.apply(observed).subjects] == ["argo-workflows-leads"]


def test_role_binding_role_ref_drift_requires_replacement(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).role_bindings[1]
    observed = copy.deepcopy(desired)
    observed.role_ref = V1RoleRef(
        api_group="rbac.authorization.k8s.io", kind="ClusterRole", name="cluster-admin"
    )

    patch = diff_role_binding(desired, observed)

    assert patch is not None
    assert patch.requires_replacement
    assert patch.subjects is None


def test_role_binding_comparison_treats_missing_api_group_as_empty(
    settings: WorkflowsSettings,
) -> None:
    desired = _desired(settings).role_bindings[0]
    observed = copy.deepcopy(desired)
    observed.subjects[0].api_group = None

    assert diff_role_binding(desired, observed) is None


def test_secret_data_drift_is_patched(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).secrets[0]
    observed = copy.deepcopy(desired)
    observed.data = {"root-user": "Zm9v"}

    patch = diff_secret(desired, observed)

    assert patch is not None
    assert patch.apply(observed).data == desired.data


def test_token_secret_data_is_not_owned(settings: WorkflowsSettings) -> None:
    desired = _desired(settings).secrets[1]
    observed = V1Secret(
        metadata=V1ObjectMeta(name=desired.metadata.name, namespace="team-x"),
        type=desired.type,
        data={"token": "dG9rZW4=", "ca.crt": "Y2E="},
    )

    assert diff_secret(desired, observed) is None
