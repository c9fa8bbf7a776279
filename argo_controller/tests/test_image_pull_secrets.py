from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes.client import V1LocalObjectReference, V1ObjectMeta, V1ServiceAccount

from argo_controller.src.config import ImagePullSecretsSettings, RuntimeSettings
from argo_controller.src.image_pull_secrets import (
    ImagePullSecretsReconciler,
    build_image_pull_secrets_controller,
    has_image_pull_secret,
    with_image_pull_secret,
)
from argo_controller.src.informer import Store
from argo_controller.src.kube import ObjectKind

ARGOCD_LABELS = {"app.kubernetes.io/part-of": "argocd"}


def _service_account(
    name: str = "argocd-server",
    namespace: str = "argocd",
    labels: dict[str, str] | None = None,
    pull_secrets: list[str] | None = None,
) -> V1ServiceAccount:
    return V1ServiceAccount(
        metadata=V1ObjectMeta(
            name=name, namespace=namespace, labels=labels, resource_version="3"
        ),
        image_pull_secrets=[V1LocalObjectReference(name=s) for s in pull_secrets or []] or None,
    )


@pytest.fixture
def pull_settings() -> ImagePullSecretsSettings:
    return ImagePullSecretsSettings(image_pull_secret="registry-creds")


def _reconciler(
    settings: ImagePullSecretsSettings, *service_accounts: V1ServiceAccount
) -> tuple[ImagePullSecretsReconciler, MagicMock]:
    store = Store()
    for service_account in service_accounts:
        store.upsert(service_account)
    writer = MagicMock()
    return ImagePullSecretsReconciler(settings, store, writer), writer


def test_labelled_service_account_gets_secret_appended(
    pull_settings: ImagePullSecretsSettings,
) -> None:
    original = _service_account(labels=ARGOCD_LABELS, pull_secrets=["existing"])
    reconciler, writer = _reconciler(pull_settings, original)

    assert reconciler.sync("argocd/argocd-server") is True

    kind, body = writer.replace.call_args.args
    assert kind is ObjectKind.SERVICE_ACCOUNT
    assert [ref.name for ref in body.image_pull_secrets] == ["existing", "registry-creds"]
    assert body.metadata.resource_version == "3"
    assert [ref.name for ref in original.image_pull_secrets] == ["existing"]


def test_service_account_already_referencing_secret_is_left_alone(
    pull_settings: ImagePullSecretsSettings,
) -> None:
    reconciler, writer = _reconciler(
        pull_settings, _service_account(labels=ARGOCD_LABELS, pull_secrets=["registry-creds"])
    )

    assert reconciler.sync("argocd/argocd-server") is False
    writer.replace.assert_not_called()


@pytest.mark.parametrize(
    "labels", [None, {"app.kubernetes.io/part-of": "argo-workflows"}, {"team": "argocd"}]
)
def test_unlabelled_service_accounts_are_ignored(
    pull_settings: ImagePullSecretsSettings, labels: dict[str, str] | None
) -> None:
    reconciler, writer = _reconciler(pull_settings, _service_account(labels=labels))

    assert reconciler.sync("argocd/argocd-server") is False
    writer.replace.assert_not_called()


def test_missing_service_account_is_a_no_op(pull_settings: ImagePullSecretsSettings) -> None:
    reconciler, writer = _reconciler(pull_settings)

    assert reconciler.sync("argocd/gone") is False
    writer.replace.assert_not_called()


def test_helpers_handle_empty_pull_secret_list() -> None:
    service_account = _service_account()

    assert not has_image_pull_secret(service_account, "registry-creds")
    updated = with_image_pull_secret(service_account, "registry-creds")
    assert has_image_pull_secret(updated, "registry-creds")
    assert service_account.image_pull_secrets is None


def test_build_wires_service_account_informer(pull_settings: ImagePullSecretsSettings) -> None:
    core_api = MagicMock()

    controller, informers = build_image_pull_secrets_controller(
        core_api, MagicMock(), pull_settings, RuntimeSettings()
    )

    assert len(informers) == 1
    assert informers[0].list_fn is core_api.list_service_account_for_all_namespaces
    informers[0].handle_event("ADDED", _service_account(labels=ARGOCD_LABELS))
    assert controller.queue.get() == ("argocd/argocd-server", False)
    controller.queue.shut_down()
