from __future__ import annotations

import pytest

from argo_controller.src.config import WorkflowsSettings
from argo_controller.tests.fakes import FakeCluster


@pytest.fixture
def settings() -> WorkflowsSettings:
    return WorkflowsSettings(
        admin_role_binding_name="namespace-admins",
        interface_cluster_role="argo-workflows-interface",
        runner_cluster_role="argo-workflows-runner",
        secret_name="argo-artifacts",
        storage_account_name="storageacct",
        storage_account_key="s3cr3t",
        system_namespace="argo-workflows-system",
    )


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()
