from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_SYSTEM_NAMESPACE = "argo-workflows-system"
DEFAULT_IMAGE_PULL_SECRET = "image-pull-secret"


@dataclass(frozen=True)
class WorkflowsSettings:
    """Immutable inputs to the Argo Workflows access-control generator.

    Built once at startup from CLI flags and environment variables and passed
    by reference into the generator and convergence engine.
    """

    admin_role_binding_name: str
    interface_cluster_role: str
    runner_cluster_role: str
    secret_name: str
    storage_account_name: str = ""
    storage_account_key: str = ""
    system_namespace: str = DEFAULT_SYSTEM_NAMESPACE


@dataclass(frozen=True)
class ImagePullSecretsSettings:
    image_pull_secret: str = DEFAULT_IMAGE_PULL_SECRET
    part_of_label: str = "app.kubernetes.io/part-of"
    part_of_value: str = "argocd"


@dataclass(frozen=True)
class RuntimeSettings:
    """Process-level knobs shared by both controllers."""

    workers: int = 2
    resync_seconds: int = 300
    cache_sync_timeout_seconds: int = 120
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_retries: int = 15
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _require_name(flag: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise ValueError(f"{flag} must be a non-empty string")
    return value.strip()


def build_workflows_settings(
    admin_role_binding_name: str,
    interface_cluster_role: str,
    runner_cluster_role: str,
) -> WorkflowsSettings:
    """Combine the ``workflows`` subcommand flags with the secret environment.

    Environment variables:
        ``ARGO_SECRET_NAME``          name of the namespace-wide opaque secret (required).
        ``ARGO_STORAGE_ACCOUNT_NAME`` value stored under ``root-user``.
        ``ARGO_STORAGE_ACCOUNT_KEY``  value stored under ``root-password``.
        ``SYSTEM_NAMESPACE``          namespace exempt from generation (``argo-workflows-system``).
    """
    return WorkflowsSettings(
        admin_role_binding_name=_require_name(
            "--namespace-admins-role-binding-name", admin_role_binding_name
        ),
        interface_cluster_role=_require_name(
            "--user-interface-cluster-role-name", interface_cluster_role
        ),
        runner_cluster_role=_require_name(
            "--argo-workflows-cluster-role-name", runner_cluster_role
        ),
        secret_name=_require_name("ARGO_SECRET_NAME", os.getenv("ARGO_SECRET_NAME")),
        storage_account_name=os.getenv("ARGO_STORAGE_ACCOUNT_NAME", ""),
        storage_account_key=os.getenv("ARGO_STORAGE_ACCOUNT_KEY", ""),
        system_namespace=_require_name(
            "SYSTEM_NAMESPACE", os.getenv("SYSTEM_NAMESPACE", DEFAULT_SYSTEM_NAMESPACE)
        ),
    )


def build_image_pull_secrets_settings(image_pull_secret: str) -> ImagePullSecretsSettings:
    return ImagePullSecretsSettings(
        image_pull_secret=_require_name("--image-pull-secret", image_pull_secret),
    )


def build_runtime_settings() -> RuntimeSettings:
    """Read worker, informer and retry tuning from the environment."""
    base_delay = env_int("RETRY_BASE_DELAY_SECONDS", 1, minimum=0)
    max_delay = env_int("RETRY_MAX_DELAY_SECONDS", 30, minimum=1)
    if base_delay > max_delay:
        raise ValueError(
            "RETRY_BASE_DELAY_SECONDS must not exceed RETRY_MAX_DELAY_SECONDS"
        )
    return RuntimeSettings(
        workers=env_int("WORKERS", 2, minimum=1, maximum=64),
        resync_seconds=env_int("RESYNC_SECONDS", 300, minimum=0),
        cache_sync_timeout_seconds=env_int("CACHE_SYNC_TIMEOUT_SECONDS", 120, minimum=1),
        retry_base_delay_seconds=float(base_delay),
        retry_max_delay_seconds=float(max_delay),
        max_retries=env_int("MAX_RETRIES", 15, minimum=0),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535),
    )
