from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from argo_controller.src.config import (
    DEFAULT_IMAGE_PULL_SECRET,
    build_image_pull_secrets_settings,
    build_runtime_settings,
    build_workflows_settings,
)
from argo_controller.src.health import start_health_server
from argo_controller.src.image_pull_secrets import build_image_pull_secrets_controller
from argo_controller.src.informer import wait_for_cache_sync
from argo_controller.src.kube import build_clients, load_kube_configuration
from argo_controller.src.metrics import METRICS
from argo_controller.src.workflows import build_workflows_controller

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key|account[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def _configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="argo-controller",
        description="Keep Argo access-control resources converged across namespaces",
    )
    parser.add_argument("--kubeconfig", default="", help="Path to a kubeconfig file")
    parser.add_argument(
        "--master",
        default="",
        help="Address of the Kubernetes API server (overrides the kubeconfig)",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    workflows = subcommands.add_parser(
        "workflows", help="Configure access control resources for Argo Workflows"
    )
    workflows.add_argument(
        "--namespace-admins-role-binding-name",
        required=True,
        help="The name of the role binding that specifies the namespace admins as subjects",
    )
    workflows.add_argument(
        "--user-interface-cluster-role-name",
        required=True,
        help="The name of the cluster role used for Argo Workflows interface access",
    )
    workflows.add_argument(
        "--argo-workflows-cluster-role-name",
        required=True,
        help="The name of the cluster role bound to the workflow runner service account",
    )

    image_pull_secrets = subcommands.add_parser(
        "image-pull-secrets", help="Configure image pull secrets for Argo resources"
    )
    image_pull_secrets.add_argument(
        "--image-pull-secret",
        default=DEFAULT_IMAGE_PULL_SECRET,
        help="Name of the secret containing the image pull credentials",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Controller entrypoint: build configuration and clients, sync caches, and run the workers.

    Returns a non-zero exit status when configuration or clients cannot be
    built or the informer caches never sync.
    """
    args = _parse_args(argv)
    _configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "command": args.command,
        }
    )

    try:
        runtime = build_runtime_settings()
        if args.command == "workflows":
            workflows_settings = build_workflows_settings(
                admin_role_binding_name=args.namespace_admins_role_binding_name,
                interface_cluster_role=args.user_interface_cluster_role_name,
                runner_cluster_role=args.argo_workflows_cluster_role_name,
            )
        else:
            image_pull_settings = build_image_pull_secrets_settings(args.image_pull_secret)
    except ValueError as exc:
        LOGGER.critical("Invalid configuration: %s", exc)
        return 1

    try:
        load_kube_configuration(kubeconfig=args.kubeconfig or None, master=args.master or None)
        core_api, rbac_api = build_clients()
    except Exception:
        LOGGER.critical("Error building Kubernetes clients", exc_info=True)
        return 1

    if args.command == "workflows":
        controller, informers = build_workflows_controller(
            core_api, rbac_api, workflows_settings, runtime
        )
    else:
        controller, informers = build_image_pull_secrets_controller(
            core_api, rbac_api, image_pull_settings, runtime
        )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    health_server = start_health_server(ready=controller.ready, port=runtime.health_port)
    try:
        for informer in informers:
            informer.start(shutdown_event)

        LOGGER.info("Waiting for informer caches to sync")
        if not wait_for_cache_sync(
            informers, shutdown_event, timeout_seconds=runtime.cache_sync_timeout_seconds
        ):
            if shutdown_event.is_set():
                return 0
            LOGGER.critical("Failed to wait for caches to sync")
            return 1

        controller.run(stop_event=shutdown_event)
    finally:
        shutdown_event.set()
        for informer in informers:
            informer.request_stop()
        health_server.shutdown()

    LOGGER.info("Controller stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
