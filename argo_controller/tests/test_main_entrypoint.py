from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from collections.abc import Iterator
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from argo_controller.src.__main__ import JSONFormatter, _parse_args, main

WORKFLOWS_ARGS = [
    "workflows",
    "--namespace-admins-role-binding-name",
    "namespace-admins",
    "--user-interface-cluster-role-name",
    "argo-workflows-interface",
    "--argo-workflows-cluster-role-name",
    "argo-workflows-runner",
]


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(self, msg: str = "test message", exc_info: object = None) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=logging.INFO,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_credentials(self) -> None:
        record = self._make_record(
            msg="token=abc123 password=hunter2 account_key=s3cr3t Authorization: Bearer abc.def"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        for leaked in ("abc123", "hunter2", "s3cr3t", "abc.def"):
            assert leaked not in message


class TestParseArgs:
    def test_workflows_subcommand(self) -> None:
        args = _parse_args(["--kubeconfig", "/tmp/config", *WORKFLOWS_ARGS])

        assert args.command == "workflows"
        assert args.kubeconfig == "/tmp/config"
        assert args.namespace_admins_role_binding_name == "namespace-admins"
        assert args.user_interface_cluster_role_name == "argo-workflows-interface"
        assert args.argo_workflows_cluster_role_name == "argo-workflows-runner"

    def test_image_pull_secrets_defaults(self) -> None:
        args = _parse_args(["image-pull-secrets"])

        assert args.command == "image-pull-secrets"
        assert args.image_pull_secret == "image-pull-secret"
        assert args.master == ""

    def test_workflows_flags_are_required(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args(["workflows", "--namespace-admins-role-binding-name", "admins"])

    def test_subcommand_is_required(self) -> None:
        with pytest.raises(SystemExit):
            _parse_args([])


@pytest.fixture
def entrypoint_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("ARGO_SECRET_NAME", "argo-artifacts")
    monkeypatch.delenv("HEALTH_PORT", raising=False)
    monkeypatch.delenv("WORKERS", raising=False)
    handlers = list(logging.root.handlers)
    with patch("argo_controller.src.__main__.signal.signal"):
        yield monkeypatch
    logging.root.handlers[:] = handlers


def _fake_controller() -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()

    def fake_run(stop_event: threading.Event) -> None:
        stop_event.set()

    controller.run.side_effect = fake_run
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_workflows_command_runs_controller(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        controller = _fake_controller()
        informers = [MagicMock(), MagicMock()]

        with (
            patch("argo_controller.src.__main__.load_kube_configuration") as mock_load,
            patch(
                "argo_controller.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "argo_controller.src.__main__.build_workflows_controller",
                return_value=(controller, informers),
            ) as mock_build,
            patch("argo_controller.src.__main__.wait_for_cache_sync", return_value=True),
            patch("argo_controller.src.__main__.start_health_server") as mock_health,
        ):
            exit_code = main(["--master", "https://api.example:6443", *WORKFLOWS_ARGS])

        assert exit_code == 0
        mock_load.assert_called_once_with(kubeconfig=None, master="https://api.example:6443")
        settings = mock_build.call_args.args[2]
        assert settings.admin_role_binding_name == "namespace-admins"
        assert settings.secret_name == "argo-artifacts"
        controller.run.assert_called_once()
        for informer in informers:
            informer.start.assert_called_once()
            informer.request_stop.assert_called_once()
        assert mock_health.call_args.kwargs["port"] == 8080
        assert mock_health.call_args.kwargs["ready"] is controller.ready
        mock_health.return_value.shutdown.assert_called_once()

    def test_image_pull_secrets_command_uses_its_builder(
        self, entrypoint_env: pytest.MonkeyPatch
    ) -> None:
        controller = _fake_controller()

        with (
            patch("argo_controller.src.__main__.load_kube_configuration"),
            patch(
                "argo_controller.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "argo_controller.src.__main__.build_image_pull_secrets_controller",
                return_value=(controller, [MagicMock()]),
            ) as mock_build,
            patch("argo_controller.src.__main__.build_workflows_controller") as mock_workflows,
            patch("argo_controller.src.__main__.wait_for_cache_sync", return_value=True),
            patch("argo_controller.src.__main__.start_health_server"),
        ):
            exit_code = main(["image-pull-secrets", "--image-pull-secret", "registry-creds"])

        assert exit_code == 0
        assert mock_build.call_args.args[2].image_pull_secret == "registry-creds"
        mock_workflows.assert_not_called()

    def test_main_registers_signal_handlers(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        with (
            patch("argo_controller.src.__main__.load_kube_configuration"),
            patch(
                "argo_controller.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "argo_controller.src.__main__.build_workflows_controller",
                return_value=(_fake_controller(), []),
            ),
            patch("argo_controller.src.__main__.wait_for_cache_sync", return_value=True),
            patch("argo_controller.src.__main__.start_health_server"),
            patch("argo_controller.src.__main__.signal.signal") as mock_signal,
        ):
            main(WORKFLOWS_ARGS)

        registered = [call.args[0] for call in mock_signal.call_args_list]
        assert signal.SIGTERM in registered
        assert signal.SIGINT in registered

    def test_missing_secret_name_exits_non_zero(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        entrypoint_env.delenv("ARGO_SECRET_NAME")

        with patch("argo_controller.src.__main__.build_clients") as mock_clients:
            assert main(WORKFLOWS_ARGS) == 1

        mock_clients.assert_not_called()

    def test_invalid_health_port_exits_non_zero(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        entrypoint_env.setenv("HEALTH_PORT", "70000")

        assert main(WORKFLOWS_ARGS) == 1

    def test_client_failure_exits_non_zero(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        with (
            patch(
                "argo_controller.src.__main__.load_kube_configuration",
                side_effect=RuntimeError("no kubeconfig"),
            ),
            patch("argo_controller.src.__main__.start_health_server") as mock_health,
        ):
            assert main(WORKFLOWS_ARGS) == 1

        mock_health.assert_not_called()

    def test_cache_sync_timeout_exits_non_zero(self, entrypoint_env: pytest.MonkeyPatch) -> None:
        controller = _fake_controller()
        informer = MagicMock()

        with (
            patch("argo_controller.src.__main__.load_kube_configuration"),
            patch(
                "argo_controller.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "argo_controller.src.__main__.build_workflows_controller",
                return_value=(controller, [informer]),
            ),
            patch("argo_controller.src.__main__.wait_for_cache_sync", return_value=False),
            patch("argo_controller.src.__main__.start_health_server") as mock_health,
        ):
            assert main(WORKFLOWS_ARGS) == 1

        controller.run.assert_not_called()
        informer.request_stop.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()
