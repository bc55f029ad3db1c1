"""Unit tests for the outpost deploy CLI commands.

Tests cover:
- deploy run success, dry run, failures and exit codes
- deploy status from the persisted record and live runtime
- deploy destroy confirmation and record updates
"""

from __future__ import annotations

import json
import zipfile
from collections.abc import Generator
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from outpost.cli.main import main
from outpost.deploy.state import get_deployment_record, update_deployment_record
from outpost.lib.errors import PortConflictError, VerificationError
from outpost.models.deployment import DeploymentReport
from outpost.models.deployment_state import DeploymentRecord

SERVER_IP = "203.0.113.7"
IMAGE = "quay.io/outline/shadowbox:stable"


@pytest.fixture(autouse=True)
def no_logging_setup() -> Generator[None]:
    """Keep CLI runs from reconfiguring the root logger."""
    with patch("outpost.cli.commands.deploy.setup_logging"):
        yield


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI runner."""
    return CliRunner()


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    """Settings file placing all host paths under tmp_path."""
    path = tmp_path / "outpost.yaml"
    path.write_text(
        f"""
config_dir: {tmp_path / "config"}
state_dir: {tmp_path / "state"}
log_path: {tmp_path / "logs" / "deploy_shadowbox_logs.txt"}
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def record_file(tmp_path: Path) -> Path:
    return tmp_path / "config" / "deployments.json"


@pytest.fixture
def bundle_zip(tmp_path: Path) -> Path:
    """A bundle holding only the configuration."""
    path = tmp_path / "outline_docker_bundle.zip"
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr(
            "shadowbox_config.json",
            json.dumps({"apiUrl": "https://0.0.0.0:8081/Secr3t"}),
        )
    return path


def _report() -> DeploymentReport:
    return DeploymentReport(
        server_ip=SERVER_IP,
        api_url=f"https://{SERVER_IP}:8081/Secr3t",
        container_name="shadowbox",
        container_id="abc123def4567890",
        image=IMAGE,
    )


def _record() -> DeploymentRecord:
    return DeploymentRecord(
        container_name="shadowbox",
        container_id="abc123def4567890",
        image=IMAGE,
        server_ip=SERVER_IP,
        api_url=f"https://{SERVER_IP}:8081/Secr3t",
        status="verified",
        config_hash="sha256:abc",
    )


class TestDeployGroup:
    """Tests for the deploy command group."""

    def test_help_without_subcommand(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["deploy"])

        assert result.exit_code == 0
        assert "run" in result.output
        assert "destroy" in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestRunCommand:
    """Tests for 'outpost deploy run'."""

    def test_success_records_deployment(
        self,
        runner: CliRunner,
        settings_file: Path,
        record_file: Path,
        bundle_zip: Path,
    ) -> None:
        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            orch_cls.return_value.deploy.return_value = _report()

            result = runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                ],
            )

        assert result.exit_code == 0, result.output
        assert "Deployment Successful!" in result.output
        assert f"https://{SERVER_IP}:8081/Secr3t" in result.output
        orch_cls.return_value.deploy.assert_called_once()
        assert orch_cls.return_value.deploy.call_args.kwargs["server_ip"] == SERVER_IP
        record = get_deployment_record(record_file, "shadowbox")
        assert record is not None
        assert record.status == "verified"

    def test_quiet_prints_api_url(
        self, runner: CliRunner, settings_file: Path, bundle_zip: Path
    ) -> None:
        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            orch_cls.return_value.deploy.return_value = _report()

            result = runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                    "--quiet",
                ],
            )

        assert result.exit_code == 0
        assert result.output.strip() == f"https://{SERVER_IP}:8081/Secr3t"

    def test_yes_and_ports_reach_settings(
        self, runner: CliRunner, settings_file: Path, bundle_zip: Path
    ) -> None:
        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            orch_cls.return_value.deploy.return_value = _report()

            runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                    "--yes",
                    "--api-port",
                    "9443",
                ],
            )

        settings = orch_cls.call_args.args[0]
        assert settings.allow_destructive_cleanup is True
        assert settings.ports.api == 9443
        assert settings.ports.data == 8080

    def test_dry_run_starts_nothing(
        self, runner: CliRunner, settings_file: Path, bundle_zip: Path
    ) -> None:
        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            result = runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                    "--dry-run",
                ],
            )

        assert result.exit_code == 0
        assert "[DRY RUN]" in result.output
        assert "Missing members: image_archive, certificate, access_descriptor" in (
            result.output
        )
        orch_cls.assert_not_called()

    def test_deployment_error_exit_code(
        self, runner: CliRunner, settings_file: Path, bundle_zip: Path, tmp_path: Path
    ) -> None:
        error = VerificationError(f"https://{SERVER_IP}:8081/Secr3t/access-keys", 3, 503, "")
        error.log_path = tmp_path / "logs" / "deploy_shadowbox_logs.txt"

        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            orch_cls.return_value.deploy.side_effect = error

            result = runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                ],
            )

        assert result.exit_code == 3
        assert "Error: verify failed" in result.output
        assert "Container logs saved to" in result.output

    def test_port_conflict_exit_code(
        self, runner: CliRunner, settings_file: Path, bundle_zip: Path, record_file: Path
    ) -> None:
        with patch("outpost.deploy.orchestrator.DeploymentOrchestrator") as orch_cls:
            orch_cls.return_value.deploy.side_effect = PortConflictError(8081, "nginx")

            result = runner.invoke(
                main,
                [
                    "deploy",
                    "run",
                    str(bundle_zip),
                    "--server-ip",
                    SERVER_IP,
                    "--config",
                    str(settings_file),
                ],
            )

        assert result.exit_code == 3
        assert "Port 8081 is already in use by nginx" in result.output
        assert not record_file.exists()

    def test_missing_bundle(
        self, runner: CliRunner, settings_file: Path, tmp_path: Path
    ) -> None:
        result = runner.invoke(
            main,
            [
                "deploy",
                "run",
                str(tmp_path / "absent.zip"),
                "--server-ip",
                SERVER_IP,
                "--config",
                str(settings_file),
            ],
        )

        assert result.exit_code == 3
        assert "Error: bundle failed" in result.output

    def test_invalid_settings_exit_code(
        self, runner: CliRunner, tmp_path: Path, bundle_zip: Path
    ) -> None:
        bad = tmp_path / "bad.yaml"
        bad.write_text("ports:\n  data: 8081\n  api: 8081\n", encoding="utf-8")

        result = runner.invoke(
            main,
            ["deploy", "run", str(bundle_zip), "--server-ip", SERVER_IP, "--config", str(bad)],
        )

        assert result.exit_code == 2
        assert "Configuration error" in result.output

    def test_server_ip_required(self, runner: CliRunner, bundle_zip: Path) -> None:
        result = runner.invoke(main, ["deploy", "run", str(bundle_zip)])

        assert result.exit_code == 2
        assert "--server-ip" in result.output


class TestStatusCommand:
    """Tests for 'outpost deploy status'."""

    def test_without_record(self, runner: CliRunner, settings_file: Path) -> None:
        result = runner.invoke(main, ["deploy", "status", "--config", str(settings_file)])

        assert result.exit_code == 2
        assert "No deployment record found" in result.output

    def test_with_record(
        self, runner: CliRunner, settings_file: Path, record_file: Path
    ) -> None:
        update_deployment_record(record_file, "shadowbox", _record())

        with patch("outpost.deploy.supervisor.ContainerSupervisor") as sup_cls:
            sup_cls.return_value.status.return_value = "running"
            result = runner.invoke(
                main, ["deploy", "status", "--config", str(settings_file)]
            )

        assert result.exit_code == 0, result.output
        assert "Runtime:   running" in result.output
        assert "Recorded:  verified" in result.output
        sup_cls.return_value.status.assert_called_once_with("shadowbox")

    def test_quiet_absent(
        self, runner: CliRunner, settings_file: Path, record_file: Path
    ) -> None:
        update_deployment_record(record_file, "shadowbox", _record())

        with patch("outpost.deploy.supervisor.ContainerSupervisor") as sup_cls:
            sup_cls.return_value.status.return_value = None
            result = runner.invoke(
                main, ["deploy", "status", "--config", str(settings_file), "-q"]
            )

        assert result.output.strip() == "absent"


class TestDestroyCommand:
    """Tests for 'outpost deploy destroy'."""

    def test_force_removes_and_marks_deleted(
        self, runner: CliRunner, settings_file: Path, record_file: Path
    ) -> None:
        update_deployment_record(record_file, "shadowbox", _record())

        with patch("outpost.deploy.supervisor.ContainerSupervisor") as sup_cls:
            sup_cls.return_value.ensure_absent.return_value = True
            result = runner.invoke(
                main, ["deploy", "destroy", "--config", str(settings_file), "--force"]
            )

        assert result.exit_code == 0, result.output
        assert "Deployment Destroyed" in result.output
        sup_cls.return_value.ensure_absent.assert_called_once_with("shadowbox")
        assert get_deployment_record(record_file, "shadowbox").status == "deleted"

    def test_declined_confirmation(self, runner: CliRunner, settings_file: Path) -> None:
        with patch("outpost.deploy.supervisor.ContainerSupervisor") as sup_cls:
            result = runner.invoke(
                main,
                ["deploy", "destroy", "--config", str(settings_file)],
                input="n\n",
            )

        assert result.exit_code == 0
        assert "Destroy aborted." in result.output
        sup_cls.assert_not_called()

    def test_nothing_running(self, runner: CliRunner, settings_file: Path) -> None:
        supervisor = MagicMock()
        supervisor.ensure_absent.return_value = False

        with patch(
            "outpost.deploy.supervisor.ContainerSupervisor", return_value=supervisor
        ):
            result = runner.invoke(
                main,
                ["deploy", "destroy", "--config", str(settings_file), "--force"],
            )

        assert result.exit_code == 0
        assert "No container named 'shadowbox'" in result.output
