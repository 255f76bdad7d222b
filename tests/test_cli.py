"""Tests for the amiize CLI via CliRunner.

The orchestrator factory and tool checks are patched; no process or
EC2 call ever leaves the test.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from amiize import __version__
from amiize.cli import main
from amiize.cleanup import CleanupGuard
from amiize.errors import AttemptsExhausted, ImageAlreadyExists, ProviderQueryFailure
from amiize.models import Attempt, AttemptOutcome, RegisteredImage, RegistrationResult
from amiize.preflight import PreflightResult, ToolCheck, ToolStatus
from amiize.resources import ResourceHandle, ResourceKind

from conftest import IMAGE_ID, WORKER_AMI, handle

ALL_TOOLS = PreflightResult(checks=[
    ToolCheck(name="ssh", status=ToolStatus.INSTALLED, version="OpenSSH_9.6"),
    ToolCheck(name="rsync", status=ToolStatus.INSTALLED, version="rsync 3.2.7"),
])
NO_RSYNC = PreflightResult(checks=[
    ToolCheck(name="ssh", status=ToolStatus.INSTALLED),
    ToolCheck(name="rsync", status=ToolStatus.MISSING, install_cmd="sudo apt install -y rsync"),
])


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def no_signal_handlers():
    with patch("amiize.cli.register.install_signal_handlers"):
        yield


@pytest.fixture
def tools():
    with patch("amiize.cli.register.check_tools", return_value=ALL_TOOLS) as mock:
        yield mock


@pytest.fixture
def orchestrator():
    """A fake orchestrator returned by the CLI's factory."""
    mock = MagicMock()
    mock.guard = CleanupGuard(MagicMock(), MagicMock())
    with patch("amiize.cli._common.build_orchestrator", return_value=mock) as factory:
        mock.factory = factory
        yield mock


def _args(image_file, *extra):
    return [
        "register",
        "--image", str(image_file),
        "--region", "us-west-2",
        "--worker-ami", WORKER_AMI,
        "--ssh-keypair", "builder",
        "--instance-type", "m5.xlarge",
        "--name", "os-20190718-01",
        "--arch", "x86_64",
        "--config", str(image_file.parent / "no-such-config.yaml"),
        *extra,
    ]


def _result(visible=True, leaked=None):
    image = RegisteredImage(
        image=ResourceHandle(kind=ResourceKind.IMAGE, id=IMAGE_ID),
        name="os-20190718-01",
        description="os-20190718-01",
        architecture="x86_64",
        root_device_name="/dev/xvda",
        snapshot=handle(ResourceKind.SNAPSHOT, 1),
        volume_size_gib=8,
        virtualization_type="hvm",
        volume_type="gp2",
        visible=visible,
    )
    return RegistrationResult(
        image=image,
        region="us-west-2",
        attempts=[Attempt(index=1, outcome=AttemptOutcome.SUCCESS)],
        leaked=leaked or [],
    )


class TestMain:
    """Tests for the top-level group."""

    def test_version(self, runner):
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help_lists_commands(self, runner):
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("register", "find", "doctor"):
            assert command in result.output


class TestRegisterCommand:
    """Tests for amiize register."""

    def test_success(self, runner, image_file, tools, orchestrator):
        orchestrator.run.return_value = _result()
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 0, result.output
        assert IMAGE_ID in result.output
        assert "visible" in result.output
        config = orchestrator.factory.call_args.args[0]
        assert config.name == "os-20190718-01"
        assert config.volume_size == 8

    def test_success_not_visible(self, runner, image_file, tools, orchestrator):
        orchestrator.run.return_value = _result(visible=False)
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 0
        assert "not visible yet" in result.output

    def test_success_with_leaks(self, runner, image_file, tools, orchestrator):
        orchestrator.run.return_value = _result(leaked=[handle(ResourceKind.VOLUME, 7)])
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 0
        assert "vol-00000007" in result.output

    def test_options_forwarded(self, runner, image_file, tools, orchestrator):
        orchestrator.run.return_value = _result()
        result = runner.invoke(main, _args(
            image_file,
            "--security-group-name", "ssh-only",
            "--volume-size", "20",
            "--max-attempts", "3",
            "--subnet-id", "subnet-0a1b2c3d",
            "--ssh-user", "admin",
        ))
        assert result.exit_code == 0, result.output
        config = orchestrator.factory.call_args.args[0]
        assert config.security_group == "ssh-only"
        assert config.volume_size == 20
        assert config.max_attempts == 3
        assert config.subnet_id == "subnet-0a1b2c3d"
        assert config.ssh_user == "admin"

    def test_defaults_file(self, runner, image_file, tools, orchestrator, tmp_path):
        orchestrator.run.return_value = _result()
        defaults = tmp_path / "defaults.yaml"
        defaults.write_text(yaml.dump({
            "region": "eu-west-1",
            "worker_ami": WORKER_AMI,
            "ssh_keypair": "builder",
            "instance_type": "m5.large",
            "arch": "x86_64",
        }))
        result = runner.invoke(main, [
            "register", "--image", str(image_file), "--name", "os", "--config", str(defaults),
        ])
        assert result.exit_code == 0, result.output
        config = orchestrator.factory.call_args.args[0]
        assert config.region == "eu-west-1"
        assert config.instance_type == "m5.large"

    def test_missing_option_is_usage_error(self, runner, image_file, tools, orchestrator):
        args = [a for a in _args(image_file) if a not in ("--arch", "x86_64")]
        result = runner.invoke(main, args)
        assert result.exit_code == 2
        assert "--arch" in result.output
        orchestrator.factory.assert_not_called()

    def test_bad_ami_is_usage_error(self, runner, image_file, tools, orchestrator):
        args = _args(image_file)
        args[args.index(WORKER_AMI)] = "ami-nothex"
        result = runner.invoke(main, args)
        assert result.exit_code == 2
        orchestrator.factory.assert_not_called()

    def test_missing_tool(self, runner, image_file, orchestrator):
        with patch("amiize.cli.register.check_tools", return_value=NO_RSYNC):
            result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 2
        assert "rsync" in result.output
        orchestrator.factory.assert_not_called()

    def test_image_exists(self, runner, image_file, tools, orchestrator):
        orchestrator.run.side_effect = ImageAlreadyExists("os-20190718-01", IMAGE_ID, "us-west-2")
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 1
        assert "Warning!" in result.output
        assert "already exists" in result.output

    def test_attempts_exhausted(self, runner, image_file, tools, orchestrator):
        orchestrator.run.side_effect = AttemptsExhausted(2)
        orchestrator.guard.leaked.append(handle(ResourceKind.INSTANCE, 3))
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 1
        assert "No attempts succeeded" in result.output
        assert "i-00000003" in result.output

    def test_interrupted(self, runner, image_file, tools, orchestrator):
        orchestrator.run.side_effect = KeyboardInterrupt()
        result = runner.invoke(main, _args(image_file))
        assert result.exit_code == 130
        assert "Interrupted" in result.output


class TestFindCommand:
    """Tests for amiize find."""

    def test_found(self, runner):
        with patch("amiize.cli.register.ImageRegistrar") as registrar_cls:
            registrar_cls.return_value.find_by_name.return_value = handle(ResourceKind.IMAGE, 5)
            result = runner.invoke(main, ["find", "--name", "os", "--region", "us-west-2"])
        assert result.exit_code == 0
        assert "ami-00000005" in result.output

    def test_not_found(self, runner):
        with patch("amiize.cli.register.ImageRegistrar") as registrar_cls:
            registrar_cls.return_value.find_by_name.return_value = None
            result = runner.invoke(main, ["find", "--name", "os", "--region", "us-west-2"])
        assert result.exit_code == 1
        assert "No image named os" in result.output

    def test_query_failure(self, runner):
        with patch("amiize.cli.register.ImageRegistrar") as registrar_cls:
            registrar_cls.return_value.find_by_name.side_effect = ProviderQueryFailure("throttled")
            result = runner.invoke(main, ["find", "--name", "os", "--region", "us-west-2"])
        assert result.exit_code == 1
        assert "throttled" in result.output


class TestDoctorCommand:
    """Tests for amiize doctor."""

    def test_all_ok(self, runner, tmp_path):
        defaults = tmp_path / "config.yaml"
        defaults.write_text(yaml.dump({"region": "us-west-2"}))
        with patch("amiize.cli.doctor.check_tools", return_value=ALL_TOOLS):
            result = runner.invoke(main, ["doctor", "--config", str(defaults)])
        assert result.exit_code == 0
        assert "OK" in result.output
        assert "us-west-2" in result.output

    def test_missing_tool(self, runner, tmp_path):
        with patch("amiize.cli.doctor.check_tools", return_value=NO_RSYNC):
            result = runner.invoke(main, ["doctor", "--config", str(tmp_path / "none.yaml")])
        assert result.exit_code == 1
        assert "MISSING" in result.output
