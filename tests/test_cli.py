"""Tests for the rftool command line."""

from unittest.mock import MagicMock

from typer.testing import CliRunner

from rfboot_flasher import __version__
from rfboot_flasher import cli
from rfboot_flasher.core.results import OperationResult

runner = CliRunner()


def _uploaded() -> OperationResult:
    result = OperationResult.success(
        operation="upload", port="/dev/ttyUSB0", target="rfboot ch=4 addr={1,2}", bytes_len=100
    )
    result.metadata.update(skipped=False, padded_len=128, method="flow", elapsed=1.5)
    return result


class TestUploadCommand:
    """Test upload/send option handling."""

    def test_defaults(self, monkeypatch):
        core = MagicMock(return_value=_uploaded())
        monkeypatch.setattr(cli, "core_upload_firmware", core)
        monkeypatch.delenv("RFTOOL_PORT", raising=False)

        result = runner.invoke(cli.app, ["upload", "blink.bin"])

        assert result.exit_code == 0, result.output
        kwargs = core.call_args.kwargs
        assert kwargs["baudrate"] == 38400
        assert kwargs["timeout"] == 10.0
        assert kwargs["method"] == "flow"
        assert kwargs["port"] is None
        assert "Upload complete" in result.output

    def test_send_alias_with_options(self, monkeypatch):
        core = MagicMock(return_value=_uploaded())
        monkeypatch.setattr(cli, "core_upload_firmware", core)

        result = runner.invoke(
            cli.app,
            ["send", "blink.bin", "--port", "/dev/ttyUSB1", "--method", "legacy", "--timeout", "3"],
        )

        assert result.exit_code == 0, result.output
        kwargs = core.call_args.kwargs
        assert kwargs["port"] == "/dev/ttyUSB1"
        assert kwargs["method"] == "legacy"
        assert kwargs["timeout"] == 3.0

    def test_port_from_environment(self, monkeypatch):
        core = MagicMock(return_value=_uploaded())
        monkeypatch.setattr(cli, "core_upload_firmware", core)
        monkeypatch.setenv("RFTOOL_PORT", "/dev/ttyACM0")

        runner.invoke(cli.app, ["upload", "blink.bin"])

        assert core.call_args.kwargs["port"] == "/dev/ttyACM0"

    def test_failure_exits_1(self, monkeypatch):
        failed = OperationResult.failure("upload", "rfboot reports wrong signature")
        monkeypatch.setattr(cli, "core_upload_firmware", MagicMock(return_value=failed))

        result = runner.invoke(cli.app, ["upload", "blink.bin"])

        assert result.exit_code == 1
        assert "W_SIGNATURE_REJECTED" in result.output


class TestOtherCommands:
    """Test the remaining commands."""

    def test_create(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = runner.invoke(cli.app, ["create", "blink"])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "blink" / "app_settings.h").exists()
        assert "rfboot channel = 4" in result.output

    def test_create_existing_fails(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "blink").mkdir()
        result = runner.invoke(cli.app, ["create", "blink"])
        assert result.exit_code == 1

    def test_getport(self, monkeypatch):
        found = OperationResult.success(operation="getport", port="/dev/ttyUSB0")
        monkeypatch.setattr(cli, "core_get_port", MagicMock(return_value=found))
        result = runner.invoke(cli.app, ["getport"])
        assert result.exit_code == 0
        assert result.output.strip() == "/dev/ttyUSB0"

    def test_monitor_passes_command(self, monkeypatch):
        core = MagicMock(return_value=OperationResult.success(operation="monitor", port="/dev/ttyUSB0"))
        monkeypatch.setattr(cli, "core_monitor", core)
        result = runner.invoke(cli.app, ["monitor", "--", "picocom", "-b", "38400"])
        assert result.exit_code == 0, result.output
        assert list(core.call_args.args[0]) == ["picocom", "-b", "38400"]

    def test_version(self):
        result = runner.invoke(cli.app, ["version"])
        assert result.output.strip() == __version__
