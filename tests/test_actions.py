"""Tests for the core workflow actions."""

import signal
from unittest.mock import MagicMock

from rfboot_flasher.core.actions import (
    add_port,
    create,
    get_port,
    monitor,
    reset_local,
    upload_firmware,
)
from rfboot_flasher.core.messages import WarningCode, result_to_warnings

from conftest import FAST_TIMINGS, SimulatedRemote, make_image, make_transport


class TransportFactory:
    """Hands out transports wired to one simulated remote and counts them."""

    def __init__(self, remote: SimulatedRemote):
        self.remote = remote
        self.calls = []

    def __call__(self, port, baudrate):
        self.calls.append((port, baudrate))
        self.transport = make_transport(self.remote)
        return self.transport


def _upload(project_dir, factory, **kwargs):
    return upload_firmware(
        project_dir / "blink.bin",
        project_dir=project_dir,
        port="/dev/ttyFAKE",
        timeout=FAST_TIMINGS.handshake_timeout,
        timings=FAST_TIMINGS,
        transport_factory=factory,
        lock_dir=project_dir,
        **kwargs,
    )


class TestUploadFirmware:
    """Test the upload workflow."""

    def test_same_image_twice(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(100))
        factory = TransportFactory(SimulatedRemote())

        first = _upload(project_dir, factory)
        assert first.ok, first.errors
        assert first.metadata["skipped"] is False
        assert len(factory.calls) == 1
        writes = len(factory.transport.ser.writes)
        assert writes > 0

        second = _upload(project_dir, factory)
        assert second.ok
        assert second.metadata["skipped"] is True
        assert len(factory.calls) == 1
        assert result_to_warnings(second)[0].code == WarningCode.W_IDENTICAL_FIRMWARE

    def test_result_fields(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(100))
        result = _upload(project_dir, TransportFactory(SimulatedRemote()))
        assert result.port == "/dev/ttyFAKE"
        assert result.target == "rfboot ch=4 addr={86,120}"
        assert result.bytes_len == 100
        assert result.metadata["padded_len"] == 128
        assert result.metadata["iv"] == (1, 2)
        assert len(result.hashes["sha256"]) == 64
        assert any("Upload time" in line for line in result.logs)

    def test_legacy_method(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(64))
        remote = SimulatedRemote(mode="legacy")
        result = _upload(project_dir, TransportFactory(remote), method="legacy")
        assert result.ok, result.errors
        assert result.metadata["method"] == "legacy"

    def test_signature_error_becomes_failure(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(64))
        remote = SimulatedRemote(header_reply=bytes([1, 0, 0]))
        result = _upload(project_dir, TransportFactory(remote))
        assert not result.ok
        assert result_to_warnings(result)[-1].code == WarningCode.W_SIGNATURE_REJECTED
        assert not (project_dir / ".lastbinary").exists()

    def test_bad_firmware_never_opens_port(self, project_dir):
        (project_dir / "blink.bin").write_bytes(b"\xff\xff\x00\x00")
        factory = TransportFactory(SimulatedRemote())
        result = _upload(project_dir, factory)
        assert not result.ok
        assert "0xFFFF" in result.errors[0]
        assert factory.calls == []

    def test_config_error_reported(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(64))
        (project_dir / "app_settings.h").write_text("const uint8_t APP_CHANNEL = 1;\n")
        result = _upload(project_dir, TransportFactory(SimulatedRemote()))
        assert not result.ok
        assert result_to_warnings(result)[-1].code == WarningCode.W_CONFIG_INVALID

    def test_discovery_failure(self, project_dir):
        (project_dir / "blink.bin").write_bytes(make_image(64))
        known = project_dir / "ports"
        known.write_text("# empty\n")
        result = upload_firmware(
            project_dir / "blink.bin",
            project_dir=project_dir,
            known_ports=known,
            transport_factory=MagicMock(),
        )
        assert not result.ok
        assert result_to_warnings(result)[-1].code == WarningCode.W_DEVICE_NOT_FOUND


class TestOtherActions:
    """Test the smaller commands."""

    def test_reset_local(self, tmp_path):
        remote = SimulatedRemote()
        result = reset_local(
            port="/dev/ttyFAKE",
            transport_factory=TransportFactory(remote),
            lock_dir=tmp_path,
        )
        assert result.ok
        assert remote.commands == [("R", b"")]

    def test_get_port_failure(self, tmp_path):
        result = get_port(tmp_path / "missing")
        assert not result.ok
        assert (tmp_path / "missing").exists()

    def test_add_port(self, tmp_path):
        by_id = tmp_path / "by-id"
        by_id.mkdir()
        target = tmp_path / "tty"
        target.write_text("")

        def plug_in(_interval):
            link = by_id / "usb-new"
            if not link.is_symlink():
                link.symlink_to(target)

        known = tmp_path / ".usb2rf"
        result = add_port(known, directory=by_id, sleep=plug_in)
        assert result.ok, result.errors
        assert result.metadata["added"] is True
        assert str(by_id / "usb-new") in known.read_text()

    def test_create(self, tmp_path):
        result = create("blink", tmp_path)
        assert result.ok
        assert result.metadata["reset_string"] == "RST_blink"
        assert (tmp_path / "blink" / "rfboot" / "rfboot_settings.h").exists()

    def test_create_bad_name(self, tmp_path):
        result = create("bad name", tmp_path)
        assert not result.ok

    def test_monitor_starts_command(self, project_dir):
        remote = SimulatedRemote()
        popen = MagicMock()
        popen.return_value.pid = 1234
        result = monitor(
            ["picocom", "-b", "38400"],
            project_dir=project_dir,
            port="/dev/ttyFAKE",
            transport_factory=TransportFactory(remote),
            lock_dir=project_dir,
            popen=popen,
        )
        assert result.ok, result.errors
        popen.assert_called_once_with(["picocom", "-b", "38400", "/dev/ttyFAKE"])
        assert result.metadata["pid"] == 1234
        assert (remote.channel, remote.address) == (1, b"\x12\x34")

    def test_monitor_pauses_lock_holder_and_skips_command(self, project_dir, monkeypatch):
        kills = []
        monkeypatch.setattr("rfboot_flasher.serial_ports.process_exists", lambda pid: True)
        monkeypatch.setattr("rfboot_flasher.serial_ports.os.kill", lambda pid, sig: kills.append((pid, sig)))
        (project_dir / "LCK..ttyFAKE").write_text("4242\n")
        popen = MagicMock()
        result = monitor(
            ["picocom"],
            project_dir=project_dir,
            port="/dev/ttyFAKE",
            transport_factory=TransportFactory(SimulatedRemote()),
            lock_dir=project_dir,
            popen=popen,
        )
        assert result.ok
        assert kills == [(4242, signal.SIGSTOP), (4242, signal.SIGCONT)]
        popen.assert_not_called()
        assert result_to_warnings(result)[0].code == WarningCode.W_PORT_BUSY
