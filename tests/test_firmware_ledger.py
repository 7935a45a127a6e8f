"""Tests for firmware validation/padding and the upload ledger."""

import pytest

from rfboot_flasher.core.config import AppSettings
from rfboot_flasher.core.firmware import (
    MAX_APP_SIZE,
    FirmwareImageError,
    load_firmware,
    pad_image,
    validate_firmware,
)
from rfboot_flasher.core.ledger import LedgerError, LedgerRecord, UploadLedger

from conftest import APP, make_image


class TestFirmware:
    """Test image checks."""

    def test_pad_100_bytes(self):
        padded = pad_image(make_image(100))
        assert len(padded) == 128
        assert padded[100:] == b"\xff" * 28

    def test_pad_exact_multiple_unchanged(self):
        image = make_image(64)
        assert pad_image(image) == image

    @pytest.mark.parametrize(
        "image, message",
        [
            (b"\x0c", "only 1 bytes"),
            (b"\x0c\x94\x00", "multiple of 2"),
            (b"\xff\xff\x00\x00", "0xFFFF"),
            (bytes(MAX_APP_SIZE + 2), "Very big"),
        ],
    )
    def test_invalid_images(self, image, message):
        with pytest.raises(FirmwareImageError, match=message):
            validate_firmware(image)

    def test_max_size_accepted(self):
        validate_firmware(bytes(MAX_APP_SIZE))

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FirmwareImageError, match="Cannot read"):
            load_firmware(tmp_path / "missing.bin")


class TestLedger:
    """Test .lastupload / .lastbinary handling."""

    def test_empty_ledger(self, tmp_path):
        ledger = UploadLedger(tmp_path)
        assert ledger.load() is None
        assert ledger.last_image() is None
        assert not ledger.is_identical(b"\x01\x02")

    def test_record_and_load(self, tmp_path):
        ledger = UploadLedger(tmp_path)
        image = make_image(100)
        ledger.record(APP, image)

        assert (tmp_path / ".lastupload").read_text() == "1\n18\n52\nRST_blink\n"
        assert ledger.load() == LedgerRecord(channel=1, address=b"\x12\x34", reset_string="RST_blink")
        assert ledger.last_image() == image
        assert ledger.is_identical(image)
        assert not ledger.is_identical(image[:-2] + b"\x00\x00")
        assert not (tmp_path / ".lastbinary.tmp").exists()

    def test_three_line_ledger_has_no_reset_string(self, tmp_path):
        (tmp_path / ".lastupload").write_text("5\n1\n2\n")
        record = UploadLedger(tmp_path).load()
        assert record.reset_string == ""
        assert record.as_app_settings() == AppSettings(5, b"\x01\x02", "")

    def test_short_ledger_is_an_error(self, tmp_path):
        (tmp_path / ".lastupload").write_text("5\n1\n")
        with pytest.raises(LedgerError, match="expected 4"):
            UploadLedger(tmp_path).load()

    def test_garbage_ledger_is_an_error(self, tmp_path):
        (tmp_path / ".lastupload").write_text("five\n1\n2\nRST\n")
        with pytest.raises(LedgerError, match="malformed"):
            UploadLedger(tmp_path).load()
