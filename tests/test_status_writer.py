"""Tests for rewriting a bot's CONFIG line."""
from pathlib import Path

import pytest

from src.bridge.status_lines import parse_status_text
from src.bridge.status_writer import (
    PENDING_DETAILS,
    check_writable,
    convert_to_pending,
    rewrite_config_line,
    write_config_enabled,
    write_master_config,
    write_slave_config,
)
from src.copier.errors import EncodeError


MASTER_TEXT = (
    "[TYPE] [MASTER] [MT5] [52381082]\r\n"
    "[STATUS] [ONLINE] [1756317783]\r\n"
    "[CONFIG] [MASTER] [ENABLED] [Main] [NULL] [NULL] [NULL] [NULL] [NULL] [.m]\r\n"
    "[TRANSLATE] [EURUSD:EURUSD.m] [NULL]\r\n"
)


def _mt5_file(tmp_path: Path, text: str = MASTER_TEXT) -> Path:
    path = tmp_path / "IPTRADECSV2MT5.csv"
    path.write_bytes(b"\xff\xfe" + text.encode("utf-16-le"))
    return path


def test_disable_keeps_encoding_and_other_lines(tmp_path: Path):
    path = _mt5_file(tmp_path)
    write_config_enabled(path, False)

    raw = path.read_bytes()
    assert raw.startswith(b"\xff\xfe")
    text = raw[2:].decode("utf-16-le")
    assert "\r\n" in text
    lines = text.splitlines()
    assert lines[0] == "[TYPE] [MASTER] [MT5] [52381082]"
    assert lines[2] == "[CONFIG] [MASTER] [DISABLED] [Main] [NULL] [NULL] [NULL] [NULL] [NULL] [.m]"
    assert lines[3] == "[TRANSLATE] [EURUSD:EURUSD.m] [NULL]"
    assert len(lines) == 4


def test_enable_appends_config_when_missing(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_text("[TYPE] [SLAVE] [MT4] [777]\n[STATUS] [ONLINE] [1]\n", encoding="utf-8")

    write_config_enabled(path, True)

    parsed = parse_status_text(path.read_text(encoding="utf-8"))
    assert parsed.config.config_role == "SLAVE"
    assert parsed.config.details == ("ENABLED",)
    assert path.read_text(encoding="utf-8").endswith("\n")


def test_convert_to_pending(tmp_path: Path):
    path = _mt5_file(tmp_path)
    convert_to_pending(path)

    parsed = parse_status_text(path.read_bytes()[2:].decode("utf-16-le"))
    assert parsed.type_record.role == "MASTER"
    assert parsed.config.config_role == "PENDING"
    assert parsed.config.details == PENDING_DETAILS


def test_rewrite_replaces_only_config(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_text("[TYPE] [PENDING] [MT4] [1]\n[CONFIG] [PENDING] []\n", encoding="utf-8")

    rewrite_config_line(path, ["ENABLED", "x"], config_role="MASTER")
    assert path.read_text(encoding="utf-8") == "[TYPE] [PENDING] [MT4] [1]\n[CONFIG] [MASTER] [ENABLED] [x]\n"
    # no temp files left behind
    assert [p.name for p in tmp_path.iterdir()] == ["IPTRADECSV2MT4.csv"]


def test_rewrite_missing_file_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        write_config_enabled(tmp_path / "gone.csv", True)


def test_check_writable(tmp_path: Path):
    missing = check_writable(tmp_path / "gone.csv")
    assert missing is not None and missing.reason == "missing"

    path = _mt5_file(tmp_path)
    assert check_writable(path) is None


def _mt4_file(tmp_path: Path, config: bytes) -> Path:
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_bytes(
        b"[TYPE] [MASTER] [MT4] [7]\r\n"
        b"[STATUS] [ONLINE] [1756317783]\r\n" + config + b"\r\n"
    )
    return path


def test_disable_keeps_windows_1252_bytes(tmp_path: Path):
    path = _mt4_file(tmp_path, b"[CONFIG] [MASTER] [ENABLED] [Jos\xe9] [NULL] [NULL] [NULL] [NULL] [NULL] [NULL]")
    write_config_enabled(path, False)

    raw = path.read_bytes()
    assert b"[CONFIG] [MASTER] [DISABLED] [Jos\xe9] [NULL]" in raw
    assert raw.count(b"\xe9") == 1
    assert raw.startswith(b"[TYPE] [MASTER] [MT4] [7]\r\n")


def test_write_master_config(tmp_path: Path):
    path = _mt4_file(tmp_path, b"[CONFIG] [PENDING] [DISABLED] [1.0] [NULL] [FALSE] [NULL] [NULL] [NULL] [NULL]")
    write_master_config(path, True, name="José", suffix=".m")

    config = parse_status_text(path.read_bytes().decode("cp1252")).config
    assert config.config_role == "MASTER"
    assert config.details == ("ENABLED", "José", "NULL", "NULL", "NULL", "NULL", "NULL", ".m")


def test_write_slave_config(tmp_path: Path):
    path = _mt4_file(tmp_path, b"[CONFIG] [PENDING] []")
    write_slave_config(path, False, lot_multiplier=2, force_lot=None, reverse_trading=True, master_id="100", prefix="")

    line = path.read_bytes().decode("cp1252").splitlines()[2]
    assert line == "[CONFIG] [SLAVE] [DISABLED] [2.0] [NULL] [TRUE] [100] [NULL] [NULL] [NULL]"


def test_config_values_are_validated(tmp_path: Path):
    path = _mt4_file(tmp_path, b"[CONFIG] [PENDING] []")
    before = path.read_bytes()

    with pytest.raises(ValueError):
        write_master_config(path, True, name="a]b")
    with pytest.raises(ValueError):
        write_slave_config(path, True, lot_multiplier=0)
    with pytest.raises(EncodeError):
        write_master_config(path, True, name="主账户")
    assert path.read_bytes() == before
