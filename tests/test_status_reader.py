"""Tests for reading and decoding bot status files."""
from pathlib import Path

import pytest

from src.bridge import status_reader
from src.bridge.status_reader import (
    StatusFileText,
    decode_status_bytes,
    detect_encoding,
    platform_from_path,
    read_status_file,
    register_platform_encoding,
)
from src.copier.errors import DecodeError, FileUnavailable


TEXT = "[TYPE] [MASTER] [MT5] [52381082]\r\n[STATUS] [ONLINE] [1756317783]\r\n"


def test_mt5_utf16_with_bom(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT5.csv"
    path.write_bytes(b"\xff\xfe" + TEXT.encode("utf-16-le"))

    result = read_status_file(path)
    assert isinstance(result, StatusFileText)
    assert result.encoding == "utf-16-le"
    assert result.text == TEXT


def test_mt5_utf16_without_bom_uses_platform_hint(tmp_path: Path):
    path = tmp_path / "status.csv"
    path.write_bytes(TEXT.encode("utf-16-le"))

    result = read_status_file(path, platform="MT5")
    assert result.text == TEXT

    # the file name carries the platform too
    named = tmp_path / "IPTRADECSV2MT5_52381082.csv"
    named.write_bytes(TEXT.encode("utf-16-le"))
    assert read_status_file(named).text == TEXT


def test_mt4_single_byte(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_bytes(b"[TYPE] [PENDING] [MT4] [250062001]\n")

    result = read_status_file(path)
    assert result.encoding == "cp1252"
    assert result.text.startswith("[TYPE] [PENDING]")


def test_mt4_windows_1252_name(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_bytes(
        b"[TYPE] [MASTER] [MT4] [7]\r\n"
        b"[STATUS] [ONLINE] [1756317783]\r\n"
        b"[CONFIG] [MASTER] [ENABLED] [Jos\xe9] [NULL] [NULL] [NULL] [NULL] [NULL] [NULL]\r\n"
    )

    result = read_status_file(path)
    assert result.encoding == "cp1252"
    assert "[Jos\u00e9]" in result.text


def test_ctrader_is_utf8(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2CTRADER.csv"
    path.write_bytes("[CONFIG] [MASTER] [ENABLED] [Jos\u00e9]\n".encode("utf-8"))

    result = read_status_file(path)
    assert result.encoding == "utf-8"
    assert "Jos\u00e9" in result.text


def test_mt5_without_nul_bytes_is_8bit():
    raw = b"[TYPE] [MASTER] [MT5] [1]\n[CONFIG] [MASTER] [ENABLED] [Jos\xe9]\n"
    assert detect_encoding(raw, "MT5") == ("cp1252", 0)
    text, codec = decode_status_bytes(raw, Path("IPTRADECSV2MT5.csv"), "MT5")
    assert codec == "cp1252"
    assert "Jos\u00e9" in text


def test_odd_trailing_byte_is_trimmed():
    raw = b"\xff\xfe" + "[STATUS] [ONLINE] [1]".encode("utf-16-le") + b"\x00"
    text, codec = decode_status_bytes(raw, Path("x.csv"), "MT5")
    assert codec == "utf-16-le"
    assert text == "[STATUS] [ONLINE] [1]"


def test_invalid_bytes_raise_decode_error(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2CTRADER.csv"
    path.write_bytes(b"[TYPE] [MASTER] [CTRADER] [\xc3\x28]\n")
    with pytest.raises(DecodeError) as exc:
        read_status_file(path)
    assert exc.value.encoding == "utf-8"


def test_missing_file_and_directory_are_unavailable(tmp_path: Path):
    missing = read_status_file(tmp_path / "nope.csv")
    assert isinstance(missing, FileUnavailable)
    assert missing.reason == "missing"

    folder = tmp_path / "folder.csv"
    folder.mkdir()
    result = read_status_file(folder)
    assert isinstance(result, FileUnavailable)
    assert result.reason == "missing"


def test_digest_tracks_content(tmp_path: Path):
    path = tmp_path / "IPTRADECSV2MT4.csv"
    path.write_text("[STATUS] [ONLINE] [1]\n", encoding="utf-8")
    first = read_status_file(path).digest
    assert read_status_file(path).digest == first
    path.write_text("[STATUS] [ONLINE] [2]\n", encoding="utf-8")
    assert read_status_file(path).digest != first


def test_platform_from_path():
    assert platform_from_path(Path("IPTRADECSV2MT5.csv")) == "MT5"
    assert platform_from_path(Path("iptradecsv2mt4_1.csv")) == "MT4"
    assert platform_from_path(Path("IPTRADECSV2CTRADER.csv")) == "CTRADER"
    assert platform_from_path(Path("other.csv")) is None


def test_register_platform_encoding(monkeypatch):
    monkeypatch.setattr(status_reader, "_PLATFORM_ENCODINGS", dict(status_reader._PLATFORM_ENCODINGS))
    register_platform_encoding("ninjatrader", "latin-1")
    assert detect_encoding(b"abc", "NINJATRADER") == ("latin-1", 0)
    # BOM wins over the platform hint
    assert detect_encoding(b"\xef\xbb\xbfabc", "MT5") == ("utf-8", 3)

    with pytest.raises(LookupError):
        register_platform_encoding("CTRADER", "no-such-codec")
