"""Tests for the bracketed status-line parser."""
import logging

import pytest

from src.bridge.status_lines import (
    ConfigRecord,
    StatusRecord,
    TicketRecord,
    TranslateRecord,
    TypeRecord,
    format_config_line,
    parse_line,
    parse_status_lines,
    parse_status_text,
    tokenize,
)
from src.copier.errors import MalformedRecord


def test_parse_type_line():
    rec = parse_line("[TYPE] [MASTER] [MT5] [52381082]")
    assert rec == TypeRecord(role="MASTER", platform="MT5", account_id="52381082")
    # parsing is pure: same line, same record
    assert parse_line("[TYPE] [MASTER] [MT5] [52381082]") == rec


def test_parse_tolerates_whitespace_bom_and_nul():
    assert parse_line("  [TYPE]  [ slave ]  [MT4] [ 123 ]\r") == TypeRecord("SLAVE", "MT4", "123")
    assert parse_line("\ufeff[TYPE] [PENDING] [MT4] [1]") == TypeRecord("PENDING", "MT4", "1")
    assert parse_line("[\x00TYPE\x00] [MASTER] [MT5] [7]") == TypeRecord("MASTER", "MT5", "7")


def test_parse_ignores_short_unknown_and_blank_lines():
    assert parse_line("") is None
    assert parse_line("   ") is None
    assert parse_line("just some text") is None
    assert parse_line("[TYPE] [MASTER] [MT5]") is None
    assert parse_line("[TYPE] [OBSERVER] [MT5] [1]") is None
    assert parse_line("[HEARTBEAT] [1]") is None
    assert parse_line("[STATUS] [ONLINE]") is None


def test_parse_status_line():
    assert parse_line("[STATUS] [online] [1756317783]") == StatusRecord(state="ONLINE", timestamp=1756317783)


def test_status_with_bad_timestamp_is_malformed():
    with pytest.raises(MalformedRecord) as exc:
        parse_line("[STATUS] [ONLINE] [17563x7783]")
    assert "17563x7783" in str(exc.value)

    with pytest.raises(MalformedRecord):
        parse_line("[STATUS] [ONLINE] [1756317783.5]")


def test_parse_config_keeps_details_verbatim():
    rec = parse_line("[CONFIG] [SLAVE] [ENABLED] [2.0] [NULL] [FALSE] [52381082] [NULL] [NULL] [.m]")
    assert isinstance(rec, ConfigRecord)
    assert rec.config_role == "SLAVE"
    assert rec.details[0] == "ENABLED"
    assert rec.detail(4) == "52381082"
    assert rec.detail(7) == ".m"
    assert rec.detail(20) is None


def test_parse_config_with_empty_detail():
    rec = parse_line("[CONFIG] [PENDING] []")
    assert rec == ConfigRecord(config_role="PENDING", details=("",))


def test_parse_translate_skips_null_pairs():
    rec = parse_line("[TRANSLATE] [EURUSD:EURUSD.m] [NULL] [GOLD:XAUUSD]")
    assert isinstance(rec, TranslateRecord)
    assert rec.as_dict() == {"EURUSD": "EURUSD.m", "GOLD": "XAUUSD"}


def test_parse_ticket_line():
    rec = parse_line("[TICKET] [12345] [EURUSD] [BUY] [0.10] [1.0850] [NULL] [1.0900] [1756317700]")
    assert isinstance(rec, TicketRecord)
    assert rec.ticket == "12345"
    assert rec.lots == pytest.approx(0.10)
    assert rec.sl is None
    assert rec.tp == pytest.approx(1.09)
    assert rec.open_time == "1756317700"


def test_file_fold_first_type_wins_last_status_wins(caplog):
    lines = [
        "[TYPE] [MASTER] [MT4] [100]",
        "[STATUS] [ONLINE] [10]",
        "[TYPE] [SLAVE] [MT4] [200]",
        "[STATUS] [ONLINE] [20]",
        "[CONFIG] [MASTER] [DISABLED]",
        "[CONFIG] [MASTER] [ENABLED]",
        "[TICKET] [1] [EURUSD] [BUY] [0.1] [1.1] [0] [0] [5]",
        "[TICKET] [2] [GBPUSD] [SELL] [0.2] [1.3] [0] [0] [6]",
    ]
    with caplog.at_level(logging.WARNING):
        parsed = parse_status_lines(lines)

    assert parsed.type_record == TypeRecord("MASTER", "MT4", "100")
    assert parsed.status.timestamp == 20
    assert parsed.config.details == ("ENABLED",)
    assert [t.ticket for t in parsed.tickets] == ["1", "2"]
    assert "extra TYPE line" in caplog.text


def test_file_without_type_line_is_not_an_account():
    parsed = parse_status_text("[STATUS] [ONLINE] [1]\n[CONFIG] [PENDING] []\n")
    assert not parsed.is_account
    assert parsed.status is not None


def test_pending_scenario_file():
    text = "[TYPE] [PENDING] [MT4] [250062001]\r\n[STATUS] [ONLINE] [1756317783]\r\n[CONFIG] [PENDING] []\r\n"
    parsed = parse_status_text(text)
    assert parsed.type_record == TypeRecord("PENDING", "MT4", "250062001")
    assert parsed.status == StatusRecord("ONLINE", 1756317783)
    assert parsed.config.config_role == "PENDING"


def test_tokenize_and_format_config_line():
    assert tokenize("[A] [ b ] [] [c d]") == ["A", "b", "", "c d"]
    line = format_config_line("SLAVE", ["ENABLED", "1.0", "NULL"])
    assert line == "[CONFIG] [SLAVE] [ENABLED] [1.0] [NULL]"
    assert parse_line(line) == ConfigRecord("SLAVE", ("ENABLED", "1.0", "NULL"))
