"""Tests for structured log lines and the signed audit trail."""
import importlib.util
import json
import logging
from pathlib import Path

from src.copier.logging_utils import (
    append_signed_audit,
    log_structured,
    read_audit_file,
    verify_audit_stream,
)


def test_log_structured_emits_json(caplog):
    logger = logging.getLogger("test.copier")
    with caplog.at_level(logging.INFO, logger="test.copier"):
        log_structured(logger, "copier.poll.cycle", files=3, accounts=2)
    payload = json.loads(caplog.records[-1].getMessage())
    assert payload == {"type": "copier.poll.cycle", "files": 3, "accounts": 2}


def test_log_structured_respects_level(caplog):
    logger = logging.getLogger("test.copier.quiet")
    with caplog.at_level(logging.INFO, logger="test.copier.quiet"):
        log_structured(logger, "copier.poll.cycle", level=logging.DEBUG, files=1)
    assert caplog.records == []


def test_signed_audit_roundtrip(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("COPIER_HMAC_KEY", raising=False)
    audit = tmp_path / "logs" / "audit.log"

    entry = append_signed_audit({"event": "set_enabled", "account_id": "52381082"}, audit_log=audit, hmac_key="secret")
    append_signed_audit({"event": "unlink", "account_id": "9001"}, audit_log=audit, hmac_key="secret")

    assert entry["hmac"]
    assert "hostname" in entry["session"]
    entries = read_audit_file(audit)
    total, verified, failures = verify_audit_stream(entries, "secret")
    assert (total, verified, failures) == (2, 2, [])


def test_tampered_and_unsigned_entries_fail(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("COPIER_HMAC_KEY", raising=False)
    audit = tmp_path / "audit.log"
    append_signed_audit({"event": "set_enabled", "enabled": False}, audit_log=audit, hmac_key="secret")
    append_signed_audit({"event": "set_global_status"}, audit_log=audit)

    entries = read_audit_file(audit)
    entries[0]["enabled"] = True
    assert entries[1]["hmac"] is None

    total, verified, failures = verify_audit_stream(entries, "secret")
    assert total == 2
    assert verified == 0
    assert [f.reason for f in failures] == ["HMAC_MISMATCH", "MISSING_HMAC"]


def test_env_key_is_used(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("COPIER_HMAC_KEY", "from-env")
    audit = tmp_path / "audit.log"
    append_signed_audit({"event": "unlink"}, audit_log=audit)
    _, verified, _ = verify_audit_stream(read_audit_file(audit), "from-env")
    assert verified == 1


def _load_verify_script():
    script = Path(__file__).resolve().parent.parent / "scripts" / "verify_audit_log.py"
    module_spec = importlib.util.spec_from_file_location("verify_audit_log", str(script))
    mod = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(mod)
    return mod


def test_verify_script_exit_codes(tmp_path: Path, monkeypatch, capsys):
    monkeypatch.delenv("COPIER_HMAC_KEY", raising=False)
    audit = tmp_path / "audit.log"
    append_signed_audit({"event": "emergency_shutdown"}, audit_log=audit, hmac_key="secret")
    script = _load_verify_script()

    assert script.main(["--audit-log", str(audit), "--key", "secret"]) == 0
    assert "total=1, verified=1, failed=0" in capsys.readouterr().out

    assert script.main(["--audit-log", str(audit), "--key", "wrong", "--verbose"]) == 1
    out = capsys.readouterr().out
    assert "HMAC_MISMATCH event=emergency_shutdown" in out
