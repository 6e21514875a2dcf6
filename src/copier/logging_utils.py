"""Structured log lines and HMAC-signed audit entries for operator actions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
import os
import platform
import socket
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple


def log_structured(logger: logging.Logger, event_type: str, level: int = logging.INFO, **payload: Any) -> None:
    """Emit one JSON log line ``{"type": event_type, ...}``."""
    if not logger.isEnabledFor(level):
        return
    body: Dict[str, Any] = {"type": event_type}
    body.update(payload)
    logger.log(level, json.dumps(body, ensure_ascii=False, default=str))


def _default_session_info() -> Dict[str, Any]:
    try:
        username = os.getlogin()
    except OSError:
        username = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return {
        "user": username,
        "hostname": socket.gethostname(),
        "platform": platform.platform(),
        "pid": os.getpid(),
    }


def _sign(entry: Dict[str, Any], key: str) -> str:
    msg = json.dumps(entry, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hmac.new(key.encode("utf-8"), msg, hashlib.sha256).hexdigest()


def append_signed_audit(
    payload: Dict[str, Any],
    *,
    audit_log: Path,
    hmac_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Append an audit entry enriched with session metadata and HMAC signature.

    The entry is signed when ``hmac_key`` (or ``COPIER_HMAC_KEY``) is set;
    otherwise ``hmac`` is written as null. Returns the entry written.
    """
    audit_log = Path(audit_log)
    audit_log.parent.mkdir(parents=True, exist_ok=True)

    entry = dict(payload)
    ts = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    entry.setdefault("ts", ts)

    session_info = entry.setdefault("session", {})
    for key, value in _default_session_info().items():
        session_info.setdefault(key, value)

    key = hmac_key or os.environ.get("COPIER_HMAC_KEY")
    entry["hmac"] = _sign(entry, key) if key else None

    with audit_log.open("a", encoding="utf-8") as stream:
        stream.write(json.dumps(entry, ensure_ascii=False) + "\n")
    return entry


@dataclass
class AuditFailure:
    index: int
    reason: str
    entry: Dict[str, Any]


def verify_audit_stream(entries: Iterable[Dict[str, Any]], key: str) -> Tuple[int, int, List[AuditFailure]]:
    """Check HMAC signatures; returns ``(total, verified, failures)``."""
    total = 0
    verified = 0
    failures: List[AuditFailure] = []

    for idx, entry in enumerate(entries):
        total += 1
        signature = entry.get("hmac")
        if not signature:
            failures.append(AuditFailure(index=idx, reason="MISSING_HMAC", entry=entry))
            continue
        unsigned = {k: v for k, v in entry.items() if k != "hmac"}
        if not hmac.compare_digest(signature, _sign(unsigned, key)):
            failures.append(AuditFailure(index=idx, reason="HMAC_MISMATCH", entry=entry))
            continue
        verified += 1

    return total, verified, failures


def read_audit_file(path: Path) -> List[Dict[str, Any]]:
    entries: List[Dict[str, Any]] = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError as exc:
            entries.append({"raw": line, "error": str(exc), "hmac": None})
    return entries


__all__ = [
    "log_structured",
    "append_signed_audit",
    "AuditFailure",
    "verify_audit_stream",
    "read_audit_file",
]
