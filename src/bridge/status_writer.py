"""
Write configuration changes back into a bot's status file.

The bots re-read their own CONFIG line on every tick, so switching copy
trading on or off for an account, converting a pending account or changing
a slave's lot settings means rewriting that line in place. The rest of the
file (TYPE, STATUS, TRANSLATE, TICKET lines) is preserved byte-for-byte in
meaning and the file keeps its original encoding and BOM.

CONFIG layouts written here:

    [CONFIG] [MASTER] [ENABLED] [NAME] [NULL] [NULL] [NULL] [NULL] [PREFIX] [SUFFIX]
    [CONFIG] [SLAVE] [ENABLED] [LOT_MULT] [FORCE_LOT] [REVERSE] [MASTER_ID] [MASTER_PATH] [PREFIX] [SUFFIX]
    [CONFIG] [PENDING] [DISABLED] [1.0] [NULL] [FALSE] [NULL] [NULL] [NULL] [NULL]

Writes are atomic (temp file in the same folder + ``os.replace``) so a bot
never reads a half-written file.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple
import logging
import os
import tempfile

from . import status_lines
from .status_lines import NULL
from .status_reader import _BOM_ENCODINGS, decode_status_bytes, platform_from_path
from ..copier.errors import EncodeError, FileUnavailable


logger = logging.getLogger(__name__)

PENDING_DETAILS = ("DISABLED", "1.0", NULL, "FALSE", NULL, NULL, NULL, NULL)


def _bom_for(codec: str, raw: bytes) -> bytes:
    for bom, bom_codec in _BOM_ENCODINGS:
        if bom_codec == codec and raw.startswith(bom):
            return bom
    return b""


def _token(value: Any) -> str:
    """Render one CONFIG field; None and empty strings become NULL."""
    if value is None:
        return NULL
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    text = str(value).strip()
    if not text:
        return NULL
    if any(ch in text for ch in "[]\r\n"):
        raise ValueError(f"config value {text!r} may not contain brackets or line breaks")
    return text


def _switch(enabled: bool) -> str:
    return "ENABLED" if enabled else "DISABLED"


def master_config_details(
    enabled: bool,
    name: Optional[str] = None,
    prefix: Optional[str] = None,
    suffix: Optional[str] = None,
) -> Tuple[str, ...]:
    return (_switch(enabled), _token(name), NULL, NULL, NULL, NULL, _token(prefix), _token(suffix))


def slave_config_details(
    enabled: bool,
    lot_multiplier: Optional[float] = 1.0,
    force_lot: Optional[float] = None,
    reverse_trading: bool = False,
    master_id: Optional[str] = None,
    master_file_path: Optional[str] = None,
    prefix: Optional[str] = None,
    suffix: Optional[str] = None,
) -> Tuple[str, ...]:
    if lot_multiplier is not None and float(lot_multiplier) <= 0:
        raise ValueError("lot_multiplier must be > 0")
    if force_lot is not None and float(force_lot) <= 0:
        raise ValueError("force_lot must be > 0")
    return (
        _switch(enabled),
        _token(float(lot_multiplier) if lot_multiplier is not None else 1.0),
        _token(float(force_lot) if force_lot is not None else None),
        _token(bool(reverse_trading)),
        _token(master_id),
        _token(master_file_path),
        _token(prefix),
        _token(suffix),
    )


def _rewrite_config(lines: Sequence[str], config_role: Optional[str], details: Sequence[str]) -> List[str]:
    out: List[str] = []
    replaced = False
    for line in lines:
        try:
            rec = status_lines.parse_line(line)
        except ValueError:
            rec = None
        if isinstance(rec, status_lines.ConfigRecord):
            role = config_role or rec.config_role
            out.append(status_lines.format_config_line(role, details))
            replaced = True
        else:
            out.append(line)
    if not replaced:
        out.append(status_lines.format_config_line(config_role or "PENDING", details))
    return out


def _write_atomic(path: Path, data: bytes) -> None:
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(mode="wb", delete=False, dir=str(path.parent), prefix=path.name + ".", suffix=".tmp") as tf:
            tf.write(data)
            tf.flush()
            os.fsync(tf.fileno())
            tmp_path = Path(tf.name)
        os.replace(str(tmp_path), str(path))
    except Exception:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()
        raise


def rewrite_config_line(path: Path, details: Sequence[str], config_role: Optional[str] = None, platform: Optional[str] = None) -> Path:
    """Replace the CONFIG line of ``path`` (appending one if absent).

    Raises FileNotFoundError when the status file does not exist; a config
    change for an account whose bot never wrote its file is an operator error.
    Raises EncodeError when the new line has characters the file's code page
    cannot hold.
    """
    path = Path(path)
    raw = path.read_bytes()
    text, codec = decode_status_bytes(raw, path, platform or platform_from_path(path))
    newline = "\r\n" if "\r\n" in text else "\n"
    lines = [ln.rstrip("\r") for ln in text.split("\n")]
    trailing = bool(lines) and lines[-1] == ""
    if trailing:
        lines = lines[:-1]

    updated = _rewrite_config(lines, config_role, details)
    body = newline.join(updated) + (newline if trailing else "")
    try:
        data = body.encode(codec)
    except UnicodeEncodeError as e:
        raise EncodeError(path, codec, str(e))
    _write_atomic(path, _bom_for(codec, raw) + data)
    logger.info("rewrote CONFIG line in %s", path)
    return path


def write_config_enabled(path: Path, enabled: bool, platform: Optional[str] = None) -> Path:
    """Flip the ENABLED/DISABLED switch of a status file's CONFIG line."""
    path = Path(path)
    raw = path.read_bytes()
    text, _ = decode_status_bytes(raw, path, platform or platform_from_path(path))
    parsed = status_lines.parse_status_text(text)
    token = _switch(enabled)

    if parsed.config is None:
        role = parsed.type_record.role if parsed.type_record else "PENDING"
        return rewrite_config_line(path, (token,), config_role=role, platform=platform)

    details = list(parsed.config.details) or [token]
    details[0] = token
    return rewrite_config_line(path, details, platform=platform)


def write_master_config(
    path: Path,
    enabled: bool,
    name: Optional[str] = None,
    prefix: Optional[str] = None,
    suffix: Optional[str] = None,
    platform: Optional[str] = None,
) -> Path:
    """Write a full MASTER CONFIG line."""
    details = master_config_details(enabled, name=name, prefix=prefix, suffix=suffix)
    return rewrite_config_line(path, details, config_role="MASTER", platform=platform)


def write_slave_config(path: Path, enabled: bool, platform: Optional[str] = None, **settings: Any) -> Path:
    """Write a full SLAVE CONFIG line.

    ``settings`` are the keyword arguments of ``slave_config_details``.
    """
    details = slave_config_details(enabled, **settings)
    return rewrite_config_line(path, details, config_role="SLAVE", platform=platform)


def convert_to_pending(path: Path, platform: Optional[str] = None) -> Path:
    """Reset a status file's CONFIG line to the pending default."""
    return rewrite_config_line(path, PENDING_DETAILS, config_role="PENDING", platform=platform)


def check_writable(path: Path) -> Optional[FileUnavailable]:
    """Return why ``path`` cannot be rewritten right now, or None."""
    path = Path(path)
    if not path.exists():
        return FileUnavailable(path=path, reason="missing")
    if not os.access(str(path.parent), os.W_OK):
        return FileUnavailable(path=path, reason="permission")
    return None


__all__ = [
    "PENDING_DETAILS",
    "master_config_details",
    "slave_config_details",
    "rewrite_config_line",
    "write_config_enabled",
    "write_master_config",
    "write_slave_config",
    "convert_to_pending",
    "check_writable",
]
