"""
Read per-account status files written by the platform bots.

MT5 writes its text files as UTF-16LE (usually with a ``FF FE`` BOM), the
other bots write plain 8-bit text: Windows-1252 for MT4 (and MT5 bots built
with FILE_ANSI), UTF-8 for cTrader. The decoder is chosen from the BOM first
and from the platform hint second, so new platforms only need an entry in
the encoding registry.

A missing file is the common case (the bot has not started yet) and is
returned as a ``FileUnavailable`` value instead of raised.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
import codecs
import errno
import hashlib
import logging

from ..copier.errors import DecodeError, FileUnavailable


logger = logging.getLogger(__name__)

DEFAULT_ENCODING = "cp1252"

# platform (upper-case) -> codec used when the file carries no BOM
_PLATFORM_ENCODINGS: Dict[str, str] = {
    "MT5": "utf-16-le",
    "CTRADER": "utf-8",
}

_BOM_ENCODINGS: Tuple[Tuple[bytes, str], ...] = (
    (b"\xef\xbb\xbf", "utf-8"),
    (b"\xff\xfe", "utf-16-le"),
    (b"\xfe\xff", "utf-16-be"),
)

_BUSY_ERRNOS = {errno.EBUSY, errno.EAGAIN}


@dataclass(frozen=True)
class StatusFileText:
    """Decoded content of one status file."""

    path: Path
    text: str
    encoding: str
    digest: str


ReadResult = Union[StatusFileText, FileUnavailable]


def register_platform_encoding(platform: str, encoding: str) -> None:
    """Register the codec a platform's bot writes without a BOM."""
    codecs.lookup(encoding)
    _PLATFORM_ENCODINGS[platform.upper()] = encoding


def platform_encoding(platform: Optional[str]) -> str:
    if not platform:
        return DEFAULT_ENCODING
    return _PLATFORM_ENCODINGS.get(platform.upper(), DEFAULT_ENCODING)


def platform_from_path(path: Path) -> Optional[str]:
    """Guess the platform from a file name such as ``IPTRADECSV2MT5.csv``."""
    name = Path(path).name.upper()
    for candidate in ("CTRADER", "NINJATRADER", "MT5", "MT4"):
        if candidate in name:
            return candidate
    return None


def detect_encoding(raw: bytes, platform: Optional[str] = None) -> Tuple[str, int]:
    """Return ``(codec, bom_length)`` for ``raw``.

    A platform registered as UTF-16 whose file holds no NUL byte was written
    in 8-bit mode and falls back to the default code page.
    """
    for bom, codec in _BOM_ENCODINGS:
        if raw.startswith(bom):
            return codec, len(bom)
    codec = platform_encoding(platform)
    if codec.startswith("utf-16") and raw and b"\x00" not in raw:
        return DEFAULT_ENCODING, 0
    return codec, 0


def decode_status_bytes(raw: bytes, path: Path, platform: Optional[str] = None) -> Tuple[str, str]:
    """Decode raw status-file bytes; raises DecodeError."""
    codec, skip = detect_encoding(raw, platform)
    body = raw[skip:]
    if codec.startswith("utf-16") and len(body) % 2:
        # bot caught mid-write; the trailing odd byte is dropped
        logger.debug("odd byte count in %s, trimming last byte", path)
        body = body[:-1]
    try:
        return body.decode(codec), codec
    except UnicodeDecodeError as e:
        raise DecodeError(path, codec, str(e))


def read_status_file(path: Path, platform: Optional[str] = None) -> ReadResult:
    """Read and decode one status file.

    Returns StatusFileText on success or FileUnavailable when the file is
    missing, locked or unreadable. Raises DecodeError when the bytes do not
    match the expected encoding.
    """
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return FileUnavailable(path=path, reason="missing")
    except IsADirectoryError:
        return FileUnavailable(path=path, reason="missing", detail="path is a directory")
    except PermissionError as e:
        # Windows reports a file held open by the terminal as EACCES
        return FileUnavailable(path=path, reason="permission", detail=str(e))
    except OSError as e:
        if e.errno in _BUSY_ERRNOS:
            return FileUnavailable(path=path, reason="busy", detail=str(e))
        raise

    text, codec = decode_status_bytes(raw, path, platform or platform_from_path(path))
    digest = hashlib.sha256(raw).hexdigest()
    return StatusFileText(path=path, text=text, encoding=codec, digest=digest)


__all__ = [
    "StatusFileText",
    "ReadResult",
    "register_platform_encoding",
    "platform_encoding",
    "platform_from_path",
    "detect_encoding",
    "decode_status_bytes",
    "read_status_file",
]
