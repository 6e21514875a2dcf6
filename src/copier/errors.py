"""Error taxonomy for status-file reconciliation.

``FileUnavailable`` is a value, not an exception: a missing status file is
the normal state of an account whose bot has not started yet, so readers
return it as a value. Everything else is raised and handled per file by the
poller.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional


class CopierError(Exception):
    """Base class for errors raised by the copier engine."""


class DecodeError(CopierError, ValueError):
    """Raised when a status file's bytes cannot be decoded."""

    def __init__(self, path: Path, encoding: str, reason: str) -> None:
        super().__init__(f"cannot decode {path} as {encoding}: {reason}")
        self.path = Path(path)
        self.encoding = encoding
        self.reason = reason


class EncodeError(CopierError, ValueError):
    """Raised when new CONFIG text cannot be written in the file's encoding."""

    def __init__(self, path: Path, encoding: str, reason: str) -> None:
        super().__init__(f"cannot write {path} as {encoding}: {reason}")
        self.path = Path(path)
        self.encoding = encoding
        self.reason = reason


class MalformedRecord(CopierError, ValueError):
    """Raised when a recognised record line carries an unparseable field."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"malformed record {line!r}: {reason}")
        self.line = line
        self.reason = reason


class AccountNotFound(CopierError, KeyError):
    """No snapshot matches the account an operator action names."""

    def __str__(self) -> str:
        return f"unknown account {self.args[0]}" if self.args else "unknown account"


class ConfigNotWritten(CopierError):
    """An action that only takes effect through the bot's CONFIG line could not write it."""


class RegistryNotFound(CopierError, KeyError):
    """No registry document exists yet for an API key."""

    def __str__(self) -> str:
        return f"no registry entry for api key {mask_api_key(self.args[0]) if self.args else ''}"


class RegistryCorrupt(CopierError):
    """The persisted registry document for one API key cannot be parsed."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"registry document {path} is corrupt: {reason}")
        self.path = Path(path)
        self.reason = reason


@dataclass(frozen=True)
class FileUnavailable:
    """A status file that could not be read this cycle.

    ``reason`` is one of ``missing``, ``busy``, ``permission`` or ``timeout``.
    """

    path: Path
    reason: str
    detail: Optional[str] = None


def mask_api_key(api_key: str) -> str:
    """Shorten an API key for logs and events."""
    if not api_key:
        return "unknown"
    return api_key[:8] + "..."


__all__ = [
    "CopierError",
    "DecodeError",
    "EncodeError",
    "MalformedRecord",
    "AccountNotFound",
    "ConfigNotWritten",
    "RegistryNotFound",
    "RegistryCorrupt",
    "FileUnavailable",
    "mask_api_key",
]
