"""Runtime settings for the status poller and the accounts server.

Values come from the environment (a ``.env`` file is loaded by the entry
points through python-dotenv). Every setting has a default suited to a
single desktop install where the bots write into ``csv_data/``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple


DEFAULT_STATUS_GLOB = "*IPTRADECSV2*.csv"


@dataclass(frozen=True)
class CopierSettings:
    status_dir: Path = Path("csv_data")
    status_glob: str = DEFAULT_STATUS_GLOB
    registry_dir: Path = Path("config") / "registry"
    activity_timeout: float = 5.0
    poll_interval: float = 1.0
    read_timeout: float = 2.0
    read_workers: int = 4
    pending_visibility_window: float = 3600.0
    key_idle_timeout: float = 3600.0
    api_keys: Tuple[str, ...] = field(default_factory=tuple)
    audit_log: Optional[Path] = None
    hmac_key: Optional[str] = None
    log_level: str = "INFO"
    write_through: bool = True

    def __post_init__(self) -> None:
        if self.activity_timeout <= 0:
            raise ValueError("activity_timeout must be > 0")
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.read_timeout <= 0:
            raise ValueError("read_timeout must be > 0")
        if self.read_workers < 1:
            raise ValueError("read_workers must be >= 1")
        if self.key_idle_timeout <= 0:
            raise ValueError("key_idle_timeout must be > 0")


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _resolve(path_str: str) -> Path:
    path = Path(path_str)
    if path.is_absolute():
        return path
    return Path.cwd() / path


def load_settings(env: Optional[Mapping[str, str]] = None) -> CopierSettings:
    """Build CopierSettings from ``env`` (defaults to ``os.environ``)."""
    env = os.environ if env is None else env

    api_keys = tuple(k.strip() for k in env.get("COPIER_API_KEYS", "").split(",") if k.strip())
    audit = env.get("COPIER_AUDIT_LOG")

    return CopierSettings(
        status_dir=_resolve(env.get("COPIER_STATUS_DIR", "csv_data")),
        status_glob=env.get("COPIER_STATUS_GLOB", DEFAULT_STATUS_GLOB),
        registry_dir=_resolve(env.get("COPIER_REGISTRY_DIR", str(Path("config") / "registry"))),
        activity_timeout=_float(env, "COPIER_ACTIVITY_TIMEOUT", 5.0),
        poll_interval=_float(env, "COPIER_POLL_INTERVAL", 1.0),
        read_timeout=_float(env, "COPIER_READ_TIMEOUT", 2.0),
        read_workers=_int(env, "COPIER_READ_WORKERS", 4),
        pending_visibility_window=_float(env, "COPIER_PENDING_WINDOW", 3600.0),
        key_idle_timeout=_float(env, "COPIER_KEY_IDLE_TIMEOUT", 3600.0),
        api_keys=api_keys,
        audit_log=_resolve(audit) if audit else None,
        hmac_key=env.get("COPIER_HMAC_KEY") or None,
        log_level=env.get("COPIER_LOG_LEVEL", "INFO").upper(),
        write_through=_bool(env, "COPIER_WRITE_THROUGH", True),
    )


__all__ = ["CopierSettings", "DEFAULT_STATUS_GLOB", "load_settings"]
