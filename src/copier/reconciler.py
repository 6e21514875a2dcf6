"""Turn parsed status files into account snapshots and per-user views.

One ``AccountReconciler`` instance owns the snapshot set for the process. It
is fed one batch of read results per poll cycle and never mixes batches.

Rules applied here:

- the role always comes from the TYPE line; the CONFIG role token is kept as
  ``config_role`` for diagnostics only
- an account is ONLINE only while ``now - last_seen_at < activity_timeout``
- a file with no TYPE line is not an account and contributes nothing
- a snapshot is never dropped because its file vanished or failed to parse;
  it keeps its last values and degrades to OFFLINE
- snapshots are keyed by ``(platform, account_id)`` so an MT4 and an MT5 bot
  reporting the same account id stay separate
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from ..bridge import status_lines
from ..bridge.status_lines import NULL, ParsedStatusFile, StatusRecord, TicketRecord
from ..bridge.status_reader import StatusFileText
from .errors import CopierError, FileUnavailable, MalformedRecord


logger = logging.getLogger(__name__)

ONLINE = "ONLINE"
OFFLINE = "OFFLINE"
PENDING = "PENDING"
MASTER = "MASTER"
SLAVE = "SLAVE"

_PLACEHOLDERS = {"", NULL, "ENABLED", "DISABLED", "ON", "OFF"}

# bots that report milliseconds write 13 digits
_MILLISECOND_THRESHOLD = 10 ** 12

SnapshotKey = Tuple[str, str]
CycleInput = Union[StatusFileText, FileUnavailable, CopierError]


def snapshot_key(platform: str, account_id: str) -> SnapshotKey:
    return (platform.upper(), str(account_id))


def key_str(key: SnapshotKey) -> str:
    return f"{key[0]}:{key[1]}"


def _null_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or value == "" or value.upper() == NULL:
        return None
    return value


def _to_float(value: Optional[str], default: Optional[float] = None) -> Optional[float]:
    value = _null_to_none(value)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class SlaveSettings:
    lot_multiplier: float = 1.0
    force_lot: Optional[float] = None
    reverse_trading: bool = False
    master_id: Optional[str] = None
    master_file_path: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None


@dataclass(frozen=True)
class AccountSnapshot:
    account_id: str
    platform: str
    role: str
    status: str
    last_seen_at: Optional[int]
    enabled: bool
    source_file_path: str
    linked_master_id: Optional[str] = None
    config_role: Optional[str] = None
    reported_state: Optional[str] = None
    name: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    slave_settings: Optional[SlaveSettings] = None
    translations: Tuple[Tuple[str, str], ...] = ()
    tickets: Tuple[TicketRecord, ...] = ()
    content_digest: Optional[str] = None

    @property
    def key(self) -> SnapshotKey:
        return snapshot_key(self.platform, self.account_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["translations"] = dict(self.translations)
        data["tickets"] = [asdict(t) for t in self.tickets]
        return data


def timestamp_seconds(timestamp: int) -> int:
    """Normalise a STATUS timestamp to Unix seconds."""
    if abs(timestamp) >= _MILLISECOND_THRESHOLD:
        return timestamp // 1000
    return timestamp


def compute_status(status: Optional[StatusRecord], now: float, activity_timeout: float) -> str:
    """ONLINE iff a STATUS record exists and is younger than the timeout."""
    if status is None:
        return OFFLINE
    if now - timestamp_seconds(status.timestamp) < activity_timeout:
        return ONLINE
    return OFFLINE


def resolve_enabled(role: str, config: Optional[status_lines.ConfigRecord]) -> bool:
    """Enablement from the CONFIG switch; a missing CONFIG line does not block."""
    if config is None or role == PENDING:
        return True
    return config.detail(0) == "ENABLED"


def _valid_master_id(value: Optional[str]) -> Optional[str]:
    if value is None or value.upper() in _PLACEHOLDERS:
        return None
    return value


def _slave_settings(config: status_lines.ConfigRecord) -> SlaveSettings:
    # [ENABLED] [LOT_MULT] [FORCE_LOT] [REVERSE] [MASTER_ID] [MASTER_PATH] [PREFIX] [SUFFIX]
    d = config.detail
    return SlaveSettings(
        lot_multiplier=_to_float(d(1), 1.0) or 1.0,
        force_lot=_to_float(d(2)),
        reverse_trading=(d(3) or "").upper() == "TRUE",
        master_id=_valid_master_id(_null_to_none(d(4))),
        master_file_path=_null_to_none(d(5)),
        prefix=_null_to_none(d(6)),
        suffix=_null_to_none(d(7)),
    )


def snapshot_from_parsed(
    parsed: ParsedStatusFile,
    *,
    source_path: Union[str, Path],
    now: float,
    activity_timeout: float,
    digest: Optional[str] = None,
) -> Optional[AccountSnapshot]:
    """Build the snapshot for one parsed file, or None when it has no TYPE line."""
    type_rec = parsed.type_record
    if type_rec is None:
        return None

    role = type_rec.role
    config = parsed.config
    if config is not None and config.config_role != role:
        logger.debug(
            "CONFIG role %s disagrees with TYPE role %s for %s, keeping TYPE",
            config.config_role, role, type_rec.account_id,
        )

    name: Optional[str] = None
    prefix: Optional[str] = None
    suffix: Optional[str] = None
    slave: Optional[SlaveSettings] = None
    linked_master: Optional[str] = None

    if role == MASTER:
        # [ENABLED] [NAME] [NULL] [NULL] [NULL] [NULL] [PREFIX] [SUFFIX]
        name = type_rec.account_id
        if config is not None:
            name = _null_to_none(config.detail(1)) or type_rec.account_id
            prefix = _null_to_none(config.detail(6))
            suffix = _null_to_none(config.detail(7))
    elif role == SLAVE and config is not None:
        slave = _slave_settings(config)
        linked_master = slave.master_id
        prefix, suffix = slave.prefix, slave.suffix

    return AccountSnapshot(
        account_id=type_rec.account_id,
        platform=type_rec.platform.upper(),
        role=role,
        status=compute_status(parsed.status, now, activity_timeout),
        last_seen_at=timestamp_seconds(parsed.status.timestamp) if parsed.status else None,
        enabled=resolve_enabled(role, config),
        source_file_path=str(source_path),
        linked_master_id=linked_master,
        config_role=config.config_role if config else None,
        reported_state=parsed.status.state if parsed.status else None,
        name=name,
        prefix=prefix,
        suffix=suffix,
        slave_settings=slave,
        translations=tuple(sorted(parsed.translations.items())),
        tickets=parsed.tickets if role == MASTER else (),
        content_digest=digest,
    )


def refresh_status(snapshot: AccountSnapshot, now: float, activity_timeout: float) -> AccountSnapshot:
    """Recompute ONLINE/OFFLINE from the stored timestamp."""
    if snapshot.last_seen_at is None:
        status = OFFLINE
    else:
        status = ONLINE if now - snapshot.last_seen_at < activity_timeout else OFFLINE
    if status == snapshot.status:
        return snapshot
    return replace(snapshot, status=status)


# ----------------------------------------------------------------------
# Copier switches
# ----------------------------------------------------------------------
def is_explicitly_disabled(snapshot: AccountSnapshot, copier_status: Any) -> bool:
    """True when the registry's copier switches turn this account off.

    ``copier_status`` is a registry ``CopierStatus`` (or None when the user has
    no registry document yet).
    """
    if copier_status is None:
        return False
    if not copier_status.global_status:
        return True
    if snapshot.role == MASTER:
        return copier_status.master_accounts.get(snapshot.account_id) is False
    if snapshot.role == SLAVE:
        return copier_status.slave_accounts.get(snapshot.account_id) is False
    return False


def effective_status(snapshot: AccountSnapshot, copier_status: Any) -> bool:
    """Whether the account should be copy-trading right now."""
    if snapshot.role == PENDING:
        return False
    return (
        snapshot.status == ONLINE
        and snapshot.enabled
        and not is_explicitly_disabled(snapshot, copier_status)
    )


@dataclass(frozen=True)
class AccountState:
    """A snapshot as seen by one API key."""

    snapshot: AccountSnapshot
    effective_status: bool
    explicitly_disabled: bool

    @property
    def key(self) -> str:
        return key_str(self.snapshot.key)

    def to_dict(self) -> Dict[str, Any]:
        data = self.snapshot.to_dict()
        data["key"] = self.key
        data["effective_status"] = self.effective_status
        data["explicitly_disabled"] = self.explicitly_disabled
        return data


@dataclass
class AccountView:
    """Grouped view handed to the HTTP layer."""

    master_accounts: List[Dict[str, Any]] = field(default_factory=list)
    unconnected_slaves: List[Dict[str, Any]] = field(default_factory=list)
    pending_accounts: List[Dict[str, Any]] = field(default_factory=list)
    global_status: bool = True

    def totals(self) -> Dict[str, int]:
        connected = [s for m in self.master_accounts for s in m["connected_slaves"]]
        everyone = self.master_accounts + connected + self.unconnected_slaves + self.pending_accounts
        return {
            "masters": len(self.master_accounts),
            "slaves": len(connected) + len(self.unconnected_slaves),
            "connected_slaves": len(connected),
            "pending": len(self.pending_accounts),
            "online": sum(1 for a in everyone if a["status"] == ONLINE),
            "offline": sum(1 for a in everyone if a["status"] != ONLINE),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master_accounts": self.master_accounts,
            "unconnected_slaves": self.unconnected_slaves,
            "pending_accounts": self.pending_accounts,
            "global_status": self.global_status,
            "totals": self.totals(),
        }


class AccountReconciler:
    """Own the current snapshot set and fold poll-cycle results into it."""

    def __init__(
        self,
        activity_timeout: float,
        *,
        pending_visibility_window: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if activity_timeout <= 0:
            raise ValueError("activity_timeout must be > 0")
        self.activity_timeout = activity_timeout
        self.pending_visibility_window = pending_visibility_window
        self.clock = clock
        self._snapshots: Dict[SnapshotKey, AccountSnapshot] = {}
        self._file_keys: Dict[str, SnapshotKey] = {}
        self._digests: Dict[str, str] = {}
        self._rejected: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    def apply_cycle(self, reads: Mapping[Union[str, Path], CycleInput], now: Optional[float] = None) -> Dict[SnapshotKey, AccountSnapshot]:
        """Fold one complete batch of read results and return the snapshot set."""
        now = self.clock() if now is None else now
        for path, result in reads.items():
            self._apply_one(str(path), result, now)

        for key, snap in list(self._snapshots.items()):
            self._snapshots[key] = refresh_status(snap, now, self.activity_timeout)
        return dict(self._snapshots)

    def _apply_one(self, path: str, result: CycleInput, now: float) -> None:
        if isinstance(result, FileUnavailable):
            logger.debug("status file %s unavailable (%s)", path, result.reason)
            return
        if isinstance(result, CopierError):
            logger.warning("skipping %s this cycle: %s", path, result)
            return

        if self._digests.get(path) == result.digest:
            return
        if self._rejected.get(path) == result.digest:
            return

        try:
            parsed = status_lines.parse_status_text(result.text)
        except MalformedRecord as e:
            logger.warning("skipping %s this cycle: %s", path, e)
            self._rejected[path] = result.digest
            return
        self._rejected.pop(path, None)

        snap = snapshot_from_parsed(
            parsed,
            source_path=path,
            now=now,
            activity_timeout=self.activity_timeout,
            digest=result.digest,
        )
        if snap is None:
            logger.debug("status file %s has no TYPE line, ignoring", path)
            return

        previous_key = self._file_keys.get(path)
        if previous_key is not None and previous_key != snap.key:
            logger.warning(
                "status file %s now reports %s (was %s); keeping both until merged",
                path, key_str(snap.key), key_str(previous_key),
            )
        self._file_keys[path] = snap.key
        self._digests[path] = result.digest
        self._snapshots[snap.key] = snap

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def snapshots(self) -> List[AccountSnapshot]:
        return [self._snapshots[k] for k in sorted(self._snapshots)]

    def get(self, platform: str, account_id: str) -> Optional[AccountSnapshot]:
        return self._snapshots.get(snapshot_key(platform, account_id))

    def find(self, account_id: str, role: Optional[str] = None) -> List[AccountSnapshot]:
        return [
            s for s in self.snapshots()
            if s.account_id == account_id and (role is None or s.role == role)
        ]

    def states(self, copier_status: Any) -> List[AccountState]:
        return [
            AccountState(
                snapshot=s,
                effective_status=effective_status(s, copier_status),
                explicitly_disabled=is_explicitly_disabled(s, copier_status),
            )
            for s in self.snapshots()
        ]

    # ------------------------------------------------------------------
    # Explicit removal
    # ------------------------------------------------------------------
    def forget_file(self, path: Union[str, Path]) -> List[SnapshotKey]:
        """Drop every snapshot sourced from ``path``; returns removed keys."""
        path = str(path)
        removed = [k for k, s in self._snapshots.items() if s.source_file_path == path]
        for key in removed:
            del self._snapshots[key]
        self._file_keys.pop(path, None)
        self._digests.pop(path, None)
        self._rejected.pop(path, None)
        return removed

    def unlink(self, platform: str, account_id: str) -> Optional[AccountSnapshot]:
        key = snapshot_key(platform, account_id)
        snap = self._snapshots.pop(key, None)
        if snap is not None and self._file_keys.get(snap.source_file_path) == key:
            # force a re-read so a still-running bot re-creates the snapshot
            self._digests.pop(snap.source_file_path, None)
        return snap

    def merge_platforms(self, account_id: str, keep_platform: str) -> List[SnapshotKey]:
        """Collapse same-id snapshots that share one file onto ``keep_platform``."""
        keep = self.get(keep_platform, account_id)
        if keep is None:
            raise KeyError(f"no snapshot for {keep_platform}:{account_id}")
        removed = []
        for key, snap in list(self._snapshots.items()):
            if key == keep.key or snap.account_id != account_id:
                continue
            if snap.source_file_path != keep.source_file_path:
                continue
            del self._snapshots[key]
            removed.append(key)
        return removed

    # ------------------------------------------------------------------
    # Grouped view
    # ------------------------------------------------------------------
    def build_view(
        self,
        copier_status: Any = None,
        connections: Optional[Mapping[str, str]] = None,
        now: Optional[float] = None,
    ) -> AccountView:
        """Group accounts into masters (with slaves), unconnected slaves and pending."""
        now = self.clock() if now is None else now
        connections = connections or {}
        states = self.states(copier_status)
        view = AccountView(global_status=copier_status.global_status if copier_status is not None else True)

        masters: Dict[str, List[Dict[str, Any]]] = {}
        for st in states:
            if st.snapshot.role == MASTER:
                entry = st.to_dict()
                entry["connected_slaves"] = []
                entry["total_slaves"] = 0
                view.master_accounts.append(entry)
                masters.setdefault(st.snapshot.account_id, []).append(entry)

        for st in states:
            snap = st.snapshot
            if snap.role == SLAVE:
                entry = st.to_dict()
                master_id = snap.linked_master_id or connections.get(snap.account_id)
                candidates = masters.get(master_id or "", [])
                if not candidates:
                    entry["master_online"] = False
                    view.unconnected_slaves.append(entry)
                    continue
                same_platform = [m for m in candidates if m["platform"] == snap.platform]
                master = (same_platform or candidates)[0]
                entry["master_online"] = master["status"] == ONLINE
                master["connected_slaves"].append(entry)
                master["total_slaves"] += 1
            elif snap.role == PENDING:
                if self._pending_hidden(snap, now):
                    continue
                view.pending_accounts.append(st.to_dict())

        return view

    def _pending_hidden(self, snap: AccountSnapshot, now: float) -> bool:
        if snap.status == ONLINE:
            return False
        if snap.last_seen_at is None:
            return True
        return now - snap.last_seen_at > self.pending_visibility_window


__all__ = [
    "ONLINE",
    "OFFLINE",
    "PENDING",
    "MASTER",
    "SLAVE",
    "SlaveSettings",
    "AccountSnapshot",
    "AccountState",
    "AccountView",
    "AccountReconciler",
    "snapshot_key",
    "key_str",
    "timestamp_seconds",
    "compute_status",
    "resolve_enabled",
    "snapshot_from_parsed",
    "refresh_status",
    "is_explicitly_disabled",
    "effective_status",
]
