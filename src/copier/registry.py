"""JSON-backed account registry, one document per API key.

Each document holds the accounts last seen for that user, the slave→master
connections and the copier switches. Every mutation is a full-document
read-modify-write:

- writes for the same API key are serialized by an in-process lock;
- writes for different keys run in parallel;
- two *processes* writing the same key are not coordinated and the last
  writer wins. The desktop app runs a single server process, so this is
  accepted rather than locked against.

A document that fails to parse raises ``RegistryCorrupt`` for that key only
and is left on disk untouched for manual repair.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

from .errors import RegistryCorrupt, RegistryNotFound, mask_api_key
from .reconciler import MASTER, PENDING, SLAVE, AccountSnapshot


logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
REGISTRY_VERSION = "2.0"

T = TypeVar("T")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CopierStatus:
    global_status: bool = True
    master_accounts: Dict[str, bool] = field(default_factory=dict)
    slave_accounts: Dict[str, bool] = field(default_factory=dict)


@dataclass
class RegistryEntry:
    master_accounts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    slave_accounts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    pending_accounts: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    connections: Dict[str, str] = field(default_factory=dict)
    copier_status: CopierStatus = field(default_factory=CopierStatus)
    idempotency_keys: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    created_at: str = ""
    last_activity: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "RegistryEntry":
        """Validate a stored document; raises ValueError on bad structure."""
        if not isinstance(d, dict):
            raise ValueError("registry entry must be an object")

        def _map(name: str) -> Dict[str, Any]:
            value = d.get(name, {})
            if not isinstance(value, dict):
                raise ValueError(f"'{name}' must be an object")
            return dict(value)

        cs = d.get("copier_status", {})
        if not isinstance(cs, dict):
            raise ValueError("'copier_status' must be an object")
        masters = cs.get("master_accounts", {})
        slaves = cs.get("slave_accounts", {})
        if not isinstance(masters, dict) or not isinstance(slaves, dict):
            raise ValueError("copier switches must be objects")
        copier_status = CopierStatus(
            global_status=bool(cs.get("global_status", True)),
            master_accounts={str(k): bool(v) for k, v in masters.items()},
            slave_accounts={str(k): bool(v) for k, v in slaves.items()},
        )

        return cls(
            master_accounts=_map("master_accounts"),
            slave_accounts=_map("slave_accounts"),
            pending_accounts=_map("pending_accounts"),
            connections={str(k): str(v) for k, v in _map("connections").items()},
            copier_status=copier_status,
            idempotency_keys=_map("idempotency_keys"),
            created_at=str(d.get("created_at", "")),
            last_activity=str(d.get("last_activity", "")),
        )


def _account_record(snap: AccountSnapshot) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "platform": snap.platform,
        "name": snap.name or snap.account_id,
        "source_file_path": snap.source_file_path,
    }
    if snap.role == SLAVE and snap.slave_settings is not None:
        record["lot_multiplier"] = snap.slave_settings.lot_multiplier
        record["reverse_trading"] = snap.slave_settings.reverse_trading
    return record


class RegistryStore:
    """Persist RegistryEntry documents under ``base_dir``."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self.base_dir = Path(base_dir or PROJECT_ROOT / "config" / "registry")
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _path(self, api_key: str) -> Path:
        if not api_key:
            raise ValueError("api_key is required")
        digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:32]
        return self.base_dir / f"{digest}.json"

    def _lock(self, api_key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(api_key)
            if lock is None:
                lock = self._locks[api_key] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Raw document access
    # ------------------------------------------------------------------
    def _read(self, api_key: str) -> RegistryEntry:
        path = self._path(api_key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise RegistryNotFound(api_key)
        try:
            doc = json.loads(text)
            return RegistryEntry.from_dict(doc.get("entry") if isinstance(doc, dict) else doc)
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.error("registry document for %s is corrupt: %s", mask_api_key(api_key), e)
            raise RegistryCorrupt(path, str(e))

    def _write(self, api_key: str, entry: RegistryEntry) -> Path:
        path = self._path(api_key)
        doc = {
            "version": REGISTRY_VERSION,
            "api_key_hint": mask_api_key(api_key),
            "entry": entry.to_dict(),
        }
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="w", encoding="utf-8", delete=False, dir=str(self.base_dir), prefix=path.name + ".", suffix=".tmp"
            ) as tf:
                json.dump(doc, tf, ensure_ascii=False, indent=2)
                tf.flush()
                os.fsync(tf.fileno())
                tmp_path = Path(tf.name)
            os.replace(str(tmp_path), str(path))
        except Exception:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            raise
        return path

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def load(self, api_key: str) -> RegistryEntry:
        """Return the stored entry; raises RegistryNotFound or RegistryCorrupt."""
        with self._lock(api_key):
            return self._read(api_key)

    def load_or_create(self, api_key: str) -> RegistryEntry:
        with self._lock(api_key):
            try:
                return self._read(api_key)
            except RegistryNotFound:
                now = _now_iso()
                entry = RegistryEntry(created_at=now, last_activity=now)
                self._write(api_key, entry)
                logger.info("created registry entry for %s", mask_api_key(api_key))
                return entry

    def save(self, api_key: str, entry: RegistryEntry) -> Path:
        """Replace the whole document (last writer wins)."""
        with self._lock(api_key):
            entry.last_activity = _now_iso()
            return self._write(api_key, entry)

    def update(self, api_key: str, mutate: Callable[[RegistryEntry], T]) -> T:
        """Read-modify-write under the key's lock; creates the entry if absent."""
        with self._lock(api_key):
            try:
                entry = self._read(api_key)
            except RegistryNotFound:
                entry = RegistryEntry(created_at=_now_iso())
            result = mutate(entry)
            entry.last_activity = _now_iso()
            self._write(api_key, entry)
            return result

    def exists(self, api_key: str) -> bool:
        """True when a document (readable or not) is stored for ``api_key``."""
        return self._path(api_key).exists()

    # ------------------------------------------------------------------
    # Copier switches
    # ------------------------------------------------------------------
    def set_master_enabled(self, api_key: str, master_id: str, enabled: bool) -> RegistryEntry:
        def _apply(entry: RegistryEntry) -> RegistryEntry:
            entry.copier_status.master_accounts[str(master_id)] = bool(enabled)
            return entry

        return self.update(api_key, _apply)

    def set_slave_enabled(self, api_key: str, slave_id: str, enabled: bool) -> RegistryEntry:
        def _apply(entry: RegistryEntry) -> RegistryEntry:
            entry.copier_status.slave_accounts[str(slave_id)] = bool(enabled)
            return entry

        return self.update(api_key, _apply)

    def set_global_status(self, api_key: str, enabled: bool) -> RegistryEntry:
        def _apply(entry: RegistryEntry) -> RegistryEntry:
            entry.copier_status.global_status = bool(enabled)
            return entry

        return self.update(api_key, _apply)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    def record_accounts(self, api_key: str, snapshots: Iterable[AccountSnapshot]) -> bool:
        """Store the last known account maps; returns True if anything changed.

        Accounts missing from ``snapshots`` are kept: the registry remembers
        accounts until they are removed explicitly.
        """
        snaps = list(snapshots)

        def _apply(entry: RegistryEntry) -> bool:
            before = json.dumps(entry.to_dict(), sort_keys=True)
            for snap in snaps:
                record = _account_record(snap)
                target = {
                    MASTER: entry.master_accounts,
                    SLAVE: entry.slave_accounts,
                    PENDING: entry.pending_accounts,
                }[snap.role]
                buckets = (entry.master_accounts, entry.slave_accounts, entry.pending_accounts)
                existing = next((b[snap.account_id] for b in buckets if snap.account_id in b), {})
                for other in buckets:
                    if other is not target:
                        other.pop(snap.account_id, None)
                record.setdefault("registered_at", existing.get("registered_at") or _now_iso())
                target[snap.account_id] = {**existing, **record}
                if snap.role == SLAVE and snap.linked_master_id:
                    entry.connections[snap.account_id] = snap.linked_master_id
            return json.dumps(entry.to_dict(), sort_keys=True) != before

        with self._lock(api_key):
            try:
                entry = self._read(api_key)
            except RegistryNotFound:
                entry = RegistryEntry(created_at=_now_iso())
            changed = _apply(entry)
            if changed:
                entry.last_activity = _now_iso()
                self._write(api_key, entry)
            return changed

    def register_account(self, api_key: str, snapshot: AccountSnapshot) -> bool:
        return self.record_accounts(api_key, [snapshot])

    def remove_account(self, api_key: str, account_id: str) -> bool:
        def _apply(entry: RegistryEntry) -> bool:
            found = False
            for bucket in (entry.master_accounts, entry.slave_accounts, entry.pending_accounts):
                if bucket.pop(account_id, None) is not None:
                    found = True
            entry.connections.pop(account_id, None)
            for slave_id in [s for s, m in entry.connections.items() if m == account_id]:
                del entry.connections[slave_id]
            entry.copier_status.master_accounts.pop(account_id, None)
            entry.copier_status.slave_accounts.pop(account_id, None)
            return found

        return self.update(api_key, _apply)

    def connect_slave(self, api_key: str, slave_id: str, master_id: str) -> None:
        def _apply(entry: RegistryEntry) -> None:
            entry.connections[str(slave_id)] = str(master_id)

        self.update(api_key, _apply)

    def disconnect_slave(self, api_key: str, slave_id: str) -> Optional[str]:
        return self.update(api_key, lambda entry: entry.connections.pop(str(slave_id), None))

    # ------------------------------------------------------------------
    # Run-once markers
    # ------------------------------------------------------------------
    def mark_once(self, api_key: str, name: str) -> bool:
        """Record ``name`` as run; True only the first time it is recorded."""

        with self._lock(api_key):
            try:
                entry = self._read(api_key)
            except RegistryNotFound:
                entry = RegistryEntry(created_at=_now_iso())
            if name in entry.idempotency_keys:
                return False
            entry.idempotency_keys[name] = {"first_run_at": _now_iso()}
            entry.last_activity = _now_iso()
            self._write(api_key, entry)
            return True


__all__ = [
    "CopierStatus",
    "RegistryEntry",
    "RegistryStore",
    "REGISTRY_VERSION",
]
