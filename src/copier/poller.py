"""Poll loop tying the reader, reconciler, registry and notifier together.

``AccountPoller`` is the single owner of the engine state. External layers
(the FastAPI server, scripts, tests) construct one and pass it around; there
is no module-level instance.

Cycle:

1. discover new status files and read every watched file concurrently;
2. wait for the batch: each wave of ``read_workers`` reads gets
   ``read_timeout``, and a read still running after that counts as
   unavailable for this cycle;
3. fold the batch into the reconciler in one step;
4. for every tracked API key, recompute its view and publish a change event
   when the diff is non-empty. Keys are tracked while they have subscribers
   or were used within ``key_idle_timeout``; a key nobody configured and that
   has no registry document is not tracked just because it made a request.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import asdict, fields
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..bridge import status_writer
from ..bridge.status_reader import read_status_file
from .config import CopierSettings
from .errors import (
    AccountNotFound,
    ConfigNotWritten,
    CopierError,
    EncodeError,
    FileUnavailable,
    RegistryCorrupt,
    RegistryNotFound,
    mask_api_key,
)
from .logging_utils import append_signed_audit, log_structured
from .notifier import ChangeEvent, ChangeNotifier
from .reconciler import (
    MASTER,
    PENDING,
    SLAVE,
    AccountReconciler,
    AccountSnapshot,
    AccountState,
    AccountView,
    CycleInput,
    SlaveSettings,
)
from .registry import RegistryStore


logger = logging.getLogger(__name__)

INITIAL_IMPORT_KEY = "initial_account_import"

MASTER_CONFIG_FIELDS = ("name", "prefix", "suffix")
SLAVE_CONFIG_FIELDS = tuple(f.name for f in fields(SlaveSettings))


class AccountPoller:
    def __init__(
        self,
        settings: CopierSettings,
        *,
        registry: Optional[RegistryStore] = None,
        notifier: Optional[ChangeNotifier] = None,
        reconciler: Optional[AccountReconciler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.registry = registry or RegistryStore(settings.registry_dir)
        self.notifier = notifier or ChangeNotifier()
        self.reconciler = reconciler or AccountReconciler(
            settings.activity_timeout,
            pending_visibility_window=settings.pending_visibility_window,
            clock=clock,
        )
        self._watched: Dict[str, Optional[str]] = {}
        self._active_keys: Dict[str, float] = {}
        self._inflight: Dict[str, Future] = {}
        self._executor = ThreadPoolExecutor(max_workers=settings.read_workers, thread_name_prefix="status-read")
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles = 0

    # ------------------------------------------------------------------
    # Watched files
    # ------------------------------------------------------------------
    def watch(self, path: Path, platform: Optional[str] = None) -> None:
        with self._state_lock:
            self._watched[str(Path(path))] = platform

    def forget_file(self, path: Path) -> Optional[List[str]]:
        """Stop watching ``path`` and drop its snapshots.

        Returns the removed snapshot keys, or None when ``path`` was neither
        watched nor the source of a snapshot. A file that still exists is
        picked up again by the next discovery.
        """
        key = str(Path(path))
        with self._state_lock:
            watched = key in self._watched
            self._watched.pop(key, None)
            removed = self.reconciler.forget_file(key)
        if not watched and not removed:
            return None
        self._publish_all()
        return [f"{p}:{a}" for p, a in removed]

    def watched_files(self) -> List[str]:
        with self._state_lock:
            return sorted(self._watched)

    def discover(self) -> List[Path]:
        """Add status files matching the configured glob; returns new paths."""
        folder = Path(self.settings.status_dir)
        if not folder.exists():
            return []
        found = []
        with self._state_lock:
            for p in sorted(folder.rglob(self.settings.status_glob)):
                if p.is_file() and str(p) not in self._watched:
                    self._watched[str(p)] = None
                    found.append(p)
        for p in found:
            logger.info("watching status file %s", p)
        return found

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    def _read_one(self, path: str, platform: Optional[str]) -> CycleInput:
        try:
            return read_status_file(Path(path), platform)
        except CopierError as e:
            return e

    def _read_all(self) -> Dict[str, CycleInput]:
        with self._state_lock:
            watched = dict(self._watched)

        results: Dict[str, CycleInput] = {}
        futures: Dict[Future, str] = {}
        for path, platform in watched.items():
            prior = self._inflight.get(path)
            if prior is not None and not prior.done():
                # previous read still hung; never read a file concurrently with itself
                results[path] = FileUnavailable(path=Path(path), reason="busy", detail="previous read still running")
                continue
            fut = self._executor.submit(self._read_one, path, platform)
            self._inflight[path] = fut
            futures[fut] = path

        # queued reads only start once a worker frees up
        waves = max(math.ceil(len(futures) / self.settings.read_workers), 1)
        batch_timeout = self.settings.read_timeout * waves
        done, not_done = wait(futures, timeout=batch_timeout)
        for fut in done:
            path = futures[fut]
            try:
                results[path] = fut.result()
            except OSError as e:
                logger.warning("reading %s failed: %s", path, e)
                results[path] = FileUnavailable(path=Path(path), reason="busy", detail=str(e))
        for fut in not_done:
            path = futures[fut]
            logger.warning("reading %s timed out after %.1fs", path, batch_timeout)
            results[path] = FileUnavailable(path=Path(path), reason="timeout")
        return results

    def poll_once(self, now: Optional[float] = None) -> Dict[str, AccountSnapshot]:
        """Run one full cycle; returns the snapshot set keyed ``platform:id``."""
        with self._cycle_lock:
            started = time.monotonic()
            self.discover()
            reads = self._read_all()
            with self._state_lock:
                snapshots = self.reconciler.apply_cycle(reads, now)
            self.cycles += 1

            unavailable = sum(1 for r in reads.values() if isinstance(r, FileUnavailable))
            errors = sum(1 for r in reads.values() if isinstance(r, CopierError))
            log_structured(
                logger,
                "copier.poll.cycle",
                level=logging.DEBUG,
                cycle=self.cycles,
                files=len(reads),
                unavailable=unavailable,
                errors=errors,
                accounts=len(snapshots),
                elapsed_ms=round((time.monotonic() - started) * 1000, 1),
            )

            self._publish_all()
            return {f"{p}:{a}": s for (p, a), s in snapshots.items()}

    # ------------------------------------------------------------------
    # Per-key views
    # ------------------------------------------------------------------
    def _entry(self, api_key: str):
        try:
            return self.registry.load(api_key)
        except RegistryNotFound:
            return None

    def get_snapshot(self, api_key: str) -> List[AccountState]:
        """Current accounts with effective copier status for ``api_key``."""
        entry = self._entry(api_key)
        with self._state_lock:
            return self.reconciler.states(entry.copier_status if entry else None)

    def get_view(self, api_key: str, now: Optional[float] = None) -> AccountView:
        entry = self._entry(api_key)
        with self._state_lock:
            return self.reconciler.build_view(
                entry.copier_status if entry else None,
                entry.connections if entry else None,
                now=now,
            )

    def on_change(self, api_key: str, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Subscribe to change events for ``api_key``; returns an unsubscribe function."""
        self.activate(api_key)
        return self.notifier.subscribe(api_key, callback)

    def activate(self, api_key: str) -> None:
        """Start tracking ``api_key`` even without subscribers."""
        with self._state_lock:
            self._active_keys[api_key] = self.clock()

    def touch(self, api_key: str) -> bool:
        """Refresh the idle timer of ``api_key``; returns whether it is tracked.

        A key that is not tracked yet is only picked up when it is one of the
        configured keys or already owns a registry document.
        """
        with self._state_lock:
            if api_key in self._active_keys:
                self._active_keys[api_key] = self.clock()
                return True
        if api_key in self.settings.api_keys or self.registry.exists(api_key):
            self.activate(api_key)
            return True
        return False

    def active_keys(self) -> List[str]:
        with self._state_lock:
            return sorted(self._active_keys)

    def _expire_keys(self) -> None:
        cutoff = self.clock() - self.settings.key_idle_timeout
        with self._state_lock:
            idle = [
                k for k, seen in self._active_keys.items()
                if seen < cutoff and self.notifier.subscriber_count(k) == 0
            ]
            for k in idle:
                del self._active_keys[k]
        for k in idle:
            logger.info("stopped tracking idle api key %s", mask_api_key(k))

    def _publish_all(self) -> None:
        self._expire_keys()
        for api_key in self.active_keys():
            try:
                self._publish(api_key)
            except RegistryCorrupt as e:
                logger.error("not publishing for %s: %s", mask_api_key(api_key), e)

    def _publish(self, api_key: str) -> Optional[ChangeEvent]:
        states = self.get_snapshot(api_key)
        self._sync_registry(api_key, [s.snapshot for s in states])
        current = {s.key: s.to_dict() for s in states}
        return self.notifier.publish(api_key, current)

    def _sync_registry(self, api_key: str, snapshots: List[AccountSnapshot]) -> None:
        if not snapshots:
            return
        if self.registry.mark_once(api_key, INITIAL_IMPORT_KEY):
            logger.info("importing %d accounts into registry for %s", len(snapshots), mask_api_key(api_key))
        self.registry.record_accounts(api_key, snapshots)

    # ------------------------------------------------------------------
    # CONFIG write-back
    # ------------------------------------------------------------------
    def _require(self, account_id: str, role: str) -> List[AccountSnapshot]:
        with self._state_lock:
            snaps = self.reconciler.find(account_id, role)
        if not snaps:
            raise AccountNotFound(f"{role}:{account_id}")
        return snaps

    def _write_config(self, snap: AccountSnapshot, write: Callable[[Path], Path]) -> bool:
        path = Path(snap.source_file_path)
        problem = status_writer.check_writable(path)
        if problem is not None:
            logger.info("not updating CONFIG in %s: %s", path, problem.reason)
            return False
        try:
            write(path)
        except EncodeError:
            raise
        except (OSError, CopierError) as e:
            logger.warning("could not update CONFIG in %s: %s", path, e)
            return False
        return True

    def _reload(self, paths: Iterable[str]) -> None:
        """Re-read rewritten files so the snapshot set reflects them now."""
        reads: Dict[str, CycleInput] = {}
        for path in paths:
            with self._state_lock:
                platform = self._watched.get(path)
            try:
                reads[path] = self._read_one(path, platform)
            except OSError as e:
                reads[path] = FileUnavailable(path=Path(path), reason="busy", detail=str(e))
        if reads:
            with self._state_lock:
                self.reconciler.apply_cycle(reads)

    def _rewrite(self, snaps: Iterable[AccountSnapshot], write: Callable[[AccountSnapshot, Path], Path], required: bool = False) -> List[str]:
        written = [s.source_file_path for s in snaps if self._write_config(s, lambda p, s=s: write(s, p))]
        self._reload(written)
        if required and not written:
            raise ConfigNotWritten("no status file could be updated")
        return written

    def _states(self, api_key: str, account_id: str) -> List[AccountState]:
        return [s for s in self.get_snapshot(api_key) if s.snapshot.account_id == account_id]

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def set_enabled(self, api_key: str, account_id: str, role: str, enabled: bool) -> List[AccountState]:
        """Switch copying on/off for a master or slave account.

        The registry switch is authoritative; when ``write_through`` is set
        the bot's CONFIG line is rewritten too so the bot itself stops.
        """
        role = role.upper()
        if role == MASTER:
            self.registry.set_master_enabled(api_key, account_id, enabled)
        elif role == SLAVE:
            self.registry.set_slave_enabled(api_key, account_id, enabled)
        else:
            raise ValueError(f"role must be MASTER or SLAVE, got {role!r}")
        self.activate(api_key)

        with self._state_lock:
            targets = self.reconciler.find(account_id, role)
        if self.settings.write_through:
            self._rewrite(targets, lambda s, p: status_writer.write_config_enabled(p, enabled, s.platform))

        self._audit("set_enabled", api_key, account_id=account_id, role=role, enabled=bool(enabled))
        self._publish_all()
        return [s for s in self._states(api_key, account_id) if s.snapshot.role == role]

    def set_global_status(self, api_key: str, enabled: bool) -> bool:
        entry = self.registry.set_global_status(api_key, enabled)
        self.activate(api_key)
        self._audit("set_global_status", api_key, enabled=bool(enabled))
        self._publish_all()
        return entry.copier_status.global_status

    def emergency_shutdown(self, api_key: str) -> List[str]:
        """Turn the global switch and every master switch off."""
        return self._switch_all(api_key, False, "emergency_shutdown")

    def reset_all_on(self, api_key: str) -> List[str]:
        """Turn the global switch and every master switch back on."""
        return self._switch_all(api_key, True, "reset_all_on")

    def _switch_all(self, api_key: str, enabled: bool, action: str) -> List[str]:
        with self._state_lock:
            targets = [s for s in self.reconciler.snapshots() if s.role in (MASTER, SLAVE)]
        masters = {s.account_id for s in targets if s.role == MASTER}

        def _apply(entry) -> List[str]:
            entry.copier_status.global_status = enabled
            for master_id in masters | set(entry.copier_status.master_accounts):
                entry.copier_status.master_accounts[master_id] = enabled
            return sorted(entry.copier_status.master_accounts)

        affected = self.registry.update(api_key, _apply)
        self.activate(api_key)
        if self.settings.write_through:
            self._rewrite(targets, lambda s, p: status_writer.write_config_enabled(p, enabled, s.platform))
        self._audit(action, api_key, enabled=enabled, masters=affected)
        self._publish_all()
        return affected

    def convert_to_master(self, api_key: str, account_id: str, name: Optional[str] = None) -> List[AccountState]:
        """Ask the bot of a pending account to run as a master.

        The bot switches its TYPE line once it reads the new CONFIG line, so
        the returned states keep the PENDING role until then.
        """
        targets = self._require(account_id, PENDING)
        written = self._rewrite(
            targets,
            lambda s, p: status_writer.write_master_config(p, True, name=name, platform=s.platform),
            required=True,
        )
        self.registry.set_master_enabled(api_key, account_id, True)
        self.activate(api_key)
        self._audit("convert_to_master", api_key, account_id=account_id, files=written)
        self._publish_all()
        return self._states(api_key, account_id)

    def convert_to_slave(self, api_key: str, account_id: str, master_id: str, enabled: bool = False, **settings: Any) -> List[AccountState]:
        """Ask the bot of a pending account to copy ``master_id``.

        ``settings`` take the slave CONFIG fields (lot_multiplier, force_lot,
        reverse_trading, master_file_path, prefix, suffix). A new slave starts
        disabled unless ``enabled`` is given.
        """
        self._check_fields(settings, SLAVE_CONFIG_FIELDS, exclude=("master_id",))
        targets = self._require(account_id, PENDING)
        master = self._require(master_id, MASTER)

        def _write(snap: AccountSnapshot, path: Path) -> Path:
            values = dict(settings)
            values.setdefault("master_file_path", self._master_path(master, snap.platform))
            return status_writer.write_slave_config(path, enabled, platform=snap.platform, master_id=master_id, **values)

        written = self._rewrite(targets, _write, required=True)
        self.registry.connect_slave(api_key, account_id, master_id)
        self.registry.set_slave_enabled(api_key, account_id, enabled)
        self.activate(api_key)
        self._audit("convert_to_slave", api_key, account_id=account_id, master_id=master_id, files=written)
        self._publish_all()
        return self._states(api_key, account_id)

    def update_master_config(self, api_key: str, account_id: str, **changes: Any) -> List[AccountState]:
        """Change a master's name, prefix or suffix in its CONFIG line."""
        self._check_fields(changes, MASTER_CONFIG_FIELDS)
        targets = self._require(account_id, MASTER)

        def _write(snap: AccountSnapshot, path: Path) -> Path:
            values = {"name": snap.name, "prefix": snap.prefix, "suffix": snap.suffix}
            values.update(changes)
            return status_writer.write_master_config(path, snap.enabled, platform=snap.platform, **values)

        written = self._rewrite(targets, _write, required=True)
        self.activate(api_key)
        self._audit("update_master_config", api_key, account_id=account_id, changes=changes, files=written)
        self._publish_all()
        return self._states(api_key, account_id)

    def update_slave_config(self, api_key: str, account_id: str, **changes: Any) -> List[AccountState]:
        """Change a slave's lot, reverse, master and symbol settings in its CONFIG line."""
        self._check_fields(changes, SLAVE_CONFIG_FIELDS)
        targets = self._require(account_id, SLAVE)
        masters = self._require(changes["master_id"], MASTER) if changes.get("master_id") else None

        def _write(snap: AccountSnapshot, path: Path) -> Path:
            values = asdict(snap.slave_settings or SlaveSettings())
            values.update(changes)
            if "master_id" in changes and "master_file_path" not in changes:
                values["master_file_path"] = self._master_path(masters, snap.platform) if masters else None
            return status_writer.write_slave_config(path, snap.enabled, platform=snap.platform, **values)

        written = self._rewrite(targets, _write, required=True)
        if "master_id" in changes:
            if changes["master_id"]:
                self.registry.connect_slave(api_key, account_id, changes["master_id"])
            else:
                self.registry.disconnect_slave(api_key, account_id)
        self.activate(api_key)
        self._audit("update_slave_config", api_key, account_id=account_id, changes=changes, files=written)
        self._publish_all()
        return self._states(api_key, account_id)

    def connect_slave(self, api_key: str, slave_id: str, master_id: str) -> List[AccountState]:
        """Link a slave to a master in the registry (and its CONFIG line with write-through)."""
        slaves = self._require(slave_id, SLAVE)
        master = self._require(master_id, MASTER)
        self.registry.connect_slave(api_key, slave_id, master_id)
        self.activate(api_key)
        if self.settings.write_through:
            self._rewrite(slaves, lambda s, p: self._write_link(s, p, master_id, self._master_path(master, s.platform)))
        self._audit("connect_slave", api_key, account_id=slave_id, master_id=master_id)
        self._publish_all()
        return self._states(api_key, slave_id)

    def disconnect_slave(self, api_key: str, slave_id: str) -> Optional[str]:
        """Drop a slave's master link; returns the master it was linked to."""
        slaves = self._require(slave_id, SLAVE)
        previous = self.registry.disconnect_slave(api_key, slave_id)
        linked = [s for s in slaves if s.linked_master_id]
        previous = previous or next((s.linked_master_id for s in linked), None)
        self.activate(api_key)
        if self.settings.write_through:
            self._rewrite(linked, lambda s, p: self._write_link(s, p, None, None))
        self._audit("disconnect_slave", api_key, account_id=slave_id, master_id=previous)
        self._publish_all()
        return previous

    def _write_link(self, snap: AccountSnapshot, path: Path, master_id: Optional[str], master_path: Optional[str]) -> Path:
        values = asdict(snap.slave_settings or SlaveSettings())
        values.update(master_id=master_id, master_file_path=master_path)
        return status_writer.write_slave_config(path, snap.enabled, platform=snap.platform, **values)

    @staticmethod
    def _master_path(masters: List[AccountSnapshot], platform: str) -> str:
        same_platform = [m for m in masters if m.platform == platform]
        return (same_platform or masters)[0].source_file_path

    @staticmethod
    def _check_fields(values: Dict[str, Any], allowed: Iterable[str], exclude: Iterable[str] = ()) -> None:
        allowed = set(allowed) - set(exclude)
        unknown = sorted(set(values) - allowed)
        if unknown:
            raise ValueError(f"unknown config fields: {', '.join(unknown)}")

    def unlink(self, api_key: str, platform: str, account_id: str) -> Optional[AccountSnapshot]:
        """Remove one snapshot and its registry record.

        With ``write_through`` the bot's CONFIG line is reset to PENDING so
        the account comes back as a pending account on its next write.
        """
        with self._state_lock:
            snap = self.reconciler.unlink(platform, account_id)
            others = [s for s in self.reconciler.find(account_id) if s.platform != platform.upper()]
        if snap is not None and not others:
            self.registry.remove_account(api_key, account_id)
        if snap is not None and self.settings.write_through and snap.role != PENDING:
            self._write_config(snap, lambda p: status_writer.convert_to_pending(p, snap.platform))
        self._audit("unlink", api_key, account_id=account_id, platform=platform.upper(), found=snap is not None)
        self._publish_all()
        return snap

    def merge_platforms(self, api_key: str, account_id: str, keep_platform: str) -> List[str]:
        """Collapse same-file snapshots of ``account_id`` onto ``keep_platform``."""
        with self._state_lock:
            try:
                removed = self.reconciler.merge_platforms(account_id, keep_platform)
            except KeyError:
                raise AccountNotFound(f"{keep_platform.upper()}:{account_id}")
        keys = [f"{p}:{a}" for p, a in removed]
        self._audit("merge_platforms", api_key, account_id=account_id, keep_platform=keep_platform.upper(), removed=keys)
        self._publish_all()
        return keys

    def _audit(self, action: str, api_key: str, **payload: Any) -> None:
        log_structured(logger, f"copier.{action}", api_key=mask_api_key(api_key), **payload)
        if self.settings.audit_log is None:
            return
        entry = {"module": "copier.poller", "event": action, "api_key": mask_api_key(api_key)}
        entry.update(payload)
        append_signed_audit(entry, audit_log=self.settings.audit_log, hmac_key=self.settings.hmac_key)

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------
    def run_forever(self) -> None:
        """Poll until stop() is called; a running cycle always completes."""
        logger.info(
            "status poller started (dir=%s interval=%.1fs timeout=%.1fs)",
            self.settings.status_dir, self.settings.poll_interval, self.settings.activity_timeout,
        )
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("poll cycle failed")
            self._stop_event.wait(self.settings.poll_interval)
        logger.info("status poller stopped after %d cycles", self.cycles)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="status-poller", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=False)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["AccountPoller", "INITIAL_IMPORT_KEY"]
