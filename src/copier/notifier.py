"""Diff-driven change events for account views.

The decision to emit is diff-based, but every event carries the complete
current account list, so a subscriber that receives the same event twice (a
reconnecting SSE client replaying its backlog) simply re-applies the same
state.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from .errors import mask_api_key


logger = logging.getLogger(__name__)

EVENT_ACCOUNTS_UPDATED = "accounts_updated"
MAX_RECENT_EVENTS = 50

# fields whose change is reported as a detail change
_DETAIL_FIELDS = ("role", "linked_master_id", "name", "platform", "source_file_path")

AccountMap = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class SnapshotDiff:
    added: Tuple[str, ...] = ()
    removed: Tuple[str, ...] = ()
    status_changes: Tuple[Tuple[str, Any, Any], ...] = ()
    enablement_changes: Tuple[Tuple[str, Any, Any], ...] = ()
    detail_changes: Tuple[str, ...] = ()

    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.status_changes or self.enablement_changes or self.detail_changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "added": list(self.added),
            "removed": list(self.removed),
            "status_changes": [{"key": k, "from": a, "to": b} for k, a, b in self.status_changes],
            "enablement_changes": [{"key": k, "from": a, "to": b} for k, a, b in self.enablement_changes],
            "detail_changes": list(self.detail_changes),
        }


def _enablement(account: Mapping[str, Any]) -> Tuple[Any, Any]:
    return (account.get("enabled"), account.get("effective_status"))


def diff_snapshots(previous: AccountMap, current: AccountMap) -> SnapshotDiff:
    """Compare two account maps keyed by ``platform:account_id``.

    Heartbeat-only changes (``last_seen_at``, tickets) are not reported.
    """
    added = tuple(sorted(k for k in current if k not in previous))
    removed = tuple(sorted(k for k in previous if k not in current))

    status_changes = []
    enablement_changes = []
    detail_changes = []
    for key in sorted(k for k in current if k in previous):
        old, new = previous[key], current[key]
        if old.get("status") != new.get("status"):
            status_changes.append((key, old.get("status"), new.get("status")))
        if _enablement(old) != _enablement(new):
            enablement_changes.append((key, old.get("effective_status"), new.get("effective_status")))
        if any(old.get(f) != new.get(f) for f in _DETAIL_FIELDS):
            detail_changes.append(key)

    return SnapshotDiff(
        added=added,
        removed=removed,
        status_changes=tuple(status_changes),
        enablement_changes=tuple(enablement_changes),
        detail_changes=tuple(detail_changes),
    )


@dataclass(frozen=True)
class ChangeEvent:
    id: int
    api_key: str
    accounts: Tuple[Mapping[str, Any], ...]
    diff: SnapshotDiff
    type: str = EVENT_ACCOUNTS_UPDATED
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "accounts": [dict(a) for a in self.accounts],
            "diff": self.diff.to_dict(),
        }


Callback = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Keep the last published account map per API key and fan out changes."""

    def __init__(self, max_recent: int = MAX_RECENT_EVENTS) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._last: Dict[str, Dict[str, Mapping[str, Any]]] = {}
        self._subscribers: Dict[str, List[Callback]] = defaultdict(list)
        self._recent: Dict[str, Deque[ChangeEvent]] = defaultdict(lambda: deque(maxlen=max_recent))

    def subscribe(self, api_key: str, callback: Callback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        with self._lock:
            if callback not in self._subscribers[api_key]:
                self._subscribers[api_key].append(callback)
        return lambda: self.unsubscribe(api_key, callback)

    def unsubscribe(self, api_key: str, callback: Callback) -> None:
        with self._lock:
            callbacks = self._subscribers.get(api_key)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)

    def subscriber_count(self, api_key: str) -> int:
        with self._lock:
            return len(self._subscribers.get(api_key, ()))

    def publish(self, api_key: str, current: AccountMap) -> Optional[ChangeEvent]:
        """Diff ``current`` against the last published map and emit if non-empty."""
        with self._lock:
            previous = self._last.get(api_key, {})
            diff = diff_snapshots(previous, current)
            if diff.is_empty():
                return None
            self._last[api_key] = dict(current)
            event = ChangeEvent(
                id=next(self._ids),
                api_key=api_key,
                accounts=tuple(current[k] for k in sorted(current)),
                diff=diff,
            )
            self._recent[api_key].append(event)
            callbacks = list(self._subscribers.get(api_key, ()))

        logger.info(
            "accounts changed for %s: +%d -%d status=%d enablement=%d",
            mask_api_key(api_key), len(diff.added), len(diff.removed),
            len(diff.status_changes), len(diff.enablement_changes),
        )
        for cb in callbacks:
            try:
                cb(event)
            except Exception:
                logger.exception("change subscriber for %s failed", mask_api_key(api_key))
        return event

    def recent(self, api_key: str, after_id: Optional[int] = None) -> List[ChangeEvent]:
        """Buffered events for ``api_key`` newer than ``after_id``."""
        with self._lock:
            events = list(self._recent.get(api_key, ()))
        if after_id is None:
            return events
        return [e for e in events if e.id > after_id]


__all__ = [
    "EVENT_ACCOUNTS_UPDATED",
    "SnapshotDiff",
    "ChangeEvent",
    "ChangeNotifier",
    "diff_snapshots",
]
