"""Tests for snapshot diffing and change events."""
import logging

from src.copier.notifier import ChangeNotifier, diff_snapshots


def _acct(status="ONLINE", effective=True, enabled=True, last_seen=100, role="MASTER"):
    return {
        "key": "MT5:1",
        "account_id": "1",
        "platform": "MT5",
        "role": role,
        "status": status,
        "enabled": enabled,
        "effective_status": effective,
        "last_seen_at": last_seen,
        "linked_master_id": None,
        "name": "1",
        "source_file_path": "a.csv",
    }


def test_diff_detects_added_removed_and_changes():
    prev = {"MT5:1": _acct(), "MT4:2": _acct()}
    cur = {"MT5:1": _acct(status="OFFLINE", effective=False), "MT4:3": _acct()}

    diff = diff_snapshots(prev, cur)
    assert diff.added == ("MT4:3",)
    assert diff.removed == ("MT4:2",)
    assert diff.status_changes == (("MT5:1", "ONLINE", "OFFLINE"),)
    assert diff.enablement_changes == (("MT5:1", True, False),)
    assert not diff.is_empty()


def test_heartbeat_only_change_is_not_a_change():
    diff = diff_snapshots({"MT5:1": _acct(last_seen=100)}, {"MT5:1": _acct(last_seen=101)})
    assert diff.is_empty()


def test_role_change_is_a_detail_change():
    diff = diff_snapshots({"MT5:1": _acct(role="PENDING")}, {"MT5:1": _acct(role="MASTER")})
    assert diff.detail_changes == ("MT5:1",)


def test_publish_emits_once_per_change():
    notifier = ChangeNotifier()
    received = []
    notifier.subscribe("k", received.append)

    first = notifier.publish("k", {"MT5:1": _acct()})
    assert first is not None
    assert first.diff.added == ("MT5:1",)
    for _ in range(5):
        assert notifier.publish("k", {"MT5:1": _acct(last_seen=200)}) is None

    second = notifier.publish("k", {"MT5:1": _acct(status="OFFLINE", effective=False)})
    assert [e.id for e in received] == [first.id, second.id]
    assert second.to_dict()["accounts"][0]["status"] == "OFFLINE"


def test_keys_are_isolated():
    notifier = ChangeNotifier()
    a, b = [], []
    notifier.subscribe("a", a.append)
    notifier.subscribe("b", b.append)
    notifier.publish("a", {"MT5:1": _acct()})
    assert len(a) == 1
    assert b == []


def test_failing_subscriber_does_not_block_others(caplog):
    notifier = ChangeNotifier()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    notifier.subscribe("k", broken)
    notifier.subscribe("k", received.append)
    with caplog.at_level(logging.ERROR):
        notifier.publish("k", {"MT5:1": _acct()})
    assert len(received) == 1
    assert "change subscriber" in caplog.text


def test_unsubscribe():
    notifier = ChangeNotifier()
    received = []
    unsubscribe = notifier.subscribe("k", received.append)
    assert notifier.subscriber_count("k") == 1
    unsubscribe()
    assert notifier.subscriber_count("k") == 0
    notifier.publish("k", {"MT5:1": _acct()})
    assert received == []


def test_recent_buffer_is_bounded():
    notifier = ChangeNotifier(max_recent=3)
    ids = []
    for i in range(6):
        status = "ONLINE" if i % 2 == 0 else "OFFLINE"
        ids.append(notifier.publish("k", {"MT5:1": _acct(status=status)}).id)

    recent = notifier.recent("k")
    assert [e.id for e in recent] == ids[-3:]
    assert [e.id for e in notifier.recent("k", after_id=ids[-2])] == [ids[-1]]
    assert recent[-1].accounts[0]["status"] == "OFFLINE"
