"""Tests for the per-API-key JSON registry."""
import json
from pathlib import Path

import pytest

from src.copier.errors import RegistryCorrupt, RegistryNotFound
from src.copier.reconciler import AccountSnapshot, SlaveSettings
from src.copier.registry import REGISTRY_VERSION, RegistryStore


KEY = "iptrade_test_key_0001"


def _snap(account_id: str, role: str = "MASTER", platform: str = "MT5", master: str = None) -> AccountSnapshot:
    return AccountSnapshot(
        account_id=account_id,
        platform=platform,
        role=role,
        status="ONLINE",
        last_seen_at=1756317783,
        enabled=True,
        source_file_path=f"/csv_data/IPTRADECSV2{platform}_{account_id}.csv",
        linked_master_id=master,
        slave_settings=SlaveSettings(lot_multiplier=1.5, master_id=master) if role == "SLAVE" else None,
    )


def test_load_missing_raises_not_found(tmp_path: Path):
    store = RegistryStore(tmp_path)
    with pytest.raises(RegistryNotFound):
        store.load(KEY)
    assert not store.exists(KEY)


def test_load_or_create_writes_document(tmp_path: Path):
    store = RegistryStore(tmp_path)
    entry = store.load_or_create(KEY)
    assert entry.copier_status.global_status is True
    assert entry.created_at

    files = list(tmp_path.glob("*.json"))
    assert len(files) == 1
    # the raw key never lands on disk
    assert KEY not in files[0].name
    doc = json.loads(files[0].read_text(encoding="utf-8"))
    assert doc["version"] == REGISTRY_VERSION
    assert doc["api_key_hint"] == KEY[:8] + "..."
    assert KEY not in files[0].read_text(encoding="utf-8")


def test_switches_persist_across_instances(tmp_path: Path):
    RegistryStore(tmp_path).set_master_enabled(KEY, "52381082", False)
    RegistryStore(tmp_path).set_slave_enabled(KEY, "9001", True)
    RegistryStore(tmp_path).set_global_status(KEY, False)

    status = RegistryStore(tmp_path).load(KEY).copier_status
    assert status.master_accounts == {"52381082": False}
    assert status.slave_accounts == {"9001": True}
    assert status.global_status is False


def test_corrupt_document_is_isolated(tmp_path: Path):
    store = RegistryStore(tmp_path)
    store.load_or_create(KEY)
    store.load_or_create("other_key_0002")

    path = store._path(KEY)
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(RegistryCorrupt):
        store.load(KEY)
    with pytest.raises(RegistryCorrupt):
        store.set_global_status(KEY, False)
    # left untouched for manual repair
    assert path.read_text(encoding="utf-8") == "{not json"
    assert store.load("other_key_0002").copier_status.global_status is True


def test_bad_structure_is_corrupt(tmp_path: Path):
    store = RegistryStore(tmp_path)
    store._path(KEY).write_text(json.dumps({"version": "2.0", "entry": {"connections": []}}), encoding="utf-8")
    with pytest.raises(RegistryCorrupt):
        store.load(KEY)


def test_record_accounts_only_writes_on_change(tmp_path: Path):
    store = RegistryStore(tmp_path)
    snaps = [_snap("100"), _snap("201", role="SLAVE", platform="MT4", master="100")]

    assert store.record_accounts(KEY, snaps) is True
    assert store.record_accounts(KEY, snaps) is False

    entry = store.load(KEY)
    assert set(entry.master_accounts) == {"100"}
    assert entry.slave_accounts["201"]["lot_multiplier"] == 1.5
    assert entry.connections == {"201": "100"}


def test_record_accounts_moves_role(tmp_path: Path):
    store = RegistryStore(tmp_path)
    store.record_accounts(KEY, [_snap("301", role="PENDING", platform="MT4")])
    registered = store.load(KEY).pending_accounts["301"]["registered_at"]

    store.record_accounts(KEY, [_snap("301", role="MASTER", platform="MT4")])
    entry = store.load(KEY)
    assert "301" not in entry.pending_accounts
    assert entry.master_accounts["301"]["registered_at"] == registered


def test_remove_account_drops_links_and_switches(tmp_path: Path):
    store = RegistryStore(tmp_path)
    store.record_accounts(KEY, [_snap("100"), _snap("201", role="SLAVE", platform="MT4", master="100")])
    store.set_master_enabled(KEY, "100", False)

    assert store.remove_account(KEY, "100") is True
    entry = store.load(KEY)
    assert "100" not in entry.master_accounts
    assert entry.connections == {}
    assert entry.copier_status.master_accounts == {}
    assert store.remove_account(KEY, "100") is False


def test_connect_and_disconnect_slave(tmp_path: Path):
    store = RegistryStore(tmp_path)
    store.connect_slave(KEY, "201", "100")
    assert store.load(KEY).connections == {"201": "100"}
    assert store.disconnect_slave(KEY, "201") == "100"
    assert store.disconnect_slave(KEY, "201") is None


def test_mark_once(tmp_path: Path):
    store = RegistryStore(tmp_path)
    assert store.mark_once(KEY, "initial_account_import") is True
    first = store.load(KEY).idempotency_keys["initial_account_import"]["first_run_at"]
    assert first

    assert store.mark_once(KEY, "initial_account_import") is False
    assert store.load(KEY).idempotency_keys["initial_account_import"]["first_run_at"] == first


def test_exists_tracks_document(tmp_path: Path):
    store = RegistryStore(tmp_path)
    assert store.exists(KEY) is False
    store.load_or_create(KEY)
    assert store.exists(KEY) is True


def test_empty_key_rejected(tmp_path: Path):
    with pytest.raises(ValueError):
        RegistryStore(tmp_path).load("")


def test_register_single_account_and_save(tmp_path: Path):
    store = RegistryStore(tmp_path)
    assert store.register_account(KEY, _snap("301", role="PENDING", platform="MT4")) is True

    entry = store.load(KEY)
    entry.connections["999"] = "301"
    store.save(KEY, entry)
    assert RegistryStore(tmp_path).load(KEY).connections == {"999": "301"}
