"""Tests for the persisted state document and StateStore."""
from __future__ import annotations

import json
import os

import pytest

from cname_failover.errors import ConfigMissing, StateCorrupt
from cname_failover.providers import DnsRecordRef
from cname_failover.state import FailoverState, Side, StateStore


def test_load_without_setup_raises_config_missing(store: StateStore):
    with pytest.raises(ConfigMissing):
        store.load()


def test_save_and_load_round_trip_preserves_fields(store: StateStore, cfg):
    state = FailoverState(
        config=cfg,
        active_side=Side.BACKUP,
        consecutive_recoveries=2,
        last_transition_timestamp="2026-01-01T00:00:00+00:00",
        records={"alias": DnsRecordRef("www.example.com", "CNAME", "abc")},
    )
    written = store.save(state)
    loaded = store.load()

    assert written.revision == 1
    assert loaded == written
    assert loaded.records["alias"].id == "abc"


def test_document_carries_denormalized_fields(store: StateStore, cfg, initial_state):
    with open(store.path) as f:
        doc = json.load(f)
    assert doc["active_side"] == "primary"
    assert doc["consecutive_failures"] == 0
    assert doc["consecutive_recoveries"] == 0
    assert doc["last_transition_timestamp"] is None
    assert doc["primary_ip"] == cfg.primary_ip
    assert doc["backup_ip"] == cfg.backup_ip
    assert doc["active_ip"] == cfg.primary_ip
    assert doc["config"]["alias"] == cfg.alias


def test_compare_and_swap_rejects_stale_revision(store: StateStore, initial_state):
    first = store.compare_and_swap(initial_state.revision, initial_state.evolve(consecutive_failures=1))
    assert first is not None
    assert first.revision == initial_state.revision + 1

    stale = store.compare_and_swap(initial_state.revision, initial_state.evolve(consecutive_failures=5))
    assert stale is None
    assert store.load().consecutive_failures == 1


def test_write_leaves_no_temp_files(store: StateStore, initial_state):
    for n in range(5):
        current = store.load()
        store.compare_and_swap(current.revision, current.evolve(consecutive_failures=n))
    leftovers = [name for name in os.listdir(os.path.dirname(store.path)) if name.endswith(".tmp")]
    assert leftovers == []


def test_corrupt_document_raises_state_corrupt(store: StateStore, initial_state):
    with open(store.path, "w") as f:
        f.write("{not json")
    with pytest.raises(StateCorrupt):
        store.load()


def test_lock_is_reentrant(store: StateStore, initial_state):
    with store.locked():
        with store.locked():
            current = store.load()
            assert store.compare_and_swap(current.revision, current) is not None


def test_delete(store: StateStore, initial_state):
    assert store.delete() is True
    assert store.delete() is False
    assert not store.exists()


def test_restart_resumes_from_persisted_counters(tmp_path, cfg):
    path = str(tmp_path / "state.json")
    first = StateStore(path)
    s = first.save(FailoverState(config=cfg))
    first.compare_and_swap(s.revision, s.evolve(consecutive_failures=1))

    # New process, new store object.
    resumed = StateStore(path).load()
    assert resumed.active_side == Side.PRIMARY
    assert resumed.consecutive_failures == 1
