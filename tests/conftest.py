"""Shared fixtures: a dry-run zone, a state store and scripted probes."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

import pytest

from cname_failover.config import FailoverConfig, Settings
from cname_failover.errors import ProviderError
from cname_failover.health import Health, ProbeReport
from cname_failover.providers import DryRunProvider
from cname_failover.state import FailoverState, StateStore


class ScriptedProber:
    """Returns a fixed sequence of results for the primary, healthy for anything else."""

    def __init__(self, results: Iterable[Health] = (), primary_ip: str = "203.0.113.10"):
        self.results: List[Health] = list(results)
        self.primary_ip = primary_ip
        self.calls: List[str] = []

    def probe(self, address: str) -> Health:
        self.calls.append(address)
        if address != self.primary_ip:
            return Health.HEALTHY
        return self.results.pop(0) if self.results else Health.HEALTHY

    def probe_detailed(self, address: str) -> ProbeReport:
        health = self.probe(address)
        return ProbeReport(address, health, method="scripted" if health == Health.HEALTHY else None)


class FlakyProvider(DryRunProvider):
    """Dry-run zone whose create/delete can be made to fail."""

    def __init__(self, statefile: str):
        super().__init__(statefile)
        self.fail_create_on: Optional[int] = None
        self.fail_creates = 0
        self.fail_deletes = 0
        self.create_calls: List[tuple] = []

    def create_record(self, name, record_type, content, ttl):
        self.create_calls.append((name, record_type, content))
        if self.fail_create_on is not None and len(self.create_calls) == self.fail_create_on:
            raise ProviderError(1004, "DNS Validation Error")
        if self.fail_creates:
            self.fail_creates -= 1
            raise ProviderError(None, "connection reset")
        return super().create_record(name, record_type, content, ttl)

    def delete_record(self, record_id):
        if self.fail_deletes:
            self.fail_deletes -= 1
            raise ProviderError(None, "timeout")
        return super().delete_record(record_id)


@pytest.fixture
def cfg() -> FailoverConfig:
    return FailoverConfig(
        alias="www.example.com",
        primary_record="www-primary.example.com",
        backup_record="www-backup.example.com",
        primary_ip="203.0.113.10",
        backup_ip="198.51.100.20",
        check_interval=5,
        failure_threshold=2,
        recovery_threshold=3,
        ttl=60,
    )


@pytest.fixture
def provider(tmp_path: Path) -> FlakyProvider:
    return FlakyProvider(str(tmp_path / "zone.json"))


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(str(tmp_path / "state" / "state.json"))


@pytest.fixture
def initial_state(store: StateStore, cfg: FailoverConfig) -> FailoverState:
    return store.save(FailoverState(config=cfg))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    state_dir = tmp_path / "state"
    return Settings(
        provider="dry-run",
        base_domain="example.com",
        alias_name="www",
        primary_record="www-primary",
        backup_record="www-backup",
        primary_ip="203.0.113.10",
        backup_ip="198.51.100.20",
        check_interval=5,
        failure_threshold=2,
        recovery_threshold=3,
        dns_ttl=60,
        state_dir=str(state_dir),
        reconcile_attempts=1,
        reconcile_backoff=0,
        dryrun_statefile=str(tmp_path / "zone.json"),
    )
