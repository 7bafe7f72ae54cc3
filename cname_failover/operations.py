"""
Operator-facing operations.

Each operation returns an OperationResult and never exits the process;
what to do with a failure is the caller's decision. Mutating operations
run under the state lock, so a manual switch and a monitor tick never
reconcile at the same time.
"""

import os
from typing import Any, Dict, Optional

from .config import Settings
from .errors import (
    ConcurrentStartRejected, ConfigError, FailoverError, OperationResult, ProviderError,
)
from .health import HealthProber
from .machine import commit_transition
from .monitor import STOP_GRACE, Monitor, PidFile, start_monitor, stop_monitor
from .providers import DNSProvider, DnsRecordRef, build_provider
from .reconciler import Reconciler
from .state import FailoverState, Side, StateStore
from .utils import log


class FailoverController:
    def __init__(self, settings: Settings, provider: Optional[DNSProvider] = None,
                 prober: Optional[HealthProber] = None):
        self.settings = settings
        self.provider = provider or build_provider(settings)
        self.prober = prober or HealthProber(settings.probe_methods, settings.probe_port)
        self.store = StateStore(settings.state_file)
        self.pidfile = PidFile(settings.pid_file)

    def reconciler(self, ttl: Optional[int] = None) -> Reconciler:
        return Reconciler(self.provider, ttl=ttl or self.settings.dns_ttl,
                          attempts=self.settings.reconcile_attempts,
                          backoff=self.settings.reconcile_backoff)

    def monitor(self) -> Monitor:
        return Monitor(self.store, self.reconciler(), self.prober, self.pidfile)

    # -----------------------------
    # Setup / cleanup
    # -----------------------------

    def setup(self) -> OperationResult:
        """Create both host records and the alias, then write the initial state."""
        try:
            cfg = self.settings.failover_config()
            cfg.validate()
        except ConfigError as e:
            return OperationResult.from_error(e)

        running = self.pidfile.running_pid()
        if running is not None:
            return OperationResult.fatal(f"Monitor is running (PID: {running}), stop it before setup")

        with self.store.locked():
            try:
                records = self.reconciler(cfg.ttl).create_initial_topology(
                    cfg.alias, cfg.primary_record, cfg.primary_ip, cfg.backup_record, cfg.backup_ip)
            except FailoverError as e:
                log(f"Setup failed: {e}", "ERROR")
                return OperationResult.from_error(e)

            state = self.store.save(FailoverState(config=cfg, records=records))

        log(f"Initialized {cfg.alias} -> {cfg.primary_record} ({cfg.primary_ip}), backup {cfg.backup_record} ({cfg.backup_ip})")
        return OperationResult.success(f"{cfg.alias} now points to {cfg.primary_record}", state=state.to_dict())

    def cleanup(self) -> OperationResult:
        """Stop the monitor, delete the managed records and the state document."""
        self.stop()

        with self.store.locked():
            try:
                cfg = self.store.load().config
            except ConfigError as e:
                log(f"{e}; cleaning up records named by the current settings", "WARN")
                cfg = self.settings.failover_config()

            failed = self.reconciler().delete_topology(cfg)
            if failed:
                return OperationResult.retryable(f"Could not delete records: {', '.join(failed)}; state kept")
            self.store.delete()

        log(f"Removed failover records and state for {cfg.alias}")
        return OperationResult.success(f"Removed {cfg.alias} failover")

    # -----------------------------
    # Monitor lifecycle
    # -----------------------------

    def start(self) -> OperationResult:
        try:
            self.settings.validate()
            cfg = self.store.load().config
        except ConfigError as e:
            return OperationResult.from_error(e)

        env = {'STATE_DIR': os.path.abspath(self.settings.state_dir)}
        try:
            pid = start_monitor(self.settings.pid_file, self.settings.log_file, env=env)
        except ConcurrentStartRejected as e:
            log(str(e), "WARN")
            return OperationResult.fatal(str(e), pid=e.pid)
        except (FailoverError, OSError) as e:
            log(f"Failed to start monitor: {e}", "ERROR")
            return OperationResult.fatal(f"Failed to start monitor: {e}")

        return OperationResult.success(f"Monitoring {cfg.alias} every {cfg.check_interval}s", pid=pid)

    def stop(self) -> OperationResult:
        try:
            interval = self.store.load().config.check_interval
        except ConfigError:
            interval = self.settings.check_interval

        pid = stop_monitor(self.settings.pid_file, timeout=interval + STOP_GRACE)
        if pid is None:
            return OperationResult.success("Monitor not running")
        return OperationResult.success(f"Monitor stopped (PID: {pid})", pid=pid)

    def is_running(self) -> bool:
        return self.pidfile.running_pid() is not None

    # -----------------------------
    # Manual switch / status
    # -----------------------------

    def manual_switch(self, side: Side) -> OperationResult:
        """Point the alias at side now, regardless of health. Re-pointing the active side repairs the alias."""
        side = Side(side)
        with self.store.locked():
            try:
                state = self.store.load()
            except ConfigError as e:
                return OperationResult.from_error(e)

            cfg = state.config
            target = cfg.record_for(side)
            log(f"Manual switch: pointing {cfg.alias} at {side.value} {target}")
            result = self.reconciler(cfg.ttl).point_alias_to(cfg.alias, target)
            if not result.ok:
                log(f"Manual switch failed, state unchanged: {result.message}", "ERROR")
                return result

            if side != state.active_side:
                next_state = commit_transition(state, side)
            else:
                next_state = state.evolve(consecutive_failures=0, consecutive_recoveries=0)
            records = dict(next_state.records)
            records['alias'] = DnsRecordRef.from_dict(result.data['record'])
            written = self.store.compare_and_swap(state.revision, next_state.evolve(records=records))
            if written is None:
                return OperationResult.retryable("State changed during switch, check status")

        return OperationResult.success(f"{cfg.alias} now points to {target}", state=written.to_dict())

    def status(self) -> OperationResult:
        """Persisted state, monitor liveness, live DNS and a one-off probe of both sides."""
        try:
            state = self.store.load()
        except ConfigError as e:
            return OperationResult.from_error(e)

        cfg = state.config
        data: Dict[str, Any] = {
            'alias': cfg.alias,
            'state': state.to_dict(),
            'monitor': {'running': self.is_running(), 'pid': self.pidfile.running_pid()},
            'health': {
                'primary': self.prober.probe_detailed(cfg.primary_ip).to_dict(),
                'backup': self.prober.probe_detailed(cfg.backup_ip).to_dict(),
            },
        }

        try:
            data['dns'] = {
                'record_id': self.provider.find_record(cfg.alias, 'CNAME'),
                'target': self.provider.get_content(cfg.alias, 'CNAME'),
                'expected': cfg.record_for(state.active_side),
            }
            data['dns']['in_sync'] = data['dns']['target'] == data['dns']['expected']
        except ProviderError as e:
            log(f"Could not read live DNS: {e}", "WARN")
            data['dns'] = {'error': str(e), 'expected': cfg.record_for(state.active_side)}

        return OperationResult.success(f"{cfg.alias} -> {state.active_side.value}", **data)
