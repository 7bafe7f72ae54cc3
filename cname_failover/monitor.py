"""
Monitor loop and process supervision.

One tick: probe the primary, evaluate the state machine, reconcile DNS if a
transition was requested, persist the state. The loop sleeps on an event so
a stop request is honoured within one interval, but never mid-tick: a
half-applied DNS swap is worse than a late stop.

Only one monitor may run per state directory. The PID file is a best-effort
liveness marker, not a lock: a marker whose process is gone is cleared.
"""

import os
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from .errors import ConcurrentStartRejected, ConfigError, FailoverError
from .health import Health, HealthProber
from .machine import commit_transition, evaluate
from .providers import DnsRecordRef
from .reconciler import Reconciler
from .state import Side, StateStore
from .utils import log

STOP_GRACE = 15
START_WAIT = 5

# Monitors spawned by this process, so liveness checks can reap them.
_children: Dict[int, subprocess.Popen] = {}

# -----------------------------
# Liveness marker
# -----------------------------

def pid_alive(pid: int) -> bool:
    proc = _children.get(pid)
    if proc is not None:
        return proc.poll() is None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class PidFile:
    def __init__(self, path: str):
        self.path = path

    def read(self) -> Optional[int]:
        try:
            with open(self.path, 'r') as f:
                return int(f.read().strip())
        except (FileNotFoundError, ValueError):
            return None

    def running_pid(self) -> Optional[int]:
        pid = self.read()
        if pid is not None and pid_alive(pid):
            return pid
        return None

    def clear_stale(self) -> bool:
        """Remove the marker if its process is gone. Returns True if one was removed."""
        if not os.path.exists(self.path) or self.running_pid() is not None:
            return False
        log(f"Removing stale monitor marker {self.path} (PID: {self.read()})", "WARN")
        self._remove()
        return True

    def claim(self, pid: Optional[int] = None) -> None:
        pid = pid or os.getpid()
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        for _ in range(3):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                existing = self.running_pid()
                if existing == pid:
                    return
                if existing is not None:
                    raise ConcurrentStartRejected(existing)
                self.clear_stale()
                continue
            with os.fdopen(fd, 'w') as f:
                f.write(f"{pid}\n")
            return
        raise ConcurrentStartRejected(self.read() or -1)

    def release(self, pid: Optional[int] = None) -> None:
        """Remove the marker, but only if it still names this process."""
        if self.read() == (pid or os.getpid()):
            self._remove()

    def _remove(self) -> None:
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

# -----------------------------
# Monitor loop
# -----------------------------

@dataclass
class TickReport:
    health: Optional[Health] = None
    active_side: Optional[Side] = None
    transition: Optional[Side] = None
    committed: bool = False
    error: Optional[str] = None


class Monitor:
    def __init__(self, store: StateStore, reconciler: Reconciler, prober: HealthProber,
                 pidfile: Optional[PidFile] = None):
        self.store = store
        self.reconciler = reconciler
        self.prober = prober
        self.pidfile = pidfile
        self.stop_event = threading.Event()

    def tick(self) -> TickReport:
        try:
            snapshot = self.store.load()
        except ConfigError as e:
            log(f"Cannot read state: {e}", "ERROR")
            return TickReport(error=str(e))

        cfg = snapshot.config
        health = self.prober.probe(cfg.primary_ip)

        with self.store.locked():
            state = self.store.load()
            decision = evaluate(state, health, cfg.failure_threshold, cfg.recovery_threshold)
            next_state = decision.state
            report = TickReport(health=health, active_side=state.active_side, transition=decision.transition)

            if health == Health.HEALTHY:
                if state.active_side == Side.BACKUP:
                    log(f"Primary healthy ({next_state.consecutive_recoveries}/{cfg.recovery_threshold} towards failback)")
                else:
                    log("Primary healthy")
            elif state.active_side == Side.PRIMARY:
                log(f"Primary health check failed ({next_state.consecutive_failures}/{cfg.failure_threshold})", "WARN")
            else:
                log("Primary still unhealthy, serving from backup", "WARN")

            if decision.transition is not None:
                target = cfg.record_for(decision.transition)
                if decision.transition == Side.BACKUP:
                    log(f"FAILOVER: pointing {cfg.alias} at backup {target}", "WARN")
                else:
                    log(f"FAILBACK: pointing {cfg.alias} at primary {target}")
                result = self.reconciler.point_alias_to(cfg.alias, target, ttl=cfg.ttl)
                if result.ok:
                    next_state = commit_transition(next_state, decision.transition)
                    records = dict(next_state.records)
                    records['alias'] = DnsRecordRef.from_dict(result.data['record'])
                    next_state = next_state.evolve(records=records)
                    report.committed = True
                    report.active_side = decision.transition
                else:
                    log(f"Transition to {decision.transition.value} not applied, will retry: {result.message}", "ERROR")
                    report.error = result.message

            if self.store.compare_and_swap(state.revision, next_state) is None:
                log("State changed by another writer during tick, discarding this tick's update", "WARN")

        return report

    def interval(self) -> int:
        try:
            return self.store.load().config.check_interval
        except ConfigError:
            return 30

    def stop(self) -> None:
        self.stop_event.set()

    def _install_signal_handlers(self) -> None:
        def shutdown(signum, frame):
            log("Shutdown signal received, finishing current tick")
            self.stop()

        signal.signal(signal.SIGTERM, shutdown)
        signal.signal(signal.SIGINT, shutdown)

    def run(self) -> None:
        """Run until stop() or SIGTERM/SIGINT. Raises ConcurrentStartRejected if another monitor is live."""
        if self.pidfile is not None:
            self.pidfile.claim()
        if threading.current_thread() is threading.main_thread():
            self._install_signal_handlers()

        try:
            snapshot = self.store.load()
            cfg = snapshot.config
            log(f"Starting monitor for {cfg.alias}")
            log(f"  Primary: {cfg.primary_record} ({cfg.primary_ip}), Backup: {cfg.backup_record} ({cfg.backup_ip})")
            log(f"  Active: {snapshot.active_side.value}, Check interval: {cfg.check_interval}s, "
                f"Fail threshold: {cfg.failure_threshold}, Recovery threshold: {cfg.recovery_threshold}")

            while not self.stop_event.is_set():
                try:
                    self.tick()
                except Exception as e:
                    log(f"Error in monitor loop: {e}", "ERROR")
                if self.stop_event.is_set():
                    break
                self.stop_event.wait(self.interval())
        finally:
            if self.pidfile is not None:
                self.pidfile.release()
            log("Monitor stopped")

# -----------------------------
# Supervision
# -----------------------------

def is_running(pid_path: str) -> bool:
    return PidFile(pid_path).running_pid() is not None


def start_monitor(pid_path: str, log_path: str, env: Optional[Dict[str, str]] = None) -> int:
    """
    Spawn `python -m cname_failover run` as a detached session.

    Returns the child PID once it has claimed the marker.
    """
    pidfile = PidFile(pid_path)
    existing = pidfile.running_pid()
    if existing is not None:
        raise ConcurrentStartRejected(existing)
    pidfile.clear_stale()

    directory = os.path.dirname(log_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    child_env = os.environ.copy()
    child_env.update(env or {})

    with open(log_path, 'a') as out:
        proc = subprocess.Popen(
            [sys.executable, '-m', 'cname_failover', 'run'],
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=subprocess.STDOUT,
            env=child_env,
            preexec_fn=os.setsid,  # survive the invoking shell
        )
    _children[proc.pid] = proc
    log(f"Monitor starting (PID: {proc.pid}), log: {log_path}")

    deadline = time.monotonic() + START_WAIT
    while time.monotonic() < deadline:
        if proc.poll() is not None:
            # lost a race with another start: the winner holds the marker
            winner = pidfile.running_pid()
            if winner is not None and winner != proc.pid:
                raise ConcurrentStartRejected(winner)
            raise FailoverError(f"Monitor exited immediately (code {proc.returncode}), see {log_path}")
        if pidfile.read() == proc.pid:
            return proc.pid
        time.sleep(0.1)
    log(f"Monitor has not claimed {pid_path} yet", "WARN")
    return proc.pid


def stop_monitor(pid_path: str, timeout: float) -> Optional[int]:
    """
    Ask the monitor to stop and wait for it to finish its current tick.

    Returns the stopped PID, or None if no monitor was running.
    """
    pidfile = PidFile(pid_path)
    pid = pidfile.running_pid()
    if pid is None:
        pidfile.clear_stale()
        return None

    log(f"Stopping monitor (PID: {pid})...")
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pidfile.release(pid)
        return pid

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline and pid_alive(pid):
        time.sleep(0.2)

    if pid_alive(pid):
        log(f"Monitor didn't stop within {timeout:.0f}s, sending SIGKILL", "WARN")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc = _children.get(pid)
        if proc is not None:
            proc.wait()
    else:
        log("Monitor stopped gracefully")

    _children.pop(pid, None)
    pidfile.release(pid)
    return pid
