"""
Persisted failover state.

The state document is the only thing shared between the monitor process and
operator actions, and the single source of truth for what the alias points
to. Writes replace the whole document atomically (temp file + os.replace);
read-modify-write sequences run under an exclusive flock on a sibling lock
file so only one mutator proceeds at a time.
"""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from .config import FailoverConfig
from .errors import ConfigMissing, StateCorrupt
from .providers import DnsRecordRef
from .utils import now_iso


class Side(str, Enum):
    PRIMARY = "primary"
    BACKUP = "backup"

    @property
    def other(self) -> "Side":
        return Side.BACKUP if self is Side.PRIMARY else Side.PRIMARY


@dataclass(frozen=True)
class FailoverState:
    config: FailoverConfig
    active_side: Side = Side.PRIMARY
    consecutive_failures: int = 0
    consecutive_recoveries: int = 0
    last_transition_timestamp: Optional[str] = None
    records: Dict[str, DnsRecordRef] = field(default_factory=dict)
    revision: int = 0
    updated_at: Optional[str] = None

    def evolve(self, **changes) -> "FailoverState":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'active_side': self.active_side.value,
            'consecutive_failures': self.consecutive_failures,
            'consecutive_recoveries': self.consecutive_recoveries,
            'last_transition_timestamp': self.last_transition_timestamp,
            'revision': self.revision,
            'updated_at': self.updated_at,
            'active_ip': self.config.ip_for(self.active_side),
            'primary_ip': self.config.primary_ip,
            'backup_ip': self.config.backup_ip,
            'config': self.config.to_dict(),
            'records': {key: ref.to_dict() for key, ref in self.records.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FailoverState":
        try:
            return cls(
                config=FailoverConfig.from_dict(data['config']),
                active_side=Side(data.get('active_side', Side.PRIMARY.value)),
                consecutive_failures=int(data.get('consecutive_failures', 0)),
                consecutive_recoveries=int(data.get('consecutive_recoveries', 0)),
                last_transition_timestamp=data.get('last_transition_timestamp'),
                records={key: DnsRecordRef.from_dict(ref) for key, ref in (data.get('records') or {}).items()},
                revision=int(data.get('revision', 0)),
                updated_at=data.get('updated_at'),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateCorrupt(f"Invalid state document: {e}") from e


class StateStore:
    def __init__(self, path: str):
        self.path = path
        self.lock_path = f"{path}.lock"
        self._lock_fd: Optional[int] = None
        self._lock_depth = 0

    def exists(self) -> bool:
        return os.path.exists(self.path)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Exclusive lock across processes. Re-entrant within this store."""
        if self._lock_depth:
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
            return

        directory = os.path.dirname(self.lock_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            self._lock_fd = fd
            self._lock_depth = 1
            try:
                yield
            finally:
                self._lock_depth = 0
                self._lock_fd = None
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def load(self) -> FailoverState:
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigMissing(f"No failover state at {self.path} - run setup first")
        except ValueError as e:
            raise StateCorrupt(f"Unreadable state document {self.path}: {e}") from e
        return FailoverState.from_dict(data)

    def _write(self, state: FailoverState) -> None:
        directory = os.path.dirname(self.path) or '.'
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix='.state-', suffix='.tmp', dir=directory)
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def save(self, state: FailoverState) -> FailoverState:
        """Unconditional write (setup). Returns the state as written."""
        with self.locked():
            try:
                current_revision = self.load().revision
            except (ConfigMissing, StateCorrupt):
                current_revision = 0
            written = state.evolve(revision=current_revision + 1, updated_at=now_iso())
            self._write(written)
            return written

    def compare_and_swap(self, expected_revision: int, state: FailoverState) -> Optional[FailoverState]:
        """
        Write state only if the document is still at expected_revision.

        Returns the state as written (revision bumped), or None when another
        writer got there first.
        """
        with self.locked():
            current = self.load()
            if current.revision != expected_revision:
                return None
            written = state.evolve(revision=expected_revision + 1, updated_at=now_iso())
            self._write(written)
            return written

    def delete(self) -> bool:
        with self.locked():
            try:
                os.unlink(self.path)
                return True
            except FileNotFoundError:
                return False
