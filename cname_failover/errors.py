"""
Error taxonomy and structured operation results.

Probe and provider failures never terminate the process. They surface as
the exceptions below and are turned into an OperationResult by whoever
decides what happens next (the monitor loop keeps ticking, an operator
action reports and returns).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class FailoverError(Exception):
    """Base class for every error raised by cname_failover."""


class ProbeInconclusive(FailoverError):
    """A single probe method could not confirm the host is alive."""


class ProviderError(FailoverError):
    """Transport failure or a response with success != true."""

    def __init__(self, code: Optional[int], message: str):
        super().__init__(f"[{code}] {message}" if code is not None else message)
        self.code = code
        self.message = message


class ConfigError(FailoverError):
    """Invalid settings or record content."""


class ConfigMissing(ConfigError):
    """No setup has been performed for this state directory."""


class StateCorrupt(ConfigError):
    """The persisted state document cannot be parsed."""


class ConcurrentStartRejected(FailoverError):
    """A monitor is already running for this configuration."""

    def __init__(self, pid: int):
        super().__init__(f"Monitor already running (PID: {pid})")
        self.pid = pid


class Outcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"


@dataclass
class OperationResult:
    outcome: Outcome
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @classmethod
    def success(cls, message: str = "", **data) -> "OperationResult":
        return cls(Outcome.SUCCESS, message, data)

    @classmethod
    def retryable(cls, message: str, **data) -> "OperationResult":
        return cls(Outcome.RETRYABLE, message, data)

    @classmethod
    def fatal(cls, message: str, **data) -> "OperationResult":
        return cls(Outcome.FATAL, message, data)

    @classmethod
    def from_error(cls, error: Exception) -> "OperationResult":
        """Map an exception onto the retryable/fatal split."""
        if isinstance(error, ProviderError):
            return cls.retryable(str(error))
        return cls.fatal(str(error))
