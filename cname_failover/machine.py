"""
Hysteresis state machine.

Consumes one probe result for the primary address per tick and emits at
most one transition request. A request is not a fact: active_side only
flips through commit_transition, which the caller applies after the DNS
swap succeeded. If the swap fails, the evaluated state keeps its
accumulated counter so the next tick asks again.
"""

from dataclasses import dataclass
from typing import Optional

from .health import Health
from .state import FailoverState, Side
from .utils import now_iso


@dataclass(frozen=True)
class Decision:
    state: FailoverState
    transition: Optional[Side] = None


def evaluate(state: FailoverState, health: Health,
             failure_threshold: int, recovery_threshold: int) -> Decision:
    failures = state.consecutive_failures
    recoveries = state.consecutive_recoveries
    transition = None

    if health == Health.HEALTHY:
        failures = 0
        if state.active_side == Side.BACKUP:
            recoveries += 1
            if recoveries >= recovery_threshold:
                transition = Side.PRIMARY
        else:
            recoveries = 0
    else:
        recoveries = 0
        if state.active_side == Side.PRIMARY:
            failures += 1
            if failures >= failure_threshold:
                transition = Side.BACKUP
        else:
            # Already on backup: no repeated failover attempts.
            failures = 0

    next_state = state.evolve(consecutive_failures=failures, consecutive_recoveries=recoveries)
    return Decision(next_state, transition)


def commit_transition(state: FailoverState, side: Side) -> FailoverState:
    return state.evolve(
        active_side=side,
        consecutive_failures=0,
        consecutive_recoveries=0,
        last_transition_timestamp=now_iso(),
    )
