"""
Endpoint state store and PBX reachability state machine.
States per endpoint: AVAILABLE, UNAVAILABLE, UNKNOWN (compared by equality only).
The store is owned by the monitor and mutated only by the transition detector (single writer).
"""
import copy
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class EndpointState(Enum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    UNKNOWN = "Unknown"


@dataclass
class EndpointRecord:
    current_state: EndpointState
    last_changed_at: datetime
    consecutive_fetch_failures: int = 0


class StateStore:
    """Last observed state per endpoint. At most one record per endpoint; records are never deleted."""

    def __init__(self) -> None:
        self._records: dict[str, EndpointRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._records

    def get(self, endpoint: str) -> Optional[EndpointRecord]:
        return self._records.get(endpoint)

    def known_ids(self) -> list[str]:
        return sorted(self._records)

    def records(self) -> dict[str, EndpointRecord]:
        """Deep copy of all records, for inspection without exposing the live objects."""
        return copy.deepcopy(self._records)

    def upsert(self, endpoint: str, new_state: EndpointState, observed_at: datetime) -> bool:
        """
        Record an observation. Returns True only when a known endpoint changed state.
        First observation seeds the record and returns False.
        """
        rec = self._records.get(endpoint)
        if rec is None:
            self._records[endpoint] = EndpointRecord(current_state=new_state, last_changed_at=observed_at)
            return False
        if rec.current_state == new_state:
            return False
        rec.current_state = new_state
        rec.last_changed_at = observed_at
        return True

    def record_fetch_failure(self, endpoint: str) -> int:
        """Count one more consecutive miss. Returns the new count (0 for unknown endpoints)."""
        rec = self._records.get(endpoint)
        if rec is None:
            return 0
        rec.consecutive_fetch_failures += 1
        return rec.consecutive_fetch_failures

    def reset_fetch_failure(self, endpoint: str) -> None:
        rec = self._records.get(endpoint)
        if rec is not None:
            rec.consecutive_fetch_failures = 0


class Reachability(Enum):
    UP = "up"
    DOWN = "down"


class PbxReachability:
    """
    UP/DOWN state machine for the PBX management interface, driven by whole-cycle fetch outcomes.
    DOWN is entered after `threshold` consecutive failed cycles; first success afterwards goes back UP.
    threshold == 0 disables the machine (it stays UP).
    """

    def __init__(self, threshold: int) -> None:
        self.threshold = max(0, int(threshold))
        self._state = Reachability.UP
        self._failures = 0

    @property
    def state(self) -> Reachability:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def record_success(self) -> tuple[Reachability, bool]:
        """Returns (previous_state, should_notify_reachable_again)."""
        prev = self._state
        self._failures = 0
        self._state = Reachability.UP
        return (prev, prev == Reachability.DOWN)

    def record_failure(self) -> tuple[Reachability, bool]:
        """Returns (previous_state, should_notify_unreachable). Notifies once per outage."""
        prev = self._state
        self._failures += 1
        if self.threshold and prev == Reachability.UP and self._failures >= self.threshold:
            self._state = Reachability.DOWN
            return (prev, True)
        return (prev, False)
