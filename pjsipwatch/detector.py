"""
Diff a fresh snapshot against the state store and emit transition events.

- Endpoint in snapshot: seed on first sight (no event), event when its state changed.
- Known endpoint missing from snapshot: counted; after `debounce_threshold` consecutive
  misses it transitions to UNKNOWN once and the counter restarts.
Events are ordered by endpoint name.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime

from pjsipwatch.fetch import Snapshot
from pjsipwatch.state import EndpointState, StateStore


@dataclass(frozen=True)
class TransitionEvent:
    endpoint: str
    previous_state: EndpointState
    new_state: EndpointState
    observed_at: datetime

    @property
    def ref(self) -> str:
        """Stable short id for the same transition, so repeated deliveries can be spotted."""
        key = f"{self.endpoint}|{self.previous_state.value}|{self.new_state.value}|{self.observed_at.isoformat()}"
        return hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


def diff(snapshot: Snapshot, store: StateStore, debounce_threshold: int = 1) -> list[TransitionEvent]:
    threshold = max(1, int(debounce_threshold))
    observed_at = snapshot.taken_at
    events: list[TransitionEvent] = []

    for endpoint in sorted(set(snapshot.states) | set(store.known_ids())):
        rec = store.get(endpoint)
        prev = rec.current_state if rec is not None else None

        if endpoint in snapshot.states:
            new = snapshot.states[endpoint]
            store.reset_fetch_failure(endpoint)
            if store.upsert(endpoint, new, observed_at):
                events.append(TransitionEvent(endpoint, prev, new, observed_at))
            continue

        # Known but missing from this snapshot
        if prev == EndpointState.UNKNOWN:
            store.reset_fetch_failure(endpoint)
            continue
        if store.record_fetch_failure(endpoint) >= threshold:
            store.upsert(endpoint, EndpointState.UNKNOWN, observed_at)
            store.reset_fetch_failure(endpoint)
            events.append(TransitionEvent(endpoint, prev, EndpointState.UNKNOWN, observed_at))

    return events
