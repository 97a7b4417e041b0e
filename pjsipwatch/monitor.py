"""
Asyncio scheduler: one cycle (fetch -> diff -> notify) per poll_interval boundary.
Cycles never overlap. A failed fetch skips the cycle and leaves the store untouched.
Shutdown is checked at cycle boundaries, so deliveries in flight finish (bounded by their timeouts).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

from pjsipwatch.config import MonitorConfig
from pjsipwatch.detector import TransitionEvent, diff
from pjsipwatch.fetch import AriFetcher, CliFetcher, FetchError, build_fetcher
from pjsipwatch.notify import NotifyResult, SlackNotifier
from pjsipwatch.state import PbxReachability, StateStore

logger = logging.getLogger("pjsipwatch.monitor")


@dataclass
class CycleReport:
    """Outcome of one cycle."""
    fetch_error: Optional[FetchError] = None
    events: list[TransitionEvent] = field(default_factory=list)
    results: list[tuple[TransitionEvent, NotifyResult]] = field(default_factory=list)

    @property
    def fetched(self) -> bool:
        return self.fetch_error is None

    @property
    def undelivered(self) -> list[tuple[TransitionEvent, NotifyResult]]:
        return [(e, r) for e, r in self.results if not r.delivered]


@dataclass
class MonitorState:
    config: MonitorConfig
    fetcher: AriFetcher | CliFetcher
    notifier: SlackNotifier
    store: StateStore = field(default_factory=StateStore)
    reachability: Optional[PbxReachability] = None
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)
    cycles: int = 0

    def __post_init__(self) -> None:
        if self.reachability is None:
            self.reachability = PbxReachability(self.config.fetch_alert_threshold)


def request_shutdown(state: MonitorState) -> None:
    """Stop after the current cycle; no new cycle is started."""
    state.shutdown.set()


async def send_message(state: MonitorState, text: str) -> NotifyResult:
    result = await state.notifier.send_text(text)
    if not result.delivered:
        logger.error(
            "Message not delivered (%s after %d attempt(s)): %s",
            result.error.kind.value,
            result.attempts,
            result.error.detail,
        )
    return result


async def run_cycle(state: MonitorState) -> CycleReport:
    """Fetch, diff against the store, deliver one notification per transition."""
    result = await state.fetcher.fetch()
    if not result.ok:
        err = result.error
        logger.warning("Fetch failed (%s): %s", err.kind.value, err.detail)
        _, alert = state.reachability.record_failure()
        if alert:
            await send_message(
                state,
                f"PBX management interface unreachable for {state.reachability.failures} cycles: {err.detail}",
            )
        return CycleReport(fetch_error=err)

    _, recovered = state.reachability.record_success()
    if recovered:
        logger.info("PBX management interface reachable again")
        await send_message(state, "PBX management interface is reachable again.")

    snapshot = result.snapshot
    if state.config.endpoints:
        snapshot = snapshot.restrict(state.config.endpoints)
    events = diff(snapshot, state.store, state.config.debounce_threshold)
    if not events:
        logger.debug("No change detected (%d endpoints)", len(snapshot.states))
        return CycleReport(events=events)

    for ev in events:
        logger.info("%s: %s -> %s", ev.endpoint, ev.previous_state.value, ev.new_state.value)

    results = await state.notifier.notify_all(events)
    for ev, res in results:
        if res.delivered:
            logger.debug("Notified %s (ref %s) in %d attempt(s)", ev.endpoint, ev.ref, res.attempts)
        else:
            logger.error(
                "Notification for %s not delivered (%s after %d attempt(s)): %s",
                ev.endpoint,
                res.error.kind.value,
                res.attempts,
                res.error.detail,
            )
    return CycleReport(events=events, results=results)


async def run_monitor(state: MonitorState) -> None:
    """Run cycles at fixed boundaries until shutdown is requested."""
    loop = asyncio.get_running_loop()
    interval = state.config.poll_interval
    logger.info("Monitor started (source=%s, interval=%.0fs)", state.config.source, interval)
    next_tick = loop.time()
    try:
        while not state.shutdown.is_set():
            try:
                await run_cycle(state)
            except Exception:
                logger.exception("Cycle %d failed", state.cycles + 1)
            state.cycles += 1

            next_tick += interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // interval) + 1
                logger.warning("Cycle overran its slot; skipping %d boundary(ies)", missed)
                next_tick += missed * interval
            try:
                await asyncio.wait_for(state.shutdown.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                pass
    except asyncio.CancelledError:
        logger.info("Monitor cancelled")
        raise
    logger.info("Monitor stopped after %d cycle(s)", state.cycles)


async def run(config: MonitorConfig, shutdown: Optional[asyncio.Event] = None, once: bool = False) -> MonitorState:
    """Build clients and run until shutdown (or a single cycle with once=True)."""
    if shutdown is None:
        shutdown = asyncio.Event()
    async with httpx.AsyncClient() as client:
        state = MonitorState(
            config=config,
            fetcher=build_fetcher(config, client),
            notifier=SlackNotifier(client, config, shutdown=shutdown),
            shutdown=shutdown,
        )
        if config.startup_message:
            await send_message(state, config.startup_message)
        if once:
            await run_cycle(state)
            state.cycles += 1
        else:
            await run_monitor(state)
        return state
