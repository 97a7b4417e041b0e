"""
Slack notifications for endpoint transitions.

Each message is posted to chat.postMessage with a bearer token. A delivery is driven by
DeliveryAttempts (attempt count, next delay, terminal result):
- transient failure (timeout, connection error, 5xx, Slack internal errors): retry with backoff
- rate limited (429 / "ratelimited"): retry after Retry-After when given, else backoff
- rejected (other 4xx, other Slack errors): no retry
- shutdown requested: no further retries, the last transient failure is returned
Deliveries never raise; the caller gets a NotifyResult.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from pjsipwatch.config import DEFAULT_MESSAGE_TEMPLATE, DEFAULT_TIMESTAMP_FORMAT, MonitorConfig
from pjsipwatch.detector import TransitionEvent

logger = logging.getLogger("pjsipwatch.notify")

# Slack "error" values worth retrying
SLACK_TRANSIENT_ERRORS = {"internal_error", "fatal_error", "service_unavailable", "request_timeout"}


class NotifyErrorKind(Enum):
    TRANSIENT = "transient"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class NotifyError:
    kind: NotifyErrorKind
    detail: str


@dataclass
class NotifyResult:
    delivered: bool
    attempts: int
    error: Optional[NotifyError] = None


class Verdict(Enum):
    DELIVERED = "delivered"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AttemptOutcome:
    verdict: Verdict
    detail: str = ""
    retry_after: Optional[float] = None


@dataclass
class DeliveryAttempts:
    """Retry state for one message. `result` is set once the delivery reached a terminal outcome."""

    max_attempts: int
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    attempt: int = 0
    next_delay: float = 0.0
    last_error: Optional[NotifyError] = None
    result: Optional[NotifyResult] = None

    @property
    def done(self) -> bool:
        return self.result is not None

    def backoff(self) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (self.attempt - 1)))

    def abandon(self, reason: str) -> None:
        """Stop retrying; the last transient failure becomes the final result."""
        detail = f"{self.last_error.detail} ({reason})" if self.last_error else reason
        self.result = NotifyResult(False, self.attempt, NotifyError(NotifyErrorKind.TRANSIENT, detail))

    def record(self, outcome: AttemptOutcome) -> None:
        if self.done:
            raise RuntimeError("delivery already finished")
        self.attempt += 1
        if outcome.verdict == Verdict.DELIVERED:
            self.result = NotifyResult(delivered=True, attempts=self.attempt)
            return
        if outcome.verdict == Verdict.REJECTED:
            self.result = NotifyResult(False, self.attempt, NotifyError(NotifyErrorKind.REJECTED, outcome.detail))
            return

        self.last_error = NotifyError(NotifyErrorKind.TRANSIENT, outcome.detail)
        if self.attempt >= self.max_attempts:
            self.result = NotifyResult(False, self.attempt, NotifyError(NotifyErrorKind.EXHAUSTED, outcome.detail))
            return
        if outcome.verdict == Verdict.RATE_LIMITED and outcome.retry_after is not None:
            self.next_delay = min(self.backoff_max, max(0.0, outcome.retry_after))
        else:
            self.next_delay = self.backoff()


def _retry_after(resp: httpx.Response) -> Optional[float]:
    value = resp.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def classify_response(resp: httpx.Response) -> AttemptOutcome:
    status = resp.status_code
    if status == 429:
        return AttemptOutcome(Verdict.RATE_LIMITED, "HTTP 429", _retry_after(resp))
    if status >= 500:
        return AttemptOutcome(Verdict.TRANSIENT, f"HTTP {status}")
    if status >= 400:
        return AttemptOutcome(Verdict.REJECTED, f"HTTP {status}")
    try:
        data = resp.json()
    except ValueError:
        return AttemptOutcome(Verdict.TRANSIENT, f"HTTP {status} with non-JSON body")
    if not isinstance(data, dict):
        return AttemptOutcome(Verdict.TRANSIENT, f"HTTP {status} with unexpected body")
    if data.get("ok"):
        return AttemptOutcome(Verdict.DELIVERED)
    error = str(data.get("error") or "unknown_error")
    if error == "ratelimited":
        return AttemptOutcome(Verdict.RATE_LIMITED, error, _retry_after(resp))
    if error in SLACK_TRANSIENT_ERRORS:
        return AttemptOutcome(Verdict.TRANSIENT, error)
    return AttemptOutcome(Verdict.REJECTED, error)


def format_event(
    event: TransitionEvent,
    template: str = DEFAULT_MESSAGE_TEMPLATE,
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
) -> str:
    return template.format(
        endpoint=event.endpoint,
        previous=event.previous_state.value,
        new=event.new_state.value,
        observed_at=event.observed_at.strftime(timestamp_format),
        ref=event.ref,
    )


class SlackNotifier:
    def __init__(
        self,
        client: httpx.AsyncClient,
        config: MonitorConfig,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        shutdown: Optional[asyncio.Event] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.shutdown = shutdown
        self._sleep = sleep or self._backoff_sleep

    def format_event(self, event: TransitionEvent) -> str:
        return format_event(event, self.config.message_template, self.config.timestamp_format)

    async def notify(self, event: TransitionEvent) -> NotifyResult:
        return await self._deliver(self.format_event(event), event.endpoint)

    async def send_text(self, text: str) -> NotifyResult:
        """Free-form message (startup, PBX reachability) with the same retry policy."""
        return await self._deliver(text, "message")

    async def notify_all(self, events: list[TransitionEvent]) -> list[tuple[TransitionEvent, NotifyResult]]:
        """
        Deliver independent events concurrently (at most notify_concurrency in flight).
        Events for the same endpoint are delivered one after another in the given order.
        Results are returned in the order of `events`.
        """
        sem = asyncio.Semaphore(self.config.notify_concurrency)
        per_endpoint: dict[str, list[int]] = {}
        for i, event in enumerate(events):
            per_endpoint.setdefault(event.endpoint, []).append(i)
        results: list[Optional[NotifyResult]] = [None] * len(events)

        async def deliver_in_order(indexes: list[int]) -> None:
            for i in indexes:
                async with sem:
                    results[i] = await self.notify(events[i])

        await asyncio.gather(*(deliver_in_order(ix) for ix in per_endpoint.values()))
        return [(event, result) for event, result in zip(events, results)]

    async def _deliver(self, text: str, label: str) -> NotifyResult:
        attempts = DeliveryAttempts(
            max_attempts=self.config.notify_retry_max,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
        )
        while True:
            attempts.record(await self._post(text))
            if attempts.done:
                return attempts.result
            if not self._stopping():
                logger.warning(
                    "Delivery for %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    label,
                    attempts.attempt,
                    attempts.max_attempts,
                    attempts.last_error.detail,
                    attempts.next_delay,
                )
                await self._sleep(attempts.next_delay)
            if self._stopping():
                attempts.abandon("shutdown requested")
                logger.warning("Delivery for %s abandoned after %d attempt(s): shutdown requested", label, attempts.attempt)
                return attempts.result

    def _stopping(self) -> bool:
        return self.shutdown is not None and self.shutdown.is_set()

    async def _backoff_sleep(self, delay: float) -> None:
        """Sleep between attempts; returns early when shutdown is requested."""
        if self.shutdown is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(self.shutdown.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _post(self, text: str) -> AttemptOutcome:
        try:
            resp = await asyncio.wait_for(
                self.client.post(
                    self.config.slack_api_url,
                    json={"channel": self.config.slack_channel, "text": text},
                    headers={"Authorization": f"Bearer {self.config.slack_token}"},
                    timeout=self.config.notify_timeout,
                ),
                timeout=self.config.notify_timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return AttemptOutcome(Verdict.TRANSIENT, f"timeout after {self.config.notify_timeout}s")
        except httpx.HTTPError as e:
            return AttemptOutcome(Verdict.TRANSIENT, f"{type(e).__name__}: {e}")
        except httpx.InvalidURL as e:
            return AttemptOutcome(Verdict.REJECTED, f"invalid URL: {e}")
        return classify_response(resp)
