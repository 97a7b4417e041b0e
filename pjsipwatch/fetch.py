"""
Endpoint snapshot fetchers. One call per cycle, no retries; every failure is returned as a value.

AriFetcher: GET <base>/ari/endpoints/PJSIP over httpx.
CliFetcher: `asterisk -rx "pjsip list endpoints"` via subprocess, output parsed line by line.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

import httpx

from pjsipwatch.config import MonitorConfig
from pjsipwatch.state import EndpointState

logger = logging.getLogger("pjsipwatch.fetch")


class FetchErrorKind(Enum):
    UNREACHABLE = "unreachable"
    PROTOCOL_ERROR = "protocol_error"


@dataclass(frozen=True)
class FetchError:
    kind: FetchErrorKind
    detail: str


@dataclass(frozen=True)
class Snapshot:
    states: dict[str, EndpointState]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def restrict(self, endpoints: Iterable[str]) -> "Snapshot":
        """Keep only the given endpoints (those missing from the PBX stay missing)."""
        wanted = set(endpoints)
        return Snapshot({k: v for k, v in self.states.items() if k in wanted}, self.taken_at)


@dataclass
class FetchResult:
    snapshot: Optional[Snapshot] = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None

    @classmethod
    def failed(cls, kind: FetchErrorKind, detail: str) -> "FetchResult":
        return cls(error=FetchError(kind, detail))


# ARI endpoint "state" values
ARI_STATES = {
    "online": EndpointState.AVAILABLE,
    "offline": EndpointState.UNAVAILABLE,
}


def _ari_auth(credential: str) -> tuple[Optional[httpx.Auth], dict[str, str]]:
    """'user:secret' -> basic auth; anything else non-empty -> bearer token."""
    if not credential:
        return None, {}
    if ":" in credential:
        user, _, secret = credential.partition(":")
        return httpx.BasicAuth(user, secret), {}
    return None, {"Authorization": f"Bearer {credential}"}


def parse_ari_endpoints(data: object) -> dict[str, EndpointState]:
    """
    Parse the JSON body of GET /ari/endpoints/PJSIP.
    Unexpected fields are ignored; a missing 'resource' or 'state' raises ValueError.
    """
    if not isinstance(data, list):
        raise ValueError(f"expected a list of endpoints, got {type(data).__name__}")
    states: dict[str, EndpointState] = {}
    for i, item in enumerate(data):
        if not isinstance(item, dict):
            raise ValueError(f"endpoint #{i} is not an object")
        resource = item.get("resource")
        state = item.get("state")
        if not isinstance(resource, str) or not resource:
            raise ValueError(f"endpoint #{i} has no resource")
        if not isinstance(state, str):
            raise ValueError(f"endpoint {resource} has no state")
        states[resource] = ARI_STATES.get(state.lower(), EndpointState.UNKNOWN)
    return states


class AriFetcher:
    """Asterisk REST Interface source."""

    path = "/ari/endpoints/PJSIP"

    def __init__(self, client: httpx.AsyncClient, base_url: str, credential: str, timeout: float) -> None:
        self.client = client
        self.url = base_url.rstrip("/") + self.path
        self.timeout = timeout
        self._auth, self._headers = _ari_auth(credential)

    async def fetch(self) -> FetchResult:
        try:
            # httpx timeouts apply per connect/read/write step; wait_for bounds the whole call
            resp = await asyncio.wait_for(
                self.client.get(
                    self.url,
                    auth=self._auth if self._auth is not None else httpx.USE_CLIENT_DEFAULT,
                    headers=self._headers,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"timeout after {self.timeout}s")
        except httpx.HTTPError as e:
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"{type(e).__name__}: {e}")
        except httpx.InvalidURL as e:
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"invalid URL: {e}")

        if resp.status_code >= 500:
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"HTTP {resp.status_code}")
        if resp.status_code != 200:
            return FetchResult.failed(FetchErrorKind.PROTOCOL_ERROR, f"HTTP {resp.status_code}")
        try:
            states = parse_ari_endpoints(resp.json())
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            return FetchResult.failed(FetchErrorKind.PROTOCOL_ERROR, str(e))
        logger.debug("ARI listed %d endpoints", len(states))
        return FetchResult(snapshot=Snapshot(states))


# "Endpoint:  500/500      Not in use    0 of inf"
ENDPOINT_LINE = re.compile(r"^Endpoint:\s+(\S+)\s+(.+?)\s+(\d+\s+of\s+(?:inf|\d+))$")
NO_OBJECTS = "No objects found."

CLI_AVAILABLE = {"not in use", "in use", "busy", "ringing", "ring+inuse", "on hold"}


def cli_state(text: str) -> EndpointState:
    t = text.strip().lower()
    if t == "unavailable":
        return EndpointState.UNAVAILABLE
    if t in CLI_AVAILABLE:
        return EndpointState.AVAILABLE
    return EndpointState.UNKNOWN


def parse_pjsip_endpoints(output: str) -> dict[str, EndpointState]:
    """Parse `pjsip list endpoints` output. Header, contact and summary lines are skipped."""
    states: dict[str, EndpointState] = {}
    for line in output.splitlines():
        m = ENDPOINT_LINE.match(line.strip())
        if not m:
            continue
        # Drop the "/CallerID" display part of "500/500"
        name = m.group(1).split("/", 1)[0]
        states[name] = cli_state(m.group(2))
    return states


class CliFetcher:
    """Local asterisk console source."""

    command = "pjsip list endpoints"

    def __init__(self, binary: str, timeout: float) -> None:
        self.binary = binary
        self.timeout = timeout

    async def fetch(self) -> FetchResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                "-rx",
                self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"cannot run {self.binary}: {e}")
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"timeout after {self.timeout}s")

        output = stdout.decode("utf-8", errors="replace")
        if proc.returncode:
            err = stderr.decode("utf-8", errors="replace").strip() or output.strip()
            return FetchResult.failed(FetchErrorKind.UNREACHABLE, f"exit {proc.returncode}: {err[:200]}")
        states = parse_pjsip_endpoints(output)
        if not states and NO_OBJECTS not in output:
            return FetchResult.failed(FetchErrorKind.PROTOCOL_ERROR, "no endpoint lines in output")
        logger.debug("asterisk listed %d endpoints", len(states))
        return FetchResult(snapshot=Snapshot(states))


def build_fetcher(config: MonitorConfig, client: httpx.AsyncClient) -> AriFetcher | CliFetcher:
    if config.source == "cli":
        return CliFetcher(config.asterisk_binary, config.fetch_timeout)
    return AriFetcher(client, config.pbx_base_url, config.pbx_credential, config.fetch_timeout)
