"""
FILE DESCRIPTION: Retry classification, backoff and the per-host circuit breaker.
KEY FUNCTIONS/CLASSES: RetryCoordinator, RetryDecision, parse_retry_after

Host state machine:
    healthy --(any failure)--> degraded --(success)--> healthy
    healthy|degraded --(N resets within W, or error budget spent)--> locked-out
    locked-out --(cooldown elapsed)--> recovering
    recovering --(success)--> healthy
    recovering --(failure)--> locked-out
"""

import random
import socket
import ssl
import time
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Callable, List

import requests

from crawler.config import RetryConfig
from crawler.hosts import HostTable
from crawler.models import HostStatus

logger = logging.getLogger(__name__)

SUCCESS = "success"
RATE_LIMITED = "rate-limited"
SERVER_ERROR = "server-error"
CONNECTION_RESET = "connection-reset"
TIMEOUT = "timeout"
TRANSIENT = "transient"
BLOCKED = "blocked"
PERMANENT = "permanent"

PERMANENT_STATUSES = {400, 401, 403, 404, 410}
DEAD_STATUSES = {404, 410}

# Failure kinds that count against a host's health
_HOST_FAILURES = {RATE_LIMITED, SERVER_ERROR, TIMEOUT, TRANSIENT, BLOCKED}

_RESET_MARKERS = ("econnreset", "connection reset", "socket hang up", "connection aborted",
                  "remotedisconnected", "remote end closed connection")
_DNS_MARKERS = ("enotfound", "name or service not known", "nodename nor servname",
                "getaddrinfo failed", "nameresolutionerror", "failed to resolve")
_REFUSED_MARKERS = ("econnrefused", "connection refused")
_TRANSIENT_MARKERS = ("enetunreach", "network is unreachable", "eai_again", "ehostunreach",
                      "temporary failure in name resolution")


@dataclass(frozen=True)
class RetryDecision:
    retryable: bool
    delay_ms: int
    kind: str
    reason: str
    status: Optional[int] = None


def get_header(headers, name: str):
    """
    Case-insensitive header lookup that works for header objects exposing `.get`
    (e.g. requests' CaseInsensitiveDict) and for plain mappings.
    """
    if headers is None:
        return None
    if hasattr(headers, "get"):
        value = headers.get(name)
        if value is None:
            value = headers.get(name.lower())
        if value is not None:
            return value
    if isinstance(headers, Mapping) or hasattr(headers, "items"):
        wanted = name.lower()
        for key, value in headers.items():
            if str(key).lower() == wanted:
                return value
    return None


def parse_retry_after(headers, now: Optional[datetime] = None) -> Optional[int]:
    """Returns the Retry-After delay in milliseconds (delta-seconds or HTTP-date), or None."""
    raw = get_header(headers, "Retry-After")
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        raw = raw[0] if raw else None
        if raw is None:
            return None
    text = str(raw).strip()
    if not text:
        return None
    try:
        seconds = float(text)
        return max(0, int(seconds * 1000))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, int((when - now).total_seconds() * 1000))


def _error_chain(error: BaseException):
    seen = set()
    stack = [error]
    while stack:
        e = stack.pop()
        if e is None or id(e) in seen:
            continue
        seen.add(id(e))
        yield e
        stack.append(e.__cause__)
        stack.append(e.__context__)
        for arg in getattr(e, "args", ()):
            if isinstance(arg, BaseException):
                stack.append(arg)
        reason = getattr(e, "reason", None)
        if isinstance(reason, BaseException):
            stack.append(reason)


def classify_error(error: BaseException) -> str:
    """Maps a transport exception to an error kind."""
    chain = list(_error_chain(error))
    text = " ".join(f"{type(e).__name__} {e}" for e in chain).lower()

    if any(isinstance(e, (requests.exceptions.SSLError, ssl.SSLError)) for e in chain):
        return PERMANENT
    if any(m in text for m in _DNS_MARKERS) or any(isinstance(e, socket.gaierror) for e in chain):
        return PERMANENT
    if any(isinstance(e, (requests.exceptions.Timeout, TimeoutError, socket.timeout)) for e in chain) \
            or "timed out" in text:
        return TIMEOUT
    if any(isinstance(e, ConnectionResetError) for e in chain) or any(m in text for m in _RESET_MARKERS):
        return CONNECTION_RESET
    if any(isinstance(e, ConnectionRefusedError) for e in chain) or any(m in text for m in _REFUSED_MARKERS):
        return SERVER_ERROR
    if any(m in text for m in _TRANSIENT_MARKERS):
        return TRANSIENT
    return TRANSIENT


class RetryCoordinator:
    """
    FLOW: classify() turns an error or response into a RetryDecision with a backoff delay ->
    record_outcome() feeds every attempt into the host circuit breaker ->
    is_dispatchable() tells the frontier whether a host's entries may be handed out.
    """

    def __init__(self, hosts: HostTable, config: Optional[RetryConfig] = None,
                 rng: Callable[[], float] = random.random, telemetry=None):
        self.hosts = hosts
        self.config = config or RetryConfig()
        self.retryable_statuses = set(self.config.retryable_statuses)
        self.rng = rng
        self.telemetry = telemetry
        self._listeners: List[Callable[[str, HostStatus, HostStatus], None]] = []

    def add_listener(self, fn: Callable[[str, HostStatus, HostStatus], None]):
        self._listeners.append(fn)

    # -------------------------------
    # CLASSIFICATION
    # -------------------------------
    def backoff_ms(self, attempt: int, kind: str = TRANSIENT) -> int:
        cfg = self.config
        base = min(cfg.base_delay_ms * (2 ** max(0, attempt)), cfg.max_delay_ms)
        if kind == SERVER_ERROR:
            base *= 1.5
        elif kind == CONNECTION_RESET:
            base *= 2
        delay = base + base * cfg.jitter * self.rng()
        return int(min(delay, cfg.max_delay_ms))

    def classify(self, error: Optional[BaseException] = None, response=None, attempt: int = 0) -> RetryDecision:
        if response is not None:
            return self._classify_status(response, attempt)
        if error is None:
            return RetryDecision(False, 0, SUCCESS, "no error")

        kind = classify_error(error)
        if kind == PERMANENT:
            return RetryDecision(False, 0, kind, f"permanent transport error: {type(error).__name__}")
        return RetryDecision(True, self.backoff_ms(attempt, kind), kind, f"{kind}: {type(error).__name__}")

    def _classify_status(self, response, attempt: int) -> RetryDecision:
        status = getattr(response, "status_code", None)
        if status is None:
            status = getattr(response, "status", None)
        status = int(status or 0)

        if 200 <= status < 400:
            return RetryDecision(False, 0, SUCCESS, f"status {status}", status)
        if status == 429:
            retry_after = parse_retry_after(getattr(response, "headers", None))
            delay = retry_after if retry_after is not None else self.backoff_ms(attempt, RATE_LIMITED)
            reason = "retry-after header" if retry_after is not None else "backoff"
            return RetryDecision(status in self.retryable_statuses, delay, RATE_LIMITED, reason, status)
        if status in PERMANENT_STATUSES:
            return RetryDecision(False, 0, PERMANENT, f"status {status}", status)
        if status >= 500:
            retryable = status in self.retryable_statuses
            retry_after = parse_retry_after(getattr(response, "headers", None))
            delay = retry_after if retry_after is not None else self.backoff_ms(attempt, SERVER_ERROR)
            return RetryDecision(retryable, delay if retryable else 0, SERVER_ERROR, f"status {status}", status)
        if status in self.retryable_statuses:
            return RetryDecision(True, self.backoff_ms(attempt), TRANSIENT, f"status {status}", status)
        return RetryDecision(False, 0, PERMANENT, f"status {status}", status)

    def should_retry(self, decision: RetryDecision, attempt: int) -> bool:
        """`attempt` is zero-based: the first retry happens after attempt 0."""
        return decision.retryable and attempt < self.config.max_retries

    # -------------------------------
    # HOST CIRCUIT BREAKER
    # -------------------------------
    def record_outcome(self, host: str, outcome) -> HostStatus:
        """
        Feeds one attempt into the host state machine.
        `outcome` is an error kind string, a RetryDecision or a FetchOutcome.
        """
        kind = self._kind_of(outcome)
        cfg = self.config
        transition = None
        with self.hosts.lock:
            st = self.hosts.state(host)
            now = self.hosts.clock()
            if self.hosts.expire_lockout(st):
                transition = (HostStatus.LOCKED_OUT, HostStatus.RECOVERING)
            before = st.status

            if kind == SUCCESS:
                st.consecutive_resets = 0
                st.reset_times.clear()
                if st.status in (HostStatus.DEGRADED, HostStatus.RECOVERING):
                    st.status = HostStatus.HEALTHY
                    st.error_times.clear()
            elif kind == CONNECTION_RESET or kind in _HOST_FAILURES:
                if kind == CONNECTION_RESET:
                    st.consecutive_resets += 1
                    st.reset_times.append(now)
                    self._prune(st.reset_times, now, cfg.reset_window_ms)
                else:
                    st.error_times.append(now)
                    self._prune(st.error_times, now, cfg.host_window_ms)

                if st.status is HostStatus.RECOVERING:
                    self._lock_out(st, now)
                elif st.status is not HostStatus.LOCKED_OUT:
                    if len(st.reset_times) >= cfg.reset_threshold or len(st.error_times) >= cfg.host_max_errors:
                        self._lock_out(st, now)
                    else:
                        st.status = HostStatus.DEGRADED
            after = st.status

        if transition:
            self._notify(host, *transition)
        if after is not before:
            self._notify(host, before, after)
        return after

    def _lock_out(self, st, now):
        st.status = HostStatus.LOCKED_OUT
        st.locked_until = now + self.config.lockout_ms / 1000.0

    @staticmethod
    def _prune(times, now, window_ms):
        horizon = now - window_ms / 1000.0
        while times and times[0] < horizon:
            times.popleft()

    @staticmethod
    def _kind_of(outcome) -> str:
        if isinstance(outcome, str):
            return outcome
        if isinstance(outcome, RetryDecision):
            return outcome.kind
        error_kind = getattr(outcome, "error_kind", None)
        if error_kind is None and getattr(outcome, "ok", False):
            return SUCCESS
        return error_kind or TRANSIENT

    def _notify(self, host, before, after):
        if after is HostStatus.LOCKED_OUT:
            logger.warning(f"[RETRY] Host {host} LOCKED OUT for {self.config.lockout_ms / 1000:.0f}s ({before.value} -> locked-out)")
            if self.telemetry:
                self.telemetry.emit("crawl:host:locked", {"host": host, "from": before.value,
                                                          "cooldown_ms": self.config.lockout_ms}, severity="warning")
        elif before is HostStatus.LOCKED_OUT:
            logger.info(f"[RETRY] Host {host} lockout expired, now {after.value}")
            if self.telemetry:
                self.telemetry.emit("crawl:host:recovered", {"host": host, "status": after.value})
        else:
            logger.debug(f"[RETRY] Host {host} {before.value} -> {after.value}")
        for fn in self._listeners:
            fn(host, before, after)

    def status(self, host: str) -> HostStatus:
        expired = False
        with self.hosts.lock:
            st = self.hosts.state(host)
            expired = self.hosts.expire_lockout(st)
            status = st.status
        if expired:
            self._notify(host, HostStatus.LOCKED_OUT, status)
        return status

    def is_dispatchable(self, host: str) -> bool:
        return self.status(host) is not HostStatus.LOCKED_OUT

    def lockout_remaining(self, host: str) -> float:
        with self.hosts.lock:
            st = self.hosts.state(host)
            if st.status is not HostStatus.LOCKED_OUT or st.locked_until is None:
                return 0.0
            return max(0.0, st.locked_until - self.hosts.clock())

    def wait_ms(self, delay_ms: int, cancel=None) -> bool:
        """Sleeps for a backoff delay; returns False when interrupted by `cancel`."""
        if delay_ms <= 0:
            return not (cancel is not None and cancel.is_set())
        if cancel is None:
            time.sleep(delay_ms / 1000.0)
            return True
        return not cancel.wait(delay_ms / 1000.0)
