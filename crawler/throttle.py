import threading
import time
import logging
from typing import Optional

from crawler.hosts import HostTable

logger = logging.getLogger(__name__)

# Longest single wait slice so cancellation is noticed promptly
_WAIT_SLICE = 0.1


class Permit:
    __slots__ = ("host", "acquired_at", "released")

    def __init__(self, host: str, acquired_at: float):
        self.host = host
        self.acquired_at = acquired_at
        self.released = False


class DomainThrottle:
    """
    FLOW: acquire(host) blocks the calling thread until the host has a free concurrency slot
    and the minimum spacing since the previous request start has elapsed -> returns a Permit ->
    release(permit) frees the slot and wakes waiters.

    Only `active_requests`, `last_request_at` and `paused_until` are touched here.
    """

    def __init__(self, hosts: HostTable, min_interval_ms: int = 1000, max_concurrent_per_host: int = 2):
        self.hosts = hosts
        self.min_interval = max(0, min_interval_ms) / 1000.0
        self.max_concurrent = max(1, max_concurrent_per_host)

    def acquire(self, host: str, timeout: Optional[float] = None,
                cancel: Optional[threading.Event] = None) -> Optional[Permit]:
        """Returns a Permit, or None when cancelled or timed out."""
        clock = self.hosts.clock
        deadline = None if timeout is None else time.monotonic() + timeout
        with self.hosts.cond:
            while True:
                if cancel is not None and cancel.is_set():
                    return None
                st = self.hosts.state(host)
                now = clock()
                wait = _WAIT_SLICE
                if st.active_requests < self.max_concurrent:
                    next_allowed = st.paused_until
                    if st.last_request_at is not None:
                        next_allowed = max(next_allowed, st.last_request_at + self.min_interval)
                    if now >= next_allowed:
                        st.active_requests += 1
                        st.last_request_at = now
                        return Permit(host, now)
                    wait = min(wait, next_allowed - now)

                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        logger.debug(f"[THROTTLE] Permit for {host} timed out")
                        return None
                    wait = min(wait, remaining)
                self.hosts.cond.wait(max(wait, 0.001))

    def release(self, permit: Optional[Permit], outcome=None):
        if permit is None:
            return
        with self.hosts.cond:
            if permit.released:
                return
            permit.released = True
            st = self.hosts.state(permit.host)
            st.active_requests = max(0, st.active_requests - 1)
            self.hosts.cond.notify_all()

    def pause_host(self, host: str, seconds: float):
        """Signals all workers for this host to hold off (429 / Retry-After)."""
        if not host:
            return
        with self.hosts.cond:
            st = self.hosts.state(host)
            st.paused_until = max(st.paused_until, self.hosts.clock() + max(0.0, seconds))
            self.hosts.cond.notify_all()
        if seconds > 0:
            logger.warning(f"[THROTTLE] Host {host} rate limited. Setting DOMAIN-WIDE PAUSE for {seconds:.1f}s.")

    def get_remaining_pause(self, host: str) -> float:
        with self.hosts.lock:
            st = self.hosts.state(host)
            return max(0.0, st.paused_until - self.hosts.clock())

    def active(self, host: str) -> int:
        with self.hosts.lock:
            return self.hosts.state(host).active_requests
