"""
Shared per-host state table.

The Domain Throttle and the Retry Coordinator both read and mutate HostState;
every mutation happens under the table's lock so updates are atomic with
respect to each other.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Optional, Callable, Deque

from crawler.models import HostStatus


@dataclass
class HostState:
    host: str
    active_requests: int = 0
    last_request_at: Optional[float] = None
    consecutive_resets: int = 0
    status: HostStatus = HostStatus.HEALTHY
    locked_until: Optional[float] = None
    paused_until: float = 0.0
    reset_times: Deque[float] = field(default_factory=deque)
    error_times: Deque[float] = field(default_factory=deque)

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "active_requests": self.active_requests,
            "last_request_at": self.last_request_at,
            "consecutive_resets": self.consecutive_resets,
            "status": self.status.value,
            "locked_until": self.locked_until,
        }


class HostTable:
    """
    FLOW: Lazily creates HostState per host -> Hands it out only to callers holding `lock` ->
    `cond` is notified whenever a permit is released or a host leaves lockout.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self.lock = threading.RLock()
        self.cond = threading.Condition(self.lock)
        self._hosts: Dict[str, HostState] = {}

    def state(self, host: str) -> HostState:
        """Caller must hold `lock`."""
        st = self._hosts.get(host)
        if st is None:
            st = HostState(host=host)
            self._hosts[host] = st
        return st

    def expire_lockout(self, st: HostState) -> bool:
        """
        Moves a locked-out host to recovering once its timer elapsed.
        Caller must hold `lock`. Returns True when the transition happened.
        """
        if st.status is HostStatus.LOCKED_OUT and st.locked_until is not None and self.clock() >= st.locked_until:
            st.status = HostStatus.RECOVERING
            st.locked_until = None
            st.reset_times.clear()
            st.error_times.clear()
            st.consecutive_resets = 0
            self.cond.notify_all()
            return True
        return False

    def snapshot(self) -> Dict[str, dict]:
        with self.lock:
            return {h: st.to_dict() for h, st in self._hosts.items()}
