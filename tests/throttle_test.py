"""
Domain throttle spacing, concurrency and domain-wide pauses
"""

import threading
import unittest

from crawler.hosts import HostTable
from crawler.throttle import DomainThrottle


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestDomainThrottle(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.hosts = HostTable(clock=self.clock)

    def test_spacing_between_request_starts(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=1000, max_concurrent_per_host=5)
        first = throttle.acquire("a.com")
        self.assertIsNotNone(first)
        throttle.release(first)

        self.assertIsNone(throttle.acquire("a.com", timeout=0.05))
        self.clock.advance(1.0)
        self.assertIsNotNone(throttle.acquire("a.com", timeout=0.05))

    def test_hosts_are_independent(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=1000)
        self.assertIsNotNone(throttle.acquire("a.com"))
        self.assertIsNotNone(throttle.acquire("b.com", timeout=0.05))

    def test_concurrency_limit(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=0, max_concurrent_per_host=2)
        p1 = throttle.acquire("a.com")
        throttle.acquire("a.com")
        self.assertEqual(throttle.active("a.com"), 2)
        self.assertIsNone(throttle.acquire("a.com", timeout=0.05))

        throttle.release(p1)
        throttle.release(p1)  # idempotent
        self.assertEqual(throttle.active("a.com"), 1)
        self.assertIsNotNone(throttle.acquire("a.com", timeout=0.05))

    def test_release_wakes_waiter(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=0, max_concurrent_per_host=1)
        held = throttle.acquire("a.com")
        got = []
        t = threading.Thread(target=lambda: got.append(throttle.acquire("a.com", timeout=2)))
        t.start()
        throttle.release(held)
        t.join(3)
        self.assertIsNotNone(got[0])

    def test_domain_wide_pause(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=0)
        throttle.pause_host("a.com", 5)
        self.assertAlmostEqual(throttle.get_remaining_pause("a.com"), 5.0)
        self.assertIsNone(throttle.acquire("a.com", timeout=0.05))
        self.clock.advance(5)
        self.assertEqual(throttle.get_remaining_pause("a.com"), 0.0)
        self.assertIsNotNone(throttle.acquire("a.com", timeout=0.05))

    def test_cancel_returns_none(self):
        throttle = DomainThrottle(self.hosts, min_interval_ms=1000)
        throttle.acquire("a.com")
        cancel = threading.Event()
        cancel.set()
        self.assertIsNone(throttle.acquire("a.com", cancel=cancel))


if __name__ == "__main__":
    unittest.main()
