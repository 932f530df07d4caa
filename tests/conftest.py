"""
pytest configuration for dns-autoswitch tests

This file ensures tests can find the dns_autoswitch module regardless of environment
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path so tests can import dns_autoswitch
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from twisted.internet import defer, task  # noqa: E402


class FakeTunnel:
    """Tunnel controller whose answers are scripted per call"""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.applied = []

    def apply_active_server(self, candidate):
        self.applied.append(candidate.id)
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return True


class FakeTransport:
    """
    Probe transport driven by the test

    Every exchange() call returns a fresh Deferred kept in `pending` so the
    test decides when and how it completes.
    """

    def __init__(self):
        self.pending = []
        self.calls = []

    def exchange(self, address, timeout, hostname=None):
        self.calls.append(address)
        d = defer.Deferred()
        self.pending.append((address, d))
        return d

    def name(self):
        return "fake"

    def answer(self, address, clock=None, after=0.0, error=None):
        """Complete the oldest pending exchange for address"""
        for i, (pending_address, d) in enumerate(self.pending):
            if pending_address == address:
                del self.pending[i]
                if clock is not None and after:
                    clock.advance(after)
                if error is not None:
                    d.errback(error)
                else:
                    d.callback(None)
                return
        raise AssertionError(f"No pending exchange for {address}")


@pytest.fixture
def clock():
    return task.Clock()


@pytest.fixture
def tunnel():
    return FakeTunnel()


@pytest.fixture
def transport():
    return FakeTransport()
