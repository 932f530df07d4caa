# dns_autoswitch/health/history.py
"""Rolling per-server window of latency samples"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from ..constants import HISTORY_RETENTION, HISTORY_WINDOW_SIZE
from ..models import LatencySample, ServerStats

logger = logging.getLogger(__name__)


class _ServerWindow:
    """Samples for one server, oldest first, guarded by its own lock"""

    def __init__(self, window_size: int):
        self.lock = threading.Lock()
        self.samples: Deque[LatencySample] = deque(maxlen=window_size)


def _median(values: List[float]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


class SampleHistory:
    """
    Bounded window of recent samples per server

    A sample leaves the window once it is older than the retention period or
    once window_size newer samples exist, whichever happens first. Reads
    given the current time also skip samples that aged out since the last
    write, without evicting them. Each
    server has its own lock, so writes to different servers never wait on
    each other and a write never disturbs another server's samples.
    """

    def __init__(
        self,
        window_size: int = HISTORY_WINDOW_SIZE,
        retention: float = HISTORY_RETENTION,
    ):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.retention_ms = int(retention * 1000)
        self._windows: Dict[str, _ServerWindow] = {}
        self._registry_lock = threading.Lock()

    def _window(self, server_id: str, create: bool = False) -> Optional[_ServerWindow]:
        window = self._windows.get(server_id)
        if window is None and create:
            with self._registry_lock:
                window = self._windows.setdefault(server_id, _ServerWindow(self.window_size))
        return window

    def _prune(self, window: _ServerWindow, now_ms: int):
        cutoff = now_ms - self.retention_ms
        samples = window.samples
        while samples and samples[0].timestamp_ms < cutoff:
            samples.popleft()

    def record(self, sample: LatencySample):
        """Append a sample and evict what falls outside the window"""
        window = self._window(sample.server_id, create=True)
        with window.lock:
            window.samples.append(sample)
            self._prune(window, sample.timestamp_ms)

    def _copy(self, server_id: str, now_ms: Optional[int] = None) -> List[LatencySample]:
        window = self._window(server_id)
        if window is None:
            return []
        with window.lock:
            samples = list(window.samples)
        if now_ms is None:
            return samples
        cutoff = now_ms - self.retention_ms
        return [s for s in samples if s.timestamp_ms >= cutoff]

    def stats(self, server_id: str, now_ms: Optional[int] = None) -> ServerStats:
        """
        Summary over the current window; ServerStats.empty() without samples

        Args:
            now_ms: Current clock time. Samples older than the retention
                period at that time are left out, even when no newer sample
                was recorded to evict them.
        """
        return self._summarize(server_id, self._copy(server_id, now_ms))

    def snapshot(
        self, server_ids: Iterable[str], now_ms: Optional[int] = None
    ) -> Dict[str, ServerStats]:
        """Stats for several servers at once, all cut off at the same time"""
        return {server_id: self.stats(server_id, now_ms) for server_id in server_ids}

    def recent_samples(
        self, server_id: str, n: int, now_ms: Optional[int] = None
    ) -> List[LatencySample]:
        """Up to n samples, most recent first"""
        if n <= 0:
            return []
        return list(reversed(self._copy(server_id, now_ms)))[:n]

    def recent_latencies(
        self, server_id: str, n: int, now_ms: Optional[int] = None
    ) -> List[Optional[float]]:
        """Latencies of the last n samples, most recent first (None for failures)"""
        return [sample.latency_ms for sample in self.recent_samples(server_id, n, now_ms)]

    def server_ids(self) -> List[str]:
        with self._registry_lock:
            return list(self._windows)

    def forget(self, server_id: str):
        with self._registry_lock:
            self._windows.pop(server_id, None)

    def _summarize(self, server_id: str, samples: List[LatencySample]) -> ServerStats:
        if not samples:
            return ServerStats.empty(server_id)

        latencies = [s.latency_ms for s in samples if s.succeeded and s.latency_ms is not None]
        successes = sum(1 for s in samples if s.succeeded)

        consecutive_failures = 0
        for sample in reversed(samples):
            if sample.succeeded:
                break
            consecutive_failures += 1

        last = samples[-1]
        return ServerStats(
            server_id=server_id,
            moving_average_latency_ms=sum(latencies) / len(latencies) if latencies else None,
            success_ratio=successes / len(samples),
            sample_count=len(samples),
            last_sample_at=last.timestamp_ms,
            last_succeeded=last.succeeded,
            consecutive_failures=consecutive_failures,
            median_latency_ms=_median(latencies) if latencies else None,
        )
